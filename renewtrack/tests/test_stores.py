import datetime as dt
import json
import sqlite3
import tempfile
import threading
import unittest
from pathlib import Path

from renewtrack.tracker.errors import (
    ConflictError,
    IntegrityError,
    StoreError,
    TransientStoreError,
    ValidationError,
)
from renewtrack.tracker.memory_store import MemoryStore
from renewtrack.tracker.sqlite_store import SQLiteStore
from renewtrack.tracker.status import Tier, classify


class StoreContract:
    """Behaviour every backend must share; mixed into one TestCase per backend."""

    def make_store(self, clock):
        raise NotImplementedError

    def setUp(self) -> None:
        self.now = dt.datetime(2026, 3, 15, 10, 0, 0)
        self.today = self.now.date()
        self.store = self.make_store(lambda: self.now)
        self.user = self.store.register_user(
            username="owner", email="Owner@Example.com", password="Secret!23"
        )
        self.uid = self.user["id"]
        self.client = self.store.create_client(
            self.uid, name="Acme Pty", email="ops@acme.test", company="Acme"
        )
        self.service = self.store.create_service(
            self.uid, name="Hosting", default_duration=12, default_price=1200.0
        )

    def tearDown(self) -> None:
        self.store.close()

    def add_renewal(self, days: int = 5, **overrides) -> dict:
        fields = {
            "client_id": self.client["id"],
            "service_id": self.service["id"],
            "start_date": self.today - dt.timedelta(days=365),
            "end_date": self.today + dt.timedelta(days=days),
            "amount": 1200.0,
        }
        fields.update(overrides)
        return self.store.create_renewal(self.uid, **fields)

    def activities_of(self, activity_type: str) -> list[dict]:
        return [a for a in self.store.list_activities(self.uid) if a["type"] == activity_type]

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def test_register_user_hashes_password_and_lowercases_email(self) -> None:
        self.assertEqual(self.user["email"], "owner@example.com")
        self.assertTrue(self.user["password_hash"].startswith("pbkdf2_sha256$"))
        self.assertEqual(self.store.get_user(self.uid)["username"], "owner")
        self.assertEqual(self.store.get_user_by_username("owner")["id"], self.uid)
        self.assertIsNone(self.store.get_user_by_username("nobody"))

    def test_duplicate_user_rejected(self) -> None:
        with self.assertRaises(StoreError):
            self.store.register_user(username="owner", email="other@example.com", password="x")

    def test_ensure_user_is_idempotent(self) -> None:
        again = self.store.ensure_user(username="owner", email="owner@example.com", password="x")
        self.assertEqual(again["id"], self.uid)

    def test_rows_for_unknown_user_rejected(self) -> None:
        with self.assertRaises(StoreError):
            self.store.create_client(9999, name="Ghost", email="ghost@example.com")

    # ------------------------------------------------------------------
    # Clients & services
    # ------------------------------------------------------------------
    def test_client_round_trip(self) -> None:
        created = self.store.create_client(
            self.uid,
            name="Beta Co",
            email="hello@beta.test",
            phone="0400 000 000",
            company="Beta",
            address="1 Main St",
            gst="29AAAAA0000A1Z5",
            notes="Prefers email",
        )
        fetched = self.store.get_client(self.uid, created["id"])
        self.assertEqual(fetched, created)
        self.assertEqual(fetched["created_at"], "2026-03-15T10:00:00")
        self.assertEqual(len(self.activities_of("client_added")), 2)

    def test_clients_listed_by_name(self) -> None:
        self.store.create_client(self.uid, name="Zeta", email="z@example.com")
        self.store.create_client(self.uid, name="Alpha", email="a@example.com")
        names = [client["name"] for client in self.store.list_clients(self.uid)]
        self.assertEqual(names, ["Acme Pty", "Alpha", "Zeta"])

    def test_update_client_changes_only_supplied_fields(self) -> None:
        updated = self.store.update_client(self.uid, self.client["id"], phone="123")
        self.assertEqual(updated["phone"], "123")
        self.assertEqual(updated["name"], "Acme Pty")
        cleared = self.store.update_client(self.uid, self.client["id"], company=None)
        self.assertIsNone(cleared["company"])
        entries = self.activities_of("client_updated")
        self.assertEqual(len(entries), 2)
        self.assertEqual(json.loads(entries[-1]["metadata"])["changes"], ["phone"])

    def test_update_client_rejects_unknown_and_cleared_required_fields(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.update_client(self.uid, self.client["id"], colour="red")
        with self.assertRaises(ValidationError):
            self.store.update_client(self.uid, self.client["id"], name=None)

    def test_update_missing_client_returns_none(self) -> None:
        self.assertIsNone(self.store.update_client(self.uid, 9999, phone="1"))
        self.assertIsNone(self.store.get_client(self.uid, 9999))

    def test_empty_update_logs_nothing(self) -> None:
        before = len(self.store.list_activities(self.uid))
        self.assertEqual(self.store.update_client(self.uid, self.client["id"]), self.client)
        self.assertEqual(len(self.store.list_activities(self.uid)), before)

    def test_delete_client_blocked_while_renewals_exist(self) -> None:
        renewal = self.add_renewal()
        with self.assertRaises(ConflictError):
            self.store.delete_client(self.uid, self.client["id"])
        self.assertIsNotNone(self.store.get_client(self.uid, self.client["id"]))
        self.assertIsNotNone(self.store.get_renewal(self.uid, renewal["id"]))
        self.assertEqual(self.activities_of("client_deleted"), [])

    def test_delete_client_without_renewals(self) -> None:
        self.assertTrue(self.store.delete_client(self.uid, self.client["id"]))
        self.assertIsNone(self.store.get_client(self.uid, self.client["id"]))
        self.assertEqual(len(self.activities_of("client_deleted")), 1)
        self.assertFalse(self.store.delete_client(self.uid, self.client["id"]))

    def test_delete_service_blocked_until_renewal_removed(self) -> None:
        renewal = self.add_renewal()
        with self.assertRaises(ConflictError):
            self.store.delete_service(self.uid, self.service["id"])
        self.assertTrue(self.store.delete_renewal(self.uid, renewal["id"]))
        self.assertTrue(self.store.delete_service(self.uid, self.service["id"]))
        self.assertEqual(len(self.activities_of("renewal_deleted")), 1)
        self.assertEqual(len(self.activities_of("service_deleted")), 1)

    def test_service_values_validated(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.create_service(self.uid, name="Bad", default_duration=0, default_price=10)
        with self.assertRaises(ValidationError):
            self.store.update_service(self.uid, self.service["id"], default_price=-1)
        updated = self.store.update_service(self.uid, self.service["id"], default_price=99)
        self.assertEqual(updated["default_price"], 99.0)

    # ------------------------------------------------------------------
    # Renewals
    # ------------------------------------------------------------------
    def test_create_renewal_logs_one_activity(self) -> None:
        renewal = self.add_renewal()
        self.assertFalse(renewal["is_paid"])
        self.assertFalse(renewal["notification_sent"])
        self.assertEqual(renewal["end_date"], "2026-03-20")
        entries = self.activities_of("renewal_created")
        self.assertEqual(len(entries), 1)
        metadata = json.loads(entries[0]["metadata"])
        self.assertEqual(metadata["renewalId"], renewal["id"])
        self.assertEqual(metadata["amount"], 1200.0)
        self.assertIn("Acme Pty", entries[0]["description"])

    def test_end_date_before_start_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.add_renewal(start_date="2026-04-01", end_date="2026-03-01")
        renewal = self.add_renewal()
        with self.assertRaises(ValidationError):
            self.store.update_renewal(self.uid, renewal["id"], end_date="2020-01-01")
        self.assertEqual(self.store.get_renewal(self.uid, renewal["id"])["end_date"], "2026-03-20")

    def test_paid_transition_logs_exactly_one_payment(self) -> None:
        renewal = self.add_renewal()
        updated = self.store.update_renewal(self.uid, renewal["id"], is_paid=True, amount=1500)
        self.assertTrue(updated["is_paid"])
        payments = self.activities_of("payment_received")
        self.assertEqual(len(payments), 1)
        self.assertEqual(json.loads(payments[0]["metadata"])["amount"], 1500.0)
        self.assertIn("1,500.00", payments[0]["description"])

        self.store.update_renewal(self.uid, renewal["id"], notes="re-opened")
        self.assertEqual(len(self.activities_of("payment_received")), 1)
        self.assertEqual(len(self.activities_of("renewal_updated")), 2)

    def test_paid_to_unpaid_logs_no_activity(self) -> None:
        renewal = self.add_renewal(is_paid=True)
        before = len(self.store.list_activities(self.uid))
        updated = self.store.update_renewal(self.uid, renewal["id"], is_paid=False, amount=900)
        self.assertFalse(updated["is_paid"])
        self.assertEqual(updated["amount"], 900.0)
        self.assertEqual(len(self.store.list_activities(self.uid)), before)

    def test_updating_paid_renewal_does_not_log_payment(self) -> None:
        renewal = self.add_renewal(is_paid=True)
        self.store.update_renewal(self.uid, renewal["id"], is_paid=True, notes="again")
        self.assertEqual(self.activities_of("payment_received"), [])

    def test_set_notification_status(self) -> None:
        renewal = self.add_renewal()
        self.assertTrue(self.store.set_notification_status(self.uid, renewal["id"], True))
        self.assertTrue(self.store.get_renewal(self.uid, renewal["id"])["notification_sent"])
        self.assertEqual(len(self.activities_of("renewal_reminder")), 1)
        self.assertTrue(self.store.set_notification_status(self.uid, renewal["id"], False))
        self.assertFalse(self.store.get_renewal(self.uid, renewal["id"])["notification_sent"])
        self.assertEqual(len(self.activities_of("renewal_reminder")), 1)
        self.assertFalse(self.store.set_notification_status(self.uid, 9999, True))

    def test_renewals_ordered_by_end_date(self) -> None:
        late = self.add_renewal(days=40)
        early = self.add_renewal(days=2)
        middle = self.add_renewal(days=10)
        ids = [r["id"] for r in self.store.list_renewals(self.uid)]
        self.assertEqual(ids, [early["id"], middle["id"], late["id"]])
        by_client = self.store.list_renewals_for_client(self.uid, self.client["id"])
        self.assertEqual([r["id"] for r in by_client], ids)
        by_service = self.store.list_renewals_for_service(self.uid, self.service["id"])
        self.assertEqual([r["id"] for r in by_service], ids)
        self.assertEqual(self.store.list_renewals_for_client(self.uid, 9999), [])

    def test_renewals_with_relations(self) -> None:
        renewal = self.add_renewal()
        [enriched] = self.store.list_renewals_with_relations(self.uid)
        self.assertEqual(
            enriched["client"],
            {"id": self.client["id"], "name": "Acme Pty", "email": "ops@acme.test", "company": "Acme"},
        )
        self.assertEqual(enriched["service"], {"id": self.service["id"], "name": "Hosting"})
        single = self.store.get_renewal_with_relations(self.uid, renewal["id"])
        self.assertEqual(single, enriched)
        self.assertIsNone(self.store.get_renewal_with_relations(self.uid, 9999))

    def test_upcoming_renewals_window(self) -> None:
        soon = self.add_renewal(days=3)
        self.add_renewal(days=45)
        self.add_renewal(days=-2)
        self.add_renewal(days=4, is_paid=True)
        upcoming = self.store.list_upcoming_renewals(self.uid)
        self.assertEqual([r["id"] for r in upcoming], [soon["id"]])
        self.assertEqual(len(self.store.list_upcoming_renewals(self.uid, 60)), 2)

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------
    def test_activities_newest_first_with_limit(self) -> None:
        first = self.store.create_activity(self.uid, type="client_added", description="One")
        self.now = self.now + dt.timedelta(minutes=1)
        second = self.store.create_activity(
            self.uid, type="renewal_reminder", description="Two", metadata='{"renewalId": 1}'
        )
        latest = self.store.list_activities(self.uid, limit=2)
        self.assertEqual([a["id"] for a in latest], [second["id"], first["id"]])
        self.assertEqual(self.store.get_activity(self.uid, second["id"])["metadata"], '{"renewalId": 1}')
        self.assertEqual(len(self.store.list_activities(self.uid)), 4)

    def test_activity_requires_description(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.create_activity(self.uid, type="client_added", description="")

    # ------------------------------------------------------------------
    # Scoping & reporting
    # ------------------------------------------------------------------
    def test_rows_are_scoped_to_their_user(self) -> None:
        other = self.store.register_user(username="other", email="other@example.com", password="x")
        renewal = self.add_renewal()
        self.assertIsNone(self.store.get_client(other["id"], self.client["id"]))
        self.assertIsNone(self.store.get_renewal(other["id"], renewal["id"]))
        self.assertEqual(self.store.list_clients(other["id"]), [])
        self.assertEqual(self.store.list_activities(other["id"]), [])
        self.assertIsNone(self.store.update_client(other["id"], self.client["id"], name="Hijack"))
        self.assertFalse(self.store.delete_renewal(other["id"], renewal["id"]))
        self.assertEqual(self.store.get_dashboard_stats(other["id"])["total_clients"], 0)

    def test_dashboard_scenario(self) -> None:
        renewal = self.add_renewal(days=5, amount=1200)
        stats = self.store.get_dashboard_stats(self.uid)
        self.assertEqual(stats["total_clients"], 1)
        self.assertEqual(stats["active_services"], 1)
        self.assertEqual(stats["pending_renewals"], 1)
        self.assertEqual(stats["upcoming_renewals"][0]["id"], renewal["id"])
        self.assertEqual(stats["upcoming_renewals"][0]["client"]["name"], "Acme Pty")
        self.assertEqual(classify(renewal["end_date"], renewal["is_paid"], self.today).tier, Tier.DUE_SOON)
        mtd_before = stats["revenue"]["mtd"]

        self.store.update_renewal(self.uid, renewal["id"], is_paid=True)
        stats = self.store.get_dashboard_stats(self.uid)
        self.assertEqual(stats["revenue"]["mtd"], mtd_before + 1200)
        self.assertEqual(stats["pending_renewals"], 0)
        self.assertEqual(len(self.activities_of("payment_received")), 1)
        self.assertEqual(stats["recent_activities"][0]["type"], "payment_received")

    def test_monthly_revenue(self) -> None:
        self.add_renewal(days=30, amount=400, is_paid=True)
        self.add_renewal(days=30, amount=100)
        series = self.store.get_monthly_revenue(self.uid, 6)
        self.assertEqual(len(series), 6)
        self.assertEqual(len({point["month"] for point in series}), 6)
        self.assertEqual(series[0]["month"], "Oct 2025")
        self.assertEqual(series[-1], {"month": "Mar 2026", "amount": 400.0})
        self.assertTrue(all(point["amount"] >= 0 for point in series))
        with self.assertRaises(ValidationError):
            self.store.get_monthly_revenue(self.uid, 0)


class MemoryStoreTestCase(StoreContract, unittest.TestCase):
    def make_store(self, clock):
        return MemoryStore(clock=clock)

    def test_orphaned_renewal_raises_integrity_error(self) -> None:
        self.add_renewal(client_id=9999)
        with self.assertRaises(IntegrityError):
            self.store.list_renewals_with_relations(self.uid)

    def test_returned_records_are_copies(self) -> None:
        client = self.store.get_client(self.uid, self.client["id"])
        client["name"] = "Mutated"
        self.assertEqual(self.store.get_client(self.uid, self.client["id"])["name"], "Acme Pty")

    def test_instances_do_not_share_ids(self) -> None:
        other = MemoryStore()
        user = other.register_user(username="solo", email="solo@example.com", password="x")
        self.assertEqual(user["id"], 1)
        self.assertEqual(other.list_clients(user["id"]), [])

    def test_listing_while_another_thread_writes(self) -> None:
        errors: list[BaseException] = []
        done = threading.Event()

        def writer() -> None:
            try:
                for index in range(500):
                    self.store.create_client(self.uid, name=f"Client {index}", email=f"c{index}@example.com")
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)
            finally:
                done.set()

        thread = threading.Thread(target=writer)
        thread.start()
        try:
            while not done.is_set():
                self.store.list_activities(self.uid)
                self.store.list_clients(self.uid)
                self.store.get_dashboard_stats(self.uid)
        finally:
            thread.join()
        self.assertEqual(errors, [])
        self.assertEqual(len(self.store.list_clients(self.uid)), 501)
        self.assertEqual(len(self.activities_of("client_added")), 501)


class SQLiteStoreTestCase(StoreContract, unittest.TestCase):
    def make_store(self, clock):
        return SQLiteStore(clock=clock)

    def test_reads_degrade_and_writes_raise_after_close(self) -> None:
        self.store.close()
        with self.assertLogs("renewtrack.tracker.sqlite_store", level="ERROR"):
            self.assertEqual(self.store.list_clients(self.uid), [])
            self.assertIsNone(self.store.get_client(self.uid, self.client["id"]))
        with self.assertRaises(TransientStoreError):
            self.store.create_client(self.uid, name="Late", email="late@example.com")

    def test_pool_connections_are_returned(self) -> None:
        self.add_renewal()
        self.store.list_renewals_with_relations(self.uid)
        stats = self.store.stats()
        self.assertEqual(stats.active_connections, 0)
        self.assertGreater(stats.checkout_count, 0)


class SQLiteFileStoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "renewals.db"

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_data_survives_reopen(self) -> None:
        store = SQLiteStore(self.path)
        user = store.register_user(username="owner", email="owner@example.com", password="x")
        client = store.create_client(user["id"], name="Acme", email="ops@acme.test")
        store.close()

        reopened = SQLiteStore(self.path)
        try:
            self.assertEqual(reopened.get_client(user["id"], client["id"])["name"], "Acme")
            self.assertEqual(len(reopened.list_activities(user["id"])), 1)
        finally:
            reopened.close()

    def test_orphaned_renewal_raises_integrity_error(self) -> None:
        store = SQLiteStore(self.path)
        try:
            user = store.register_user(username="owner", email="owner@example.com", password="x")
            conn = sqlite3.connect(self.path)
            conn.execute(
                """
                INSERT INTO renewals(user_id, client_id, service_id, start_date, end_date, amount, created_at)
                VALUES (?, 404, 404, '2026-01-01', '2026-12-31', 10, '2026-01-01T00:00:00')
                """,
                (user["id"],),
            )
            conn.commit()
            conn.close()
            with self.assertRaises(IntegrityError):
                store.list_renewals_with_relations(user["id"])
        finally:
            store.close()


if __name__ == "__main__":
    unittest.main()
