import datetime as dt
import unittest

from renewtrack.tracker import dashboard
from renewtrack.tracker.errors import ValidationError

NOW = dt.datetime(2026, 3, 15, 12, 0, 0)


def renewal(renewal_id: int, *, end: str, amount: float, paid: bool = False, created: str = "2026-03-01T09:00:00") -> dict:
    return {
        "id": renewal_id,
        "client_id": 1,
        "service_id": 1,
        "start_date": "2025-01-01",
        "end_date": end,
        "amount": amount,
        "is_paid": paid,
        "created_at": created,
    }


class AddMonthsTestCase(unittest.TestCase):
    def test_clamps_to_month_end(self) -> None:
        self.assertEqual(dashboard.add_months(dt.date(2026, 1, 31), 1), dt.date(2026, 2, 28))
        self.assertEqual(dashboard.add_months(dt.date(2028, 1, 31), 1), dt.date(2028, 2, 29))

    def test_crosses_year(self) -> None:
        self.assertEqual(dashboard.add_months(dt.date(2026, 3, 15), 12), dt.date(2027, 3, 15))
        self.assertEqual(dashboard.add_months(dt.date(2026, 11, 30), 3), dt.date(2027, 2, 28))


class RevenueTestCase(unittest.TestCase):
    def test_mtd_counts_paid_renewals_created_this_month(self) -> None:
        renewals = [
            renewal(1, end="2026-06-01", amount=100, paid=True, created="2026-03-01T00:00:00"),
            renewal(2, end="2026-06-01", amount=50, paid=True, created="2026-02-28T23:59:59"),
            renewal(3, end="2026-06-01", amount=25, paid=False, created="2026-03-10T10:00:00"),
            renewal(4, end="2026-06-01", amount=10, paid=True, created="2026-03-20T10:00:00"),
        ]
        self.assertEqual(dashboard.revenue_summary(renewals, NOW)["mtd"], 100)

    def test_ytd_uses_end_date_year(self) -> None:
        renewals = [
            renewal(1, end="2026-12-31", amount=100, paid=True),
            renewal(2, end="2025-12-31", amount=70, paid=True),
            renewal(3, end="2026-01-01", amount=30, paid=False),
        ]
        self.assertEqual(dashboard.revenue_summary(renewals, NOW)["ytd"], 100)

    def test_projected_covers_next_twelve_months_paid_or_not(self) -> None:
        renewals = [
            renewal(1, end="2026-03-15", amount=10, paid=True),
            renewal(2, end="2027-03-15", amount=20),
            renewal(3, end="2027-03-16", amount=40),
            renewal(4, end="2026-03-14", amount=80),
        ]
        self.assertEqual(dashboard.revenue_summary(renewals, NOW)["projected"], 30)

    def test_sums_are_rounded(self) -> None:
        renewals = [renewal(i, end="2026-04-01", amount=0.1) for i in range(3)]
        self.assertEqual(dashboard.revenue_summary(renewals, NOW)["projected"], 0.3)


class MonthlyRevenueTestCase(unittest.TestCase):
    def test_six_months_oldest_first(self) -> None:
        series = dashboard.monthly_revenue([], 6, NOW)
        self.assertEqual(
            [point["month"] for point in series],
            ["Oct 2025", "Nov 2025", "Dec 2025", "Jan 2026", "Feb 2026", "Mar 2026"],
        )
        self.assertTrue(all(point["amount"] == 0 for point in series))

    def test_buckets_paid_by_created_month(self) -> None:
        renewals = [
            renewal(1, end="2026-12-01", amount=100, paid=True, created="2026-01-05T10:00:00"),
            renewal(2, end="2026-12-01", amount=200, paid=True, created="2026-01-20T10:00:00"),
            renewal(3, end="2026-12-01", amount=999, paid=False, created="2026-01-20T10:00:00"),
            renewal(4, end="2026-12-01", amount=50, paid=True, created="2025-06-01T10:00:00"),
        ]
        series = {point["month"]: point["amount"] for point in dashboard.monthly_revenue(renewals, 3, NOW)}
        self.assertEqual(series, {"Jan 2026": 300, "Feb 2026": 0, "Mar 2026": 0})

    def test_rejects_non_positive_months(self) -> None:
        with self.assertRaises(ValidationError):
            dashboard.monthly_revenue([], 0, NOW)


class UpcomingTestCase(unittest.TestCase):
    def test_window_excludes_paid_past_and_far_renewals(self) -> None:
        today = NOW.date()
        renewals = [
            renewal(1, end="2026-03-25", amount=1),
            renewal(2, end="2026-03-15", amount=1),
            renewal(3, end="2026-03-14", amount=1),
            renewal(4, end="2026-03-20", amount=1, paid=True),
            renewal(5, end="2026-04-14", amount=1),
            renewal(6, end="2026-04-15", amount=1),
        ]
        selected = dashboard.upcoming_renewals(renewals, today, 30)
        self.assertEqual([r["id"] for r in selected], [2, 1, 5])

    def test_negative_window_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            dashboard.upcoming_renewals([], NOW.date(), -1)


class ComputeStatsTestCase(unittest.TestCase):
    def test_snapshot(self) -> None:
        renewals = [
            renewal(1, end="2026-03-20", amount=1200),
            renewal(2, end="2026-05-01", amount=300, paid=True, created="2026-03-02T08:00:00"),
        ]
        activities = [
            {"id": i, "type": "client_added", "description": "x", "created_at": "2026-03-01T10:00:00"}
            for i in range(1, 13)
        ]
        stats = dashboard.compute_stats(
            renewals, activities, total_clients=2, active_services=1, now=NOW
        )
        self.assertEqual(stats["total_clients"], 2)
        self.assertEqual(stats["active_services"], 1)
        self.assertEqual(stats["pending_renewals"], 1)
        self.assertEqual([r["id"] for r in stats["upcoming_renewals"]], [1])
        self.assertEqual(stats["revenue"], {"mtd": 300, "ytd": 300, "projected": 1500})
        self.assertEqual(len(stats["recent_activities"]), 10)
        self.assertEqual(stats["recent_activities"][0]["id"], 12)
        self.assertEqual(len(stats["monthly_revenue"]), 6)


if __name__ == "__main__":
    unittest.main()
