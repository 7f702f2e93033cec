"""Application entry point for the RenewTrack API."""

from renewtrack.webapp import create_app

app = create_app()


if __name__ == "__main__":
    app.run(debug=True)
