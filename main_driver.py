from stamphog import create_app
import os
import sys
from google.cloud import logging
import logging as pylogging

LOCAL_CREDS = os.getenv("LOCAL_CREDS")

if LOCAL_CREDS is not None:
    os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = LOCAL_CREDS

# Set up logging
ENV_NAME = os.getenv("ENV_NAME", "dev")
LOG_NAME = f"{ENV_NAME}_stamphog"
logging_client = logging.Client()
logger = logging_client.logger(LOG_NAME)


class CloudLoggingHandler(pylogging.Handler):
    """Stdlib logging handler that forwards records to Google Cloud Logging."""

    def __init__(self, gcp_logger):
        super().__init__()
        self._gcp_logger = gcp_logger

    def emit(self, record: pylogging.LogRecord) -> None:
        try:
            self._gcp_logger.log_text(self.format(record), severity=record.levelname.upper())
        except Exception:  # pragma: no cover – never let logging crash the app
            self.handleError(record)


# Forward stdlib records (Flask, SQLAlchemy, slack_sdk) to Cloud Logging. The
# ``stamphog`` logger is skipped: the facade already writes to ``logger``.
_handler = CloudLoggingHandler(logger)
_handler.setFormatter(pylogging.Formatter("%(name)s – %(message)s"))
_handler.addFilter(lambda record: not record.name.startswith("stamphog"))

root_logger = pylogging.getLogger()
root_logger.setLevel(pylogging.INFO)
root_logger.addHandler(_handler)

FLASK_ENV = os.getenv("FLASK_ENV", "development").lower()
logger.log_text(f"Stamphog starting in {FLASK_ENV} mode", severity="INFO")

PORT = int(os.getenv("PORT", 8080))

# Pass the Google Cloud logger to the Flask factory
app = create_app(logger)


def run_server() -> None:
    """
    Run Gunicorn in production, the Flask development server otherwise.

    Environment Variables
    --------------------
    FLASK_ENV : str
        ``"production"`` selects Gunicorn; anything else runs the dev server.
    PORT : int
        Listen port, default 8080.

    Notes
    -----
    Production runs two workers with a 300 second timeout so that admin
    backfills of large channels finish inside one request.  Duplicate
    deliveries handled by different workers are settled by the database
    unique indexes.
    """

    if FLASK_ENV == "production":
        from gunicorn.app.wsgiapp import run

        sys.argv = [
            "gunicorn",
            "main_driver:app",
            "--bind",
            f"0.0.0.0:{PORT}",
            "--workers",
            "2",
            "--timeout",
            "300",
        ]
        run()
    else:
        app.run(host="0.0.0.0", port=PORT, debug=True)


if __name__ == "__main__":
    run_server()
