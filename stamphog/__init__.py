"""
Stamphog – Slack PR-approval stamp leaderboard

This package houses the web service that turns Slack activity into a
leaderboard of review "stamps": a requester posts a GitHub/Graphite pull
request link, reviewers react with a tracked emoji, and every reaction is
recorded once.

The application factory wires together the webhook receiver
(:pymod:`stamphog.webhook`), the read API and admin routes
(:pymod:`stamphog.api`), the SQLAlchemy store and the Slack Web API gateway.
"""

# ---------------------------------------------------------------------------
# Imports
# ---------------------------------------------------------------------------
from typing import Any, Mapping, Optional

import os

from flask import Flask, current_app, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from stamphog import cloud_logging
from stamphog.config import Settings
from stamphog.errors import ConfigurationError

# Keep LOCAL_CREDS convenience shim for local development (no auth dance).
LOCAL_CREDS: str | None = os.getenv("LOCAL_CREDS")
if LOCAL_CREDS is not None:
    os.environ.setdefault("GOOGLE_APPLICATION_CREDENTIALS", LOCAL_CREDS)

EXTENSION_KEY = "stamphog"

# ---------------------------------------------------------------------------
# Rate limiter – instantiated at module level to avoid circular imports
# ---------------------------------------------------------------------------

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["200 per day", "50 per hour"],
    storage_uri="memory://",
)


class Services:
    """Per-application collaborators, stored under ``app.extensions``."""

    def __init__(self, settings: Settings, engine, slack_client=None):
        self.settings = settings
        self.engine = engine
        self._slack_client = slack_client

    @property
    def slack(self):
        """Slack gateway, built on first use; raises when no token is set."""
        if self._slack_client is None:
            if not self.settings.slack_bot_token:
                raise ConfigurationError("missing SLACK_BOT_TOKEN")
            from stamphog.inputs.slack import SlackGateway

            self._slack_client = SlackGateway(self.settings.slack_bot_token)
        return self._slack_client


def current_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    logger: Optional[Any] = None,
    *,
    settings: Optional[Settings] = None,
    engine=None,
    slack_client=None,
    config: Optional[Mapping[str, Any]] = None,
) -> Flask:
    """Create and configure the Flask application instance.

    Parameters
    ----------
    logger:
        Optional Google Cloud ``Logger`` (anything exposing ``log_text``).
        When given, :pymod:`stamphog.cloud_logging` forwards to it.
    settings:
        Runtime settings; read from the environment when omitted.
    engine:
        SQLAlchemy engine; built from *settings* when omitted.
    slack_client:
        Slack gateway override (tests inject a scripted fake here).
    config:
        Extra Flask config applied before extensions initialise.
    """
    if logger is not None:
        cloud_logging.use_gcp_logger(logger)

    settings = settings or Settings.from_env()

    if engine is None:
        from stamphog.helper_functions import build_engine

        engine = build_engine(
            settings.database_url,
            instance_connection_name=settings.instance_connection_name,
            db_user=settings.db_user,
            db_password=settings.db_password,
            db_name=settings.db_name,
        )

    from stamphog.database.models import init_db

    init_db(engine)

    # ---------------------------------------------------------------------
    # Initialise base Flask app
    # ---------------------------------------------------------------------
    app = Flask(__name__)
    app.config["SLACK_SIGNING_SECRET"] = settings.slack_signing_secret
    app.config["ADMIN_TOKEN"] = settings.admin_token
    if config:
        app.config.update(config)

    app.extensions[EXTENSION_KEY] = Services(settings, engine, slack_client)

    # Attach the rate limiter after app creation
    limiter.init_app(app)

    # ---------------------------------------------------------------------
    # Health check route – required by Cloud Run / load-balancers
    # ---------------------------------------------------------------------
    @app.route("/", methods=["GET"])
    @limiter.exempt
    def health_check():  # type: ignore[return-value]
        """Light-weight liveness probe endpoint."""
        return jsonify({"status": "ok"}), 200

    # ---------------------------------------------------------------------
    # Rate-limit error handler – converts 429 into JSON response & structured log
    # ---------------------------------------------------------------------
    @app.errorhandler(429)  # type: ignore[arg-type]
    def _ratelimit_handler(error):  # noqa: D401 – internal handler
        client_ip = request.remote_addr or "unknown"
        user_agent = request.headers.get("User-Agent", "Unknown")
        cloud_logging.log_text(
            f"Rate limit exceeded: {error} – IP: {client_ip}, User-Agent: {user_agent}",
            severity="WARNING",
        )
        return (
            jsonify({
                "status": "error",
                "message": "Rate limit exceeded. Please try again later.",
            }),
            429,
        )

    # ---------------------------------------------------------------------
    # Blueprints
    # ---------------------------------------------------------------------
    from stamphog.api import admin_bp, api_bp
    from stamphog.webhook import webhook_bp

    app.register_blueprint(webhook_bp)
    app.register_blueprint(api_bp)
    app.register_blueprint(admin_bp)

    cloud_logging.log_text("Flask application initialised", severity="INFO")
    return app
