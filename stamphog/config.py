"""config.py – Runtime settings

All settings come from environment variables.  Secrets may alternatively live
in Google Secret Manager: when ``SLACK_SIGNING_SECRET`` (or the bot token /
database password) is absent and both ``GOOGLE_CLOUD_PROJECT`` and the
matching ``*_SECRET_ID`` variable are set, the value is fetched via
:pyfunc:`stamphog.helper_functions.get_secret_value`.

A missing secret is *not* an error at load time.  It surfaces when a request
needs it, as a 500 "missing ..." response, so the service still boots for
health checks and read traffic.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from stamphog import cloud_logging as logging
from stamphog.errors import ConfigurationError

REPLAY_WINDOW_SECONDS = 60 * 5
BACKFILL_PAGE_SIZE = 200
DEFAULT_MAX_BACKFILL_MESSAGES = 5000
MAX_BACKFILL_MESSAGES = 50_000
BACKFILL_WINDOW_DAYS = 90
DATA_RETENTION_DAYS = 90
DEFAULT_LEADERBOARD_LIMIT = 20
DEFAULT_RECENT_EVENTS_LIMIT = 23
MAX_RESULTS_LIMIT = 100
MAX_LEADERBOARD_WINDOW_DAYS = 3650

DEFAULT_STAMP_EMOJIS = (
    "stampstamp",
    "white_check_mark",
    "heavy_check_mark",
    "stamp",
    "white_tick",
)


def _secret(
    env: Mapping[str, str], key: str, secret_id_key: str
) -> Optional[str]:
    value = (env.get(key) or "").strip()
    if value:
        return value

    project_id = env.get("GOOGLE_CLOUD_PROJECT")
    secret_id = env.get(secret_id_key)
    if not (project_id and secret_id):
        return None

    from stamphog.helper_functions import get_secret_value

    try:
        return get_secret_value(project_id, secret_id).strip() or None
    except Exception as exc:  # pragma: no cover – requires GCP runtime
        logging.log_text(
            f"Failed to retrieve {key} from Secret Manager: {exc}",
            severity="ERROR",
        )
        return None


def parse_channel_ids(raw: Optional[str]) -> Tuple[str, ...]:
    """Split a comma separated ``CHANNEL_IDS`` value, raising when unusable."""
    if not raw:
        raise ConfigurationError("missing CHANNEL_IDS env var")
    ids = tuple(part.strip() for part in raw.split(",") if part.strip())
    if not ids:
        raise ConfigurationError("CHANNEL_IDS env var is empty")
    return ids


@dataclass(frozen=True)
class Settings:
    slack_signing_secret: Optional[str] = None
    slack_bot_token: Optional[str] = None
    channel_ids_raw: Optional[str] = None
    database_url: str = "sqlite:///stamphog.db"
    instance_connection_name: Optional[str] = None
    db_user: Optional[str] = None
    db_password: Optional[str] = None
    db_name: str = "postgres"
    admin_token: Optional[str] = None
    stamp_emojis: Tuple[str, ...] = field(default=DEFAULT_STAMP_EMOJIS)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        raw_emojis = env.get("STAMP_EMOJIS")
        emojis = (
            tuple(part for part in raw_emojis.split(",") if part.strip())
            if raw_emojis
            else DEFAULT_STAMP_EMOJIS
        )
        return cls(
            slack_signing_secret=_secret(
                env, "SLACK_SIGNING_SECRET", "SLACK_SIGNING_SECRET_ID"
            ),
            slack_bot_token=_secret(env, "SLACK_BOT_TOKEN", "SLACK_BOT_TOKEN_SECRET_ID"),
            channel_ids_raw=env.get("CHANNEL_IDS"),
            database_url=env.get("DATABASE_URL", "sqlite:///stamphog.db"),
            instance_connection_name=env.get("INSTANCE_CONNECTION_NAME") or None,
            db_user=env.get("DB_USER") or None,
            db_password=_secret(env, "DB_PASSWORD", "DB_PASSWORD_SECRET_ID"),
            db_name=env.get("DB_NAME", "postgres"),
            admin_token=(env.get("ADMIN_TOKEN") or "").strip() or None,
            stamp_emojis=emojis or DEFAULT_STAMP_EMOJIS,
        )

    @property
    def channel_ids(self) -> Tuple[str, ...]:
        return parse_channel_ids(self.channel_ids_raw)
