"""cli.py – Stamphog command-line interface

Administrative commands run either *locally* (against the database and Slack
credentials from the environment) or *remotely* by forwarding to the admin
routes of a running Flask/Gunicorn server.

Usage examples
--------------
# Local execution
$ python -m stamphog.cli init-db
$ python -m stamphog.cli backfill --channel C0123 --max-messages 500
$ python -m stamphog.cli leaderboard --window-days 30

# Remote execution – forward the request over HTTP
$ python -m stamphog.cli --api-url https://stamphog.example.com prune

Environment variables
---------------------
STAMPHOG_API_URL  If set, acts like the --api-url option.
ADMIN_TOKEN       Bearer token for remote admin calls.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

import click
import requests

from stamphog import cloud_logging as logging
from stamphog.config import Settings

# ---------------------------------------------------------------------------
# HTTP helpers (remote execution)
# ---------------------------------------------------------------------------


def _headers(token: Optional[str]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


def _post_json(url: str, payload: Dict[str, Any], token: Optional[str] = None) -> Any:
    """POST a JSON payload and return the decoded JSON response."""
    logging.log_text(f"POST {url} – payload size: {len(json.dumps(payload))} bytes", severity="DEBUG")
    try:
        response = requests.post(url, json=payload, headers=_headers(token), timeout=300)
        response.raise_for_status()
        return response.json()
    except requests.RequestException as exc:
        raise click.ClickException(f"HTTP call failed: {exc}") from exc


def _get_json(url: str, params: Dict[str, Any]) -> Any:
    try:
        response = requests.get(
            url, params={k: v for k, v in params.items() if v is not None}, timeout=30
        )
        response.raise_for_status()
        return response.json()
    except requests.RequestException as exc:
        raise click.ClickException(f"HTTP call failed: {exc}") from exc


def _echo(result: Any) -> None:
    click.echo(json.dumps(result, indent=2, sort_keys=True))


def _local_engine(settings: Settings):
    from stamphog.database.models import init_db
    from stamphog.helper_functions import build_engine

    engine = build_engine(
        settings.database_url,
        instance_connection_name=settings.instance_connection_name,
        db_user=settings.db_user,
        db_password=settings.db_password,
        db_name=settings.db_name,
    )
    init_db(engine)
    return engine


def _local_gateway(settings: Settings):
    from stamphog.inputs.slack import SlackGateway

    if not settings.slack_bot_token:
        raise click.ClickException("missing SLACK_BOT_TOKEN")
    return SlackGateway(settings.slack_bot_token)


# ---------------------------------------------------------------------------
# Click entry-point
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--api-url",
    envvar="STAMPHOG_API_URL",
    default=None,
    metavar="URL",
    help="If provided, commands are forwarded to the HTTP API at this URL "
    "instead of running locally.",
)
@click.option(
    "--admin-token",
    envvar="ADMIN_TOKEN",
    default=None,
    metavar="TOKEN",
    help="Bearer token for the admin routes (remote execution only).",
)
@click.pass_context
def cli(ctx: click.Context, api_url: Optional[str], admin_token: Optional[str]):  # noqa: D401
    """Stamphog command-line interface."""
    ctx.obj = {"api_url": api_url, "admin_token": admin_token}


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@cli.command("init-db", help="Create the database tables if they do not exist.")
def init_db_command() -> None:
    engine = _local_engine(Settings.from_env())
    click.echo(f"Initialised tables on {engine.url.render_as_string(hide_password=True)}")


@cli.command("backfill", help="Rebuild requests and stamps from Slack channel history.")
@click.option("--channel", "channel_id", default=None, metavar="ID",
              help="Single channel to backfill (default: every id in CHANNEL_IDS).")
@click.option("--oldest-ts", default=None, metavar="TS",
              help="Earliest Slack ts to scan; clamped to the 90 day window.")
@click.option("--max-messages", type=int, default=None,
              help="Scan cap per channel (default 5000, ceiling 50000).")
@click.pass_context
def backfill_command(
    ctx: click.Context,
    channel_id: Optional[str],
    oldest_ts: Optional[str],
    max_messages: Optional[int],
) -> None:
    api_url = ctx.obj.get("api_url")
    if api_url:
        payload = {"channelId": channel_id, "oldestTs": oldest_ts, "maxMessages": max_messages}
        _echo(
            _post_json(
                api_url.rstrip("/") + "/admin/backfill",
                {k: v for k, v in payload.items() if v is not None},
                ctx.obj.get("admin_token"),
            )
        )
        return

    from stamphog.backfill import backfill_configured_channels, run_backfill
    from stamphog.errors import StamphogError

    settings = Settings.from_env()
    engine = _local_engine(settings)
    gateway = _local_gateway(settings)
    try:
        if channel_id:
            result = run_backfill(
                engine,
                gateway,
                channel_id,
                oldest_ts=oldest_ts,
                max_messages=max_messages,
                stamp_emojis=settings.stamp_emojis,
            ).to_dict()
        else:
            result = backfill_configured_channels(
                engine, gateway, settings, oldest_ts=oldest_ts, max_messages=max_messages
            )
    except StamphogError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo(result)


@cli.command("prune", help="Delete records older than the 90 day retention window.")
@click.pass_context
def prune_command(ctx: click.Context) -> None:
    api_url = ctx.obj.get("api_url")
    if api_url:
        _echo(_post_json(api_url.rstrip("/") + "/admin/prune", {}, ctx.obj.get("admin_token")))
        return

    from stamphog.database.maintenance import prune_data_older_than_retention_window

    _echo(prune_data_older_than_retention_window(_local_engine(Settings.from_env())))


@cli.command("leaderboard", help="Print the stamp leaderboard.")
@click.option("-w", "--window-days", type=int, default=None,
              help="Only count activity from the last N days.")
@click.option("--limit", type=int, default=None, help="Rows per ranking (1-100).")
@click.pass_context
def leaderboard_command(
    ctx: click.Context, window_days: Optional[int], limit: Optional[int]
) -> None:
    api_url = ctx.obj.get("api_url")
    if api_url:
        _echo(
            _get_json(
                api_url.rstrip("/") + "/api/leaderboard",
                {"windowDays": window_days, "limit": limit},
            )
        )
        return

    from stamphog.leaderboard import leaderboard

    _echo(leaderboard(_local_engine(Settings.from_env()), window_days=window_days, limit=limit))


@cli.command("migrate-legacy", help="Import stamp rows exported from the legacy layout.")
@click.argument("source", type=click.File("r"))
def migrate_legacy_command(source) -> None:
    from stamphog.database.maintenance import migrate_legacy_stamp_rows

    try:
        rows = json.load(source)
    except ValueError as exc:
        raise click.ClickException(f"invalid JSON: {exc}") from exc
    if not isinstance(rows, list):
        raise click.ClickException("expected a JSON array of legacy rows")

    _echo(migrate_legacy_stamp_rows(_local_engine(Settings.from_env()), rows))


# ---------------------------------------------------------------------------
# Entry-point shim for `python -m stamphog.cli`
# ---------------------------------------------------------------------------

if __name__ == "__main__":  # pragma: no cover – manual execution shortcut
    cli()  # pylint: disable=no-value-for-parameter
