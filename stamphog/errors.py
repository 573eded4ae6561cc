"""Exception hierarchy shared across the ingestion pipeline."""

from __future__ import annotations


class StamphogError(Exception):
    """Base class for all errors raised by the stamphog package."""


class ConfigurationError(StamphogError):
    """A required secret, token, or setting is missing."""


class MalformedEventError(StamphogError):
    """An inbound Slack payload lacks fields the handler needs."""


class SlackHistoryError(StamphogError):
    """A Slack history page could not be fetched during backfill."""

    def __init__(self, error: str | None):
        self.error = error or "unknown_error"
        super().__init__(f"slack history fetch failed: {self.error}")
