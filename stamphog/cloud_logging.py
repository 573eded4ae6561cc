"""cloud_logging – Google Cloud Logging facade

Every module in the package logs through :pyfunc:`log_text`, which mirrors the
``google.cloud.logging.Logger.log_text`` signature.  Until
:pyfunc:`use_gcp_logger` is called (``main_driver.py`` does this at startup)
messages go to the stdlib ``stamphog`` logger, so tests and the CLI never need
Cloud credentials.

Usage mirrors the rest of the code-base::

    from stamphog import cloud_logging as logging
    logging.log_text("Backfill finished", severity="INFO")
"""

from __future__ import annotations

import logging as pylogging
from typing import Any, Optional

_stdlib_logger = pylogging.getLogger("stamphog")
_gcp_logger: Optional[Any] = None


def use_gcp_logger(gcp_logger: Optional[Any]) -> None:
    """Route :pyfunc:`log_text` to *gcp_logger* (``None`` restores stdlib)."""
    global _gcp_logger  # noqa: PLW0603 – process-wide logging sink
    if gcp_logger is not None and not hasattr(gcp_logger, "log_text"):
        raise TypeError("gcp_logger must expose log_text()")
    _gcp_logger = gcp_logger


def log_text(message: str, *, severity: str = "INFO") -> None:
    level = severity.upper()
    if _gcp_logger is not None:
        _gcp_logger.log_text(message, severity=level)
        return
    _stdlib_logger.log(getattr(pylogging, level, pylogging.INFO), message)
