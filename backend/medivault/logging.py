"""Logging setup: request ids on every record, OTP codes never in output."""

from __future__ import annotations

import contextvars
import logging
import re

from medivault.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s request_id=%(request_id)s"

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id",
    default=None,
)

# "code=123456", "code: 123456", "'code': '123456'"
_CODE_PATTERN = re.compile(r"""(\bcode['"]?\s*[=:]\s*['"]?)\d{4,10}""", re.IGNORECASE)


class RequestIdFilter(logging.Filter):
    """Attach request_id from contextvars to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_var.get() or "-"
        return True


class OtpRedactionFilter(logging.Filter):
    """Mask anything that looks like a one-time code passed as ``code=...``."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _CODE_PATTERN.sub(r"\1******", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def configure_logging() -> None:
    """Install the handler filters once; repeated calls are no-ops."""
    root_logger = logging.getLogger()
    if getattr(root_logger, "_medivault_configured", False):
        return

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    for handler in root_logger.handlers:
        handler.addFilter(RequestIdFilter())
        handler.addFilter(OtpRedactionFilter())

    # Engine echo is governed by DATABASE_ECHO, not the root level.
    if not settings.database_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    root_logger._medivault_configured = True
