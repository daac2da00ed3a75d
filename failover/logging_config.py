"""Structured logging setup for the failover tool.

Every run emits one line per significant step. Lines go to stderr (captured
by keepalived) and, when enabled, to the local syslog socket so operators can
follow transitions with ``journalctl -t vip-failover``.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import socket
from datetime import datetime, timezone

from failover.config import settings

SYSLOG_IDENT = "vip-failover"

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


def _record_extras(record: logging.LogRecord) -> dict:
    return {k: v for k, v in vars(record).items() if k not in _RESERVED_ATTRS}


class FailoverJSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(self, instance_id: str | None = None):
        super().__init__()
        self.instance_id = instance_id
        self.hostname = socket.gethostname()

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": "vip-failover",
            "host": self.hostname,
            "instance_id": self.instance_id,
        }
        extras = _record_extras(record)
        if extras:
            payload["extra"] = extras
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class FailoverTextFormatter(logging.Formatter):
    """Human readable single-line format."""

    def __init__(self, instance_id: str | None = None):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s [%(instance)s] %(name)s: %(message)s",
            datefmt="%b %d %H:%M:%S",
        )
        self.instance_id = instance_id

    def format(self, record: logging.LogRecord) -> str:
        record.instance = self.instance_id or "-"
        return super().format(record)


def _build_formatter(instance_id: str | None) -> logging.Formatter:
    if settings.log_format == "text":
        return FailoverTextFormatter(instance_id=instance_id)
    return FailoverJSONFormatter(instance_id=instance_id)


def setup_failover_logging(instance_id: str | None = None) -> None:
    """Configure root logging for a single invocation.

    Safe to call more than once; the second call (after the instance id is
    known) replaces the handlers installed by the first.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_failover_handler", False):
            root.removeHandler(handler)
            handler.close()

    root.setLevel(settings.log_level.upper())
    formatter = _build_formatter(instance_id)

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    stream._failover_handler = True
    root.addHandler(stream)

    if settings.log_syslog:
        try:
            syslog = logging.handlers.SysLogHandler(
                address=settings.syslog_address,
                facility=logging.handlers.SysLogHandler.LOG_DAEMON,
            )
        except OSError as e:
            root.warning(f"Syslog unavailable at {settings.syslog_address}: {e}")
        else:
            syslog.ident = f"{SYSLOG_IDENT}: "
            syslog.setFormatter(formatter)
            syslog._failover_handler = True
            root.addHandler(syslog)

    # botocore is chatty at INFO about credential discovery
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
