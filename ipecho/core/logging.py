"""Structured logging for the service.

Every record is one JSON object per line on stdout (or a file). Records are
correlated by the request id held in a context variable, and the resolved
client address can be truncated to its network prefix before it is written.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging import LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from ipecho.core.config import LogSettings, settings

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

# Attributes every LogRecord carries; anything else on a record came from
# ``extra=`` and is emitted as a field.
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {
    "message",
    "asctime",
    "taskName",
    "color_message",
}

ADDRESS_FIELDS = ("client_ip",)
IPV4_MASK_PREFIX = 24
IPV6_MASK_PREFIX = 48


def set_request_id(request_id: str | None) -> None:
    _request_id_var.set(request_id)


def get_request_id() -> str | None:
    return _request_id_var.get()


def clear_request_id() -> None:
    _request_id_var.set(None)


def mask_address(value: Any) -> Any:
    """Truncate an IP address to its /24 (IPv4) or /48 (IPv6) network.

    Values that are not IP addresses, such as the test client's peer name,
    are returned unchanged.

    >>> mask_address("203.0.113.42")
    '203.0.113.0/24'
    >>> mask_address("2001:db8:1234:5678::1")
    '2001:db8:1234::/48'
    """
    if not isinstance(value, str):
        return value
    try:
        ip = ipaddress.ip_address(value)
    except ValueError:
        return value
    prefix = IPV4_MASK_PREFIX if ip.version == 4 else IPV6_MASK_PREFIX
    return str(ipaddress.ip_network((str(ip), prefix), strict=False))


class RequestIdFilter(logging.Filter):
    """Attach request_id from context when absent on the record."""

    def filter(self, record: LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            request_id = get_request_id()
            if request_id:
                record.request_id = request_id
        return True


class ClientAddressFilter(logging.Filter):
    """Replace client address fields with their network prefix."""

    def __init__(self, fields: tuple[str, ...] = ADDRESS_FIELDS) -> None:
        super().__init__()
        self.fields = fields

    def filter(self, record: LogRecord) -> bool:
        for field in self.fields:
            if field in record.__dict__:
                setattr(record, field, mask_address(record.__dict__[field]))
        return True


def _extra_fields(record: LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """One JSON object per record: fixed keys first, then the extras."""

    def __init__(self, *, ensure_ascii: bool = True) -> None:
        super().__init__()
        self.ensure_ascii = ensure_ascii

    def format(self, record: LogRecord) -> str:
        data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            data["request_id"] = request_id

        data.update(_extra_fields(record))

        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(data, default=str, ensure_ascii=self.ensure_ascii)


def _build_handler(log_settings: LogSettings) -> logging.Handler:
    if log_settings.output.lower() != "file":
        return logging.StreamHandler(sys.stdout)

    file_path = Path(log_settings.file_path or "logs/ipecho.log")
    file_path.parent.mkdir(parents=True, exist_ok=True)
    if log_settings.max_bytes:
        return RotatingFileHandler(
            file_path,
            maxBytes=log_settings.max_bytes,
            backupCount=log_settings.backup_count,
            encoding="utf-8",
        )
    return logging.FileHandler(file_path, encoding="utf-8")


def configure_logging(log_settings: LogSettings | None = None) -> None:
    """Install the service handler on the root logger.

    Args:
        log_settings: Optional log settings; defaults to global settings if omitted.
    """
    cfg = log_settings or settings.log

    handler = _build_handler(cfg)
    handler.addFilter(RequestIdFilter())
    if cfg.mask_client_ip:
        handler.addFilter(ClientAddressFilter())

    if cfg.format.lower() == "plain":
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    else:
        handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))

    # uvicorn's lifecycle messages go through our handler; the access log is
    # replaced by the pipeline's own request log.
    for name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True
    logging.getLogger("uvicorn.access").propagate = False
