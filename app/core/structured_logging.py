"""
Structured logging for the payment engine.

Every record (structlog or plain ``logging.getLogger(__name__)``) goes
through one processor chain and is rendered as a JSON line:

    {"ts": ..., "level": "info", "logger": "app.services.billing_service",
     "event": "Subscription invoice created: ...", "service": "nostrmaxi-payments",
     "version": "0.4.0", "request_id": ..., "correlation_id": ...}

Credentials never reach the log: API keys, provider admin keys, macaroons,
runes, webhook signatures and payment preimages are masked by
``redact_secrets`` before rendering.
"""
from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
import time
from contextvars import ContextVar
from typing import Any, List, Optional

import structlog

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

APP_VERSION = "0.4.0"
SERVICE_NAME = "nostrmaxi-payments"

_started_at: float = time.time()

_SECRET_KEYS = frozenset({
    "api_key", "apikey", "x-api-key", "admin_key", "macaroon", "macaroon_hex",
    "rune", "webhook_secret", "signature", "btcpay-sig", "preimage", "authorization",
})
_NM_API_KEY = re.compile(r"\b(nm_[a-z0-9]{8})_[A-Za-z0-9_-]+")

_QUIET_LOGGERS = ("httpcore", "httpx", "asyncio", "watchfiles", "sqlalchemy.engine", "alembic.runtime.migration")


def get_uptime_s() -> float:
    return time.time() - _started_at


def _mask(value: str) -> str:
    if len(value) <= 8:
        return "[REDACTED]"
    return f"{value[:4]}****{value[-4:]}"


def redact_secrets(_logger: Any, _method: str, event_dict: dict) -> dict:
    """Mask credential-bearing fields and inline ``nm_`` API keys."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        if key.lower().rsplit(".", 1)[-1] in _SECRET_KEYS:
            event_dict[key] = _mask(value)
        elif "nm_" in value:
            event_dict[key] = _NM_API_KEY.sub(r"\1_****", value)
    return event_dict


def _stamp_service(_logger: Any, _method: str, event_dict: dict) -> dict:
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = APP_VERSION
    for name, var in (("request_id", request_id_var), ("correlation_id", correlation_id_var)):
        value = var.get(None)
        if value:
            event_dict[name] = value
    level = event_dict.get("level")
    if level:
        event_dict["level"] = level.lower()
    return event_dict


def _shared_processors() -> List[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        _stamp_service,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _rotating_file_handler(log_dir: str, log_file: str, max_bytes: int, backup_count: int) -> Optional[logging.Handler]:
    try:
        os.makedirs(log_dir, exist_ok=True)
        return logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, log_file),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    except OSError as exc:
        # Read-only volume: stderr only
        sys.stderr.write(f"file logging disabled ({log_dir}): {exc}\n")
        return None


def setup_logging(
    log_dir: str = "logs",
    log_file: str = "nostrmaxi-payments.jsonl",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    log_level: int = logging.INFO,
) -> None:
    """Install the JSON processor chain on the root logger. Call once at startup."""
    shared = _shared_processors()

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(default=str),
        ],
    )

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    file_handler = _rotating_file_handler(log_dir, log_file, max_bytes, backup_count)
    if file_handler is not None:
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
