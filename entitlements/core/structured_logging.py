"""
Structured logging with structlog.

Configures structlog to output JSON lines with rotation.
Backward-compatible with stdlib logging - existing logger.info() calls
continue to work and get enriched with structlog processors.
"""
from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import time
from contextvars import ContextVar

import structlog

# ── Context vars for correlation ──────────────────────────────────────
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)

APP_VERSION = "1.0.0"
SERVICE_NAME = "entitlements"

_startup_time: float = time.time()


def get_uptime_s() -> float:
    return time.time() - _startup_time


def _inject_context(logger_name: str, method_name: str, event_dict: dict) -> dict:
    """Structlog processor: inject correlation context from contextvars."""
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = APP_VERSION

    rid = request_id_var.get(None)
    if rid:
        event_dict["request_id"] = rid

    cid = correlation_id_var.get(None)
    if cid:
        event_dict["correlation_id"] = cid

    uid = user_id_var.get(None)
    if uid:
        event_dict["user_id"] = uid

    return event_dict


def _lowercase_level(logger_name: str, method_name: str, event_dict: dict) -> dict:
    level = event_dict.get("level")
    if level:
        event_dict["level"] = level.lower()
    return event_dict


def setup_logging(
    log_dir: str = "logs",
    log_file: str = "entitlements.jsonl",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    log_level: int | str = logging.INFO,
) -> None:
    """Initialize structlog + stdlib logging with JSON output and rotation.

    Call once at startup. After this, both structlog.get_logger() and
    logging.getLogger() produce JSON-formatted output with correlation context.
    """
    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        _lowercase_level,
        structlog.stdlib.add_logger_name,
        # extra={...} fields from stdlib logger calls
        structlog.stdlib.ExtraAdder(),
        _inject_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
    )

    # File handler with rotation
    file_handler = None
    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, log_file),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
    except OSError:
        # Read-only filesystem: stderr only
        file_handler = None

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)
    root.addHandler(console_handler)
    if file_handler:
        root.addHandler(file_handler)

    # Quiet noisy third-party loggers
    for noisy in ("httpcore", "httpx", "urllib3", "asyncio", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
