"""
Error registry - loads and validates registry.yaml.

Two kinds of entries share the file:
  - errors raised as EntitlementError and answered with ``http_status``
    (4xx/5xx), optionally with a ``retry_after_s`` hint for retryable ones;
  - monitoring signals (tag ``signal``, ``http_status: 200``) that are only
    ever recorded in the issue tracker, never raised to a client.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import yaml

from entitlements.core.errors import CODE_PATTERN

logger = logging.getLogger(__name__)

VALID_DOMAINS = {"API", "CFG", "DB", "PAY", "QTA", "SUB", "WHK", "SEC", "SYS"}
VALID_SEVERITIES = {"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"}
REQUIRED_FIELDS = {"code", "domain", "title", "severity", "retryable", "user_action_required", "http_status", "safe_message", "remediation"}
SIGNAL_TAG = "signal"


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    domain: str
    title: str
    severity: str
    retryable: bool
    user_action_required: bool
    http_status: int
    safe_message: str
    remediation: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    retry_after_s: Optional[int] = None

    @property
    def is_signal(self) -> bool:
        return SIGNAL_TAG in self.tags


class RegistryValidationError(Exception):
    """Raised when registry.yaml has structural errors."""


def _validate_entry(idx: int, raw: dict) -> ErrorEntry:
    missing = REQUIRED_FIELDS - set(raw.keys())
    if missing:
        raise RegistryValidationError(f"Entry {idx} ({raw.get('code', '?')}): missing fields {missing}")

    code = raw["code"]
    if not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"Invalid code format: {code!r}")

    # ENT-<DOMAIN>-NNN must agree with the declared domain
    domain = raw["domain"]
    code_domain = code.split("-")[1]
    if domain != code_domain:
        raise RegistryValidationError(f"{code}: domain {domain!r} doesn't match code prefix {code_domain!r}")
    if domain not in VALID_DOMAINS:
        raise RegistryValidationError(f"{code}: unknown domain {domain!r}")

    if raw["severity"] not in VALID_SEVERITIES:
        raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")

    entry = ErrorEntry(
        code=code,
        domain=domain,
        title=raw["title"],
        severity=raw["severity"],
        retryable=bool(raw["retryable"]),
        user_action_required=bool(raw["user_action_required"]),
        http_status=int(raw["http_status"]),
        safe_message=raw["safe_message"],
        remediation=raw.get("remediation") or [],
        tags=raw.get("tags") or [],
        retry_after_s=raw.get("retry_after_s"),
    )

    if entry.is_signal:
        if entry.http_status != 200:
            raise RegistryValidationError(f"{code}: signal entries must use http_status 200")
    elif not 400 <= entry.http_status <= 599:
        raise RegistryValidationError(f"{code}: http_status {entry.http_status} is not an error status")

    if entry.retry_after_s is not None:
        if not entry.retryable:
            raise RegistryValidationError(f"{code}: retry_after_s on a non-retryable entry")
        if not isinstance(entry.retry_after_s, int) or entry.retry_after_s <= 0:
            raise RegistryValidationError(f"{code}: retry_after_s must be a positive integer")

    return entry


class ErrorRegistry:
    """Loads, validates, and provides lookup for error codes."""

    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version: int = 0

    def load(self, path: str | None = None) -> None:
        if path is None:
            path = os.path.join(os.path.dirname(__file__), "registry.yaml")

        with open(path, "r") as f:
            data = yaml.safe_load(f)

        self.schema_version = data.get("schema_version", 0)
        errors_list = data.get("errors", [])
        if not isinstance(errors_list, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for idx, raw in enumerate(errors_list):
            entry = _validate_entry(idx, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"Duplicate code: {entry.code}")
            entries[entry.code] = entry

        self._entries = entries
        logger.info(
            "error_registry_loaded",
            extra={
                "count": len(entries),
                "signals": sum(1 for e in entries.values() if e.is_signal),
                "schema_version": self.schema_version,
            },
        )

    def get(self, code: str) -> ErrorEntry | None:
        return self._entries.get(code)

    def lookup(self, code: str) -> ErrorEntry:
        """Lookup by code, raising KeyError if not found."""
        entry = self._entries.get(code)
        if entry is None:
            raise KeyError(f"Unknown error code: {code!r}")
        return entry

    def all_codes(self) -> list[str]:
        return list(self._entries.keys())

    def codes_for_domain(self, domain: str) -> list[str]:
        return [c for c, e in self._entries.items() if e.domain == domain]

    def signal_codes(self) -> list[str]:
        return [c for c, e in self._entries.items() if e.is_signal]

    def __len__(self) -> int:
        return len(self._entries)


# Loaded once at startup
error_registry = ErrorRegistry()
