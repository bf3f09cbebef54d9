"""
Monitoring signal tracker - in-memory ring buffer.

Operator-facing signals (past_due grace, invalid transitions, failed invoice
payments, rejected webhook signatures) are recorded here by error code.
Persists to <log_dir>/issues.json on shutdown and reloads on startup.
Auto-clears issues that haven't recurred in 1 hour.
"""
from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

MAX_ISSUES = 100
AUTO_CLEAR_SECONDS = 3600  # 1 hour


@dataclass
class TrackedIssue:
    code: str
    component: str
    count: int = 1
    first_seen: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    last_context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "component": self.component,
            "count": self.count,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "last_context": self.last_context,
        }


class IssueTracker:
    """Ring buffer of recent monitoring signals."""

    def __init__(self, persist_path: str = "logs/issues.json", max_size: int = MAX_ISSUES):
        self._issues: OrderedDict[str, TrackedIssue] = OrderedDict()
        self._lock = threading.Lock()
        self._max_size = max_size
        self._persist_path = persist_path

    def record(
        self,
        code: str,
        component: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record an issue occurrence."""
        if component is None:
            # ENT-WHK-004 → whk
            parts = code.split("-")
            component = parts[1].lower() if len(parts) >= 3 else "unknown"

        with self._lock:
            if code in self._issues:
                issue = self._issues[code]
                issue.count += 1
                issue.last_seen = time.time()
                issue.last_context = dict(context or {})
                self._issues.move_to_end(code)
            else:
                self._issues[code] = TrackedIssue(
                    code=code, component=component, last_context=dict(context or {}),
                )
                while len(self._issues) > self._max_size:
                    self._issues.popitem(last=False)

    def get(self, code: str) -> Optional[TrackedIssue]:
        with self._lock:
            return self._issues.get(code)

    def get_active_issues(self) -> list[dict]:
        """Return issues that have recurred within the last hour."""
        cutoff = time.time() - AUTO_CLEAR_SECONDS
        with self._lock:
            return [
                issue.to_dict()
                for issue in self._issues.values()
                if issue.last_seen >= cutoff
            ]

    def persist(self) -> None:
        """Save current issues to disk."""
        try:
            os.makedirs(os.path.dirname(self._persist_path) or ".", exist_ok=True)
            with self._lock:
                data = [issue.to_dict() for issue in self._issues.values()]
            with open(self._persist_path, "w") as f:
                json.dump(data, f, indent=2, default=str)
            logger.info("issue_tracker_persisted", extra={"count": len(data)})
        except OSError as e:
            logger.warning("issue_tracker_persist_failed", extra={"error": str(e)})

    def reload(self) -> None:
        """Reload issues from disk."""
        if not os.path.exists(self._persist_path):
            return
        try:
            with open(self._persist_path, "r") as f:
                data = json.load(f)
            with self._lock:
                for item in data:
                    code = item["code"]
                    self._issues[code] = TrackedIssue(
                        code=code,
                        component=item.get("component", "unknown"),
                        count=item.get("count", 1),
                        first_seen=item.get("first_seen", time.time()),
                        last_seen=item.get("last_seen", time.time()),
                        last_context=item.get("last_context", {}),
                    )
            logger.info("issue_tracker_reloaded", extra={"count": len(self._issues)})
        except (OSError, ValueError, KeyError) as e:
            logger.warning("issue_tracker_reload_failed", extra={"error": str(e)})

    def clear(self) -> None:
        with self._lock:
            self._issues.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._issues)


def _default_persist_path() -> str:
    from entitlements.config import settings
    return os.path.join(settings.log_dir, "issues.json")


# Module-level singleton
issue_tracker = IssueTracker(persist_path=_default_persist_path())
