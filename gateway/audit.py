"""Audit logging for the agent gateway.

Provides structured audit logging for security-relevant events.
Logs to the Python logger and keeps a bounded in-memory trail for querying.
Credentials and tokens are never recorded.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger("gateway.audit")

AUDIT_MAX_ENTRIES = 1000  # Max entries kept in memory


class AuditLogger:
    """Structured audit logger with an in-memory ring buffer."""

    def __init__(self, max_entries: int = AUDIT_MAX_ENTRIES):
        self._entries: deque[dict] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def _log(self, event: str, **kwargs) -> dict:
        """Log an audit event.

        Args:
            event: Event type (e.g., "credential_resolved", "token_minted")
            **kwargs: Event-specific data

        Returns:
            The audit entry dict
        """
        entry = {
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **kwargs,
        }

        logger.info("audit event=%s %s", event,
                    " ".join(f"{k}={v}" for k, v in kwargs.items()))

        with self._lock:
            self._entries.appendleft(entry)

        return entry

    def credential_resolved(self, source: str, tool: str = "") -> dict:
        """Log which surface supplied the credential for a call."""
        return self._log("credential_resolved", source=source, tool=tool)

    def credential_missing(self, tool: str = "") -> dict:
        """Log a call that resolved to no credential."""
        return self._log("credential_missing", tool=tool)

    def token_minted(self, expires_at_ms: int) -> dict:
        """Log a token issued by /connect."""
        return self._log("token_minted", expires_at_ms=expires_at_ms)

    def wait_cancel_requested(self, pending: bool) -> dict:
        """Log a cancellation request for a create-and-wait session."""
        return self._log("wait_cancel_requested", pending=pending)

    def wait_finished(self, agent_id: Optional[str], outcome: str, elapsed_ms: int) -> dict:
        """Log the terminal outcome of a create-and-wait session."""
        return self._log("wait_finished", agent_id=agent_id, outcome=outcome, elapsed_ms=elapsed_ms)

    def get_recent(self, limit: int = 100, event_filter: Optional[str] = None) -> list[dict]:
        """Get recent audit entries.

        Args:
            limit: Max entries to return (default 100)
            event_filter: Optional event type filter

        Returns:
            List of audit entry dicts, newest first
        """
        with self._lock:
            entries = list(self._entries)
        if event_filter:
            entries = [e for e in entries if e.get("event") == event_filter]
        return entries[:limit]
