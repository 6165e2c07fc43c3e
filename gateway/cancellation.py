"""One-shot cancellation flags for create-and-wait sessions."""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from gateway.errors import ValidationError

logger = logging.getLogger("gateway.cancellation")


@dataclass(eq=False)
class _CancelState:
    cancelled: bool = False


class CancellationRegistry:
    """Maps caller-supplied cancel tokens to cancellation flags.

    Entries are created by register(), flagged by signal(), and removed when a
    session consumes the flag via is_cancelled() or finishes via release().
    A token belongs to one live session at a time; once its entry is removed
    the same string starts clean for the next session.
    All operations hold a single lock, so a flag is consumed exactly once.
    """

    def __init__(self):
        self._entries: dict[str, _CancelState] = {}
        self._lock = threading.Lock()

    def register(self, token: str) -> _CancelState:
        """Create a live, unsignaled entry for token.

        Returns:
            The entry, which the session hands back to release()

        Raises:
            ValidationError: if another session still holds token
        """
        with self._lock:
            if token in self._entries:
                logger.info("cancel_register_rejected reason=token_in_use")
                raise ValidationError(
                    "already in use by a pending session", field="cancel_token",
                )
            state = _CancelState()
            self._entries[token] = state
            return state

    def signal(self, token: str) -> bool:
        """Flag token as cancelled.

        Returns:
            True if a session was waiting on token, False if unknown (no-op)
        """
        with self._lock:
            state = self._entries.get(token)
            if state is None:
                logger.info("cancel_signal_ignored reason=unknown_token")
                return False
            state.cancelled = True
            return True

    def is_cancelled(self, token: str) -> bool:
        """Check and consume the cancellation flag for token."""
        with self._lock:
            state = self._entries.get(token)
            if state is None or not state.cancelled:
                return False
            del self._entries[token]
            return True

    def release(self, token: str, owner: Optional[_CancelState] = None) -> None:
        """Drop the entry for token when its session ends.

        With owner, the entry is dropped only if it is still that session's;
        a later session that re-registered the token keeps its entry.
        """
        with self._lock:
            state = self._entries.get(token)
            if state is None or (owner is not None and state is not owner):
                return
            del self._entries[token]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
