"""Create-and-wait orchestration for background agents.

A wait session creates an agent, then polls it until one of five terminal
outcomes:

    CREATING -> POLLING -> FINISHED | ERROR | EXPIRED | TIMEOUT | CANCELLED

FINISHED, ERROR and EXPIRED come from the agent service. TIMEOUT (deadline
reached) and CANCELLED (cancel token signaled) are decided here and are
normal results, not errors.

Each polling iteration suspends exactly once, at the jittered delay.
Cancellation is checked before the delay, again when the delay ends, and once
more when a poll returns (an in-flight result that lands after a cancel is
dropped). Cancellation is checked before the deadline, so it wins a tie.

Poll failures: RemoteUnavailableError (network, DNS, timeout) is transient and
the loop carries on to its next tick; any other exception aborts the session
and propagates. Creation failures always propagate.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from gateway.cancellation import CancellationRegistry
from gateway.errors import ApiError, ErrorCodes, RemoteUnavailableError, ValidationError

logger = logging.getLogger("gateway.waiter")

DEFAULT_POLL_INTERVAL_MS = 2000
DEFAULT_TIMEOUT_MS = 600_000
DEFAULT_JITTER_RATIO = 0.0

MIN_POLL_DELAY_MS = 250
MAX_POLL_DELAY_MS = 60_000


class WaitOutcome(str, Enum):
    """Terminal classification of a wait session."""
    FINISHED = "FINISHED"
    ERROR = "ERROR"
    EXPIRED = "EXPIRED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"


# Remote statuses that end a session; anything else keeps polling.
TERMINAL_STATUSES = {
    "FINISHED": WaitOutcome.FINISHED,
    "ERROR": WaitOutcome.ERROR,
    "EXPIRED": WaitOutcome.EXPIRED,
}


class RemoteJobClient(Protocol):
    async def create_agent(self, payload: dict) -> dict: ...

    async def get_agent(self, agent_id: str) -> dict: ...


@dataclass(frozen=True)
class WaitParams:
    """Caller-supplied parameters for one wait session."""
    payload: dict
    poll_interval_ms: float = DEFAULT_POLL_INTERVAL_MS
    timeout_ms: float = DEFAULT_TIMEOUT_MS
    jitter_ratio: float = DEFAULT_JITTER_RATIO
    cancel_token: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.payload, dict):
            raise ValidationError("must be an object", field="payload")
        if not _is_number(self.poll_interval_ms) or self.poll_interval_ms <= 0:
            raise ValidationError("must be a positive number", field="poll_interval_ms")
        if not _is_number(self.timeout_ms) or self.timeout_ms <= 0:
            raise ValidationError("must be a positive number", field="timeout_ms")
        if not _is_number(self.jitter_ratio) or not 0 <= self.jitter_ratio < 1:
            raise ValidationError("must be >= 0 and < 1", field="jitter_ratio")
        if self.cancel_token is not None and (
            not isinstance(self.cancel_token, str) or not self.cancel_token.strip()
        ):
            raise ValidationError("must be a non-empty string", field="cancel_token")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class WaitResult:
    """Terminal outcome plus the last known agent snapshot."""
    outcome: WaitOutcome
    agent_id: Optional[str]
    elapsed_ms: int
    agent: Optional[dict]
    statuses: list[str] = field(default_factory=list)
    immediate: bool = False

    @property
    def summary(self) -> str:
        if self.outcome is WaitOutcome.CANCELLED:
            return "createAndWait cancelled"
        if self.outcome is WaitOutcome.TIMEOUT:
            return "createAndWait timed out"
        if self.immediate:
            return f"createAndWait finished immediately with status: {self.outcome.value}"
        return f"createAndWait completed with status: {self.outcome.value}"

    def to_dict(self) -> dict:
        return {
            "summary": self.summary,
            "finalStatus": self.outcome.value,
            "agentId": self.agent_id,
            "elapsedMs": self.elapsed_ms,
            "agent": self.agent,
            "statuses": list(self.statuses),
        }


@dataclass
class WaitSession:
    """In-memory state of one create-and-wait call."""
    params: WaitParams
    started_at: float
    deadline: float
    agent_id: Optional[str] = None
    snapshot: Optional[dict] = None
    statuses: list[str] = field(default_factory=list)
    polls: int = 0

    def observe(self, agent: Any) -> Optional[WaitOutcome]:
        """Record a snapshot and return its terminal outcome, if any."""
        if isinstance(agent, dict):
            self.snapshot = agent
            status = agent.get("status")
        else:
            status = None
        if status is not None:
            self.statuses.append(str(status))
        return TERMINAL_STATUSES.get(status) if isinstance(status, str) else None


def compute_delay_ms(
    base_ms: float,
    jitter_ratio: float,
    rng: Optional[random.Random] = None,
) -> int:
    """Jitter base_ms by +/- jitter_ratio and clamp to [250, 60000] ms."""
    rng = rng or random
    jitter = (rng.random() * 2 - 1) * jitter_ratio
    delay = int(base_ms * (1 + jitter))
    return min(MAX_POLL_DELAY_MS, max(MIN_POLL_DELAY_MS, delay))


class WaitOrchestrator:
    """Drives wait sessions against a RemoteJobClient.

    Args:
        registry: Shared cancellation registry
        clock: Monotonic clock in seconds
        sleep: Coroutine function sleeping for a number of seconds
        rng: Random source for jitter
    """

    def __init__(
        self,
        registry: CancellationRegistry,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.registry = registry
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _elapsed_ms(self, session: WaitSession) -> int:
        return int(round((self._clock() - session.started_at) * 1000))

    def _cancelled(self, session: WaitSession) -> bool:
        token = session.params.cancel_token
        return bool(token) and self.registry.is_cancelled(token)

    def _interruption(self, session: WaitSession) -> Optional[WaitOutcome]:
        if self._cancelled(session):
            return WaitOutcome.CANCELLED
        if self._clock() >= session.deadline:
            return WaitOutcome.TIMEOUT
        return None

    def _finish(
        self,
        session: WaitSession,
        outcome: WaitOutcome,
        immediate: bool = False,
    ) -> WaitResult:
        result = WaitResult(
            outcome=outcome,
            agent_id=session.agent_id,
            elapsed_ms=self._elapsed_ms(session),
            agent=session.snapshot,
            statuses=list(session.statuses),
            immediate=immediate,
        )
        logger.info(
            "wait_finished agent_id=%s outcome=%s elapsed_ms=%d polls=%d",
            result.agent_id, outcome.value, result.elapsed_ms, session.polls,
        )
        return result

    async def create_and_wait(self, params: WaitParams, client: RemoteJobClient) -> WaitResult:
        """Create an agent and poll it until a terminal outcome.

        Raises:
            ValidationError: if cancel_token is held by another live session
            ApiError: if the creation response carries no agent id
            Whatever client.create_agent raises, and any non-transient
            error from client.get_agent.
        """
        started_at = self._clock()
        session = WaitSession(
            params=params,
            started_at=started_at,
            deadline=started_at + params.timeout_ms / 1000.0,
        )
        token = params.cancel_token
        # Raises ValidationError while another session holds the token
        owner = self.registry.register(token) if token else None

        try:
            created = await client.create_agent(params.payload)
            session.agent_id = created.get("id") if isinstance(created, dict) else None
            if not isinstance(session.agent_id, str) or not session.agent_id:
                raise ApiError(
                    "agent service returned no agent id",
                    status_code=502,
                    code=ErrorCodes.REMOTE_ERROR,
                    response=created,
                )
            logger.info(
                "wait_started agent_id=%s poll_interval_ms=%s timeout_ms=%s cancellable=%s",
                session.agent_id, params.poll_interval_ms, params.timeout_ms, bool(token),
            )

            outcome = session.observe(created)
            if outcome is not None:
                return self._finish(session, outcome, immediate=True)

            while True:
                outcome = self._interruption(session)
                if outcome is not None:
                    return self._finish(session, outcome)

                await self._sleep(
                    compute_delay_ms(params.poll_interval_ms, params.jitter_ratio, self._rng) / 1000.0
                )
                if self._cancelled(session):
                    return self._finish(session, WaitOutcome.CANCELLED)

                try:
                    current = await client.get_agent(session.agent_id)
                except RemoteUnavailableError as e:
                    logger.warning("wait_poll_transient_error agent_id=%s error=%s", session.agent_id, e)
                    continue
                session.polls += 1

                if self._cancelled(session):
                    # The poll was already in flight; its answer is discarded.
                    return self._finish(session, WaitOutcome.CANCELLED)

                outcome = session.observe(current)
                if outcome is not None:
                    return self._finish(session, outcome)
        finally:
            if token:
                self.registry.release(token, owner)
