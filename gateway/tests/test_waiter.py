"""Tests for create-and-wait orchestration."""

import asyncio
import random

import httpx
import pytest

from gateway.cancellation import CancellationRegistry
from gateway.errors import ApiError, NotFoundError, RemoteUnavailableError, ValidationError
from gateway.waiter import (
    MAX_POLL_DELAY_MS,
    MIN_POLL_DELAY_MS,
    WaitOrchestrator,
    WaitOutcome,
    WaitParams,
    compute_delay_ms,
)

PAYLOAD = {"prompt": {"text": "fix the bug"}, "source": {"repository": "https://github.com/o/r"}}


class FakeTime:
    """Monotonic clock (seconds) whose sleep advances time instantly."""

    def __init__(self):
        self.now = 100.0
        self.sleeps = []
        self.on_sleep = None

    def clock(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep:
            self.on_sleep()


class FakeAgentClient:
    """Scripted RemoteJobClient.

    polls is a list of dicts (returned) or exceptions (raised), consumed in
    order; the last entry repeats once the script runs out.
    """

    def __init__(self, created=None, polls=None, create_error=None):
        self.created = created if created is not None else {"id": "bc_1", "status": "CREATING"}
        self.polls = list(polls or [])
        self.create_error = create_error
        self.create_calls = []
        self.get_calls = []
        self.on_get = None

    async def create_agent(self, payload):
        self.create_calls.append(payload)
        if self.create_error:
            raise self.create_error
        return self.created

    async def get_agent(self, agent_id):
        self.get_calls.append(agent_id)
        if self.on_get:
            self.on_get()
        item = self.polls.pop(0) if len(self.polls) > 1 else self.polls[0]
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def registry():
    return CancellationRegistry()


@pytest.fixture
def orchestrator(registry, fake_time):
    return WaitOrchestrator(
        registry, clock=fake_time.clock, sleep=fake_time.sleep, rng=random.Random(0),
    )


def status(name, **extra):
    return {"id": "bc_1", "status": name, **extra}


class TestWaitParams:
    """Validation of wait parameters."""

    def test_defaults(self):
        params = WaitParams(payload=PAYLOAD)
        assert params.poll_interval_ms == 2000
        assert params.timeout_ms == 600_000
        assert params.jitter_ratio == 0
        assert params.cancel_token is None

    @pytest.mark.parametrize("field,value", [
        ("poll_interval_ms", 0),
        ("poll_interval_ms", -5),
        ("timeout_ms", 0),
        ("jitter_ratio", -0.1),
        ("jitter_ratio", 1),
        ("cancel_token", ""),
        ("cancel_token", "   "),
    ])
    def test_rejects_invalid(self, field, value):
        with pytest.raises(ValidationError) as exc:
            WaitParams(payload=PAYLOAD, **{field: value})
        assert exc.value.field == field

    def test_rejects_bool_numbers(self):
        with pytest.raises(ValidationError):
            WaitParams(payload=PAYLOAD, timeout_ms=True)

    def test_rejects_non_dict_payload(self):
        with pytest.raises(ValidationError) as exc:
            WaitParams(payload="prompt")
        assert exc.value.field == "payload"


class TestComputeDelay:
    """Jitter and clamping of poll delays."""

    def test_no_jitter(self):
        assert compute_delay_ms(2000, 0) == 2000

    def test_clamped_low(self):
        assert compute_delay_ms(10, 0) == MIN_POLL_DELAY_MS

    def test_clamped_high(self):
        assert compute_delay_ms(600_000, 0) == MAX_POLL_DELAY_MS

    def test_jitter_within_bounds(self):
        rng = random.Random(42)
        for _ in range(200):
            delay = compute_delay_ms(1000, 0.5, rng)
            assert 500 <= delay <= 1500


class TestTerminalOutcomes:
    """Remote terminal statuses."""

    @pytest.mark.asyncio
    async def test_finishes_after_polls(self, orchestrator, fake_time):
        client = FakeAgentClient(polls=[status("RUNNING"), status("RUNNING"), status("FINISHED", summary="done")])
        params = WaitParams(payload=PAYLOAD, poll_interval_ms=1000, timeout_ms=10_000)

        result = await orchestrator.create_and_wait(params, client)

        assert result.outcome is WaitOutcome.FINISHED
        assert result.agent_id == "bc_1"
        assert result.agent["summary"] == "done"
        assert result.statuses == ["CREATING", "RUNNING", "RUNNING", "FINISHED"]
        assert result.elapsed_ms == 3000
        assert client.create_calls == [PAYLOAD]
        assert client.get_calls == ["bc_1", "bc_1", "bc_1"]
        assert fake_time.sleeps == [1.0, 1.0, 1.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("final", ["ERROR", "EXPIRED"])
    async def test_error_and_expired(self, orchestrator, final):
        client = FakeAgentClient(polls=[status(final)])
        result = await orchestrator.create_and_wait(WaitParams(payload=PAYLOAD), client)
        assert result.outcome.value == final
        assert result.to_dict()["summary"] == f"createAndWait completed with status: {final}"

    @pytest.mark.asyncio
    async def test_terminal_on_creation_returns_immediately(self, orchestrator, fake_time):
        client = FakeAgentClient(created=status("FINISHED"))
        result = await orchestrator.create_and_wait(WaitParams(payload=PAYLOAD), client)

        assert result.outcome is WaitOutcome.FINISHED
        assert result.immediate is True
        assert result.elapsed_ms == 0
        assert client.get_calls == []
        assert fake_time.sleeps == []
        assert "immediately" in result.summary

    @pytest.mark.asyncio
    async def test_unknown_status_keeps_polling(self, orchestrator):
        client = FakeAgentClient(polls=[status("PAUSED"), {"id": "bc_1"}, status("FINISHED")])
        result = await orchestrator.create_and_wait(WaitParams(payload=PAYLOAD), client)
        assert result.outcome is WaitOutcome.FINISHED
        assert result.statuses == ["CREATING", "PAUSED", "FINISHED"]

    @pytest.mark.asyncio
    async def test_result_dict_shape(self, orchestrator):
        client = FakeAgentClient(polls=[status("FINISHED")])
        data = (await orchestrator.create_and_wait(WaitParams(payload=PAYLOAD), client)).to_dict()
        assert set(data) == {"summary", "finalStatus", "agentId", "elapsedMs", "agent", "statuses"}
        assert data["finalStatus"] == "FINISHED"
        assert data["agentId"] == "bc_1"


class TestTimeout:
    """Deadline handling."""

    @pytest.mark.asyncio
    async def test_times_out(self, orchestrator, fake_time):
        client = FakeAgentClient(polls=[status("RUNNING")])
        params = WaitParams(payload=PAYLOAD, poll_interval_ms=1000, timeout_ms=3500)

        result = await orchestrator.create_and_wait(params, client)

        assert result.outcome is WaitOutcome.TIMEOUT
        assert result.summary == "createAndWait timed out"
        # Polls at 1s, 2s, 3s, 4s; deadline (3.5s) noticed before the fifth sleep
        assert len(client.get_calls) == 4
        assert result.elapsed_ms == 4000
        assert result.agent == status("RUNNING")

    @pytest.mark.asyncio
    async def test_timeout_keeps_creation_snapshot(self, orchestrator):
        client = FakeAgentClient(polls=[RemoteUnavailableError("https://api", httpx.ConnectError("down"))])
        params = WaitParams(payload=PAYLOAD, poll_interval_ms=1000, timeout_ms=2000)

        result = await orchestrator.create_and_wait(params, client)

        assert result.outcome is WaitOutcome.TIMEOUT
        assert result.agent == {"id": "bc_1", "status": "CREATING"}
        assert result.statuses == ["CREATING"]

    @pytest.mark.asyncio
    async def test_timeout_not_reported_as_error(self, orchestrator):
        client = FakeAgentClient(polls=[status("RUNNING")])
        result = await orchestrator.create_and_wait(
            WaitParams(payload=PAYLOAD, poll_interval_ms=500, timeout_ms=500), client,
        )
        assert result.outcome is WaitOutcome.TIMEOUT


class TestCancellation:
    """Cancel tokens."""

    @pytest.mark.asyncio
    async def test_cancel_during_sleep(self, orchestrator, registry, fake_time):
        client = FakeAgentClient(polls=[status("RUNNING")])
        params = WaitParams(payload=PAYLOAD, poll_interval_ms=1000, cancel_token="job-1")

        def cancel_on_second_sleep():
            if len(fake_time.sleeps) == 2:
                registry.signal("job-1")

        fake_time.on_sleep = cancel_on_second_sleep
        result = await orchestrator.create_and_wait(params, client)

        assert result.outcome is WaitOutcome.CANCELLED
        assert result.summary == "createAndWait cancelled"
        assert len(client.get_calls) == 1
        assert result.statuses == ["CREATING", "RUNNING"]

    @pytest.mark.asyncio
    async def test_poll_result_after_cancel_is_discarded(self, orchestrator, registry):
        client = FakeAgentClient(polls=[status("FINISHED")])
        client.on_get = lambda: registry.signal("job-1")
        params = WaitParams(payload=PAYLOAD, cancel_token="job-1")

        result = await orchestrator.create_and_wait(params, client)

        assert result.outcome is WaitOutcome.CANCELLED
        assert result.statuses == ["CREATING"]
        assert result.agent == {"id": "bc_1", "status": "CREATING"}

    @pytest.mark.asyncio
    async def test_cancel_wins_over_deadline(self, orchestrator, registry, fake_time):
        # The poll fails transiently and signals the token; by the next check
        # the deadline has also passed.
        outage = RemoteUnavailableError("https://api", httpx.ConnectError("down"))
        client = FakeAgentClient(polls=[outage])
        client.on_get = lambda: registry.signal("job-1")
        params = WaitParams(payload=PAYLOAD, poll_interval_ms=1000, timeout_ms=1000, cancel_token="job-1")

        result = await orchestrator.create_and_wait(params, client)

        assert fake_time.now >= 101.0
        assert result.outcome is WaitOutcome.CANCELLED

    @pytest.mark.asyncio
    async def test_unsignaled_token_runs_to_completion(self, orchestrator, registry):
        client = FakeAgentClient(polls=[status("RUNNING"), status("FINISHED")])
        params = WaitParams(payload=PAYLOAD, cancel_token="job-1")

        result = await orchestrator.create_and_wait(params, client)

        assert result.outcome is WaitOutcome.FINISHED
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_cancellation_is_one_shot_across_sessions(self, orchestrator, registry, fake_time):
        params = WaitParams(payload=PAYLOAD, poll_interval_ms=1000, cancel_token="shared")

        fake_time.on_sleep = lambda: registry.signal("shared")
        first = await orchestrator.create_and_wait(params, FakeAgentClient(polls=[status("RUNNING")]))
        assert first.outcome is WaitOutcome.CANCELLED

        fake_time.on_sleep = None
        second = await orchestrator.create_and_wait(
            params, FakeAgentClient(polls=[status("RUNNING"), status("FINISHED")]),
        )
        assert second.outcome is WaitOutcome.FINISHED

    @pytest.mark.asyncio
    async def test_signal_before_session_is_ignored(self, orchestrator, registry):
        assert registry.signal("early") is False
        client = FakeAgentClient(polls=[status("FINISHED")])
        result = await orchestrator.create_and_wait(
            WaitParams(payload=PAYLOAD, cancel_token="early"), client,
        )
        assert result.outcome is WaitOutcome.FINISHED

    @pytest.mark.asyncio
    async def test_token_released_after_session(self, orchestrator, registry):
        await orchestrator.create_and_wait(
            WaitParams(payload=PAYLOAD, cancel_token="job-1"), FakeAgentClient(polls=[status("FINISHED")]),
        )
        assert registry.signal("job-1") is False

    @pytest.mark.asyncio
    async def test_token_released_after_failure(self, orchestrator, registry):
        client = FakeAgentClient(create_error=NotFoundError("nope", status_code=404))
        with pytest.raises(NotFoundError):
            await orchestrator.create_and_wait(WaitParams(payload=PAYLOAD, cancel_token="job-1"), client)
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_pending_while_waiting(self, orchestrator, registry, fake_time):
        seen = []
        fake_time.on_sleep = lambda: seen.append(len(registry))
        await orchestrator.create_and_wait(
            WaitParams(payload=PAYLOAD, cancel_token="job-1"), FakeAgentClient(polls=[status("FINISHED")]),
        )
        assert seen == [1]

    @pytest.mark.asyncio
    async def test_second_session_with_live_token_is_rejected(self, orchestrator, registry):
        params = WaitParams(payload=PAYLOAD, cancel_token="shared")
        rival = FakeAgentClient(polls=[status("FINISHED")])
        observed = {}

        class RivalStartsMidPoll(FakeAgentClient):
            async def get_agent(self, agent_id):
                with pytest.raises(ValidationError) as exc:
                    await orchestrator.create_and_wait(params, rival)
                observed["field"] = exc.value.field
                observed["signalled"] = registry.signal("shared")
                return await super().get_agent(agent_id)

        client = RivalStartsMidPoll(polls=[status("RUNNING")])
        result = await orchestrator.create_and_wait(params, client)

        assert observed == {"field": "cancel_token", "signalled": True}
        assert rival.create_calls == []
        assert result.outcome is WaitOutcome.CANCELLED
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_token_reusable_once_session_ends(self, orchestrator, registry):
        params = WaitParams(payload=PAYLOAD, cancel_token="job-1")
        await orchestrator.create_and_wait(params, FakeAgentClient(polls=[status("FINISHED")]))
        result = await orchestrator.create_and_wait(params, FakeAgentClient(polls=[status("FINISHED")]))
        assert result.outcome is WaitOutcome.FINISHED


class TestPollErrors:
    """Transient versus permanent poll failures."""

    @pytest.mark.asyncio
    async def test_transient_error_keeps_polling(self, orchestrator, caplog):
        outage = RemoteUnavailableError("https://api", httpx.ConnectError("refused"))
        client = FakeAgentClient(polls=[outage, outage, status("FINISHED")])

        result = await orchestrator.create_and_wait(WaitParams(payload=PAYLOAD), client)

        assert result.outcome is WaitOutcome.FINISHED
        assert len(client.get_calls) == 3
        assert "wait_poll_transient_error" in caplog.text

    @pytest.mark.asyncio
    async def test_api_error_propagates(self, orchestrator):
        client = FakeAgentClient(polls=[status("RUNNING"), NotFoundError("gone", status_code=404)])
        with pytest.raises(NotFoundError):
            await orchestrator.create_and_wait(WaitParams(payload=PAYLOAD), client)

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self, orchestrator):
        client = FakeAgentClient(polls=[RuntimeError("boom")])
        with pytest.raises(RuntimeError, match="boom"):
            await orchestrator.create_and_wait(WaitParams(payload=PAYLOAD), client)

    @pytest.mark.asyncio
    async def test_create_failure_propagates(self, orchestrator, fake_time):
        client = FakeAgentClient(create_error=RemoteUnavailableError("https://api", httpx.ConnectError("x")))
        with pytest.raises(RemoteUnavailableError):
            await orchestrator.create_and_wait(WaitParams(payload=PAYLOAD), client)
        assert fake_time.sleeps == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("created", [
        {"status": "CREATING"},
        {"id": None, "status": "CREATING"},
        {"id": "", "status": "CREATING"},
        ["bc_1"],
    ])
    async def test_create_without_agent_id_fails(self, orchestrator, registry, fake_time, created):
        client = FakeAgentClient(created=created, polls=[status("FINISHED")])
        params = WaitParams(payload=PAYLOAD, cancel_token="job-1")

        with pytest.raises(ApiError) as exc:
            await orchestrator.create_and_wait(params, client)

        assert exc.value.status_code == 502
        assert exc.value.code == "REMOTE_ERROR"
        assert client.get_calls == []
        assert fake_time.sleeps == []
        assert len(registry) == 0


class TestRealSleep:
    """Smoke test with the real event loop clock."""

    @pytest.mark.asyncio
    async def test_real_clock(self, registry):
        orchestrator = WaitOrchestrator(registry)
        client = FakeAgentClient(polls=[status("FINISHED")])
        params = WaitParams(payload=PAYLOAD, poll_interval_ms=1, timeout_ms=5000)

        result = await asyncio.wait_for(orchestrator.create_and_wait(params, client), timeout=5)

        assert result.outcome is WaitOutcome.FINISHED
        assert result.elapsed_ms >= MIN_POLL_DELAY_MS - 50


class SignalAfterCreateClient(FakeAgentClient):
    """Signals the cancel token as soon as creation returns."""

    def __init__(self, registry, token, **kwargs):
        super().__init__(**kwargs)
        self.registry = registry
        self.token = token

    async def create_agent(self, payload):
        created = await super().create_agent(payload)
        self.registry.signal(self.token)
        return created


class TestScenarios:
    """Reference scenarios for the orchestrator."""

    @pytest.mark.asyncio
    async def test_running_then_finished(self, orchestrator):
        client = FakeAgentClient(
            created=status("CREATING"), polls=[status("RUNNING"), status("FINISHED")],
        )
        params = WaitParams(payload=PAYLOAD, poll_interval_ms=500, jitter_ratio=0, timeout_ms=10_000)

        result = await orchestrator.create_and_wait(params, client)

        assert result.outcome is WaitOutcome.FINISHED
        assert result.statuses == ["CREATING", "RUNNING", "FINISHED"]

    @pytest.mark.asyncio
    async def test_error(self, orchestrator):
        client = FakeAgentClient(created=status("CREATING"), polls=[status("ERROR")])
        params = WaitParams(payload=PAYLOAD, poll_interval_ms=400)

        result = await orchestrator.create_and_wait(params, client)

        assert result.outcome is WaitOutcome.ERROR

    @pytest.mark.asyncio
    async def test_timeout_after_six_seconds(self, orchestrator, fake_time):
        client = FakeAgentClient(created=status("CREATING"), polls=[status("RUNNING")])
        params = WaitParams(payload=PAYLOAD, poll_interval_ms=1000, timeout_ms=6000)

        result = await orchestrator.create_and_wait(params, client)

        assert result.outcome is WaitOutcome.TIMEOUT
        assert result.elapsed_ms >= 6000
        assert len(client.get_calls) == 6

    @pytest.mark.asyncio
    async def test_cancelled_right_after_creation(self, orchestrator, registry, fake_time):
        client = SignalAfterCreateClient(registry, "tok", polls=[status("FINISHED")])
        params = WaitParams(payload=PAYLOAD, poll_interval_ms=1000, cancel_token="tok")

        result = await orchestrator.create_and_wait(params, client)

        assert result.outcome is WaitOutcome.CANCELLED
        assert client.get_calls == []
        assert fake_time.sleeps == []
        assert result.agent_id == "bc_1"
