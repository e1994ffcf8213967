import asyncio

import pytest

from conftest import MutableClock, RecordingEmitter
from errors import NotFound, SessionConflict
from schemas import SubmittedAnswer
from sessions import SessionRegistry, SessionState, TerminationReason


async def never_called(session):
    raise AssertionError("expiry handler should not run")


def make_registry(auto_save_interval=3600):
    emitter = RecordingEmitter()
    clock = MutableClock()
    return SessionRegistry(emitter, clock, auto_save_interval), emitter, clock


def test_start_emits_server_anchored_start():
    async def scenario():
        registry, emitter, clock = make_registry()
        session = await registry.start("s1", "t1", 30, 1, never_called)
        await registry.shutdown()
        return session, emitter, clock

    session, emitter, clock = asyncio.run(scenario())
    started = emitter.named("test:started")
    assert started == [{
        "test_id": "t1",
        "server_start_time": clock().isoformat(),
        "duration": 30,
        "server_time": clock().isoformat(),
    }]
    assert session.started_at == clock()


def test_second_start_for_same_key_is_rejected():
    async def scenario():
        registry, _, _ = make_registry()
        await registry.start("s1", "t1", 30, 1, never_called)
        with pytest.raises(SessionConflict):
            await registry.start("s1", "t1", 30, 1, never_called)
        # a different test for the same student is fine
        await registry.start("s1", "t2", 30, 1, never_called)
        assert len(registry.active_sessions()) == 2
        await registry.shutdown()

    asyncio.run(scenario())


def test_heartbeat_uses_only_the_server_clock():
    async def scenario():
        registry, emitter, clock = make_registry()
        await registry.start("s1", "t1", 10, 1, never_called)
        clock.advance(seconds=125)
        update = await registry.heartbeat("s1", "t1")
        clock.advance(minutes=30)
        late = await registry.heartbeat("s1", "t1")
        await registry.shutdown()
        return update, late, emitter

    update, late, emitter = asyncio.run(scenario())
    assert update["elapsed"] == 125
    assert update["remaining"] == 600 - 125
    assert late["remaining"] == 0
    assert emitter.named("test:time-update")[0] == update


def test_warnings_fire_once_per_threshold():
    async def scenario():
        registry, emitter, clock = make_registry()
        await registry.start("s1", "t1", 10, 1, never_called)
        for seconds in (240, 60, 30, 180, 10, 5):
            clock.advance(seconds=seconds)
            await registry.heartbeat("s1", "t1")
        await registry.shutdown()
        return emitter

    warnings = asyncio.run(scenario()).named("test:time-warning")
    # remaining: 360, 300, 270, 90, 80, 75 -> only 300 crosses a threshold
    assert [w["level"] for w in warnings] == ["warning"]
    assert warnings[0]["remaining"] == 300


def test_warning_then_critical():
    async def scenario():
        registry, emitter, clock = make_registry()
        await registry.start("s1", "t1", 10, 1, never_called)
        for seconds in (330, 60, 180, 10, 20):
            clock.advance(seconds=seconds)
            await registry.heartbeat("s1", "t1")
        await registry.shutdown()
        return emitter

    warnings = asyncio.run(scenario()).named("test:time-warning")
    assert [(w["level"], w["remaining"]) for w in warnings] == [("warning", 270), ("critical", 30)]


def test_jumping_past_both_thresholds_warns_critical_only():
    async def scenario():
        registry, emitter, clock = make_registry()
        await registry.start("s1", "t1", 10, 1, never_called)
        clock.advance(seconds=570)
        await registry.heartbeat("s1", "t1")
        clock.advance(seconds=5)
        await registry.heartbeat("s1", "t1")
        await registry.shutdown()
        return emitter

    warnings = asyncio.run(scenario()).named("test:time-warning")
    assert [w["level"] for w in warnings] == ["critical"]


def test_heartbeat_without_session():
    async def scenario():
        registry, _, _ = make_registry()
        with pytest.raises(NotFound):
            await registry.heartbeat("s1", "t1")

    asyncio.run(scenario())


def test_terminate_cancels_timers_and_emits_reason():
    async def scenario():
        registry, emitter, _ = make_registry()
        session = await registry.start("s1", "t1", 30, 1, never_called)
        ended = await registry.terminate("s1", "t1", TerminationReason.MANUAL, {"score": 3})
        await asyncio.sleep(0)
        again = await registry.terminate("s1", "t1", TerminationReason.MANUAL)
        return session, ended, again, registry, emitter

    session, ended, again, registry, emitter = asyncio.run(scenario())
    assert ended is session
    assert again is None
    assert session.state is SessionState.SUBMITTED
    assert session.deadline_handle.cancelled()
    assert session.auto_save_task.cancelled()
    assert registry.get("s1", "t1") is None
    submitted = emitter.named("test:submitted")
    assert len(submitted) == 1
    assert submitted[0]["reason"] == "manual"
    assert submitted[0]["score"] == 3


def test_disconnect_is_not_a_termination():
    async def scenario():
        registry, _, _ = make_registry()
        await registry.start("s1", "t1", 30, 1, never_called)
        with pytest.raises(ValueError):
            await registry.terminate("s1", "t1", TerminationReason.DISCONNECT_PRESERVED)
        preserved = registry.preserve_on_disconnect("s1")
        snapshot = registry.snapshot("s1", "t1")
        await registry.heartbeat("s1", "t1")
        resumed = registry.snapshot("s1", "t1")
        await registry.shutdown()
        return preserved, snapshot, resumed

    preserved, snapshot, resumed = asyncio.run(scenario())
    assert preserved == [("s1", "t1")]
    assert snapshot["state"] == "running"
    assert snapshot["disconnected"] is True
    assert resumed["disconnected"] is False


def test_deadline_hands_session_to_expiry_handler():
    seen = []

    async def on_expire(session):
        seen.append((session.key, session.state))

    async def scenario():
        registry, emitter, _ = make_registry()
        await registry.start("s1", "t1", 0.001, 1, on_expire)
        await asyncio.sleep(0.3)
        return registry, emitter

    registry, emitter = asyncio.run(scenario())
    assert seen == [(("s1", "t1"), SessionState.FINALIZING)]
    # the handler did not finalize, so the registry closes the session itself
    assert registry.get("s1", "t1") is None
    auto = emitter.named("test:auto-submitted")
    assert len(auto) == 1
    assert auto[0]["reason"] == "expired"
    assert auto[0]["recorded"] is False


def test_failing_expiry_handler_only_ends_that_session():
    async def explode(session):
        raise RuntimeError("boom")

    async def scenario():
        registry, _, _ = make_registry()
        await registry.start("s1", "t1", 0.001, 1, explode)
        await registry.start("s2", "t1", 30, 1, never_called)
        await asyncio.sleep(0.3)
        remaining = [s["student_id"] for s in registry.active_sessions()]
        await registry.shutdown()
        return remaining

    assert asyncio.run(scenario()) == ["s2"]


def test_auto_save_trigger_and_snapshot():
    async def scenario():
        registry, emitter, _ = make_registry(auto_save_interval=0.02)
        await registry.start("s1", "t1", 30, 1, never_called)
        await asyncio.sleep(0.1)
        answers = [SubmittedAnswer(question_id="q1", selection={"kind": "index", "index": 1})]
        await registry.record_auto_save("s1", "t1", answers)
        session = registry.get("s1", "t1")
        await registry.shutdown()
        return session, emitter

    session, emitter = asyncio.run(scenario())
    assert len(emitter.named("test:auto-save-trigger")) >= 2
    assert emitter.named("test:auto-saved")[0]["success"] is True
    assert session.auto_saved_answers[0].question_id == "q1"
    assert session.state is SessionState.ABANDONED


def test_shutdown_abandons_everything():
    async def scenario():
        registry, _, _ = make_registry()
        first = await registry.start("s1", "t1", 30, 1, never_called)
        second = await registry.start("s2", "t1", 30, 1, never_called)
        await registry.shutdown()
        return registry, first, second

    registry, first, second = asyncio.run(scenario())
    assert registry.active_sessions() == []
    for session in (first, second):
        assert session.state is SessionState.ABANDONED
        assert session.deadline_handle.cancelled()
