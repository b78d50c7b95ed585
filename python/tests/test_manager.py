"""Tests for the CommunicationManager (switchboard/messaging/manager.py)."""

import asyncio

import pytest

from switchboard.exceptions import (
    AgentUnregisteredError,
    ManagerClearedError,
    RequestTimeoutError,
    ValidationError,
)
from switchboard.messaging import (
    CommunicationConfig,
    CommunicationManager,
    ConversationContext,
    MessagePriority,
    MessageType,
    calculate_priority,
    create_message,
)
from switchboard.messaging.protocol import now_ms


# ── Helpers ──────────────────────────────────────────────────────────


CTX = ConversationContext(thread_id="call-1", session_id="s-1")


@pytest.fixture
async def manager():
    mgr = CommunicationManager(CommunicationConfig(timeout_ms=2000))
    yield mgr
    await mgr.shutdown()


def _recorder(log):
    async def handler(message):
        log.append(message.content)
        return None

    return handler


async def _noop(message):
    return None


# ===== Priority =====


def test_calculate_priority():
    query = create_message("a", "b", MessageType.QUERY, "q", CTX)
    clarify = create_message("a", "b", MessageType.CLARIFY, "c", CTX)
    inform_high = create_message("a", "b", MessageType.INFORM, "i", CTX, priority=MessagePriority.HIGH)
    inform_low = create_message("a", "b", MessageType.INFORM, "i", CTX, priority=MessagePriority.LOW)
    urgent = create_message("a", "b", MessageType.INFORM, "i", CTX, expires_at=now_ms() + 1000)

    assert calculate_priority(query) == 60
    assert calculate_priority(clarify) == 70
    assert calculate_priority(inform_high) == 80
    assert calculate_priority(inform_low) == 30
    assert calculate_priority(urgent) == 90


async def test_burst_is_drained_highest_priority_first(manager):
    received = []
    manager.register_agent("b", _recorder(received))

    for priority in ("low", "high", "normal"):
        await manager.send_message(create_message("a", "b", MessageType.INFORM, priority, CTX, priority=priority))
    await manager.flush()

    assert received == ["high", "normal", "low"]


async def test_equal_priority_is_fifo(manager):
    received = []
    manager.register_agent("b", _recorder(received))
    for i in range(5):
        await manager.send_message(create_message("a", "b", MessageType.INFORM, i, CTX))
    await manager.flush()
    assert received == [0, 1, 2, 3, 4]


# ===== Request / response =====


async def test_send_and_wait_returns_handler_result(manager):
    async def billing(message):
        return {"balance": 42, "asked": message.content}

    manager.register_agent("billing", billing)
    msg = create_message("master", "billing", MessageType.QUERY, "balance?", CTX)
    result = await manager.send_and_wait(msg)

    assert result == {"balance": 42, "asked": "balance?"}
    assert manager.get_statistics()["pending_requests"] == 0
    thread = manager.get_thread("call-1")
    assert len(thread.messages) == 2
    assert thread.messages[1].correlation_id == msg.id


async def test_send_and_wait_rejects_inform(manager):
    msg = create_message("master", "billing", MessageType.INFORM, "fyi", CTX)
    with pytest.raises(ValidationError):
        await manager.send_and_wait(msg)


async def test_send_and_wait_times_out(manager):
    release = asyncio.Event()

    async def slow(message):
        await release.wait()
        return "late"

    manager.register_agent("slow", slow)
    msg = create_message("master", "slow", MessageType.QUERY, "hello?", CTX)
    with pytest.raises(RequestTimeoutError) as exc:
        await manager.send_and_wait(msg, timeout_ms=50)
    assert "timeout" in exc.value.message.lower()
    assert manager.get_statistics()["pending_requests"] == 0
    release.set()
    await asyncio.sleep(0)


async def test_send_and_wait_zero_timeout_is_not_the_default(manager):
    release = asyncio.Event()

    async def slow(message):
        await release.wait()
        return "late"

    manager.register_agent("slow", slow)
    msg = create_message("master", "slow", MessageType.QUERY, "hello?", CTX)
    with pytest.raises(RequestTimeoutError) as exc:
        await asyncio.wait_for(manager.send_and_wait(msg, timeout_ms=0), timeout=1.0)
    assert "after 0ms" in exc.value.message
    release.set()
    await asyncio.sleep(0)


def test_handle_response_unknown_correlation_is_noop():
    mgr = CommunicationManager()
    stray = create_message("b", "a", MessageType.INFORM, "late", CTX, correlation_id="msg_unknown")
    mgr.handle_response(stray)
    assert mgr.get_statistics()["pending_requests"] == 0


async def test_unregister_fails_pending_request(manager):
    release = asyncio.Event()

    async def blocking(message):
        await release.wait()
        return "never delivered"

    manager.register_agent("dept", blocking)
    msg = create_message("master", "dept", MessageType.QUERY, "work", CTX)
    task = asyncio.create_task(manager.send_and_wait(msg))
    for _ in range(5):
        await asyncio.sleep(0)

    manager.unregister_agent("dept")
    with pytest.raises(AgentUnregisteredError):
        await task
    release.set()
    await asyncio.sleep(0)


async def test_unregister_drops_queued_messages(manager):
    received = []
    manager.register_agent("b", _recorder(received))
    await manager.send_message(create_message("a", "b", MessageType.INFORM, "x", CTX))
    manager.unregister_agent("b")
    assert manager.get_statistics()["queued_messages"] == 0
    await manager.flush()
    assert received == []


async def test_clear_rejects_pending(manager):
    release = asyncio.Event()

    async def blocking(message):
        await release.wait()
        return "too late"

    manager.register_agent("dept", blocking)
    task = asyncio.create_task(
        manager.send_and_wait(create_message("master", "dept", MessageType.QUERY, "work", CTX))
    )
    for _ in range(5):
        await asyncio.sleep(0)

    manager.clear()
    with pytest.raises(ManagerClearedError):
        await task
    assert manager.get_thread("call-1") is None
    assert manager.get_statistics()["queued_messages"] == 0
    release.set()
    await asyncio.sleep(0)


# ===== Retry =====


async def test_failed_route_is_retried_then_succeeds(manager):
    attempts = []

    async def flaky(message):
        attempts.append(message.id)
        if len(attempts) < 3:
            raise RuntimeError("transient")
        return None

    manager.register_agent("b", flaky)
    await manager.send_message(create_message("a", "b", MessageType.INFORM, "x", CTX))
    await manager.flush()

    assert len(attempts) == 3
    assert len(set(attempts)) == 1


async def test_retry_exhaustion_rejects_waiter_and_emits_error(manager):
    events = []
    manager.on_event("*", events.append)

    async def broken(message):
        raise RuntimeError("down")

    manager.register_agent("b", broken)
    msg = create_message("a", "b", MessageType.QUERY, "x", CTX)
    with pytest.raises(RuntimeError):
        await manager.send_and_wait(msg)
    await manager.flush()

    failures = [e for e in events if e.type == "QUERY" and not e.success]
    assert len(failures) == 3
    errors = [e for e in events if e.type == "error"]
    assert errors[-1].metadata["attempts"] == 3


async def test_no_handler_without_retry(manager):
    manager.update_config(retry_enabled=False)
    events = []
    manager.on_event("error", events.append)
    await manager.send_message(create_message("a", "ghost", MessageType.INFORM, "x", CTX))
    await manager.flush()
    assert len(events) == 1
    assert events[0].error_code == "NO_HANDLER"


# ===== Threads & limits =====


async def test_conversation_depth_limit(manager):
    manager.update_config(max_conversation_depth=2)
    manager.register_agent("a", _noop)
    manager.register_agent("b", _noop)

    m1 = create_message("a", "b", MessageType.INFORM, "1", CTX)
    await manager.send_message(m1)
    m2 = create_message("b", "a", MessageType.INFORM, "2", CTX, correlation_id=m1.id)
    await manager.send_message(m2)
    m3 = create_message("a", "b", MessageType.INFORM, "3", CTX, correlation_id=m2.id)
    with pytest.raises(ValidationError):
        await manager.send_message(m3)


async def test_closed_thread_rejects_messages(manager):
    manager.register_agent("b", _noop)
    await manager.send_message(create_message("a", "b", MessageType.INFORM, "1", CTX))
    assert manager.close_thread("call-1") is True
    assert manager.get_active_threads() == []
    with pytest.raises(ValidationError):
        await manager.send_message(create_message("a", "b", MessageType.INFORM, "2", CTX))


async def test_disabled_manager_rejects(manager):
    manager.update_config(enabled=False)
    with pytest.raises(ValidationError):
        await manager.send_message(create_message("a", "b", MessageType.INFORM, "x", CTX))


# ===== Events =====


async def test_events_cover_request_lifecycle(manager):
    events = []
    manager.on_event("*", events.append)

    async def echo(message):
        return message.content

    manager.register_agent("echo", echo)
    await manager.send_and_wait(create_message("master", "echo", MessageType.QUERY, "hi", CTX))
    await manager.flush()

    types = [e.type for e in events]
    assert types[0] == "agent_registered"
    assert "response" in types
    assert types.count("QUERY") == 2
    assert all(e.success for e in events)


async def test_unsubscribe_stops_delivery(manager):
    events = []
    unsubscribe = manager.on_event("*", events.append)
    unsubscribe()
    manager.register_agent("b", _noop)
    await manager.flush()
    assert events == []


async def test_statistics(manager):
    manager.register_agent("a", _noop)
    manager.register_agent("b", _noop)
    await manager.send_message(create_message("a", "b", MessageType.INFORM, "x", CTX))
    stats = manager.get_statistics()
    assert stats["registered_agents"] == 2
    assert stats["active_threads"] == 1
    assert stats["queued_messages"] == 1
