"""Tests for the message protocol, router and event dispatcher (switchboard/messaging)."""

from dataclasses import replace

import pytest

from switchboard.exceptions import NoHandlerError, ValidationError
from switchboard.messaging import (
    MESSAGE_TYPES,
    CommunicationEvent,
    ConversationContext,
    EventDispatcher,
    MessagePriority,
    MessageRouter,
    MessageType,
    create_clarification,
    create_message,
    create_response,
    validate_protocol,
)


# ── Helpers ──────────────────────────────────────────────────────────


def _ctx(thread_id: str = "thread-1") -> ConversationContext:
    return ConversationContext(thread_id=thread_id, session_id="session-1")


# ===== Protocol =====


@pytest.mark.parametrize("message_type,expected", [
    (MessageType.QUERY, True),
    (MessageType.REQUEST, True),
    (MessageType.CLARIFY, True),
    (MessageType.INFORM, False),
    (MessageType.CONFIRM, False),
    (MessageType.ERROR, False),
])
def test_create_message_applies_response_policy(message_type, expected):
    msg = create_message("a", "b", message_type, "hi", _ctx())
    assert msg.requires_response is expected
    assert MESSAGE_TYPES[message_type].requires_response is expected
    assert msg.id.startswith("msg_")
    assert msg.timestamp > 0


def test_create_message_accepts_string_type_and_priority():
    msg = create_message("a", "b", "QUERY", {"q": 1}, _ctx(), priority="high")
    assert msg.type == MessageType.QUERY
    assert msg.priority == MessagePriority.HIGH


def test_create_message_rejects_unknown_type():
    with pytest.raises(ValidationError) as exc:
        create_message("a", "b", "SHOUT", "hi", _ctx())
    assert "Invalid message type" in exc.value.message


def test_create_message_rejects_missing_content():
    with pytest.raises(ValidationError):
        create_message("a", "b", MessageType.INFORM, None, _ctx())


def test_create_message_rejects_empty_thread():
    with pytest.raises(ValidationError):
        create_message("a", "b", MessageType.INFORM, "hi", ConversationContext(thread_id=""))


def test_validate_protocol_policy_mismatch():
    msg = create_message("a", "b", MessageType.QUERY, "hi", _ctx())
    result = validate_protocol(replace(msg, requires_response=False))
    assert result.valid is False
    assert "requires_response" in result.error


def test_validate_protocol_missing_fields():
    msg = create_message("a", "b", MessageType.INFORM, "hi", _ctx())
    assert validate_protocol(replace(msg, to="")).valid is False
    assert validate_protocol(replace(msg, timestamp=0)).error == "Invalid timestamp"
    assert validate_protocol(replace(msg, context=None)).valid is False


def test_create_response_correlates_to_original():
    original = create_message("master", "billing", MessageType.QUERY, "balance?", _ctx(), priority=MessagePriority.LOW)
    response = create_response(original, "billing", {"balance": 10})
    assert response.to == "master"
    assert response.from_agent == "billing"
    assert response.correlation_id == original.id
    assert response.type == MessageType.INFORM
    assert response.priority == MessagePriority.LOW
    assert response.context == original.context


def test_create_clarification_is_high_priority_plain_string():
    original = create_message("master", "billing", MessageType.QUERY, "refund", _ctx())
    clarify = create_clarification(original, "billing", "Which order?")
    assert clarify.type == MessageType.CLARIFY
    assert clarify.requires_response is True
    assert clarify.content == "Which order?"
    assert clarify.priority == MessagePriority.HIGH
    assert clarify.correlation_id == original.id


def test_to_dict_uses_wire_names():
    msg = create_message("a", "b", MessageType.INFORM, "hi", _ctx())
    data = msg.to_dict()
    assert data["from"] == "a"
    assert data["type"] == "INFORM"
    assert data["context"]["thread_id"] == "thread-1"


# ===== Router =====


async def test_router_routes_to_handler():
    router = MessageRouter()

    async def handler(message):
        return f"got {message.content}"

    router.register("b", handler)
    msg = create_message("a", "b", MessageType.QUERY, "ping", _ctx())
    assert await router.route(msg) == "got ping"
    assert router.has_handler("b")
    assert router.get_registered_agents() == ["b"]


async def test_router_no_handler():
    router = MessageRouter()
    msg = create_message("a", "ghost", MessageType.QUERY, "ping", _ctx())
    with pytest.raises(NoHandlerError):
        await router.route(msg)


async def test_router_revalidates_before_dispatch():
    router = MessageRouter()

    async def handler(message):
        return "unreachable"

    router.register("b", handler)
    msg = create_message("a", "b", MessageType.QUERY, "ping", _ctx())
    with pytest.raises(ValidationError):
        await router.route(replace(msg, requires_response=False))


def test_router_unregister_notifies_listeners():
    router = MessageRouter()
    seen = []

    async def handler(message):
        return None

    router.register("b", handler)
    remove = router.add_unregister_listener(seen.append)
    router.unregister("b")
    router.unregister("b")
    assert seen == ["b"]

    remove()
    router.register("b", handler)
    router.unregister("b")
    assert seen == ["b"]


# ===== Event dispatcher =====


async def test_dispatcher_delivers_typed_and_wildcard():
    dispatcher = EventDispatcher()
    typed, everything = [], []
    dispatcher.subscribe("message_sent", typed.append)
    dispatcher.subscribe("*", everything.append)

    dispatcher.emit(CommunicationEvent("a", "b", "message_sent", True))
    dispatcher.emit(CommunicationEvent("a", "b", "message_failed", False))
    await dispatcher.flush()

    assert [e.type for e in typed] == ["message_sent"]
    assert [e.type for e in everything] == ["message_sent", "message_failed"]


async def test_dispatcher_isolates_failing_subscriber():
    dispatcher = EventDispatcher()
    received = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    dispatcher.subscribe("*", broken)
    dispatcher.subscribe("*", received.append)
    dispatcher.emit(CommunicationEvent("a", "b", "message_sent", True))
    await dispatcher.flush()
    assert len(received) == 1


async def test_dispatcher_unsubscribe():
    dispatcher = EventDispatcher()
    received = []
    unsubscribe = dispatcher.subscribe("*", received.append)
    unsubscribe()
    dispatcher.emit(CommunicationEvent("a", "b", "message_sent", True))
    await dispatcher.flush()
    assert received == []


def test_dispatcher_buffers_without_loop():
    dispatcher = EventDispatcher()
    dispatcher.emit(CommunicationEvent("a", "b", "message_sent", True))
    assert dispatcher.pending == 1
