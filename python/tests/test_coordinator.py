"""Tests for the DelegationCoordinator (switchboard/delegation/coordinator.py)."""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from switchboard.delegation import (
    AgentParameter,
    AgentRegistry,
    DelegationConfig,
    DelegationCoordinator,
    DepartmentSpec,
    FunctionResponse,
    ParameterType,
    SessionTurn,
    ToolCall,
    ToolSpec,
)
from switchboard.exceptions import ErrorCode, SwitchboardException
from switchboard.messaging import CommunicationManager, ConversationContext, MessageType, create_message
from switchboard.resilience import (
    CircuitBreakerConfig,
    CircuitBreakerManager,
    DegradationLevel,
    DegradationManager,
    RateLimitConfig,
    RateLimiter,
)
from switchboard.routing import (
    ConnectionRouter,
    ConnectionScorer,
    ContextCard,
    ContextCardStore,
    ConversationState,
    RiskLevel,
    RoutingDecisionEngine,
    ScoringOptions,
)


# ── Helpers ──────────────────────────────────────────────────────────


class ScriptedSession:
    """Department session replaying a fixed list of turns."""

    def __init__(self, turns):
        self.turns = list(turns)
        self.sent = []

    async def send(self, message):
        self.sent.append(message)
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        return turn


def _department(agent_id, session, name="Sales", **kwargs):
    declarations = []

    def factory(spec, decls):
        declarations.append(decls)
        return session

    spec = DepartmentSpec(agent_id=agent_id, name=name, session_factory=factory, **kwargs)
    return spec, declarations


async def _lookup_reservation(args):
    return {"reservationNumber": "R-1042", "date": args["date"]}


def _lookup_tool(**kwargs):
    return ToolSpec(
        agent_id="t_lookup",
        name="lookup_reservation",
        handler=kwargs.pop("handler", _lookup_reservation),
        parameters=[AgentParameter("date", ParameterType.STRING, required=True)],
        **kwargs,
    )


def _slow_handler(seconds):
    async def handler(args):
        await asyncio.sleep(seconds)
        return {"late": True}

    return handler


FAST = DelegationConfig(retry_enabled=False, tool_timeout_ms=500, department_timeout_ms=1000)


@pytest.fixture
def registry():
    return AgentRegistry()


@pytest.fixture
def degradation():
    return DegradationManager(enable_auto_recovery=False)


@pytest.fixture
def coordinator(registry, degradation):
    return DelegationCoordinator(registry, CircuitBreakerManager(), RateLimiter(), degradation, config=FAST)


# ===== Tools =====


async def test_tool_call_returns_transformed_result(coordinator):
    coordinator.register_tool(_lookup_tool())
    result = await coordinator.process_request("find my booking", "t_lookup", args={"date": "2026-05-01"})
    assert result == {"result": {"reservationNumber": "R-1042", "date": "2026-05-01"}, "success": True}


async def test_status_envelope_is_unwrapped(coordinator):
    handler = AsyncMock(return_value={"status": "success", "data": {"reservationNumber": "ABC123"}})
    coordinator.register_tool(ToolSpec("t_res", "lookup_reservation", handler))
    result = await coordinator.process_request("booking ABC123", "t_res")
    assert result == {"result": {"reservationNumber": "ABC123"}, "success": True}


async def test_tool_defaults_args_to_query(coordinator):
    handler = AsyncMock(return_value={"status": "success", "data": "ok"})
    coordinator.register_tool(ToolSpec("t_echo", "echo", handler))
    await coordinator.process_request("hello there", "t_echo")
    handler.assert_awaited_once_with({"query": "hello there"})


async def test_invalid_args_become_sayable_message(coordinator):
    coordinator.register_tool(_lookup_tool())
    result = await coordinator.process_request("find it", "t_lookup", args={})
    assert result.startswith("I'm sorry, I couldn't complete that with lookup_reservation.")
    assert "could not be validated" in result


async def test_tool_timeout_message(coordinator, degradation):
    coordinator.register_tool(_lookup_tool(handler=_slow_handler(0.05), timeout_ms=5))
    result = await coordinator.process_request("find it", "t_lookup", args={"date": "d"})
    assert result == "I'm sorry, the lookup_reservation tool took too long to respond. Please try again."
    assert degradation.get_level() == DegradationLevel.REDUCED
    await asyncio.sleep(0.06)


async def test_tool_retries_transient_failures(registry, degradation):
    calls = []

    async def flaky(args):
        calls.append(args)
        if len(calls) < 3:
            raise ConnectionError("network down")
        return {"reservationNumber": "R-7"}

    config = DelegationConfig(initial_delay_ms=1, max_delay_ms=2)
    coordinator = DelegationCoordinator(registry, CircuitBreakerManager(), RateLimiter(), degradation, config=config)
    coordinator.register_tool(ToolSpec("t_flaky", "flaky", flaky))

    result = await coordinator.process_request("go", "t_flaky")
    assert result["success"] is True
    assert len(calls) == 3
    assert degradation.get_component_health("integration").healthy is True


async def test_tool_retries_follow_error_code(registry, degradation):
    calls = []

    async def upstream(args):
        calls.append(args)
        if len(calls) < 3:
            raise SwitchboardException("upstream said no", code=ErrorCode.EXTERNAL_API_FAILURE)
        return {"ok": True}

    async def bad_input(args):
        calls.append(args)
        raise SwitchboardException("bad account number", code=ErrorCode.INVALID_INPUT)

    config = DelegationConfig(initial_delay_ms=1, max_delay_ms=2)
    coordinator = DelegationCoordinator(registry, CircuitBreakerManager(), RateLimiter(), degradation, config=config)
    coordinator.register_tool(ToolSpec("t_upstream", "upstream", upstream))
    coordinator.register_tool(ToolSpec("t_bad", "bad", bad_input))

    assert (await coordinator.process_request("go", "t_upstream"))["success"] is True
    assert len(calls) == 3

    calls.clear()
    result = await coordinator.process_request("go", "t_bad")
    assert isinstance(result, str)
    assert len(calls) == 1


def test_timeout_budget_precedence(coordinator):
    async def handler(args):
        return {}

    assert coordinator._budget(ToolSpec("t1", "a", handler), 500) == 500
    assert coordinator._budget(ToolSpec("t2", "b", handler, task="generate_report"), 500) == 60000
    assert coordinator._budget(ToolSpec("t3", "c", handler, agent_type="external_integration"), 500) == 15000
    assert coordinator._budget(ToolSpec("t4", "d", handler, timeout_ms=250, task="generate_report"), 500) == 250
    department, _ = _department("d_sales", ScriptedSession([]), task="simple_query")
    assert coordinator._budget(department, 1000) == 10000


async def test_rate_limited_tool(registry, degradation):
    limiter = RateLimiter(RateLimitConfig(max_requests=1, window_ms=60000, burst_size=0))
    coordinator = DelegationCoordinator(registry, CircuitBreakerManager(), limiter, degradation, config=FAST)
    coordinator.register_tool(_lookup_tool())

    await coordinator.process_request("x", "t_lookup", args={"date": "d"})
    result = await coordinator.process_request("x", "t_lookup", args={"date": "d"})
    assert "Too many requests right now" in result
    assert degradation.get_component_health("integration").last_failure_reason.startswith("Rate limit exceeded")

    payload = await coordinator.handle_master_tool_call("lookup_reservation", {"date": "d"})
    assert payload["errorCode"] == "RATE_LIMIT_EXCEEDED"


async def test_open_circuit_skips_handler(registry, degradation):
    handler = AsyncMock(side_effect=ConnectionError("CRM unreachable"))
    breakers = CircuitBreakerManager(CircuitBreakerConfig(failure_threshold=1))
    coordinator = DelegationCoordinator(registry, breakers, RateLimiter(), degradation, config=FAST)
    coordinator.register_tool(ToolSpec("t_crm", "crm_lookup", handler))

    first = await coordinator.process_request("x", "t_crm")
    assert first.startswith("I'm sorry, I couldn't complete that with crm_lookup.")

    payload = await coordinator.handle_master_tool_call("crm_lookup", {})
    assert payload["errorCode"] == "CIRCUIT_OPEN"
    assert handler.await_count == 1


async def test_unknown_target(coordinator):
    result = await coordinator.process_request("hi", "nobody")
    assert result == "I'm sorry, I couldn't find nobody. The requested tool could not be found."


# ===== Departments =====


async def test_department_sub_tool_success_payload(coordinator, registry):
    coordinator.register_tool(_lookup_tool())
    session = ScriptedSession([
        SessionTurn(tool_calls=[ToolCall("c1", "lookup_reservation", {"date": "2026-05-01"})]),
        SessionTurn(text="Tell the caller their reservation is R-1042."),
    ])
    spec, declarations = _department("d_sales", session)
    coordinator.register_department(spec)
    registry.connect("d_sales", "t_lookup")

    result = await coordinator.process_request("where is my booking", "d_sales")
    assert result == "Tell the caller their reservation is R-1042."
    assert session.sent[0] == "Query: where is my booking"
    assert [d["name"] for d in declarations[0]] == ["lookup_reservation"]

    response = session.sent[1][0]
    assert isinstance(response, FunctionResponse)
    payload = response.response["result"]
    assert payload["success"] is True
    assert payload["data"]["reservationNumber"] == "R-1042"
    assert payload["structure"] == "object with fields: reservationNumber, date"


async def test_department_sub_tool_timeout_is_reported_not_raised(coordinator, registry):
    coordinator.register_tool(ToolSpec("t_stock", "check_inventory", _slow_handler(0.05), timeout_ms=5))
    session = ScriptedSession([
        SessionTurn(tool_calls=[ToolCall("c1", "check_inventory", {})]),
        SessionTurn(text="Stock is unknown right now."),
    ])
    spec, _ = _department("d_sales", session)
    coordinator.register_department(spec)
    registry.connect("d_sales", "t_stock")

    result = await coordinator.process_request("is it in stock", "d_sales")
    assert result == "Stock is unknown right now."
    payload = session.sent[1][0].response["result"]
    assert payload["errorCode"] == "TOOL_EXECUTION_FAILED"
    assert "timeout" in payload["error"].lower()
    await asyncio.sleep(0.06)


async def test_department_unconnected_tool(coordinator):
    coordinator.register_tool(_lookup_tool())
    session = ScriptedSession([
        SessionTurn(tool_calls=[ToolCall("c1", "lookup_reservation", {"date": "d"})]),
        SessionTurn(text="Done."),
    ])
    spec, _ = _department("d_sales", session)
    coordinator.register_department(spec)

    await coordinator.process_request("x", "d_sales")
    assert session.sent[1][0].response["result"]["errorCode"] == "TOOL_NOT_FOUND"


async def test_department_turn_limit(coordinator, registry):
    coordinator.register_tool(_lookup_tool())
    looping = SessionTurn(text="still working", tool_calls=[ToolCall("c", "lookup_reservation", {"date": "d"})])
    session = ScriptedSession([looping] * 5)
    spec, _ = _department("d_sales", session, max_turns=2)
    coordinator.register_department(spec)
    registry.connect("d_sales", "t_lookup")

    assert await coordinator.process_request("x", "d_sales") == "still working"
    assert len(session.sent) == 3


async def test_ask_user_sentinel(coordinator):
    session = ScriptedSession([SessionTurn(text="ASK_USER: What is your zip code?")])
    coordinator.register_department(_department("d_sales", session)[0])
    assert await coordinator.process_request("ship it", "d_sales") == "Please ask the user: What is your zip code?"


async def test_empty_department_answer(coordinator):
    session = ScriptedSession([SessionTurn(text="", raw={"content": None})])
    coordinator.register_department(_department("d_sales", session)[0])
    result = await coordinator.process_request("x", "d_sales")
    assert result.startswith("Unable to extract clear response. Raw data:")


async def test_department_failure_and_timeout_messages(coordinator):
    broken = ScriptedSession([RuntimeError("session exploded")])
    coordinator.register_department(_department("d_broken", broken, name="Billing")[0])
    result = await coordinator.process_request("x", "d_broken")
    assert result.startswith("I encountered an error while processing your request with Billing.")

    class SlowSession:
        async def send(self, message):
            await asyncio.sleep(0.05)
            return SessionTurn(text="late")

    coordinator.register_department(_department("d_slow", SlowSession(), name="Returns", timeout_ms=5)[0])
    result = await coordinator.process_request("x", "d_slow")
    assert result == "The Returns department took too long to respond. Please try again with a simpler request."
    await asyncio.sleep(0.06)


async def test_clarify_sentinel_notifies_master(registry, degradation):
    communication = CommunicationManager()
    received = []

    async def master(message):
        received.append(message)
        return None

    communication.register_agent("master", master)
    coordinator = DelegationCoordinator(
        registry, CircuitBreakerManager(), RateLimiter(), degradation,
        communication=communication, config=FAST,
    )
    session = ScriptedSession([SessionTurn(text="I checked. CLARIFY: Which location?")])
    coordinator.register_department(_department("d_sales", session)[0])

    result = await coordinator.process_request("stock?", "d_sales")
    assert result == "I need clarification: Which location?. Please provide this information."

    await communication.flush()
    assert len(received) == 1
    assert received[0].type == MessageType.CLARIFY
    assert received[0].content == {"question": "Which location?", "originalQuery": "stock?"}
    await communication.shutdown()


async def test_clarify_without_master_still_answers(coordinator):
    session = ScriptedSession([SessionTurn(text="CLARIFY: Which size?")])
    coordinator.register_department(_department("d_sales", session)[0])
    assert "Which size?" in await coordinator.process_request("x", "d_sales")


# ===== Master tool calls =====


async def test_master_tool_call_by_name(coordinator):
    coordinator.register_tool(_lookup_tool())
    payload = await coordinator.handle_master_tool_call("lookup_reservation", {"date": "d"})
    assert payload["success"] is True


async def test_master_tool_call_error_codes(coordinator):
    assert (await coordinator.handle_master_tool_call("nope"))["errorCode"] == "TOOL_NOT_FOUND"

    coordinator.register_tool(_lookup_tool())
    assert (await coordinator.handle_master_tool_call("lookup_reservation", {}))["errorCode"] == "VALIDATION_ERROR"

    coordinator.register_tool(ToolSpec("t_slow", "slow", _slow_handler(0.05), timeout_ms=5))
    payload = await coordinator.handle_master_tool_call("slow", {})
    assert payload["errorCode"] == "TOOL_TIMEOUT"
    assert "took too long" in payload["message"]
    await asyncio.sleep(0.06)


async def test_master_department_call(coordinator):
    session = ScriptedSession([SessionTurn(text="Offer the blue model.")])
    coordinator.register_department(_department("d_sales", session)[0])
    assert await coordinator.handle_master_tool_call("Sales", {"query": "what to offer"}) == {
        "instructions": "Offer the blue model."
    }
    assert session.sent == ["Query: what to offer"]

    failing = ScriptedSession([RuntimeError("boom")])
    coordinator.register_department(_department("d_bad", failing, name="Bad")[0])
    payload = await coordinator.handle_master_tool_call("Bad", {"request": "x"})
    assert payload["errorCode"] == "DEPARTMENT_ERROR"


# ===== Routing nodes =====


def _routing_coordinator(registry, degradation, scores, store=None):
    llm = MagicMock()
    llm.complete = AsyncMock(return_value=json.dumps(scores))
    store = store or ContextCardStore()
    engine = RoutingDecisionEngine(
        ConnectionRouter(store),
        ConnectionScorer(llm, ScoringOptions(use_rule_based_boosts=False)),
        fallback_node_id="clarify",
    )
    coordinator = DelegationCoordinator(
        registry, CircuitBreakerManager(), RateLimiter(), degradation,
        routing_engine=engine, config=FAST,
    )
    billing = AsyncMock(return_value={"balance": 12})
    coordinator.register_tool(ToolSpec("t_billing", "billing", billing))
    registry.connect("triage", "t_billing", "e_billing")
    registry.connect("triage", "clarify", "e_clarify")
    return coordinator, billing


async def test_routing_node_follows_best_edge(registry, degradation):
    coordinator, billing = _routing_coordinator(registry, degradation, [{"connectionId": "e_billing", "score": 90}])
    result = await coordinator.process_request("my balance", "triage", ConversationState())
    assert result == {"result": {"balance": 12}, "success": True}
    billing.assert_awaited_once_with({"query": "my balance"})


async def test_routing_node_asks_for_clarification(registry, degradation):
    coordinator, billing = _routing_coordinator(registry, degradation, [{"connectionId": "e_billing", "score": 30}])
    state = ConversationState()
    result = await coordinator.process_request("um", "triage", state)
    assert isinstance(result, str)
    assert state.clarification_count == 1
    billing.assert_not_awaited()


async def test_routing_node_confirms_high_risk_route(registry, degradation):
    store = ContextCardStore()
    store.save(ContextCard(
        id="card_refund",
        connection_id="e_billing",
        name="Refunds",
        purpose="Refund the last payment",
        when_to_use="Caller asks for money back",
        risk_level=RiskLevel.HIGH,
    ))
    coordinator, billing = _routing_coordinator(
        registry, degradation, [{"connectionId": "e_billing", "score": 90}], store=store,
    )
    state = ConversationState()

    prompt = await coordinator.process_request("refund me", "triage", state)
    assert "refund the last payment" in prompt
    assert "pending_confirmation" in state.flags
    billing.assert_not_awaited()

    state.flags["confirmed"] = True
    result = await coordinator.process_request("refund me", "triage", state)
    assert result["success"] is True
    assert "pending_confirmation" not in state.flags
    assert coordinator.confirmation.pending_count == 0


def _two_risky_routes(registry, degradation):
    store = ContextCardStore()
    for connection_id, purpose in (("e_refund", "Refund the last payment"), ("e_cancel", "Cancel the account")):
        store.save(ContextCard(
            id=f"card_{connection_id}",
            connection_id=connection_id,
            name=purpose,
            purpose=purpose,
            when_to_use=purpose,
            risk_level=RiskLevel.HIGH,
        ))
    coordinator, _ = _routing_coordinator(registry, degradation, [{"connectionId": "e_refund", "score": 90}], store=store)
    refund = AsyncMock(return_value={"refunded": True})
    cancel = AsyncMock(return_value={"cancelled": True})
    coordinator.register_tool(ToolSpec("t_refund", "refund", refund))
    coordinator.register_tool(ToolSpec("t_cancel", "cancel", cancel))
    registry.connect("triage", "t_refund", "e_refund")
    registry.connect("triage", "t_cancel", "e_cancel")
    return coordinator, refund, cancel


async def test_confirmed_flag_only_releases_the_pending_route(registry, degradation):
    coordinator, refund, cancel = _two_risky_routes(registry, degradation)
    state = ConversationState()

    prompt = await coordinator.process_request("refund me", "triage", state)
    assert "refund the last payment" in prompt

    coordinator.routing_engine.scorer.llm.complete.return_value = json.dumps([{"connectionId": "e_cancel", "score": 90}])
    state.flags["confirmed"] = True
    result = await coordinator.process_request("actually cancel everything", "triage", state)

    assert result == {"result": {"refunded": True}, "success": True}
    refund.assert_awaited_once_with({"query": "refund me"})
    cancel.assert_not_awaited()
    assert coordinator.confirmation.pending_count == 0
    assert not state.flags


async def test_spoken_yes_follows_the_pending_route(registry, degradation):
    coordinator, refund, cancel = _two_risky_routes(registry, degradation)
    state = ConversationState()
    await coordinator.process_request("refund me", "triage", state)

    coordinator.routing_engine.scorer.llm.complete.return_value = json.dumps([{"connectionId": "e_cancel", "score": 90}])
    result = await coordinator.process_request("yes, go ahead", "triage", state)

    assert result["success"] is True
    refund.assert_awaited_once_with({"query": "refund me"})
    cancel.assert_not_awaited()
    assert coordinator.confirmation.pending_count == 0


async def test_declined_confirmation_routes_again(registry, degradation):
    coordinator, refund, cancel = _two_risky_routes(registry, degradation)
    state = ConversationState()
    await coordinator.process_request("refund me", "triage", state)
    first_request = state.flags["pending_confirmation"]

    coordinator.routing_engine.scorer.llm.complete.return_value = json.dumps([{"connectionId": "e_cancel", "score": 90}])
    prompt = await coordinator.process_request("no, cancel the account instead", "triage", state)

    assert "cancel the account" in prompt
    assert state.flags["pending_confirmation"] != first_request
    assert coordinator.confirmation.get_request(first_request) is None
    assert coordinator.confirmation.pending_count == 1
    refund.assert_not_awaited()
    cancel.assert_not_awaited()


async def test_confirmed_flag_without_pending_request_is_ignored(registry, degradation):
    coordinator, refund, cancel = _two_risky_routes(registry, degradation)
    state = ConversationState(flags={"confirmed": True, "pending_confirmation": "confirm_gone"})

    prompt = await coordinator.process_request("refund me", "triage", state)

    assert isinstance(prompt, str)
    assert state.flags["pending_confirmation"] != "confirm_gone"
    assert "confirmed" not in state.flags
    refund.assert_not_awaited()


# ===== Communication attachment =====


async def test_attached_tool_answers_messages(registry, degradation):
    communication = CommunicationManager()
    coordinator = DelegationCoordinator(
        registry, CircuitBreakerManager(), RateLimiter(), degradation,
        communication=communication, config=FAST,
    )
    coordinator.register_tool(_lookup_tool())

    message = create_message("master", "t_lookup", MessageType.QUERY, {"date": "d"}, ConversationContext(thread_id="t1"))
    content = await communication.send_and_wait(message, timeout_ms=1000)
    assert content["result"]["reservationNumber"] == "R-1042"

    registry.register_tool(ToolSpec("t_extra", "extra", AsyncMock(return_value="ok")))
    assert coordinator.attach() == 1
    assert coordinator.attach() == 0

    coordinator.detach()
    assert not communication.router.has_handler("t_lookup")
    await communication.shutdown()
