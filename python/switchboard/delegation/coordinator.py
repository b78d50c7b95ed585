"""
Delegation Coordinator.

Decides how a request reaches its handler and shapes what comes back:

- tool target: validate args, call the handler under timeout, normalize,
  transform for the master;
- department target: bounded multi-turn exchange in which the department may
  call its connected tools, then sentinel scanning and normalization;
- routing node: ask the routing engine which outgoing edge to follow.

Every call is rate limited and circuit-broken per target and reported to the
degradation manager. ``process_request`` never raises: failures come back as
a sayable string.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

from switchboard.delegation.registry import AgentRegistry
from switchboard.delegation.session import FunctionResponse, SessionTurn, ToolCall
from switchboard.delegation.specs import AgentSpec, DepartmentSpec, ToolSpec, validate_tool_args
from switchboard.exceptions import (
    CircuitOpenError,
    ErrorCode,
    OperationTimeoutError,
    RateLimitError,
    RequestTimeoutError,
    RetryConfig,
    SwitchboardException,
    ToolTimeoutError,
    ValidationError,
    error_code_of,
    get_timeout_for_task,
    get_user_friendly_message,
    should_retry,
)
from switchboard.logging_config import track_performance
from switchboard.messaging.manager import CommunicationManager
from switchboard.messaging.protocol import (
    AgentMessage,
    ConversationContext,
    MessagePriority,
    MessageType,
    create_message,
)
from switchboard.resilience.circuit_breaker import CircuitBreakerManager
from switchboard.resilience.degradation import DegradationManager
from switchboard.resilience.rate_limiter import RateLimitConfig, RateLimiter
from switchboard.responses import (
    RetryOptions,
    SuccessResult,
    TaskResult,
    describe_structure,
    is_retryable_error,
    normalize_sub_agent_response,
    summarize_data,
    transform_response_for_master,
    validate_sub_agent_response,
    with_retry,
    with_timeout,
)
from switchboard.routing.cards import ConversationState, Edge
from switchboard.routing.confirmation import ConfirmationHandler
from switchboard.routing.engine import RoutingDecisionEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLARIFY_SENTINEL = "CLARIFY:"
ASK_USER_SENTINEL = "ASK_USER:"

MasterResult = Union[str, Dict[str, Any]]


@dataclass
class DelegationConfig:
    tool_timeout_ms: int = 10000
    department_timeout_ms: int = 30000
    retry_enabled: bool = True
    max_retries: int = 2
    initial_delay_ms: int = 1000
    max_delay_ms: int = 5000
    max_routing_hops: int = 5
    department_max_turns: int = 5
    master_agent_id: str = "master"
    confirmation_timeout_ms: int = 60000


def _error_text(error: BaseException) -> str:
    if isinstance(error, SwitchboardException):
        return error.message
    return str(error) or type(error).__name__


def _is_timeout(error: BaseException) -> bool:
    if isinstance(error, (OperationTimeoutError, ToolTimeoutError, RequestTimeoutError, asyncio.TimeoutError)):
        return True
    return "timeout" in _error_text(error).lower()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class DelegationCoordinator:
    """Executes tool and department targets on behalf of the master agent."""

    def __init__(
        self,
        registry: AgentRegistry,
        breakers: CircuitBreakerManager,
        rate_limiter: RateLimiter,
        degradation: DegradationManager,
        communication: Optional[CommunicationManager] = None,
        routing_engine: Optional[RoutingDecisionEngine] = None,
        confirmation: Optional[ConfirmationHandler] = None,
        config: Optional[DelegationConfig] = None,
        rate_limit_config: Optional[RateLimitConfig] = None,
    ):
        self.registry = registry
        self.breakers = breakers
        self.rate_limiter = rate_limiter
        self.degradation = degradation
        self.communication = communication
        self.routing_engine = routing_engine
        self.confirmation = confirmation or ConfirmationHandler()
        self.config = config or DelegationConfig()
        self.rate_limit_config = rate_limit_config
        self._attached: List[str] = []

    # ── Registration ────────────────────────────────────────────────

    def register_tool(self, spec: ToolSpec) -> ToolSpec:
        self.registry.register_tool(spec)
        self._attach_one(spec)
        return spec

    def register_department(self, spec: DepartmentSpec) -> DepartmentSpec:
        self.registry.register_department(spec)
        self._attach_one(spec)
        return spec

    def attach(self) -> int:
        """Register every known target as an agent on the communication manager."""
        if self.communication is None:
            return 0
        count = 0
        for spec in self.registry.tools() + self.registry.departments():
            if self._attach_one(spec):
                count += 1
        return count

    def detach(self) -> None:
        if self.communication is None:
            return
        for agent_id in self._attached:
            self.communication.unregister_agent(agent_id)
        self._attached = []

    def _attach_one(self, spec: AgentSpec) -> bool:
        if self.communication is None or spec.agent_id in self._attached:
            return False
        self.communication.register_agent(spec.agent_id, self._message_handler(spec))
        self._attached.append(spec.agent_id)
        return True

    def _message_handler(self, spec: AgentSpec) -> Callable[[AgentMessage], Awaitable[Any]]:
        async def handle(message: AgentMessage) -> Any:
            if message.type not in (MessageType.QUERY, MessageType.REQUEST, MessageType.CLARIFY):
                return None
            if isinstance(spec, DepartmentSpec):
                query = message.content if isinstance(message.content, str) else json.dumps(message.content, default=str)
                return await self.run_department(spec, query)
            args = message.content if isinstance(message.content, dict) else {"query": message.content}
            return transform_response_for_master(await self.execute_tool(spec, args))

        return handle

    # ── Protection ──────────────────────────────────────────────────

    async def _guarded(
        self,
        spec: AgentSpec,
        component: str,
        timeout_ms: int,
        operation: Callable[[], Awaitable[T]],
        retry: bool,
    ) -> T:
        """Rate limit, circuit breaker, timeout and (optionally) retry around operation."""
        identifier = f"agent:{spec.agent_id}"
        limit = self.rate_limiter.check(identifier, self.rate_limit_config)
        if not limit.allowed:
            self.degradation.report_failure(component, f"Rate limit exceeded for {spec.name}")
            raise RateLimitError(
                f"Rate limit exceeded for {spec.name}. Try again in {limit.retry_after} seconds.",
                retry_after=limit.retry_after,
                details={"agent_id": spec.agent_id},
            )

        breaker = self.breakers.get_breaker(identifier)

        async def attempt() -> T:
            return await breaker.execute(
                lambda: with_timeout(operation(), timeout_ms, f"{spec.name} timeout after {timeout_ms}ms")
            )

        try:
            if retry and self.config.retry_enabled:
                result = await with_retry(attempt, RetryOptions(
                    max_retries=self.config.max_retries,
                    initial_delay_ms=self.config.initial_delay_ms,
                    max_delay_ms=self.config.max_delay_ms,
                    should_retry=self._retry_predicate(),
                ))
            else:
                result = await attempt()
        except Exception as e:
            self.degradation.report_failure(component, f"{spec.name}: {_error_text(e)}")
            raise

        self.degradation.report_success(component)
        return result

    def _budget(self, spec: AgentSpec, default_ms: int) -> int:
        """Explicit timeout, then the task or agent-type budget, then the path default."""
        if spec.timeout_ms:
            return spec.timeout_ms
        if spec.task or spec.agent_type:
            return get_timeout_for_task(spec.task or "", spec.agent_type)
        return default_ms

    def _retry_predicate(self) -> Callable[[BaseException], bool]:
        """Transient messages retry; typed errors also retry when their code is marked transient."""
        retry_config = RetryConfig(
            max_retries=self.config.max_retries,
            initial_delay_ms=self.config.initial_delay_ms,
            max_delay_ms=self.config.max_delay_ms,
        )
        failures = 0

        def retryable(error: BaseException) -> bool:
            nonlocal failures
            failures += 1
            if is_retryable_error(error):
                return True
            return isinstance(error, SwitchboardException) and should_retry(error.code, failures - 1, retry_config)

        return retryable

    # ── Tools ───────────────────────────────────────────────────────

    async def execute_tool(self, spec: ToolSpec, args: Optional[Dict[str, Any]] = None, retry: bool = True) -> TaskResult:
        """
        Run one tool call and normalize its output.

        Raises:
            ValidationError: arguments do not match the tool's parameters
            RateLimitError, CircuitOpenError, OperationTimeoutError, or
            whatever the handler raised once retries are exhausted
        """
        cleaned = validate_tool_args(spec, args)
        timeout_ms = self._budget(spec, self.config.tool_timeout_ms)
        started = time.monotonic()
        raw = await self._guarded(spec, "integration", timeout_ms, lambda: spec.handler(cleaned), retry)
        return normalize_sub_agent_response(raw, "direct", {"duration": _elapsed_ms(started), "tool": spec.name})

    def _tool_failure_message(self, spec: ToolSpec, error: BaseException) -> str:
        code = error_code_of(error, ErrorCode.TOOL_EXECUTION_ERROR)
        if _is_timeout(error):
            logger.error(f"Tool {spec.name} timed out [{ErrorCode.TOOL_TIMEOUT.value}]: {_error_text(error)}")
            return f"I'm sorry, the {spec.name} tool took too long to respond. Please try again."
        logger.error(f"Tool {spec.name} failed [{code.value}]: {_error_text(error)}")
        return f"I'm sorry, I couldn't complete that with {spec.name}. {get_user_friendly_message(code)}"

    async def _execute_sub_tool(self, department: DepartmentSpec, call: ToolCall) -> FunctionResponse:
        """One department tool call; failures become payloads, never exceptions."""
        tool = self.registry.get_tool_by_name(call.name)
        if tool is None or not self.registry.is_connected(department.agent_id, tool.agent_id):
            logger.warning(f"{department.name} requested unavailable tool {call.name}")
            payload: Dict[str, Any] = {
                "error": f"Tool {call.name} is not available. {get_user_friendly_message(ErrorCode.TOOL_NOT_FOUND)}",
                "errorCode": ErrorCode.TOOL_NOT_FOUND.value,
            }
            return FunctionResponse(call.id, call.name, {"result": payload})

        try:
            result = await self.execute_tool(tool, call.args, retry=False)
        except Exception as e:
            code = error_code_of(e, ErrorCode.TOOL_EXECUTION_FAILED)
            logger.warning(f"Sub-tool {tool.name} for {department.name} failed [{code.value}]: {_error_text(e)}")
            payload = {
                "error": f"Tool {tool.name} failed: {_error_text(e)}",
                "errorCode": ErrorCode.TOOL_EXECUTION_FAILED.value,
            }
            return FunctionResponse(call.id, call.name, {"result": payload})

        if isinstance(result, SuccessResult):
            payload = {
                "success": True,
                "data": result.data,
                "summary": summarize_data(result.data),
                "structure": describe_structure(result.data),
            }
        else:
            payload = transform_response_for_master(result)
        return FunctionResponse(call.id, call.name, {"result": payload})

    # ── Departments ─────────────────────────────────────────────────

    async def _exchange(self, spec: DepartmentSpec, query: str) -> SessionTurn:
        tools = self.registry.connected_tools(spec.agent_id)
        session = spec.session_factory(spec, [tool.declaration() for tool in tools])

        turn = await session.send(f"Query: {query}")
        max_turns = spec.max_turns or self.config.department_max_turns
        turns = 0
        while turn.tool_calls and turns < max_turns:
            turns += 1
            logger.debug(f"{spec.name} turn {turns}: {len(turn.tool_calls)} tool call(s)")
            responses = await asyncio.gather(*(self._execute_sub_tool(spec, call) for call in turn.tool_calls))
            turn = await session.send(list(responses))
        if turn.tool_calls:
            logger.warning(f"{spec.name} hit the turn limit ({max_turns}) with tool calls outstanding")
        return turn

    async def consult_department(self, spec: DepartmentSpec, query: str) -> str:
        """
        Run a department exchange and interpret its final text.

        Raises whatever the protected exchange raised; see run_department for
        the never-raising variant.
        """
        timeout_ms = self._budget(spec, self.config.department_timeout_ms)
        started = time.monotonic()
        turn = await self._guarded(spec, "llm", timeout_ms, lambda: self._exchange(spec, query), retry=True)
        return await self._interpret_final_text(spec, query, turn, _elapsed_ms(started))

    async def _interpret_final_text(self, spec: DepartmentSpec, query: str, turn: SessionTurn, duration: int) -> str:
        text = turn.text or ""
        validation = validate_sub_agent_response({"text": text})
        if not validation.is_valid:
            logger.warning(f"{spec.name} response failed validation [{validation.error_code}]: {validation.error}")
            raw = json.dumps(turn.raw if turn.raw is not None else {"text": text}, default=str)
            text = f"Unable to extract clear response. Raw data: {raw[:200]}"

        if CLARIFY_SENTINEL in text:
            question = text.split(CLARIFY_SENTINEL, 1)[1].strip()
            if question:
                await self._send_clarification(spec, query, question)
                return f"I need clarification: {question}. Please provide this information."

        if ASK_USER_SENTINEL in text:
            question = text.split(ASK_USER_SENTINEL, 1)[1].strip()
            if question:
                logger.info(f"{spec.name} needs to ask the user: {question}")
                return f"Please ask the user: {question}"

        result = normalize_sub_agent_response({"text": text}, "session", {"duration": duration, "department": spec.name})
        if isinstance(result, SuccessResult):
            return result.data["instructions"]
        error = transform_response_for_master(result)
        logger.error(f"{spec.name} response could not be normalized [{error.get('errorCode')}]")
        return f"Error: {error.get('error')}. Please try again or contact support."

    async def _send_clarification(self, spec: DepartmentSpec, query: str, question: str) -> None:
        master = self.config.master_agent_id
        if self.communication is None or not self.communication.router.has_handler(master):
            return
        message = create_message(
            spec.agent_id,
            master,
            MessageType.CLARIFY,
            {"question": question, "originalQuery": query},
            ConversationContext(thread_id=f"delegation_{spec.agent_id}_{master}"),
            priority=MessagePriority.HIGH,
        )
        try:
            await self.communication.send_message(message)
        except ValidationError as e:
            logger.warning(f"Could not send clarification from {spec.name}: {e}")

    def _department_failure_message(self, spec: DepartmentSpec, error: BaseException) -> str:
        if _is_timeout(error):
            logger.error(f"Department {spec.name} timed out [{ErrorCode.TIMEOUT_ERROR.value}]: {_error_text(error)}")
            return (
                f"The {spec.name} department took too long to respond. "
                "Please try again with a simpler request."
            )
        code = error_code_of(error, ErrorCode.PROCESSING_ERROR)
        if code == ErrorCode.UNKNOWN_ERROR:
            code = ErrorCode.PROCESSING_ERROR
        logger.error(f"Department {spec.name} failed [{code.value}]: {_error_text(error)}")
        return (
            f"I encountered an error while processing your request with {spec.name}. "
            f"{get_user_friendly_message(code)}"
        )

    async def run_department(self, spec: DepartmentSpec, query: str) -> str:
        try:
            return await self.consult_department(spec, query)
        except Exception as e:
            return self._department_failure_message(spec, e)

    # ── Entry points ────────────────────────────────────────────────

    @track_performance(operation="delegation.process_request")
    async def process_request(
        self,
        query: str,
        target_agent_id: str,
        state: Optional[ConversationState] = None,
        args: Optional[Dict[str, Any]] = None,
        _hops: int = 0,
    ) -> MasterResult:
        """
        Deliver query to target_agent_id and return something the master can say.

        Tools return the transformed result dict; departments, routing
        prompts and every failure return a string.
        """
        spec = self.registry.get(target_agent_id)

        if isinstance(spec, ToolSpec):
            try:
                result = await self.execute_tool(spec, args if args is not None else {"query": query})
            except Exception as e:
                return self._tool_failure_message(spec, e)
            return transform_response_for_master(result)

        if isinstance(spec, DepartmentSpec):
            return await self.run_department(spec, query)

        if self.registry.is_routing_node(target_agent_id) and self.routing_engine is not None:
            return await self._route(query, target_agent_id, state or ConversationState(), args, _hops)

        logger.error(f"No delegation target {target_agent_id} [{ErrorCode.TOOL_NOT_FOUND.value}]")
        return f"I'm sorry, I couldn't find {target_agent_id}. {get_user_friendly_message(ErrorCode.TOOL_NOT_FOUND)}"

    async def _route(
        self,
        query: str,
        node_id: str,
        state: ConversationState,
        args: Optional[Dict[str, Any]],
        hops: int,
    ) -> MasterResult:
        if hops >= self.config.max_routing_hops:
            logger.error(f"Routing from {node_id} exceeded {self.config.max_routing_hops} hops [{ErrorCode.ROUTING_ERROR.value}]")
            return f"I'm sorry, I couldn't complete that request. {get_user_friendly_message(ErrorCode.ROUTING_ERROR)}"

        # A confirmation answers exactly one pending request, never a fresh decision.
        pending_id = state.flags.pop("pending_confirmation", None)
        confirmed = state.flags.pop("confirmed", None)
        request = self.confirmation.get_request(pending_id) if pending_id else None
        if request is not None:
            if confirmed is None:
                confirmed = self.confirmation.process_confirmation_response(query, pending_id).confirmed
            else:
                self.confirmation.discard(pending_id)
            if confirmed:
                edge = self._edge(request.connection_id)
                if edge is None:
                    logger.error(f"Confirmed connection {request.connection_id} is gone [{ErrorCode.ROUTING_ERROR.value}]")
                    return f"I'm sorry, I couldn't complete that request. {get_user_friendly_message(ErrorCode.ROUTING_ERROR)}"
                logger.info(f"Confirmed {node_id} -> {edge.id}")
                return await self.process_request(request.query or query, edge.target, state, args, _hops=hops + 1)
            logger.info(f"Caller declined {request.connection_id}; routing again")
        elif pending_id:
            logger.info(f"Confirmation {pending_id} is no longer pending; routing again")

        history = state.extras.get("history") or []
        decision = await self.routing_engine.make_routing_decision(
            node_id, self.registry.edges, query, state, history,
        )
        logger.info(f"Routing {node_id} -> {decision.chosen_connection_id or '<none>'} ({decision.score:.2f}): {decision.reason}")

        if decision.clarification_question:
            state.clarification_count += 1
            return decision.clarification_question

        edge = self._edge(decision.chosen_connection_id)
        if edge is None:
            logger.error(f"No route out of {node_id} [{ErrorCode.ROUTING_ERROR.value}]")
            return f"I'm sorry, I couldn't complete that request. {get_user_friendly_message(ErrorCode.ROUTING_ERROR)}"

        if decision.required_confirmation:
            card = self.routing_engine.router.store.get_by_connection_id(edge.id)
            if card is not None:
                self.confirmation.clear_old_confirmations(self.config.confirmation_timeout_ms)
                request_id, request = self.confirmation.create_confirmation_request(decision, card, query)
                state.flags["pending_confirmation"] = request_id
                return request.message

        return await self.process_request(query, edge.target, state, args, _hops=hops + 1)

    def _edge(self, connection_id: Optional[str]) -> Optional[Edge]:
        return next((e for e in self.registry.edges if e.id == connection_id), None)

    @track_performance(operation="delegation.master_tool_call")
    async def handle_master_tool_call(self, name: str, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Answer a master tool call by name; always returns a master-facing dict."""
        args = dict(args or {})
        spec = self.registry.find_by_name(name) or self.registry.get(name)

        if spec is None:
            return {
                "error": f"Unknown tool: {name}",
                "errorCode": ErrorCode.TOOL_NOT_FOUND.value,
                "message": get_user_friendly_message(ErrorCode.TOOL_NOT_FOUND),
            }

        if isinstance(spec, DepartmentSpec):
            query = args.get("query") or args.get("request") or json.dumps(args, default=str)
            try:
                text = await self.consult_department(spec, str(query))
            except Exception as e:
                return self._failure_payload(e, ErrorCode.DEPARTMENT_ERROR, self._department_failure_message(spec, e))
            return {"instructions": text}

        try:
            result = await self.execute_tool(spec, args)
        except Exception as e:
            fallback = ErrorCode.TOOL_TIMEOUT if _is_timeout(e) else ErrorCode.TOOL_EXECUTION_ERROR
            return self._failure_payload(e, fallback, self._tool_failure_message(spec, e))
        return transform_response_for_master(result)

    @staticmethod
    def _failure_payload(error: BaseException, fallback: ErrorCode, message: str) -> Dict[str, Any]:
        if isinstance(error, (RateLimitError, CircuitOpenError, ValidationError)):
            code = error.code
        else:
            code = fallback
        return {"error": _error_text(error), "errorCode": code.value, "message": message}
