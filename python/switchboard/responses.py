"""
Response normalization and call wrapping.

Every handler output, whatever its shape, passes through
``normalize_sub_agent_response`` and comes out as one of the TaskResult
variants. ``transform_response_for_master`` turns that into the payload the
master agent receives as a tool result.
"""

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from switchboard.exceptions import ErrorCode, OperationTimeoutError, is_retryable_code
from switchboard.messaging.protocol import now_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================================
# Result variants
# ============================================================================

@dataclass
class RequiredField:
    field: str
    type: str = "string"
    description: str = ""


@dataclass
class ErrorInfo:
    code: str
    message: str
    retryable: bool = False


@dataclass
class SuccessResult:
    data: Any
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: str = "success"

    @property
    def success(self) -> bool:
        return True


@dataclass
class NeedsInfoResult:
    required: List[RequiredField]
    message: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: str = "needs_info"

    @property
    def success(self) -> bool:
        return False


@dataclass
class ErrorResult:
    error: ErrorInfo
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: str = "error"

    @property
    def success(self) -> bool:
        return False


@dataclass
class PartialResult:
    data: Any
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: str = "partial"

    @property
    def success(self) -> bool:
        return False


TaskResult = Union[SuccessResult, NeedsInfoResult, ErrorResult, PartialResult]


@dataclass
class ResponseValidation:
    is_valid: bool
    error: Optional[str] = None
    error_code: Optional[str] = None


# ============================================================================
# Validation / normalization
# ============================================================================

def validate_sub_agent_response(raw: Any) -> ResponseValidation:
    """Structural sanity check on a department's raw turn output."""
    if raw is None or (isinstance(raw, (str, bytes)) and not raw):
        return ResponseValidation(False, "Response is null or undefined", "EMPTY_RESPONSE")

    if not isinstance(raw, Mapping):
        return ResponseValidation(False, "Response must be an object", "INVALID_TYPE")

    text = raw.get("text")
    if text is not None:
        if not isinstance(text, str):
            return ResponseValidation(False, "Response text must be a string", "INVALID_TEXT_TYPE")
        if not text.strip():
            return ResponseValidation(False, "Response text is empty", "EMPTY_TEXT")

    if "data" in raw or "error" in raw:
        return ResponseValidation(True)
    if raw:
        return ResponseValidation(True)
    return ResponseValidation(False, "Response has no valid content (text, data, or error)", "NO_CONTENT")


def _error(code: Union[ErrorCode, str], message: str, metadata: Dict[str, Any]) -> ErrorResult:
    code_value = code.value if isinstance(code, ErrorCode) else str(code)
    return ErrorResult(ErrorInfo(code_value, message, is_retryable_code(code_value)), metadata)


def _required_fields(items: Any) -> List[RequiredField]:
    fields = []
    for item in items or []:
        if isinstance(item, Mapping):
            fields.append(RequiredField(
                field=str(item.get("field", "")),
                type=str(item.get("type", "string")),
                description=str(item.get("description", "")),
            ))
        else:
            fields.append(RequiredField(field=str(item)))
    return fields


def _session_text(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if not isinstance(raw, Mapping):
        return ""
    text = raw.get("text") or raw.get("instructions")
    if not text and isinstance(raw.get("response"), Mapping):
        text = raw["response"].get("text")
    return text if isinstance(text, str) else ""


def normalize_sub_agent_response(raw: Any, source: str, meta: Optional[Dict[str, Any]] = None) -> TaskResult:
    """
    Coerce raw handler output into a TaskResult.

    Args:
        raw: Whatever the tool handler or department session produced
        source: "direct" for tool handlers, "session" for department text
        meta: Extra metadata (duration, retry_count) merged into the result

    Returns:
        SuccessResult, NeedsInfoResult, ErrorResult or PartialResult
    """
    metadata = {"source": source, "timestamp": now_ms(), **(meta or {})}
    mapping = raw if isinstance(raw, Mapping) else None

    if mapping is not None and mapping.get("error"):
        error = mapping["error"]
        message = error if isinstance(error, str) else "Unknown error occurred"
        code = mapping.get("errorCode") or mapping.get("error_code") or ErrorCode.UNKNOWN_ERROR
        return _error(code, message, metadata)

    status = mapping.get("status") if mapping is not None else None

    if status == "needs_info":
        return NeedsInfoResult(
            required=_required_fields(mapping.get("required")),
            message=str(mapping.get("message", "")),
            metadata=metadata,
        )

    if status == "partial":
        return PartialResult(
            data=mapping.get("data", mapping.get("result")),
            errors=[str(e) for e in mapping.get("errors", [])],
            metadata=metadata,
        )

    if source == "session":
        text = _session_text(raw)
        if not text.strip():
            return _error(ErrorCode.EMPTY_SESSION_RESPONSE, "Sub-agent returned empty response", metadata)
        return SuccessResult({"instructions": text.strip(), "raw": raw}, metadata)

    if source == "direct":
        if mapping is not None:
            if status in ("success", "ok"):
                return SuccessResult(mapping.get("data") or mapping.get("result") or dict(mapping), metadata)
            if mapping.get("data") or mapping.get("result"):
                return SuccessResult(mapping.get("data") or mapping.get("result"), metadata)
            if mapping:
                return SuccessResult(dict(mapping), metadata)
        elif raw is not None and raw != "":
            return SuccessResult(raw, metadata)

    return _error(ErrorCode.NORMALIZATION_FAILED, "Unable to normalize response: unknown format", metadata)


def transform_response_for_master(result: TaskResult) -> Dict[str, Any]:
    """Strip internal fields, leaving the tool-result payload for the master agent.

    Keys here are camelCase on purpose: the master consumes them verbatim.
    """
    if isinstance(result, ErrorResult):
        message = result.error.message or "An error occurred while processing your request"
        return {
            "error": result.error.message or "Sub-agent request failed",
            "errorCode": result.error.code,
            "message": message,
        }

    if isinstance(result, NeedsInfoResult):
        return {
            "needsInfo": True,
            "required": [asdict(f) for f in result.required],
            "message": result.message or "More information is needed to continue.",
        }

    if isinstance(result, PartialResult):
        return {"result": result.data, "success": False, "partial": True, "errors": list(result.errors)}

    data = result.data
    if result.metadata.get("source") == "session" and isinstance(data, Mapping) and data.get("instructions"):
        return {"instructions": data["instructions"], "data": data.get("raw")}
    return {"result": data, "success": True}


# ============================================================================
# Timeout / retry wrapping
# ============================================================================

def _observe_late_outcome(task: "asyncio.Future") -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug("Operation finished with an error after its timeout: %s", error)


async def with_timeout(operation: Awaitable[T], timeout_ms: float, message: str = "Operation timeout") -> T:
    """
    Wait at most timeout_ms for operation.

    The operation is NOT cancelled on timeout: it keeps running and any late
    result is discarded. Handlers wrapped here must be safe to abandon.
    """
    task = asyncio.ensure_future(operation)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000.0)
    except asyncio.CancelledError:
        task.add_done_callback(_observe_late_outcome)
        raise

    if task in done:
        return task.result()

    task.add_done_callback(_observe_late_outcome)
    raise OperationTimeoutError(message, details={"timeout_ms": timeout_ms})


@dataclass
class RetryOptions:
    max_retries: int = 2
    initial_delay_ms: float = 1000
    max_delay_ms: float = 5000
    should_retry: Optional[Callable[[BaseException], bool]] = None


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(f"Attempt {retry_state.attempt_number} failed, retrying in {delay:.2f}s: {error}")


async def with_retry(fn: Callable[[], Awaitable[T]], options: Optional[RetryOptions] = None) -> T:
    """Call fn, retrying with exponential backoff while should_retry(error) holds.

    Delay before retry n (0-based) is min(max_delay, initial_delay * 2**n).
    The last error is re-raised once attempts run out.
    """
    opts = options or RetryOptions()
    predicate = opts.should_retry or (lambda e: True)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(opts.max_retries + 1),
        wait=wait_exponential(multiplier=opts.initial_delay_ms / 1000.0, max=opts.max_delay_ms / 1000.0),
        retry=retry_if_exception(predicate),
        before_sleep=_log_retry,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await fn()
    raise RuntimeError("retry loop exited without a result")


_NEVER_RETRY = {
    ErrorCode.RATE_LIMIT_EXCEEDED.value,
    ErrorCode.CIRCUIT_OPEN.value,
    ErrorCode.VALIDATION_ERROR.value,
    ErrorCode.UNAUTHORIZED.value,
    ErrorCode.FORBIDDEN.value,
    ErrorCode.PERMISSION_DENIED.value,
    ErrorCode.TOOL_NOT_FOUND.value,
}
_CASELESS_PATTERNS = ("timeout", "network", "temporary", "rate limit")
_EXACT_PATTERNS = ("ECONNREFUSED", "ETIMEDOUT", "RATE_LIMIT", "503", "502", "504", "ROUTING_ERROR", "AGENT_UNAVAILABLE")


def is_retryable_error(error: Optional[BaseException]) -> bool:
    """Transient (network, timeout, 5xx) errors retry; validation, auth and short-circuits do not."""
    if error is None:
        return False
    code = getattr(error, "code", None) or getattr(error, "error_code", None) or ""
    code = code.value if isinstance(code, ErrorCode) else str(code)
    if code in _NEVER_RETRY:
        return False

    message = str(error)
    lowered = message.lower()
    if any(p in lowered or p in code.lower() for p in _CASELESS_PATTERNS):
        return True
    return any(p in message or p in code for p in _EXACT_PATTERNS)


# ============================================================================
# Data summaries (tool results fed back into department exchanges)
# ============================================================================

def summarize_data(data: Any, depth: int = 0, max_depth: int = 2) -> str:
    """Short, human-readable preview of a value."""
    if depth > max_depth:
        return "..."
    if data is None:
        return "null"
    if isinstance(data, str):
        return f'"{data[:50]}{"..." if len(data) > 50 else ""}"'
    if isinstance(data, bool):
        return "true" if data else "false"
    if isinstance(data, (int, float)):
        return str(data)
    if isinstance(data, (list, tuple)):
        if not data:
            return "[]"
        return f"[{len(data)} items: {summarize_data(data[0], depth + 1, max_depth)}]"
    if isinstance(data, Mapping):
        keys = list(data.keys())
        if not keys:
            return "{}"
        preview = ", ".join(f"{k}: {summarize_data(data[k], depth + 1, max_depth)}" for k in keys[:5])
        return f"{{{preview}, ...}}" if len(keys) > 5 else f"{{{preview}}}"
    return str(data)


def describe_structure(data: Any) -> str:
    if data is None:
        return "null"
    if isinstance(data, bool):
        return "boolean"
    if isinstance(data, (int, float)):
        return "number"
    if isinstance(data, str):
        return "string"
    if isinstance(data, (list, tuple)):
        tail = f" of {describe_structure(data[0])}" if data else ""
        return f"array[{len(data)}]{tail}"
    if isinstance(data, Mapping):
        return f"object with fields: {', '.join(str(k) for k in data.keys())}"
    return type(data).__name__
