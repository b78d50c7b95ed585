"""
Unified error system for Switchboard.

Single hierarchy for every failure the delegation core can surface:
- ErrorCode taxonomy with user-friendly messages and retry flags
- Exception classes carrying a code, category and severity
- Retry delay calculation with exponential backoff
- Sanitized error responses for the calling agent
- Fallback chain execution
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================================
# Enums & Constants
# ============================================================================

class ErrorSeverity(Enum):
    """Error severity levels."""
    CRITICAL = "critical"      # Service unusable
    ERROR = "error"            # Operation failure, caller impacted
    WARNING = "warning"        # Degraded operation
    INFO = "info"              # Informational only


class ErrorCategory(Enum):
    """Error categories for classification and routing."""
    VALIDATION = "validation"           # Malformed input or message
    AUTHORIZATION = "authorization"     # Permission failure
    LLM_SERVICE = "llm_service"         # LLM provider error
    RATE_LIMIT = "rate_limit"           # Rate limit exceeded
    CIRCUIT = "circuit"                 # Dependency short-circuited
    TIMEOUT = "timeout"                 # Operation timeout
    ROUTING = "routing"                 # No handler / agent gone
    TOOL = "tool"                       # Tool lookup or execution
    DEPARTMENT = "department"           # Multi-turn sub-agent failure
    EXTERNAL = "external"               # External service error
    INTERNAL = "internal"               # Internal system error


class ErrorCode(str, Enum):
    """Stable error codes reported to callers and logs."""
    # Input validation
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_REQUIRED_DATA = "MISSING_REQUIRED_DATA"
    TYPE_MISMATCH = "TYPE_MISMATCH"
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # External systems
    EXTERNAL_API_FAILURE = "EXTERNAL_API_FAILURE"
    DATABASE_ERROR = "DATABASE_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    CONNECTION_TIMEOUT = "CONNECTION_TIMEOUT"

    # Timeouts
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    REQUEST_TIMEOUT = "REQUEST_TIMEOUT"

    # Permissions
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    PERMISSION_DENIED = "PERMISSION_DENIED"

    # Internal
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    # Rate limiting / circuit breaking
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"

    # Tools and departments
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    TOOL_TIMEOUT = "TOOL_TIMEOUT"
    TOOL_EXECUTION_ERROR = "TOOL_EXECUTION_ERROR"
    TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
    DEPARTMENT_ERROR = "DEPARTMENT_ERROR"

    # Messaging
    NO_HANDLER = "NO_HANDLER"
    AGENT_UNREGISTERED = "AGENT_UNREGISTERED"
    MANAGER_CLEARED = "MANAGER_CLEARED"
    ROUTING_ERROR = "ROUTING_ERROR"

    # Response normalization
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    EMPTY_SESSION_RESPONSE = "EMPTY_SESSION_RESPONSE"
    NORMALIZATION_FAILED = "NORMALIZATION_FAILED"


@dataclass(frozen=True)
class ErrorCategoryInfo:
    """Static metadata for one error code."""
    code: ErrorCode
    retryable: bool
    user_friendly_message: str
    http_status: int = 500
    suggestions: List[str] = field(default_factory=list)


def _info(code: ErrorCode, retryable: bool, message: str, status: int, suggestions: Optional[List[str]] = None) -> ErrorCategoryInfo:
    return ErrorCategoryInfo(code, retryable, message, status, suggestions or [])


ERROR_CATEGORIES: Dict[ErrorCode, ErrorCategoryInfo] = {
    info.code: info
    for info in [
        _info(ErrorCode.INVALID_INPUT, False, "The information provided is invalid. Please check and try again.", 400),
        _info(ErrorCode.MISSING_REQUIRED_DATA, False, "Some required information is missing. Please provide all necessary details.", 400),
        _info(ErrorCode.TYPE_MISMATCH, False, "The data format is incorrect. Please check your input.", 400),
        _info(ErrorCode.VALIDATION_ERROR, False, "The request could not be validated. Please check the details and try again.", 400),
        _info(
            ErrorCode.EXTERNAL_API_FAILURE, True,
            "I'm having trouble accessing the system right now. Please try again in a moment.", 503,
            ["Wait a few seconds and try again", "Check your internet connection"],
        ),
        _info(ErrorCode.DATABASE_ERROR, True, "The database is temporarily unavailable. Please try again.", 503),
        _info(ErrorCode.NETWORK_ERROR, True, "A network error occurred. Please check your connection and try again.", 503),
        _info(ErrorCode.CONNECTION_TIMEOUT, True, "The connection timed out. Please try again.", 504),
        _info(ErrorCode.TIMEOUT_ERROR, True, "The request took too long to process. Please try again.", 504),
        _info(ErrorCode.REQUEST_TIMEOUT, True, "Your request timed out. Please try again.", 504),
        _info(ErrorCode.UNAUTHORIZED, False, "You are not authorized to perform this action.", 401),
        _info(ErrorCode.FORBIDDEN, False, "You do not have permission to access this resource.", 403),
        _info(ErrorCode.PERMISSION_DENIED, False, "Permission denied. Please contact support if you believe this is an error.", 403),
        _info(ErrorCode.INTERNAL_ERROR, False, "An internal error occurred. Please try again or contact support.", 500),
        _info(ErrorCode.UNEXPECTED_ERROR, False, "An unexpected error occurred. Please try again.", 500),
        _info(ErrorCode.PROCESSING_ERROR, True, "There was an error processing your request. Please try again.", 500),
        _info(ErrorCode.UNKNOWN_ERROR, False, "An error occurred. Please try again.", 500),
        _info(ErrorCode.RATE_LIMIT_ERROR, True, "Too many requests. Please wait a moment and try again.", 429),
        _info(ErrorCode.TOO_MANY_REQUESTS, True, "Rate limit exceeded. Please wait before trying again.", 429),
        _info(ErrorCode.RATE_LIMIT_EXCEEDED, False, "Too many requests right now. Please wait a moment and try again.", 429),
        _info(ErrorCode.CIRCUIT_OPEN, False, "That service is temporarily unavailable. Please try again shortly.", 503),
        _info(ErrorCode.TOOL_NOT_FOUND, False, "The requested tool could not be found.", 404),
        _info(ErrorCode.TOOL_TIMEOUT, True, "The tool took too long to respond. Please try again with a simpler request.", 504),
        _info(ErrorCode.TOOL_EXECUTION_ERROR, True, "There was an error executing the tool. Please try again.", 500),
        _info(ErrorCode.TOOL_EXECUTION_FAILED, True, "Tool execution failed. Please try again.", 500),
        _info(ErrorCode.DEPARTMENT_ERROR, True, "The department could not complete the request. Please try again.", 502),
        _info(ErrorCode.NO_HANDLER, False, "No one is available to handle that request right now.", 404),
        _info(ErrorCode.AGENT_UNREGISTERED, False, "The agent handling this request is no longer available.", 410),
        _info(ErrorCode.MANAGER_CLEARED, False, "The conversation was closed before the request completed.", 409),
        _info(ErrorCode.ROUTING_ERROR, True, "The request could not be delivered. Please try again.", 502),
        _info(ErrorCode.EMPTY_RESPONSE, False, "No response was received. Please try again.", 502),
        _info(ErrorCode.EMPTY_SESSION_RESPONSE, False, "The department returned an empty answer. Please try again.", 502),
        _info(ErrorCode.NORMALIZATION_FAILED, False, "The response could not be understood. Please try again.", 502),
    ]
}

DEFAULT_USER_MESSAGE = "An error occurred. Please try again."


def _coerce_code(code: Union[ErrorCode, str, None]) -> Optional[ErrorCode]:
    if isinstance(code, ErrorCode):
        return code
    try:
        return ErrorCode(code)
    except ValueError:
        return None


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ErrorContext:
    """Rich error context with metadata."""
    error_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    message: str = ""
    user_message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    is_recoverable: bool = True
    http_status: int = 500
    recovery_suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "code": self.code.value,
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
            "is_recoverable": self.is_recoverable,
            "http_status": self.http_status,
            "recovery_suggestions": self.recovery_suggestions,
        }


@dataclass
class RetryConfig:
    """Retry strategy configuration (delays in milliseconds)."""
    max_retries: int = 2
    initial_delay_ms: int = 1000
    max_delay_ms: int = 5000
    backoff_multiplier: float = 2.0
    retryable_errors: List[ErrorCode] = field(default_factory=lambda: [
        ErrorCode.EXTERNAL_API_FAILURE,
        ErrorCode.NETWORK_ERROR,
        ErrorCode.TIMEOUT_ERROR,
        ErrorCode.RATE_LIMIT_ERROR,
        ErrorCode.DATABASE_ERROR,
        ErrorCode.CONNECTION_TIMEOUT,
    ])

    def get_delay(self, attempt: int) -> float:
        """Delay before the given retry attempt, in seconds."""
        return calculate_retry_delay(attempt, self) / 1000.0


DEFAULT_RETRY_CONFIG = RetryConfig()


# ============================================================================
# Base Exception
# ============================================================================

class SwitchboardException(Exception):
    """Base exception for all Switchboard errors with rich context."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        is_recoverable: Optional[bool] = None,
        http_status: Optional[int] = None,
        user_message: Optional[str] = None,
        recovery_suggestions: Optional[List[str]] = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        info = ERROR_CATEGORIES.get(self.code)
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.is_recoverable = info.retryable if is_recoverable is None and info else bool(is_recoverable)
        self.http_status = http_status or (info.http_status if info else 500)
        self.user_message = user_message or (info.user_friendly_message if info else message)
        if recovery_suggestions is None:
            recovery_suggestions = list(info.suggestions) if info else []
        self.recovery_suggestions = recovery_suggestions

        self.context = ErrorContext(
            code=self.code,
            severity=severity,
            category=category,
            message=message,
            user_message=self.user_message,
            details=self.details,
            is_recoverable=self.is_recoverable,
            http_status=self.http_status,
            recovery_suggestions=self.recovery_suggestions,
        )
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return self.context.to_dict()


# ============================================================================
# Concrete Errors
# ============================================================================

class ValidationError(SwitchboardException):
    """Malformed message, arguments or configuration."""

    code = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        super().__init__(message, **kwargs)


class ToolNotFoundError(SwitchboardException):
    code = ErrorCode.TOOL_NOT_FOUND

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.TOOL)
        super().__init__(message, **kwargs)


class ToolTimeoutError(SwitchboardException):
    code = ErrorCode.TOOL_TIMEOUT

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.TIMEOUT)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        super().__init__(message, **kwargs)


class ToolExecutionError(SwitchboardException):
    code = ErrorCode.TOOL_EXECUTION_ERROR

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.TOOL)
        super().__init__(message, **kwargs)


class DepartmentError(SwitchboardException):
    code = ErrorCode.DEPARTMENT_ERROR

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.DEPARTMENT)
        super().__init__(message, **kwargs)


class RequestTimeoutError(SwitchboardException):
    """A pending request received no response in time."""

    code = ErrorCode.REQUEST_TIMEOUT

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.TIMEOUT)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        super().__init__(message, **kwargs)


class OperationTimeoutError(SwitchboardException):
    """Raised by with_timeout; the message always mentions the timeout."""

    code = ErrorCode.TIMEOUT_ERROR

    def __init__(self, message: str = "Operation timeout", **kwargs):
        if "timeout" not in message.lower():
            message = f"{message} (timeout)"
        kwargs.setdefault("category", ErrorCategory.TIMEOUT)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        super().__init__(message, **kwargs)


class NoHandlerError(SwitchboardException):
    code = ErrorCode.NO_HANDLER

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.ROUTING)
        super().__init__(message, **kwargs)


class AgentUnregisteredError(SwitchboardException):
    code = ErrorCode.AGENT_UNREGISTERED

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.ROUTING)
        super().__init__(message, **kwargs)


class ManagerClearedError(SwitchboardException):
    code = ErrorCode.MANAGER_CLEARED

    def __init__(self, message: str = "Communication manager cleared", **kwargs):
        kwargs.setdefault("category", ErrorCategory.ROUTING)
        kwargs.setdefault("severity", ErrorSeverity.INFO)
        super().__init__(message, **kwargs)


class RateLimitError(SwitchboardException):
    """Hard rejection from the rate limiter."""

    code = ErrorCode.RATE_LIMIT_EXCEEDED

    def __init__(self, message: str, retry_after: Optional[int] = None, **kwargs):
        self.retry_after = retry_after
        kwargs.setdefault("category", ErrorCategory.RATE_LIMIT)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        details = kwargs.setdefault("details", {})
        if retry_after is not None:
            details["retry_after"] = retry_after
        super().__init__(message, **kwargs)


class CircuitOpenError(SwitchboardException):
    code = ErrorCode.CIRCUIT_OPEN

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CIRCUIT)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        super().__init__(message, **kwargs)


class LLMError(SwitchboardException):
    code = ErrorCode.EXTERNAL_API_FAILURE

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.LLM_SERVICE)
        kwargs.setdefault("http_status", 502)
        super().__init__(message, **kwargs)


# ============================================================================
# Utility Functions
# ============================================================================

def error_code_of(error: BaseException, default: ErrorCode = ErrorCode.UNKNOWN_ERROR) -> ErrorCode:
    """Best-effort code extraction from any exception."""
    if isinstance(error, SwitchboardException):
        return error.code
    code = _coerce_code(getattr(error, "code", None))
    return code or default


def get_user_friendly_message(code: Union[ErrorCode, str]) -> str:
    info = ERROR_CATEGORIES.get(_coerce_code(code))  # type: ignore[arg-type]
    return info.user_friendly_message if info else DEFAULT_USER_MESSAGE


def is_retryable_code(code: Union[ErrorCode, str]) -> bool:
    info = ERROR_CATEGORIES.get(_coerce_code(code))  # type: ignore[arg-type]
    return bool(info and info.retryable)


def calculate_retry_delay(attempt: int, config: RetryConfig = DEFAULT_RETRY_CONFIG) -> float:
    """Exponential backoff delay in milliseconds, capped at max_delay_ms."""
    delay = config.initial_delay_ms * (config.backoff_multiplier ** attempt)
    return min(delay, config.max_delay_ms)


def should_retry(code: Union[ErrorCode, str], attempt: int, config: RetryConfig = DEFAULT_RETRY_CONFIG) -> bool:
    if attempt >= config.max_retries:
        return False
    if _coerce_code(code) in config.retryable_errors:
        return True
    return is_retryable_code(code)


_TIMEOUTS_MS = {
    "default": 30000,
    "fast_agent": 10000,
    "complex_agent": 60000,
    "external_api": 15000,
    "database_query": 10000,
}


def get_timeout_for_task(task: str, agent_type: Optional[str] = None) -> int:
    """Pick a timeout budget (ms) from the task name or agent type."""
    if task in ("simple_query", "get_status", "check_availability"):
        return _TIMEOUTS_MS["fast_agent"]
    if task in ("complex_calculation", "generate_report", "process_batch"):
        return _TIMEOUTS_MS["complex_agent"]
    if agent_type == "data_retrieval":
        return _TIMEOUTS_MS["database_query"]
    if agent_type == "external_integration":
        return _TIMEOUTS_MS["external_api"]
    return _TIMEOUTS_MS["default"]


_STACK_LINE = re.compile(r"^\s*at\s+|^\s*\d+\||^\s*File \"")
_SOURCE_REF = re.compile(r"/[^\s]+\.(?:py|ts|js):\d+(?::\d+)?")
_WINDOWS_PATH = re.compile(r"[A-Z]:\\[^\s]+")
_HIDDEN_KEYS = {"stack", "stack_trace", "stackTrace", "traceback", "file", "path"}


def _sanitize_message(message: Optional[str]) -> Optional[str]:
    if not message:
        return None
    lines = [
        line for line in message.split("\n")
        if not _STACK_LINE.search(line)
        and "site-packages" not in line
        and "node_modules" not in line
        and "Traceback" not in line
    ]
    cleaned = _WINDOWS_PATH.sub("", _SOURCE_REF.sub("", "\n".join(lines))).strip()
    # Short remnants are usually just noise left over from a stripped trace.
    return cleaned if len(cleaned) >= 10 else None


def _sanitize_details(details: Any) -> Any:
    if isinstance(details, str):
        return _SOURCE_REF.sub("", details).strip()
    if isinstance(details, dict):
        return {k: _sanitize_details(v) for k, v in details.items() if k not in _HIDDEN_KEYS}
    if isinstance(details, list):
        return [_sanitize_details(v) for v in details]
    return details


def create_error_response(
    code: Union[ErrorCode, str],
    message: Optional[str] = None,
    details: Any = None,
) -> Dict[str, Any]:
    """Build a caller-safe error payload with stack traces and paths removed."""
    info = ERROR_CATEGORIES.get(_coerce_code(code))  # type: ignore[arg-type]
    code_value = code.value if isinstance(code, ErrorCode) else code
    sanitized = _sanitize_message(message)

    if info:
        return {
            "code": code_value,
            "message": sanitized or info.user_friendly_message,
            "details": _sanitize_details(details),
            "retryable": info.retryable,
            "user_friendly_message": info.user_friendly_message,
            "suggestions": list(info.suggestions),
        }
    return {
        "code": code_value,
        "message": sanitized or "An error occurred",
        "details": _sanitize_details(details),
        "retryable": False,
    }


FALLBACK_STRATEGIES = ("cached_data", "alternative_agent", "degraded_mode", "human_escalation", "abort")


async def execute_with_fallback(
    primary: Callable[[], Awaitable[T]],
    fallbacks: Sequence[Tuple[str, Callable[[], Awaitable[Optional[T]]]]],
    on_error: Optional[Callable[[BaseException, str], None]] = None,
) -> Optional[T]:
    """
    Run primary, then each (strategy, action) fallback in order.

    A fallback that raises or returns None hands over to the next one.
    Returns None once every fallback is exhausted.
    """
    try:
        return await primary()
    except Exception as e:
        if on_error:
            on_error(e, "primary")

    for strategy, action in fallbacks:
        try:
            result = await action()
        except Exception as e:
            logger.warning("Fallback strategy %s failed: %s", strategy, e)
            if on_error:
                on_error(e, strategy)
            continue
        if result is not None:
            return result

    return None
