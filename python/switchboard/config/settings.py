"""
Configuration management using Pydantic Settings.
Every value can be overridden with a SWITCHBOARD_-prefixed environment variable.
"""
import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Delegation core settings with validation and environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="SWITCHBOARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_name: str = Field(default="Switchboard", description="Application name")
    environment: str = Field(default="development", description="Environment: development, staging, production")

    # Timeouts (ms)
    timeout_sub_agent_loop_ms: int = Field(default=30000, ge=100, description="Department exchange budget")
    timeout_tool_execution_ms: int = Field(default=10000, ge=100, description="Direct tool call budget")

    # Retry
    retry_enabled: bool = Field(default=True, description="Retry transient delegation failures")
    retry_max_retries: int = Field(default=2, ge=0, le=10, description="Retries after the first attempt")
    retry_initial_delay_ms: int = Field(default=1000, ge=0, description="First backoff delay")
    retry_max_delay_ms: int = Field(default=5000, ge=0, description="Backoff ceiling")

    # Rate limiting
    rate_limit_max_requests: int = Field(default=100, ge=1, description="Requests per window")
    rate_limit_window_ms: int = Field(default=60000, ge=1000, description="Window length")
    rate_limit_burst_size: int = Field(default=10, ge=0, description="Extra requests tolerated per window")
    rate_limit_cleanup_interval: int = Field(default=1000, ge=0, description="Checked HTTP requests between sweeps of expired windows")

    # Circuit breaker
    circuit_breaker_failure_threshold: int = Field(default=5, ge=1, description="Consecutive failures before opening")
    circuit_breaker_reset_timeout_ms: int = Field(default=60000, ge=0, description="Open duration before a trial call")
    circuit_breaker_state_file: Optional[str] = Field(default=None, description="JSON file for persisted breaker stats")

    # Degradation
    degradation_recovery_check_interval_ms: int = Field(default=30000, ge=10, description="Recovery check period")
    degradation_enable_auto_recovery: bool = Field(default=True, description="Run the periodic recovery task")

    # Agent communication
    communication_enabled: bool = Field(default=True, description="Accept inter-agent messages")
    communication_timeout_ms: int = Field(default=30000, ge=1, description="Default request/response timeout")
    communication_retry_enabled: bool = Field(default=True, description="Retry failed message routing")
    communication_max_retries: int = Field(default=2, ge=0, description="Routing retries per message")
    communication_max_conversation_depth: int = Field(default=5, ge=1, description="Max correlation chain length")

    # Delegation
    department_max_turns: int = Field(default=5, ge=1, le=50, description="Tool-call turns per department exchange")

    # Routing
    routing_score_threshold: float = Field(default=0.6, ge=0.0, le=1.0, description="Accept threshold")
    routing_clarification_threshold: float = Field(default=0.5, ge=0.0, le=1.0, description="Low-confidence floor")
    routing_max_clarifications: int = Field(default=3, ge=0, description="Clarifications before safe default")
    routing_fallback_node_id: Optional[str] = Field(default=None, description="Clarification node")
    routing_default_safe_node_id: Optional[str] = Field(default=None, description="Safe default node")

    # LLM (OpenAI-compatible endpoint used for connection scoring)
    llm_base_url: str = Field(default="http://localhost:11434/v1", description="Chat completions base URL")
    llm_api_key: Optional[str] = Field(default=None, description="Bearer token for the LLM endpoint")
    llm_model: str = Field(default="gpt-4o-mini", description="Scoring model")
    llm_timeout_seconds: float = Field(default=30.0, gt=0, description="LLM request timeout")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: json, text")
    event_log_path: Optional[str] = Field(default=None, description="JSONL file for communication events")
    event_log_buffer_size: int = Field(default=500, ge=1, description="Events kept in memory")

    # HTTP
    cors_origins: str = Field(default="", description="Comma-separated allowed origins")
    api_rate_limit_excluded_paths: str = Field(default="/health,/docs,/redoc,/openapi.json", description="Paths exempt from rate limiting")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is one of allowed values."""
        allowed = ["development", "staging", "production", "test"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"Log level must be one of {allowed}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is valid."""
        allowed = ["json", "text"]
        if v not in allowed:
            raise ValueError(f"Log format must be one of {allowed}")
        return v

    @field_validator("routing_clarification_threshold")
    @classmethod
    def validate_clarification_threshold(cls, v: float, info) -> float:
        """Clarification floor may not sit above the accept threshold."""
        score_threshold = info.data.get("routing_score_threshold", 0.6)
        if v > score_threshold:
            raise ValueError("routing_clarification_threshold must not exceed routing_score_threshold")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_log_level(self) -> int:
        """Get logging level as integer."""
        return getattr(logging, self.log_level)

    def get_cors_origins(self) -> List[str]:
        if self.cors_origins:
            return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        if self.environment == "development":
            return ["*"]
        return ["http://localhost:3000"]

    def get_rate_limit_excluded_paths(self) -> List[str]:
        return [p.strip() for p in self.api_rate_limit_excluded_paths.split(",") if p.strip()]

    def to_delegation_config(self) -> Dict[str, Any]:
        """Nested view of the delegation knobs, as handed to external callers."""
        return {
            "timeout": {
                "sub_agent_loop": self.timeout_sub_agent_loop_ms,
                "tool_execution": self.timeout_tool_execution_ms,
            },
            "retry": {
                "enabled": self.retry_enabled,
                "max_retries": self.retry_max_retries,
                "initial_delay": self.retry_initial_delay_ms,
                "max_delay": self.retry_max_delay_ms,
            },
            "rate_limit": {
                "max_requests": self.rate_limit_max_requests,
                "window_ms": self.rate_limit_window_ms,
                "burst_size": self.rate_limit_burst_size,
            },
            "circuit_breaker": {
                "failure_threshold": self.circuit_breaker_failure_threshold,
                "reset_timeout": self.circuit_breaker_reset_timeout_ms,
            },
            "degradation": {
                "recovery_check_interval": self.degradation_recovery_check_interval_ms,
                "enable_auto_recovery": self.degradation_enable_auto_recovery,
            },
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings
    """
    return Settings()
