"""
Chat-completions client used by routing scores and LLM-backed departments.

Talks to any OpenAI-compatible ``/chat/completions`` endpoint over httpx.
Transport failures are retried with tenacity; HTTP errors are not.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from switchboard.exceptions import LLMError

logger = logging.getLogger(__name__)


class LLMClient(Protocol):
    """Anything that can turn chat messages into reply text."""

    async def complete(self, messages: List[Dict[str, Any]], **kwargs: Any) -> str: ...


class HttpLLMClient:
    """
    OpenAI-compatible chat client.

    Attributes:
        base_url: Endpoint root, e.g. ``https://api.openai.com/v1``
        model: Model name sent with every request
        timeout_seconds: Per-request timeout
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self.request_count = 0
        self.error_count = 0

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TransportError, ConnectionError, TimeoutError)),
        reraise=True,
    )
    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            r = await client.post(f"{self.base_url}/chat/completions", headers=self._headers(), json=payload)
        if r.status_code != 200:
            raise LLMError(f"LLM API error: {r.status_code}", details={"status_code": r.status_code})
        return r.json()

    async def chat(self, messages: List[Dict[str, Any]], **kwargs: Any) -> Dict[str, Any]:
        """Raw chat call; returns the first choice's message object."""
        payload = {"model": self.model, "messages": messages, **kwargs}
        start_time = time.time()
        self.request_count += 1
        try:
            data = await self._post(payload)
        except LLMError:
            self.error_count += 1
            raise
        except httpx.HTTPError as e:
            self.error_count += 1
            raise LLMError(f"LLM request failed: {e}") from e

        latency_ms = int((time.time() - start_time) * 1000)
        logger.debug(f"LLM call to {self.model} took {latency_ms}ms")
        try:
            return data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as e:
            self.error_count += 1
            raise LLMError("Malformed LLM response") from e

    async def complete(self, messages: List[Dict[str, Any]], **kwargs: Any) -> str:
        message = await self.chat(messages, **kwargs)
        return message.get("content") or ""

    def get_stats(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "base_url": self.base_url,
            "request_count": self.request_count,
            "error_count": self.error_count,
        }
