"""LLM access for routing scores and LLM-backed departments."""

from .client import HttpLLMClient, LLMClient

__all__ = [
    "HttpLLMClient",
    "LLMClient",
]
