"""Agentic invocation over Groq chat completions."""

from .llm_client import GroqLLMClient, LLMClient
from .loop import AgentConfig, AgentLoop, AgentRun, StopReason

__all__ = [
    "AgentConfig",
    "AgentLoop",
    "AgentRun",
    "GroqLLMClient",
    "LLMClient",
    "StopReason",
]
