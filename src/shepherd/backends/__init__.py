from shepherd.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from shepherd.backends.cli import ClaudeBackend, CLIBackend, CodexBackend
from shepherd.backends.openai_sdk import OpenAIBackend
from shepherd.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "CLIBackend",
    "ClaudeBackend",
    "CodexBackend",
    "OpenAIBackend",
    "ResilientBackend",
    "RetryPolicy",
]
