from shepherd.providers.base import (
    ExecutionProvider,
    ExecutionResult,
    MessageHandle,
    ProviderError,
    ProviderProcessError,
    ProviderTimeoutError,
    SessionConfig,
    SessionHandle,
    SessionMessage,
)
from shepherd.providers.opencode import OpenCodeCliProvider

__all__ = [
    "ExecutionProvider",
    "ExecutionResult",
    "MessageHandle",
    "OpenCodeCliProvider",
    "ProviderError",
    "ProviderProcessError",
    "ProviderTimeoutError",
    "SessionConfig",
    "SessionHandle",
    "SessionMessage",
]
