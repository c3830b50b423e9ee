from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

ORCHESTRATOR_ORIGIN = "orchestrator"


class ProviderError(RuntimeError):
    """Raised when the execution provider fails to run or report on a session."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.exit_code = exit_code
        self.retriable = retriable


class ProviderTimeoutError(ProviderError):
    """Raised when a session does not complete within its deadline."""


class ProviderProcessError(ProviderError):
    """Raised when the provider process cannot be started or driven."""


@dataclass(frozen=True, slots=True)
class SessionConfig:
    title: str
    agent: str | None = None
    provider_id: str | None = None
    model_id: str | None = None
    system_prompt: str | None = None


@dataclass(frozen=True, slots=True)
class SessionHandle:
    id: str
    title: str
    created_at: float


@dataclass(frozen=True, slots=True)
class MessageHandle:
    id: str
    session_id: str
    created_at: float


@dataclass(frozen=True, slots=True)
class SessionMessage:
    id: str
    session_id: str
    role: str
    content: str
    created_at: float
    origin: str | None = None


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    session_id: str
    message_id: str
    success: bool
    summary: str = ""
    requires_approval: bool = False
    metrics: dict[str, Any] = field(default_factory=dict)


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def parse_agent_report(content: str) -> tuple[bool, str, bool]:
    """Read ``(success, summary, requires_approval)`` from an agent reply.

    Agents are asked to end with a one-line JSON report such as
    ``{"success": true, "summary": "...", "requires_approval": false}``; the
    last such line wins. A reply without one counts as a success whose
    summary is the reply text.
    """
    for payload in reversed(extract_json_objects(content)):
        if "success" not in payload:
            continue
        summary = payload.get("summary")
        return (
            bool(payload.get("success")),
            str(summary) if summary is not None else "",
            bool(payload.get("requires_approval", False)),
        )
    return True, content.strip()[:2000], False


class ExecutionProvider(ABC):
    name = "provider"

    @abstractmethod
    async def create_session(self, config: SessionConfig) -> SessionHandle:
        """Open a new agent session."""

    @abstractmethod
    async def send_instruction(self, session_id: str, instruction: str) -> MessageHandle:
        """Send the phase instruction and start the agent working on it."""

    @abstractmethod
    async def await_completion(
        self, session_id: str, message_id: str, timeout: float
    ) -> ExecutionResult:
        """Wait for the reply to ``message_id``; raise ProviderTimeoutError past ``timeout``."""

    @abstractmethod
    async def messages_since(self, session_id: str, since: float) -> list[SessionMessage]:
        """Messages created strictly after ``since``."""

    @abstractmethod
    async def abort(self, session_id: str) -> None:
        """Stop the session. Aborting a finished or unknown session is a no-op."""

    async def last_activity(self, session_id: str) -> float | None:
        messages = await self.messages_since(session_id, 0.0)
        if not messages:
            return None
        return max(message.created_at for message in messages)

    def is_human_origin(self, message: SessionMessage) -> bool:
        return message.role == "user" and message.origin != ORCHESTRATOR_ORIGIN
