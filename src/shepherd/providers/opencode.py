from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from shepherd.providers.base import (
    ORCHESTRATOR_ORIGIN,
    ExecutionProvider,
    ExecutionResult,
    MessageHandle,
    ProviderError,
    ProviderProcessError,
    ProviderTimeoutError,
    SessionConfig,
    SessionHandle,
    SessionMessage,
    parse_agent_report,
)

logger = logging.getLogger(__name__)

ProviderEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class _Session:
    handle: SessionHandle
    config: SessionConfig
    messages: list[SessionMessage] = field(default_factory=list)
    process: asyncio.subprocess.Process | None = None
    reader: asyncio.Task[ExecutionResult] | None = None
    pending_message_id: str | None = None
    remote_id: str | None = None
    aborted: bool = False


class OpenCodeCliProvider(ExecutionProvider):
    """Drives agents through ``opencode run --format json``.

    Each instruction spawns one CLI process; its JSON event stream is
    recorded as assistant messages on the session so the supervisor can
    watch activity while the dispatcher waits for completion. A session is
    dropped once its instruction completes or it is aborted; a session that
    timed out stays registered until it is aborted.
    """

    name = "opencode"

    def __init__(
        self,
        binary: str = "opencode",
        working_directory: Path | None = None,
        event_hook: ProviderEventHook | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook
        self.clock = clock
        self._sessions: dict[str, _Session] = {}

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _session(self, session_id: str) -> _Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise ProviderError(
                f"Unknown session: {session_id}", provider=self.name, retriable=False
            )
        return session

    def build_command(self, session: _Session, instruction: str) -> list[str]:
        config = session.config
        command = [self.binary, "run", "--format", "json"]
        if session.remote_id:
            command.extend(["--session", session.remote_id])
        else:
            command.extend(["--title", config.title])
        if config.agent:
            command.extend(["--agent", config.agent])
        if config.provider_id and config.model_id:
            command.extend(["--model", f"{config.provider_id}/{config.model_id}"])
        elif config.model_id:
            command.extend(["--model", config.model_id])
        if config.system_prompt:
            instruction = f"{config.system_prompt}\n\n{instruction}"
        command.append(instruction)
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        part = event.get("part")
        if isinstance(part, dict):
            text = part.get("text")
            if isinstance(text, str):
                return text
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        text = event.get("text")
        if isinstance(text, str):
            return text
        return ""

    @staticmethod
    def _remote_session_id(event: dict[str, Any]) -> str | None:
        for key in ("sessionID", "session_id"):
            value = event.get(key)
            if isinstance(value, str) and value:
                return value
        part = event.get("part")
        if isinstance(part, dict):
            value = part.get("sessionID")
            if isinstance(value, str) and value:
                return value
        return None

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def create_session(self, config: SessionConfig) -> SessionHandle:
        handle = SessionHandle(
            id=f"ses-{uuid4().hex[:12]}", title=config.title, created_at=self.clock()
        )
        self._sessions[handle.id] = _Session(handle=handle, config=config)
        self._emit({"event": "opencode_session_created", "session_id": handle.id})
        return handle

    async def send_instruction(self, session_id: str, instruction: str) -> MessageHandle:
        session = self._session(session_id)
        if session.aborted:
            raise ProviderError(
                f"Session {session_id} was aborted.", provider=self.name, retriable=False
            )
        if session.reader is not None and not session.reader.done():
            raise ProviderError(
                f"Session {session_id} is still working on a previous instruction.",
                provider=self.name,
                retriable=False,
            )

        now = self.clock()
        message = SessionMessage(
            id=f"msg-{uuid4().hex[:12]}",
            session_id=session_id,
            role="user",
            content=instruction,
            created_at=now,
            origin=ORCHESTRATOR_ORIGIN,
        )
        session.messages.append(message)

        command = self.build_command(session, instruction)
        self._emit(
            {
                "event": "opencode_cli_start",
                "session_id": session_id,
                "command": command[:4],
                "agent": session.config.agent,
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ProviderProcessError(
                f"opencode binary not found: {self.binary}",
                provider=self.name,
                retriable=False,
            ) from exc
        if process.stdout is None:
            raise ProviderProcessError(
                "opencode process did not expose stdout.", provider=self.name, retriable=False
            )

        session.process = process
        session.pending_message_id = message.id
        session.reader = asyncio.create_task(self._pump(session, message.id, now))
        return MessageHandle(id=message.id, session_id=session_id, created_at=now)

    async def _pump(
        self, session: _Session, message_id: str, started_at: float
    ) -> ExecutionResult:
        process = session.process
        assert process is not None and process.stdout is not None
        session_id = session.handle.id
        chunks: list[str] = []
        event_count = 0
        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                self._emit({"event": "opencode_json_parse_fallback", "line": line[:200]})
                event = {"type": "text", "text": line}
            if not isinstance(event, dict):
                continue

            event_count += 1
            remote_id = self._remote_session_id(event)
            if remote_id and session.remote_id is None:
                session.remote_id = remote_id
            content = self._extract_content(event)
            if content:
                chunks.append(content)
            session.messages.append(
                SessionMessage(
                    id=f"msg-{uuid4().hex[:12]}",
                    session_id=session_id,
                    role=str(event.get("role") or "assistant"),
                    content=content,
                    created_at=self.clock(),
                )
            )

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        finished_at = self.clock()
        session.pending_message_id = None
        self._emit(
            {
                "event": "opencode_cli_exit",
                "session_id": session_id,
                "exit_code": return_code,
                "events": event_count,
            }
        )
        if session.aborted:
            raise ProviderError(
                f"Session {session_id} was aborted.", provider=self.name, retriable=False
            )
        if return_code != 0:
            raise ProviderError(
                f"opencode failed with exit code {return_code}: {stderr_output[:400]}",
                provider=self.name,
                exit_code=return_code,
            )

        success, summary, requires_approval = parse_agent_report("\n".join(chunks))
        return ExecutionResult(
            session_id=session_id,
            message_id=message_id,
            success=success,
            summary=summary,
            requires_approval=requires_approval,
            metrics={
                "duration_ms": round((finished_at - started_at) * 1000.0, 3),
                "events": event_count,
            },
        )

    async def await_completion(
        self, session_id: str, message_id: str, timeout: float
    ) -> ExecutionResult:
        session = self._session(session_id)
        reader = session.reader
        if reader is None:
            raise ProviderError(
                f"No instruction in flight for session {session_id}.",
                provider=self.name,
                retriable=False,
            )
        if session.aborted:
            raise ProviderError(
                f"Session {session_id} was aborted.", provider=self.name, retriable=False
            )
        try:
            result = await asyncio.wait_for(asyncio.shield(reader), timeout=timeout)
        except TimeoutError as exc:
            self._emit({"event": "opencode_timeout", "session_id": session_id, "timeout": timeout})
            raise ProviderTimeoutError(
                f"Session {session_id} did not complete within {timeout:.1f}s.",
                provider=self.name,
                retriable=True,
            ) from exc
        except asyncio.CancelledError:
            if not (reader.cancelled() or session.aborted):
                raise
            self._forget(session_id)
            raise ProviderError(
                f"Session {session_id} was aborted.", provider=self.name, retriable=False
            ) from None
        except ProviderError:
            self._forget(session_id)
            raise
        self._forget(session_id)
        if result.message_id != message_id:
            raise ProviderError(
                f"Session {session_id} completed {result.message_id}, not {message_id}.",
                provider=self.name,
                retriable=False,
            )
        return result

    def _forget(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    async def messages_since(self, session_id: str, since: float) -> list[SessionMessage]:
        session = self._sessions.get(session_id)
        if session is None:
            return []
        return [message for message in session.messages if message.created_at > since]

    async def abort(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None or session.aborted:
            return
        session.aborted = True
        process = session.process
        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except TimeoutError:
                process.kill()
                await process.wait()
        reader = session.reader
        if reader is not None and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError, ProviderError):
                await reader
        elif reader is not None and not reader.cancelled():
            reader.exception()
        self._forget(session_id)
        self._emit({"event": "opencode_session_aborted", "session_id": session_id})
        logger.info("aborted session %s", session_id)
