import asyncio
from pathlib import Path
from typing import Any

import pytest

from shepherd.providers import (
    OpenCodeCliProvider,
    ProviderError,
    ProviderProcessError,
    ProviderTimeoutError,
    SessionConfig,
    SessionMessage,
)
from shepherd.providers.base import parse_agent_report


class FakeStdout:
    def __init__(self, lines: list[bytes], *, block: bool = False) -> None:
        self._lines = lines
        self._index = 0
        self._block = block

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            if self._block:
                await asyncio.sleep(3600)
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, payload: bytes = b"") -> None:
        self._payload = payload

    async def read(self) -> bytes:
        return self._payload


class FakeProcess:
    def __init__(
        self,
        lines: list[bytes],
        *,
        exit_code: int = 0,
        stderr: bytes = b"",
        block: bool = False,
    ) -> None:
        self.stdout = FakeStdout(lines, block=block)
        self.stderr = FakeStderr(stderr)
        self.returncode: int | None = None
        self.terminated = False
        self._exit_code = exit_code
        self._block = block

    async def wait(self) -> int:
        if self._block and not self.terminated:
            await asyncio.sleep(3600)
        self.returncode = -15 if self.terminated else self._exit_code
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True

    def kill(self) -> None:
        self.terminated = True


def _patch_exec(monkeypatch: pytest.MonkeyPatch, process: FakeProcess, calls: list) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        calls.append(list(args))
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)


def test_build_command_shape() -> None:
    provider = OpenCodeCliProvider(binary="opencode", working_directory=Path("."))

    async def _run() -> list[str]:
        handle = await provider.create_session(
            SessionConfig(title="bd-1: Add login", agent="build", provider_id="anthropic",
                          model_id="claude")
        )
        return provider.build_command(provider._session(handle.id), "do the plan phase")

    command = asyncio.run(_run())

    assert command[:4] == ["opencode", "run", "--format", "json"]
    assert command[command.index("--title") + 1] == "bd-1: Add login"
    assert command[command.index("--agent") + 1] == "build"
    assert command[command.index("--model") + 1] == "anthropic/claude"
    assert command[-1] == "do the plan phase"


def test_completion_parses_agent_report_and_records_messages(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    events: list[dict[str, Any]] = []
    calls: list[list[str]] = []
    process = FakeProcess(
        [
            b'{"type":"text","sessionID":"oc-1","part":{"text":"working on it"}}\n',
            b"noise-before-json\n",
            b'{"type":"text","part":{"text":"{\\"success\\": false, \\"summary\\": '
            b'\\"tests fail\\", \\"requires_approval\\": false}"}}\n',
        ]
    )
    _patch_exec(monkeypatch, process, calls)
    provider = OpenCodeCliProvider(event_hook=events.append)

    async def _run():
        handle = await provider.create_session(SessionConfig(title="t", agent="build"))
        message = await provider.send_instruction(handle.id, "instructions")
        session = provider._session(handle.id)
        await asyncio.wait({session.reader})
        messages = await provider.messages_since(handle.id, 0.0)
        follow_up = provider.build_command(session, "again")
        result = await provider.await_completion(handle.id, message.id, timeout=5.0)
        leftover = await provider.messages_since(handle.id, 0.0)
        return result, messages, follow_up, leftover

    result, messages, follow_up, leftover = asyncio.run(_run())

    assert result.success is False
    assert result.summary == "tests fail"
    assert result.metrics["events"] == 3
    assert "duration_ms" in result.metrics
    assert messages[0].content == "instructions"
    assert len(messages) == 4
    assert not any(provider.is_human_origin(message) for message in messages)
    assert follow_up[follow_up.index("--session") + 1] == "oc-1"
    assert leftover == []
    assert provider._sessions == {}
    event_names = [event["event"] for event in events]
    assert "opencode_cli_start" in event_names
    assert "opencode_json_parse_fallback" in event_names
    assert "opencode_cli_exit" in event_names


def test_nonzero_exit_raises_provider_error(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess([], exit_code=2, stderr=b"model unavailable")
    _patch_exec(monkeypatch, process, [])
    provider = OpenCodeCliProvider()

    async def _run() -> None:
        handle = await provider.create_session(SessionConfig(title="t"))
        message = await provider.send_instruction(handle.id, "go")
        await provider.await_completion(handle.id, message.id, timeout=5.0)

    with pytest.raises(ProviderError, match="model unavailable") as excinfo:
        asyncio.run(_run())
    assert excinfo.value.exit_code == 2


def test_timeout_then_abort_terminates_process(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess([b'{"type":"text","part":{"text":"thinking"}}\n'], block=True)
    _patch_exec(monkeypatch, process, [])
    provider = OpenCodeCliProvider()

    async def _run() -> str:
        handle = await provider.create_session(SessionConfig(title="t"))
        message = await provider.send_instruction(handle.id, "go")
        try:
            await provider.await_completion(handle.id, message.id, timeout=0.05)
        except ProviderTimeoutError:
            await provider.abort(handle.id)
            await provider.abort(handle.id)
            return "timed out"
        return "completed"

    assert asyncio.run(_run()) == "timed out"
    assert process.terminated is True
    assert provider._sessions == {}


def test_abort_while_awaiting_completion_raises_provider_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    process = FakeProcess([b'{"type":"text","part":{"text":"thinking"}}\n'], block=True)
    _patch_exec(monkeypatch, process, [])
    provider = OpenCodeCliProvider()

    async def _run():
        handle = await provider.create_session(SessionConfig(title="t"))
        message = await provider.send_instruction(handle.id, "go")
        waiter = asyncio.create_task(
            provider.await_completion(handle.id, message.id, timeout=30.0)
        )
        await asyncio.sleep(0.01)
        during = await provider.messages_since(handle.id, 0.0)
        await provider.abort(handle.id)
        try:
            await waiter
        except ProviderError as exc:
            return during, exc
        return during, None

    during, error = asyncio.run(_run())

    assert [m.content for m in during] == ["go", "thinking"]
    assert isinstance(error, ProviderError)
    assert "aborted" in str(error)
    assert error.retriable is False
    assert process.terminated is True
    assert provider._sessions == {}


def test_missing_binary_raises_process_error(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    provider = OpenCodeCliProvider(binary="opencode-missing")

    async def _run() -> None:
        handle = await provider.create_session(SessionConfig(title="t"))
        await provider.send_instruction(handle.id, "go")

    with pytest.raises(ProviderProcessError, match="not found") as excinfo:
        asyncio.run(_run())
    assert excinfo.value.retriable is False


def test_unknown_session_behaviour() -> None:
    provider = OpenCodeCliProvider()

    async def _run():
        await provider.abort("ses-unknown")
        messages = await provider.messages_since("ses-unknown", 0.0)
        activity = await provider.last_activity("ses-unknown")
        return messages, activity

    assert asyncio.run(_run()) == ([], None)
    with pytest.raises(ProviderError, match="Unknown session"):
        asyncio.run(provider.send_instruction("ses-unknown", "go"))


def test_parse_agent_report_defaults_to_success() -> None:
    assert parse_agent_report("all done\n") == (True, "all done", False)
    assert parse_agent_report(
        'step 1\n{"success": true, "summary": "ok", "requires_approval": true}\n'
    ) == (True, "ok", True)


def test_human_origin_excludes_orchestrator_messages() -> None:
    provider = OpenCodeCliProvider()
    human = SessionMessage(id="m1", session_id="s", role="user", content="stop", created_at=1.0)
    ours = SessionMessage(
        id="m2", session_id="s", role="user", content="go", created_at=1.0, origin="orchestrator"
    )
    agent = SessionMessage(id="m3", session_id="s", role="assistant", content="ok", created_at=1.0)

    assert provider.is_human_origin(human) is True
    assert provider.is_human_origin(ours) is False
    assert provider.is_human_origin(agent) is False
