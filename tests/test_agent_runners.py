"""
Agent runner tests
CLI argument building, stream-json parsing, OpenAI streaming and backend selection
"""
import os
import stat
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from config import ServerSettings
from core.agent_runners import ClaudeCLIRunner, EchoRunner, OpenAIRunner, build_runner
from core.errors import AgentRunnerError
from models.requests import StreamRequest
from models.session import Session


def _script(tmp_path, body):
    path = tmp_path / "fake-agent"
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return str(path)


async def _collect(runner, request, session):
    return [message async for message in runner.run(request, session)]


def test_build_args_full():
    runner = ClaudeCLIRunner(command="claude")
    request = StreamRequest(text="fix it", allowed_tools=["Read", "Bash"], system_prompt="be brief", max_turns=3)
    session = Session(session_id="s1", agent_session_id="agent-9")

    args = runner.build_args(request, session)

    assert args[:6] == ["claude", "-p", "fix it", "--output-format", "stream-json", "--verbose"]
    assert args[args.index("--allowedTools") + 1] == "Read,Bash"
    assert args[args.index("--resume") + 1] == "agent-9"
    assert args[args.index("--append-system-prompt") + 1] == "be brief"
    assert args[args.index("--max-turns") + 1] == "3"


def test_build_args_minimal_uses_session_tools():
    runner = ClaudeCLIRunner(command="claude")
    args = runner.build_args(StreamRequest(text="hi"), Session(session_id="s1", allowed_tools=["Read"]))
    assert "--resume" not in args
    assert args[args.index("--allowedTools") + 1] == "Read"


@pytest.mark.asyncio
async def test_cli_runner_parses_json_lines(tmp_path):
    command = _script(tmp_path, (
        "echo '{\"type\": \"system\", \"subtype\": \"init\", \"session_id\": \"agent-1\"}'\n"
        "echo 'not json at all'\n"
        "echo ''\n"
        "echo '[1, 2]'\n"
        "echo '{\"type\": \"result\", \"subtype\": \"success\"}'\n"
    ))
    runner = ClaudeCLIRunner(command=command)

    messages = await _collect(runner, StreamRequest(text="hi", cwd=str(tmp_path)), Session(session_id="s1"))

    assert [m["type"] for m in messages] == ["system", "result"]
    assert messages[0]["session_id"] == "agent-1"


@pytest.mark.asyncio
async def test_cli_runner_nonzero_exit_fails(tmp_path):
    command = _script(tmp_path, "echo '{\"type\": \"assistant\"}'\necho 'quota exceeded' >&2\nexit 3\n")
    runner = ClaudeCLIRunner(command=command)

    received = []
    with pytest.raises(AgentRunnerError) as exc_info:
        async for message in runner.run(StreamRequest(text="hi"), Session(session_id="s1")):
            received.append(message)

    assert received == [{"type": "assistant"}]
    assert "status 3" in str(exc_info.value)
    assert "quota exceeded" in str(exc_info.value)


@pytest.mark.asyncio
async def test_cli_runner_missing_command(tmp_path):
    runner = ClaudeCLIRunner(command=os.path.join(str(tmp_path), "does-not-exist"))
    with pytest.raises(AgentRunnerError):
        await _collect(runner, StreamRequest(text="hi"), Session(session_id="s1"))


def _chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


class _ChunkStream:
    def __init__(self, chunks):
        self._chunks = iter(chunks)

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return next(self._chunks)
        except StopIteration:
            raise StopAsyncIteration


@pytest.mark.asyncio
async def test_openai_runner_streams_deltas():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=_ChunkStream([
        _chunk("Hel"),
        SimpleNamespace(choices=[]),
        _chunk(None),
        _chunk("lo"),
    ]))
    runner = OpenAIRunner(model="gpt-4o-mini", client=client)

    messages = await _collect(runner, StreamRequest(text="hi", system_prompt="short"), Session(session_id="s1"))

    assert [m["type"] for m in messages] == ["system", "assistant", "assistant", "result"]
    assert messages[-1]["result"] == "Hello"
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["stream"] is True
    assert kwargs["messages"][0] == {"role": "system", "content": "short"}
    assert kwargs["messages"][-1] == {"role": "user", "content": "hi"}


@pytest.mark.asyncio
async def test_echo_runner():
    messages = await _collect(EchoRunner(), StreamRequest(text="a b"), Session(session_id="s1"))
    assert [m["type"] for m in messages] == ["system", "assistant", "assistant", "result"]
    assert messages[-1]["result"] == "a b"


@pytest.mark.parametrize("name,cls", [
    ("claude", ClaudeCLIRunner),
    ("echo", EchoRunner),
])
def test_build_runner(name, cls):
    assert isinstance(build_runner(ServerSettings(agent_runner=name)), cls)


def test_build_runner_openai(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert isinstance(build_runner(ServerSettings(agent_runner="openai")), OpenAIRunner)


def test_build_runner_unknown():
    with pytest.raises(ValueError):
        build_runner(ServerSettings(agent_runner="quantum"))
