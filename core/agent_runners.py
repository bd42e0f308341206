"""
Agent Runners
Backends that perform the long-running computation for one turn and yield
its raw output messages (dicts carrying a "type" field)
"""
import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from openai import AsyncOpenAI

from config import ServerSettings
from core.errors import AgentRunnerError
from models.requests import StreamRequest
from models.session import Session
from utils import diagnostics

logger = logging.getLogger(__name__)

# stream-json lines carry whole tool results and can be large
_SUBPROCESS_LINE_LIMIT = 16 * 1024 * 1024


class AgentRunner(Protocol):
    def run(self, request: StreamRequest, session: Session) -> AsyncIterator[Dict[str, Any]]:
        ...


class ClaudeCLIRunner:
    """
    Runs the agent CLI in stream-json mode as a subprocess

    Every stdout line is one JSON message; lines that are not JSON objects
    are logged and skipped. A non-zero exit status fails the turn.
    """

    def __init__(self, command: str = "claude", env: Optional[Dict[str, str]] = None):
        """
        Args:
            command: CLI executable
            env: Environment for the subprocess, inherits ours when None
        """
        self.command = command
        self.env = env

    def build_args(self, request: StreamRequest, session: Session) -> List[str]:
        args = [
            self.command,
            "-p", request.text or "",
            "--output-format", "stream-json",
            "--verbose",
        ]
        allowed_tools = request.allowed_tools or session.allowed_tools
        if allowed_tools:
            args += ["--allowedTools", ",".join(allowed_tools)]
        if session.agent_session_id:
            args += ["--resume", session.agent_session_id]
        if request.system_prompt:
            args += ["--append-system-prompt", request.system_prompt]
        if request.max_turns:
            args += ["--max-turns", str(request.max_turns)]
        return args

    async def run(self, request: StreamRequest, session: Session) -> AsyncIterator[Dict[str, Any]]:
        args = self.build_args(request, session)
        cwd = request.cwd or session.cwd
        logger.info(f"Starting agent CLI conv={diagnostics.id_suffix(session.session_id)} cwd={cwd!r}")

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=cwd,
                env=self.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_SUBPROCESS_LINE_LIMIT,
            )
        except OSError as e:
            raise AgentRunnerError(f"Could not start {self.command}: {e}") from e

        stderr_task = asyncio.create_task(process.stderr.read())
        try:
            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Skipping non-JSON agent output ({diagnostics.summarize(line)})")
                    continue
                if not isinstance(message, dict):
                    continue
                yield message

            returncode = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
            if returncode != 0:
                raise AgentRunnerError(f"{self.command} exited with status {returncode}: {stderr[-500:]}")
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()


class OpenAIRunner:
    """
    Streams a chat completion from the OpenAI API

    Yields a system init message, one assistant message per text delta
    and a final result carrying the full text.
    """

    def __init__(self, model: str, api_key: Optional[str] = None, client: Optional[AsyncOpenAI] = None):
        self.model = model
        self.client = client or AsyncOpenAI(api_key=api_key)

    async def run(self, request: StreamRequest, session: Session) -> AsyncIterator[Dict[str, Any]]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.text or ""})

        yield {"type": "system", "subtype": "init", "model": self.model}

        stream = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            stream=True,
        )

        parts: List[str] = []
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                parts.append(delta)
                yield {"type": "assistant", "subtype": "delta", "text": delta}

        yield {"type": "result", "subtype": "success", "result": "".join(parts)}


class EchoRunner:
    """Deterministic local backend, echoes the input back in a few steps"""

    def __init__(self, delay: float = 0.0):
        self.delay = delay

    async def run(self, request: StreamRequest, session: Session) -> AsyncIterator[Dict[str, Any]]:
        yield {"type": "system", "subtype": "init", "cwd": request.cwd or session.cwd}
        for word in (request.text or "").split():
            if self.delay:
                await asyncio.sleep(self.delay)
            yield {"type": "assistant", "text": word}
        yield {"type": "result", "subtype": "success", "result": request.text or ""}


def build_runner(settings: ServerSettings) -> AgentRunner:
    """
    Pick the computation backend named by AGENT_RUNNER

    Args:
        settings: Server settings

    Returns:
        ClaudeCLIRunner, OpenAIRunner or EchoRunner
    """
    if settings.agent_runner == "claude":
        return ClaudeCLIRunner(command=settings.claude_command)
    if settings.agent_runner == "openai":
        return OpenAIRunner(model=settings.openai_model)
    if settings.agent_runner == "echo":
        return EchoRunner()
    raise ValueError(f"Unknown AGENT_RUNNER {settings.agent_runner!r}")
