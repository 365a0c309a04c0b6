"""Agent runner - executes one agent turn and captures its output."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol
from uuid import uuid4

from .agents import system_prompt_for
from .opencode_client import OpencodeAPIError, OpencodeClient

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], Awaitable[None] | None]


@dataclass
class ProjectContext:
    project_id: str
    project_path: Path | None = None


@dataclass
class AgentResult:
    """Result from running an agent."""

    success: bool
    output: str
    error: str | None = None
    duration_seconds: float = 0.0
    exit_code: int | None = None


class AgentRunner(Protocol):
    async def run(
        self,
        agent: str,
        instruction: str,
        context: ProjectContext | None = None,
        *,
        run_id: str | None = None,
        on_output: OutputCallback | None = None,
    ) -> AgentResult: ...

    async def cancel(self, run_id: str | None = None) -> bool: ...


async def deliver_output(callback: OutputCallback | None, chunk: str) -> None:
    if callback is None or not chunk:
        return
    result = callback(chunk)
    if inspect.isawaitable(result):
        await result


async def terminate_process(proc: asyncio.subprocess.Process, grace_seconds: float = 2.0) -> None:
    """SIGTERM, then SIGKILL if the process is still alive after ``grace_seconds``."""
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), grace_seconds)
    except TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


class CliAgentRunner:
    """Runs the agent CLI (``claude --print``) as a subprocess per turn."""

    def __init__(self, command: str = "claude", *, chunk_size: int = 4096) -> None:
        self.command = command
        self.chunk_size = chunk_size
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._cancelled: set[str] = set()

    def build_args(self, agent: str, instruction: str) -> list[str]:
        return [
            self.command,
            "--print",
            "--system-prompt",
            system_prompt_for(agent),
            instruction,
        ]

    async def run(
        self,
        agent: str,
        instruction: str,
        context: ProjectContext | None = None,
        *,
        run_id: str | None = None,
        on_output: OutputCallback | None = None,
    ) -> AgentResult:
        run_id = run_id or str(uuid4())
        cwd = str(context.project_path) if context and context.project_path else None
        start = time.monotonic()

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_args(agent, instruction),
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return AgentResult(
                success=False,
                output="",
                error=f"Failed to start {self.command}: {exc}",
                duration_seconds=time.monotonic() - start,
            )

        self._processes[run_id] = proc
        chunks: list[str] = []
        stderr_reader: asyncio.Task[bytes] | None = None
        try:
            assert proc.stdout is not None and proc.stderr is not None
            stderr_reader = asyncio.create_task(proc.stderr.read())
            while True:
                data = await proc.stdout.read(self.chunk_size)
                if not data:
                    break
                text = data.decode(errors="replace")
                chunks.append(text)
                await deliver_output(on_output, text)
            stderr = (await stderr_reader).decode(errors="replace").strip()
            exit_code = await proc.wait()
        except BaseException:
            # Caller cancelled or the output callback raised: the child must not outlive the turn.
            if proc.returncode is None:
                await terminate_process(proc)
            if stderr_reader is not None:
                stderr_reader.cancel()
            raise
        finally:
            self._processes.pop(run_id, None)

        output = "".join(chunks)
        duration = time.monotonic() - start

        if run_id in self._cancelled:
            self._cancelled.discard(run_id)
            return AgentResult(
                success=False,
                output=output,
                error="Agent run cancelled",
                duration_seconds=duration,
                exit_code=exit_code,
            )

        # Partial output on a non-zero exit still counts as a finished turn.
        if exit_code == 0 or output.strip():
            return AgentResult(
                success=True, output=output, duration_seconds=duration, exit_code=exit_code
            )

        error = f"Process exited with code {exit_code}"
        if stderr:
            error = f"{error}: {stderr[-500:]}"
        return AgentResult(
            success=False, output=output, error=error, duration_seconds=duration, exit_code=exit_code
        )

    async def cancel(self, run_id: str | None = None) -> bool:
        run_ids = [run_id] if run_id is not None else list(self._processes)
        cancelled = False
        for rid in run_ids:
            proc = self._processes.get(rid)
            if proc is None or proc.returncode is not None:
                continue
            self._cancelled.add(rid)
            try:
                proc.terminate()
            except ProcessLookupError:
                continue
            logger.info("Terminated agent run %s", rid)
            cancelled = True
        return cancelled


class OpencodeAgentRunner:
    """Runs each turn in a fresh session on the OpenCode local server."""

    def __init__(self, *, base_url: str, directory: str | None = None) -> None:
        self._base_url = base_url
        self._directory = directory
        self._sessions: dict[str, tuple[OpencodeClient, str]] = {}

    def _client(self, context: ProjectContext | None) -> OpencodeClient:
        directory = self._directory
        if directory is None and context and context.project_path:
            directory = str(context.project_path)
        return OpencodeClient(base_url=self._base_url, directory=directory)

    async def run(
        self,
        agent: str,
        instruction: str,
        context: ProjectContext | None = None,
        *,
        run_id: str | None = None,
        on_output: OutputCallback | None = None,
    ) -> AgentResult:
        run_id = run_id or str(uuid4())
        start = time.monotonic()
        client = self._client(context)
        session_id: str | None = None
        try:
            session_id = await client.create_session(title=f"taskcore:{agent}:{run_id}")
            self._sessions[run_id] = (client, session_id)
            reply = await client.prompt(
                session_id=session_id,
                agent="build",
                text=instruction,
                system=system_prompt_for(agent),
            )
            output = reply.text
            if not output:
                output = await client.latest_assistant_text(session_id=session_id)
            if not output:
                return AgentResult(
                    success=False,
                    output="",
                    error="Empty response from OpenCode",
                    duration_seconds=time.monotonic() - start,
                )
            await deliver_output(on_output, output)
            return AgentResult(success=True, output=output, duration_seconds=time.monotonic() - start)
        except OpencodeAPIError as e:
            return AgentResult(
                success=False, output="", error=str(e), duration_seconds=time.monotonic() - start
            )
        except asyncio.CancelledError:
            if session_id is not None:
                try:
                    await client.abort_session(session_id)
                except OpencodeAPIError as e:
                    logger.warning("Failed to abort OpenCode session %s: %s", session_id, e)
            raise
        finally:
            self._sessions.pop(run_id, None)
            await client.aclose()

    async def cancel(self, run_id: str | None = None) -> bool:
        run_ids = [run_id] if run_id is not None else list(self._sessions)
        cancelled = False
        for rid in run_ids:
            entry = self._sessions.get(rid)
            if entry is None:
                continue
            client, session_id = entry
            try:
                await client.abort_session(session_id)
                cancelled = True
            except OpencodeAPIError as e:
                logger.warning("Failed to abort OpenCode session %s: %s", session_id, e)
        return cancelled


def build_runner(settings: Settings) -> AgentRunner:
    if settings.runner == "opencode":
        return OpencodeAgentRunner(
            base_url=settings.opencode_api_url, directory=settings.opencode_directory
        )
    if settings.runner == "cli":
        return CliAgentRunner(settings.claude_cmd)
    raise ValueError(f"Unknown runner: {settings.runner!r} (expected 'cli' or 'opencode')")
