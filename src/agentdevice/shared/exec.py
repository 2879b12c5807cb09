"""Async subprocess helpers shared by every platform backend."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
from collections import deque
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass

from agentdevice.shared.exceptions import CommandFailedError, ToolMissingError, truncate_output

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Awaitable[None]]

# Upper bound on buffered output for long-lived background processes
_BACKGROUND_BUFFER_CHARS = 1_000_000


@dataclass(frozen=True, slots=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def combined(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


async def run_cmd(
    cmd: str,
    args: Sequence[str],
    *,
    allow_failure: bool = False,
    timeout_ms: int | None = None,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    stdin: str | None = None,
) -> ExecResult:
    """Run a command to completion and return its output.

    Raises:
        ToolMissingError: If ``cmd`` is not on PATH.
        CommandFailedError: On timeout (the child is killed), or on a
            non-zero exit unless ``allow_failure`` is set.
    """
    argv = [cmd, *args]
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
            cwd=cwd,
        )
    except FileNotFoundError as exc:
        raise ToolMissingError(f"{cmd} not found in PATH", {"cmd": cmd}) from exc

    input_bytes = stdin.encode() if stdin is not None else None
    timeout = timeout_ms / 1000 if timeout_ms else None
    try:
        stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(input_bytes), timeout=timeout)
    except asyncio.TimeoutError as exc:
        await _kill_and_reap(proc)
        raise CommandFailedError(
            f"{cmd} timed out after {timeout_ms}ms",
            {"cmd": cmd, "args": list(args), "timeout_ms": timeout_ms},
        ) from exc

    result = ExecResult(
        stdout=stdout_b.decode(errors="replace"),
        stderr=stderr_b.decode(errors="replace"),
        exit_code=proc.returncode or 0,
    )
    if result.exit_code != 0 and not allow_failure:
        raise CommandFailedError(
            f"{cmd} exited with code {result.exit_code}",
            {
                "cmd": cmd,
                "args": list(args),
                "stdout": truncate_output(result.stdout),
                "stderr": truncate_output(result.stderr),
                "exit_code": result.exit_code,
            },
        )
    return result


async def _kill_and_reap(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()


class _TailBuffer:
    """Keeps the most recent output of a chatty process."""

    def __init__(self, limit: int = _BACKGROUND_BUFFER_CHARS) -> None:
        self._chunks: deque[str] = deque()
        self._size = 0
        self._limit = limit

    def append(self, text: str) -> None:
        self._chunks.append(text)
        self._size += len(text)
        while self._size > self._limit and len(self._chunks) > 1:
            self._size -= len(self._chunks.popleft())

    def text(self) -> str:
        return "".join(self._chunks)


@dataclass(slots=True)
class BackgroundProcess:
    """Handle to a supervised child running in its own process group."""

    process: asyncio.subprocess.Process
    wait: asyncio.Task[ExecResult]

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    def send_signal(self, sig: int) -> bool:
        """Signal the whole process group; returns False if it is already gone."""
        try:
            os.killpg(self.process.pid, sig)
        except ProcessLookupError:
            return False
        except PermissionError:
            try:
                self.process.send_signal(sig)
            except ProcessLookupError:
                return False
        return True

    def terminate(self) -> bool:
        return self.send_signal(signal.SIGTERM)

    def kill(self) -> bool:
        return self.send_signal(signal.SIGKILL)


async def _pump(
    stream: asyncio.StreamReader | None,
    buffer: _TailBuffer,
    callback: ChunkCallback | None,
) -> None:
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        raw = await stream.read(4096)
        text = decoder.decode(raw, final=not raw)
        if text:
            buffer.append(text)
            if callback is not None:
                try:
                    await callback(text)
                except OSError as exc:
                    logger.warning("output sink failed: %s", exc)
        if not raw:
            return


async def _collect(
    proc: asyncio.subprocess.Process,
    on_stdout: ChunkCallback | None,
    on_stderr: ChunkCallback | None,
) -> ExecResult:
    out, err = _TailBuffer(), _TailBuffer()
    await asyncio.gather(_pump(proc.stdout, out, on_stdout), _pump(proc.stderr, err, on_stderr))
    code = await proc.wait()
    return ExecResult(stdout=out.text(), stderr=err.text(), exit_code=code)


async def run_cmd_background(
    cmd: str,
    args: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    on_stdout: ChunkCallback | None = None,
    on_stderr: ChunkCallback | None = None,
) -> BackgroundProcess:
    """Launch ``cmd`` detached into a new process group and stream its output.

    Raises:
        ToolMissingError: If ``cmd`` is not on PATH.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            cmd,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
            cwd=cwd,
            start_new_session=True,
        )
    except FileNotFoundError as exc:
        raise ToolMissingError(f"{cmd} not found in PATH", {"cmd": cmd}) from exc

    logger.debug("started %s (pid=%d)", cmd, proc.pid)
    wait = asyncio.create_task(_collect(proc, on_stdout, on_stderr), name=f"{cmd}-{proc.pid}")
    return BackgroundProcess(process=proc, wait=wait)


async def run_cmd_streaming(
    cmd: str,
    args: Sequence[str],
    *,
    allow_failure: bool = False,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    on_stdout: ChunkCallback | None = None,
    on_stderr: ChunkCallback | None = None,
) -> ExecResult:
    """Run ``cmd`` to completion while streaming output chunks to callbacks."""
    background = await run_cmd_background(
        cmd, args, env=env, cwd=cwd, on_stdout=on_stdout, on_stderr=on_stderr
    )
    result = await background.wait
    if result.exit_code != 0 and not allow_failure:
        raise CommandFailedError(
            f"{cmd} exited with code {result.exit_code}",
            {
                "cmd": cmd,
                "args": list(args),
                "stdout": truncate_output(result.stdout),
                "stderr": truncate_output(result.stderr),
                "exit_code": result.exit_code,
            },
        )
    return result
