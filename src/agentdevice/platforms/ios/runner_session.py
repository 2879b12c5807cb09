"""Supervise one XCUITest runner process per iOS device.

A session binds a device id to a live ``xcodebuild test-without-building``
process, the loopback port it listens on, and the session-private run
descriptor it was launched from. Sessions are created lazily on the first
command, rebuilt once when the runner never accepts a connection, and torn
down with a graceful-then-forceful shutdown.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import socket
import sys
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiofiles  # type: ignore[import-untyped]

from agentdevice.config import Settings, get_settings
from agentdevice.platforms.ios.boot import SimulatorBootWaiter
from agentdevice.platforms.ios.interfaces import BootWaiter, CommandTransport, HarnessLauncher, RunArtifactBuilder
from agentdevice.platforms.ios.runner_build import (
    RUNNER_TEST_IDENTIFIER,
    RunnerArtifactBuilder,
    resolve_runner_destination,
)
from agentdevice.platforms.ios.runner_protocol import SHUTDOWN_COMMAND, RunnerCommand, parse_runner_response
from agentdevice.platforms.ios.runner_transport import RunnerTransport, connection_failure
from agentdevice.resilience.retry import RetryPolicy, retry_with_policy
from agentdevice.shared.enums import Platform, RunnerSessionState
from agentdevice.shared.exceptions import (
    AgentDeviceError,
    CommandFailedError,
    RunnerCommandError,
    RunnerConnectionError,
    UnsupportedOperationError,
)
from agentdevice.shared.exec import BackgroundProcess, ChunkCallback, run_cmd_background
from agentdevice.shared.models import DeviceInfo

logger = logging.getLogger(__name__)

RUNNER_PORT_ENV = "AGENT_DEVICE_RUNNER_PORT"
RUNNER_TIMEOUT_ENV = "AGENT_DEVICE_RUNNER_TIMEOUT"
LISTENER_READY_MARKER = "AGENT_DEVICE_RUNNER_LISTENER_READY"
_PORT_MARKER = re.compile(rf"{RUNNER_PORT_ENV}=(\d+)")

_PORT_ALLOCATION_ATTEMPTS = 20

# Errors worth resending a read-only command for: the runner was reachable but dropped us
_TRANSIENT_RUNNER_PHRASES = (
    "connection refused",
    "econnrefused",
    "socket hang up",
    "hung up",
    "connection reset",
    "econnreset",
    "server disconnected",
)


def is_transient_runner_error(error: BaseException, _attempt: int = 0) -> bool:
    """Retry predicate for read-only commands; never retries runner-reported failures."""
    if isinstance(error, (RunnerCommandError, RunnerConnectionError)):
        return False
    text = str(error).lower()
    return any(phrase in text for phrase in _TRANSIENT_RUNNER_PHRASES)


def allocate_free_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for a currently unused TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return int(sock.getsockname()[1])


@dataclass(frozen=True, slots=True)
class RunnerOptions:
    """Where runner output goes while a session is alive."""

    verbose: bool = False
    log_path: str | None = None
    trace_log_path: str | None = None


class HarnessOutput:
    """Output callback for the runner process.

    Tees chunks to the optional log files and stderr, and watches for the
    listener-ready and port markers the runner prints once it is serving.
    """

    def __init__(self, options: RunnerOptions) -> None:
        self._options = options
        self.listener_ready = asyncio.Event()
        self.reported_port: int | None = None

    async def __call__(self, chunk: str) -> None:
        match = _PORT_MARKER.search(chunk)
        if match:
            self.reported_port = int(match.group(1))
            self.listener_ready.set()
        if LISTENER_READY_MARKER in chunk:
            self.listener_ready.set()

        for path in (self._options.log_path, self._options.trace_log_path):
            if path:
                async with aiofiles.open(path, "a") as f:
                    await f.write(chunk)
        if self._options.verbose:
            sys.stderr.write(chunk)


@dataclass(eq=False, slots=True)
class RunnerSession:
    """Bookkeeping for one live runner process."""

    device: DeviceInfo
    port: int
    xctestrun_path: Path
    json_path: Path
    process: BackgroundProcess
    output: HarnessOutput
    ready: bool = False
    state: RunnerSessionState = RunnerSessionState.AWAITING_READY

    @property
    def device_id(self) -> str:
        return self.device.id

    @property
    def exited(self) -> bool:
        return self.process.wait.done()

    def mark_ready(self) -> None:
        if not self.ready:
            logger.info("runner for %s ready on port %d", self.device_id, self.port)
        self.ready = True
        self.state = RunnerSessionState.READY

    async def wait_for_listener(self, timeout_ms: int) -> bool:
        if self.output.listener_ready.is_set():
            return True
        if timeout_ms <= 0:
            return False
        try:
            await asyncio.wait_for(self.output.listener_ready.wait(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            return False
        return True


class RunnerSessionStore:
    """Device id → session map owned by one manager."""

    def __init__(self) -> None:
        self._sessions: dict[str, RunnerSession] = {}

    def get(self, device_id: str) -> RunnerSession | None:
        return self._sessions.get(device_id)

    def put(self, session: RunnerSession) -> None:
        self._sessions[session.device_id] = session

    def pop(self, device_id: str) -> RunnerSession | None:
        return self._sessions.pop(device_id, None)

    def ports(self) -> set[int]:
        return {session.port for session in self._sessions.values()}

    def device_ids(self) -> list[str]:
        return list(self._sessions)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[RunnerSession]:
        return iter(list(self._sessions.values()))


class RunnerSessionManager:
    """Create, reuse, recover and stop runner sessions.

    Callers are expected to serialise ``ensure_session``/``dispatch_command``/
    ``stop_session`` per device; concurrent creation for the same device is
    still collapsed onto a single pending build.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: RunnerSessionStore | None = None,
        boot_waiter: BootWaiter | None = None,
        builder: RunArtifactBuilder | None = None,
        transport: CommandTransport | None = None,
        launcher: HarnessLauncher | None = None,
        port_allocator: Callable[[], int] = allocate_free_port,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store if store is not None else RunnerSessionStore()
        self._boot_waiter = boot_waiter or SimulatorBootWaiter(self._settings)
        self._builder = builder or RunnerArtifactBuilder(self._settings)
        self._transport = transport or RunnerTransport(self._settings)
        self._launcher = launcher or self._launch_harness
        self._port_allocator = port_allocator
        self._pending: dict[str, asyncio.Task[RunnerSession]] = {}
        self._claimed_ports: set[int] = set()
        self._states: dict[str, RunnerSessionState] = {}

    @property
    def store(self) -> RunnerSessionStore:
        return self._store

    def get_session(self, device_id: str) -> RunnerSession | None:
        return self._store.get(device_id)

    def session_state(self, device_id: str) -> RunnerSessionState:
        session = self._store.get(device_id)
        if session is not None:
            return session.state
        return self._states.get(device_id, RunnerSessionState.ABSENT)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def ensure_session(self, device: DeviceInfo, options: RunnerOptions | None = None) -> RunnerSession:
        """Return the device's session, creating it on first use.

        Raises:
            UnsupportedOperationError: If the device is not an iOS target.
            RunnerBuildError: If the runner cannot be built.
        """
        if device.platform != Platform.IOS:
            raise UnsupportedOperationError("the XCUITest runner only drives iOS targets")

        existing = self._store.get(device.id)
        if existing is not None:
            return existing

        # Lookup and registration of the pending build happen without an await in between
        pending = self._pending.get(device.id)
        if pending is None:
            pending = asyncio.create_task(
                self._create_session(device, options or RunnerOptions()),
                name=f"runner-session-{device.id}",
            )
            self._pending[device.id] = pending
            pending.add_done_callback(lambda task, key=device.id: self._forget_pending(key, task))
        return await asyncio.shield(pending)

    def _forget_pending(self, device_id: str, task: asyncio.Task[RunnerSession]) -> None:
        if self._pending.get(device_id) is task:
            del self._pending[device_id]

    async def _create_session(self, device: DeviceInfo, options: RunnerOptions) -> RunnerSession:
        output = HarnessOutput(options)
        port: int | None = None
        artifact = None
        try:
            await self._boot_waiter.ensure_booted(device)

            self._states[device.id] = RunnerSessionState.BUILDING
            xctestrun = await self._builder.ensure_xctestrun(device, on_output=output)

            port = self._claim_port()
            env_vars = {
                RUNNER_PORT_ENV: str(port),
                RUNNER_TIMEOUT_ENV: str(self._settings.runner_harness_timeout_s),
            }
            artifact = await self._builder.prepare_with_env(xctestrun, env_vars, f"session-{device.id}-{port}")

            self._states[device.id] = RunnerSessionState.LAUNCHING
            process = await self._launcher(device, artifact.xctestrun_path, env_vars, output)
        except BaseException:
            if port is not None:
                self._claimed_ports.discard(port)
            if artifact is not None:
                _remove_quietly(artifact.xctestrun_path, artifact.json_path)
            self._states.pop(device.id, None)
            raise

        session = RunnerSession(
            device=device,
            port=port,
            xctestrun_path=artifact.xctestrun_path,
            json_path=artifact.json_path,
            process=process,
            output=output,
        )
        self._store.put(session)
        self._states.pop(device.id, None)
        logger.info("runner session for %s launched (pid=%d, port=%d)", device.id, process.pid, port)
        return session

    def _claim_port(self) -> int:
        in_use = self._store.ports() | self._claimed_ports
        for _ in range(_PORT_ALLOCATION_ATTEMPTS):
            port = self._port_allocator()
            if port not in in_use:
                self._claimed_ports.add(port)
                return port
        raise CommandFailedError("Failed to allocate a runner port", {"in_use": sorted(in_use)})

    async def _launch_harness(
        self,
        device: DeviceInfo,
        xctestrun_path: Path,
        env_vars: dict[str, str],
        on_output: ChunkCallback,
    ) -> BackgroundProcess:
        return await run_cmd_background(
            self._settings.xcodebuild_bin,
            [
                "test-without-building",
                "-only-testing",
                RUNNER_TEST_IDENTIFIER,
                "-parallel-testing-enabled",
                "NO",
                "-maximum-concurrent-test-simulator-destinations",
                "1",
                "-xctestrun",
                str(xctestrun_path),
                "-destination",
                resolve_runner_destination(device),
            ],
            env={**os.environ, **env_vars},
            on_stdout=on_output,
            on_stderr=on_output,
        )

    async def stop_session(self, device_id: str) -> None:
        """Shut the runner down; no-op when the device has no session.

        Sends a graceful shutdown command, falls back to SIGTERM, waits a
        bounded time for exit, then always sends SIGKILL. Temporary run
        artifacts are removed best-effort and the session is forgotten last.
        """
        session = self._store.get(device_id)
        if session is None:
            return
        session.state = RunnerSessionState.STOPPING
        stop_timeout_ms = self._settings.runner_stop_timeout_ms

        graceful = False
        if not session.exited:
            try:
                await self._transport.send(
                    session.device,
                    session.port,
                    SHUTDOWN_COMMAND,
                    timeout_ms=stop_timeout_ms,
                    allow_relay=False,
                )
                graceful = True
            except AgentDeviceError as exc:
                logger.debug("graceful runner shutdown for %s failed: %s", device_id, exc)
        if not graceful:
            session.process.terminate()

        await asyncio.wait({session.process.wait}, timeout=stop_timeout_ms / 1000)
        session.process.kill()
        if not session.exited:
            logger.warning("runner for %s still exiting after %dms", device_id, stop_timeout_ms)

        _remove_quietly(session.xctestrun_path, session.json_path)
        self._claimed_ports.discard(session.port)
        session.state = RunnerSessionState.GONE
        self._store.pop(device_id)
        logger.info("runner session for %s stopped", device_id)

    async def stop_all(self) -> None:
        for device_id in self._store.device_ids():
            await self.stop_session(device_id)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def dispatch_command(
        self,
        device: DeviceInfo,
        command: RunnerCommand,
        options: RunnerOptions | None = None,
    ) -> dict[str, Any]:
        """Send ``command`` to the device's runner and return its ``data``.

        If the runner never accepts a connection the session is torn down
        and the command is retried once against a fresh session.

        Raises:
            RunnerConnectionError: If the rebuilt session is unreachable too.
            RunnerCommandError: If the runner reports a logical failure.
            RunnerProtocolError: If the response is not a protocol envelope.
        """
        try:
            return await self._dispatch_once(device, command, options)
        except RunnerConnectionError as exc:
            logger.warning("runner for %s never accepted a connection (%s), rebuilding session", device.id, exc)
            session = self._store.get(device.id)
            if session is not None:
                session.state = RunnerSessionState.RECOVERING
            await self.stop_session(device.id)
            return await self._dispatch_once(device, command, options)

    async def _dispatch_once(
        self,
        device: DeviceInfo,
        command: RunnerCommand,
        options: RunnerOptions | None,
    ) -> dict[str, Any]:
        if not command.is_read_only:
            return await self._round_trip(device, command, options)
        return await retry_with_policy(
            lambda _context: self._round_trip(device, command, options),
            RetryPolicy(
                max_attempts=3,
                base_delay_ms=200,
                max_delay_ms=1000,
                jitter=0.2,
                should_retry=is_transient_runner_error,
            ),
            phase="runner_command",
            stderr_logs=self._settings.retry_logs,
        )

    async def _round_trip(
        self,
        device: DeviceInfo,
        command: RunnerCommand,
        options: RunnerOptions | None,
    ) -> dict[str, Any]:
        session = await self.ensure_session(device, options)
        if session.exited:
            raise connection_failure(
                "Runner did not accept connection (runner process exited)",
                {"port": session.port, "device_id": device.id},
            )

        if session.ready:
            timeout_ms = self._settings.runner_command_timeout_ms
        else:
            timeout_ms = self._settings.runner_startup_timeout_ms
            await session.wait_for_listener(min(self._settings.runner_ready_wait_ms, timeout_ms))

        body = await self._transport.send(
            device,
            session.port,
            command,
            timeout_ms=timeout_ms,
            fallback_port=session.output.reported_port,
        )
        try:
            data = parse_runner_response(body)
        except RunnerCommandError:
            session.mark_ready()
            raise
        session.mark_ready()
        return data


def _remove_quietly(*paths: Path) -> None:
    for path in paths:
        with contextlib.suppress(OSError):
            path.unlink(missing_ok=True)
