"""Protocol interfaces for runner session dependency injection."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from agentdevice.platforms.ios.runner_build import PreparedRunArtifact
from agentdevice.platforms.ios.runner_protocol import RunnerCommand
from agentdevice.shared.exec import BackgroundProcess, ChunkCallback
from agentdevice.shared.models import DeviceInfo


@runtime_checkable
class BootWaiter(Protocol):
    """Protocol for satisfying a device's OS-level boot precondition."""

    async def ensure_booted(self, device: DeviceInfo) -> None:
        """Return once the device is booted.

        Raises:
            CommandFailedError: If the device cannot be booted
        """
        ...


@runtime_checkable
class RunArtifactBuilder(Protocol):
    """Protocol for locating/building the runner and preparing per-session copies."""

    async def ensure_xctestrun(
        self,
        device: DeviceInfo,
        *,
        clean: bool | None = None,
        on_output: ChunkCallback | None = None,
    ) -> Path:
        """Return a base run descriptor, building the runner when none is cached.

        Raises:
            RunnerBuildError: If the build fails
        """
        ...

    async def prepare_with_env(self, xctestrun: Path, env_vars: dict[str, str], suffix: str) -> PreparedRunArtifact:
        """Write a session-private descriptor with ``env_vars`` injected."""
        ...


@runtime_checkable
class CommandTransport(Protocol):
    """Protocol for delivering one command to a running harness."""

    async def send(
        self,
        device: DeviceInfo,
        port: int,
        command: RunnerCommand,
        *,
        timeout_ms: int,
        fallback_port: int | None = None,
        allow_relay: bool = True,
    ) -> str:
        """Return the raw response body.

        Raises:
            RunnerConnectionError: If the harness never accepted a connection
            RunnerTransportError: If the connection dropped mid-request
        """
        ...


@runtime_checkable
class HarnessLauncher(Protocol):
    """Protocol for starting the harness process in the background."""

    async def __call__(
        self,
        device: DeviceInfo,
        xctestrun_path: Path,
        env_vars: dict[str, str],
        on_output: ChunkCallback,
    ) -> BackgroundProcess: ...
