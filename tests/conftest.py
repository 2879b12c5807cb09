"""Shared pytest fixtures for the agentdevice test suite."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from agentdevice.config import Settings
from agentdevice.shared.enums import DeviceKind, Platform
from agentdevice.shared.models import DeviceInfo


@pytest.fixture()
def settings(tmp_path) -> Settings:
    """Return a Settings instance with fast test timings."""
    return Settings(
        runner_derived_dir=str(tmp_path / "derived"),
        runner_project_path=str(tmp_path / "AgentDeviceRunner.xcodeproj"),
        runner_startup_timeout_ms=2_000,
        runner_command_timeout_ms=1_000,
        runner_poll_interval_ms=10,
        runner_ready_wait_ms=0,
        runner_stop_timeout_ms=100,
        retry_logs=False,
    )


@pytest.fixture()
def simulator() -> DeviceInfo:
    return DeviceInfo(
        platform=Platform.IOS,
        id="5A1B2C3D-0000-4000-8000-000000000001",
        name="iPhone 15",
        kind=DeviceKind.SIMULATOR,
    )


@pytest.fixture()
def ios_device() -> DeviceInfo:
    return DeviceInfo(
        platform=Platform.IOS,
        id="00008110-000A1B2C3D4E5F60",
        name="Test iPhone",
        kind=DeviceKind.DEVICE,
        tunnel_host="fd12:3456::1",
    )


@pytest.fixture()
def emulator() -> DeviceInfo:
    return DeviceInfo(platform=Platform.ANDROID, id="emulator-5554", name="Pixel 7", kind=DeviceKind.EMULATOR)


def _make_proc(stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0) -> AsyncMock:
    proc = AsyncMock()
    proc.communicate.return_value = (stdout, stderr)
    proc.returncode = returncode
    return proc


@pytest.fixture()
def make_proc():
    """Factory for mocks of ``asyncio.subprocess.Process`` used via ``communicate``."""
    return _make_proc
