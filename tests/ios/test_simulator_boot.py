"""Tests for SimulatorBootWaiter and simctl parsing."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agentdevice.config import Settings
from agentdevice.device_ready import ensure_device_ready
from agentdevice.platforms.ios.boot import SimulatorBootWaiter, ensure_simulator
from agentdevice.platforms.ios.simctl import SimctlClient, parse_simulator_state
from agentdevice.shared.enums import BootFailureReason
from agentdevice.shared.exceptions import CommandFailedError, UnsupportedOperationError
from agentdevice.shared.exec import ExecResult
from agentdevice.shared.models import DeviceInfo

UDID = "5A1B2C3D-0000-4000-8000-000000000001"


def ok(stdout: str = "") -> ExecResult:
    return ExecResult(stdout=stdout, stderr="", exit_code=0)


def failed(stderr: str, exit_code: int = 1) -> ExecResult:
    return ExecResult(stdout="", stderr=stderr, exit_code=exit_code)


@pytest.fixture
def simctl() -> MagicMock:
    client = MagicMock(spec=SimctlClient)
    client.get_state = AsyncMock()
    client.boot = AsyncMock(return_value=ok())
    client.bootstatus = AsyncMock(return_value=ok())
    return client


@pytest.fixture
def waiter(settings: Settings, simctl: MagicMock) -> SimulatorBootWaiter:
    return SimulatorBootWaiter(settings, simctl=simctl)


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("agentdevice.resilience.retry._sleep_ms", new_callable=AsyncMock) as sleep:
        yield sleep


class TestParseSimulatorState:
    def test_finds_device(self) -> None:
        payload = json.dumps(
            {
                "devices": {
                    "com.apple.CoreSimulator.SimRuntime.iOS-17-5": [
                        {"udid": "OTHER", "state": "Shutdown"},
                        {"udid": UDID, "state": "Booted"},
                    ]
                }
            }
        )
        assert parse_simulator_state(payload, UDID) == "Booted"

    def test_unknown_device(self) -> None:
        assert parse_simulator_state('{"devices": {}}', UDID) is None

    def test_garbage(self) -> None:
        assert parse_simulator_state("not json", UDID) is None


class TestSimctlClient:
    async def test_get_state_runs_list(self, make_proc) -> None:
        payload = json.dumps({"devices": {"rt": [{"udid": UDID, "state": "Shutdown"}]}}).encode()

        with patch("asyncio.create_subprocess_exec", return_value=make_proc(payload)) as mock_exec:
            state = await SimctlClient().get_state(UDID)

        assert state == "Shutdown"
        assert mock_exec.call_args.args == ("xcrun", "simctl", "list", "devices", "-j")

    async def test_bootstatus_blocks(self, make_proc) -> None:
        with patch("asyncio.create_subprocess_exec", return_value=make_proc()) as mock_exec:
            await SimctlClient().bootstatus(UDID, timeout_ms=1_000)

        assert mock_exec.call_args.args == ("xcrun", "simctl", "bootstatus", UDID, "-b")


class TestSimulatorBootWaiter:
    async def test_already_booted_is_noop(self, waiter: SimulatorBootWaiter, simctl: MagicMock, simulator) -> None:
        simctl.get_state.return_value = "Booted"

        await waiter.ensure_booted(simulator)

        simctl.boot.assert_not_awaited()
        simctl.bootstatus.assert_not_awaited()

    async def test_physical_device_is_noop(
        self, waiter: SimulatorBootWaiter, simctl: MagicMock, ios_device: DeviceInfo
    ) -> None:
        await waiter.ensure_booted(ios_device)

        simctl.get_state.assert_not_awaited()

    async def test_boots_shutdown_simulator(self, waiter: SimulatorBootWaiter, simctl: MagicMock, simulator) -> None:
        simctl.get_state.side_effect = ["Shutdown", "Booted"]

        await waiter.ensure_booted(simulator)

        simctl.boot.assert_awaited_once()
        simctl.bootstatus.assert_awaited_once()
        assert simctl.boot.await_args.kwargs["timeout_ms"] >= 1_000

    async def test_already_booted_race_counts_as_success(
        self, waiter: SimulatorBootWaiter, simctl: MagicMock, simulator
    ) -> None:
        simctl.get_state.side_effect = ["Shutdown", "Booted"]
        simctl.boot.return_value = failed(
            "Unable to boot device in current state: Booted", exit_code=149
        )

        await waiter.ensure_booted(simulator)

        simctl.bootstatus.assert_awaited_once()

    async def test_retries_transient_failure(
        self, waiter: SimulatorBootWaiter, simctl: MagicMock, simulator, no_sleep: AsyncMock
    ) -> None:
        simctl.get_state.side_effect = ["Shutdown", "Booted"]
        simctl.boot.side_effect = [failed("CoreSimulatorService connection interrupted"), ok()]

        await waiter.ensure_booted(simulator)

        assert simctl.boot.await_count == 2
        no_sleep.assert_awaited_once()

    async def test_timeout_is_not_retried(self, waiter: SimulatorBootWaiter, simctl: MagicMock, simulator) -> None:
        simctl.get_state.return_value = "Shutdown"
        simctl.bootstatus.side_effect = CommandFailedError("xcrun timed out after 120000ms")

        with pytest.raises(CommandFailedError, match="iOS simulator failed to boot") as exc_info:
            await waiter.ensure_booted(simulator)

        assert simctl.bootstatus.await_count == 1
        assert exc_info.value.details["reason"] == BootFailureReason.IOS_BOOT_TIMEOUT.value

    async def test_resource_starvation_is_not_retried(
        self, waiter: SimulatorBootWaiter, simctl: MagicMock, simulator
    ) -> None:
        simctl.get_state.return_value = "Shutdown"
        simctl.bootstatus.return_value = failed("launchd_sim: Cannot allocate memory")

        with pytest.raises(CommandFailedError) as exc_info:
            await waiter.ensure_booted(simulator)

        details = exc_info.value.details
        assert details["reason"] == BootFailureReason.CI_RESOURCE_STARVATION_SUSPECTED.value
        assert "Cannot allocate memory" in details["bootstatus"]["stderr"]
        assert details["hint"]
        assert simctl.boot.await_count == 1

    async def test_exhaustion_wraps_last_output(
        self, waiter: SimulatorBootWaiter, simctl: MagicMock, simulator
    ) -> None:
        simctl.get_state.return_value = "Shutdown"
        simctl.boot.return_value = failed("Invalid device state")

        with pytest.raises(CommandFailedError) as exc_info:
            await waiter.ensure_booted(simulator)

        details = exc_info.value.details
        assert simctl.boot.await_count == 3
        assert details["reason"] == BootFailureReason.BOOT_COMMAND_FAILED.value
        assert details["boot"]["stderr"] == "Invalid device state"
        assert details["bootstatus"] is None


class TestEnsureSimulator:
    def test_rejects_physical_device(self, ios_device: DeviceInfo) -> None:
        with pytest.raises(UnsupportedOperationError, match="only supported on iOS simulators"):
            ensure_simulator(ios_device, "boot")


class TestEnsureDeviceReady:
    async def test_dispatches_simulator(self, settings: Settings, simulator: DeviceInfo) -> None:
        ios_waiter = MagicMock()
        ios_waiter.ensure_booted = AsyncMock()

        await ensure_device_ready(simulator, settings=settings, ios_waiter=ios_waiter)

        ios_waiter.ensure_booted.assert_awaited_once_with(simulator)

    async def test_dispatches_android(self, settings: Settings, emulator: DeviceInfo) -> None:
        android_waiter = MagicMock()
        android_waiter.wait_for_boot = AsyncMock()

        await ensure_device_ready(emulator, settings=settings, android_waiter=android_waiter)

        android_waiter.wait_for_boot.assert_awaited_once_with("emulator-5554")

    async def test_physical_ios_is_noop(self, settings: Settings, ios_device: DeviceInfo) -> None:
        ios_waiter = MagicMock()
        ios_waiter.ensure_booted = AsyncMock()

        await ensure_device_ready(ios_device, settings=settings, ios_waiter=ios_waiter)

        ios_waiter.ensure_booted.assert_not_awaited()
