"""ADB access for Android emulators and devices."""

from __future__ import annotations

import logging

from agentdevice.shared.enums import DeviceKind, Platform
from agentdevice.shared.exec import ExecResult, run_cmd
from agentdevice.shared.models import DeviceInfo

logger = logging.getLogger(__name__)

BOOT_COMPLETED_PROP = "sys.boot_completed"


class AdbClient:
    """Runs ``adb`` commands against one device serial.

    Uses the ``adb`` CLI through async subprocess calls.
    """

    def __init__(self, serial: str, *, adb_bin: str = "adb", timeout_ms: int = 10_000) -> None:
        self.serial = serial
        self._adb_bin = adb_bin
        self._timeout_ms = timeout_ms

    async def shell(self, cmd: str, *, timeout_ms: int | None = None) -> str:
        """Execute a shell command on the device.

        Args:
            cmd: Shell command to execute.
            timeout_ms: Override for the per-command timeout.

        Returns:
            Command output (stdout), stripped.

        Raises:
            ToolMissingError: If adb is not installed.
            CommandFailedError: If adb exits non-zero or times out.
        """
        result = await self._run("-s", self.serial, "shell", cmd, timeout_ms=timeout_ms)
        return result.stdout.strip()

    async def get_prop(self, name: str, *, timeout_ms: int | None = None) -> str:
        return await self.shell(f"getprop {name}", timeout_ms=timeout_ms)

    async def is_booted(self) -> bool:
        """Best-effort boot check used while listing devices."""
        result = await self._run(
            "-s", self.serial, "shell", "getprop", BOOT_COMPLETED_PROP, allow_failure=True
        )
        return result.exit_code == 0 and result.stdout.strip() == "1"

    async def avd_name(self) -> str | None:
        result = await self._run("-s", self.serial, "emu", "avd", "name", allow_failure=True)
        # First line is the name; adb appends an "OK" line
        name = result.stdout.strip().splitlines()[0].strip() if result.stdout.strip() else ""
        if result.exit_code != 0 or not name:
            return None
        return name

    async def _run(self, *args: str, allow_failure: bool = False, timeout_ms: int | None = None) -> ExecResult:
        return await run_cmd(
            self._adb_bin,
            args,
            allow_failure=allow_failure,
            timeout_ms=timeout_ms or self._timeout_ms,
        )


async def list_android_devices(*, adb_bin: str = "adb", timeout_ms: int = 10_000) -> list[DeviceInfo]:
    """Parse ``adb devices -l`` into ready-to-use device records.

    Only entries in the ``device`` state are returned; offline and
    unauthorized entries are skipped.

    Raises:
        ToolMissingError: If adb is not installed.
    """
    result = await run_cmd(adb_bin, ["devices", "-l"], timeout_ms=timeout_ms)
    devices: list[DeviceInfo] = []
    for line in result.stdout.splitlines():
        line = line.strip()
        if not line or line.startswith("List of devices") or line.startswith("*"):
            continue
        parts = line.split()
        if len(parts) < 2 or parts[1] != "device":
            continue
        serial = parts[0]
        model = next((p.removeprefix("model:") for p in parts if p.startswith("model:")), "")
        name = model.replace("_", " ").strip() or serial

        client = AdbClient(serial, adb_bin=adb_bin, timeout_ms=timeout_ms)
        is_emulator = serial.startswith("emulator-")
        if is_emulator:
            avd = await client.avd_name()
            if avd:
                name = avd.replace("_", " ")

        devices.append(
            DeviceInfo(
                platform=Platform.ANDROID,
                id=serial,
                name=name,
                kind=DeviceKind.EMULATOR if is_emulator else DeviceKind.DEVICE,
                booted=await client.is_booted(),
            )
        )
    logger.debug("adb reported %d ready device(s)", len(devices))
    return devices
