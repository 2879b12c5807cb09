"""Platform dispatch for "make this device usable" before any command runs."""

from __future__ import annotations

import logging

from agentdevice.config import Settings, get_settings
from agentdevice.platforms.android.boot import AndroidBootWaiter
from agentdevice.platforms.ios.boot import SimulatorBootWaiter
from agentdevice.shared.enums import Platform
from agentdevice.shared.exceptions import UnsupportedOperationError
from agentdevice.shared.models import DeviceInfo

logger = logging.getLogger(__name__)


async def ensure_device_ready(
    device: DeviceInfo,
    *,
    settings: Settings | None = None,
    ios_waiter: SimulatorBootWaiter | None = None,
    android_waiter: AndroidBootWaiter | None = None,
) -> None:
    """Block until ``device`` has finished booting.

    Simulators are booted on demand, Android targets are polled for boot
    completion, and physical iOS devices are assumed ready.

    Raises:
        CommandFailedError: If the device does not become ready in time.
        ToolMissingError: If the platform tooling is not installed.
    """
    settings = settings or get_settings()
    if device.platform == Platform.IOS:
        if not device.is_ios_simulator:
            logger.debug("skipping boot wait for physical device %s", device.id)
            return
        await (ios_waiter or SimulatorBootWaiter(settings)).ensure_booted(device)
        return
    if device.platform == Platform.ANDROID:
        await (android_waiter or AndroidBootWaiter(settings)).wait_for_boot(device.id)
        return
    raise UnsupportedOperationError(f"unsupported platform: {device.platform}")
