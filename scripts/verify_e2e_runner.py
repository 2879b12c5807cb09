"""Manual end-to-end check against a real simulator.

Usage:
    python scripts/verify_e2e_runner.py <simulator-udid> [--verbose]

Boots the simulator, starts the XCUITest runner, takes one snapshot and
shuts the runner down again.
"""

import asyncio
import logging
import sys

from agentdevice.config import get_settings
from agentdevice.device_ready import ensure_device_ready
from agentdevice.platforms.ios.runner_protocol import RunnerCommand
from agentdevice.platforms.ios.runner_session import RunnerOptions, RunnerSessionManager
from agentdevice.shared.enums import DeviceKind, Platform, RunnerAction
from agentdevice.shared.exceptions import AgentDeviceError
from agentdevice.shared.models import DeviceInfo

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("verify_runner")


async def main(udid: str, verbose: bool) -> int:
    settings = get_settings()
    device = DeviceInfo(platform=Platform.IOS, id=udid, name=udid, kind=DeviceKind.SIMULATOR)
    manager = RunnerSessionManager(settings)

    try:
        logger.info("Waiting for simulator %s to boot...", udid)
        await ensure_device_ready(device, settings=settings)

        logger.info("Requesting snapshot...")
        data = await manager.dispatch_command(
            device,
            RunnerCommand(command=RunnerAction.SNAPSHOT, interactive_only=True, compact=True),
            RunnerOptions(verbose=verbose),
        )
        nodes = data.get("nodes") or []
        logger.info("Snapshot returned %d nodes", len(nodes))
    except AgentDeviceError as e:
        logger.error("Verification failed: %s", e.message)
        for key in ("reason", "hint"):
            if key in e.details:
                logger.error("  %s: %s", key, e.details[key])
        return 1
    finally:
        await manager.stop_all()

    logger.info("Runner verification passed")
    return 0


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(2)
    sys.exit(asyncio.run(main(sys.argv[1], "--verbose" in sys.argv[2:])))
