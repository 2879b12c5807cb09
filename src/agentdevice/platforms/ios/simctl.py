"""``xcrun simctl`` wrapper for iOS simulators."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence

from agentdevice.shared.exec import ExecResult, run_cmd

logger = logging.getLogger(__name__)

BOOTED = "Booted"


class SimctlClient:
    """Thin async wrapper over the simctl subcommands the harness relies on."""

    def __init__(self, *, xcrun_bin: str = "xcrun", list_timeout_ms: int = 20_000) -> None:
        self._xcrun_bin = xcrun_bin
        self._list_timeout_ms = list_timeout_ms

    async def get_state(self, udid: str) -> str | None:
        """Return the simulator state (``Booted``, ``Shutdown``...) or None if unknown."""
        result = await self._simctl(
            ["list", "devices", "-j"], allow_failure=True, timeout_ms=self._list_timeout_ms
        )
        if result.exit_code != 0:
            return None
        return parse_simulator_state(result.stdout, udid)

    async def boot(self, udid: str, *, timeout_ms: int) -> ExecResult:
        return await self._simctl(["boot", udid], allow_failure=True, timeout_ms=timeout_ms)

    async def bootstatus(self, udid: str, *, timeout_ms: int) -> ExecResult:
        """Block until the simulator finishes booting (``bootstatus -b``)."""
        return await self._simctl(["bootstatus", udid, "-b"], allow_failure=True, timeout_ms=timeout_ms)

    async def spawn(self, udid: str, argv: Sequence[str], *, timeout_ms: int | None = None) -> ExecResult:
        """Run a binary inside the simulator's runtime."""
        return await self._simctl(["spawn", udid, *argv], allow_failure=True, timeout_ms=timeout_ms)

    async def _simctl(
        self, args: Sequence[str], *, allow_failure: bool, timeout_ms: int | None
    ) -> ExecResult:
        return await run_cmd(
            self._xcrun_bin,
            ["simctl", *args],
            allow_failure=allow_failure,
            timeout_ms=timeout_ms,
        )


def parse_simulator_state(payload: str, udid: str) -> str | None:
    """Find ``udid`` in ``simctl list devices -j`` output."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("unparseable simctl device list")
        return None
    runtimes = data.get("devices") if isinstance(data, dict) else None
    if not isinstance(runtimes, dict):
        return None
    for entries in runtimes.values():
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if isinstance(entry, dict) and entry.get("udid") == udid:
                state = entry.get("state")
                return state if isinstance(state, str) else None
    return None
