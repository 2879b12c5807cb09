"""Wait for an Android emulator/device to report ``sys.boot_completed``."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable

from agentdevice.config import Settings, get_settings
from agentdevice.platforms.android.adb import BOOT_COMPLETED_PROP, AdbClient
from agentdevice.resilience.deadline import Deadline
from agentdevice.resilience.diagnostics import BootEvidence, boot_failure_hint, classify_boot_failure
from agentdevice.resilience.retry import RetryAttemptContext, RetryPolicy, retry_with_policy
from agentdevice.shared.enums import BootFailureReason, BootPhase, Platform
from agentdevice.shared.exceptions import (
    AgentDeviceError,
    CommandFailedError,
    ToolMissingError,
    truncate_output,
)

logger = logging.getLogger(__name__)

# Reasons that describe a terminal state; polling again cannot change them
_NON_RETRYABLE = frozenset(
    {
        BootFailureReason.ADB_TRANSPORT_UNAVAILABLE,
        BootFailureReason.ANDROID_BOOT_TIMEOUT,
        BootFailureReason.ANDROID_TOOL_MISSING,
    }
)

_MIN_PROBE_TIMEOUT_MS = 1_000


class _BootNotComplete(CommandFailedError):
    """The property read succeeded but did not report ``1``."""


def _classify(error: BaseException | None) -> BootFailureReason:
    return classify_boot_failure(BootEvidence(error=error, platform=Platform.ANDROID, phase=BootPhase.BOOT))


class AndroidBootWaiter:
    """Poll the boot-completion property until it reads ``1``.

    Polling runs inside the retry engine with a fixed interval (no
    exponential growth) and an attempt budget of ``ceil(timeout / interval)``.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        adb_factory: Callable[[str], AdbClient] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._adb_factory = adb_factory or self._default_adb

    def _default_adb(self, serial: str) -> AdbClient:
        return AdbClient(
            serial,
            adb_bin=self._settings.adb_bin,
            timeout_ms=self._settings.android_adb_timeout_ms,
        )

    async def wait_for_boot(
        self,
        serial: str,
        *,
        timeout_ms: int | None = None,
        poll_interval_ms: int | None = None,
    ) -> None:
        """Block until ``serial`` has finished booting.

        Raises:
            ToolMissingError: If adb is not installed.
            CommandFailedError: If the device never reports boot completion;
                ``details`` carry the classified reason and hint.
        """
        timeout_ms = self._settings.android_boot_timeout_ms if timeout_ms is None else timeout_ms
        interval = self._settings.android_boot_poll_interval_ms if poll_interval_ms is None else poll_interval_ms
        adb = self._adb_factory(serial)
        deadline = Deadline.from_timeout_ms(timeout_ms)
        last_value: str | None = None

        async def probe(context: RetryAttemptContext) -> None:
            nonlocal last_value
            if context.deadline is not None and context.deadline.is_expired():
                raise CommandFailedError("Android boot deadline exceeded", {"timeout_ms": timeout_ms})
            remaining = context.deadline.remaining_ms() if context.deadline else timeout_ms
            probe_timeout = max(_MIN_PROBE_TIMEOUT_MS, min(self._settings.android_adb_timeout_ms, remaining))
            last_value = await adb.get_prop(BOOT_COMPLETED_PROP, timeout_ms=probe_timeout)
            if last_value != "1":
                raise _BootNotComplete(
                    "Android boot not complete yet",
                    {"serial": serial, BOOT_COMPLETED_PROP: last_value},
                )

        policy = RetryPolicy(
            max_attempts=max(1, math.ceil(timeout_ms / max(1, interval))),
            base_delay_ms=interval,
            max_delay_ms=interval,
            jitter=0.0,
            should_retry=lambda error, _attempt: _classify(error) not in _NON_RETRYABLE,
        )
        try:
            await retry_with_policy(
                probe,
                policy,
                deadline=deadline,
                phase="boot",
                classify_reason=lambda error: _classify(error).value,
                stderr_logs=self._settings.retry_logs,
            )
        except AgentDeviceError as exc:
            raise self._final_error(exc, serial, timeout_ms, deadline, last_value) from exc
        logger.info("android device %s booted after %dms", serial, deadline.elapsed_ms())

    def _final_error(
        self,
        error: AgentDeviceError,
        serial: str,
        timeout_ms: int,
        deadline: Deadline,
        last_value: str | None,
    ) -> AgentDeviceError:
        reason = _classify(error)
        if reason == BootFailureReason.ANDROID_TOOL_MISSING:
            message = f"adb is required to wait for {serial}"
        elif reason == BootFailureReason.ADB_TRANSPORT_UNAVAILABLE:
            message = f"Android device {serial} is not reachable over adb"
        elif (
            deadline.is_expired()
            or reason == BootFailureReason.ANDROID_BOOT_TIMEOUT
            or isinstance(error, _BootNotComplete)
        ):
            reason = BootFailureReason.ANDROID_BOOT_TIMEOUT
            message = f"Android device {serial} did not finish booting within {timeout_ms}ms"
        else:
            message = f"Failed to read {BOOT_COMPLETED_PROP} from {serial}"

        details = {
            "platform": Platform.ANDROID.value,
            "serial": serial,
            "timeout_ms": timeout_ms,
            "elapsed_ms": deadline.elapsed_ms(),
            "reason": reason.value,
            "hint": boot_failure_hint(reason),
            "last_value": last_value,
            "error": error.message,
            "stdout": truncate_output(error.details.get("stdout")),
            "stderr": truncate_output(error.details.get("stderr")),
        }
        logger.warning("android boot wait for %s failed: %s (%s)", serial, message, reason.value)
        if isinstance(error, ToolMissingError):
            return ToolMissingError(message, details)
        return CommandFailedError(message, details)


async def wait_for_android_boot(serial: str, *, timeout_ms: int | None = None) -> None:
    """Convenience wrapper using process-wide settings."""
    await AndroidBootWaiter().wait_for_boot(serial, timeout_ms=timeout_ms)
