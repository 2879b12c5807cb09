"""Bring an iOS simulator to the ``Booted`` state within one deadline."""

from __future__ import annotations

import logging
from typing import Any

from agentdevice.config import Settings, get_settings
from agentdevice.platforms.ios.simctl import BOOTED, SimctlClient
from agentdevice.resilience.deadline import Deadline
from agentdevice.resilience.diagnostics import BootEvidence, boot_failure_hint, classify_boot_failure
from agentdevice.resilience.retry import RetryAttemptContext, RetryPolicy, retry_with_policy
from agentdevice.shared.enums import BootFailureReason, BootPhase, Platform
from agentdevice.shared.exceptions import CommandFailedError, UnsupportedOperationError, truncate_output
from agentdevice.shared.exec import ExecResult
from agentdevice.shared.models import DeviceInfo

logger = logging.getLogger(__name__)

_ALREADY_BOOTED_PHRASES = ("already booted", "current state: booted")

_NON_RETRYABLE = frozenset(
    {
        BootFailureReason.IOS_BOOT_TIMEOUT,
        BootFailureReason.CI_RESOURCE_STARVATION_SUSPECTED,
    }
)

_MIN_STEP_TIMEOUT_MS = 1_000


def ensure_simulator(device: DeviceInfo, command: str) -> None:
    if not device.is_ios_simulator:
        raise UnsupportedOperationError(f"{command} is only supported on iOS simulators")


def _output_block(result: ExecResult | None) -> dict[str, Any] | None:
    if result is None:
        return None
    return {
        "exit_code": result.exit_code,
        "stdout": truncate_output(result.stdout),
        "stderr": truncate_output(result.stderr),
    }


class SimulatorBootWaiter:
    """Boot a simulator with a small retry budget and shared deadline.

    Each attempt issues ``simctl boot`` (an "already booted" race counts as
    success), then ``simctl bootstatus -b``, then re-reads the state. All
    three steps draw their sub-timeouts from the same deadline.
    """

    def __init__(self, settings: Settings | None = None, *, simctl: SimctlClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._simctl = simctl or SimctlClient(
            xcrun_bin=self._settings.xcrun_bin,
            list_timeout_ms=self._settings.ios_simctl_list_timeout_ms,
        )

    async def ensure_booted(self, device: DeviceInfo) -> None:
        """No-op for booted simulators and physical devices.

        Raises:
            CommandFailedError: If the simulator cannot be booted; ``details``
                carry the reason, hint and the last boot/bootstatus output.
        """
        if not device.is_ios_simulator:
            return
        if await self._simctl.get_state(device.id) == BOOTED:
            return

        timeout_ms = self._settings.ios_boot_timeout_ms
        deadline = Deadline.from_timeout_ms(timeout_ms)
        boot_result: ExecResult | None = None
        bootstatus_result: ExecResult | None = None

        def classify(error: BaseException | None) -> BootFailureReason:
            latest = bootstatus_result or boot_result
            return classify_boot_failure(
                BootEvidence(
                    error=error,
                    stdout=latest.stdout if latest else None,
                    stderr=latest.stderr if latest else None,
                    platform=Platform.IOS,
                    phase=BootPhase.BOOT,
                )
            )

        async def attempt(context: RetryAttemptContext) -> None:
            nonlocal boot_result, bootstatus_result
            step_deadline = context.deadline or deadline
            if step_deadline.is_expired():
                raise CommandFailedError("iOS simulator boot deadline exceeded", {"timeout_ms": timeout_ms})

            boot_result = await self._simctl.boot(device.id, timeout_ms=self._step_timeout(step_deadline))
            already_booted = any(phrase in boot_result.combined.lower() for phrase in _ALREADY_BOOTED_PHRASES)
            if boot_result.exit_code != 0 and not already_booted:
                raise CommandFailedError("simctl boot failed", _output_block(boot_result))

            bootstatus_result = await self._simctl.bootstatus(
                device.id, timeout_ms=self._step_timeout(step_deadline)
            )
            if bootstatus_result.exit_code != 0:
                raise CommandFailedError("simctl bootstatus failed", _output_block(bootstatus_result))

            state = await self._simctl.get_state(device.id)
            if state != BOOTED:
                raise CommandFailedError("Simulator is still booting", {"state": state})

        policy = RetryPolicy(
            max_attempts=3,
            base_delay_ms=500,
            max_delay_ms=2000,
            jitter=0.2,
            should_retry=lambda error, _attempt: classify(error) not in _NON_RETRYABLE,
        )
        try:
            await retry_with_policy(
                attempt,
                policy,
                deadline=deadline,
                phase="boot",
                classify_reason=lambda error: classify(error).value,
                stderr_logs=self._settings.retry_logs,
            )
        except Exception as exc:
            reason = classify(exc)
            logger.warning("simulator %s failed to boot: %s", device.id, reason.value)
            raise CommandFailedError(
                "iOS simulator failed to boot",
                {
                    "platform": Platform.IOS.value,
                    "device_id": device.id,
                    "timeout_ms": timeout_ms,
                    "elapsed_ms": deadline.elapsed_ms(),
                    "reason": reason.value,
                    "hint": boot_failure_hint(reason),
                    "boot": _output_block(boot_result),
                    "bootstatus": _output_block(bootstatus_result),
                },
            ) from exc
        logger.info("simulator %s booted in %dms", device.id, deadline.elapsed_ms())

    @staticmethod
    def _step_timeout(deadline: Deadline) -> int:
        return max(_MIN_STEP_TIMEOUT_MS, deadline.remaining_ms())
