"""Classify raw boot / connect failure evidence into actionable reasons.

Classification is an ordered rule table: the first rule whose predicate
matches wins. Rules look at an explicit "tool missing" signal, the declared
platform and phase, and a lower-cased haystack built from every text field
of the evidence (message, error details, nested boot/bootstatus output,
stdout, stderr).
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from agentdevice.shared.enums import BootFailureReason, BootPhase, ErrorCode, Platform
from agentdevice.shared.exceptions import AgentDeviceError, as_agent_device_error

_TIMEOUT_PHRASES = (
    "timed out",
    "timeout",
    "deadline exceeded",
    "did not finish booting",
)

_RUNNER_CONNECT_PHRASES = (
    "did not accept connection",
    "connection refused",
    "econnrefused",
    "could not connect",
    "failed to connect",
    "connection reset",
    "econnreset",
    "socket hang up",
    "hung up",
    "timed out",
    "timeout",
)

_RESOURCE_STARVATION_PHRASES = (
    "cannot allocate memory",
    "out of memory",
    "killed: 9",
    "signal 9",
    "resource temporarily unavailable",
    "no space left on device",
    "too many open files",
)

_ADB_TRANSPORT_PHRASES = (
    "offline",
    "unauthorized",
    "not authorized",
    "device not found",
    "no devices/emulators found",
    "device still authorizing",
    "device still connecting",
    "insufficient permissions",
)

_NESTED_OUTPUT_KEYS = ("boot", "bootstatus")


@dataclass(frozen=True, slots=True)
class BootEvidence:
    """Everything known about one failure; all fields optional."""

    error: BaseException | None = None
    message: str | None = None
    stdout: str | None = None
    stderr: str | None = None
    platform: Platform | None = None
    phase: BootPhase | None = None


@dataclass(frozen=True, slots=True)
class _Facts:
    text: str
    platform: Platform | None
    phase: BootPhase | None
    code: ErrorCode | None

    def mentions(self, phrases: Iterable[str]) -> bool:
        return any(phrase in self.text for phrase in phrases)


@dataclass(frozen=True, slots=True)
class _Rule:
    reason: BootFailureReason
    matches: Callable[[_Facts], bool]


def _is(platform: Platform, phase: BootPhase | None = None) -> Callable[[_Facts], bool]:
    def check(facts: _Facts) -> bool:
        return facts.platform == platform and (phase is None or facts.phase == phase)

    return check


_ios_connect = _is(Platform.IOS, BootPhase.CONNECT)
_ios_boot = _is(Platform.IOS, BootPhase.BOOT)
_android_boot = _is(Platform.ANDROID, BootPhase.BOOT)


def _tool_missing(facts: _Facts) -> bool:
    return facts.code == ErrorCode.TOOL_MISSING


# Priority order matters: first match wins.
_RULES: tuple[_Rule, ...] = (
    _Rule(BootFailureReason.IOS_TOOL_MISSING, lambda f: _tool_missing(f) and f.platform == Platform.IOS),
    _Rule(BootFailureReason.ANDROID_TOOL_MISSING, lambda f: _tool_missing(f) and f.platform == Platform.ANDROID),
    _Rule(BootFailureReason.TOOL_MISSING, _tool_missing),
    _Rule(
        BootFailureReason.IOS_RUNNER_CONNECT_TIMEOUT,
        lambda f: _ios_connect(f) and f.mentions(_RUNNER_CONNECT_PHRASES),
    ),
    _Rule(BootFailureReason.IOS_BOOT_TIMEOUT, lambda f: _ios_boot(f) and f.mentions(_TIMEOUT_PHRASES)),
    _Rule(BootFailureReason.ANDROID_BOOT_TIMEOUT, lambda f: _android_boot(f) and f.mentions(_TIMEOUT_PHRASES)),
    _Rule(BootFailureReason.CI_RESOURCE_STARVATION_SUSPECTED, lambda f: f.mentions(_RESOURCE_STARVATION_PHRASES)),
    _Rule(
        BootFailureReason.ADB_TRANSPORT_UNAVAILABLE,
        lambda f: f.platform in (Platform.ANDROID, None) and f.mentions(_ADB_TRANSPORT_PHRASES),
    ),
    _Rule(BootFailureReason.BOOT_COMMAND_FAILED, lambda f: f.code == ErrorCode.COMMAND_FAILED or bool(f.text)),
)

_HINTS: dict[BootFailureReason, str] = {
    BootFailureReason.IOS_BOOT_TIMEOUT: (
        "Simulator did not finish booting in time. Raise AGENT_DEVICE_IOS_BOOT_TIMEOUT_MS, "
        "or erase the simulator if boots keep hanging."
    ),
    BootFailureReason.IOS_RUNNER_CONNECT_TIMEOUT: (
        "The XCUITest runner never accepted a connection. Make sure the simulator is booted and "
        "unlocked; rerun with AGENT_DEVICE_IOS_CLEAN_DERIVED=1 to rebuild the runner."
    ),
    BootFailureReason.IOS_TOOL_MISSING: "Install Xcode and its command line tools so xcrun and xcodebuild are on PATH.",
    BootFailureReason.ANDROID_BOOT_TIMEOUT: (
        "Emulator did not report sys.boot_completed in time. Raise AGENT_DEVICE_ANDROID_BOOT_TIMEOUT_MS "
        "or cold boot the emulator."
    ),
    BootFailureReason.ANDROID_TOOL_MISSING: "Install Android platform-tools and make sure adb is on PATH.",
    BootFailureReason.ADB_TRANSPORT_UNAVAILABLE: (
        "adb cannot reach the device. Check `adb devices` for offline or unauthorized state, "
        "accept the USB debugging prompt, or restart the adb server."
    ),
    BootFailureReason.CI_RESOURCE_STARVATION_SUSPECTED: (
        "The host looks starved for memory or processes. Close other simulators/emulators "
        "or use a larger CI machine."
    ),
    BootFailureReason.TOOL_MISSING: "A required command line tool is missing from PATH.",
    BootFailureReason.BOOT_COMMAND_FAILED: (
        "A device command failed. Inspect stdout/stderr in the error details and rerun with "
        "AGENT_DEVICE_RETRY_LOGS=1 for per-attempt diagnostics."
    ),
    BootFailureReason.UNKNOWN: "Rerun with AGENT_DEVICE_RETRY_LOGS=1 and --verbose to capture more diagnostics.",
}


def _detail_texts(details: Mapping[str, Any]) -> list[str | None]:
    texts: list[str | None] = [details.get(key) for key in ("message", "stdout", "stderr")]
    for key in _NESTED_OUTPUT_KEYS:
        nested = details.get(key)
        if isinstance(nested, Mapping):
            texts.extend([nested.get("stdout"), nested.get("stderr")])
    return texts


def _facts(evidence: BootEvidence) -> _Facts:
    error: AgentDeviceError | None = None
    if evidence.error is not None:
        error = as_agent_device_error(evidence.error)
        if isinstance(evidence.error, FileNotFoundError):
            return _Facts(text="", platform=evidence.platform, phase=evidence.phase, code=ErrorCode.TOOL_MISSING)

    parts: list[str | None] = [evidence.message]
    if error is not None:
        parts.append(error.message)
        parts.extend(_detail_texts(error.details))
    parts.extend([evidence.stdout, evidence.stderr])

    text = "\n".join(part for part in parts if isinstance(part, str) and part).lower()
    return _Facts(
        text=text,
        platform=evidence.platform,
        phase=evidence.phase,
        code=error.code if error is not None else None,
    )


def classify_boot_failure(evidence: BootEvidence) -> BootFailureReason:
    """Map failure evidence to a :class:`BootFailureReason` (first matching rule)."""
    facts = _facts(evidence)
    for rule in _RULES:
        if rule.matches(facts):
            return rule.reason
    return BootFailureReason.UNKNOWN


def boot_failure_hint(reason: BootFailureReason) -> str:
    """Remediation text for ``reason``; defined for every member."""
    return _HINTS[reason]
