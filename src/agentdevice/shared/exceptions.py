"""Hierarchical exception types for agentdevice."""

from __future__ import annotations

from typing import Any, ClassVar

from agentdevice.shared.enums import ErrorCode

# Keep the tail of process output; the end usually holds the actual failure
_OUTPUT_LIMIT = 4000


def truncate_output(text: str | None, limit: int = _OUTPUT_LIMIT) -> str:
    """Return at most ``limit`` trailing characters of ``text``."""
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return "…" + text[-limit:]


class AgentDeviceError(Exception):
    """Base exception for all agentdevice errors.

    Every error carries a stable ``code``, a message and an optional
    ``details`` bag (raw stdout/stderr, exit code, classified reason, hint).
    """

    code: ClassVar[ErrorCode] = ErrorCode.UNKNOWN

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    @property
    def hint(self) -> str | None:
        value = self.details.get("hint")
        return value if isinstance(value, str) else None

    @property
    def reason(self) -> str | None:
        value = self.details.get("reason")
        return str(value) if value is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "details": self.details}


# ── Generic kinds ──────────────────────────────────────────────


class InvalidArgsError(AgentDeviceError):
    """Caller supplied unusable arguments."""

    code = ErrorCode.INVALID_ARGS


class ToolMissingError(AgentDeviceError):
    """A required native tool (adb, xcrun, xcodebuild) is not installed."""

    code = ErrorCode.TOOL_MISSING


class DeviceNotFoundError(AgentDeviceError):
    """Target device is unknown or unavailable."""

    code = ErrorCode.DEVICE_NOT_FOUND


class UnsupportedOperationError(AgentDeviceError):
    """Operation is not available on this platform or device kind."""

    code = ErrorCode.UNSUPPORTED_OPERATION


class CommandFailedError(AgentDeviceError):
    """A subprocess exited non-zero, timed out, or a bounded operation gave up."""

    code = ErrorCode.COMMAND_FAILED


class SessionNotFoundError(AgentDeviceError):
    """No active session exists for the requested device."""

    code = ErrorCode.SESSION_NOT_FOUND


# ── iOS runner ─────────────────────────────────────────────────


class RunnerError(CommandFailedError):
    """Base for XCUITest runner failures."""


class RunnerBuildError(RunnerError):
    """``xcodebuild build-for-testing`` failed or produced no run artifact."""


class RunnerConnectionError(RunnerError):
    """Runner never accepted a connection; the session must be rebuilt."""


class RunnerTransportError(RunnerError):
    """Runner accepted the connection and then hung up or reset it."""


class RunnerProtocolError(RunnerError):
    """Runner responded with a body that is not a valid protocol envelope."""


class RunnerCommandError(RunnerError):
    """Runner processed the command and reported a logical failure."""


def as_agent_device_error(exc: BaseException) -> AgentDeviceError:
    """Normalise any exception into the agentdevice hierarchy."""
    if isinstance(exc, AgentDeviceError):
        return exc
    error = AgentDeviceError(str(exc) or type(exc).__name__, {"error_type": type(exc).__name__})
    error.__cause__ = exc
    return error
