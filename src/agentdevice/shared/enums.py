"""Domain enumerations used across all modules."""

from __future__ import annotations

from enum import Enum, unique


@unique
class ErrorCode(str, Enum):
    """Stable error codes carried by every raised error."""

    INVALID_ARGS = "INVALID_ARGS"
    TOOL_MISSING = "TOOL_MISSING"
    DEVICE_NOT_FOUND = "DEVICE_NOT_FOUND"
    UNSUPPORTED_OPERATION = "UNSUPPORTED_OPERATION"
    COMMAND_FAILED = "COMMAND_FAILED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    UNKNOWN = "UNKNOWN"


@unique
class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"


@unique
class DeviceKind(str, Enum):
    SIMULATOR = "simulator"
    EMULATOR = "emulator"
    DEVICE = "device"


@unique
class BootPhase(str, Enum):
    """Stage of device bring-up that produced a failure."""

    BOOT = "boot"
    CONNECT = "connect"
    TRANSPORT = "transport"


@unique
class BootFailureReason(str, Enum):
    """Closed taxonomy of classified boot / connect failures."""

    IOS_BOOT_TIMEOUT = "IOS_BOOT_TIMEOUT"
    IOS_RUNNER_CONNECT_TIMEOUT = "IOS_RUNNER_CONNECT_TIMEOUT"
    IOS_TOOL_MISSING = "IOS_TOOL_MISSING"
    ANDROID_BOOT_TIMEOUT = "ANDROID_BOOT_TIMEOUT"
    ANDROID_TOOL_MISSING = "ANDROID_TOOL_MISSING"
    ADB_TRANSPORT_UNAVAILABLE = "ADB_TRANSPORT_UNAVAILABLE"
    CI_RESOURCE_STARVATION_SUSPECTED = "CI_RESOURCE_STARVATION_SUSPECTED"
    TOOL_MISSING = "TOOL_MISSING"
    BOOT_COMMAND_FAILED = "BOOT_COMMAND_FAILED"
    UNKNOWN = "UNKNOWN"


@unique
class RetryEventKind(str, Enum):
    ATTEMPT_FAILED = "attempt_failed"
    RETRY_SCHEDULED = "retry_scheduled"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@unique
class RunnerAction(str, Enum):
    """Commands understood by the on-device XCUITest harness."""

    TAP = "tap"
    LONG_PRESS = "longPress"
    DRAG = "drag"
    TYPE = "type"
    SWIPE = "swipe"
    FIND_TEXT = "findText"
    LIST_TAPPABLES = "listTappables"
    SNAPSHOT = "snapshot"
    BACK = "back"
    HOME = "home"
    APP_SWITCHER = "appSwitcher"
    ALERT = "alert"
    PINCH = "pinch"
    SHUTDOWN = "shutdown"


@unique
class RunnerSessionState(str, Enum):
    """Lifecycle states for a supervised runner session."""

    ABSENT = "absent"
    BUILDING = "building"
    LAUNCHING = "launching"
    AWAITING_READY = "awaiting_ready"
    READY = "ready"
    RECOVERING = "recovering"
    STOPPING = "stopping"
    GONE = "gone"
