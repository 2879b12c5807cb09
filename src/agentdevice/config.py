"""Centralised configuration via Pydantic Settings."""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings


@dataclass(frozen=True, slots=True)
class TimeoutProfile:
    """Startup / per-operation / overall budgets for one bounded flow (ms)."""

    startup_ms: int
    operation_ms: int
    total_ms: int


TIMEOUT_PROFILES: dict[str, TimeoutProfile] = {
    "ios_boot": TimeoutProfile(startup_ms=120_000, operation_ms=20_000, total_ms=120_000),
    "ios_runner_connect": TimeoutProfile(startup_ms=120_000, operation_ms=15_000, total_ms=120_000),
    "android_boot": TimeoutProfile(startup_ms=60_000, operation_ms=10_000, total_ms=60_000),
}

# Lower bounds applied to env-supplied timeouts
_TIMEOUT_FLOORS: dict[str, int] = {
    "ios_boot_timeout_ms": 5_000,
    "ios_simctl_list_timeout_ms": 1_000,
    "ios_app_launch_timeout_ms": 5_000,
    "android_boot_timeout_ms": 5_000,
    "android_boot_poll_interval_ms": 50,
    "android_adb_timeout_ms": 1_000,
    "runner_startup_timeout_ms": 1_000,
    "runner_command_timeout_ms": 1_000,
    "runner_poll_interval_ms": 10,
    "runner_ready_wait_ms": 0,
    "runner_stop_timeout_ms": 100,
    "runner_harness_timeout_s": 1,
}

_DEFAULT_RUNNER_HOME = Path.home() / ".agent-device" / "ios-runner"


def resolve_timeout(raw: Any, fallback: int, minimum: int) -> int:
    """Parse a timeout value the way the CLI environment expects.

    Unparsable values fall back to ``fallback``; parsed values are floored
    and clamped to ``minimum``.
    """
    if raw is None or raw == "":
        return fallback
    try:
        parsed = float(raw)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(parsed):
        return fallback
    return max(minimum, math.floor(parsed))


class Settings(BaseSettings):
    """Application-wide configuration loaded from environment variables."""

    model_config = {"env_prefix": "AGENT_DEVICE_", "frozen": True}

    # iOS simulator boot
    ios_boot_timeout_ms: int = TIMEOUT_PROFILES["ios_boot"].total_ms
    ios_simctl_list_timeout_ms: int = TIMEOUT_PROFILES["ios_boot"].operation_ms
    ios_app_launch_timeout_ms: int = 30_000

    # Android boot
    android_boot_timeout_ms: int = TIMEOUT_PROFILES["android_boot"].total_ms
    android_boot_poll_interval_ms: int = 1_000
    android_adb_timeout_ms: int = TIMEOUT_PROFILES["android_boot"].operation_ms

    # iOS runner (XCUITest harness)
    runner_startup_timeout_ms: int = TIMEOUT_PROFILES["ios_runner_connect"].startup_ms
    runner_command_timeout_ms: int = TIMEOUT_PROFILES["ios_runner_connect"].operation_ms
    runner_poll_interval_ms: int = 100
    runner_ready_wait_ms: int = 4_000
    runner_stop_timeout_ms: int = 5_000
    # Seconds; forwarded to the harness as its own idle timeout
    runner_harness_timeout_s: int = 300
    runner_derived_dir: str = str(_DEFAULT_RUNNER_HOME / "derived")
    runner_project_path: str = str(
        Path.cwd() / "ios-runner" / "AgentDeviceRunner" / "AgentDeviceRunner.xcodeproj"
    )
    ios_clean_derived: bool = False

    # Physical device signing overrides
    ios_team_id: str = ""
    ios_signing_identity: str = ""
    ios_provisioning_profile: str = ""

    # Diagnostics
    retry_logs: bool = False

    # Tools
    adb_bin: str = "adb"
    xcrun_bin: str = "xcrun"
    xcodebuild_bin: str = "xcodebuild"

    @field_validator(*_TIMEOUT_FLOORS, mode="before")
    @classmethod
    def _clamp_timeouts(cls, value: Any, info: Any) -> int:
        name = info.field_name
        default = cls.model_fields[name].default
        return resolve_timeout(value, default, _TIMEOUT_FLOORS[name])


def get_settings() -> Settings:
    """Build settings from the environment; tests construct their own instances."""
    return Settings()
