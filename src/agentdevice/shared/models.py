"""Frozen Pydantic domain models shared by all modules."""

from __future__ import annotations

from pydantic import BaseModel

from agentdevice.shared.enums import DeviceKind, Platform, RetryEventKind


class DeviceInfo(BaseModel):
    """A simulator, emulator or physical device the harness can drive."""

    model_config = {"frozen": True}

    platform: Platform
    id: str
    name: str
    kind: DeviceKind
    booted: bool | None = None
    # CoreDevice tunnel address for physical iOS devices, tried before loopback
    tunnel_host: str | None = None

    @property
    def is_ios_simulator(self) -> bool:
        return self.platform == Platform.IOS and self.kind == DeviceKind.SIMULATOR

    @property
    def is_physical(self) -> bool:
        return self.kind == DeviceKind.DEVICE


class RetryTelemetryEvent(BaseModel):
    """One structured event emitted by the retry engine."""

    model_config = {"frozen": True}

    event: RetryEventKind
    attempt: int
    max_attempts: int
    phase: str | None = None
    delay_ms: int | None = None
    elapsed_ms: int | None = None
    remaining_ms: int | None = None
    reason: str | None = None
