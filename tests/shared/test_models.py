"""Tests for frozen Pydantic domain models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from agentdevice.shared.enums import DeviceKind, Platform, RetryEventKind
from agentdevice.shared.models import DeviceInfo, RetryTelemetryEvent


class TestDeviceInfo:
    def test_simulator_flags(self, simulator: DeviceInfo) -> None:
        assert simulator.is_ios_simulator
        assert not simulator.is_physical
        assert simulator.booted is None

    def test_physical_device_flags(self, ios_device: DeviceInfo) -> None:
        assert ios_device.is_physical
        assert not ios_device.is_ios_simulator

    def test_android_emulator_is_not_ios_simulator(self, emulator: DeviceInfo) -> None:
        assert not emulator.is_ios_simulator
        assert not emulator.is_physical

    def test_frozen(self, simulator: DeviceInfo) -> None:
        with pytest.raises(ValidationError):
            simulator.id = "other"  # type: ignore[misc]

    def test_rejects_unknown_platform(self) -> None:
        with pytest.raises(ValidationError):
            DeviceInfo(platform="windows", id="x", name="x", kind=DeviceKind.DEVICE)  # type: ignore[arg-type]

    def test_accepts_string_enums(self) -> None:
        device = DeviceInfo(platform="android", id="emulator-5556", name="x", kind="emulator")
        assert device.platform == Platform.ANDROID
        assert device.kind == DeviceKind.EMULATOR


class TestRetryTelemetryEvent:
    def test_json_omits_unset_fields(self) -> None:
        event = RetryTelemetryEvent(event=RetryEventKind.SUCCEEDED, attempt=1, max_attempts=3)
        assert event.model_dump_json(exclude_none=True) == '{"event":"succeeded","attempt":1,"max_attempts":3}'
