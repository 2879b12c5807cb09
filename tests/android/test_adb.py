"""Tests for AdbClient."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from agentdevice.platforms.android.adb import AdbClient, list_android_devices
from agentdevice.shared.enums import DeviceKind, Platform
from agentdevice.shared.exceptions import CommandFailedError, ToolMissingError


@pytest.fixture
def adb() -> AdbClient:
    return AdbClient("emulator-5554", adb_bin="adb", timeout_ms=5_000)


class TestAdbClient:
    async def test_shell_success(self, adb: AdbClient, make_proc) -> None:
        with patch("asyncio.create_subprocess_exec", return_value=make_proc(b"output line\n")) as mock_exec:
            result = await adb.shell("ls /sdcard")

        assert result == "output line"
        assert mock_exec.call_args.args == ("adb", "-s", "emulator-5554", "shell", "ls /sdcard")

    async def test_get_prop(self, adb: AdbClient, make_proc) -> None:
        with patch("asyncio.create_subprocess_exec", return_value=make_proc(b"1\r\n")) as mock_exec:
            value = await adb.get_prop("sys.boot_completed")

        assert value == "1"
        assert mock_exec.call_args.args[-1] == "getprop sys.boot_completed"

    async def test_shell_failure(self, adb: AdbClient, make_proc) -> None:
        proc = make_proc(b"", b"error: device offline", returncode=1)

        with patch("asyncio.create_subprocess_exec", return_value=proc):
            with pytest.raises(CommandFailedError, match="exited with code 1"):
                await adb.shell("getprop sys.boot_completed")

    async def test_binary_not_found(self, adb: AdbClient) -> None:
        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError("adb")):
            with pytest.raises(ToolMissingError, match="not found"):
                await adb.shell("ls")

    async def test_is_booted_tolerates_failure(self, adb: AdbClient, make_proc) -> None:
        with patch("asyncio.create_subprocess_exec", return_value=make_proc(b"", b"offline", returncode=1)):
            assert await adb.is_booted() is False

    async def test_avd_name(self, adb: AdbClient, make_proc) -> None:
        with patch("asyncio.create_subprocess_exec", return_value=make_proc(b"Pixel_7_API_34\r\nOK\r\n")):
            assert await adb.avd_name() == "Pixel_7_API_34"


class TestListAndroidDevices:
    async def test_parses_ready_devices(self, make_proc) -> None:
        listing = (
            b"List of devices attached\n"
            b"emulator-5554          device product:sdk_gphone64 model:sdk_gphone64_arm64 transport_id:1\n"
            b"R58M123ABC             device usb:1-1 product:a51 model:SM_A515F transport_id:2\n"
            b"emulator-5556          offline transport_id:3\n"
            b"ZY22AAAA               unauthorized usb:1-2 transport_id:4\n"
        )
        responses = [
            make_proc(listing),
            make_proc(b"Pixel_7_API_34\nOK\n"),  # emu avd name
            make_proc(b"1\n"),  # emulator boot prop
            make_proc(b"0\n"),  # physical device boot prop
        ]

        with patch("asyncio.create_subprocess_exec", side_effect=responses):
            devices = await list_android_devices()

        assert [d.id for d in devices] == ["emulator-5554", "R58M123ABC"]
        assert devices[0].kind == DeviceKind.EMULATOR
        assert devices[0].name == "Pixel 7 API 34"
        assert devices[0].booted is True
        assert devices[1].kind == DeviceKind.DEVICE
        assert devices[1].name == "SM A515F"
        assert devices[1].booted is False
        assert all(d.platform == Platform.ANDROID for d in devices)
