"""Tests for the async subprocess helpers."""

from __future__ import annotations

import asyncio
import signal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agentdevice.shared.exceptions import CommandFailedError, ToolMissingError
from agentdevice.shared.exec import BackgroundProcess, run_cmd, run_cmd_background, run_cmd_streaming


def _stream(*chunks: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    for chunk in chunks:
        reader.feed_data(chunk)
    reader.feed_eof()
    return reader


def _streaming_proc(stdout: list[bytes], stderr: list[bytes], returncode: int = 0) -> MagicMock:
    proc = MagicMock()
    proc.pid = 4242
    proc.returncode = None
    proc.stdout = _stream(*stdout)
    proc.stderr = _stream(*stderr)
    proc.wait = AsyncMock(return_value=returncode)
    return proc


class TestRunCmd:
    async def test_success(self, make_proc) -> None:
        proc = make_proc(b"hello\n", b"")

        with patch("asyncio.create_subprocess_exec", return_value=proc) as mock_exec:
            result = await run_cmd("echo", ["hello"])

        assert result.stdout == "hello\n"
        assert result.exit_code == 0
        assert mock_exec.call_args.args == ("echo", "hello")

    async def test_non_zero_exit_raises(self, make_proc) -> None:
        proc = make_proc(b"", b"error: device offline", returncode=1)

        with patch("asyncio.create_subprocess_exec", return_value=proc):
            with pytest.raises(CommandFailedError, match="exited with code 1") as exc_info:
                await run_cmd("adb", ["shell", "getprop"])

        assert exc_info.value.details["stderr"] == "error: device offline"
        assert exc_info.value.details["exit_code"] == 1

    async def test_allow_failure_returns_result(self, make_proc) -> None:
        proc = make_proc(b"", b"nope", returncode=2)

        with patch("asyncio.create_subprocess_exec", return_value=proc):
            result = await run_cmd("xcrun", ["simctl", "boot", "x"], allow_failure=True)

        assert result.exit_code == 2
        assert result.stderr == "nope"

    async def test_binary_not_found(self) -> None:
        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError("adb")):
            with pytest.raises(ToolMissingError, match="not found"):
                await run_cmd("adb", ["devices"])

    async def test_timeout_kills_process(self, make_proc) -> None:
        proc = make_proc()
        proc.communicate.side_effect = asyncio.TimeoutError
        proc.kill = MagicMock()

        with patch("asyncio.create_subprocess_exec", return_value=proc):
            with pytest.raises(CommandFailedError, match="timed out after 50ms"):
                await run_cmd("xcrun", ["simctl", "bootstatus"], timeout_ms=50)

        proc.kill.assert_called_once()

    async def test_stdin_is_forwarded(self, make_proc) -> None:
        proc = make_proc(b"ok", b"")

        with patch("asyncio.create_subprocess_exec", return_value=proc):
            await run_cmd("cat", [], stdin="payload")

        proc.communicate.assert_awaited_once_with(b"payload")


class TestRunCmdBackground:
    async def test_streams_chunks_to_callbacks(self) -> None:
        proc = _streaming_proc([b"AGENT_DEVICE_", b"RUNNER_LISTENER_READY\n"], [b"warn\n"])
        seen_out: list[str] = []
        seen_err: list[str] = []

        async def on_out(chunk: str) -> None:
            seen_out.append(chunk)

        async def on_err(chunk: str) -> None:
            seen_err.append(chunk)

        with patch("asyncio.create_subprocess_exec", return_value=proc) as mock_exec:
            background = await run_cmd_background("xcodebuild", ["test"], on_stdout=on_out, on_stderr=on_err)
            result = await background.wait

        assert mock_exec.call_args.kwargs["start_new_session"] is True
        assert "".join(seen_out) == "AGENT_DEVICE_RUNNER_LISTENER_READY\n"
        assert seen_err == ["warn\n"]
        assert result.stdout == "AGENT_DEVICE_RUNNER_LISTENER_READY\n"
        assert result.exit_code == 0

    async def test_split_utf8_sequence_is_decoded_once(self) -> None:
        encoded = "✓ ready".encode()
        proc = _streaming_proc([encoded[:1], encoded[1:]], [])

        with patch("asyncio.create_subprocess_exec", return_value=proc):
            background = await run_cmd_background("xcodebuild", ["test"])
            result = await background.wait

        assert result.stdout == "✓ ready"

    async def test_binary_not_found(self) -> None:
        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError("xcodebuild")):
            with pytest.raises(ToolMissingError):
                await run_cmd_background("xcodebuild", [])

    async def test_streaming_raises_on_failure(self) -> None:
        proc = _streaming_proc([b"building\n"], [b"** BUILD FAILED **\n"], returncode=65)

        with patch("asyncio.create_subprocess_exec", return_value=proc):
            with pytest.raises(CommandFailedError, match="exited with code 65") as exc_info:
                await run_cmd_streaming("xcodebuild", ["build-for-testing"])

        assert "BUILD FAILED" in exc_info.value.details["stderr"]


class TestBackgroundProcess:
    def _handle(self) -> BackgroundProcess:
        proc = MagicMock()
        proc.pid = 777
        return BackgroundProcess(process=proc, wait=MagicMock())

    def test_terminate_signals_process_group(self) -> None:
        handle = self._handle()

        with patch("agentdevice.shared.exec.os.killpg") as killpg:
            assert handle.terminate() is True

        killpg.assert_called_once_with(777, signal.SIGTERM)

    def test_kill_on_exited_process(self) -> None:
        handle = self._handle()

        with patch("agentdevice.shared.exec.os.killpg", side_effect=ProcessLookupError):
            assert handle.kill() is False

    def test_permission_error_falls_back_to_process(self) -> None:
        handle = self._handle()

        with patch("agentdevice.shared.exec.os.killpg", side_effect=PermissionError):
            assert handle.kill() is True

        handle.process.send_signal.assert_called_once_with(signal.SIGKILL)
