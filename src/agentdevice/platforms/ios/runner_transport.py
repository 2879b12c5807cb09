"""Deliver runner commands over HTTP, with a simctl relay fallback."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx

from agentdevice.config import Settings, get_settings
from agentdevice.platforms.ios.runner_protocol import RunnerCommand
from agentdevice.platforms.ios.simctl import SimctlClient
from agentdevice.resilience.deadline import Deadline
from agentdevice.resilience.diagnostics import BootEvidence, boot_failure_hint, classify_boot_failure
from agentdevice.shared.enums import BootPhase, Platform
from agentdevice.shared.exceptions import (
    CommandFailedError,
    RunnerConnectionError,
    RunnerTransportError,
    truncate_output,
)
from agentdevice.shared.models import DeviceInfo

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"
_CONNECT_TIMEOUT_S = 1.0
_MIN_REQUEST_TIMEOUT_S = 0.05


def command_url(host: str, port: int) -> str:
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"http://{host}:{port}/command"


def candidate_urls(device: DeviceInfo, port: int, *, fallback_port: int | None = None) -> list[str]:
    """Endpoints to try, in order: device tunnel first (physical devices), then loopback."""
    hosts = [LOOPBACK_HOST]
    if device.is_physical and device.tunnel_host:
        hosts.insert(0, device.tunnel_host)
    urls = [command_url(host, port) for host in hosts]
    if device.is_physical and fallback_port and fallback_port != port:
        urls.append(command_url(LOOPBACK_HOST, fallback_port))
    return urls


@dataclass(frozen=True, slots=True)
class _DirectOutcome:
    body: str | None
    last_error: str | None


def connection_failure(message: str, details: dict[str, object]) -> RunnerConnectionError:
    """Build a never-connected error carrying the classified reason and hint."""
    reason = classify_boot_failure(BootEvidence(message=message, platform=Platform.IOS, phase=BootPhase.CONNECT))
    return RunnerConnectionError(message, {**details, "reason": reason.value, "hint": boot_failure_hint(reason)})


class RunnerTransport:
    """Send one command to the runner and return the raw response body.

    Strategy: poll the HTTP endpoints until the timeout window closes; if
    the runner never accepted a connection and the target is a simulator,
    relay the same payload once through ``simctl spawn ... curl``;
    otherwise raise :class:`RunnerConnectionError`.
    """

    def __init__(self, settings: Settings | None = None, *, simctl: SimctlClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._simctl = simctl or SimctlClient(
            xcrun_bin=self._settings.xcrun_bin,
            list_timeout_ms=self._settings.ios_simctl_list_timeout_ms,
        )

    async def send(
        self,
        device: DeviceInfo,
        port: int,
        command: RunnerCommand,
        *,
        timeout_ms: int,
        fallback_port: int | None = None,
        allow_relay: bool = True,
    ) -> str:
        """Deliver ``command`` and return the response body.

        Raises:
            RunnerConnectionError: If no transport reached the runner.
            RunnerTransportError: If the runner accepted the connection and then
                dropped it or never answered.
        """
        body = command.to_json()
        urls = candidate_urls(device, port, fallback_port=fallback_port)
        outcome = await self._send_direct(urls, body, Deadline.from_timeout_ms(timeout_ms))
        if outcome.body is not None:
            return outcome.body

        if allow_relay and device.is_ios_simulator:
            logger.info("runner on port %d unreachable over http, relaying through simctl", port)
            return await self._send_via_simctl(device, port, body)

        raise connection_failure(
            "Runner did not accept connection",
            {
                "port": port,
                "fallback_port": fallback_port,
                "urls": urls,
                "timeout_ms": timeout_ms,
                "last_error": outcome.last_error,
            },
        )

    async def _send_direct(self, urls: list[str], body: str, deadline: Deadline) -> _DirectOutcome:
        last_error: str | None = None
        poll_s = self._settings.runner_poll_interval_ms / 1000
        async with httpx.AsyncClient() as client:
            while True:
                for url in urls:
                    remaining_s = max(_MIN_REQUEST_TIMEOUT_S, deadline.remaining_ms() / 1000)
                    timeout = httpx.Timeout(remaining_s, connect=min(_CONNECT_TIMEOUT_S, remaining_s))
                    try:
                        response = await client.post(
                            url,
                            content=body,
                            headers={"Content-Type": "application/json"},
                            timeout=timeout,
                        )
                        return _DirectOutcome(body=response.text, last_error=None)
                    except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
                        last_error = f"{url}: {exc!r}"
                    except httpx.TimeoutException as exc:
                        raise RunnerTransportError(
                            "Timed out waiting for runner response",
                            {"url": url, "error": repr(exc)},
                        ) from exc
                    except httpx.TransportError as exc:
                        raise RunnerTransportError(
                            "Runner connection closed: socket hang up",
                            {"url": url, "error": repr(exc)},
                        ) from exc
                if deadline.is_expired():
                    return _DirectOutcome(body=None, last_error=last_error)
                await asyncio.sleep(min(poll_s, deadline.remaining_ms() / 1000))

    async def _send_via_simctl(self, device: DeviceInfo, port: int, body: str) -> str:
        try:
            result = await self._simctl.spawn(
                device.id,
                [
                    "/usr/bin/curl",
                    "-s",
                    "-X",
                    "POST",
                    "-H",
                    "Content-Type: application/json",
                    "--data",
                    body,
                    command_url(LOOPBACK_HOST, port),
                ],
                timeout_ms=self._settings.runner_command_timeout_ms,
            )
        except CommandFailedError as exc:
            raise connection_failure(
                "Runner did not accept connection (simctl spawn)", {"port": port, "error": exc.message}
            ) from exc
        if result.exit_code != 0:
            raise connection_failure(
                "Runner did not accept connection (simctl spawn)",
                {
                    "port": port,
                    "exit_code": result.exit_code,
                    "stdout": truncate_output(result.stdout),
                    "stderr": truncate_output(result.stderr),
                },
            )
        return result.stdout
