"""Build and prepare the XCUITest runner's ``.xctestrun`` artifact."""

from __future__ import annotations

import asyncio
import json
import logging
import plistlib
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiofiles  # type: ignore[import-untyped]

from agentdevice.config import Settings, get_settings
from agentdevice.shared.exceptions import RunnerBuildError, truncate_output
from agentdevice.shared.exec import ChunkCallback, run_cmd_streaming
from agentdevice.shared.models import DeviceInfo

logger = logging.getLogger(__name__)

RUNNER_SCHEME = "AgentDeviceRunner"
RUNNER_TEST_IDENTIFIER = "AgentDeviceRunnerUITests/RunnerTests/testCommand"

# Per-session copies share the build directory; never reuse them as the base artifact
_SESSION_COPY_MARKER = f"{RUNNER_SCHEME}.env."

_ENV_TABLES = (
    "EnvironmentVariables",
    "UITestEnvironmentVariables",
    "UITargetAppEnvironmentVariables",
    "TestingEnvironmentVariables",
)

_SIGNING_FAILURE_PHRASES = (
    "no signing certificate",
    "code signing is required",
    "requires a development team",
    "provisioning profile",
    "no profiles for",
    "no account for team",
    "signing certificate",
)

_SIGNING_HINT = (
    "Runner code signing failed. Set AGENT_DEVICE_IOS_TEAM_ID (and optionally "
    "AGENT_DEVICE_IOS_SIGNING_IDENTITY / AGENT_DEVICE_IOS_PROVISIONING_PROFILE), "
    "or open the runner project in Xcode once to create a provisioning profile."
)
_BUILD_HINT = (
    "xcodebuild could not build the runner. Rerun with --verbose to see the full build log, "
    "or set AGENT_DEVICE_IOS_CLEAN_DERIVED=1 to discard a stale build."
)


@dataclass(frozen=True, slots=True)
class PreparedRunArtifact:
    """Session-private copy of the run descriptor plus its JSON companion."""

    xctestrun_path: Path
    json_path: Path


def resolve_runner_destination(device: DeviceInfo) -> str:
    if device.is_physical:
        return f"platform=iOS,id={device.id}"
    return f"platform=iOS Simulator,id={device.id}"


def resolve_runner_build_destination(device: DeviceInfo) -> str:
    if device.is_physical:
        return "generic/platform=iOS"
    return resolve_runner_destination(device)


def resolve_runner_signing_build_settings(settings: Settings, for_device: bool = False) -> list[str]:
    """Extra ``KEY=VALUE`` build settings for code signing."""
    build_settings: list[str] = []
    if for_device:
        build_settings.append("CODE_SIGN_STYLE=Automatic")
    if settings.ios_team_id:
        build_settings.append(f"DEVELOPMENT_TEAM={settings.ios_team_id}")
    if settings.ios_signing_identity:
        build_settings.append(f"CODE_SIGN_IDENTITY={settings.ios_signing_identity}")
    if settings.ios_provisioning_profile:
        build_settings.append(f"PROVISIONING_PROFILE_SPECIFIER={settings.ios_provisioning_profile}")
    return build_settings


def build_failure_hint(output: str) -> str:
    lowered = output.lower()
    if any(phrase in lowered for phrase in _SIGNING_FAILURE_PHRASES):
        return _SIGNING_HINT
    return _BUILD_HINT


def find_xctestrun(root: Path) -> Path | None:
    """Return the most recently modified base ``.xctestrun`` under ``root``."""
    if not root.is_dir():
        return None
    candidates: list[tuple[float, Path]] = []
    for path in root.rglob("*.xctestrun"):
        if path.name.startswith(_SESSION_COPY_MARKER) or not path.is_file():
            continue
        try:
            candidates.append((path.stat().st_mtime, path))
        except OSError:
            continue
    if not candidates:
        return None
    return max(candidates, key=lambda item: item[0])[1]


def inject_environment(descriptor: dict[str, Any], env_vars: dict[str, str]) -> dict[str, Any]:
    """Merge ``env_vars`` into every test target's environment tables (in place)."""

    def apply(target: dict[str, Any]) -> None:
        for table in _ENV_TABLES:
            current = target.get(table)
            target[table] = {**(current if isinstance(current, dict) else {}), **env_vars}

    configs = descriptor.get("TestConfigurations")
    if isinstance(configs, list):
        for config in configs:
            targets = config.get("TestTargets") if isinstance(config, dict) else None
            if not isinstance(targets, list):
                continue
            for target in targets:
                if isinstance(target, dict):
                    apply(target)

    # Legacy (format version 1) descriptors keep targets at the top level
    for value in descriptor.values():
        if isinstance(value, dict) and "TestBundlePath" in value:
            apply(value)
    return descriptor


class RunnerArtifactBuilder:
    """Locates a cached runner build, building it on demand.

    Builds are cached per device kind under ``runner_derived_dir``.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def derived_dir(self, device: DeviceInfo) -> Path:
        return Path(self._settings.runner_derived_dir).expanduser() / device.kind.value

    async def ensure_xctestrun(
        self,
        device: DeviceInfo,
        *,
        clean: bool | None = None,
        on_output: ChunkCallback | None = None,
    ) -> Path:
        """Return a usable ``.xctestrun``, building the runner if needed.

        Raises:
            ToolMissingError: If xcodebuild is not installed.
            RunnerBuildError: If the project is missing, the build fails, or
                no run artifact is produced.
        """
        derived = self.derived_dir(device)
        if self._settings.ios_clean_derived if clean is None else clean:
            logger.info("cleaning runner build cache %s", derived)
            await asyncio.to_thread(shutil.rmtree, derived, ignore_errors=True)

        existing = find_xctestrun(derived)
        if existing is not None:
            logger.debug("reusing runner artifact %s", existing)
            return existing

        project = Path(self._settings.runner_project_path).expanduser()
        if not project.exists():
            raise RunnerBuildError("iOS runner project not found", {"project_path": str(project)})

        args = [
            "build-for-testing",
            "-project",
            str(project),
            "-scheme",
            RUNNER_SCHEME,
            "-parallel-testing-enabled",
            "NO",
            "-maximum-concurrent-test-simulator-destinations",
            "1",
            "-destination",
            resolve_runner_build_destination(device),
            "-derivedDataPath",
            str(derived),
            *resolve_runner_signing_build_settings(self._settings, for_device=device.is_physical),
        ]
        logger.info("building iOS runner for %s (%s)", device.id, device.kind.value)
        result = await run_cmd_streaming(
            self._settings.xcodebuild_bin,
            args,
            allow_failure=True,
            on_stdout=on_output,
            on_stderr=on_output,
        )
        if result.exit_code != 0:
            raise RunnerBuildError(
                "xcodebuild build-for-testing failed",
                {
                    "exit_code": result.exit_code,
                    "stdout": truncate_output(result.stdout),
                    "stderr": truncate_output(result.stderr),
                    "hint": build_failure_hint(result.combined),
                },
            )

        built = find_xctestrun(derived)
        if built is None:
            raise RunnerBuildError("Failed to locate .xctestrun after build", {"derived_dir": str(derived)})
        return built

    async def prepare_with_env(
        self,
        xctestrun: Path,
        env_vars: dict[str, str],
        suffix: str,
    ) -> PreparedRunArtifact:
        """Write a session copy of ``xctestrun`` with ``env_vars`` injected.

        Raises:
            RunnerBuildError: If the descriptor cannot be read or written.
        """
        safe_suffix = re.sub(r"[^a-zA-Z0-9._-]", "_", suffix)
        directory = xctestrun.parent
        xctestrun_path = directory / f"{_SESSION_COPY_MARKER}{safe_suffix}.xctestrun"
        json_path = directory / f"{_SESSION_COPY_MARKER}{safe_suffix}.json"

        try:
            async with aiofiles.open(xctestrun, "rb") as f:
                raw = await f.read()
            descriptor = plistlib.loads(raw)
        except (OSError, plistlib.InvalidFileException, ValueError) as exc:
            raise RunnerBuildError(
                "Failed to read xctestrun plist", {"xctestrun_path": str(xctestrun), "error": str(exc)}
            ) from exc
        if not isinstance(descriptor, dict):
            raise RunnerBuildError("Unexpected xctestrun layout", {"xctestrun_path": str(xctestrun)})

        inject_environment(descriptor, env_vars)
        try:
            async with aiofiles.open(json_path, "w") as f:
                await f.write(json.dumps(descriptor, indent=2, default=str))
            async with aiofiles.open(xctestrun_path, "wb") as f:
                await f.write(plistlib.dumps(descriptor, fmt=plistlib.FMT_XML))
        except OSError as exc:
            json_path.unlink(missing_ok=True)
            raise RunnerBuildError(
                "Failed to write xctestrun plist", {"xctestrun_path": str(xctestrun_path), "error": str(exc)}
            ) from exc

        logger.debug("prepared runner artifact %s", xctestrun_path)
        return PreparedRunArtifact(xctestrun_path=xctestrun_path, json_path=json_path)
