"""JSON command protocol spoken with the XCUITest runner."""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, model_validator
from pydantic.alias_generators import to_camel

from agentdevice.shared.enums import RunnerAction
from agentdevice.shared.exceptions import RunnerCommandError, RunnerProtocolError, truncate_output

# Never change device state; safe to resend after a dropped connection
READ_ONLY_ACTIONS = frozenset({RunnerAction.SNAPSHOT, RunnerAction.FIND_TEXT, RunnerAction.LIST_TAPPABLES})


class RunnerCommand(BaseModel):
    """One request body for ``POST /command``."""

    model_config = {"frozen": True, "alias_generator": to_camel, "populate_by_name": True}

    command: RunnerAction
    app_bundle_id: str | None = None
    text: str | None = None
    action: Literal["get", "accept", "dismiss"] | None = None
    x: float | None = None
    y: float | None = None
    x2: float | None = None
    y2: float | None = None
    duration_ms: int | None = None
    direction: Literal["up", "down", "left", "right"] | None = None
    scale: float | None = None
    interactive_only: bool | None = None
    compact: bool | None = None
    depth: int | None = None
    scope: str | None = None
    raw: bool | None = None

    @model_validator(mode="after")
    def _check_required_fields(self) -> RunnerCommand:
        has_point = self.x is not None and self.y is not None
        command = self.command
        if command == RunnerAction.TAP and self.text is None and not has_point:
            raise ValueError("tap requires text or x/y")
        if command == RunnerAction.LONG_PRESS and not has_point:
            raise ValueError("longPress requires x/y")
        if command == RunnerAction.DRAG and (not has_point or self.x2 is None or self.y2 is None):
            raise ValueError("drag requires x/y and x2/y2")
        if command in (RunnerAction.TYPE, RunnerAction.FIND_TEXT) and self.text is None:
            raise ValueError(f"{command.value} requires text")
        if command == RunnerAction.SWIPE and self.direction is None:
            raise ValueError("swipe requires direction")
        if command == RunnerAction.PINCH and (self.scale is None or self.scale <= 0):
            raise ValueError("pinch requires a positive scale")
        return self

    @property
    def is_read_only(self) -> bool:
        if self.command == RunnerAction.ALERT:
            return self.action in (None, "get")
        return self.command in READ_ONLY_ACTIONS

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), separators=(",", ":"))


SHUTDOWN_COMMAND = RunnerCommand(command=RunnerAction.SHUTDOWN)


def parse_runner_response(text: str) -> dict[str, Any]:
    """Unwrap ``{"ok": true, "data": {...}}``.

    Raises:
        RunnerProtocolError: If the body is not JSON or not a protocol envelope.
        RunnerCommandError: If the runner reported ``ok: false``.
    """
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        raise RunnerProtocolError("Invalid runner response", {"text": truncate_output(text)}) from exc

    if not isinstance(payload, dict) or not isinstance(payload.get("ok"), bool):
        raise RunnerProtocolError("Unexpected runner response shape", {"text": truncate_output(text)})

    if not payload["ok"]:
        error = payload.get("error")
        message = error.get("message") if isinstance(error, dict) else None
        raise RunnerCommandError(message or "Runner error", {"runner": payload})

    data = payload.get("data")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise RunnerProtocolError("Runner response data is not an object", {"text": truncate_output(text)})
    return data
