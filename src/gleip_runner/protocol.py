"""
Wire protocol models.

This module defines Pydantic models for every message exchanged with the
control plane:
- Primary channel: hello, result (out); execute, browser:start, browser:stop (in)
- Browser channel: browser:hello, browser:ack, browser:frame, browser:traffic,
  browser:closed (out); browser:input (in)
- Input actions replayed against a browser page

All messages are JSON text frames with camelCase keys and a ``type`` tag.
"""

import json
import logging
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from .errors import MessageDecodeError

logger = logging.getLogger(__name__)


class WireModel(BaseModel):
    """Base for wire messages: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        """Serialize for sending; unset optional fields are omitted."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


# ============================================================================
# Primary channel
# ============================================================================


class Hello(WireModel):
    type: Literal["hello"] = "hello"
    runner_id: str
    token: str
    version: str
    capabilities: list[str]


class HttpRequest(WireModel):
    method: str
    url: str
    headers: Optional[dict[str, str]] = None
    body: Optional[str] = None


class HttpOptions(WireModel):
    """Per-job HTTP execution policy. Unset fields take executor defaults."""

    http_version: Literal["1.0", "1.1", "2"] = "1.1"
    follow_redirects: bool = True
    max_redirects: int = Field(default=10, ge=0)
    keep_alive: Optional[bool] = None
    reject_unauthorized: bool = True


class Execute(WireModel):
    type: Literal["execute"] = "execute"
    job_id: str
    kind: str = "http"
    request: HttpRequest
    options: Optional[HttpOptions] = None
    timeout_ms: Optional[int] = Field(default=None, gt=0)


class HttpResponsePayload(WireModel):
    status: int
    headers: dict[str, str]
    body: str
    time_ms: int


class Result(WireModel):
    type: Literal["result"] = "result"
    job_id: str
    status: Literal["success", "error"]
    response: Optional[HttpResponsePayload] = None
    error: Optional[str] = None


class Viewport(WireModel):
    width: int = Field(default=1280, gt=0)
    height: int = Field(default=800, gt=0)


class BrowserStartOptions(WireModel):
    url: Optional[str] = None
    viewport: Optional[Viewport] = None
    headless: Optional[bool] = None


class BrowserStart(WireModel):
    type: Literal["browser:start"] = "browser:start"
    session_id: str
    options: Optional[BrowserStartOptions] = None


class BrowserStop(WireModel):
    type: Literal["browser:stop"] = "browser:stop"
    session_id: str


ServerMessage = Union[Execute, BrowserStart, BrowserStop]


# ============================================================================
# Browser channel
# ============================================================================


class BrowserHello(WireModel):
    type: Literal["browser:hello"] = "browser:hello"
    runner_id: str
    token: str
    session_id: str


class BrowserAck(WireModel):
    type: Literal["browser:ack"] = "browser:ack"
    session_id: str
    status: Literal["started", "stopped", "error"]
    error: Optional[str] = None


class BrowserFrame(WireModel):
    type: Literal["browser:frame"] = "browser:frame"
    session_id: str
    mime: Literal["image/jpeg"] = "image/jpeg"
    data: str
    """Base64-encoded JPEG."""


class TrafficRequest(WireModel):
    method: str
    url: str
    headers: dict[str, str] = {}
    body: Optional[str] = None


class TrafficResponse(WireModel):
    status: int
    status_text: str = ""
    headers: dict[str, str] = {}
    body: Optional[str] = None
    time_ms: int = 0


class BrowserTraffic(WireModel):
    type: Literal["browser:traffic"] = "browser:traffic"
    session_id: str
    request: TrafficRequest
    response: Optional[TrafficResponse] = None
    error: Optional[str] = None
    timed_out: Optional[bool] = None


class BrowserClosed(WireModel):
    type: Literal["browser:closed"] = "browser:closed"
    session_id: str


class BrowserInput(WireModel):
    type: Literal["browser:input"] = "browser:input"
    session_id: str
    action: Optional[dict[str, Any]] = None
    """Raw action; decoded with parse_input_action()."""


CaptureEvent = Union[BrowserFrame, BrowserTraffic]


# ============================================================================
# Input actions
# ============================================================================


class KeyModifiers(WireModel):
    alt: bool = False
    ctrl: bool = False
    meta: bool = False
    shift: bool = False


class ClickAction(WireModel):
    kind: Literal["click"] = "click"
    x: float
    y: float
    button: Literal["left", "right", "middle"] = "left"


class DoubleClickAction(WireModel):
    kind: Literal["dblclick"] = "dblclick"
    x: float
    y: float


class MoveAction(WireModel):
    kind: Literal["move"] = "move"
    x: float
    y: float


class ScrollAction(WireModel):
    kind: Literal["scroll"] = "scroll"
    x: float
    y: float
    delta_x: float = 0
    delta_y: float = 0


class KeyDownAction(WireModel):
    kind: Literal["keydown"] = "keydown"
    key: str
    modifiers: Optional[KeyModifiers] = None


class KeyUpAction(WireModel):
    kind: Literal["keyup"] = "keyup"
    key: str
    modifiers: Optional[KeyModifiers] = None


class TypeAction(WireModel):
    kind: Literal["type"] = "type"
    text: str


class NavigateAction(WireModel):
    kind: Literal["navigate"] = "navigate"
    url: str


class RefreshAction(WireModel):
    kind: Literal["refresh"] = "refresh"


InputAction = Annotated[
    Union[
        ClickAction,
        DoubleClickAction,
        MoveAction,
        ScrollAction,
        KeyDownAction,
        KeyUpAction,
        TypeAction,
        NavigateAction,
        RefreshAction,
    ],
    Field(discriminator="kind"),
]

INPUT_KINDS = frozenset(
    ("click", "dblclick", "move", "scroll", "keydown", "keyup", "type", "navigate", "refresh")
)

_input_adapter = TypeAdapter(InputAction)


def parse_input_action(data: Any) -> Optional[InputAction]:
    """
    Decode a raw input action.

    Returns:
        The typed action, or None for an unknown ``kind``.

    Raises:
        MessageDecodeError: known kind with missing or invalid parameters
    """
    if not isinstance(data, dict):
        raise MessageDecodeError("Input action must be an object")

    if data.get("kind") not in INPUT_KINDS:
        logger.debug(f"Ignoring unknown input action kind: {data.get('kind')!r}")
        return None

    try:
        return _input_adapter.validate_python(data)
    except ValidationError as e:
        raise MessageDecodeError(f"Invalid {data['kind']} action: {e.error_count()} error(s)") from e


# ============================================================================
# Decoding
# ============================================================================

SERVER_MESSAGES: dict[str, type[WireModel]] = {
    "execute": Execute,
    "browser:start": BrowserStart,
    "browser:stop": BrowserStop,
}

BROWSER_MESSAGES: dict[str, type[WireModel]] = {
    "browser:input": BrowserInput,
}


def decode_message(
    raw: Union[str, bytes],
    registry: dict[str, type[WireModel]],
) -> Optional[WireModel]:
    """
    Decode an inbound frame against a registry of message types.

    Args:
        raw: Frame payload (JSON text)
        registry: Mapping of ``type`` tag to model

    Returns:
        The decoded message, or None when the type is not recognized

    Raises:
        MessageDecodeError: frame is not JSON, has no type, or fails validation
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MessageDecodeError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise MessageDecodeError("Message has no type")

    message_type = data["type"]
    model = registry.get(message_type)
    if model is None:
        logger.warning(f"Ignoring unrecognized message type: {message_type}")
        return None

    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MessageDecodeError(
            f"Invalid {message_type} message: {e.error_count()} validation error(s)"
        ) from e
