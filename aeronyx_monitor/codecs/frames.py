"""Pydantic models for the user-monitor websocket frames."""

from __future__ import annotations

from collections.abc import Mapping
import json
import time
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from aeronyx_monitor.errors import FrameDecodeError


class FrameModel(BaseModel):
    """Base model for user-monitor wire payloads."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    frame_type: ClassVar[str] = ""


# ----------------- Outbound -----------------


class OutboundFrame(FrameModel):
    """Frame sent by the client."""

    def encode(self) -> str:
        """Return the compact JSON text for this frame."""

        payload = {"type": self.frame_type}
        payload.update(self.model_dump(exclude_none=True))
        return json.dumps(payload, separators=(",", ":"))


class GetMessageRequest(OutboundFrame):
    """Ask the server for a signable challenge."""

    frame_type: ClassVar[str] = "get_message"

    wallet_address: str


class SignatureAuthRequest(OutboundFrame):
    """Authenticate with a signed challenge."""

    frame_type: ClassVar[str] = "auth"

    wallet_address: str
    signature: str
    message: str
    wallet_type: str


class SessionAuthRequest(OutboundFrame):
    """Authenticate with a cached session token."""

    frame_type: ClassVar[str] = "auth"

    session_token: str
    wallet_address: str


class StartMonitorRequest(OutboundFrame):
    """Begin the status update stream."""

    frame_type: ClassVar[str] = "start_monitor"


class StopMonitorRequest(OutboundFrame):
    """Stop the status update stream."""

    frame_type: ClassVar[str] = "stop_monitor"


class PingRequest(OutboundFrame):
    """Keepalive ping carrying the client time in epoch milliseconds."""

    frame_type: ClassVar[str] = "ping"

    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))


class RemoteAuthRequest(OutboundFrame):
    """Authorise remote management with a node-scoped JWT."""

    frame_type: ClassVar[str] = "remote_auth"

    jwt_token: str


class TerminalInitRequest(OutboundFrame):
    """Open a shell on a node."""

    frame_type: ClassVar[str] = "term_init"

    session_id: str
    node_reference: str
    rows: int
    cols: int
    cwd: str
    env: dict[str, str] = Field(default_factory=dict)


class TerminalInputRequest(OutboundFrame):
    """Keystrokes for an open shell."""

    frame_type: ClassVar[str] = "term_input"

    session_id: str
    data: str


class TerminalResizeRequest(OutboundFrame):
    """New window size for an open shell."""

    frame_type: ClassVar[str] = "term_resize"

    session_id: str
    rows: int
    cols: int


class TerminalCloseRequest(OutboundFrame):
    """Close a shell."""

    frame_type: ClassVar[str] = "term_close"

    session_id: str


# ----------------- Inbound -----------------


class InboundFrame(FrameModel):
    """Frame received from the server; ``raw`` keeps the decoded JSON."""

    type: str = ""
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)


class ConnectedFrame(InboundFrame):
    """Server greeting after the socket opens."""

    frame_type: ClassVar[str] = "connected"


class SignatureMessageFrame(InboundFrame):
    """Challenge to be signed by the wallet."""

    frame_type: ClassVar[str] = "signature_message"

    message: str

    @model_validator(mode="before")
    @classmethod
    def _unwrap_data(cls, value: Any) -> Any:
        """Accept the challenge nested under ``data``."""

        if isinstance(value, Mapping) and "message" not in value:
            data = value.get("data")
            if isinstance(data, Mapping) and "message" in data:
                return {**value, "message": data["message"]}
        return value


class AuthSuccessFrame(InboundFrame):
    """Authentication accepted, optionally carrying a session token."""

    frame_type: ClassVar[str] = "auth_success"

    session_token: str | None = None
    expires_in: float | None = None
    nodes: Any = None

    @model_validator(mode="before")
    @classmethod
    def _blank_token(cls, value: Any) -> Any:
        """Treat empty session tokens as absent."""

        if isinstance(value, Mapping):
            token = value.get("session_token")
            if isinstance(token, str) and not token.strip():
                return {**value, "session_token": None}
        return value


class MonitorStartedFrame(InboundFrame):
    """Server confirmed the update stream."""

    frame_type: ClassVar[str] = "monitor_started"


class MonitorStoppedFrame(InboundFrame):
    """Server confirmed the update stream stopped."""

    frame_type: ClassVar[str] = "monitor_stopped"


class StatusUpdateFrame(InboundFrame):
    """Node status update; ``nodes`` may also arrive nested under ``data``."""

    frame_type: ClassVar[str] = "status_update"

    nodes: Any = Field(default_factory=list)
    summary: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _unwrap_data(cls, value: Any) -> Any:
        """Lift ``data.nodes``/``data.summary`` to the top level."""

        if isinstance(value, Mapping) and value.get("nodes") is None:
            data = value.get("data")
            if isinstance(data, Mapping):
                return {
                    **value,
                    "nodes": data.get("nodes") or [],
                    "summary": data.get("summary"),
                }
        return value


class PongFrame(InboundFrame):
    """Keepalive acknowledgement."""

    frame_type: ClassVar[str] = "pong"


class ErrorFrame(InboundFrame):
    """Explicit server error."""

    frame_type: ClassVar[str] = "error"

    code: str | None = None
    message: str = ""
    request_id: str | None = None
    node_reference: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_fields(cls, value: Any) -> Any:
        """Stringify codes and fall back to ``error`` for the message text."""

        if not isinstance(value, Mapping):
            return value
        data = dict(value)
        if data.get("code") is not None:
            data["code"] = str(data["code"])
        message = data.get("message")
        if not message and isinstance(data.get("error"), str):
            message = data["error"]
        data["message"] = "" if message is None else str(message)
        return data


class RemoteAuthSuccessFrame(InboundFrame):
    """Remote management authorised for the socket."""

    frame_type: ClassVar[str] = "remote_auth_success"

    node_reference: str | None = None


class CommandResponseFrame(InboundFrame):
    """Reply to a correlated request."""

    frame_type: ClassVar[str] = "remote_command_response"

    request_id: str
    success: bool = False
    result: Any = None
    error: Any = None

    @property
    def error_code(self) -> str | None:
        """Return the error code carried by a failed response."""

        if isinstance(self.error, Mapping):
            code = self.error.get("code")
            return None if code is None else str(code)
        code = self.raw.get("code")
        return None if code is None else str(code)

    @property
    def error_message(self) -> str:
        """Return the human-readable failure text."""

        if isinstance(self.error, Mapping):
            return str(self.error.get("message") or "")
        if isinstance(self.error, str):
            return self.error
        return str(self.raw.get("message") or "")


class TerminalFrame(InboundFrame):
    """Frame addressed to one terminal session."""

    session_id: str | None = None


class TerminalReadyFrame(TerminalFrame):
    """The node opened the shell."""

    frame_type: ClassVar[str] = "term_ready"


class TerminalOutputFrame(TerminalFrame):
    """Shell output."""

    frame_type: ClassVar[str] = "term_output"

    data: str | None = None


class TerminalErrorFrame(TerminalFrame):
    """The shell failed or could not be opened."""

    frame_type: ClassVar[str] = "term_error"

    error: str = ""

    @model_validator(mode="before")
    @classmethod
    def _error_text(cls, value: Any) -> Any:
        """Fall back to ``message`` when ``error`` is absent."""

        if isinstance(value, Mapping) and not value.get("error"):
            message = value.get("message")
            return {**value, "error": "" if message is None else str(message)}
        return value


class TerminalClosedFrame(TerminalFrame):
    """The node closed the shell."""

    frame_type: ClassVar[str] = "term_closed"


INBOUND_MODELS: dict[str, type[InboundFrame]] = {
    model.frame_type: model
    for model in (
        ConnectedFrame,
        SignatureMessageFrame,
        AuthSuccessFrame,
        MonitorStartedFrame,
        MonitorStoppedFrame,
        StatusUpdateFrame,
        PongFrame,
        ErrorFrame,
        RemoteAuthSuccessFrame,
        CommandResponseFrame,
        TerminalReadyFrame,
        TerminalOutputFrame,
        TerminalErrorFrame,
        TerminalClosedFrame,
    )
}


def decode_frame(text: str | bytes) -> InboundFrame:
    """Return the typed model for a JSON text frame.

    Unknown frame types decode to a plain :class:`InboundFrame`, except that
    any frame carrying a ``request_id`` and a ``success`` flag is treated as a
    correlated response. Invalid JSON, non-object payloads and payloads that
    fail validation raise :class:`FrameDecodeError`.
    """

    if isinstance(text, bytes):
        text = text.decode("utf-8", "ignore")
    try:
        data = json.loads(text)
    except ValueError as err:
        raise FrameDecodeError(f"invalid JSON frame: {err}") from err
    if not isinstance(data, dict):
        raise FrameDecodeError(f"unexpected frame shape: {type(data).__name__}")

    frame_type = str(data.get("type") or "")
    model = INBOUND_MODELS.get(frame_type)
    if model is None and "request_id" in data and "success" in data:
        model = CommandResponseFrame
    if model is None:
        model = InboundFrame
    try:
        return model.model_validate({**data, "type": frame_type, "raw": data})
    except ValidationError as err:
        raise FrameDecodeError(
            f"invalid {frame_type or 'untyped'} frame: {err.error_count()} errors"
        ) from err


__all__ = [
    "AuthSuccessFrame",
    "CommandResponseFrame",
    "ConnectedFrame",
    "ErrorFrame",
    "GetMessageRequest",
    "InboundFrame",
    "MonitorStartedFrame",
    "MonitorStoppedFrame",
    "OutboundFrame",
    "PingRequest",
    "PongFrame",
    "RemoteAuthRequest",
    "RemoteAuthSuccessFrame",
    "SessionAuthRequest",
    "SignatureAuthRequest",
    "SignatureMessageFrame",
    "StartMonitorRequest",
    "StatusUpdateFrame",
    "StopMonitorRequest",
    "TerminalCloseRequest",
    "TerminalClosedFrame",
    "TerminalErrorFrame",
    "TerminalFrame",
    "TerminalInitRequest",
    "TerminalInputRequest",
    "TerminalOutputFrame",
    "TerminalReadyFrame",
    "TerminalResizeRequest",
    "decode_frame",
]
