"""Wire protocol between clients and the gateway.

One JSON object per WebSocket text frame. Inbound frames are parsed into
a closed set of request types and validated before dispatch; anything
else is rejected with a ProtocolError.

Client → gateway:
    {"type": "message", "content": str, "sessionId"?: str, "stream"?: bool}
    {"type": "history", "sessionId"?: str}
    {"type": "clear",   "sessionId"?: str}
    {"type": "status"}

Gateway → client:
    {"type": "response"|"error"|"history"|"status"
             |"stream_start"|"stream_chunk"|"stream_end",
     "content": str, "sessionId"?: str, "timestamp": int, "statusData"?: {...}}
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Union

DEFAULT_SESSION_ID = "default"

SERVER_TYPES = frozenset({
    "response", "error", "history", "status",
    "stream_start", "stream_chunk", "stream_end",
})


class ProtocolError(Exception):
    """Malformed or unknown inbound frame."""


class ValidationError(ProtocolError):
    """Well-formed frame with a missing or empty required field."""


def now_ms() -> int:
    return int(time.time() * 1000)


# ─── Client Requests ─────────────────────────────────────────────

@dataclass(frozen=True)
class MessageRequest:
    session_id: str
    content: str
    stream: bool = False


@dataclass(frozen=True)
class HistoryRequest:
    session_id: str


@dataclass(frozen=True)
class ClearRequest:
    session_id: str


@dataclass(frozen=True)
class StatusRequest:
    pass


ClientRequest = Union[MessageRequest, HistoryRequest, ClearRequest, StatusRequest]


def _session_id(data: dict) -> str:
    sid = data.get("sessionId")
    if sid is None or sid == "":
        return DEFAULT_SESSION_ID
    if not isinstance(sid, str):
        raise ProtocolError("\"sessionId\" must be a string")
    return sid


def parse_client_message(raw: str | bytes) -> ClientRequest:
    """Parse and validate one inbound frame."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError("Invalid JSON message") from e
    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")

    msg_type = data.get("type")
    if msg_type == "message":
        content = data.get("content")
        if content is not None and not isinstance(content, str):
            raise ProtocolError("\"content\" must be a string")
        if not content:
            raise ValidationError("No content")
        stream = data.get("stream", False)
        if not isinstance(stream, bool):
            raise ProtocolError("\"stream\" must be a boolean")
        return MessageRequest(session_id=_session_id(data), content=content, stream=stream)
    if msg_type == "history":
        return HistoryRequest(session_id=_session_id(data))
    if msg_type == "clear":
        return ClearRequest(session_id=_session_id(data))
    if msg_type == "status":
        return StatusRequest()
    if msg_type is None:
        raise ProtocolError("Missing \"type\" field")
    raise ProtocolError(f"Unknown message type: {msg_type!r}")


# ─── Server Messages ─────────────────────────────────────────────

@dataclass
class GatewayStatus:
    port: int
    host: str
    client_count: int
    session_count: int
    uptime_ms: int
    workspace: str
    model: str
    context_window: int
    telegram_enabled: bool

    def to_dict(self) -> dict:
        return {
            "port": self.port,
            "host": self.host,
            "clientCount": self.client_count,
            "sessionCount": self.session_count,
            "uptimeMs": self.uptime_ms,
            "workspace": self.workspace,
            "model": self.model,
            "contextWindow": self.context_window,
            "telegramEnabled": self.telegram_enabled,
        }

    @classmethod
    def from_dict(cls, data: dict) -> GatewayStatus:
        return cls(
            port=int(data.get("port", 0)),
            host=str(data.get("host", "")),
            client_count=int(data.get("clientCount", 0)),
            session_count=int(data.get("sessionCount", 0)),
            uptime_ms=int(data.get("uptimeMs", 0)),
            workspace=str(data.get("workspace", "")),
            model=str(data.get("model", "")),
            context_window=int(data.get("contextWindow", 0)),
            telegram_enabled=bool(data.get("telegramEnabled", False)),
        )


@dataclass
class ServerMessage:
    type: str
    content: str
    session_id: str | None = None
    timestamp: int = 0
    status_data: GatewayStatus | None = None

    def __post_init__(self):
        if self.type not in SERVER_TYPES:
            raise ValueError(f"Unknown server message type: {self.type!r}")
        if not self.timestamp:
            self.timestamp = now_ms()

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.type, "content": self.content}
        if self.session_id is not None:
            d["sessionId"] = self.session_id
        d["timestamp"] = self.timestamp
        if self.status_data is not None:
            d["statusData"] = self.status_data.to_dict()
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


def error_message(content: str, session_id: str | None = None) -> ServerMessage:
    return ServerMessage(type="error", content=content, session_id=session_id)
