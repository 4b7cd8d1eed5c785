"""Gateway client: thin WebSocket client used by the CLI commands.

Each call opens its own connection; the gateway keeps no per-connection
state worth reusing.
"""

from __future__ import annotations

import asyncio
import json
import logging

import aiohttp

from protocol import GatewayStatus, now_ms

log = logging.getLogger(__name__)


class GatewayError(Exception):
    """The gateway answered with an error frame, or could not be reached."""


def gateway_url(host: str, port: int) -> str:
    if host in ("0.0.0.0", "::", ""):
        host = "127.0.0.1"
    return f"ws://{host}:{port}"


async def probe(url: str, timeout: float = 0.5) -> bool:
    """True if a WebSocket handshake with the gateway succeeds."""
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as http:
            async with http.ws_connect(url):
                return True
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError):
        return False


class GatewayClient:
    def __init__(self, url: str, timeout: float = 30.0):
        self.url = url
        self.timeout = timeout

    async def request(self, frame: dict, accept: frozenset[str]) -> dict:
        """Send one frame, return the first reply whose type is in accept.

        Frames of other types (broadcasts, stream chunks) are skipped.
        An error frame raises GatewayError.
        """
        log.debug("Sending %s frame to %s", frame.get("type"), self.url)
        try:
            async with aiohttp.ClientSession() as http:
                async with http.ws_connect(self.url) as ws:
                    await ws.send_str(json.dumps(frame))
                    async with asyncio.timeout(self.timeout):
                        async for msg in ws:
                            if msg.type != aiohttp.WSMsgType.TEXT:
                                break
                            try:
                                data = json.loads(msg.data)
                            except json.JSONDecodeError as e:
                                raise GatewayError("Invalid frame from gateway") from e
                            if not isinstance(data, dict):
                                raise GatewayError("Invalid frame from gateway")
                            if data.get("type") == "error":
                                raise GatewayError(data.get("content", "Unknown error"))
                            if data.get("type") in accept:
                                return data
        except TimeoutError as e:
            raise GatewayError("Gateway connection timeout") from e
        except aiohttp.ClientError as e:
            raise GatewayError(f"Cannot connect to gateway at {self.url}: {e}") from e
        raise GatewayError("Gateway closed the connection")

    async def ask(self, prompt: str, session_id: str | None = None) -> str:
        frame = {"type": "message", "content": prompt}
        if session_id:
            frame["sessionId"] = session_id
        data = await self.request(frame, frozenset({"response"}))
        return data.get("content", "")

    async def history(self, session_id: str | None = None) -> list[dict]:
        frame: dict = {"type": "history"}
        if session_id:
            frame["sessionId"] = session_id
        data = await self.request(frame, frozenset({"history"}))
        return json.loads(data.get("content") or "[]")

    async def clear(self, session_id: str | None = None) -> None:
        frame: dict = {"type": "clear"}
        if session_id:
            frame["sessionId"] = session_id
        await self.request(frame, frozenset({"response"}))

    async def fetch_status(self) -> GatewayStatus:
        data = await self.request({"type": "status"}, frozenset({"status"}))
        if not isinstance(data.get("statusData"), dict):
            raise GatewayError("Invalid status response")
        return GatewayStatus.from_dict(data["statusData"])


def headless_session_id() -> str:
    return f"headless-{now_ms()}"
