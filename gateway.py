"""Gateway: WebSocket server and conversation orchestrator.

Clients (terminal, headless CLI, bot adapters) connect over a WebSocket
and speak the protocol in protocol.py.

Ordering model:
    * Each connection's frames are handled one at a time, so replies go
      out in the order that connection sent its requests.
    * Every session-touching command (message/history/clear) runs on a
      single worker task fed by a queue. Writes to the session store are
      therefore serialized service-wide without locks.
    * status is answered inline and never waits behind a model call.

A client that disconnects mid-request does not cancel the work; the turn
is still persisted and the reply is dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web

from pipeline import ContextOverflowError, MessageHandler, MessagePipeline, StreamHandler
from protocol import (
    ClearRequest,
    ClientRequest,
    GatewayStatus,
    HistoryRequest,
    MessageRequest,
    ProtocolError,
    ServerMessage,
    StatusRequest,
    error_message,
    parse_client_message,
)
from providers import CollaboratorError
from session import PersistenceError, SessionStore

log = logging.getLogger(__name__)


@dataclass
class _Job:
    request: ClientRequest
    ws: web.WebSocketResponse
    future: asyncio.Future = field(repr=False)


class Gateway:
    """Single-process, multi-client conversation gateway."""

    def __init__(
        self,
        host: str,
        port: int,
        pipeline: MessagePipeline,
        handler: MessageHandler,
        stream_handler: StreamHandler | None = None,
        model: str = "",
        context_window: int = 0,
        telegram_enabled: bool = False,
    ):
        self.host = host
        self.port = port
        self.pipeline = pipeline
        self.store: SessionStore = pipeline.store
        self.handler = handler
        self.stream_handler = stream_handler
        self.model = model
        self.context_window = context_window
        self.telegram_enabled = telegram_enabled
        self.start_time = time.time()
        self._clients: set[web.WebSocketResponse] = set()
        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None
        self._runner: web.AppRunner | None = None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    # ─── Lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_ws)
        app.on_startup.append(self._on_startup)
        app.on_shutdown.append(self._on_shutdown)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def start(self) -> None:
        """Bind and start serving. Bind failures propagate (fatal)."""
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        try:
            await site.start()
        except OSError:
            await self._runner.cleanup()
            self._runner = None
            raise
        addresses = self._runner.addresses
        if addresses:
            self.port = addresses[0][1]
        log.info("Listening on ws://%s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        log.info("Gateway stopped")

    async def _on_startup(self, app: web.Application) -> None:
        self.start_time = time.time()
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._worker_loop())

    async def _on_shutdown(self, app: web.Application) -> None:
        for ws in list(self._clients):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Gateway shutting down")
        self._clients.clear()

    async def _on_cleanup(self, app: web.Application) -> None:
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        while self._queue is not None and not self._queue.empty():
            job = self._queue.get_nowait()
            if not job.future.done():
                job.future.cancel()

    # ─── Connections ──────────────────────────────────────────────

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self._clients.add(ws)
        log.info("Client connected (%d total)", len(self._clients))
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_frame(ws, msg.data)
                elif msg.type == WSMsgType.BINARY:
                    await self._send(ws, error_message("Binary frames are not supported"))
                elif msg.type == WSMsgType.ERROR:
                    log.warning("WebSocket error: %s", ws.exception())
        finally:
            self._clients.discard(ws)
            log.info("Client disconnected (%d total)", len(self._clients))
        return ws

    async def _handle_frame(self, ws: web.WebSocketResponse, data: str) -> None:
        try:
            request = parse_client_message(data)
        except ProtocolError as e:
            log.debug("Rejected frame: %s", e)
            await self._send(ws, error_message(str(e)))
            return

        if isinstance(request, StatusRequest):
            await self._send(ws, ServerMessage(
                type="status", content="ok", status_data=self.status(),
            ))
            return

        reply = await self._submit(request, ws)
        if reply is not None:
            await self._send(ws, reply)

    async def _submit(self, request: ClientRequest, ws: web.WebSocketResponse) -> ServerMessage | None:
        """Queue a session command for the worker and wait for its reply."""
        if self._queue is None:
            raise RuntimeError("Gateway is not running")
        future = asyncio.get_running_loop().create_future()
        await self._queue.put(_Job(request=request, ws=ws, future=future))
        # Shielded: the job completes even if this connection goes away.
        return await asyncio.shield(future)

    async def _send(self, ws: web.WebSocketResponse, msg: ServerMessage) -> bool:
        """Best-effort send. Returns False if the socket was unusable."""
        if ws.closed:
            return False
        try:
            await ws.send_str(msg.to_json())
            return True
        except ConnectionResetError:
            log.debug("Dropped %s frame to closing socket", msg.type)
            return False

    async def broadcast(self, msg: ServerMessage) -> int:
        """Send to every connected client. Returns the delivery count."""
        delivered = 0
        for ws in list(self._clients):
            if await self._send(ws, msg):
                delivered += 1
        return delivered

    # ─── Worker ───────────────────────────────────────────────────

    async def _worker_loop(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                reply = await self._execute(job)
            except Exception as e:
                log.exception("Unhandled error for %s", type(job.request).__name__)
                reply = error_message(f"Internal error: {e}",
                                      getattr(job.request, "session_id", None))
            if not job.future.done():
                job.future.set_result(reply)

    async def _execute(self, job: _Job) -> ServerMessage | None:
        req = job.request
        if isinstance(req, MessageRequest):
            return await self._run_message(req, job.ws)
        if isinstance(req, HistoryRequest):
            try:
                history = self.store.load(req.session_id)
            except PersistenceError as e:
                return error_message(str(e), req.session_id)
            return ServerMessage(
                type="history",
                content=json.dumps(history, ensure_ascii=False),
                session_id=req.session_id,
            )
        if isinstance(req, ClearRequest):
            try:
                self.store.clear(req.session_id)
            except PersistenceError as e:
                return error_message(str(e), req.session_id)
            log.info("Session cleared: %s", req.session_id)
            return ServerMessage(type="response", content="Session cleared",
                                 session_id=req.session_id)
        raise ProtocolError(f"Unroutable request: {req!r}")

    async def _run_message(self, req: MessageRequest, ws: web.WebSocketResponse) -> ServerMessage | None:
        sid = req.session_id
        log.info("Processing message for session: %s", sid)
        try:
            if req.stream and self.stream_handler is not None:
                await self._send(ws, ServerMessage(type="stream_start", content="", session_id=sid))

                async def on_chunk(chunk: str) -> None:
                    await self._send(ws, ServerMessage(type="stream_chunk", content=chunk, session_id=sid))

                result = await self.pipeline.process_stream(sid, req.content, self.stream_handler, on_chunk)
                return ServerMessage(type="stream_end", content=result.response, session_id=sid)

            result = await self.pipeline.process(sid, req.content, self.handler)
            return ServerMessage(type="response", content=result.response, session_id=sid)
        except ContextOverflowError as e:
            log.warning("Rejected message for session %s: %s", sid, e)
            return error_message(str(e), sid)
        except CollaboratorError as e:
            log.error("Model call failed for session %s: %s", sid, e)
            return error_message(str(e), sid)
        except PersistenceError as e:
            log.error("Persistence failed for session %s: %s", sid, e)
            return error_message(str(e), sid)

    # ─── Status ───────────────────────────────────────────────────

    def status(self) -> GatewayStatus:
        try:
            session_count = self.store.count()
        except OSError as e:
            log.warning("Session count failed: %s", e)
            session_count = 0
        return GatewayStatus(
            port=self.port,
            host=self.host,
            client_count=len(self._clients),
            session_count=session_count,
            uptime_ms=int((time.time() - self.start_time) * 1000),
            workspace=str(self.pipeline.workspace.root),
            model=self.model,
            context_window=self.context_window,
            telegram_enabled=self.telegram_enabled,
        )

    def status_snapshot(self) -> dict[str, Any]:
        return self.status().to_dict()
