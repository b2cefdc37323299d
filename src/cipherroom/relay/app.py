from __future__ import annotations
import asyncio
import secrets
import threading
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from ..core.config import Settings
from ..core.constants import MAX_MSG_BYTES, PROTO_NAME, PROTO_VER, RATE_WINDOW_S
from ..core.validation import fuzz_resistant_json_loads, json_dumps_sorted
from .coordinator import ConnectionContext, SessionCoordinator
from .events import Notification
from .ratelimit import RateLimiter
from .sessions import SessionRegistry

def client_address(websocket: WebSocket, trust_forwarded_for: bool) -> Optional[str]:
    if trust_forwarded_for:
        forwarded = websocket.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip() or None
    return websocket.client.host if websocket.client else None

def build_relay_app(logger, settings: Settings = None, registry: SessionRegistry = None,
                    limiter: RateLimiter = None) -> FastAPI:
    settings = settings or Settings()
    registry = registry or SessionRegistry(logger)
    limiter = limiter or RateLimiter(logger)
    coordinator = SessionCoordinator(registry, limiter, logger, max_participants=settings.max_participants)

    sockets: Dict[str, WebSocket] = {}
    # single writer for coordinator calls and sweeps
    writer = threading.Lock()

    class HealthResp(BaseModel):
        status: str
        sessions: int
        connections: int

    async def _send(ws: WebSocket, msg_type: str, payload: Any = None):
        msg = {"type": msg_type, "proto": PROTO_NAME, "ver": PROTO_VER}
        if payload is not None:
            msg["payload"] = payload
        await ws.send_text(json_dumps_sorted(msg))

    async def _deliver(notifications: Iterable[Notification]):
        for note in notifications:
            for target in note.targets:
                ws = sockets.get(target)
                if ws is None:
                    continue
                try:
                    await _send(ws, note.event, note.payload)
                except Exception as e:
                    logger.warning("deliver_failed", connection_id=target, event_type=note.event, error=str(e))

    def _locked(fn, *args):
        with writer:
            return fn(*args)

    async def _periodic(name: str, interval: float, fn):
        while True:
            await asyncio.sleep(interval)
            try:
                out = _locked(fn)
                if out:
                    await _deliver(out)
            except Exception as e:
                logger.error("periodic_task_failed", task=name, error=str(e))

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        tasks = [
            asyncio.create_task(_periodic("session_sweep", settings.sweep_interval_s, coordinator.sweep)),
            asyncio.create_task(_periodic("rate_limit_cleanup", RATE_WINDOW_S, limiter.cleanup)),
        ]
        logger.info("relay_started", sweep_interval_s=settings.sweep_interval_s)
        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("relay_stopped", sessions=registry.live_count())

    app = FastAPI(title="CipherRoom Relay", version=PROTO_VER, lifespan=lifespan)
    app.state.registry = registry
    app.state.limiter = limiter
    app.state.coordinator = coordinator

    @app.get("/health", response_model=HealthResp)
    def health():
        return HealthResp(status="ok", sessions=registry.live_count(), connections=len(sockets))

    @app.websocket("/ws")
    async def ws_chat(websocket: WebSocket):
        await websocket.accept()
        cid = secrets.token_hex(8)
        ctx = ConnectionContext(connection_id=cid, address=client_address(websocket, settings.trust_forwarded_for))
        sockets[cid] = websocket
        logger.info("client_connected", connection_id=cid, ip=ctx.address)
        await _send(websocket, "hello", {"connectionId": cid})

        try:
            while True:
                raw = await websocket.receive_text()
                if len(raw.encode("utf-8")) > MAX_MSG_BYTES:
                    await _send(websocket, "error", {"message": "message too large"})
                    continue

                try:
                    msg = fuzz_resistant_json_loads(raw)
                except Exception as e:
                    await _send(websocket, "error", {"message": f"invalid json: {e}"})
                    continue

                if msg.get("proto") != PROTO_NAME or msg.get("ver") != PROTO_VER:
                    await _send(websocket, "error", {"message": "protocol mismatch"})
                    continue

                event = msg.get("type")
                if not isinstance(event, str):
                    await _send(websocket, "error", {"message": "missing message type"})
                    continue

                try:
                    out = _locked(coordinator.handle, ctx, event, msg.get("payload"))
                except Exception as e:
                    logger.error("handler_crashed", connection_id=cid, op=event, error=str(e))
                    await _send(websocket, "error", {"message": "Request failed"})
                    continue
                await _deliver(out)

        except WebSocketDisconnect:
            pass
        finally:
            sockets.pop(cid, None)
            await _deliver(_locked(coordinator.disconnect, cid))

    return app
