from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

import socketio
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from .collaborators.mongo import (
    MongoOrganRegistry,
    MongoQualityService,
    MongoRecipientRegistry,
    MongoRegionDistance,
)
from .database import get_database, settings
from .engine.allocation import AllocationEngine
from .engine.emergency import EmergencyMatcher
from .engine.waiting_list import WaitingListManager
from .errors import MatchingError
from .events import MatchEvent
from .memory.allocation_memory import AllocationMemory, MongoAuditLog, MongoProposalStore
from .memory.waiting_list_store import MongoWaitingListStore
from .routers import admin, allocation, waiting_list
from .utils.logging import configure_logging


class LiveUpdateHub:
    def __init__(self, sio_server: socketio.AsyncServer) -> None:
        self.sio = sio_server
        self.websockets: set[WebSocket] = set()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.websockets.add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        self.websockets.discard(websocket)

    async def notify(self, event: str, payload: Dict[str, Any]) -> None:
        message = {"event": event, "payload": payload}
        stale = []
        for connection in self.websockets:
            try:
                await connection.send_json(message)
            except (RuntimeError, WebSocketDisconnect):
                stale.append(connection)
        for connection in stale:
            self.disconnect(connection)
        await self.sio.emit(event, payload)

    async def match_event(self, event: MatchEvent) -> None:
        await self.notify(event.type, event.payload)


@dataclass
class MatchingServices:
    waiting_list: WaitingListManager
    engine: AllocationEngine
    emergency: EmergencyMatcher

    async def restore(self) -> None:
        entries = await self.waiting_list.restore()
        proposals = await self.engine.memory.restore()
        logger.info("Matching state restored: {} waiting-list entries, {} proposals", entries, proposals)


def build_services(hub: LiveUpdateHub, db: AsyncIOMotorDatabase | None = None) -> MatchingServices:
    db = db if db is not None else get_database()
    waiting = WaitingListManager(
        event_sink=hub.match_event,
        store=MongoWaitingListStore(db.get_collection("waiting_list")),
    )
    engine = AllocationEngine.from_settings(
        settings,
        organs=MongoOrganRegistry(db),
        recipients=MongoRecipientRegistry(db),
        quality=MongoQualityService(db),
        waiting_list=waiting,
        memory=AllocationMemory(MongoProposalStore(db.get_collection("match_proposals"))),
        audit_log=MongoAuditLog(db.get_collection("allocation_memory")),
        event_sink=hub.match_event,
    )
    emergency = EmergencyMatcher(engine, MongoRegionDistance(db))
    return MatchingServices(waiting_list=waiting, engine=engine, emergency=emergency)


async def matching_error_handler(request: Request, exc: MatchingError) -> JSONResponse:
    logger.info("{} {} -> {}: {}", request.method, request.url.path, type(exc).__name__, exc.message)
    return JSONResponse({"detail": exc.message, "error": type(exc).__name__}, status_code=exc.status_code)


def create_app(services: MatchingServices, hub: LiveUpdateHub) -> FastAPI:
    app = FastAPI(title="Organ Matching API", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(MatchingError, matching_error_handler)

    waiting_list.init_router(services.waiting_list)
    allocation.init_router(services.engine, services.emergency)
    admin.init_router(services.engine)
    app.include_router(waiting_list.router)
    app.include_router(allocation.router)
    app.include_router(admin.router)

    @app.on_event("startup")
    async def restore_matching_state() -> None:
        try:
            await services.restore()
        except PyMongoError as exc:
            logger.warning("Matching state not restored, starting empty: {}", exc)
        if services.emergency.distance is None:
            logger.warning("No region distance table configured; emergency max_distance_km is not enforced")
        else:
            logger.info(
                "Emergency distance limits use {}; unknown region pairs stay in range",
                type(services.emergency.distance).__name__,
            )

    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.websocket("/ws/matching")
    async def matching_websocket(websocket: WebSocket) -> None:
        await hub.connect(websocket)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            hub.disconnect(websocket)

    return app


configure_logging(settings.log_level)

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins="*")
hub = LiveUpdateHub(sio)
services = build_services(hub)
app = create_app(services, hub)


@sio.event
async def connect(sid, environ):  # pragma: no cover - socket handshake
    await hub.notify("socket_connected", {"sid": sid})


@sio.event
async def disconnect(sid):  # pragma: no cover - socket handshake
    await hub.notify("socket_disconnected", {"sid": sid})


socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
