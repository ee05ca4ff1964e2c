"""FastAPI status and admin surface for the relay listeners.

Runs inside the same event loop as the listeners (under uvicorn) and
exposes:

    GET  /health            -> {"status": "ok", "listeners": {"line": true, ...}}
    GET  /status            -> {"line": RelayStatus, "structured": RelayStatus}
    GET  /status/{listener} -> RelayStatus
    POST /broadcast         <- {"message": "maintenance in 5 minutes"}
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from cmdrelay.domain.models import RelayStatus
from cmdrelay.relay.server import RelayServer

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class BroadcastRequest(BaseModel):
    message: str = Field(min_length=1, description="Text delivered as a BROADCAST notice")


class BroadcastResponse(BaseModel):
    sent_count: int
    message: str
    listeners: dict[str, int] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str = "ok"
    listeners: dict[str, bool] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(servers: list[RelayServer], manage_listeners: bool = True) -> FastAPI:
    """Create the status/admin application.

    Args:
        servers: Relay listeners to report on and broadcast to.
        manage_listeners: Start the listeners on application startup and
            close them on shutdown. A listener that cannot bind aborts
            startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        started: list[RelayServer] = []
        if manage_listeners:
            try:
                for server in app.state.servers.values():
                    await server.start()
                    started.append(server)
                    logger.info("%s listener running on %s:%d", server.name, server.host, server.port)
            except Exception:
                for server in started:
                    await server.close()
                raise

        yield

        for server in started:
            await server.close()
        logger.info("Relay listeners stopped")

    app = FastAPI(
        title="cmdrelay",
        description="Status and admin API for the cmdrelay TCP listeners",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.servers = {server.name: server for server in servers}

    @app.get("/health")
    async def health_check() -> HealthResponse:
        return HealthResponse(
            status="ok",
            listeners={name: server.is_running for name, server in app.state.servers.items()},
        )

    @app.get("/status")
    async def all_status() -> dict[str, RelayStatus]:
        return {name: server.get_status() for name, server in app.state.servers.items()}

    @app.get("/status/{listener}")
    async def listener_status(listener: str) -> RelayStatus:
        server = app.state.servers.get(listener)
        if server is None:
            raise HTTPException(status_code=404, detail=f"Unknown listener: {listener}")
        return server.get_status()

    @app.post("/broadcast")
    async def broadcast(request: BroadcastRequest) -> BroadcastResponse:
        per_listener: dict[str, int] = {}
        for name, server in app.state.servers.items():
            if not server.is_running:
                continue
            per_listener[name] = await server.broadcast(request.message)
        total = sum(per_listener.values())
        logger.info("Broadcast delivered to %d client(s)", total)
        return BroadcastResponse(sent_count=total, message=request.message, listeners=per_listener)

    return app
