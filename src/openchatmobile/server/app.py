"""FastAPI app factory + lifespan for the OpenChatMobile relay server."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from openchatmobile.config import ServerConfig
from openchatmobile.server.inference import CompletionClient
from openchatmobile.server.registry import ConnectionRegistry
from openchatmobile.server.routes import frontend_router, router
from openchatmobile.server.supervisor import InferenceSupervisor

log = logging.getLogger(__name__)

LOCAL_ORIGINS = r"https?://(localhost|127\.0\.0\.1)(:\d+)?"


@dataclass
class AppContext:
    """Process-wide state handed to every handler through ``app.state.ctx``."""
    config: ServerConfig
    registry: ConnectionRegistry
    supervisor: InferenceSupervisor
    completions: CompletionClient


def create_app(
    config: ServerConfig | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the app; *transport* replaces the HTTP transport to llama-server."""
    config = config or ServerConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("OpenChatMobile server starting up")
        registry = ConnectionRegistry()
        completions = CompletionClient(
            config.llama_url, stream_timeout=config.stream_timeout, transport=transport,
        )
        try:
            async with InferenceSupervisor(config) as supervisor:
                app.state.ctx = AppContext(config, registry, supervisor, completions)
                liveness = asyncio.create_task(registry.run_liveness(config.ping_interval))
                log.info("backend: http://%s:%d", config.host, config.port)
                log.info("llama-server: %s", config.llama_url)
                try:
                    yield
                finally:
                    log.info("OpenChatMobile server shutting down")
                    liveness.cancel()
                    await asyncio.wait([liveness])
                    await registry.close_all()
        finally:
            await completions.aclose()

    app = FastAPI(
        title="openchatmobile",
        description="Chat relay in front of a local llama-server",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=LOCAL_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        t0 = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - t0) * 1000
        log.info("%s %s %d - %.0fms", request.method, request.url.path, response.status_code, elapsed_ms)
        return response

    app.include_router(router)
    # catch-all, must stay last
    app.include_router(frontend_router)
    return app
