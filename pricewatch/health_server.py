"""Process health and stats endpoint served alongside the engine."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import Any

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from pricewatch.browser_pool import BrowserPool
from pricewatch.errors import PricewatchError
from pricewatch.logging_config import get_logger
from pricewatch.rate_limiter import RateLimiter
from pricewatch.scheduler import Scheduler
from pricewatch.storage.store import Store


LOGGER = get_logger(__name__)


@dataclass
class EngineState:
    pool: BrowserPool
    store: Store
    rate_limiter: RateLimiter | None = None
    scheduler: Scheduler | None = None


def _store_status(store: Store) -> dict[str, Any]:
    try:
        store.ping()
    except PricewatchError as exc:
        return {"reachable": False, "error": str(exc)}
    return {"reachable": True}


def create_app(state: EngineState) -> FastAPI:
    app = FastAPI(title="pricewatch", docs_url=None, redoc_url=None)

    @app.get("/health")
    def health() -> JSONResponse:
        pool = state.pool.health()
        store = _store_status(state.store)
        healthy = bool(pool["healthy"]) and store["reachable"]
        body = {"status": "ok" if healthy else "degraded", "pool": pool, "store": store}
        return JSONResponse(body, status_code=200 if healthy else 503)

    @app.get("/stats")
    def stats() -> dict[str, Any]:
        last_cycle = None
        if state.scheduler is not None and state.scheduler.last_result is not None:
            last_cycle = state.scheduler.last_result.as_dict()
        return {
            "pool": state.pool.stats(),
            "rate_limiter": state.rate_limiter.stats() if state.rate_limiter else {},
            "last_cycle": last_cycle,
        }

    return app


def start_health_server(
    state: EngineState, host: str = "127.0.0.1", port: int = 3001
) -> tuple[uvicorn.Server, threading.Thread]:
    LOGGER.info("Starting health server thread | host=%s port=%s", host, port)
    config = uvicorn.Config(create_app(state), host=host, port=port, reload=False, log_config=None)
    server = uvicorn.Server(config)

    def run_server() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(server.serve())
        finally:
            loop.close()

    thread = threading.Thread(target=run_server, name="health-server", daemon=True)
    thread.start()
    return server, thread


def stop_health_server(server: uvicorn.Server | None, thread: threading.Thread | None) -> None:
    if server is not None:
        server.should_exit = True
    if thread is not None:
        thread.join(timeout=5)
        LOGGER.info("Health server thread joined")
