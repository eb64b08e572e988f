"""
HTTP surface of the worker: liveness and a status snapshot.

The worker is started in the background once the app starts up and is shut
down (drain, then ledger flush) when the server stops.
"""

import asyncio
import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse

from settings import get_logger

logger = get_logger("http")


def create_app(worker) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        threading.Thread(target=worker.start, name="worker-init", daemon=True).start()
        yield
        logger.info("Server stopping, shutting down worker")
        await asyncio.to_thread(worker.shutdown)

    app = FastAPI(title="Property Drawing Organizer", lifespan=lifespan)

    @app.get("/health", response_class=PlainTextResponse)
    async def health():
        return "OK"

    @app.get("/status")
    async def status():
        try:
            return worker.status_snapshot()
        except Exception as e:
            logger.error(f"Status snapshot failed: {e}")
            return JSONResponse(status_code=500, content={"status": "error", "error": str(e)})

    return app
