from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from .db import init_db
from .routers import checkins, events
from .core.config import get_settings
from .core.logging import configure_logging
from .core.redis import ping_redis
from .core.nats import nats_connect, nats_close
from .errors import CheckInError, StorageError

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    # best-effort connect to infra; service still runs if these fail
    try:
        await nats_connect()
    except Exception:
        logger.warning("NATS unavailable, live monitors fall back to polling", exc_info=True)
    await ping_redis()
    yield
    await nats_close()

app = FastAPI(title="geo-checkin-svc", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(CheckInError)
async def checkin_error_handler(request: Request, exc: CheckInError):
    logger.info("%s %s rejected: %s", request.method, request.url.path, exc.reason.value)
    return JSONResponse(status_code=exc.status_code, content={"reason": exc.reason.value, "detail": exc.detail})

@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("%s %s storage failure: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"reason": "StorageError", "detail": "Could not save, please retry"})

app.include_router(events.router)
app.include_router(checkins.router)

@app.get("/health")
async def health():
    return {"status": "ok", "service": "geo-checkin-svc"}

Instrumentator().instrument(app).expose(app)
