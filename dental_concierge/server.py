"""FastAPI server for the Dental Concierge WhatsApp receptionist.

Run with:
    uvicorn dental_concierge.server:app --host 0.0.0.0 --port 8000

Meta delivers webhooks to ``/webhook``; the operator dashboard talks to
``/api/dashboard/*`` with the bearer token.  Inbound messages are
acknowledged immediately and processed in background tasks, so the
concierge (stores, aggregator timers, HTTP clients) lives for the whole
process in ``app.state.concierge``.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dental_concierge.api.routes import router, webhook_router
from dental_concierge.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from dental_concierge.services.metrics import metrics
from dental_concierge.wiring import create_concierge

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan ─────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    concierge = create_concierge()
    application.state.concierge = concierge
    operator = await concierge.operators.get_operator_identity()
    if operator is None:
        logger.warning("No operator phone configured; handoffs will fail until one is set")
    logger.info("Concierge ready (store: %s)", type(concierge.store).__name__)
    try:
        yield
    finally:
        logger.info("Shutting down: flushing buffers and closing clients")
        await concierge.aclose()
        application.state.concierge = None
        metrics.flush()


app = FastAPI(
    title="Dental Concierge",
    description=(
        "WhatsApp receptionist for a dental clinic: registers patients, books, "
        "moves and cancels appointments, and hands conversations to a human."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (operator dashboard) ────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Tag every request with ``X-Request-ID`` and log its outcome."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    t0 = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "[%s] %s %s → %d (%.0fms)",
        request_id, request.method, request.url.path,
        response.status_code, (time.perf_counter() - t0) * 1000,
    )
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    """Log the stack trace; never leak internals to the caller."""
    request_id = getattr(request.state, "request_id", "-")
    logger.exception("[%s] Unhandled error on %s %s", request_id, request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "An internal error occurred. Please try again later."},
        headers={"X-Request-ID": request_id},
    )


# ── Routes ───────────────────────────────────────────────────────────
app.include_router(webhook_router)
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    return {
        "service": "Dental Concierge",
        "version": app.version,
        "health": "/api/health",
        "webhook": "/webhook",
        "dashboard": "/api/dashboard",
    }


if __name__ == "__main__":
    logger.info("Starting Dental Concierge on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run("dental_concierge.server:app", host=SERVER_HOST, port=SERVER_PORT)
