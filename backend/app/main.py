"""FastAPI application for discovery introspection (read-only).

The app never owns the engine: the job builds a DiscoveryController and hands
it to create_app(). Without one, every discovery route answers 503.

Each request gets an `x-request-id` (taken from the caller when present) and
one JSON access line on the `discovery.api` logger.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.v1.router import router as v1_router
from discovery.core.controller import DiscoveryController
from discovery.core.errors import DiscoveryError, UnknownSourceError


logger = logging.getLogger("discovery.api")
logger.setLevel(logging.INFO)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("x-request-id") or str(uuid.uuid4())


async def _discovery_error_handler(request: Request, exc: DiscoveryError) -> JSONResponse:
    code = 404 if isinstance(exc, UnknownSourceError) else 503
    return JSONResponse(
        status_code=code,
        content={"detail": str(exc), "kind": exc.kind.value},
        headers={"x-request-id": _request_id(request)},
    )


async def _access_log(request: Request, call_next: Callable):
    request_id = _request_id(request)
    request.state.request_id = request_id
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:  # noqa: BLE001
        logger.exception("Unhandled error", extra={"request_id": request_id})
        response = JSONResponse(status_code=500, content={"detail": "Internal error."})

    response.headers["x-request-id"] = request_id
    logger.info(
        json.dumps(
            {
                "event": "access",
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": int((time.perf_counter() - started) * 1000),
            }
        )
    )
    return response


def create_app(controller: Optional[DiscoveryController] = None) -> FastAPI:
    app = FastAPI(
        title="Token Discovery API",
        version="1.0.0",
        openapi_url="/openapi.json",
        docs_url=None,
        redoc_url=None,
        description="Source health, credibility and discovery records. Read-only.",
    )
    app.state.controller = controller

    app.include_router(v1_router, prefix="/v1")
    app.add_exception_handler(DiscoveryError, _discovery_error_handler)
    app.middleware("http")(_access_log)

    return app
