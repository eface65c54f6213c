import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse


logger = logging.getLogger("webhook_api")

# metrics label for requests no route matched (404s), keeps label set bounded
UNMATCHED_PATH = "unmatched"


def configure_logging(level: str) -> None:
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        logger.addHandler(handler)
    for handler in logger.handlers:
        handler.setLevel(level)


def iso_now() -> str:
    # second precision, Z suffix: same shape as message ts
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def log_json(level: int, log: logging.Logger = logger, exc_info: bool = False, **fields) -> None:
    if not log.isEnabledFor(level):
        return
    record = {
        "ts": iso_now(),
        "level": logging.getLevelName(level).lower(),
    }
    record.update(fields)
    log.log(level, json.dumps(record, default=str), exc_info=exc_info)


def _route_path(request: Request) -> str:
    # canonical template once routing has run
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_PATH


async def logging_middleware(request: Request, call_next: Callable) -> Response:
    request_id = str(uuid.uuid4())
    start = time.perf_counter()
    metrics = request.app.state.metrics

    # store request_id in state so handlers can use it if needed
    request.state.request_id = request_id
    request.state.log_extra = {}

    response: Response
    try:
        response = await call_next(request)
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.inc_http_request(_route_path(request), 500)
        metrics.observe_latency_ms(latency_ms)
        log_json(
            logging.ERROR,
            exc_info=True,
            event="request_failed",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status=500,
            latency_ms=round(latency_ms, 2),
        )
        return JSONResponse(status_code=500, content={"detail": "internal server error"})

    latency_ms = (time.perf_counter() - start) * 1000.0
    status_code = response.status_code
    metrics.inc_http_request(_route_path(request), status_code)
    metrics.observe_latency_ms(latency_ms)

    log = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "status": status_code,
        "latency_ms": round(latency_ms, 2),
    }

    # add extra fields from handlers (e.g. webhook result)
    if isinstance(getattr(request.state, "log_extra", None), dict):
        log.update(request.state.log_extra)

    log_json(logging.INFO, **log)
    return response
