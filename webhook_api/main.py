import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import (
    FastAPI,
    Depends,
    Request,
    status,
    Query,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from .config import Settings, settings as default_settings
from .errors import IngestError, StorageUnavailable
from .logging_utils import configure_logging, log_json, logging_middleware
from .metrics import MetricsRecorder
from .pipeline import IngestionPipeline
from .queries import QueryEngine, StatsAggregator
from .storage import MessageStore


logger = logging.getLogger(__name__)


# ---------- Pydantic Models ----------


class MessagesResponseItem(BaseModel):
    message_id: str
    from_: str = Field(alias="from")
    to: str
    ts: str
    text: Optional[str]
    created_at: str


class MessagesResponse(BaseModel):
    data: list[MessagesResponseItem]
    total: int
    limit: int
    offset: int


class SenderCount(BaseModel):
    from_: str = Field(alias="from")
    count: int


class StatsResponse(BaseModel):
    total_messages: int
    senders_count: int
    messages_per_sender: list[SenderCount]
    first_message_ts: Optional[str]
    last_message_ts: Optional[str]


# ---------- Dependencies ----------


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRecorder:
    return request.app.state.metrics


def get_store(request: Request) -> MessageStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise StorageUnavailable()
    return store


def get_pipeline(
    store: MessageStore = Depends(get_store),
    metrics: MetricsRecorder = Depends(get_metrics),
    settings: Settings = Depends(get_settings),
) -> IngestionPipeline:
    return IngestionPipeline(store, metrics, settings.WEBHOOK_SECRET)


def get_query_engine(store: MessageStore = Depends(get_store)) -> QueryEngine:
    return QueryEngine(store)


def get_stats_aggregator(store: MessageStore = Depends(get_store)) -> StatsAggregator:
    return StatsAggregator(store)


# ---------- Helpers ----------


def is_ready(app_settings: Settings, store: MessageStore | None) -> tuple[bool, dict]:
    db_ok = store is not None and store.health_check()
    secret_ok = bool(app_settings.WEBHOOK_SECRET)
    return db_ok and secret_ok, {"db": db_ok, "secret": secret_ok}


# ---------- App factory ----------


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[MessageStore] = None,
) -> FastAPI:
    app_settings = settings or default_settings
    configure_logging(app_settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # a store passed in belongs to the caller
        owns_store = app.state.store is None
        if owns_store:
            app.state.store = MessageStore(app_settings.DATABASE_URL)
        if not app_settings.WEBHOOK_SECRET:
            log_json(logging.WARNING, logger, event="webhook_secret_missing")

        yield

        if owns_store:
            app.state.store.dispose()
            app.state.store = None

    app = FastAPI(title="Webhook Message Ingestion", lifespan=lifespan)
    app.state.settings = app_settings
    app.state.metrics = MetricsRecorder()
    app.state.store = store

    # Attach logging + metrics middleware
    app.middleware("http")(logging_middleware)

    @app.exception_handler(IngestError)
    async def ingest_error_handler(request: Request, exc: IngestError):
        if exc.status_code >= 500:
            log_json(
                logging.ERROR,
                logger,
                event="request_failed",
                path=request.url.path,
                error=type(exc).__name__,
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    # ---------- Endpoints ----------

    @app.get("/health/live")
    def health_live():
        # always 200 once running
        return {"status": "live"}

    @app.get("/health/ready")
    def health_ready(request: Request):
        ok, checks = is_ready(app_settings, getattr(request.app.state, "store", None))
        if not ok:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not-ready", **checks},
            )
        return {"status": "ready"}

    @app.post("/webhook")
    async def webhook(
        request: Request,
        pipeline: IngestionPipeline = Depends(get_pipeline),
    ):
        # signature is computed over the exact bytes received
        raw_body = await request.body()
        x_sig = request.headers.get("X-Signature")

        outcome = await run_in_threadpool(pipeline.handle, raw_body, x_sig)

        # enrich logs
        request.state.log_extra.update(
            {
                "message_id": outcome.message_id,
                "dup": outcome.dup,
                "result": outcome.result,
            }
        )
        return JSONResponse(status_code=outcome.status_code, content=outcome.body)

    @app.get("/messages", response_model=MessagesResponse)
    def get_messages(
        engine: QueryEngine = Depends(get_query_engine),
        limit: Optional[str] = Query(default=None),
        offset: Optional[str] = Query(default=None),
        from_: Optional[str] = Query(default=None, alias="from"),
        since: Optional[str] = Query(default=None),
        q: Optional[str] = Query(default=None),
    ):
        return engine.list(limit=limit, offset=offset, from_=from_, since=since, q=q)

    @app.get("/stats", response_model=StatsResponse)
    def stats(aggregator: StatsAggregator = Depends(get_stats_aggregator)):
        return aggregator.stats()

    @app.get("/metrics")
    def metrics(recorder: MetricsRecorder = Depends(get_metrics)):
        return PlainTextResponse(content=recorder.render(), media_type="text/plain; version=0.0.4")

    return app


app = create_app()
