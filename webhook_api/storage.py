import contextlib
import logging
import os
import threading
from dataclasses import asdict, dataclass
from typing import Iterator, List, Optional

from sqlalchemy import Text, create_engine, event, func, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .errors import StorageUnavailable
from .logging_utils import iso_now, log_json
from .models import Base, Message
from .validation import ValidMessage


logger = logging.getLogger(__name__)

MEMORY_URL = "sqlite://"


@dataclass(frozen=True)
class InsertResult:
    dup: bool


@dataclass(frozen=True)
class MessageFilters:
    limit: int = 50
    offset: int = 0
    from_: Optional[str] = None
    since: Optional[str] = None
    q: Optional[str] = None


@dataclass
class QueryResult:
    rows: List[dict]
    total: int


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_memory_sqlite(url: str) -> bool:
    if not _is_sqlite(url):
        return False
    return make_url(url).database in (None, "", ":memory:")


def _engine_connect_args(url: str) -> dict:
    if _is_sqlite(url):
        return {"check_same_thread": False}
    return {}


def _py_lower(value):
    return value.lower() if isinstance(value, str) else value


def _enable_sqlite_transactions(engine: Engine) -> None:
    # pysqlite only opens a transaction before DML; emit BEGIN ourselves so
    # the count and page reads of one call share a snapshot.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        # SQLite lower() only folds ASCII
        dbapi_connection.create_function("py_lower", 1, _py_lower, deterministic=True)

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def _build_engine(url: str) -> Engine:
    kwargs: dict = {"connect_args": _engine_connect_args(url)}
    memory = _is_memory_sqlite(url)
    if memory:
        # one shared connection, otherwise every checkout sees an empty db
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    if _is_sqlite(url):
        _enable_sqlite_transactions(engine)
    return engine


def _ensure_sqlite_dir(url: str) -> None:
    if not _is_sqlite(url) or _is_memory_sqlite(url):
        return
    directory = os.path.dirname(make_url(url).database or "")
    if directory:
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as exc:
            # not fatal: opening the file decides whether we fall back
            log_json(logging.WARNING, logger, event="storage_mkdir_failed", directory=directory, error=str(exc))


class MessageStore:
    """
    Messages keyed by message_id.

    The primary key is the only thing that decides duplicates, so concurrent
    inserts of the same id leave exactly one row and the loser sees dup=True.
    If the configured database cannot be opened the store keeps running on a
    private in-memory SQLite database and sets ``fallback``.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self.fallback = False
        self.engine: Engine
        self._lock = contextlib.nullcontext()
        self._open()

    @property
    def in_memory(self) -> bool:
        return self.fallback or _is_memory_sqlite(self.database_url)

    def _safe_url(self) -> str:
        try:
            return make_url(self.database_url).render_as_string(hide_password=True)
        except SQLAlchemyError:
            return "<unparseable url>"

    def _bind(self, engine: Engine) -> None:
        self.engine = engine
        self._lower = func.py_lower if engine.dialect.name == "sqlite" else func.lower
        self.SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        if self.in_memory:
            self._lock = threading.RLock()

    def _open(self) -> None:
        try:
            _ensure_sqlite_dir(self.database_url)
            self._bind(_build_engine(self.database_url))
            Base.metadata.create_all(bind=self.engine)
            if _is_sqlite(self.database_url) and not self.in_memory:
                self._use_wal()
        except (SQLAlchemyError, OSError, ImportError) as exc:
            log_json(
                logging.WARNING,
                logger,
                event="storage_fallback",
                database_url=self._safe_url(),
                error=str(exc),
            )
            if getattr(self, "engine", None) is not None:
                self.engine.dispose()
            self.fallback = True
            self._bind(_build_engine(MEMORY_URL))
            Base.metadata.create_all(bind=self.engine)

        log_json(
            logging.INFO,
            logger,
            event="storage_initialized",
            storage=":memory:" if self.in_memory else self._safe_url(),
            fallback=self.fallback,
        )

    def _use_wal(self) -> None:
        # journal mode sticks to the file; readers then never block the writer.
        # Raw DBAPI connection: the pragma is refused inside a transaction.
        raw = self.engine.raw_connection()
        try:
            cursor = raw.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()
        finally:
            raw.close()

    @contextlib.contextmanager
    def _session(self) -> Iterator[Session]:
        with self._lock:
            with self.SessionLocal() as db:
                yield db

    def insert(self, message: ValidMessage) -> InsertResult:
        row = Message(
            message_id=message.message_id,
            from_msisdn=message.from_,
            to_msisdn=message.to,
            ts=message.ts,
            text=message.text,
            created_at=iso_now(),
        )
        try:
            with self._session() as db:
                db.add(row)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    # Already exists -> idempotent behaviour, first write wins
                    return InsertResult(dup=True)
        except SQLAlchemyError as exc:
            log_json(
                logging.ERROR,
                logger,
                event="storage_error",
                op="insert",
                message_id=message.message_id,
                error=str(exc),
            )
            raise StorageUnavailable() from exc
        return InsertResult(dup=False)

    def query(self, filters: MessageFilters) -> QueryResult:
        try:
            with self._session() as db, db.begin():
                query = db.query(Message)

                if filters.from_:
                    query = query.filter(Message.from_msisdn == filters.from_)

                if filters.since:
                    # string compare is ok for fixed-width ISO-8601
                    query = query.filter(Message.ts >= filters.since)

                if filters.q:
                    query = query.filter(
                        self._lower(Message.text, type_=Text).contains(filters.q.lower(), autoescape=True)
                    )

                total = query.count()

                rows = (
                    query.order_by(Message.ts.asc(), Message.message_id.asc())
                    .limit(filters.limit)
                    .offset(filters.offset)
                    .all()
                )
                data = [m.to_dict() for m in rows]
        except SQLAlchemyError as exc:
            log_json(
                logging.ERROR,
                logger,
                event="storage_error",
                op="query",
                filters=asdict(filters),
                error=str(exc),
            )
            raise StorageUnavailable() from exc
        return QueryResult(rows=data, total=total)

    def aggregate(self) -> dict:
        try:
            with self._session() as db, db.begin():
                total_messages = db.query(func.count(Message.message_id)).scalar() or 0
                senders_count = db.query(func.count(func.distinct(Message.from_msisdn))).scalar() or 0

                # top 10 senders
                cnt = func.count(Message.message_id).label("cnt")
                rows = (
                    db.query(Message.from_msisdn, cnt)
                    .group_by(Message.from_msisdn)
                    .order_by(cnt.desc(), Message.from_msisdn.asc())
                    .limit(10)
                    .all()
                )

                first_row = (
                    db.query(Message.ts)
                    .order_by(Message.ts.asc(), Message.message_id.asc())
                    .first()
                )
                last_row = (
                    db.query(Message.ts)
                    .order_by(Message.ts.desc(), Message.message_id.desc())
                    .first()
                )
        except SQLAlchemyError as exc:
            log_json(logging.ERROR, logger, event="storage_error", op="aggregate", error=str(exc))
            raise StorageUnavailable() from exc

        return {
            "total_messages": int(total_messages),
            "senders_count": int(senders_count),
            "messages_per_sender": [
                {"from": r[0], "count": int(r[1])} for r in rows
            ],
            "first_message_ts": first_row[0] if first_row else None,
            "last_message_ts": last_row[0] if last_row else None,
        }

    def health_check(self) -> bool:
        try:
            with self._session() as db:
                db.execute(text("SELECT 1"))
        except Exception as exc:
            log_json(logging.WARNING, logger, event="storage_unhealthy", error=str(exc))
            return False
        return True

    def dispose(self) -> None:
        self.engine.dispose()
