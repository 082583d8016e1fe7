"""
Database - engine, session factory and the resilience layer around them

Every query the notification, QR and POS layers issue goes through
DatabaseManager.execute(), which races the query against a timeout, retries
transient failures with bounded backoff and re-verifies readiness first.
"""
import asyncio
import enum
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.pool import StaticPool
from starlette.concurrency import run_in_threadpool

from .errors import (
    CanteenError,
    DatabaseNotReadyError,
    ErrorKind,
    RetryExhaustedError,
    TransientDatabaseError,
)

logger = logging.getLogger(__name__)

# Base class for models
Base = declarative_base()


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


PERMANENT_MARKERS = (
    "password authentication failed",
    "authentication failed",
    "bad auth",
    "permission denied",
)

TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection was force closed",
    "connection force closed",
    "server closed the connection",
    "connection closed",
    "connection refused",
    "could not connect",
    "not available",
    "disconnected",
)

DNS_MARKERS = (
    "etimeout",
    "querysrv",
    "could not translate host name",
    "name or service not known",
)


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception raised by a query to the retry taxonomy"""
    if isinstance(exc, CanteenError):
        return exc.kind

    message = str(exc).lower()
    if any(marker in message for marker in PERMANENT_MARKERS):
        return ErrorKind.PERMANENT

    if isinstance(exc, (sa_exc.IntegrityError, sa_exc.ProgrammingError, sa_exc.DataError)):
        return ErrorKind.PERMANENT

    if isinstance(exc, (
        sa_exc.OperationalError,
        sa_exc.DisconnectionError,
        sa_exc.TimeoutError,
        asyncio.TimeoutError,
        TimeoutError,
        ConnectionError,
    )):
        return ErrorKind.TRANSIENT

    if any(marker in message for marker in TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT

    return ErrorKind.PERMANENT


def is_dns_failure(exc: Optional[BaseException]) -> bool:
    if exc is None:
        return False
    message = str(exc).lower()
    return any(marker in message for marker in DNS_MARKERS)


def create_db_engine(url: str, echo: bool = False):
    """Create engine; SQLite gets thread sharing and WAL mode"""
    connect_args = {}
    engine_kwargs = {}
    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        connect_args["check_same_thread"] = False
        if url in ("sqlite://", "sqlite:///:memory:"):
            engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(
        url,
        connect_args=connect_args,
        pool_pre_ping=True,
        echo=echo,
        **engine_kwargs,
    )

    # Enable WAL Mode for SQLite Concurrency
    if is_sqlite and "poolclass" not in engine_kwargs:
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return engine


class DatabaseManager:
    """
    Owns the engine and tracks connection state.

    State machine: disconnected -> connecting -> connected ->
    (disconnected | disconnecting -> disconnected). An unexpected drop to
    disconnected schedules exactly one reconnector task.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        engine=None,
        *,
        query_timeout: float = 30.0,
        max_retries: int = 5,
        retry_base_delay: float = 2.0,
        retry_max_delay: float = 8.0,
        ready_max_wait: float = 40.0,
        retry_ready_wait: float = 15.0,
        ready_check_interval: float = 0.5,
        required_stable_checks: int = 3,
        reconnect_base_delay: float = 5.0,
        reconnect_max_attempts: int = 5,
        echo: bool = False,
    ):
        if engine is None and url is None:
            raise ValueError("DatabaseManager needs a url or an engine")
        self.engine = engine if engine is not None else create_db_engine(url, echo=echo)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

        self.query_timeout = query_timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.ready_max_wait = ready_max_wait
        self.retry_ready_wait = retry_ready_wait
        self.ready_check_interval = ready_check_interval
        self.required_stable_checks = required_stable_checks
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_attempts = reconnect_max_attempts

        self._state = ConnectionState.DISCONNECTED
        self._connected_since: Optional[float] = None
        self._closing = False
        self._last_error: Optional[BaseException] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._connect_lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        event.listen(self.engine, "handle_error", self._on_engine_error)

    # ========== State ==========

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def _set_state(self, new_state: ConnectionState):
        if new_state is self._state:
            return
        old_state = self._state
        self._state = new_state
        logger.info(f"Database state: {old_state.value} -> {new_state.value}")
        if new_state is ConnectionState.CONNECTED:
            self._connected_since = time.monotonic()
            self._reconnect_attempts = 0
        else:
            self._connected_since = None

    def _is_settled(self) -> bool:
        """Connected for longer than the multi-sample stability window"""
        if self._connected_since is None:
            return False
        window = self.ready_check_interval * (self.required_stable_checks - 1)
        return time.monotonic() - self._connected_since >= window

    def _mark_disconnected(self, error: Optional[BaseException] = None):
        if self._state is not ConnectionState.CONNECTED:
            return
        self._last_error = error
        logger.warning(f"Database connection lost: {error}")
        self._set_state(ConnectionState.DISCONNECTED)
        self._schedule_reconnect(error)

    def _on_engine_error(self, context):
        # Runs on the worker thread that issued the statement
        if not context.is_disconnect or self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._mark_disconnected, context.original_exception)

    def health(self) -> dict:
        return {
            "state": self._state.value,
            "is_connected": self._state is ConnectionState.CONNECTED,
            "is_connecting": self._state is ConnectionState.CONNECTING,
            "is_disconnected": self._state is ConnectionState.DISCONNECTED,
            "reconnect_attempts": self._reconnect_attempts,
            "database": self.engine.url.render_as_string(hide_password=True),
        }

    # ========== Connection lifecycle ==========

    def _probe(self):
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    async def ping(self) -> bool:
        """Round-trip health probe"""
        try:
            await run_in_threadpool(self._probe)
            return True
        except Exception as e:
            logger.debug(f"Database ping failed: {e}")
            self._last_error = e
            return False

    async def _open(self) -> Optional[BaseException]:
        self._loop = asyncio.get_running_loop()
        self._set_state(ConnectionState.CONNECTING)
        try:
            await run_in_threadpool(self._probe)
        except Exception as e:
            self._last_error = e
            self._set_state(ConnectionState.DISCONNECTED)
            return e
        self._set_state(ConnectionState.CONNECTED)
        return None

    async def connect(self) -> bool:
        """Open the connection; on failure the reconnector takes over"""
        async with self._connect_lock:
            if self._state is ConnectionState.CONNECTED:
                return True
            self._closing = False
            error = await self._open()

        if error is not None:
            logger.error(f"Database connection failed: {error}")
            self._schedule_reconnect(error)
            return False
        return True

    async def disconnect(self):
        self._closing = True
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        if self._state is ConnectionState.CONNECTED:
            self._set_state(ConnectionState.DISCONNECTING)
        await run_in_threadpool(self.engine.dispose)
        self._set_state(ConnectionState.DISCONNECTED)

    def reconnect_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """5s doubling per attempt, capped at 60s for DNS failures and 30s otherwise"""
        cap = 60.0 if is_dns_failure(error) else 30.0
        return min(self.reconnect_base_delay * (2 ** attempt), cap)

    def _schedule_reconnect(self, error: Optional[BaseException] = None):
        if self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; database reconnect not scheduled")
            return
        self._reconnect_task = loop.create_task(self._reconnect_loop(error or self._last_error))

    async def _reconnect_loop(self, error: Optional[BaseException]):
        self._reconnect_attempts = 0
        while self._reconnect_attempts < self.reconnect_max_attempts:
            if self._closing or self._state is ConnectionState.CONNECTED:
                return
            delay = self.reconnect_delay(self._reconnect_attempts, error)
            self._reconnect_attempts += 1
            logger.warning(
                f"Database reconnect attempt {self._reconnect_attempts}/"
                f"{self.reconnect_max_attempts} in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

            async with self._connect_lock:
                if self._closing or self._state is ConnectionState.CONNECTED:
                    return
                error = await self._open()
            if error is None:
                logger.info("Database reconnected")
                return
            logger.error(f"Database reconnect failed: {error}")

        logger.error(
            f"Database reconnect gave up after {self.reconnect_max_attempts} attempts; "
            f"waiting for next use"
        )

    # ========== Readiness gate ==========

    async def await_ready(self, max_wait: Optional[float] = None) -> "DatabaseManager":
        """
        Resolve once the connection is up AND consecutive pings succeed.

        Raises DatabaseNotReadyError when max_wait elapses first.
        """
        max_wait = self.ready_max_wait if max_wait is None else max_wait

        if self._state is ConnectionState.CONNECTED and self._is_settled():
            if await self.ping():
                return self
            self._mark_disconnected(self._last_error)

        if self._state is ConnectionState.DISCONNECTED:
            self._schedule_reconnect()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_wait
        stable_checks = 0

        while True:
            if self._state is ConnectionState.CONNECTED:
                if await self.ping():
                    stable_checks += 1
                    if stable_checks >= self.required_stable_checks:
                        return self
                else:
                    stable_checks = 0
                    self._mark_disconnected(self._last_error)
            else:
                stable_checks = 0

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.ready_check_interval, remaining))

        raise DatabaseNotReadyError(
            f"Database connection not available after {max_wait:.1f} seconds. "
            f"Current state: {self._state.value}"
        )

    # ========== Query execution ==========

    @contextmanager
    def session(self):
        db: Session = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _run_sync(self, fn: Callable[[Session], Any], attempt: "_Attempt"):
        db: Session = self.SessionLocal()
        try:
            attempt.dbapi_connection = db.connection().connection.dbapi_connection
            result = fn(db)
            if not attempt.begin_commit():
                raise TransientDatabaseError("Query abandoned after timeout")
            db.commit()
            return result
        except BaseException:
            db.rollback()
            raise
        finally:
            db.close()

    async def _run(self, query_name: str, fn: Callable[[Session], Any], timeout: float):
        """
        One attempt: fn runs on a worker thread inside its own transaction.

        When the timeout wins before the worker starts committing, the
        attempt is cancelled: the in-flight statement is interrupted where
        the driver supports it and the transaction is rolled back. A commit
        already under way is awaited instead.
        """
        attempt = _Attempt()
        task = asyncio.ensure_future(run_in_threadpool(self._run_sync, fn, attempt))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            attempt.cancel()
            task.add_done_callback(_consume_result)
            raise

        if task in done:
            return task.result()

        if attempt.cancel():
            task.add_done_callback(_consume_result)
            logger.warning(f"[{query_name}] Timed out after {timeout}s; transaction rolled back")
            raise TransientDatabaseError(f"{query_name} timed out after {timeout}s")

        return await task

    async def execute(
        self,
        query_name: str,
        fn: Callable[[Session], Any],
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        """
        Run fn(session) racing a timeout, retrying transient failures.

        Waits min(2^n * base, max_delay) between attempts. Permanent errors
        and readiness failures surface immediately; exhausting the budget
        raises RetryExhaustedError. A timed-out attempt never commits.
        """
        timeout = self.query_timeout if timeout is None else timeout
        max_retries = self.max_retries if max_retries is None else max_retries
        attempt = 0

        while True:
            attempt += 1
            if attempt > 1 or self._state is not ConnectionState.CONNECTED:
                await self.await_ready(self.retry_ready_wait)

            try:
                return await self._run(query_name, fn, timeout)
            except Exception as e:
                error = e

            kind = classify_error(error)
            if kind is not ErrorKind.TRANSIENT:
                logger.error(f"[{query_name}] Query failed: {error}")
                raise error

            logger.warning(f"[{query_name}] Query error (attempt {attempt}/{max_retries}): {error}")
            if attempt >= max_retries:
                logger.error(f"[{query_name}] Query failed after {attempt} attempts")
                raise RetryExhaustedError(query_name, attempt, error) from error

            delay = min(self.retry_base_delay * (2 ** (attempt - 1)), self.retry_max_delay)
            await asyncio.sleep(delay)


class _Attempt:
    """Cancel flag shared by the waiting coroutine and the worker thread"""

    def __init__(self):
        self._lock = threading.Lock()
        self.cancelled = False
        self.committing = False
        self.dbapi_connection = None

    def begin_commit(self) -> bool:
        with self._lock:
            if self.cancelled:
                return False
            self.committing = True
            return True

    def cancel(self) -> bool:
        """False when the worker already started committing"""
        with self._lock:
            if self.committing:
                return False
            self.cancelled = True
            connection = self.dbapi_connection

        # psycopg2 connections expose a thread-safe cancel()
        cancel = getattr(connection, "cancel", None)
        if cancel is not None:
            try:
                cancel()
            except Exception as e:
                logger.warning(f"Could not cancel running statement: {e}")
        return True


def _consume_result(task: "asyncio.Future"):
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug(f"Abandoned query finished with: {error}")
