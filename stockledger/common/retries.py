import asyncio
import random
from typing import Any, Awaitable, Callable, Dict, Optional, Type, TypeVar
from pydantic import BaseModel, Field
from sqlalchemy import select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from stockledger.common.custom_exceptions import ConcurrencyConflictError, InventoryError, RetryExhaustedError
from stockledger.common.logging_setup import get_logger
from stockledger.common.utils import now
from stockledger.config.settings import config_settings
from stockledger.db.utils import is_postgres
from metrics.custom_instrumentator import txn_exhausted, txn_retries

logger = get_logger("stockledger.retries")

T = TypeVar("T")

MAX_BACKOFF_SECONDS = 30.0

# serialization_failure, deadlock_detected
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01"})
UNIQUE_VIOLATION_SQLSTATE = "23505"

TRANSIENT_MESSAGE_MARKERS = (
    "could not serialize",
    "deadlock detected",
    "database is locked",
    "write conflict",
    "transaction aborted",
    "interrupted",
)

_DEFAULT = object()


class RetryPolicy(BaseModel):
    """Bounds and backoff shape shared by both retry executors. Delays are in seconds."""

    model_config = {"frozen": True}

    max_retries: int = Field(default=5, ge=0)
    initial_delay: float = Field(default=0.1, ge=0)
    max_delay: float = Field(default=MAX_BACKOFF_SECONDS, ge=0)
    jitter_low: float = Field(default=0.7, gt=0)
    jitter_high: float = Field(default=1.3, gt=0)


def compute_backoff(attempt: int, initial_delay: float, *, max_delay: float = MAX_BACKOFF_SECONDS,
                    jitter_low: float = 0.7, jitter_high: float = 1.3, rng=random) -> float:
    """initial_delay * 2^(attempt-1) scaled by a uniform jitter factor, capped at max_delay."""
    base_delay = initial_delay * (2 ** (attempt - 1))
    return min(base_delay * rng.uniform(jitter_low, jitter_high), max_delay)


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    # asyncpg errors come wrapped by the sqlalchemy adapter, the real one is the cause
    for candidate in (orig, getattr(orig, "__cause__", None)):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def is_transient_error(exc: BaseException) -> bool:
    """True when the failure came from contention or a dropped connection and a fresh attempt may succeed."""
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, ConcurrencyConflictError):
        return True
    if isinstance(exc, InventoryError):
        return False

    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        if _sqlstate(exc) in TRANSIENT_SQLSTATES:
            return True
        if isinstance(exc, IntegrityError):
            return False
        orig = exc.orig
        msg = str(orig if orig is not None else exc).lower()
        if any(marker in msg for marker in TRANSIENT_MESSAGE_MARKERS):
            return True
        name = type(orig).__name__.lower() if orig is not None else ""
        return any(k in name for k in ("timeout", "connectionreset", "connectiondoesnotexist", "brokenpipe"))

    if isinstance(exc, (TimeoutError, ConnectionResetError, ConnectionAbortedError)):
        return True
    return False


def is_concurrency_conflict(exc: BaseException) -> bool:
    """Conflicts the optimistic executor knows how to resolve by re-reading."""
    if isinstance(exc, (ConcurrencyConflictError, StaleDataError)):
        return True
    if isinstance(exc, IntegrityError):
        if _sqlstate(exc) == UNIQUE_VIOLATION_SQLSTATE:
            return True
        msg = str(exc.orig if exc.orig is not None else exc).lower()
        return "unique" in msg or "duplicate" in msg
    return False


def _resolve_policy(policy: Optional[RetryPolicy], max_retries: Optional[int],
                    initial_delay: Optional[float], default_delay: float) -> RetryPolicy:
    base = policy or RetryPolicy(max_retries=config_settings.TXN_MAX_RETRIES, initial_delay=default_delay)
    overrides: Dict[str, Any] = {}
    if max_retries is not None:
        overrides["max_retries"] = max_retries
    if initial_delay is not None:
        overrides["initial_delay"] = initial_delay
    return base.model_copy(update=overrides) if overrides else base


async def _run_with_retries(attempt_fn: Callable[[], Awaitable[T]], *, policy: RetryPolicy, executor: str,
                            log_prefix: str, should_retry: Callable[[BaseException], bool]) -> T:
    attempt = 0
    while True:
        attempt += 1
        if attempt > 1:
            logger.info("%s: retry attempt %d of %d", log_prefix, attempt - 1, policy.max_retries)
        try:
            return await attempt_fn()
        except Exception as exc:
            if not should_retry(exc):
                logger.debug("%s: non-retryable failure on attempt %d: %r", log_prefix, attempt, exc)
                raise

            if attempt > policy.max_retries:
                txn_exhausted.labels(executor=executor, prefix=log_prefix).inc()
                logger.error("%s: giving up after %d attempts: %r", log_prefix, attempt, exc)
                raise RetryExhaustedError(
                    f"{log_prefix}: transaction failed after {attempt} attempts",
                    attempts=attempt,
                    last_error=exc,
                ) from exc

            delay = compute_backoff(attempt, policy.initial_delay, max_delay=policy.max_delay,
                                    jitter_low=policy.jitter_low, jitter_high=policy.jitter_high)
            txn_retries.labels(executor=executor, prefix=log_prefix).inc()
            logger.debug("%s: transient failure (%r), retrying in %.3fs", log_prefix, exc, delay)
            await asyncio.sleep(delay)


async def _configure_transaction(session: AsyncSession, isolation_level: Optional[str]) -> None:
    bind = session.get_bind()
    # must run before anything else touches the connection of this transaction
    if isolation_level and bind.dialect.name != "sqlite":
        await session.connection(execution_options={"isolation_level": isolation_level})
    if is_postgres(bind):
        await session.execute(text("SET LOCAL synchronous_commit TO on"))


async def with_transaction(
    operation: Callable[[AsyncSession], Awaitable[T]],
    *,
    session_factory: Optional[async_sessionmaker] = None,
    max_retries: Optional[int] = None,
    log_prefix: str = "Transaction",
    initial_delay: Optional[float] = None,
    isolation_level: Any = _DEFAULT,
    policy: Optional[RetryPolicy] = None,
) -> T:
    """
    Run operation(session) inside a transaction and commit it.

    Transient failures (see is_transient_error) roll back and retry the whole
    operation with a fresh session, anything else is re-raised untouched.
    Raises RetryExhaustedError once the retry budget is spent.
    """
    if session_factory is None:
        from stockledger.db.connection import async_session
        session_factory = async_session
    if isolation_level is _DEFAULT:
        isolation_level = config_settings.TXN_ISOLATION_LEVEL

    retry_policy = _resolve_policy(policy, max_retries, initial_delay, config_settings.TXN_INITIAL_DELAY)

    async def attempt() -> T:
        async with session_factory() as session:
            async with session.begin():
                await _configure_transaction(session, isolation_level)
                result = await operation(session)
            logger.debug("%s: transaction committed", log_prefix)
            return result

    return await _run_with_retries(attempt, policy=retry_policy, executor="transaction",
                                   log_prefix=log_prefix, should_retry=is_transient_error)


async def with_optimistic_concurrency(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: Optional[int] = None,
    log_prefix: str = "OptimisticConcurrency",
    initial_delay: Optional[float] = None,
    policy: Optional[RetryPolicy] = None,
) -> T:
    """Retry operation() when it reports a concurrency conflict. No transaction is opened here."""
    retry_policy = _resolve_policy(policy, max_retries, initial_delay, config_settings.OCC_INITIAL_DELAY)
    return await _run_with_retries(operation, policy=retry_policy, executor="optimistic",
                                   log_prefix=log_prefix, should_retry=is_concurrency_conflict)


async def update_with_versioning(
    session_factory: async_sessionmaker,
    model: Type[Any],
    filters: Dict[str, Any],
    values: Dict[str, Any],
    *,
    max_retries: Optional[int] = None,
    log_prefix: str = "VersionedUpdate",
):
    """
    Single-row conditional update guarded by the row's version column.

    Returns the updated row, or None when nothing matches filters.
    """
    if "version" in values:
        raise ValueError("version is managed by update_with_versioning")

    criteria = [getattr(model, column) == value for column, value in filters.items()]

    async def attempt():
        async with session_factory() as session:
            async with session.begin():
                res = await session.execute(select(model).where(*criteria))
                current = res.scalars().first()
                if current is None:
                    return None

                observed_version = current.version
                changes = dict(values)
                if hasattr(model, "updated_at"):
                    changes.setdefault("updated_at", now())

                stmt = (
                    update(model)
                    .where(*criteria, model.version == observed_version)
                    .values(**changes, version=observed_version + 1)
                    .execution_options(synchronize_session=False)
                )
                upd = await session.execute(stmt)
                if upd.rowcount == 0:
                    raise ConcurrencyConflictError(
                        f"{model.__name__} modified concurrently (expected version {observed_version})",
                        details={"expected_version": observed_version},
                    )
                await session.refresh(current)
            return current

    return await with_optimistic_concurrency(attempt, max_retries=max_retries, log_prefix=log_prefix)
