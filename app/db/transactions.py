"""MongoDB multi-document transactions with a bounded retry on lost races."""

from collections.abc import Awaitable, Callable
from typing import TypeVar

from motor.motor_asyncio import AsyncIOMotorClientSession
from pymongo.errors import PyMongoError

from app.core.config import get_settings
from app.core.exceptions import InternalError
from app.core.logging import get_logger
from app.db.init import get_client

log = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_LABELS = ("TransientTransactionError", "UnknownTransactionCommitResult")


def _is_retryable(exc: PyMongoError) -> bool:
    return any(exc.has_error_label(label) for label in RETRYABLE_LABELS)


async def run_atomic(
    fn: Callable[[AsyncIOMotorClientSession | None], Awaitable[T]],
    op: str,
) -> T:
    """
    Run fn(session) inside one transaction; retry on write conflicts, then raise InternalError.
    With MONGODB_TRANSACTIONS disabled fn runs once with session=None and must order its
    writes so that a failure leaves the balance consistent with the ledger.
    """
    settings = get_settings()
    if not settings.mongodb_transactions:
        return await fn(None)

    client = get_client()
    attempts = max(1, settings.ledger_conflict_retries)
    for attempt in range(1, attempts + 1):
        try:
            async with await client.start_session() as session:
                async with session.start_transaction():
                    return await fn(session)
        except PyMongoError as exc:
            if not _is_retryable(exc):
                raise
            log.warning("transaction_conflict", op=op, attempt=attempt, error=str(exc))
    log.error("transaction_conflict_exhausted", op=op, attempts=attempts)
    raise InternalError(f"Could not complete {op}, please retry")
