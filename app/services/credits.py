"""
Credit ledger: the only code path that changes User.credits.

Every mutation is one conditional update on the user document (the race guard)
followed by one append to credit_transactions, both inside run_atomic. The
idempotency key on the transaction makes replays and retries no-ops, so
User.credits always equals the sum of the user's transaction amounts.
"""

import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, NamedTuple, get_args

from beanie import PydanticObjectId
from beanie.odm.queries.update import UpdateResponse
from beanie.operators import Eq, Inc, Or, Set
from pymongo.errors import DuplicateKeyError

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, CheckInNotAvailableError, InsufficientCreditsError, NotFoundError
from app.core.logging import get_logger
from app.db.transactions import run_atomic
from app.models.credit_transaction import CreditTransaction, TransactionSource, TransactionType
from app.models.payment import Payment
from app.models.user import User

log = get_logger(__name__)

SOURCES = get_args(TransactionSource)


class LedgerResult(NamedTuple):
    entry: CreditTransaction
    balance: int
    applied: bool  # False when the idempotency key had already been used


def _validate(amount: int, source: str) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise BadRequestError("Amount must be a positive integer")
    if source not in SOURCES:
        raise BadRequestError(f"Invalid source: {source}")


async def _apply(
    user_id: PydanticObjectId,
    amount: int,
    tx_type: str,
    source: str,
    *,
    op: str,
    description: str = "",
    related_id: str | None = None,
    idempotency_key: str | None = None,
    conditions: tuple[Any, ...] = (),
    extra_set: dict[Any, Any] | None = None,
    on_applied: Callable[[Any], Awaitable[None]] | None = None,
) -> LedgerResult | None:
    """
    Apply a signed amount if the user matches `conditions`.
    Returns None when no user matched (missing user or a failed condition).
    """
    # Fixed before the first attempt so a retried transaction reuses it.
    key = idempotency_key or uuid.uuid4().hex

    async def _run(session) -> LedgerResult | None:
        existing = await CreditTransaction.find_one(CreditTransaction.idempotency_key == key, session=session)
        if existing:
            if on_applied:
                await on_applied(session)
            user = await User.get(user_id, session=session)
            return LedgerResult(existing, user.credits if user else 0, False)

        now = datetime.utcnow()
        user = await User.find_one(User.id == user_id, *conditions).update(
            Inc({User.credits: amount}),
            Set({User.updated_at: now, **(extra_set or {})}),
            session=session,
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        if user is None:
            return None

        entry = CreditTransaction(
            user_id=user_id,
            amount=amount,
            balance_after=user.credits,
            type=tx_type,
            source=source,
            description=description,
            related_id=related_id,
            idempotency_key=key,
            created_at=now,
        )
        try:
            await entry.insert(session=session)
        except DuplicateKeyError:
            if session is None:
                # Lost the race for this key without a transaction to roll back.
                await User.find_one(User.id == user_id).update(Inc({User.credits: -amount}))
            raise
        if on_applied:
            await on_applied(session)
        return LedgerResult(entry, user.credits, True)

    try:
        return await run_atomic(_run, op=op)
    except DuplicateKeyError:
        existing = await CreditTransaction.find_one(CreditTransaction.idempotency_key == key)
        user = await User.get(user_id)
        log.info("ledger_replay_race", op=op, user_id=str(user_id), idempotency_key=key)
        return LedgerResult(existing, user.credits if user else 0, False)


async def get_balance(user_id: PydanticObjectId) -> int:
    """Return current balance for user."""
    user = await User.get(user_id)
    if not user:
        raise NotFoundError("User not found")
    return user.credits


async def earn(
    user_id: PydanticObjectId,
    amount: int,
    source: str,
    related_id: str | None = None,
    *,
    description: str = "",
    idempotency_key: str | None = None,
    tx_type: TransactionType = "earned",
) -> LedgerResult:
    """Credit the user. Always succeeds if the user exists."""
    _validate(amount, source)
    result = await _apply(
        user_id,
        amount,
        tx_type,
        source,
        op="earn",
        description=description,
        related_id=related_id,
        idempotency_key=idempotency_key,
    )
    if result is None:
        raise NotFoundError("User not found")
    if result.applied:
        log.info("credits_earned", user_id=str(user_id), amount=amount, source=source, balance=result.balance)
    return result


async def spend(
    user_id: PydanticObjectId,
    amount: int,
    source: str,
    related_id: str | None = None,
    *,
    description: str = "",
    idempotency_key: str | None = None,
) -> LedgerResult:
    """Debit the user with a single conditional decrement; never drives the balance below zero."""
    _validate(amount, source)
    result = await _apply(
        user_id,
        -amount,
        "spent",
        source,
        op="spend",
        description=description or "Credits spent",
        related_id=related_id,
        idempotency_key=idempotency_key,
        conditions=(User.credits >= amount,),
    )
    if result is None:
        user = await User.get(user_id)
        if not user:
            raise NotFoundError("User not found")
        log.info("credits_insufficient", user_id=str(user_id), required=amount, available=user.credits)
        raise InsufficientCreditsError(required=amount, available=user.credits)
    if result.applied:
        log.info("credits_spent", user_id=str(user_id), amount=amount, source=source, balance=result.balance)
    return result


def next_checkin_at(last_checkin_date: datetime | None) -> datetime | None:
    if last_checkin_date is None:
        return None
    return last_checkin_date + timedelta(hours=get_settings().checkin_interval_hours)


async def daily_checkin(user_id: PydanticObjectId) -> LedgerResult:
    """Grant the daily bonus at most once per interval; eligibility check and grant are one update."""
    settings = get_settings()
    now = datetime.utcnow()
    cutoff = now - timedelta(hours=settings.checkin_interval_hours)
    result = await _apply(
        user_id,
        settings.daily_checkin_bonus,
        "earned",
        "checkin",
        op="daily_checkin",
        description="Daily check-in bonus",
        conditions=(Or(Eq(User.last_checkin_date, None), User.last_checkin_date <= cutoff),),
        extra_set={User.last_checkin_date: now},
    )
    if result is None:
        user = await User.get(user_id)
        if not user:
            raise NotFoundError("User not found")
        next_at = next_checkin_at(user.last_checkin_date)
        raise CheckInNotAvailableError(
            f"Next check-in available at {next_at.isoformat()}",
            details={"next_checkin_at": next_at.isoformat()},
        )
    log.info("daily_checkin", user_id=str(user_id), amount=settings.daily_checkin_bonus, balance=result.balance)
    return result


async def grant_purchase(
    payment_id: str,
    user_id: PydanticObjectId,
    credits: int,
    bonus_credits: int = 0,
    provider_payment_id: str | None = None,
) -> LedgerResult:
    """
    Grant credits + bonus_credits for a payment and mark it succeeded in the same unit.
    Keyed by payment id: a replayed success event is a no-op.
    """
    total = credits + bonus_credits
    _validate(total, "purchase")

    async def _mark_succeeded(session) -> None:
        fields = {Payment.status: "succeeded", Payment.updated_at: datetime.utcnow()}
        if provider_payment_id:
            fields[Payment.provider_payment_id] = provider_payment_id
        await Payment.find_one(Payment.order_id == payment_id).update(Set(fields), session=session)

    result = await _apply(
        user_id,
        total,
        "purchased",
        "purchase",
        op="grant_purchase",
        description=f"Purchased {credits} credits" + (f" + {bonus_credits} bonus" if bonus_credits else ""),
        related_id=payment_id,
        idempotency_key=f"purchase:{payment_id}",
        on_applied=_mark_succeeded,
    )
    if result is None:
        raise NotFoundError("User not found")
    if result.applied:
        log.info("credits_purchased", user_id=str(user_id), payment_id=payment_id, amount=total, balance=result.balance)
    else:
        log.info("purchase_replay_ignored", user_id=str(user_id), payment_id=payment_id)
    return result


async def list_transactions(user_id: PydanticObjectId, limit: int = 50, offset: int = 0) -> list[CreditTransaction]:
    """Ledger entries for user, newest first."""
    return (
        await CreditTransaction.find(CreditTransaction.user_id == user_id)
        .sort(-CreditTransaction.created_at)
        .skip(offset)
        .limit(limit)
        .to_list()
    )


async def verify_balance(user_id: PydanticObjectId) -> dict:
    """Compare the stored balance with the sum of the user's ledger."""
    balance = await get_balance(user_id)
    entries = await CreditTransaction.find(CreditTransaction.user_id == user_id).to_list()
    ledger_total = sum(e.amount for e in entries)
    if ledger_total != balance:
        log.error("ledger_mismatch", user_id=str(user_id), balance=balance, ledger_total=ledger_total)
    return {
        "balance": balance,
        "ledger_total": ledger_total,
        "transactions": len(entries),
        "consistent": ledger_total == balance,
    }
