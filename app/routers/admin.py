from beanie import PydanticObjectId
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.core.audit import log_event
from app.deps import require_admin
from app.models.user import User
from app.services import credits as credits_service

router = APIRouter()


class CreditAdjustRequest(BaseModel):
    amount: int = Field(..., gt=0)
    description: str = ""
    idempotency_key: str | None = None


@router.post("/users/{user_id}/credits/award")
async def admin_award_credits(
    user_id: PydanticObjectId,
    body: CreditAdjustRequest,
    admin: User = Depends(require_admin),
):
    """Admin: award credits (source admin_award)."""
    result = await credits_service.earn(
        user_id,
        body.amount,
        "admin_award",
        related_id=str(admin.id),
        description=body.description or "Credits awarded by admin",
        idempotency_key=body.idempotency_key,
    )
    if result.applied:
        await log_event(str(user_id), "admin_award", "user", str(user_id), {"amount": body.amount}, actor_id=str(admin.id))
    return {"credits_awarded": body.amount, "new_balance": result.balance, "applied": result.applied}


@router.post("/users/{user_id}/credits/deduct")
async def admin_deduct_credits(
    user_id: PydanticObjectId,
    body: CreditAdjustRequest,
    admin: User = Depends(require_admin),
):
    """Admin: deduct credits through the same conditional spend; 402 if the balance is too low."""
    result = await credits_service.spend(
        user_id,
        body.amount,
        "admin_award",
        related_id=str(admin.id),
        description=body.description or "Credits deducted by admin",
        idempotency_key=body.idempotency_key,
    )
    if result.applied:
        await log_event(str(user_id), "admin_deduct", "user", str(user_id), {"amount": body.amount}, actor_id=str(admin.id))
    return {"credits_deducted": body.amount, "new_balance": result.balance, "applied": result.applied}


@router.get("/users/{user_id}/ledger-check")
async def admin_ledger_check(user_id: PydanticObjectId, admin: User = Depends(require_admin)):
    """Admin: compare stored balance with the sum of the ledger."""
    return await credits_service.verify_balance(user_id)
