from fastapi import APIRouter, Depends, Query

from app.core.pagination import paginate
from app.deps import get_current_user
from app.models.user import User
from app.services import credits as credits_service

router = APIRouter()


@router.get("/balance")
async def credits_balance(user: User = Depends(get_current_user)):
    """Return current credit balance and next check-in time."""
    balance = await credits_service.get_balance(user.id)
    next_at = credits_service.next_checkin_at(user.last_checkin_date)
    return {"balance": balance, "next_checkin_at": next_at.isoformat() if next_at else None}


@router.post("/checkin")
async def credits_checkin(user: User = Depends(get_current_user)):
    """Daily check-in bonus; 409 CHECKIN_NOT_AVAILABLE until the interval has passed."""
    result = await credits_service.daily_checkin(user.id)
    return {"credits_earned": result.entry.amount, "new_balance": result.balance}


@router.get("/ledger")
async def credits_ledger(
    user: User = Depends(get_current_user),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for current user (newest first)."""
    limit, offset = paginate(limit, offset)
    entries = await credits_service.list_transactions(user.id, limit=limit, offset=offset)
    out = [
        {
            "id": str(e.id),
            "amount": e.amount,
            "balance_after": e.balance_after,
            "type": e.type,
            "source": e.source,
            "description": e.description,
            "related_id": e.related_id,
            "created_at": e.created_at.isoformat(),
        }
        for e in entries
    ]
    return {"entries": out, "limit": limit, "offset": offset}
