from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel

from app.core.pagination import paginate
from app.deps import get_current_user
from app.models.payment import Payment
from app.models.user import User
from app.services import payments as payments_service

router = APIRouter()


class CreateOrderRequest(BaseModel):
    package_id: str


def payment_out(p: Payment) -> dict:
    return {
        "order_id": p.order_id,
        "package_id": p.package_id,
        "amount": p.amount,
        "currency": p.currency,
        "credits": p.credits,
        "bonus_credits": p.bonus_credits,
        "status": p.status,
        "created_at": p.created_at.isoformat(),
    }


@router.get("/packages")
async def packages():
    return {"packages": payments_service.list_packages()}


@router.get("")
async def payments_list(
    user: User = Depends(get_current_user),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    limit, offset = paginate(limit, offset, max_limit=100)
    items = await payments_service.list_payments(user.id, limit=limit, offset=offset)
    return {"payments": [payment_out(p) for p in items], "limit": limit, "offset": offset}


@router.post("/orders")
async def create_order(
    body: CreateOrderRequest,
    user: User = Depends(get_current_user),
):
    """Create Razorpay order for a credit package; frontend uses order_id for checkout."""
    return await payments_service.create_order(user.id, body.package_id)


@router.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: str, user: User = Depends(get_current_user)):
    """Checkout dismissed: mark a pending order canceled. No effect on a paid order."""
    payment = await payments_service.cancel_order(order_id, user.id)
    return payment_out(payment)


@router.post("/webhook")
async def razorpay_webhook(request: Request, x_razorpay_signature: str = Header(..., alias="X-Razorpay-Signature")):
    """Razorpay webhook: payment.captured / order.paid -> grant credits (idempotent); payment.failed -> status."""
    body = await request.body()
    await payments_service.handle_webhook(body, x_razorpay_signature)
    return {"status": "ok"}
