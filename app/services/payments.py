"""Razorpay orders for credit packages and webhook reconciliation into the ledger."""

import json
from datetime import datetime

from beanie import PydanticObjectId
from beanie.operators import NotIn, Set
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ForbiddenError, NotFoundError
from app.core.logging import get_logger
from app.core.security import verify_razorpay_webhook
from app.models.payment import Payment
from app.models.user import User
from app.services import credits as credits_service

log = get_logger(__name__)

CREDIT_PACKAGES = {
    "starter": {"id": "starter", "name": "Starter Pack", "price": 199, "credits": 100, "bonus_credits": 0},
    "popular": {"id": "popular", "name": "Popular Pack", "price": 999, "credits": 500, "bonus_credits": 50},
    "creator": {"id": "creator", "name": "Creator Pack", "price": 4999, "credits": 2500, "bonus_credits": 400},
    "pro": {"id": "pro", "name": "Pro Pack", "price": 9999, "credits": 5000, "bonus_credits": 1000},
}

# Razorpay webhook event -> payment status
EVENT_STATUS = {
    "payment.captured": "succeeded",
    "order.paid": "succeeded",
    "payment.failed": "failed",
}


def list_packages() -> list[dict]:
    return list(CREDIT_PACKAGES.values())


async def create_order(user_id: PydanticObjectId, package_id: str) -> dict:
    """Create Razorpay order for a package; return order_id and amount for frontend."""
    import razorpay
    settings = get_settings()
    package = CREDIT_PACKAGES.get(package_id)
    if not package:
        raise BadRequestError("Invalid package ID")
    if not settings.razorpay_key_id or not settings.razorpay_key_secret:
        raise BadRequestError("Payments not configured")
    user = await User.get(user_id)
    if not user:
        raise NotFoundError("User not found")
    client = razorpay.Client(auth=(settings.razorpay_key_id, settings.razorpay_key_secret))
    order = client.order.create({
        "amount": package["price"],
        "currency": settings.payments_currency,
        "notes": {
            "user_id": str(user_id),
            "package_id": package_id,
            "credits": str(package["credits"]),
            "bonus_credits": str(package["bonus_credits"]),
        },
    })
    await Payment(
        order_id=order["id"],
        user_id=user_id,
        package_id=package_id,
        amount=package["price"],
        currency=settings.payments_currency,
        credits=package["credits"],
        bonus_credits=package["bonus_credits"],
    ).insert()
    log.info("payment_order_created", user_id=str(user_id), order_id=order["id"], package_id=package_id)
    return {
        "order_id": order["id"],
        "amount": order["amount"],
        "currency": order["currency"],
        "key_id": settings.razorpay_key_id,
    }


def _payment_from_notes(order_id: str, notes: dict) -> Payment:
    """Rebuild a payment record from order notes when the local record is missing."""
    try:
        user_id = PydanticObjectId(notes["user_id"])
        package_id = notes["package_id"]
        credits = int(notes["credits"])
        bonus_credits = int(notes.get("bonus_credits") or 0)
    except (KeyError, TypeError, ValueError, InvalidId) as e:
        raise BadRequestError(f"Missing or invalid payment metadata for order {order_id}") from e
    package = CREDIT_PACKAGES.get(package_id, {})
    return Payment(
        order_id=order_id,
        user_id=user_id,
        package_id=package_id,
        amount=package.get("price", 0),
        credits=credits,
        bonus_credits=bonus_credits,
    )


async def _get_or_restore_payment(order_id: str, notes: dict | None) -> Payment:
    payment = await Payment.find_one(Payment.order_id == order_id)
    if payment:
        return payment
    payment = _payment_from_notes(order_id, notes or {})
    try:
        await payment.insert()
    except DuplicateKeyError:
        payment = await Payment.find_one(Payment.order_id == order_id)
    log.warning("payment_restored_from_notes", order_id=order_id)
    return payment


async def reconcile_payment(
    order_id: str,
    status: str,
    provider_payment_id: str | None = None,
    notes: dict | None = None,
) -> Payment:
    """
    Apply a payment outcome. Success grants credits once per order (replays are no-ops);
    failure and cancellation only touch the payment status, never a succeeded one.
    """
    if status not in ("succeeded", "failed", "canceled"):
        raise BadRequestError(f"Unsupported payment status: {status}")
    payment = await _get_or_restore_payment(order_id, notes)

    if status == "succeeded":
        result = await credits_service.grant_purchase(
            payment.order_id,
            payment.user_id,
            payment.credits,
            payment.bonus_credits,
            provider_payment_id=provider_payment_id,
        )
        if result.applied:
            await log_event(
                str(payment.user_id),
                "payment_succeeded",
                "payment",
                payment.order_id,
                {"credits": payment.credits, "bonus_credits": payment.bonus_credits, "payment_id": provider_payment_id},
            )
        return await Payment.get(payment.id)

    await Payment.find_one(
        Payment.order_id == order_id,
        NotIn(Payment.status, ["succeeded", status]),
    ).update(Set({Payment.status: status, Payment.updated_at: datetime.utcnow()}))
    log.info("payment_status_updated", order_id=order_id, status=status)
    return await Payment.get(payment.id)


async def handle_webhook(payload: bytes, signature: str) -> None:
    """Verify HMAC and reconcile; any error propagates so the event is not acknowledged."""
    settings = get_settings()
    if not settings.razorpay_webhook_secret:
        raise BadRequestError("Webhook secret not configured")
    if not verify_razorpay_webhook(payload, signature, settings.razorpay_webhook_secret):
        raise BadRequestError("Invalid webhook signature")
    try:
        data = json.loads(payload.decode())
    except (UnicodeDecodeError, ValueError) as e:
        raise BadRequestError("Invalid webhook payload") from e
    event = data.get("event")
    status = EVENT_STATUS.get(event)
    if status is None:
        log.info("webhook_event_ignored", webhook_event=event)
        return
    payment = data.get("payload", {}).get("payment", {}).get("entity", {})
    order_id = payment.get("order_id")
    if not order_id:
        raise BadRequestError("Webhook payment has no order_id")
    log.info("webhook_event_received", webhook_event=event, order_id=order_id)
    await reconcile_payment(order_id, status, provider_payment_id=payment.get("id"), notes=payment.get("notes") or {})


async def cancel_order(order_id: str, user_id: PydanticObjectId) -> Payment:
    """User closed checkout without paying."""
    payment = await Payment.find_one(Payment.order_id == order_id)
    if not payment:
        raise NotFoundError("Payment not found")
    if payment.user_id != user_id:
        raise ForbiddenError("Access denied")
    return await reconcile_payment(order_id, "canceled")


async def list_payments(user_id: PydanticObjectId, limit: int = 20, offset: int = 0) -> list[Payment]:
    return (
        await Payment.find(Payment.user_id == user_id)
        .sort(-Payment.created_at)
        .skip(offset)
        .limit(limit)
        .to_list()
    )
