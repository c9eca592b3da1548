from datetime import datetime
from typing import Literal

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field

PaymentStatus = Literal["pending", "succeeded", "failed", "canceled"]


class Payment(Document):
    """Razorpay order -> credit package, for webhook attribution and replay protection."""
    order_id: Indexed(str, unique=True)
    provider_payment_id: str | None = None
    user_id: PydanticObjectId
    package_id: str
    amount: int  # minor units
    currency: str = "USD"
    credits: int
    bonus_credits: int = 0
    status: PaymentStatus = "pending"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "payments"
        indexes = [[("user_id", 1), ("created_at", -1)]]
