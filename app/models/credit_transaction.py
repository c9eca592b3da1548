from datetime import datetime
from typing import Literal

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field

TransactionType = Literal["earned", "spent", "purchased", "bonus"]
TransactionSource = Literal[
    "signup",
    "checkin",
    "referral",
    "referral_signup",
    "referral_first_video",
    "purchase",
    "video_generation",
    "admin_award",
]


class CreditTransaction(Document):
    """Append-only ledger entry. Never updated or deleted once committed."""
    user_id: PydanticObjectId
    amount: int  # positive = credit, negative = debit
    balance_after: int
    type: TransactionType
    source: TransactionSource
    description: str = ""
    related_id: str | None = None  # video creation id, payment order id, referral id
    idempotency_key: Indexed(str, unique=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_transactions"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("related_id", 1)],
        ]
