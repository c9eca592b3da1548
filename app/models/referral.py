from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, IndexModel


class Referral(Document):
    """Referrer -> referee relationship with one-shot bonus flags."""
    referrer_id: PydanticObjectId
    referred_user_id: PydanticObjectId  # unique: a user has at most one referrer
    referral_code: str
    signup_bonus_awarded: bool = False
    first_video_bonus_awarded: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "referrals"
        indexes = [
            IndexModel([("referred_user_id", ASCENDING)], unique=True),
            [("referrer_id", 1), ("created_at", -1)],
        ]
