from datetime import datetime
from typing import Literal

from beanie import Document, PydanticObjectId
from pydantic import Field

VideoStatus = Literal["pending", "processing", "completed", "failed"]

TERMINAL_STATUSES = ("completed", "failed")
MOODS = ("joyful", "calm", "epic", "mysterious")


class VideoCreation(Document):
    user_id: PydanticObjectId
    title: str = "Untitled Creation"
    prompt: str
    mood: str
    original_image_url: str
    status: VideoStatus = "pending"
    provider_job_id: str | None = None
    error: str | None = None
    video_url: str | None = None
    thumbnail_url: str | None = None
    credits_charged: int = 0
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "video_creations"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("provider_job_id", 1)],
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
