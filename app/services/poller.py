"""Bounded polling of a generation job until it reaches a terminal status."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from app.core.logging import get_logger
from app.models.video_creation import VideoCreation

log = get_logger(__name__)

STILL_PROCESSING_MESSAGE = "Your video is taking longer than expected. It is still processing; check back shortly."


@dataclass
class PollOutcome:
    video: VideoCreation
    attempts: int
    timed_out: bool


async def wait_for_terminal(
    fetch: Callable[[], Awaitable[VideoCreation]],
    max_attempts: int,
    interval_seconds: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PollOutcome:
    """
    Call fetch() until the job is completed/failed or max_attempts is reached.
    Timing out does not touch the job; it stays pollable. Cancellation propagates
    from the sleep, so an abandoned request stops polling.
    """
    attempts = 0
    while True:
        video = await fetch()
        attempts += 1
        if video.is_terminal:
            return PollOutcome(video=video, attempts=attempts, timed_out=False)
        if attempts >= max_attempts:
            log.info("video_poll_timeout", video_id=str(video.id), attempts=attempts, status=video.status)
            return PollOutcome(video=video, attempts=attempts, timed_out=True)
        await sleep(interval_seconds)
