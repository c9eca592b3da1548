"""
Video generation jobs.

create_video: validate, pre-check balance, insert job (pending), submit to the
provider, and charge only after the provider accepted the job.
refresh_status: one caller-driven poll; terminal jobs are never re-polled.
"""

from datetime import datetime

from beanie import PydanticObjectId
from beanie.odm.queries.update import UpdateResponse
from beanie.operators import NotIn, Set
from bson.errors import InvalidId

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ForbiddenError, InsufficientCreditsError, NotFoundError, ProviderError
from app.core.logging import get_logger
from app.models.credit_transaction import CreditTransaction
from app.models.video_creation import MOODS, TERMINAL_STATUSES, VideoCreation
from app.services import credits as credits_service
from app.services import referrals as referrals_service
from app.services.generation_client import GenerationClient
from app.services.poller import PollOutcome, wait_for_terminal

log = get_logger(__name__)

SUBMIT_FAILED_MESSAGE = "There was an error starting the video generation. Please try again."


def validate_request(image_url: str, prompt: str, mood: str) -> None:
    settings = get_settings()
    if not image_url or not prompt or not mood:
        raise BadRequestError("Missing required fields: image_url, prompt, mood")
    if len(prompt) > settings.prompt_max_length:
        raise BadRequestError(f"Prompt must be {settings.prompt_max_length} characters or less")
    if mood not in MOODS:
        raise BadRequestError(f"Invalid mood. Must be one of: {', '.join(MOODS)}")


async def _mark_failed(video: VideoCreation, error: str) -> None:
    await video.set({
        VideoCreation.status: "failed",
        VideoCreation.error: error,
        VideoCreation.updated_at: datetime.utcnow(),
    })


async def create_video(
    user_id: PydanticObjectId,
    image_url: str,
    prompt: str,
    mood: str,
    client: GenerationClient,
    title: str | None = None,
) -> dict:
    image_url = (image_url or "").strip()
    prompt = (prompt or "").strip()
    validate_request(image_url, prompt, mood)

    cost = get_settings().video_creation_cost
    # Pre-check only; the charge itself is the ledger's conditional decrement.
    available = await credits_service.get_balance(user_id)
    if available < cost:
        raise InsufficientCreditsError(required=cost, available=available)

    video = VideoCreation(
        user_id=user_id,
        title=(title or "").strip() or "Untitled Creation",
        prompt=prompt,
        mood=mood,
        original_image_url=image_url,
    )
    await video.insert()
    log.info("video_created", video_id=str(video.id), user_id=str(user_id), mood=mood)

    try:
        result = await client.generate_video(image_url, prompt, mood)
    except ProviderError as exc:
        await _mark_failed(video, exc.message or "Video generation failed")
        log.warning("video_submit_failed", video_id=str(video.id), error=exc.message)
        raise ProviderError(SUBMIT_FAILED_MESSAGE, details={"video_creation_id": str(video.id)}) from exc

    if result.status == "failed":
        await video.set({VideoCreation.provider_job_id: result.id})
        await _mark_failed(video, result.error or "Video generation failed")
        log.warning("video_rejected_by_provider", video_id=str(video.id), generation_id=result.id)
        raise ProviderError(SUBMIT_FAILED_MESSAGE, details={"video_creation_id": str(video.id)})

    status = result.status or "pending"
    await video.set({
        VideoCreation.provider_job_id: result.id,
        # Completion is recorded by _apply_status below so the first-video bonus fires.
        VideoCreation.status: "processing" if status == "completed" else status,
        VideoCreation.updated_at: datetime.utcnow(),
    })

    charge_key = f"video_generation:{video.id}"
    try:
        charge = await credits_service.spend(
            user_id,
            cost,
            "video_generation",
            related_id=str(video.id),
            description="Video generation",
            idempotency_key=charge_key,
        )
    except InsufficientCreditsError:
        # A concurrent request spent the credits between the pre-check and the charge.
        await _mark_failed(video, "Insufficient credits")
        log.warning("video_charge_rejected", video_id=str(video.id), generation_id=result.id)
        raise
    except Exception as exc:
        # An uncharged job must never stay pollable, or it would complete for free.
        charged = await CreditTransaction.find_one(CreditTransaction.idempotency_key == charge_key)
        if charged is None:
            await _mark_failed(video, "Could not charge credits")
            log.error("video_charge_failed", video_id=str(video.id), generation_id=result.id, error=str(exc))
            raise
        log.warning("video_charge_error_after_commit", video_id=str(video.id), error=str(exc))
        charge = credits_service.LedgerResult(charged, await credits_service.get_balance(user_id), False)

    await video.set({VideoCreation.credits_charged: cost})
    await log_event(str(user_id), "video_charged", "video_creation", str(video.id), {"cost": cost, "generation_id": result.id})
    log.info("video_submitted", video_id=str(video.id), generation_id=result.id, status=status, balance=charge.balance)

    if status == "completed":
        await _apply_status(video, result)

    return {
        "video_creation_id": str(video.id),
        "generation_id": result.id,
        "status": status,
        "credits_remaining": charge.balance,
    }


async def get_video_for_user(video_id: str, user_id: PydanticObjectId) -> VideoCreation:
    try:
        oid = PydanticObjectId(video_id)
    except (InvalidId, TypeError):
        raise NotFoundError("Video creation not found")
    video = await VideoCreation.get(oid)
    if not video:
        raise NotFoundError("Video creation not found")
    if video.user_id != user_id:
        raise ForbiddenError("Access denied")
    return video


async def _apply_status(video: VideoCreation, result) -> VideoCreation:
    """Persist a newly observed status unless another poll already reached a terminal one."""
    now = datetime.utcnow()
    fields = {VideoCreation.status: result.status, VideoCreation.updated_at: now}
    if result.video_url:
        fields[VideoCreation.video_url] = result.video_url
    if result.thumbnail_url:
        fields[VideoCreation.thumbnail_url] = result.thumbnail_url
    if result.error:
        fields[VideoCreation.error] = result.error
    if result.status == "completed":
        fields[VideoCreation.completed_at] = now

    updated = await VideoCreation.find_one(
        VideoCreation.id == video.id,
        NotIn(VideoCreation.status, list(TERMINAL_STATUSES)),
    ).update(Set(fields), response_type=UpdateResponse.NEW_DOCUMENT)
    if updated is None:
        return await VideoCreation.get(video.id)

    log.info("video_status_changed", video_id=str(video.id), old=video.status, new=result.status)
    if result.status == "completed":
        await referrals_service.process_first_generation(video.user_id)
    return updated


async def refresh_status(video_id: str, user_id: PydanticObjectId, client: GenerationClient) -> VideoCreation:
    """Single poll: terminal jobs come back from the store without a provider call."""
    video = await get_video_for_user(video_id, user_id)
    if video.is_terminal or not video.provider_job_id:
        return video

    try:
        result = await client.get_generation_status(video.provider_job_id)
    except ProviderError as exc:
        # Credits are already charged; keep the job pollable instead of failing it.
        log.warning("video_status_check_failed", video_id=str(video.id), error=exc.message)
        return video

    if result.status is None:
        log.warning("video_status_unrecognized", video_id=str(video.id), raw_status=result.raw_status)
        return video
    if result.status == video.status:
        return video
    return await _apply_status(video, result)


async def wait_for_video(
    video_id: str,
    user_id: PydanticObjectId,
    client: GenerationClient,
    max_attempts: int | None = None,
    interval_seconds: float | None = None,
) -> PollOutcome:
    settings = get_settings()
    return await wait_for_terminal(
        lambda: refresh_status(video_id, user_id, client),
        max_attempts=max_attempts or settings.status_poll_max_attempts,
        interval_seconds=settings.status_poll_interval_seconds if interval_seconds is None else interval_seconds,
    )


async def list_user_videos(user_id: PydanticObjectId, limit: int = 20, offset: int = 0) -> list[VideoCreation]:
    return (
        await VideoCreation.find(VideoCreation.user_id == user_id)
        .sort(-VideoCreation.created_at)
        .skip(offset)
        .limit(limit)
        .to_list()
    )


def serialize_video(video: VideoCreation) -> dict:
    return {
        "id": str(video.id),
        "status": video.status,
        "video_url": video.video_url,
        "thumbnail_url": video.thumbnail_url,
        "error": video.error,
        "title": video.title,
        "prompt": video.prompt,
        "mood": video.mood,
        "credits_charged": video.credits_charged,
        "created_at": video.created_at.isoformat(),
        "updated_at": video.updated_at.isoformat(),
    }
