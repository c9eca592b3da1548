from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.core.pagination import paginate
from app.deps import get_current_user, get_generation_client, get_redis
from app.models.user import User
from app.services import videos as videos_service
from app.services.generation_client import GenerationClient
from app.services.poller import STILL_PROCESSING_MESSAGE
from app.services.rate_limit import enforce_video_generation_limit

router = APIRouter()


class GenerateVideoRequest(BaseModel):
    image_url: str = ""
    prompt: str = ""
    mood: str = ""
    title: str | None = None


@router.post("/generate")
async def video_generate(
    body: GenerateVideoRequest,
    user: User = Depends(get_current_user),
    client: GenerationClient = Depends(get_generation_client),
    redis=Depends(get_redis),
):
    """Start a generation job; credits are charged once the provider accepts it. 402 on insufficient credits."""
    await enforce_video_generation_limit(redis, str(user.id))
    return await videos_service.create_video(
        user.id,
        body.image_url,
        body.prompt,
        body.mood,
        client,
        title=body.title,
    )


@router.get("")
async def videos_list(
    user: User = Depends(get_current_user),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    limit, offset = paginate(limit, offset, max_limit=100)
    videos = await videos_service.list_user_videos(user.id, limit=limit, offset=offset)
    return {"videos": [videos_service.serialize_video(v) for v in videos], "limit": limit, "offset": offset}


@router.get("/{video_id}/status")
async def video_status(
    video_id: str,
    user: User = Depends(get_current_user),
    client: GenerationClient = Depends(get_generation_client),
):
    """Polling-safe status check; terminal jobs are answered from the store."""
    video = await videos_service.refresh_status(video_id, user.id, client)
    return videos_service.serialize_video(video)


@router.get("/{video_id}/wait")
async def video_wait(
    video_id: str,
    user: User = Depends(get_current_user),
    client: GenerationClient = Depends(get_generation_client),
):
    """Long poll for a bounded number of attempts; timing out is not an error."""
    outcome = await videos_service.wait_for_video(video_id, user.id, client)
    out = videos_service.serialize_video(outcome.video)
    out["timed_out"] = outcome.timed_out
    if outcome.timed_out:
        out["message"] = STILL_PROCESSING_MESSAGE
    return out
