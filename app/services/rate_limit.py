"""Video generation rate limit: fixed hourly window per user via Redis."""

from datetime import datetime, timedelta

from redis.exceptions import RedisError

from app.core.config import get_settings
from app.core.exceptions import RateLimitedError
from app.core.logging import get_logger

log = get_logger(__name__)

KEY_PREFIX = "video:generate_count"
TTL_SECONDS = 3600 + 60  # window plus slack so the key outlives its hour


def _window_start(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0)


def _key(user_id: str, now: datetime) -> str:
    return f"{KEY_PREFIX}:{user_id}:{_window_start(now).strftime('%Y-%m-%dT%H')}"


async def incr_video_generations(redis, user_id: str, now: datetime | None = None) -> int:
    """Increment and return this hour's count; set TTL on first increment."""
    key = _key(user_id, now or datetime.utcnow())
    n = await redis.incr(key)
    if n == 1:
        await redis.expire(key, TTL_SECONDS)
    return n


async def enforce_video_generation_limit(redis, user_id: str) -> None:
    """Raise RateLimitedError past the hourly limit. Redis outages do not block generation."""
    limit = get_settings().video_rate_limit_per_hour
    if limit <= 0 or redis is None:
        return
    now = datetime.utcnow()
    try:
        count = await incr_video_generations(redis, user_id, now)
    except RedisError as e:
        log.warning("rate_limit_unavailable", error=str(e))
        return
    if count > limit:
        reset_at = _window_start(now) + timedelta(hours=1)
        log.info("video_rate_limited", user_id=user_id, count=count, limit=limit)
        raise RateLimitedError(
            f"You can only generate {limit} videos per hour. Please try again later.",
            details={"limit": limit, "reset_at": reset_at.isoformat()},
        )
