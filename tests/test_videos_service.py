"""Generation job coordinator: charge-on-acceptance, polling and the referral cascade."""

import httpx
import pytest

from app.core.exceptions import (
    BadRequestError,
    ForbiddenError,
    InsufficientCreditsError,
    InternalError,
    NotFoundError,
    ProviderError,
)
from app.models.credit_transaction import CreditTransaction
from app.models.video_creation import VideoCreation
from app.services import credits as credits_service
from app.services import referrals as referrals_service
from app.services import videos as videos_service

IMAGE = "https://img.test/drawing.png"


class FakeProvider:
    """Scripted provider: submit answers with submit_status, polls walk through poll_statuses."""

    def __init__(self, submit_status: str = "processing", poll_statuses=("processing",)):
        self.submit_status = submit_status
        self.poll_statuses = list(poll_statuses)
        self.submits = 0
        self.polls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path == "/generate":
            self.submits += 1
            return httpx.Response(200, json={"id": f"gen-{self.submits}", "status": self.submit_status})
        self.polls += 1
        status = self.poll_statuses[min(self.polls, len(self.poll_statuses)) - 1]
        body = {"status": status}
        if status == "completed":
            body.update(videoUrl="https://cdn.test/out.mp4", thumbnailUrl="https://cdn.test/out.jpg")
        if status == "failed":
            body["error"] = "content rejected"
        return httpx.Response(200, json=body)


async def test_charge_on_acceptance_then_insufficient(make_user, provider):
    user = await make_user(credits=70)
    fake = FakeProvider()
    client = provider(fake)

    out = await videos_service.create_video(user.id, IMAGE, "a dragon flying", "epic", client)
    assert out["status"] == "processing"
    assert out["generation_id"] == "gen-1"
    assert out["credits_remaining"] == 10

    video = await VideoCreation.get(out["video_creation_id"])
    assert video.status == "processing"
    assert video.provider_job_id == "gen-1"
    assert video.credits_charged == 60

    charge = await CreditTransaction.find_one(CreditTransaction.related_id == out["video_creation_id"])
    assert charge.amount == -60
    assert charge.source == "video_generation"

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await videos_service.create_video(user.id, IMAGE, "again", "epic", client)
    assert exc_info.value.details == {"required": 60, "available": 10}
    assert fake.submits == 1
    assert await credits_service.get_balance(user.id) == 10


async def test_provider_failure_does_not_charge(make_user, provider):
    user = await make_user(credits=70)
    client = provider(lambda request: httpx.Response(500, json={"message": "down"}), max_retries=1)

    with pytest.raises(ProviderError) as exc_info:
        await videos_service.create_video(user.id, IMAGE, "a dragon", "epic", client)
    video_id = exc_info.value.details["video_creation_id"]

    video = await VideoCreation.get(video_id)
    assert video.status == "failed"
    assert video.credits_charged == 0
    assert await credits_service.get_balance(user.id) == 70
    assert await CreditTransaction.find(CreditTransaction.source == "video_generation").count() == 0


async def test_missing_generation_id_does_not_charge(make_user, provider):
    user = await make_user(credits=70)
    client = provider(lambda request: httpx.Response(200, json={"status": "queued"}))
    with pytest.raises(ProviderError):
        await videos_service.create_video(user.id, IMAGE, "a dragon", "epic", client)
    assert await credits_service.get_balance(user.id) == 70


async def test_immediate_provider_rejection_does_not_charge(make_user, provider):
    user = await make_user(credits=70)
    client = provider(FakeProvider(submit_status="failed"))
    with pytest.raises(ProviderError):
        await videos_service.create_video(user.id, IMAGE, "a dragon", "epic", client)
    assert await credits_service.get_balance(user.id) == 70


@pytest.mark.parametrize(
    "image_url, prompt, mood",
    [
        ("", "prompt", "calm"),
        (IMAGE, "", "calm"),
        (IMAGE, "prompt", ""),
        (IMAGE, "prompt", "angry"),
        (IMAGE, "x" * 301, "calm"),
    ],
)
async def test_invalid_requests_rejected_before_provider(make_user, provider, image_url, prompt, mood):
    user = await make_user(credits=70)
    fake = FakeProvider()
    with pytest.raises(BadRequestError):
        await videos_service.create_video(user.id, image_url, prompt, mood, provider(fake))
    assert fake.submits == 0
    assert await VideoCreation.find_all().count() == 0


async def test_prompt_at_max_length_accepted(make_user, provider):
    user = await make_user(credits=70)
    out = await videos_service.create_video(user.id, IMAGE, "x" * 300, "mysterious", provider(FakeProvider()))
    assert out["credits_remaining"] == 10


async def test_refresh_status_completes_and_stops_polling(make_user, provider):
    user = await make_user(credits=70)
    fake = FakeProvider(poll_statuses=["processing", "completed"])
    client = provider(fake)
    out = await videos_service.create_video(user.id, IMAGE, "a dragon", "epic", client)
    video_id = out["video_creation_id"]

    first = await videos_service.refresh_status(video_id, user.id, client)
    assert first.status == "processing"
    second = await videos_service.refresh_status(video_id, user.id, client)
    assert second.status == "completed"
    assert second.video_url == "https://cdn.test/out.mp4"
    assert second.thumbnail_url == "https://cdn.test/out.jpg"
    assert second.completed_at is not None

    polls = fake.polls
    third = await videos_service.refresh_status(video_id, user.id, client)
    assert third.status == "completed"
    assert fake.polls == polls


async def test_provider_failure_during_poll_keeps_job_pollable(make_user, provider):
    user = await make_user(credits=70)
    fake = FakeProvider()
    out = await videos_service.create_video(user.id, IMAGE, "a dragon", "epic", provider(fake))

    broken = provider(lambda request: httpx.Response(502, json={"message": "bad gateway"}), max_retries=0)
    video = await videos_service.refresh_status(out["video_creation_id"], user.id, broken)
    assert video.status == "processing"
    assert await credits_service.get_balance(user.id) == 10


async def test_failed_generation_is_terminal_without_refund(make_user, provider):
    user = await make_user(credits=70)
    client = provider(FakeProvider(poll_statuses=["failed"]))
    out = await videos_service.create_video(user.id, IMAGE, "a dragon", "epic", client)
    video = await videos_service.refresh_status(out["video_creation_id"], user.id, client)
    assert video.status == "failed"
    assert video.error == "content rejected"
    assert await credits_service.get_balance(user.id) == 10


async def test_completion_pays_referrer_once(make_user, provider):
    referrer = await make_user()
    friend = await make_user(credits=140)
    await referrals_service.process_signup(referrer.referral_code, friend.id)
    client = provider(FakeProvider(poll_statuses=["completed"]))

    for _ in range(2):
        out = await videos_service.create_video(friend.id, IMAGE, "a dragon", "epic", client)
        await videos_service.refresh_status(out["video_creation_id"], friend.id, client)
        await videos_service.refresh_status(out["video_creation_id"], friend.id, client)

    assert await credits_service.get_balance(referrer.id) == 30 + 70


async def test_completed_at_submit_triggers_first_video(make_user, provider):
    referrer = await make_user()
    friend = await make_user(credits=70)
    await referrals_service.process_signup(referrer.referral_code, friend.id)
    out = await videos_service.create_video(friend.id, IMAGE, "a dragon", "epic", provider(FakeProvider(submit_status="completed")))
    assert out["status"] == "completed"
    assert await credits_service.get_balance(referrer.id) == 100


async def test_wait_for_video_times_out(make_user, provider):
    user = await make_user(credits=70)
    fake = FakeProvider(poll_statuses=["processing"])
    client = provider(fake)
    out = await videos_service.create_video(user.id, IMAGE, "a dragon", "epic", client)

    outcome = await videos_service.wait_for_video(out["video_creation_id"], user.id, client, max_attempts=3, interval_seconds=0)
    assert outcome.timed_out is True
    assert outcome.attempts == 3
    assert outcome.video.status == "processing"
    assert fake.polls == 3


async def test_wait_for_video_returns_on_completion(make_user, provider):
    user = await make_user(credits=70)
    client = provider(FakeProvider(poll_statuses=["processing", "completed"]))
    out = await videos_service.create_video(user.id, IMAGE, "a dragon", "epic", client)
    outcome = await videos_service.wait_for_video(out["video_creation_id"], user.id, client, max_attempts=5, interval_seconds=0)
    assert outcome.timed_out is False
    assert outcome.attempts == 2
    assert outcome.video.status == "completed"


async def test_ownership_and_missing_video(make_user, provider):
    owner = await make_user(credits=70)
    stranger = await make_user()
    client = provider(FakeProvider())
    out = await videos_service.create_video(owner.id, IMAGE, "a dragon", "epic", client)

    with pytest.raises(ForbiddenError):
        await videos_service.refresh_status(out["video_creation_id"], stranger.id, client)
    with pytest.raises(NotFoundError):
        await videos_service.get_video_for_user("not-an-id", owner.id)
    with pytest.raises(NotFoundError):
        await videos_service.get_video_for_user("0123456789abcdef01234567", owner.id)


async def test_list_user_videos(make_user, provider):
    user = await make_user(credits=200)
    other = await make_user(credits=70)
    client = provider(FakeProvider())
    for _ in range(2):
        await videos_service.create_video(user.id, IMAGE, "a dragon", "epic", client)
    await videos_service.create_video(other.id, IMAGE, "a dragon", "epic", client)

    videos = await videos_service.list_user_videos(user.id)
    assert len(videos) == 2
    assert all(v.user_id == user.id for v in videos)
    assert videos_service.serialize_video(videos[0])["credits_charged"] == 60


async def test_charge_failure_fails_job_so_it_cannot_complete_free(make_user, provider, monkeypatch):
    user = await make_user(credits=70)
    fake = FakeProvider(poll_statuses=["completed"])
    client = provider(fake)

    async def failing_spend(*args, **kwargs):
        raise InternalError("Could not complete spend, please retry")

    monkeypatch.setattr(credits_service, "spend", failing_spend)
    with pytest.raises(InternalError):
        await videos_service.create_video(user.id, IMAGE, "a dragon", "epic", client)
    monkeypatch.undo()

    video = await VideoCreation.find_one(VideoCreation.user_id == user.id)
    assert video.status == "failed"
    assert video.credits_charged == 0

    refreshed = await videos_service.refresh_status(str(video.id), user.id, client)
    assert refreshed.status == "failed"
    assert refreshed.video_url is None
    assert fake.polls == 0
    assert await credits_service.get_balance(user.id) == 70
