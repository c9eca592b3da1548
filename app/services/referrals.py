"""Referral bonus cascade: signup bonuses and the referee's first completed video."""

from datetime import datetime

from beanie import PydanticObjectId
from beanie.odm.queries.update import UpdateResponse
from beanie.operators import Eq, In, Set
from pymongo.errors import DuplicateKeyError

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, NotFoundError
from app.core.logging import get_logger
from app.models.credit_transaction import CreditTransaction
from app.models.referral import Referral
from app.models.user import User
from app.services import credits as credits_service

log = get_logger(__name__)


async def get_referral_code(user_id: PydanticObjectId) -> str:
    user = await User.get(user_id)
    if not user:
        raise NotFoundError("User not found")
    return user.referral_code


async def _get_or_create_referral(referrer: User, referee: User, code: str) -> Referral:
    referral = await Referral.find_one(Referral.referred_user_id == referee.id)
    if referral:
        return referral
    referral = Referral(referrer_id=referrer.id, referred_user_id=referee.id, referral_code=code)
    try:
        await referral.insert()
    except DuplicateKeyError:
        # Concurrent signup processing created it first.
        referral = await Referral.find_one(Referral.referred_user_id == referee.id)
    return referral


async def process_signup(referral_code: str, new_user_id: PydanticObjectId) -> dict:
    """
    Award the referrer and the new user their signup bonuses, once per referee.
    Unknown codes are a no-op; the new user keeps the standalone signup bonus.
    """
    code = (referral_code or "").strip().upper()
    if not code:
        raise BadRequestError("Referral code required")
    referee = await User.get(new_user_id)
    if not referee:
        raise NotFoundError("User not found")
    referrer = await User.find_one(User.referral_code == code)
    if not referrer:
        log.info("referral_code_unknown", user_id=str(new_user_id), code=code)
        return {"status": "invalid_code", "message": "Referral code not found"}
    if referrer.id == referee.id:
        raise BadRequestError("Cannot use your own referral code")

    referral = await _get_or_create_referral(referrer, referee, code)
    if referral.referrer_id != referrer.id:
        return {"status": "already_referred", "message": "You have already used a referral code"}
    if referral.signup_bonus_awarded:
        return {"status": "already_awarded", "message": "Referral bonus already awarded"}

    settings = get_settings()
    # Keyed grants: a retry after a partial failure completes the missing half only.
    await credits_service.earn(
        referrer.id,
        settings.referral_signup_bonus,
        "referral",
        related_id=str(referral.id),
        description="Referral signup reward",
        idempotency_key=f"referral:{referral.id}:signup:referrer",
    )
    await credits_service.earn(
        referee.id,
        settings.referral_friend_bonus,
        "referral_signup",
        related_id=str(referral.id),
        description="Referral signup bonus",
        idempotency_key=f"referral:{referral.id}:signup:referee",
        tx_type="bonus",
    )
    now = datetime.utcnow()
    await Referral.find_one(Referral.id == referral.id).update(
        Set({Referral.signup_bonus_awarded: True, Referral.updated_at: now})
    )
    await User.find_one(User.id == referee.id, Eq(User.referred_by, None)).update(
        Set({User.referred_by: code, User.updated_at: now})
    )
    log.info("referral_signup_processed", referrer_id=str(referrer.id), referee_id=str(referee.id))
    return {
        "status": "applied",
        "message": "Referral code applied",
        "friend_bonus": settings.referral_friend_bonus,
        "referrer_bonus": settings.referral_signup_bonus,
    }


async def process_first_generation(user_id: PydanticObjectId) -> bool:
    """
    Pay the referrer's first-video bonus, then flip is_first_video_generated.
    The grant is keyed per referral, so a call that failed before the flip is
    completed by the next one. Returns True only for the call that awarded the bonus.
    """
    user = await User.get(user_id)
    if user is None or user.is_first_video_generated:
        return False

    awarded = False
    # The Referral row exists before the signup grants run; referred_by is written last.
    referral = await Referral.find_one(Referral.referred_user_id == user_id)
    if referral is not None and not referral.first_video_bonus_awarded:
        result = await credits_service.earn(
            referral.referrer_id,
            get_settings().referral_first_video_bonus,
            "referral_first_video",
            related_id=str(referral.id),
            description="Referral first video bonus",
            idempotency_key=f"referral:{referral.id}:first_video",
        )
        await Referral.find_one(Referral.id == referral.id).update(
            Set({Referral.first_video_bonus_awarded: True, Referral.updated_at: datetime.utcnow()})
        )
        awarded = result.applied
        if awarded:
            log.info("referral_first_video_bonus", referrer_id=str(referral.referrer_id), referee_id=str(user_id))

    flipped = await User.find_one(User.id == user_id, Eq(User.is_first_video_generated, False)).update(
        Set({User.is_first_video_generated: True, User.updated_at: datetime.utcnow()}),
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if flipped is not None:
        log.info("first_video_generated", user_id=str(user_id))
    return awarded


async def referral_stats(user_id: PydanticObjectId) -> dict:
    """Referral code, referred/completed counts and total referral credits received."""
    user = await User.get(user_id)
    if not user:
        raise NotFoundError("User not found")
    referrals = await Referral.find(Referral.referrer_id == user.id).to_list()
    reward_entries = await CreditTransaction.find(
        CreditTransaction.user_id == user.id,
        In(CreditTransaction.source, ["referral", "referral_first_video"]),
    ).to_list()
    return {
        "referral_code": user.referral_code,
        "total_referrals": len(referrals),
        "completed_referrals": sum(1 for r in referrals if r.first_video_bonus_awarded),
        "total_referral_credits": sum(e.amount for e in reward_entries),
    }
