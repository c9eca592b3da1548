from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.deps import get_current_user
from app.models.user import User
from app.services import referrals as referrals_service

router = APIRouter()


class ApplyReferralRequest(BaseModel):
    code: str


@router.get("/me")
async def referral_me(user: User = Depends(get_current_user)):
    """Get my referral code."""
    code = await referrals_service.get_referral_code(user.id)
    return {"referral_code": code}


@router.post("/apply")
async def referral_apply(body: ApplyReferralRequest, user: User = Depends(get_current_user)):
    """Apply a referral code; both sides get their signup bonus once. Unknown codes are reported, not errors."""
    return await referrals_service.process_signup(body.code, user.id)


@router.get("/stats")
async def referral_stats(user: User = Depends(get_current_user)):
    """Referral stats: total_referrals, completed_referrals, total_referral_credits."""
    return await referrals_service.referral_stats(user.id)
