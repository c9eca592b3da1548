from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from app.core.security import SESSION_MAX_AGE_SECONDS, create_session_cookie
from app.deps import SESSION_COOKIE_NAME, get_current_user
from app.models.user import User
from app.services import users as user_service

router = APIRouter()


class GoogleAuthRequest(BaseModel):
    id_token: str
    referral_code: str | None = None  # applied only when this login creates the account


def user_out(user: User) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "name": user.name,
        "picture": user.picture,
        "credits": user.credits,
        "referral_code": user.referral_code,
        "referred_by": user.referred_by,
        "is_first_video_generated": user.is_first_video_generated,
        "last_checkin_date": user.last_checkin_date.isoformat() if user.last_checkin_date else None,
    }


@router.post("/google")
async def auth_google(body: GoogleAuthRequest, response: Response):
    """Exchange Google ID token for session; set httpOnly cookie. New accounts get the signup bonus."""
    claims = user_service.verify_google_id_token(body.id_token)
    user = await user_service.upsert_user_from_google(claims, referral_code=body.referral_code)
    payload = user_service.session_payload_for_user(user)
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=create_session_cookie(payload),
        max_age=SESSION_MAX_AGE_SECONDS,
        httponly=True,
        secure=False,  # set True in prod with HTTPS
        samesite="lax",
        path="/",
    )
    return {"user": user_out(user)}


@router.get("/me")
async def auth_me(user: User = Depends(get_current_user)):
    """Return current user. Requires session cookie."""
    return user_out(user)
