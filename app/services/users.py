import secrets
from datetime import datetime

from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from pymongo.errors import DuplicateKeyError

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import BadRequestError, UnauthorizedError
from app.core.logging import get_logger
from app.models.user import User
from app.services import credits as credits_service
from app.services import referrals as referrals_service

log = get_logger(__name__)

REFERRAL_CODE_LENGTH = 10


def verify_google_id_token(token: str) -> dict:
    """Verify Google ID token; return decoded claims (sub, email, name, picture, etc.)."""
    settings = get_settings()
    try:
        claims = id_token.verify_oauth2_token(
            token,
            google_requests.Request(),
            settings.google_client_id,
        )
        return claims
    except ValueError as e:
        raise UnauthorizedError(f"Invalid Google token: {e}") from e


def generate_referral_code() -> str:
    return secrets.token_urlsafe(8).upper().replace("-", "").replace("_", "")[:REFERRAL_CODE_LENGTH]


async def create_user(
    google_sub: str,
    email: str,
    name: str = "",
    picture: str | None = None,
    referral_code: str | None = None,
) -> User:
    """
    Create a user with a unique referral code and the signup bonus.
    A referral code, when given, is processed after the account exists.
    """
    user = None
    for _ in range(10):
        user = User(
            google_sub=google_sub,
            email=email,
            name=name,
            picture=picture,
            referral_code=generate_referral_code(),
            last_login_at=datetime.utcnow(),
        )
        try:
            await user.insert()
            break
        except DuplicateKeyError:
            if await User.find_one(User.google_sub == google_sub):
                raise BadRequestError("User already exists")
            user = None
    if user is None:
        raise BadRequestError("Could not generate unique referral code")

    settings = get_settings()
    await credits_service.earn(
        user.id,
        settings.signup_bonus,
        "signup",
        description="Welcome bonus for new account",
        idempotency_key=f"signup:{user.id}",
    )
    log.info("user_created", user_id=str(user.id), email=user.email)
    await log_event(str(user.id), "user_created", "user", str(user.id), {"email": user.email})

    if referral_code:
        await referrals_service.process_signup(referral_code, user.id)
    return await User.get(user.id)


async def upsert_user_from_google(claims: dict, referral_code: str | None = None) -> User:
    google_sub = claims.get("sub")
    if not google_sub:
        raise BadRequestError("Missing sub in token")
    email = claims.get("email") or ""
    name = claims.get("name") or ""
    picture = claims.get("picture")

    user = await User.find_one(User.google_sub == google_sub)
    if user is None:
        return await create_user(google_sub, email, name, picture, referral_code=referral_code)

    now = datetime.utcnow()
    # Profile fields only; save() would write back a stale credits value.
    await user.set({
        User.email: email,
        User.name: name,
        User.picture: picture,
        User.last_login_at: now,
        User.updated_at: now,
    })
    log.info("user_login", user_id=str(user.id), email=user.email)
    return user


def session_payload_for_user(user: User) -> dict:
    return {"user_id": str(user.id), "session_version": user.session_version}
