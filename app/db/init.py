import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from app.core.config import get_settings
from app.models.audit_log import AuditLog
from app.models.credit_transaction import CreditTransaction
from app.models.payment import Payment
from app.models.referral import Referral
from app.models.user import User
from app.models.video_creation import VideoCreation

DOCUMENT_MODELS = [
    User,
    CreditTransaction,
    Referral,
    VideoCreation,
    Payment,
    AuditLog,
]

_client: AsyncIOMotorClient | None = None


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def get_client() -> AsyncIOMotorClient:
    """Client backing the Beanie models; ledger transactions open their sessions on it."""
    if _client is None:
        raise RuntimeError("Database not initialized; call init_db() first")
    return _client


async def init_db(client: AsyncIOMotorClient | None = None) -> None:
    global _client
    settings = get_settings()
    if client is None:
        # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    _client = client
    database = client.get_database(settings.mongodb_db_name)
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
