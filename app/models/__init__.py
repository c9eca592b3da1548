from app.models.user import User
from app.models.credit_transaction import CreditTransaction
from app.models.audit_log import AuditLog
from app.models.payment import Payment
from app.models.referral import Referral
from app.models.video_creation import VideoCreation

__all__ = [
    "User",
    "CreditTransaction",
    "AuditLog",
    "Payment",
    "Referral",
    "VideoCreation",
]
