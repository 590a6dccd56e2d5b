"""
External identifier generation
"""
import secrets
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import config
from ..timeutils import utcnow


def generate_guid(db: Session, model, length: Optional[int] = None) -> int:
    """
    Fixed-width numeric id: 10^(length-1) + max(id) + 1

    Unique per table as long as the internal key keeps growing.
    """
    length = length or config.GUID_LENGTH
    max_id = db.query(func.max(model.id)).scalar() or 0
    return 10 ** (length - 1) + max_id + 1


def generate_payment_reference(prefix: Optional[str] = None) -> str:
    """PAY-20260105143000-9F2A1C3B"""
    prefix = prefix or config.PAYMENT_REFERENCE_PREFIX
    return f"{prefix}-{utcnow().strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(4).upper()}"
