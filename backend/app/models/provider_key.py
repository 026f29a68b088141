"""
Provider credential and audit log database models.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base
from app.models.types import JSONType


class KeyStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


def _ms(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp() * 1000) if value else None


class ProviderKey(Base):
    """
    A user's API key for one vendor.

    The sealed secret never changes after insert; revocation and
    re-validation only touch status and timestamps.
    """

    __tablename__ = "provider_keys"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    key_ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    key_mask: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=KeyStatus.ACTIVE.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow
    )
    last_validated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        """Public view; never includes the secret."""
        return {
            "id": str(self.id),
            "provider": self.provider,
            "keyMask": self.key_mask,
            "status": self.status,
            "createdAt": _ms(self.created_at),
            "lastValidatedAt": _ms(self.last_validated_at),
            "lastUsedAt": _ms(self.last_used_at),
        }


class AuditLog(Base):
    """Append-only record of key lifecycle events."""

    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    key_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    extra_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata",
        JSONType,
        nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow
    )
