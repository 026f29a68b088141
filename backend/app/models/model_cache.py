"""
Cached provider model catalog.
"""
import uuid
from datetime import datetime

from sqlalchemy import DateTime, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base
from app.models.types import JSONType


class ProviderModelCache(Base):
    """Normalized model list fetched with one key, valid until expires_at."""

    __tablename__ = "provider_model_caches"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    key_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    # list of NormalizedModel.to_dict()
    models: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", "key_id", name="uq_provider_model_caches_user_key"),
    )
