"""
Credential Service - user-owned provider keys.

A key is validated against its vendor before it is stored, sealed at rest
through a SecretSealer, and only ever unsealed for the duration of one
upstream call. Every lifecycle change writes an audit log entry.
"""
import uuid
from datetime import datetime
from typing import Callable, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import (
    KeyValidationError,
    NotFoundError,
    UpstreamError,
    classify_provider_error,
)
from app.core.logging import get_logger
from app.models.provider_key import AuditLog, KeyStatus, ProviderKey
from app.services.adapter import Provider, ProviderAdapter, get_provider_adapter

logger = get_logger(__name__)

AdapterFactory = Callable[[Provider], ProviderAdapter]


class SecretSealer(Protocol):
    """Reversible at-rest protection for key material."""

    def seal(self, secret: str) -> str:
        ...

    def unseal(self, sealed: str) -> str:
        ...


class PassthroughSealer:
    """Stores secrets as-is. Only for development and tests."""

    def seal(self, secret: str) -> str:
        return secret

    def unseal(self, sealed: str) -> str:
        return sealed


def mask_key(raw_key: str) -> str:
    """Display form of a key: only the last four characters survive."""
    return f"**** **** **** {raw_key.strip()[-4:]}"


class CredentialService:
    """Provider key lifecycle: create, list, validate, revoke, resolve."""

    def __init__(
        self,
        db: AsyncSession,
        sealer: SecretSealer,
        adapter_factory: AdapterFactory = get_provider_adapter,
    ):
        self.db = db
        self.sealer = sealer
        self.adapter_factory = adapter_factory

    async def _audit(
        self,
        user_id: str,
        provider: str,
        key_id: Optional[uuid.UUID],
        action: str,
        metadata: Optional[dict] = None,
    ) -> None:
        self.db.add(AuditLog(
            user_id=user_id,
            provider=provider,
            key_id=key_id,
            action=action,
            extra_metadata=metadata,
        ))
        await self.db.flush()

    async def _check_with_vendor(self, provider: Provider, raw_key: str) -> None:
        adapter = self.adapter_factory(provider)
        try:
            await adapter.validate_credential(raw_key)
        except UpstreamError as e:
            reason = classify_provider_error(e.message)
            logger.warning(
                "Key validation failed",
                provider=provider.value,
                reason=reason.value,
                upstream_status=e.upstream_status,
            )
            raise KeyValidationError(reason, provider=provider.value) from e

    async def create_key(self, user_id: str, provider: Provider, raw_key: str) -> ProviderKey:
        """Validate upstream, then store the sealed key."""
        raw_key = raw_key.strip()
        await self._check_with_vendor(provider, raw_key)

        key = ProviderKey(
            user_id=user_id,
            provider=provider.value,
            key_ciphertext=self.sealer.seal(raw_key),
            key_mask=mask_key(raw_key),
            status=KeyStatus.ACTIVE.value,
            last_validated_at=datetime.utcnow(),
        )
        self.db.add(key)
        await self.db.flush()
        await self.db.refresh(key)

        await self._audit(user_id, provider.value, key.id, "key.created", {"keyMask": key.key_mask})
        logger.info("Key created", provider=provider.value, key_id=str(key.id))
        return key

    async def list_keys(self, user_id: str, provider: Provider) -> List[ProviderKey]:
        result = await self.db.execute(
            select(ProviderKey)
            .where(ProviderKey.user_id == user_id, ProviderKey.provider == provider.value)
            .order_by(ProviderKey.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_key(
        self,
        user_id: str,
        key_id: uuid.UUID,
        provider: Optional[Provider] = None,
    ) -> ProviderKey:
        stmt = select(ProviderKey).where(
            ProviderKey.id == key_id,
            ProviderKey.user_id == user_id,
        )
        if provider is not None:
            stmt = stmt.where(ProviderKey.provider == provider.value)
        result = await self.db.execute(stmt)
        key = result.scalar_one_or_none()
        if key is None:
            raise NotFoundError("Key not found")
        return key

    async def validate_key(
        self,
        user_id: str,
        key_id: uuid.UUID,
        provider: Optional[Provider] = None,
    ) -> ProviderKey:
        """Re-check a stored key with its vendor and mark it active."""
        key = await self.get_key(user_id, key_id, provider)
        await self._check_with_vendor(Provider(key.provider), self.get_secret(key))

        key.status = KeyStatus.ACTIVE.value
        key.last_validated_at = datetime.utcnow()
        await self.db.flush()

        await self._audit(user_id, key.provider, key.id, "key.validated")
        return key

    async def revoke_key(
        self,
        user_id: str,
        key_id: uuid.UUID,
        provider: Optional[Provider] = None,
    ) -> ProviderKey:
        key = await self.get_key(user_id, key_id, provider)
        key.status = KeyStatus.REVOKED.value
        await self.db.flush()

        await self._audit(user_id, key.provider, key.id, "key.revoked")
        logger.info("Key revoked", provider=key.provider, key_id=str(key.id))
        return key

    async def get_active_key(self, user_id: str, provider: Provider) -> Optional[ProviderKey]:
        """Most recently validated active key for the provider, if any."""
        result = await self.db.execute(
            select(ProviderKey)
            .where(
                ProviderKey.user_id == user_id,
                ProviderKey.provider == provider.value,
                ProviderKey.status == KeyStatus.ACTIVE.value,
            )
            .order_by(ProviderKey.last_validated_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    def get_secret(self, key: ProviderKey) -> str:
        return self.sealer.unseal(key.key_ciphertext)

    async def touch(self, key: ProviderKey) -> None:
        key.last_used_at = datetime.utcnow()
        await self.db.flush()
