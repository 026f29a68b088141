"""
Model Catalog Service - per-key cache of normalized vendor model lists.
"""
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import CredentialMissingError, ModelsUnavailableError, UpstreamError
from app.core.logging import get_logger
from app.models.model_cache import ProviderModelCache
from app.services.adapter import Provider
from app.services.credentials.service import AdapterFactory, CredentialService

logger = get_logger(__name__)


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class ModelCatalogService:
    """
    Serves the cached catalog while it is fresh, refetches when it expires
    (or on demand), and falls back to the stale copy when the vendor fails.
    """

    def __init__(
        self,
        db: AsyncSession,
        credentials: CredentialService,
        adapter_factory: AdapterFactory,
        ttl: Optional[timedelta] = None,
    ):
        self.db = db
        self.credentials = credentials
        self.adapter_factory = adapter_factory
        self.ttl = ttl or timedelta(hours=settings.MODEL_CACHE_TTL_HOURS)

    async def _get_cache(
        self,
        user_id: str,
        provider: Provider,
        key_id: Any,
    ) -> Optional[ProviderModelCache]:
        result = await self.db.execute(
            select(ProviderModelCache).where(
                ProviderModelCache.user_id == user_id,
                ProviderModelCache.provider == provider.value,
                ProviderModelCache.key_id == key_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_models(
        self,
        user_id: str,
        provider: Provider,
        refresh: bool = False,
    ) -> dict[str, Any]:
        """Returns {"models": [...], "stale": bool, "fetchedAt": ms}."""
        key = await self.credentials.get_active_key(user_id, provider)
        if key is None:
            raise CredentialMissingError()

        now = datetime.utcnow()
        cache = await self._get_cache(user_id, provider, key.id)
        if not refresh and cache is not None and cache.expires_at > now:
            return {"models": cache.models, "stale": False, "fetchedAt": _ms(cache.fetched_at)}

        adapter = self.adapter_factory(provider)
        try:
            models = [m.to_dict() for m in await adapter.list_models(self.credentials.get_secret(key))]
        except UpstreamError as e:
            if cache is not None:
                logger.warning(
                    "Model fetch failed, serving stale cache",
                    provider=provider.value,
                    error_code=e.code,
                )
                return {"models": cache.models, "stale": True, "fetchedAt": _ms(cache.fetched_at)}
            logger.error("Model fetch failed", provider=provider.value, error_code=e.code)
            raise ModelsUnavailableError(details={"provider": provider.value, "reason": e.code}) from e

        fetched_at = datetime.utcnow()
        expires_at = fetched_at + self.ttl
        if cache is None:
            cache = ProviderModelCache(
                user_id=user_id,
                provider=provider.value,
                key_id=key.id,
                models=models,
                fetched_at=fetched_at,
                expires_at=expires_at,
            )
            self.db.add(cache)
        else:
            cache.models = models
            cache.fetched_at = fetched_at
            cache.expires_at = expires_at
        await self.db.flush()

        logger.info("Model catalog refreshed", provider=provider.value, count=len(models))
        return {"models": models, "stale": False, "fetchedAt": _ms(fetched_at)}

    async def supports_streaming(self, user_id: str, provider: Provider, model: str) -> bool:
        """
        Streaming flag from whatever catalog is cached for the user's key.
        Unknown models are assumed to stream; this never calls the vendor.
        """
        key = await self.credentials.get_active_key(user_id, provider)
        if key is None:
            return True
        cache = await self._get_cache(user_id, provider, key.id)
        if cache is None:
            return True

        for entry in cache.models or []:
            if entry.get("id") in (model, f"models/{model}"):
                return bool((entry.get("capabilities") or {}).get("streaming", True))
        return True
