"""
Shared FastAPI dependencies.
"""
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import get_db, get_session_factory
from app.core.errors import InvalidRequestError, RateLimitedError, UnauthorizedError
from app.core.rate_limit import RateLimiter
from app.services.adapter import Provider, get_provider_adapter
from app.services.catalog import ModelCatalogService
from app.services.chat import ChatOrchestrator
from app.services.credentials import CredentialService, SecretSealer
from app.services.credentials.service import AdapterFactory


async def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None),
) -> str:
    """Caller identity, asserted by the authenticating proxy in front of us."""
    if not x_user_id or not x_user_id.strip():
        raise UnauthorizedError()
    return x_user_id.strip()


def parse_provider(provider: str) -> Provider:
    try:
        return Provider(provider.lower())
    except ValueError:
        raise InvalidRequestError(
            f"Unknown provider: {provider}",
            details={"supported": [p.value for p in Provider]},
        )


def get_adapter_factory() -> AdapterFactory:
    return get_provider_adapter


def get_sealer(request: Request) -> SecretSealer:
    return request.app.state.sealer


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


async def enforce_rate_limit(
    user_id: str = Depends(get_current_user_id),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    if not limiter.allow(f"user:{user_id}"):
        raise RateLimitedError()


def get_credential_service(
    db: AsyncSession = Depends(get_db),
    sealer: SecretSealer = Depends(get_sealer),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> CredentialService:
    return CredentialService(db, sealer, adapter_factory)


def get_catalog_service(
    db: AsyncSession = Depends(get_db),
    credentials: CredentialService = Depends(get_credential_service),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> ModelCatalogService:
    return ModelCatalogService(db, credentials, adapter_factory)


def get_orchestrator(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    sealer: SecretSealer = Depends(get_sealer),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> ChatOrchestrator:
    return ChatOrchestrator(
        session_factory=session_factory,
        sealer=sealer,
        adapter_factory=adapter_factory,
        locks=request.app.state.conversation_locks,
    )
