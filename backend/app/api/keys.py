"""
Provider keys API endpoints.
"""
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.api.deps import get_credential_service, get_current_user_id, parse_provider
from app.core.logging import get_logger
from app.services.credentials import CredentialService

logger = get_logger(__name__)
router = APIRouter()


class CreateKeyRequest(BaseModel):
    """Raw key as pasted by the user."""
    key: str = Field(..., min_length=8, description="Vendor API key")


@router.post("/{provider}/keys", status_code=201)
async def create_key(
    provider: str,
    request: CreateKeyRequest,
    user_id: str = Depends(get_current_user_id),
    credentials: CredentialService = Depends(get_credential_service),
):
    """Validate a key with its vendor and store it."""
    key = await credentials.create_key(user_id, parse_provider(provider), request.key)
    return {"key": key.to_dict()}


@router.get("/{provider}/keys")
async def list_keys(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    credentials: CredentialService = Depends(get_credential_service),
):
    keys = await credentials.list_keys(user_id, parse_provider(provider))
    return {"keys": [k.to_dict() for k in keys]}


@router.delete("/{provider}/keys/{key_id}")
async def revoke_key(
    provider: str,
    key_id: UUID,
    user_id: str = Depends(get_current_user_id),
    credentials: CredentialService = Depends(get_credential_service),
):
    await credentials.revoke_key(user_id, key_id, parse_provider(provider))
    return {"ok": True}


@router.post("/{provider}/keys/{key_id}/validate")
async def validate_key(
    provider: str,
    key_id: UUID,
    user_id: str = Depends(get_current_user_id),
    credentials: CredentialService = Depends(get_credential_service),
):
    """Re-check a stored key with its vendor."""
    key = await credentials.validate_key(user_id, key_id, parse_provider(provider))
    return {"key": key.to_dict()}
