"""
Provider model catalog API endpoints.
"""
from fastapi import APIRouter, Depends

from app.api.deps import get_catalog_service, get_current_user_id, parse_provider
from app.services.catalog import ModelCatalogService

router = APIRouter()


@router.get("/{provider}/models")
async def list_models(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    catalog: ModelCatalogService = Depends(get_catalog_service),
):
    """Cached catalog for the user's active key; refetched after it expires."""
    return await catalog.get_models(user_id, parse_provider(provider))


@router.post("/{provider}/models/refresh")
async def refresh_models(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    catalog: ModelCatalogService = Depends(get_catalog_service),
):
    return await catalog.get_models(user_id, parse_provider(provider), refresh=True)
