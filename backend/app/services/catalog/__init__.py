from app.services.catalog.service import ModelCatalogService

__all__ = ["ModelCatalogService"]
