from datetime import datetime, timedelta

import httpx
import pytest

from app.core.errors import CredentialMissingError, ModelsUnavailableError
from app.services.adapter import Provider
from app.services.catalog import ModelCatalogService
from app.services.credentials import CredentialService
from conftest import seed_key

OPENAI_MODELS = {"data": [{"id": "gpt-4o"}, {"id": "gpt-4o-mini"}, {"id": "whisper-1"}]}


@pytest.fixture
def catalog(db, sealer, vendor):
    credentials = CredentialService(db, sealer, vendor.adapter_factory)
    return ModelCatalogService(db, credentials, vendor.adapter_factory, ttl=timedelta(hours=1))


async def test_fetches_once_then_serves_cache(catalog, session_factory, vendor):
    await seed_key(session_factory)
    vendor.on("GET", "/models", httpx.Response(200, json=OPENAI_MODELS))

    first = await catalog.get_models("user-1", Provider.OPENAI)
    second = await catalog.get_models("user-1", Provider.OPENAI)

    assert vendor.calls("/models") == 1
    assert [m["id"] for m in first["models"]] == ["gpt-4o", "gpt-4o-mini"]
    assert first["stale"] is False
    assert second["models"] == first["models"]
    assert second["fetchedAt"] == first["fetchedAt"]


async def test_refresh_bypasses_cache(catalog, session_factory, vendor):
    await seed_key(session_factory)
    vendor.on("GET", "/models", httpx.Response(200, json=OPENAI_MODELS))
    await catalog.get_models("user-1", Provider.OPENAI)

    vendor.on("GET", "/models", httpx.Response(200, json={"data": [{"id": "gpt-5"}]}))
    refreshed = await catalog.get_models("user-1", Provider.OPENAI, refresh=True)

    assert vendor.calls("/models") == 2
    assert [m["id"] for m in refreshed["models"]] == ["gpt-5"]


async def test_vendor_failure_serves_stale_cache(catalog, session_factory, vendor):
    await seed_key(session_factory)
    vendor.on("GET", "/models", httpx.Response(200, json=OPENAI_MODELS))
    cached = await catalog.get_models("user-1", Provider.OPENAI)

    vendor.on("GET", "/models", httpx.Response(503, text="Service Unavailable"))
    result = await catalog.get_models("user-1", Provider.OPENAI, refresh=True)

    assert result["stale"] is True
    assert result["models"] == cached["models"]


async def test_vendor_failure_without_cache(catalog, session_factory, vendor):
    await seed_key(session_factory)
    vendor.on("GET", "/models", httpx.Response(503, text="Service Unavailable"))

    with pytest.raises(ModelsUnavailableError) as exc_info:
        await catalog.get_models("user-1", Provider.OPENAI)

    assert exc_info.value.details == {"provider": "openai", "reason": "network"}


async def test_no_active_key(catalog):
    with pytest.raises(CredentialMissingError):
        await catalog.get_models("user-1", Provider.OPENAI)


async def test_expired_cache_is_refetched(catalog, session_factory, vendor):
    await seed_key(session_factory)
    vendor.on("GET", "/models", httpx.Response(200, json=OPENAI_MODELS))
    await catalog.get_models("user-1", Provider.OPENAI)

    catalog.ttl = timedelta(seconds=-1)
    await catalog.get_models("user-1", Provider.OPENAI, refresh=True)
    await catalog.get_models("user-1", Provider.OPENAI)

    assert vendor.calls("/models") == 3


async def test_supports_streaming_reads_cache_only(catalog, session_factory, vendor):
    await seed_key(session_factory, provider="gemini")
    vendor.on("GET", "/models", httpx.Response(200, json={"models": [
        {
            "name": "models/gemini-1.5-pro",
            "displayName": "Gemini 1.5 Pro",
            "supportedGenerationMethods": ["generateContent", "streamGenerateContent"],
        },
        {
            "name": "models/text-bison",
            "displayName": "Text Bison",
            "supportedGenerationMethods": ["generateContent"],
        },
    ]}))

    assert await catalog.supports_streaming("user-1", Provider.GEMINI, "text-bison") is True
    await catalog.get_models("user-1", Provider.GEMINI)

    assert await catalog.supports_streaming("user-1", Provider.GEMINI, "gemini-1.5-pro") is True
    assert await catalog.supports_streaming("user-1", Provider.GEMINI, "text-bison") is False
    assert await catalog.supports_streaming("user-1", Provider.GEMINI, "unlisted") is True
    assert vendor.calls("/models") == 1


async def test_models_endpoint(client, session_factory, vendor):
    await seed_key(session_factory)
    vendor.on("GET", "/models", httpx.Response(200, json=OPENAI_MODELS))

    response = await client.get("/api/providers/openai/models")

    assert response.status_code == 200
    body = response.json()
    assert body["models"][0] == {
        "id": "gpt-4o",
        "displayName": "gpt-4o",
        "provider": "openai",
        "capabilities": {"streaming": True, "vision": True, "tools": True, "json": True},
    }
    assert body["fetchedAt"] <= int(datetime.utcnow().timestamp() * 1000) + 1000


async def test_models_endpoint_without_key(client):
    response = await client.post("/api/providers/anthropic/models/refresh")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "key_missing"


async def test_unreadable_catalog_serves_stale_cache(catalog, session_factory, vendor):
    await seed_key(session_factory)
    vendor.on("GET", "/models", httpx.Response(200, json=OPENAI_MODELS))
    cached = await catalog.get_models("user-1", Provider.OPENAI)

    vendor.on("GET", "/models", httpx.Response(200, text="<html>bad gateway</html>"))
    result = await catalog.get_models("user-1", Provider.OPENAI, refresh=True)

    assert result["stale"] is True
    assert result["models"] == cached["models"]
