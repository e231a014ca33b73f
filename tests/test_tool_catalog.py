import pytest

from app.tool_catalog import CatalogError, ToolCatalog, match_openapi_path
from tests.fakes import FakeGateway, http_status, ok, transport_error


def test_match_openapi_path():
    assert match_openapi_path("/ads/campaigns/{id}/impressions", "/ads/campaigns/abc/impressions")
    assert match_openapi_path("/pop", "/pop")
    assert not match_openapi_path("/ads/campaigns/{id}", "/ads/campaigns/abc/impressions")
    assert not match_openapi_path("/ads/devices/{host}", "/ads/venues/x")


@pytest.mark.asyncio
async def test_is_allowed_checks_method_and_template():
    catalog = ToolCatalog(FakeGateway())
    assert await catalog.is_allowed("GET", "/pop/stats")
    assert await catalog.is_allowed("get", "/ads/devices/moco-brt-briggs-001")
    assert not await catalog.is_allowed("DELETE", "/pop/stats")
    assert not await catalog.is_allowed("GET", "/admin/users")


@pytest.mark.asyncio
async def test_document_is_cached_until_ttl():
    gateway = FakeGateway()
    catalog = ToolCatalog(gateway, ttl_s=120)
    await catalog.is_allowed("GET", "/pop")
    await catalog.is_allowed("GET", "/pop/stats")
    assert gateway.calls.count("/openapi.json") == 1
    catalog.invalidate()
    await catalog.is_allowed("GET", "/pop")
    assert gateway.calls.count("/openapi.json") == 2


@pytest.mark.asyncio
async def test_fetch_failure_denies_everything():
    gateway = FakeGateway({"/openapi.json": http_status(503)})
    catalog = ToolCatalog(gateway)
    with pytest.raises(CatalogError):
        await catalog.fetch()
    assert not await catalog.is_allowed("GET", "/pop")

    gateway = FakeGateway({"/openapi.json": transport_error()})
    assert not await ToolCatalog(gateway).is_allowed("GET", "/pop")


@pytest.mark.asyncio
async def test_failure_is_cached_then_recovers_after_invalidate():
    gateway = FakeGateway({"/openapi.json": [http_status(500), ok({"paths": {"/pop": {"get": {}}}})]})
    catalog = ToolCatalog(gateway)
    assert not await catalog.is_allowed("GET", "/pop")
    assert not await catalog.is_allowed("GET", "/pop")
    assert gateway.calls.count("/openapi.json") == 1
    catalog.invalidate()
    assert await catalog.is_allowed("GET", "/pop")
