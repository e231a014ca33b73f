import pytest

from app.resolvers import DEVICE_MAX_PAGES, DEVICE_PAGE_SIZE, EntityCache, EntityResolvers
from tests.fakes import COUNT_ROWS, FakeGateway, ok, transport_error

CAMPAIGN_A = "11111111-2222-4333-8444-555555555555"
CAMPAIGN_B = "66666666-7777-4888-9999-000000000000"

BRIGGS = {
    "host_name": "MOCO-BRT-BRIGGS-001",
    "kiosk_name": "Briggs Road North",
    "name": "Briggs Kiosk",
    "city": "moco",
    "region": "brt",
}


def make_resolvers(gateway):
    return EntityResolvers(gateway, EntityCache(gateway))


@pytest.mark.asyncio
async def test_detect_region_uses_scope_words_for_short_codes():
    rows = COUNT_ROWS + [{"city": "dallas", "region": "da", "count": 2}]
    resolvers = make_resolvers(FakeGateway({"/ads/devices/counts/regions": ok({"data": rows})}))
    assert await resolvers.detect_region("top posters in brt region") == "brt"
    assert await resolvers.detect_region("plays today") == ""
    assert await resolvers.detect_region("plays in da region") == "da"
    assert await resolvers.detect_region("bus rapid transit kiosks") == "brt"


@pytest.mark.asyncio
async def test_detect_city_from_codes_and_projects():
    resolvers = make_resolvers(FakeGateway())
    assert await resolvers.detect_city("how many kiosks in kcmo") == "kcmo"
    assert await resolvers.detect_city("how many kiosks in kansas city") == "kcmo"
    assert await resolvers.detect_city("top posters in brt region") == ""


@pytest.mark.asyncio
async def test_resolve_host_via_city_scoped_search():
    gateway = FakeGateway({"/ads/devices/search": ok({"data": [BRIGGS]})})
    host, step = await make_resolvers(gateway).resolve_host("Briggs Road North", city="moco")
    assert host == "moco-brt-briggs-001"
    assert step.tool == "adsDevicesSearch"
    assert gateway.calls[0].startswith("/ads/devices/search?query=Briggs+Road+North")
    assert gateway.calls[0].endswith("&city=moco")


@pytest.mark.asyncio
async def test_resolve_host_falls_back_to_device_pages():
    gateway = FakeGateway({"/ads/devices?page=": ok({"data": [BRIGGS], "has_more": False})})
    host, step = await make_resolvers(gateway).resolve_host("Briggs Road North")
    assert host == "moco-brt-briggs-001"
    assert step.tool == "adsDevices"
    assert len(gateway.paths_called("/ads/devices?page=")) == 1


@pytest.mark.asyncio
async def test_resolve_host_device_walk_stops_at_page_ceiling():
    unrelated = [
        {"host_name": f"kcmo-main-elm-{idx:03d}", "kiosk_name": "Elm Street"} for idx in range(DEVICE_PAGE_SIZE)
    ]
    gateway = FakeGateway({"/ads/devices?page=": ok({"data": unrelated, "has_more": True})})
    host, step = await make_resolvers(gateway).resolve_host("Briggs Road North")
    assert host == ""
    assert step.tool == "adsDevices"
    assert len(gateway.paths_called("/ads/devices?page=")) == DEVICE_MAX_PAGES


@pytest.mark.asyncio
async def test_resolve_host_rejects_weak_matches_and_region_mismatch():
    gateway = FakeGateway({"/ads/devices/search": ok({"data": [BRIGGS]})})
    resolvers = make_resolvers(gateway)
    host, _ = await resolvers.resolve_host("Briggs Road North", region="main")
    assert host == ""
    host, _ = await resolvers.resolve_host("north")
    assert host == ""


@pytest.mark.asyncio
async def test_resolve_venue_id():
    gateway = FakeGateway({"/ads/venues/search": ok({"data": [{"id": 7, "name": "Union Station"}]})})
    venue_id, step = await make_resolvers(gateway).resolve_venue_id("union station")
    assert venue_id == 7
    assert step.tool == "adsVenuesSearch"


@pytest.mark.asyncio
async def test_resolve_campaign_id_by_name():
    rows = [{"id": CAMPAIGN_A, "name": "Summer Sale 2026"}, {"id": CAMPAIGN_B, "name": "Winter"}]
    gateway = FakeGateway({"/ads/campaigns": ok({"data": rows})})
    resolvers = make_resolvers(gateway)
    assert await resolvers.resolve_campaign_id("impressions for campaign Summer Sale") == CAMPAIGN_A
    assert await resolvers.resolve_campaign_id(f"campaign {CAMPAIGN_B}") == CAMPAIGN_B
    assert await resolvers.resolve_campaign_id("impressions please") == ""


@pytest.mark.asyncio
async def test_resolve_poster_id():
    gateway = FakeGateway({"/ads/creatives/search": ok({"data": [{"id": CAMPAIGN_A, "name": "Lorla Studio"}]})})
    resolvers = make_resolvers(gateway)
    assert await resolvers.resolve_poster_id(CAMPAIGN_B) == (CAMPAIGN_B, None)
    poster_id, step = await resolvers.resolve_poster_id("Lorla Studio")
    assert poster_id == CAMPAIGN_A
    assert step.tool == "adsCreativesSearch"


@pytest.mark.asyncio
async def test_backend_failure_means_not_found():
    gateway = FakeGateway({"/ads/devices/counts/regions": transport_error(), "/ads/projects": transport_error()})
    resolvers = make_resolvers(gateway)
    assert await resolvers.detect_region("brt region") == ""
    assert await resolvers.detect_city("kcmo") == ""


@pytest.mark.asyncio
async def test_cache_keeps_last_good_data_on_empty_refresh():
    gateway = FakeGateway({"/ads/devices/counts/regions": [ok({"data": COUNT_ROWS}), ok({"data": []})]})
    cache = EntityCache(gateway, ttl_s=0)
    assert await cache.region_codes() == ["main", "brt"]
    assert await cache.region_codes() == ["main", "brt"]
    assert len(gateway.paths_called("/ads/devices/counts/regions")) == 2
