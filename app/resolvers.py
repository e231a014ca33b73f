"""Entity resolution against the Gateway.

``EntityCache`` holds the process-wide city, region and project lookups.
``EntityResolvers`` turns free text into codes, hosts and ids. Resolvers never
raise for backend trouble: a transport error, a non-2xx status or an
unreadable envelope all mean "not found" and the caller decides what to ask.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .envelope import EnvelopeError, Rows
from .gateway import GatewayClient, GatewayResult
from .schemas import Step
from .text import (
    collect_words,
    contains_word,
    extract_after_keyword,
    extract_campaign_id,
    looks_like_uuid,
    normalize_loose_text,
    score_name_match,
    tokenize_words,
    url_escape,
)

logger = logging.getLogger("uvicorn.error")

ACCEPT_SCORE = 30
STRONG_SCORE = 80
MIN_NAME_HITS = 2
DEVICE_PAGE_SIZE = 200
DEVICE_MAX_PAGES = 10

HOST_STOP_WORDS = {
    "show", "get", "give", "tell", "please", "me", "the", "a", "an",
    "device", "devices", "kiosk", "kiosks", "server", "info", "detail", "details",
    "status", "health", "metrics", "telemetry",
}

# Deployments disagree on the full-text parameter name for device search.
DEVICE_SEARCH_SHAPES: Tuple[Tuple[str, str], ...] = (
    ("adsDevicesSearch", "/ads/devices/search?query={q}&page=1&page_size=50"),
    ("adsDevicesSearch", "/ads/devices/search?q={q}&page=1&page_size=50"),
    ("adsDevicesSearch", "/ads/devices/search?search={q}&page=1&page_size=50"),
    ("adsDevices", "/ads/devices?query={q}&page=1&page_size=200"),
    ("adsDevices", "/ads/devices?search={q}&page=1&page_size=200"),
)


@dataclass
class ProjectLookup:
    city: str
    name: str
    description: str = ""
    words: List[str] = field(default_factory=list)


def _rows_or_none(result: GatewayResult) -> Optional[Rows]:
    if not result.ok:
        return None
    try:
        return result.rows()
    except EnvelopeError as exc:
        logger.debug("gateway envelope not understood: %s", exc)
        return None


def _first_str(row: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = row.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0


class EntityCache:
    """City, region and project lookups with independent refresh times.

    A refresh that comes back empty never replaces the last good data.
    """

    def __init__(self, gateway: GatewayClient, ttl_s: float = 600):
        self.gateway = gateway
        self.ttl_s = ttl_s
        self._lock = asyncio.Lock()
        self._cities: Set[str] = set()
        self._cities_at = 0.0
        self._regions: Set[str] = set()
        self._regions_at = 0.0
        self._projects: List[ProjectLookup] = []
        self._project_cities: Set[str] = set()
        self._projects_at = 0.0

    def _fresh(self, stamp: float) -> bool:
        return stamp > 0 and (time.monotonic() - stamp) < self.ttl_s

    async def _refresh_codes_locked(self) -> None:
        if self._fresh(self._cities_at) and self._fresh(self._regions_at):
            return
        rows = _rows_or_none(await self.gateway.get("/ads/devices/counts/regions"))
        if rows is None:
            return
        cities: Set[str] = set()
        regions: Set[str] = set()
        for row in rows.items:
            city = _first_str(row, "city").lower()
            region = _first_str(row, "region").lower()
            if city:
                cities.add(city)
            if region:
                regions.add(region)
        now = time.monotonic()
        if cities:
            self._cities = cities
            self._cities_at = now
        if regions:
            self._regions = regions
            self._regions_at = now

    async def _refresh_projects_locked(self) -> None:
        if self._fresh(self._projects_at):
            return
        rows = _rows_or_none(await self.gateway.get("/ads/projects?page=1&page_size=200"))
        if rows is None:
            return
        lookups: List[ProjectLookup] = []
        for row in rows.items:
            name = _first_str(row, "name").lower()
            if not name:
                continue
            description = _first_str(row, "description").lower()
            lookups.append(
                ProjectLookup(city=name, name=name, description=description, words=collect_words(name, description))
            )
        if not lookups:
            return
        self._projects = lookups
        self._project_cities = {p.city for p in lookups}
        self._projects_at = time.monotonic()

    async def city_codes(self) -> List[str]:
        async with self._lock:
            await self._refresh_codes_locked()
            return sorted(self._cities, key=len, reverse=True)

    async def region_codes(self) -> List[str]:
        async with self._lock:
            await self._refresh_codes_locked()
            return sorted(self._regions, key=len, reverse=True)

    async def projects(self) -> List[ProjectLookup]:
        async with self._lock:
            await self._refresh_projects_locked()
            return list(self._projects)

    async def project_cities(self) -> Set[str]:
        async with self._lock:
            await self._refresh_projects_locked()
            return set(self._project_cities)


class EntityResolvers:
    def __init__(self, gateway: GatewayClient, cache: EntityCache):
        self.gateway = gateway
        self.cache = cache

    async def is_known_region(self, code: str) -> bool:
        code = (code or "").strip().lower()
        return bool(code) and code in await self.cache.region_codes()

    async def is_project_city(self, code: str) -> bool:
        code = (code or "").strip().lower()
        return bool(code) and code in await self.cache.project_cities()

    # Location scope

    async def detect_region(self, message: str) -> str:
        msg = (message or "").strip().lower()
        if not msg:
            return ""
        says_city = "city" in msg
        if "region" in msg:
            words = tokenize_words(msg)
            for idx, word in enumerate(words):
                if word != "region":
                    continue
                neighbours = []
                if idx + 1 < len(words):
                    neighbours.append(words[idx + 1])
                if idx > 0:
                    neighbours.append(words[idx - 1])
                for candidate in neighbours:
                    if not await self.is_known_region(candidate):
                        continue
                    # "moco city brt region": the city token is not the region.
                    if says_city and await self.is_project_city(candidate):
                        continue
                    return candidate
        if "bus rapid transit" in msg:
            return "brt"
        has_region_word = contains_word(msg, "region")
        has_scope_word = has_region_word or contains_word(msg, "city")
        for code in await self.cache.region_codes():
            if "region" not in msg and len(code) > 3 and await self.is_project_city(code):
                continue
            if len(code) <= 2:
                # "da" must not match inside "today".
                if has_scope_word and contains_word(msg, code):
                    return code
                continue
            if code in msg:
                return code
        return ""

    async def detect_city(self, message: str) -> str:
        msg = (message or "").strip().lower()
        if not msg:
            return ""
        regions = set(await self.cache.region_codes())
        says_region = contains_word(msg, "region")
        says_city = "city" in msg or "cities" in msg
        for code in await self.cache.city_codes():
            if code not in msg:
                continue
            if len(code) < 3 and not (says_city and contains_word(msg, code)):
                continue
            if code in regions and says_region:
                continue
            return code
        return await self._detect_city_from_projects(msg)

    async def _detect_city_from_projects(self, msg: str) -> str:
        region = await self.detect_region(msg)
        region_only = bool(region) and "city" not in msg
        lookups = await self.cache.projects()
        if not lookups:
            return ""
        words = [w for w in tokenize_words(msg) if len(w) >= 2]
        word_set = set(words)
        best_city = ""
        best_score = 0
        for lookup in lookups:
            score = 0
            if len(lookup.city) <= 2:
                if contains_word(msg, lookup.city):
                    score = len(lookup.city)
            elif lookup.city in msg:
                score = len(lookup.city)
            else:
                for word in words:
                    if len(word) >= 3 and word in lookup.city:
                        score = max(score, len(word))
            if not score and lookup.name and lookup.name != lookup.city and lookup.name in msg:
                score = len(lookup.name)
            if not score and lookup.description and lookup.description in msg:
                score = len(lookup.description)
            if not score and not region_only:
                for alias in lookup.words:
                    if len(alias) < 3:
                        continue
                    if alias in msg or msg in alias or alias in word_set:
                        score = max(score, len(alias))
            if score > best_score:
                best_score = score
                best_city = lookup.city
        return best_city

    # Devices

    def _host_query_tokens(self, name: str) -> List[str]:
        words = [w for w in normalize_loose_text(name).split() if w not in HOST_STOP_WORDS]
        strong = [w for w in words if len(w) >= 4]
        return strong or words

    def _score_device_rows(
        self,
        name: str,
        tokens: List[str],
        rows: Iterable[Dict[str, Any]],
        region: str,
    ) -> Tuple[str, int]:
        best_host = ""
        best_score = 0
        for row in rows:
            row_region = _first_str(row, "region").lower()
            if region and row_region != region:
                continue
            host_name = _first_str(row, "host_name", "host", "hostName")
            server_id = _first_str(row, "server_id", "serverId", "device_key", "deviceKey")
            candidate = server_id or host_name
            if not candidate:
                continue
            kiosk = _first_str(row, "kiosk_name", "kioskName")
            device = _first_str(row, "name")
            display = _first_str(row, "display_name", "displayName")
            description = _first_str(row, "description")
            facing, stop_name = "", ""
            config = row.get("device_config")
            if isinstance(config, dict):
                facing = _first_str(config, "facing")
                stops = config.get("stops")
                if isinstance(stops, list) and stops and isinstance(stops[0], dict):
                    stop_name = _first_str(stops[0], "stop_name", "stopName")
                gtfs = config.get("gtfs")
                if not stop_name and isinstance(gtfs, dict):
                    stop_name = _first_str(gtfs, "stopName")
            readable = (kiosk, device, display, description, stop_name, facing)
            hits = 0
            for value in readable:
                norm = normalize_loose_text(value)
                if norm:
                    hits += sum(1 for t in tokens if len(t) >= 3 and t in norm)
            if hits < MIN_NAME_HITS:
                continue
            score = score_name_match(
                name, *readable, host_name, server_id, _first_str(row, "city"), row_region
            )
            if score > best_score:
                best_score = score
                best_host = candidate
        return best_host, best_score

    async def resolve_host(self, name: str, city: str = "", region: str = "") -> Tuple[str, Optional[Step]]:
        """Resolve a free-text device description to a lower-cased host.

        Search shapes are tried city-scoped first, then unscoped, before
        falling back to walking the device list page by page.
        """
        name = (name or "").strip()
        if not name:
            return "", None
        city = (city or "").strip().lower()
        region = (region or "").strip().lower()
        tokens = self._host_query_tokens(name)
        best_host, best_score = "", 0
        best_step: Optional[Step] = None
        last_step: Optional[Step] = None

        scopes = [True, False] if city else [False]
        for scoped in scopes:
            for tool, template in DEVICE_SEARCH_SHAPES:
                path = template.format(q=url_escape(name))
                if scoped:
                    path += "&city=" + url_escape(city)
                result = await self.gateway.get(path)
                last_step = result.step(tool)
                if result.status == 400:
                    continue
                rows = _rows_or_none(result)
                if not rows:
                    continue
                host, score = self._score_device_rows(name, tokens, rows.items, region)
                if score > best_score:
                    best_host, best_score = host, score
                    best_step = last_step
            if best_score >= ACCEPT_SCORE:
                return best_host.lower(), best_step

        for page in range(1, DEVICE_MAX_PAGES + 1):
            path = f"/ads/devices?page={page}&page_size={DEVICE_PAGE_SIZE}"
            if city:
                path += "&city=" + url_escape(city)
            result = await self.gateway.get(path)
            last_step = result.step("adsDevices")
            rows = _rows_or_none(result)
            if rows is None:
                break
            host, score = self._score_device_rows(name, tokens, rows.items, region)
            if score > best_score:
                best_host, best_score = host, score
                best_step = last_step
            if best_score >= STRONG_SCORE:
                break
            has_more = rows.has_more if rows.has_more else len(rows) == DEVICE_PAGE_SIZE
            if not has_more:
                break
        if best_score < ACCEPT_SCORE:
            return "", last_step
        return best_host.lower(), best_step

    # Venues, campaigns, posters

    async def resolve_venue_id(self, name: str) -> Tuple[int, Optional[Step]]:
        name = (name or "").strip()
        if not name:
            return 0, None
        step: Optional[Step] = None
        for tool, path in (
            ("adsVenuesSearch", "/ads/venues/search?query=" + url_escape(name) + "&page=1&page_size=50"),
            ("adsVenues", "/ads/venues?page=1&page_size=200"),
        ):
            result = await self.gateway.get(path)
            step = result.step(tool)
            rows = _rows_or_none(result)
            if not rows:
                continue
            best_id, best_score = 0, 0
            for row in rows.items:
                score = score_name_match(name, _first_str(row, "name"), _first_str(row, "description"))
                if score > best_score:
                    best_id, best_score = _as_int(row.get("id")), score
            if best_score >= ACCEPT_SCORE and best_id:
                return best_id, step
        return 0, step

    @staticmethod
    def _best_named_id(query: str, rows: Iterable[Dict[str, Any]]) -> str:
        """Exact name 1000, substring 500, else the number of shared tokens."""
        query = query.strip().lower()
        tokens = [t for t in normalize_loose_text(query.replace(",", " ").replace(";", " ")).split() if t]
        best_id, best_score = "", 0
        for row in rows:
            row_id = _first_str(row, "id")
            name = _first_str(row, "name").lower()
            if not looks_like_uuid(row_id) or not name:
                continue
            if name == query:
                score = 1000
            elif query in name:
                score = 500
            else:
                score = sum(1 for t in tokens if t in name)
            if score > best_score:
                best_id, best_score = row_id, score
        return best_id

    async def resolve_campaign_id(self, message: str) -> str:
        explicit = extract_campaign_id(message)
        if explicit:
            return explicit
        lower = (message or "").lower()
        name = extract_after_keyword(lower, "campaign").lstrip(":").strip()
        if not name:
            return ""
        rows = _rows_or_none(await self.gateway.get("/ads/campaigns?page=1&page_size=200"))
        if not rows:
            return ""
        return self._best_named_id(name, rows.items)

    async def resolve_poster_id(self, name: str) -> Tuple[str, Optional[Step]]:
        name = (name or "").strip()
        if not name:
            return "", None
        if looks_like_uuid(name):
            return name, None
        result = await self.gateway.get("/ads/creatives/search?query=" + url_escape(name))
        step = result.step("adsCreativesSearch")
        rows = _rows_or_none(result)
        if not rows:
            return "", step
        return self._best_named_id(name, rows.items), step
