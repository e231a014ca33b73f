"""Deterministic intent handlers, listed in routing order by ``default_handlers``."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from .envelope import EnvelopeError, unwrap_object
from .gateway import GatewayResult
from .intents import HandlerContext, HandlerResult, IntentHandler, OnToken, PageWalk, not_handled, walk_pages
from .memory import poster_name_from_question
from .schemas import CampaignImpressions, ChatData, ChatRequest, PosterImpression, Step
from .text import (
    detect_host_tokens,
    extract_after_keyword,
    extract_campaign_id,
    extract_explicit_device_id,
    extract_first_int,
    extract_poster_token,
    extract_status_filter,
    extract_time_window,
    extract_top_n,
    is_full_host_token,
    looks_like_uuid,
    mentions_stats,
    normalize_city_selection,
    parse_devices_list,
    parse_selected_days,
    parse_time_slots,
    rfc3339,
    tokenize_words,
    url_escape,
)

logger = logging.getLogger("uvicorn.error")

POP_PAGE_SIZE = 200
POP_MAX_PAGES = 10
DEFAULT_TOP = 10
LIST_LIMIT = 10

KIOSK_WISE_PHRASES = ("kiosk wise", "kiosk-wise", "kioskwise", "kiosks wise", "kiosks-wise", "by kiosk")


def _any(lower: str, *words: str) -> bool:
    return any(word in lower for word in words)


def _num(row: Dict[str, Any], *keys: str) -> float:
    for key in keys:
        value = row.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError:
                continue
    return 0.0


def _text(row: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = row.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def scope_label(city: str, region: str) -> str:
    """Answers quote scope this way so history hydration can read it back."""
    if region:
        return f"region '{region}'"
    return f"city '{city}'"


def scope_query(city: str, region: str) -> str:
    if region:
        return "&region=" + url_escape(region)
    if city:
        return "&city=" + url_escape(city)
    return ""


def failure(what: str, result: GatewayResult) -> str:
    if result.error:
        return f"Failed to fetch {what}: {result.error}"
    return f"Failed to fetch {what} (status {result.status})."


def rows_of(result: GatewayResult) -> List[Dict[str, Any]]:
    try:
        return result.rows().items
    except EnvelopeError as exc:
        logger.debug("unreadable gateway rows: %s", exc)
        return []


async def message_scope(ctx: HandlerContext, lower: str) -> Tuple[str, str]:
    """City and region named in the message, region winning a short-code clash."""
    region = await ctx.resolvers.detect_region(lower)
    city = await ctx.resolvers.detect_city(lower)
    city, _ = normalize_city_selection(city, region, lower)
    if city and region == city:
        region = ""
    return city, region


def plays_by_kiosk(rows: List[Dict[str, Any]]) -> List[Tuple[str, int]]:
    totals: Dict[str, int] = {}
    for row in rows:
        key = _text(row, "kiosk_name", "host_name")
        if key:
            totals[key] = totals.get(key, 0) + int(_num(row, "play_count", "plays"))
    return sorted(totals.items(), key=lambda kv: kv[1], reverse=True)


def search_query(message: str, lower: str, noun: str) -> str:
    """Free text after ``noun`` (or its plural), minus a leading "named"/"for"."""
    keyword = noun + "s" if noun + "s" in lower else noun
    query = extract_after_keyword(message, keyword).strip(" ?.!:")
    for prefix in ("named ", "called ", "for ", "matching "):
        if query.lower().startswith(prefix):
            query = query[len(prefix):].strip()
    return query


class TopStatsHandler(IntentHandler):
    """Ranked POP stats for one city or region."""

    group_by = ""
    noun = ""
    key_fields: Tuple[str, ...] = ()

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        city = await ctx.resolvers.detect_city(lower)
        region = "" if city else await ctx.resolvers.detect_region(lower)
        if not city and not region:
            state = ctx.state
            region = state.region
            city = "" if region else state.city
        if not city and not region:
            return self.reply("Please specify a city code (for example: kcmo, kc, brt, dart).", on_token)
        ctx.memory.update_location(ctx.conversation_id, city, region)
        ctx.memory.clear_pending(ctx.conversation_id)

        metric = "plays" if "play" in lower else "clicks"
        limit = extract_top_n(lower) or DEFAULT_TOP
        path = f"/pop/stats?group_by={self.group_by}&metric={metric}&order=top&limit={limit}"
        path += scope_query(city, region)
        start, end = extract_time_window(lower)
        if start and end:
            path += "&from=" + url_escape(start) + "&to=" + url_escape(end)
        result = await ctx.gateway.get(path)
        steps = [result.step("popStats")]
        if not result.ok:
            return self.reply(failure("POP stats", result), on_token, steps, error=result.error)

        items = rows_of(result)
        scope = scope_label(city, region)
        if not items:
            return self.reply(f"No {self.noun} {metric} stats found for {scope}.", on_token, steps)
        lines = [f"Top {self.noun}s in {scope} by {metric}:"]
        for idx, row in enumerate(items[:limit], start=1):
            name = _text(row, *self.key_fields) or "(unknown)"
            lines.append(f"{idx}. {name} - {int(_num(row, 'Metric', 'metric', 'value'))} {metric}")
        return self.reply("\n".join(lines), on_token, steps)


class TopPostersHandler(TopStatsHandler):
    handler_id = "topPosters"
    group_by = "poster"
    noun = "poster"
    key_fields = ("PosterName", "poster_name", "Key", "key")

    def matches(self, lower: str) -> bool:
        return "top" in lower and "poster" in lower


class TopDevicesHandler(TopStatsHandler):
    handler_id = "topDevices"
    group_by = "device"
    noun = "device"
    key_fields = ("Key", "key", "host_name")

    def matches(self, lower: str) -> bool:
        if "top" not in lower or "device" not in lower:
            return False
        return _any(lower, "from", " in ", "city", "perform")


class PosterByIdHandler(IntentHandler):
    """POP rows for one poster UUID, totalled and split per kiosk."""

    keyword = ""

    def matches(self, lower: str) -> bool:
        return self.keyword in lower and "poster" in lower and bool(extract_campaign_id(lower))

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        poster_id = extract_campaign_id(request.message)
        city, region = await message_scope(ctx, lower)
        if not city and not region:
            state = ctx.state
            region = state.poster_region or state.region
            city = "" if region else (state.poster_city or state.city)
        suffix = scope_query(city, region)

        def build(page: int) -> str:
            return f"/pop?poster_id={url_escape(poster_id)}&page={page}&page_size={POP_PAGE_SIZE}{suffix}"

        walk = await walk_pages(ctx.gateway, build, "popList", POP_PAGE_SIZE, POP_MAX_PAGES)
        if walk.failed:
            return self.reply(failure("POP data", walk.last), on_token, walk.steps, error=walk.last.error)
        if not walk.rows:
            return self.reply(f"No POP rows found for poster {poster_id}.", on_token, walk.steps)

        poster_name = _text(walk.rows[0], "poster_name")
        ctx.memory.update_poster(ctx.conversation_id, name=poster_name, city=city, region=region, poster_id=poster_id)
        ctx.memory.clear_pending(ctx.conversation_id)
        label = f"{poster_name} ({poster_id})" if poster_name else poster_id
        if city or region:
            label += " in " + scope_label(city, region)
        total = sum(int(_num(row, "play_count", "plays")) for row in walk.rows)
        answer = self.render(label, total, plays_by_kiosk(walk.rows), lower)
        return self.reply(answer, on_token, walk.steps)

    def render(self, label: str, total: int, kiosks: List[Tuple[str, int]], lower: str) -> str:
        raise NotImplementedError


class PosterAnalyticsByIdHandler(PosterByIdHandler):
    handler_id = "posterAnalyticsById"
    keyword = "analytics"

    def render(self, label: str, total: int, kiosks: List[Tuple[str, int]], lower: str) -> str:
        lines = [f"Analytics for poster {label}: {total} plays", f"Kiosks matched: {len(kiosks)}", "Top kiosks:"]
        for idx, (key, plays) in enumerate(kiosks[:LIST_LIMIT], start=1):
            lines.append(f"{idx}. {key} - {plays} plays")
        return "\n".join(lines)


class PopForPosterIdHandler(PosterByIdHandler):
    handler_id = "popForPosterId"
    keyword = "pop"

    def render(self, label: str, total: int, kiosks: List[Tuple[str, int]], lower: str) -> str:
        if not _any(lower, *KIOSK_WISE_PHRASES):
            return f"POP for poster {label}: {total} plays."
        lines = [f"POP for poster {label}: {total} plays", "Kiosk-wise:"]
        for idx, (key, plays) in enumerate(kiosks[:LIST_LIMIT], start=1):
            lines.append(f"{idx}. {key} - {plays} plays")
        return "\n".join(lines)


class PosterPlayCountHandler(IntentHandler):
    """Total plays of one poster in a city or region, optionally per kiosk."""

    handler_id = "posterPlayCount"

    def matches(self, lower: str) -> bool:
        kiosk_wise = _any(lower, *KIOSK_WISE_PHRASES)
        has_plays = _any(lower, "play count", "plays")
        if "poster" in lower and has_plays:
            return True
        if kiosk_wise and "same" in lower:
            return True
        if kiosk_wise and _any(lower, "whole", "all", "overall", "entire", "data"):
            return True
        padded = f" {lower} "
        return has_plays and _any(padded, " ad ", " creative ")

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        state = ctx.state
        kiosk_wise = _any(lower, *KIOSK_WISE_PHRASES)
        has_plays = _any(lower, "play count", "plays")
        if "poster" not in lower and not has_plays and not (state.poster_name or state.poster_id):
            return not_handled()

        message = request.message.strip()
        name = ""
        if "poster" in lower:
            name = poster_name_from_question(message)
        else:
            for keyword in ("play count of", "plays of"):
                name = extract_after_keyword(message, keyword)
                if name:
                    name = poster_name_from_question("poster " + name)
                    break
        for suffix in KIOSK_WISE_PHRASES:
            if name.lower().endswith(suffix):
                name = name[: -len(suffix)].strip()
        if name.lower() in ("same", "the same", "same poster", "it", "that"):
            name = ""
        poster_id = ""
        if looks_like_uuid(name):
            poster_id, name = name, ""
        if not name and not poster_id:
            name, poster_id = state.poster_name, state.poster_id
        if not name and not poster_id:
            return self.reply(
                "Please specify a poster name (for example: play count of poster Lorla Studio).", on_token
            )

        city, region = await message_scope(ctx, lower)
        if not city and not region:
            region = state.poster_region or state.region
            city = "" if region else (state.poster_city or state.city)
        if not city and not region:
            return self.reply("Please specify a city or region code (for example: moco or brt).", on_token)

        start, end = extract_time_window(lower)
        label = name or poster_id
        steps: List[Step] = []
        walk = await self._walk(ctx, name, poster_id, city, region, start, end)
        steps.extend(walk.steps)
        if walk.failed and walk.last.status == 400 and start:
            walk = await self._walk(ctx, name, poster_id, city, region, "", "")
            steps.extend(walk.steps)
        if not walk.rows and not walk.failed and name and not poster_id:
            poster_id, step = await ctx.resolvers.resolve_poster_id(name)
            if step is not None:
                steps.append(step)
            if poster_id:
                walk = await self._walk(ctx, "", poster_id, city, region, start, end)
                steps.extend(walk.steps)
        if walk.failed:
            return self.reply(failure("POP data", walk.last), on_token, steps, error=walk.last.error)

        ctx.memory.update_poster(ctx.conversation_id, name=name, city=city, region=region, poster_id=poster_id)
        ctx.memory.update_location(ctx.conversation_id, city, region)
        ctx.memory.clear_pending(ctx.conversation_id)

        scope = scope_label(city, region)
        if not walk.rows:
            return self.reply(f"No play counts found for poster '{label}' in {scope}.", on_token, steps)
        total = sum(int(_num(row, "play_count", "plays")) for row in walk.rows)
        if not kiosk_wise:
            return self.reply(f"Play count for poster '{label}' in {scope}: {total} plays.", on_token, steps)

        lines = [f"Play count for poster '{label}' in {scope}: {total} plays", "Kiosk-wise:"]
        for idx, (key, plays) in enumerate(plays_by_kiosk(walk.rows)[:LIST_LIMIT], start=1):
            lines.append(f"{idx}. {key} - {plays} plays")
        return self.reply("\n".join(lines), on_token, steps)

    async def _walk(self, ctx, name, poster_id, city, region, start, end):
        if poster_id:
            base = "/pop?poster_id=" + url_escape(poster_id)
        else:
            base = "/pop?poster_name=" + url_escape(name)
        suffix = ""
        if start and end:
            suffix += "&from=" + url_escape(start) + "&to=" + url_escape(end)
        suffix += scope_query(city, region)

        def build(page: int) -> str:
            return f"{base}&page={page}&page_size={POP_PAGE_SIZE}{suffix}"

        return await walk_pages(ctx.gateway, build, "pop", POP_PAGE_SIZE, POP_MAX_PAGES)


class KioskCountHandler(IntentHandler):
    handler_id = "kioskCount"

    def matches(self, lower: str) -> bool:
        if not _any(lower, "kiosk", "device", "server"):
            return False
        if _any(lower, "telemetry", "health", "metric", "venue", "poster", "campaign", "detail", "pop"):
            return False
        if mentions_stats(lower):
            return False
        if _any(lower, "how many", "count", "number of", "total"):
            return True
        return _any(lower, "offline", "online", "status")

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        if detect_host_tokens(request.message):
            # A specific device goes to telemetry or details.
            return not_handled()
        city, region = await message_scope(ctx, lower)
        if not city and not region:
            state = ctx.state
            city, region = state.city, ("" if state.city else state.region)
        if not city and not region:
            return self.reply("Please specify a city or region code (for example: kcmo or brt).", on_token)
        ctx.memory.update_location(ctx.conversation_id, city, region)
        ctx.memory.clear_pending(ctx.conversation_id)
        if _any(lower, "offline", "online", "status"):
            return await self._status(ctx, city, region, on_token)
        return await self._count(ctx, city, region, on_token)

    async def _status(self, ctx: HandlerContext, city: str, region: str, on_token: OnToken) -> HandlerResult:
        if city:
            path = "/metrics/servers/status/city?city=" + url_escape(city)
        else:
            path = "/metrics/servers/status/city?region=" + url_escape(region)
        result = await ctx.gateway.get(path)
        steps = [result.step("metricsServerStatus")]
        if not result.ok:
            return self.reply(failure("device status", result), on_token, steps, error=result.error)
        label = f"City '{city}'" if city else f"Region '{region}'"
        try:
            record = unwrap_object(result.json())
        except EnvelopeError:
            record = {}
        rows = rows_of(result)
        if rows:
            record = {
                "offline": sum(_num(r, "offline", "offline_count") for r in rows),
                "online": sum(_num(r, "online", "online_count") for r in rows),
            }
        if not any(key in record for key in ("offline", "online", "offline_count", "online_count")):
            return self.reply(
                f"No device status data was found for {scope_label(city, region)}.", on_token, steps
            )
        offline = int(_num(record, "offline", "offline_count"))
        online = int(_num(record, "online", "online_count"))
        total = int(_num(record, "total", "total_count")) or offline + online
        answer = f"{label}: {offline} offline / {online} online (total {total} devices in the last 5m)."
        return self.reply(answer, on_token, steps)

    async def _count(self, ctx: HandlerContext, city: str, region: str, on_token: OnToken) -> HandlerResult:
        path = "/ads/devices/counts/regions"
        if city:
            path += "?city=" + url_escape(city)
        result = await ctx.gateway.get(path)
        steps = [result.step("adsDeviceCounts")]
        if not result.ok:
            return self.reply(failure("device counts", result), on_token, steps, error=result.error)
        total = 0
        for row in rows_of(result):
            if not city and _text(row, "region", "region_code").lower() != region:
                continue
            total += int(_num(row, "count", "kiosk_count", "kiosks", "devices"))
        answer = f"There are {total} kiosks/devices recorded for {scope_label(city, region)}."
        return self.reply(answer, on_token, steps)


class HostPopHandler(IntentHandler):
    """One device's POP for a single day, ranked by poster.

    Without a host in the message, a named city or region means the user
    wants aggregate stats, so the message is left for ``PopStatsHandler``.
    Otherwise the last host from memory is used, then the display-name
    resolver.
    """

    day_label = ""
    day_word = ""
    lookup_keywords: Tuple[str, ...] = ()

    async def find_host(
        self, ctx: HandlerContext, request: ChatRequest, lower: str
    ) -> Tuple[Optional[str], List[Step]]:
        for token in detect_host_tokens(request.message):
            if is_full_host_token(token.replace("_", "-")):
                return token.lower(), []
        if any(await message_scope(ctx, lower)):
            return None, []
        state = ctx.state
        if state.host:
            return state.host, []
        lookup = ""
        for keyword in self.lookup_keywords:
            lookup = extract_after_keyword(lower, keyword)
            if lookup:
                break
        lookup = lookup or request.message
        host, step = await ctx.resolvers.resolve_host(lookup, city=state.city, region=state.region)
        if not host and lookup != request.message:
            host, step = await ctx.resolvers.resolve_host(request.message, city=state.city, region=state.region)
        if host and step is not None:
            return host, [step]
        return host, []

    async def walk(self, ctx: HandlerContext, host: str, window: str) -> PageWalk:
        def build(page: int) -> str:
            return f"/pop?host_name={url_escape(host)}{window}&page={page}&page_size={POP_PAGE_SIZE}"

        return await walk_pages(ctx.gateway, build, "popList", POP_PAGE_SIZE, POP_MAX_PAGES)

    async def fetch(self, ctx: HandlerContext, host: str) -> Tuple[PageWalk, List[Step], str]:
        """The day's rows, every step taken, and a reply when the rows could not be read."""
        raise NotImplementedError

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        host, steps = await self.find_host(ctx, request, lower)
        if host is None:
            return not_handled()
        if not host:
            return self.reply(
                "Please specify the device host/server id (for example: moco-brt-briggs-001) "
                "or a kiosk display name.",
                on_token,
                steps,
            )
        ctx.memory.update_host(ctx.conversation_id, host)
        ctx.memory.clear_pending(ctx.conversation_id)

        walk, fetched, problem = await self.fetch(ctx, host)
        steps.extend(fetched)
        if problem:
            error = walk.last.error if walk.last is not None else None
            return self.reply(problem, on_token, steps, error=error)
        if not walk.rows:
            return self.reply(f"No POP data was found for '{host}' {self.day_word}.", on_token, steps)
        answer = render_host_pop(self.day_label, host, walk.rows, "minute" in lower)
        return self.reply(answer, on_token, steps)


class PopYesterdayByHostHandler(HostPopHandler):
    handler_id = "popYesterdayByHost"
    day_label = "Yesterday's"
    day_word = "yesterday"
    lookup_keywords = ("for", "of", "info", "details", "about")

    FALLBACK_PRESETS = ("yesterday", "previous_day", "prev_day", "last_day")

    def matches(self, lower: str) -> bool:
        return "pop" in lower and "yesterday" in lower

    async def fetch(self, ctx: HandlerContext, host: str) -> Tuple[PageWalk, List[Step], str]:
        today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        window = "&from=" + url_escape(rfc3339(today - timedelta(days=1))) + "&to=" + url_escape(rfc3339(today))
        walk = await self.walk(ctx, host, window)
        steps = list(walk.steps)
        if not walk.failed:
            return walk, steps, ""
        if walk.last.status != 400:
            return walk, steps, failure("POP data", walk.last)
        # Older gateways reject explicit windows and only know named presets.
        for preset in self.FALLBACK_PRESETS:
            walk = await self.walk(ctx, host, "&preset=" + preset)
            steps.extend(walk.steps)
            if not walk.failed:
                return walk, steps, ""
            if walk.last.status != 400 or "invalid preset" not in walk.last.text.lower():
                return walk, steps, failure("POP data", walk.last)
        return walk, steps, "This POP endpoint does not appear to support a 'yesterday' preset on this gateway."


class PopTodayByHostHandler(HostPopHandler):
    handler_id = "popTodayByHost"
    day_label = "Today's"
    day_word = "today"
    lookup_keywords = ("stats for", "for", "info", "details", "about")

    SHOW_POP = ("pop", "show pop", "show me pop", "show the pop", "get pop", "get me pop")

    def matches(self, lower: str) -> bool:
        if lower.strip(" ?.!") in self.SHOW_POP:
            return True
        stats = mentions_stats(lower)
        if not ("pop" in lower or stats):
            return False
        if _any(lower, "today", "todays", "current_day"):
            return True
        return stats and _any(lower, "device", "kiosk", "server")

    async def fetch(self, ctx: HandlerContext, host: str) -> Tuple[PageWalk, List[Step], str]:
        walk = await self.walk(ctx, host, "&preset=today")
        problem = failure("POP data", walk.last) if walk.failed else ""
        return walk, list(walk.steps), problem


def render_host_pop(day_label: str, host: str, rows: List[Dict[str, Any]], minutes: bool) -> str:
    """Per-poster plays (or minutes) for one device, with its location and last POP time."""
    by_poster: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        key = _text(row, "poster_id") or _text(row, "poster_name")
        if not key:
            continue
        agg = by_poster.get(key)
        if agg is None:
            agg = by_poster[key] = {
                "name": _text(row, "poster_name") or _text(row, "poster_id"),
                "type": _text(row, "poster_type"),
                "kiosk": _text(row, "kiosk_name"),
                "lat": _num(row, "kiosk_lat"),
                "long": _num(row, "kiosk_long"),
                "plays": 0,
                "seconds": 0,
                "seen": None,
            }
        agg["plays"] += int(_num(row, "play_count"))
        agg["seconds"] += int(_num(row, "value"))
        seen = _parse_moment(row.get("pop_datetime"))
        if seen is not None and (agg["seen"] is None or seen > agg["seen"]):
            agg["seen"] = seen
            agg["type"] = _text(row, "poster_type") or agg["type"]
    ranked = sorted(by_poster.values(), key=lambda a: a["plays"], reverse=True)[:LIST_LIMIT]
    if not ranked:
        return f"No POP data was found for '{host}'."

    first = ranked[0]
    if minutes:
        lines = [
            f"{day_label} POP for '{host}' ({first['kiosk']}) in minutes:",
            "(Minutes computed from POP 'value' duration; if missing, estimated assuming 10 seconds per play.)",
        ]
    else:
        lines = [f"{day_label} POP for '{host}' ({first['kiosk']}):"]
    for idx, agg in enumerate(ranked, start=1):
        extra = f" ({agg['type']})" if agg["type"] else ""
        if minutes:
            seconds = agg["seconds"] if agg["seconds"] > 0 else agg["plays"] * 10
            lines.append(f"{idx}. {agg['name']} - {seconds / 60:.1f} minutes{extra}")
        else:
            lines.append(f"{idx}. {agg['name']} - {agg['plays']} plays{extra}")
    updated = rfc3339(first["seen"]) if first["seen"] is not None else "unknown"
    lines.append(f"Location: {first['lat']:.6f}, {first['long']:.6f} | Last update: {updated}")
    return "\n".join(lines)


class PopStatsHandler(IntentHandler):
    handler_id = "popStats"

    def matches(self, lower: str) -> bool:
        if not (mentions_stats(lower) or _any(lower, "pop", "analytic")):
            return False
        if _any(lower, "top poster", "top device", "top kiosk") and "analytic" not in lower:
            return False
        return True

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        city, region = await message_scope(ctx, lower)
        if not city and not region:
            state = ctx.state
            region = state.region
            city = "" if region else state.city
        if not city and not region:
            return self.reply("Please specify a city or region code (for example: kcmo or brt).", on_token)
        ctx.memory.update_location(ctx.conversation_id, city, region)
        ctx.memory.clear_pending(ctx.conversation_id)

        if _any(lower, "kiosk"):
            group_by, noun = "kiosk", "kiosk"
        elif _any(lower, "device", "host"):
            group_by, noun = "device", "device"
        else:
            group_by, noun = "poster", "poster"
        if "play" in lower:
            metric = "plays"
        elif "count" in lower:
            metric = "count"
        else:
            metric = "clicks"
        limit = extract_top_n(lower) or DEFAULT_TOP
        path = f"/pop/stats?group_by={group_by}&metric={metric}&order=top&limit={limit}"
        path += scope_query(city, region)
        start, end = extract_time_window(lower)
        if start and end:
            path += "&from=" + url_escape(start) + "&to=" + url_escape(end)
        result = await ctx.gateway.get(path)
        steps = [result.step("popStats")]
        if not result.ok:
            return self.reply(failure("POP stats", result), on_token, steps, error=result.error)
        items = rows_of(result)
        scope = scope_label(city, region)
        if not items:
            return self.reply(f"No POP {metric} stats found for {scope}.", on_token, steps)
        lines = [f"Top {noun}s in {scope} by {metric}:"]
        for idx, row in enumerate(items[:limit], start=1):
            name = _text(row, "PosterName", "poster_name", "Key", "key") or "(unknown)"
            lines.append(f"{idx}. {name} - {int(_num(row, 'Metric', 'metric', 'value'))} {metric}")
        return self.reply("\n".join(lines), on_token, steps)


class VenueDevicesHandler(IntentHandler):
    handler_id = "venueDevices"

    def matches(self, lower: str) -> bool:
        if "venue" not in lower or "device" not in lower or "venues for" in lower:
            return False
        return _any(lower, " in ", " for ", "from", "show")

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        steps: List[Step] = []
        venue_id = extract_first_int(lower)
        if not venue_id:
            name = extract_after_keyword(request.message, "venue").strip(" ?.!")
            if name:
                venue_id, step = await ctx.resolvers.resolve_venue_id(name)
                if step is not None:
                    steps.append(step)
        if not venue_id:
            venue_id = ctx.state.venue_id
        if not venue_id:
            return self.reply(
                "Please provide a venue id (number) or name. Example: show devices in venue Union Station.",
                on_token,
                steps,
            )
        ctx.memory.update_venue(ctx.conversation_id, venue_id)
        result = await ctx.gateway.get(f"/ads/venues/{venue_id}/devices?page=1&page_size=20")
        steps.append(result.step("adsVenueDevices"))
        if not result.ok:
            return self.reply(failure("venue devices", result), on_token, steps, error=result.error)
        rows = rows_of(result)
        if not rows:
            return self.reply(f"No devices found for venue {venue_id}.", on_token, steps)
        lines = [f"Devices in venue {venue_id}:"]
        for row in rows[:LIST_LIMIT]:
            host = _text(row, "host_name", "host")
            name = _text(row, "name", "display_name") or host
            lines.append(f"- {name} ({host})" if host and host != name else f"- {name}")
        return self.reply("\n".join(lines), on_token, steps)


class DeviceVenuesHandler(IntentHandler):
    handler_id = "deviceVenues"

    def matches(self, lower: str) -> bool:
        if "venue" not in lower:
            return False
        if not (_any(lower, "device", "kiosk", "server") or detect_host_tokens(lower)):
            return False
        return _any(lower, "for", "of", "show", "list")

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        steps: List[Step] = []
        host = ""
        device_id = extract_explicit_device_id(lower)
        if not device_id:
            for token in detect_host_tokens(request.message):
                if is_full_host_token(token.replace("_", "-")):
                    host = token.lower()
                    break
            state = ctx.state
            host = host or state.host
            if not host:
                lookup = extract_after_keyword(lower, "device") or extract_after_keyword(lower, "kiosk")
                host, step = await ctx.resolvers.resolve_host(
                    lookup or request.message, city=state.city, region=state.region
                )
                if host and step is not None:
                    steps.append(step)
            if host:
                ctx.memory.update_host(ctx.conversation_id, host)
                device_id = await self._device_id(ctx, host, steps)
                if not device_id:
                    return self.reply(
                        "Couldn't resolve device id for that host. Please provide a numeric device id.",
                        on_token,
                        steps,
                    )
        if not device_id:
            return self.reply(
                "Please provide a numeric device id (or a host name) to list its venues.", on_token, steps
            )
        ctx.memory.clear_pending(ctx.conversation_id)

        result = await ctx.gateway.get(f"/ads/devices/{device_id}/venues?page=1&page_size=20")
        steps.append(result.step("adsDeviceVenues"))
        if result.status >= 500 and host:
            # Some deployments key this route by host instead of numeric id.
            by_host = await ctx.gateway.get(f"/ads/devices/{url_escape(host)}/venues?page=1&page_size=20")
            steps.append(by_host.step("adsDeviceVenuesByHost"))
            if by_host.ok:
                result = by_host
        if not result.ok:
            if result.status >= 500 and _any(result.text, "Failed to list venues by device", "expected"):
                return self.reply(
                    "The venues-by-device endpoint is currently failing server-side (500). "
                    "Workaround: use `list venues` to find a venue id, then `show devices in venue <id>` "
                    "to see membership.",
                    on_token,
                    steps,
                )
            return self.reply(failure("device venues", result), on_token, steps, error=result.error)
        rows = rows_of(result)
        if not rows:
            return self.reply(f"No venues found for device {device_id}.", on_token, steps)
        header = f"Venues for {host} (device {device_id}):" if host else f"Venues for device {device_id}:"
        lines = [header]
        for row in rows[:LIST_LIMIT]:
            lines.append(f"- {_text(row, 'name')} ({int(_num(row, 'id'))})")
        return self.reply("\n".join(lines), on_token, steps)

    async def _device_id(self, ctx: HandlerContext, host: str, steps: List[Step]) -> int:
        result = await ctx.gateway.get("/ads/devices/" + url_escape(host))
        steps.append(result.step("adsDevice"))
        if not result.ok:
            return 0
        try:
            return int(_num(unwrap_object(result.json()), "id"))
        except EnvelopeError:
            return 0


class VenueSearchHandler(IntentHandler):
    handler_id = "venueSearch"

    def matches(self, lower: str) -> bool:
        if "venue" not in lower:
            return False
        return _any(lower, "search", "find", "list", "show", "all")

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        query = search_query(request.message, lower, "venue") if _any(lower, "search", "find") else ""
        result = await ctx.gateway.get("/ads/venues?page=1&page_size=50")
        steps = [result.step("adsVenues")]
        if not result.ok:
            return self.reply(failure("venues", result), on_token, steps, error=result.error)
        rows = rows_of(result)
        if query:
            needle = query.lower()
            rows = [r for r in rows if needle in _text(r, "name").lower()]
            if not rows:
                return self.reply(f"No venues found for query '{query}'.", on_token, steps)
            header = f"Venue search results for '{query}':"
        else:
            if not rows:
                return self.reply("No venues found.", on_token, steps)
            header = "Venues:"
        if len(rows) == 1:
            ctx.memory.update_venue(ctx.conversation_id, int(_num(rows[0], "id")))
        lines = [header]
        for row in rows[:LIST_LIMIT]:
            lines.append(f"- {_text(row, 'name')} ({int(_num(row, 'id'))})")
        return self.reply("\n".join(lines), on_token, steps)


class LowUptimeDevicesHandler(IntentHandler):
    """Devices ranked by latest uptime, unknown (zero) uptime first."""

    handler_id = "lowUptimeDevices"
    max_pages = 5
    page_size = 200

    def matches(self, lower: str) -> bool:
        if "uptime" not in lower or not _any(lower, "low", "down", "unstable"):
            return False
        return _any(lower, "device", "kiosk", "server") and not detect_host_tokens(lower)

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        city, region = await message_scope(ctx, lower)
        if not city and not region:
            state = ctx.state
            city, region = state.city, state.region
        steps: List[Step] = []
        found: List[Dict[str, Any]] = []
        for page in range(1, self.max_pages + 1):
            result = await ctx.gateway.get(
                f"/metrics/latest?page={page}&page_size={self.page_size}&include_totals=false"
            )
            steps.append(result.step("metricsLatest"))
            if not result.ok:
                return self.reply(failure("latest metrics", result), on_token, steps, error=result.error)
            try:
                rows = result.rows()
            except EnvelopeError:
                return self.reply("Latest metrics response could not be parsed.", on_token, steps)
            for row in rows.items:
                server_id = _text(row, "server_id").lower()
                row_city = _text(row, "city").lower()
                row_region = _text(row, "region").lower()
                if not server_id or (city and row_city != city) or (region and row_region != region):
                    continue
                found.append(
                    {"server_id": server_id, "city": row_city, "region": row_region, "uptime": int(_num(row, "uptime"))}
                )
            if not rows.has_more:
                break

        if not found:
            parts = []
            if region:
                parts.append(f"region '{region}'")
            if city:
                parts.append(f"city '{city}'")
            scope = ", ".join(parts) or "the current scope"
            return self.reply(f"No devices with uptime metrics were found for {scope}.", on_token, steps)

        found.sort(key=lambda r: (r["uptime"] > 0, r["uptime"], r["server_id"]))
        limit = min(extract_top_n(lower) or DEFAULT_TOP, 50)
        lines = ["Devices with lowest uptime:"]
        for idx, row in enumerate(found[:limit], start=1):
            label = row["server_id"]
            if row["city"] or row["region"]:
                label += f" ({row['city']}/{row['region']})"
            uptime = _uptime(row["uptime"]) if row["uptime"] else "uptime unknown/0"
            lines.append(f"{idx}. {label} - {uptime}")
        return self.reply("\n".join(lines), on_token, steps)


class DeviceTelemetryHandler(IntentHandler):
    """Latest telemetry sample for one device, limited to the sections asked about."""

    handler_id = "deviceTelemetry"

    EXPLICIT = (
        "telemetry", "health", "device status", "metrics", "temperature", "battery", "uptime", "disk",
        "storage", "cpu", "ram", "volume", "mute", "network", "bandwidth", "data usage",
    )
    SECTIONS = {
        "temp": ("temp", "temperature", "heat"),
        "volume": ("volume", "sound", "speaker", "audio"),
        "mute": ("mute",),
        "power": ("power", "online", "offline"),
        "battery": ("battery",),
        "display": ("display", "screen", "panel"),
        "fan": ("fan",),
        "cpu": ("cpu", "processor"),
        "memory": ("memory", "ram"),
        "disk": ("disk", "storage"),
        "network": (
            "network", "bandwidth", "traffic", "throughput", "internet", "data usage", "consumed",
            "consumption", "usage", "using",
        ),
        "processes": ("process", "service", "apps"),
        "input": ("input", "usb", "peripheral"),
        "uptime": ("uptime",),
    }

    def wanted(self, lower: str) -> Dict[str, bool]:
        words = set(tokenize_words(lower))
        wants = {}
        for section, keys in self.SECTIONS.items():
            # "ram" and "fan" are too short to match as substrings.
            wants[section] = any((k in words) if len(k) <= 3 else (k in lower) for k in keys)
        if "how much" in lower and "data" in lower:
            wants["network"] = True
        if _any(lower, "telemetry", "status", "health", "metrics"):
            wants = {section: True for section in wants}
        return wants

    def matches(self, lower: str) -> bool:
        if _any(lower, "campaign", "creative", "impression"):
            return False
        if _any(lower, "analytic", "pop", "stats") and not _any(lower, *self.EXPLICIT):
            return False
        return any(self.wanted(lower).values())

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        hosts = detect_host_tokens(request.message)
        if hosts:
            host = hosts[0].strip().lower()
        else:
            host = ctx.state.host
        if not host:
            ctx.memory.set_pending(ctx.conversation_id, self.handler_id, request.message)
            return self.reply("Please specify the device or server name (for example: dart2).", on_token)

        ctx.memory.update_host(ctx.conversation_id, host)
        parts = host.replace("_", "-").split("-")
        if len(parts) >= 3:
            ctx.memory.update_location(ctx.conversation_id, parts[0], parts[1])
        ctx.memory.clear_pending(ctx.conversation_id)

        wants = self.wanted(lower)
        include_totals = "true" if wants["network"] else "false"
        path = f"/metrics/history?page=1&page_size=1&include_totals={include_totals}&server_id={url_escape(host)}"
        result = await ctx.gateway.get(path)
        steps = [result.step("metricsHistory")]
        if not result.ok:
            return self.reply(failure("telemetry data", result), on_token, steps, error=result.error)
        try:
            payload = result.json()
        except EnvelopeError:
            payload = None
        entries = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(entries, list) or not entries or not isinstance(entries[0], dict):
            return self.reply(f"No telemetry was found for device '{host}'.", on_token, steps)
        totals = payload.get("totals") if isinstance(payload.get("totals"), dict) else {}
        sections = render_telemetry(entries[0], totals, wants)
        answer = (
            f"Latest telemetry for '{host}': {' | '.join(sections)} "
            f"(recorded {_recorded_at(entries[0].get('time'))} UTC)."
        )
        return self.reply(answer, on_token, steps)


def _mib(value: float) -> float:
    return value / (1024 * 1024)


def _gib(value: float) -> float:
    return value / (1024 * 1024 * 1024)


def _parse_moment(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        moment = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _recorded_at(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        return "unknown"
    moment = _parse_moment(value)
    return rfc3339(moment) if moment is not None else value.strip()


def _uptime(seconds: int) -> str:
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def render_telemetry(entry: Dict[str, Any], totals: Dict[str, Any], wants: Dict[str, bool]) -> List[str]:
    sections: List[str] = []
    if wants["temp"]:
        chunks = [f"ambient {_num(entry, 'temperature'):.1f}°C"]
        if _num(entry, "chassis_temperature"):
            chunks.append(f"chassis {_num(entry, 'chassis_temperature'):.1f}°C")
        if _num(entry, "hotspot_temperature"):
            chunks.append(f"hotspot {_num(entry, 'hotspot_temperature'):.1f}°C")
        sections.append("Temperature: " + ", ".join(chunks))
    if wants["volume"] or wants["mute"]:
        volume = f"{_num(entry, 'sound_volume_percent'):.0f}%"
        muted = bool(entry.get("sound_muted"))
        if wants["mute"]:
            sections.append(f"Volume muted (level {volume})." if muted else f"Volume active at {volume} (not muted).")
        else:
            sections.append(f"Volume {volume}" + (" (muted)" if muted else ""))
    if wants["power"]:
        sections.append("Power online" if entry.get("power_online") else "Power offline")
    if wants["battery"]:
        if entry.get("battery_present"):
            sections.append(f"Battery {int(_num(entry, 'battery_charge_percent'))}% charge.")
        else:
            sections.append("Battery not present.")
    if wants["display"]:
        if entry.get("display_connected"):
            dpms = "off" if entry.get("display_dpms_enabled") else "on"
            sections.append(
                f"Display {int(_num(entry, 'display_width'))}x{int(_num(entry, 'display_height'))} "
                f"@ {int(_num(entry, 'display_refresh_hz'))}Hz (DPMS {dpms})."
            )
        else:
            sections.append("Display disconnected.")
    if wants["fan"]:
        sections.append(f"Fan {int(_num(entry, 'fan_rpm'))} RPM.")
    stats = []
    if wants["cpu"]:
        stats.append(f"CPU {_num(entry, 'cpu'):.1f}%")
    if wants["memory"]:
        stats.append(f"Memory {_num(entry, 'memory'):.1f}%")
    if stats:
        sections.append(", ".join(stats))
    if wants["disk"]:
        sections.append(
            f"Disk {_num(entry, 'disk'):.1f}% used "
            f"({_gib(_num(entry, 'disk_used_bytes')):.1f}/{_gib(_num(entry, 'disk_total_bytes')):.1f} GB)."
        )
    if wants["network"]:
        if "net_monthly_rx_bytes" in totals or "net_monthly_tx_bytes" in totals:
            monthly_rx, monthly_tx = _num(totals, "net_monthly_rx_bytes"), _num(totals, "net_monthly_tx_bytes")
        else:
            monthly_rx, monthly_tx = _num(entry, "net_monthly_rx_bytes"), _num(entry, "net_monthly_tx_bytes")
        sections.append(
            f"Network current RX {_mib(_num(entry, 'net_bytes_recv')):.1f} MB, "
            f"TX {_mib(_num(entry, 'net_bytes_sent')):.1f} MB | "
            f"daily RX {_mib(_num(entry, 'net_daily_rx_bytes')):.1f} MB, "
            f"TX {_mib(_num(entry, 'net_daily_tx_bytes')):.1f} MB | "
            f"monthly RX {_mib(monthly_rx):.1f} MB, TX {_mib(monthly_tx):.1f} MB."
        )
    processes = entry.get("process_statuses")
    if wants["processes"] and isinstance(processes, list) and processes:
        down = [_text(p, "name") for p in processes if isinstance(p, dict) and not p.get("running")]
        sections.append("Processes down: " + ", ".join(down) if down else "All monitored processes running.")
    if wants["input"]:
        sections.append(
            f"Input devices healthy {int(_num(entry, 'input_devices_healthy'))}, "
            f"missing {int(_num(entry, 'input_devices_missing'))}."
        )
    link = entry.get("link_state")
    if wants["network"] and isinstance(link, dict) and (_text(link, "interface") or _num(link, "speed_mbps")):
        state = "link up" if link.get("link_up") else "link down"
        sections.append(
            f"Interface {_text(link, 'interface')} ({_text(link, 'type')}) {state} "
            f"@ {int(_num(link, 'speed_mbps'))}Mbps, duplex={str(bool(link.get('duplex_full'))).lower()}."
        )
    if wants["uptime"] and _num(entry, "uptime") > 0:
        sections.append(f"Uptime {_uptime(int(_num(entry, 'uptime')))}.")
    if not sections:
        sections.append("No matching telemetry fields requested.")
    return sections


class DeviceDetailsHandler(IntentHandler):
    handler_id = "deviceDetails"

    NAME_STOP_WORDS = {
        "show", "get", "give", "me", "the", "a", "an", "of", "for", "about", "details", "detail", "info",
        "information", "device", "devices", "kiosk", "kiosks", "server", "please", "what", "is", "are",
        "same", "this", "that",
    }

    def matches(self, lower: str) -> bool:
        if not _any(lower, "device", "kiosk", "server"):
            return False
        if _any(lower, "pop", "venue", "metric", "telemetry", "internet", "usage"):
            return False
        return _any(lower, "detail", "info", "show", "get")

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        steps: List[Step] = []
        host = ""
        for token in detect_host_tokens(request.message):
            if is_full_host_token(token):
                host = token.lower()
                break
        if not host:
            words = [w for w in request.message.strip(" ?.!").split() if w.lower() not in self.NAME_STOP_WORDS]
            name = " ".join(words).strip()
            if not name:
                host = ctx.state.host
            else:
                state = ctx.state
                host, step = await ctx.resolvers.resolve_host(name, city=state.city, region=state.region)
                if step is not None:
                    steps.append(step)
        if not host:
            return self.reply(
                "Please specify a device/kiosk host (for example: moco-brt-briggs-001) or a kiosk display name.",
                on_token,
                steps,
            )
        ctx.memory.update_host(ctx.conversation_id, host)
        ctx.memory.clear_pending(ctx.conversation_id)

        result = await ctx.gateway.get("/ads/devices/" + url_escape(host))
        steps.append(result.step("adsDevice"))
        if not result.ok:
            return self.reply(failure("device details", result), on_token, steps, error=result.error)
        try:
            device = unwrap_object(result.json())
        except EnvelopeError:
            return self.reply(f"No device details were found for '{host}'.", on_token, steps)
        config = device.get("device_config") if isinstance(device.get("device_config"), dict) else {}
        region = device.get("region")
        region_code = _text(region, "code") if isinstance(region, dict) else (region or "")
        lines = [f"Device details for {host}:"]
        for label, value in (
            ("Host", _text(device, "host_name", "host") or host),
            ("Device ID", _text(device, "device_id") or (str(device["id"]) if device.get("id") else "")),
            ("Name", _text(device, "name", "display_name")),
            ("City", _text(config, "city") or _text(device, "city")),
            ("Region", region_code),
            ("Description", _text(device, "description")),
        ):
            if value:
                lines.append(f"- {label}: {value}")
        return self.reply("\n".join(lines), on_token, steps)


class CampaignCreativesHandler(IntentHandler):
    handler_id = "campaignCreatives"

    NAME_STOP_WORDS = {"show", "list", "get", "me", "the", "all", "for", "of", "creatives", "creative"}

    def matches(self, lower: str) -> bool:
        if "creative" not in lower or "campaign" not in lower or "upload" in lower:
            return False
        return _any(lower, "show", "list", "get")

    def campaign_name(self, lower: str) -> str:
        """Campaign name before "campaign", else after it, without filler words."""
        idx = lower.find("campaign")
        words = [w for w in lower[:idx].split() if w not in self.NAME_STOP_WORDS]
        name = " ".join(words).strip(" ?.!:")
        if name:
            return name
        after = lower[idx + len("campaign"):]
        if after.startswith("s"):
            after = after[1:]
        words = [w for w in after.split() if w not in self.NAME_STOP_WORDS]
        return " ".join(words).strip(" ?.!:")

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        steps: List[Step] = []
        campaign_id = extract_campaign_id(request.message)
        if not campaign_id:
            name = self.campaign_name(lower)
            if not name:
                return self.reply(
                    "Please specify a campaign name (for example: show Bet 365 campaign creatives) "
                    "or provide a campaign id.",
                    on_token,
                )
            result = await ctx.gateway.get(
                "/ads/campaigns/search?query=" + url_escape(name) + "&page=1&page_size=20"
            )
            steps.append(result.step("adsCampaignsSearch"))
            if not result.ok:
                return self.reply(failure("campaigns", result), on_token, steps, error=result.error)
            rows = [r for r in rows_of(result) if _text(r, "id")]
            if not rows:
                return self.reply(f"No campaigns found matching '{name}'.", on_token, steps)
            match = next((r for r in rows if name in _text(r, "name").lower()), rows[0])
            campaign_id = _text(match, "id")
        ctx.memory.update_campaign(ctx.conversation_id, campaign_id)

        result = await ctx.gateway.get(f"/ads/creatives/campaign/{url_escape(campaign_id)}?page=1&page_size=200")
        steps.append(result.step("adsCreativesByCampaign", campaign_id=campaign_id))
        if not result.ok:
            return self.reply(failure("campaign creatives", result), on_token, steps, error=result.error)
        rows = rows_of(result)
        if not rows:
            return self.reply(f"No creatives found for campaign {campaign_id}.", on_token, steps)
        lines = [f"Creatives for campaign {campaign_id}:"]
        for idx, row in enumerate(rows[:LIST_LIMIT], start=1):
            parts = [
                _text(row, "name", "file_name") or _text(row, "id"),
                _text(row, "type", "creative_type"),
                _text(row, "file_url", "url"),
            ]
            lines.append(f"{idx}. " + " - ".join(p for p in parts if p))
        return self.reply("\n".join(lines), on_token, steps)


class CreativeUploadHandler(IntentHandler):
    """Multipart upload of the chat attachments as campaign creatives."""

    handler_id = "creativeUpload"

    def matches(self, lower: str) -> bool:
        return "upload" in lower and _any(lower, "creative", "file", "poster")

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        if not request.attachments:
            return self.reply(
                "To upload creatives, attach the file(s) and include: campaign (id or name), "
                "selected days, time slots, and devices.",
                on_token,
            )
        devices = parse_devices_list(lower)
        if not devices:
            return self.reply(
                "Devices are required for creative upload. Please specify devices (e.g. devices: dev1,dev2,dev3).",
                on_token,
            )
        days = parse_selected_days(lower)
        if not days:
            return self.reply("Please specify selected days for the creative (e.g. mon,tue,wed).", on_token)
        slots = parse_time_slots(request.message)
        if not slots:
            return self.reply(
                "Please specify time slots in HH:MM-HH:MM format (e.g. 08:00-12:00, 12:00-16:00).", on_token
            )
        campaign_id = await ctx.resolvers.resolve_campaign_id(request.message)
        if not campaign_id:
            return await self._ask_for_campaign(ctx, on_token)

        files = [
            {
                "field_name": "files",
                "file_name": attachment.file_name.strip(),
                "content_type": attachment.content_type.strip(),
                "base64": attachment.base64.strip(),
            }
            for attachment in request.attachments
            if attachment.base64.strip()
        ]
        if not files:
            return self.reply("Attachment(s) missing base64 content. Please attach the file again.", on_token)
        fields = {"campaign_id": [campaign_id], "selected_days": days, "time_slots": slots, "devices": devices}
        result = await ctx.gateway.request_multipart(
            "POST", "/ads/creatives/upload", None, {"fields": fields, "files": files}
        )
        steps = [result.step("adsCreativesUpload", campaign_id=campaign_id)]
        if result.error:
            return self.reply(f"Creative upload failed: {result.error}", on_token, steps, error=result.error)
        if not result.ok:
            return self.reply(f"Creative upload failed with status {result.status}.", on_token, steps)
        ctx.memory.update_campaign(ctx.conversation_id, campaign_id)
        return self.reply("Creative upload successful.", on_token, steps)

    async def _ask_for_campaign(self, ctx: HandlerContext, on_token: OnToken) -> HandlerResult:
        result = await ctx.gateway.get("/ads/campaigns?page=1&page_size=50")
        steps = [result.step("adsCampaigns")]
        suggestions = [
            f"{_text(r, 'name')} ({_text(r, 'id')})" for r in rows_of(result) if _text(r, "name") and _text(r, "id")
        ][:5]
        if not suggestions:
            return self.reply("Please specify a valid campaign (id or name).", on_token, steps)
        answer = "Please specify a valid campaign. Here are campaigns I can see: " + "; ".join(suggestions)
        return self.reply(answer, on_token, steps)


class CampaignImpressionsHandler(IntentHandler):
    handler_id = "campaignImpressions"

    def matches(self, lower: str) -> bool:
        return "impression" in lower

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        steps: List[Step] = []
        campaign_id = extract_campaign_id(request.message)
        if not campaign_id:
            name = extract_after_keyword(request.message, "campaign").strip(" ?.!:")
            if name:
                result = await ctx.gateway.get(
                    "/ads/campaigns/search?query=" + url_escape(name) + "&page=1&page_size=10"
                )
                steps.append(result.step("adsCampaignsSearch"))
                rows = rows_of(result) if result.ok else []
                if len(rows) == 1:
                    campaign_id = _text(rows[0], "id")
                elif len(rows) > 1:
                    suggestions = [
                        f"- {_text(r, 'name')} ({_text(r, 'id')})" for r in rows if _text(r, "id") and _text(r, "name")
                    ][:5]
                    answer = "Multiple campaigns matched. Please specify the campaign id. Suggestions:\n"
                    return self.reply(answer + "\n".join(suggestions), on_token, steps)
                else:
                    campaign_id = await ctx.resolvers.resolve_campaign_id(lower)
        if not campaign_id:
            campaign_id = ctx.state.campaign_id
        if not campaign_id:
            return self.reply(
                "Please provide a campaign id (UUID), or ask like: show impressions for campaign <name>.",
                on_token,
                steps,
            )
        ctx.memory.update_campaign(ctx.conversation_id, campaign_id)

        ads = await ctx.gateway.get(f"/ads/campaigns/{campaign_id}/impressions")
        steps.append(ads.step("adsCampaignImpressions", campaign_id=campaign_id))
        pop_data: Optional[CampaignImpressions] = None
        if await ctx.catalog.is_allowed("GET", "/pop/impressions"):
            pop = await ctx.gateway.get("/pop/impressions?campaign_id=" + url_escape(campaign_id))
            if pop.status == 403 and "forbidden_path" in pop.text:
                logger.debug("pop impressions not permitted for this key")
            else:
                steps.append(pop.step("popImpressions", campaign_id=campaign_id))
                if pop.ok:
                    pop_data = parse_impressions(pop)

        ads_total = 0
        ads_posters: List[PosterImpression] = []
        if ads.ok:
            try:
                record = unwrap_object(ads.json())
            except EnvelopeError:
                record = {}
            ads_total = int(_num(record, "impressions", "total_impressions", "total"))
            ads_posters = _posters(record.get("posters"))

        if not ads.ok and pop_data is None:
            return self.reply("Failed to fetch campaign impressions.", on_token, steps, error=ads.error)
        if not ads.ok:
            answer = f"Campaign {campaign_id} impressions (from POP): {pop_data.impressions} total."
            posters = pop_data.posters
        else:
            total = pop_data.impressions if pop_data is not None else ads_total
            answer = f"Campaign {campaign_id} impressions: {total} total."
            posters = pop_data.posters if pop_data is not None and pop_data.posters else ads_posters
        ranked = sorted(posters, key=lambda p: p.impressions, reverse=True)[:5]
        if ranked:
            lines = [answer, "Top posters:"]
            for idx, poster in enumerate(ranked, start=1):
                lines.append(f"{idx}. {poster.poster_name or poster.poster_id} - {poster.impressions} impressions")
            answer = "\n".join(lines)
        data = ChatData(campaign_impressions=pop_data) if pop_data is not None else None
        return self.reply(answer, on_token, steps, data=data)


def _posters(raw: Any) -> List[PosterImpression]:
    posters = []
    for row in raw if isinstance(raw, list) else []:
        if not isinstance(row, dict):
            continue
        play_time = row.get("play_time")
        posters.append(
            PosterImpression(
                poster_id=_text(row, "poster_id", "id"),
                poster_name=_text(row, "poster_name", "name"),
                impressions=int(_num(row, "impressions")),
                play_time=int(play_time) if isinstance(play_time, (int, float)) else None,
            )
        )
    return posters


def parse_impressions(result: GatewayResult) -> Optional[CampaignImpressions]:
    """Read an impressions record into structured data; None without a campaign id."""
    try:
        record = unwrap_object(result.json())
    except EnvelopeError:
        return None
    campaign_id = _text(record, "campaign_id")
    if not campaign_id:
        return None
    return CampaignImpressions(
        campaign_id=campaign_id,
        impressions=int(_num(record, "impressions", "total_impressions")),
        posters=_posters(record.get("posters")),
    )


class CampaignSearchHandler(IntentHandler):
    handler_id = "campaignSearch"

    def matches(self, lower: str) -> bool:
        if "campaign" not in lower or _any(lower, "creative", "impression"):
            return False
        return _any(lower, "search", "find", "list", "show", "all")

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        status = extract_status_filter(lower)
        if _any(lower, "search", "find"):
            query = search_query(request.message, lower, "campaign")
            if not query:
                return self.reply(
                    "Please provide a campaign search query (for example: search campaigns Pepsi).", on_token
                )
            result = await ctx.gateway.get(
                "/ads/campaigns/search?query=" + url_escape(query) + "&page=1&page_size=20"
            )
            steps = [result.step("adsCampaignsSearch")]
            header = f"Campaign search results for '{query}':"
            empty = f"No campaigns found for query '{query}'."
        else:
            query = ""
            result = await ctx.gateway.get("/ads/campaigns?page=1&page_size=50")
            steps = [result.step("adsCampaigns")]
            header = f"Campaigns ({status}):" if status else "Campaigns:"
            empty = "No campaigns found."
        if not result.ok:
            return self.reply(failure("campaigns", result), on_token, steps, error=result.error)
        rows = rows_of(result)
        if not rows:
            return self.reply(empty, on_token, steps)
        if status:
            rows = [r for r in rows if _text(r, "status").lower() == status]
            if not rows:
                return self.reply(f"No {status} campaigns found.", on_token, steps)
        if len(rows) == 1:
            ctx.memory.update_campaign(ctx.conversation_id, _text(rows[0], "id"))
        lines = [header]
        for row in rows[:LIST_LIMIT]:
            lines.append(f"- {_text(row, 'name')} ({_text(row, 'id')})")
        return self.reply("\n".join(lines), on_token, steps)


class AdvertiserListHandler(IntentHandler):
    handler_id = "advertiserList"

    def matches(self, lower: str) -> bool:
        return "advertiser" in lower and _any(lower, "search", "find", "list", "show", "all")

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        query = ""
        if _any(lower, "search", "find"):
            query = search_query(request.message, lower, "advertiser")
            if not query:
                return self.reply(
                    "Please provide an advertiser search query (for example: search advertisers Pepsi).", on_token
                )
        result = await ctx.gateway.get("/ads/advertisers")
        steps = [result.step("adsAdvertisers")]
        if not result.ok:
            return self.reply(failure("advertisers", result), on_token, steps, error=result.error)
        rows = rows_of(result)
        if query:
            needle = query.lower()
            rows = [r for r in rows if needle in _text(r, "name").lower()]
            if not rows:
                return self.reply(f"No advertisers found for query '{query}'.", on_token, steps)
            header = f"Advertiser search results for '{query}':"
        else:
            if not rows:
                return self.reply("No advertisers found.", on_token, steps)
            header = "Advertisers:"
        lines = [header]
        for row in rows[:LIST_LIMIT]:
            row_id = _text(row, "id") or str(int(_num(row, "id")))
            lines.append(f"- {_text(row, 'name')} ({row_id})")
        return self.reply("\n".join(lines), on_token, steps)


class PosterDetailsHandler(IntentHandler):
    handler_id = "posterDetails"

    def matches(self, lower: str) -> bool:
        return bool(extract_poster_token(lower))

    async def run(self, ctx: HandlerContext, request: ChatRequest, lower: str, on_token: OnToken) -> HandlerResult:
        token = extract_poster_token(request.message)
        result = await ctx.gateway.get("/ads/creatives/search?query=" + url_escape(token))
        steps = [result.step("adsCreativesSearch")]
        if result.error:
            return self.reply(failure("creatives", result), on_token, steps, error=result.error)
        if not result.ok:
            return self.reply(f"Creative search failed with status {result.status}.", on_token, steps)
        rows = rows_of(result)
        if not rows:
            return self.reply(f"No creatives matched '{token}'.", on_token, steps)
        ctx.memory.update_poster(ctx.conversation_id, name=token, poster_id=_text(rows[0], "id"))
        lines = []
        for row in rows[:3]:
            name = _text(row, "name", "file_name") or token
            campaign = _text(row, "campaign_name", "campaign_id") or "unknown"
            url = _text(row, "url", "file_url", "preview_url")
            lines.append(f"{name} (campaign {campaign}, {url})" if url else f"{name} (campaign {campaign})")
        return self.reply(f"Found creatives matching '{token}':\n" + "\n".join(lines), on_token, steps)


def default_handlers() -> List[IntentHandler]:
    return [
        TopPostersHandler(),
        TopDevicesHandler(),
        PosterAnalyticsByIdHandler(),
        PopForPosterIdHandler(),
        PosterPlayCountHandler(),
        KioskCountHandler(),
        PopYesterdayByHostHandler(),
        PopTodayByHostHandler(),
        PopStatsHandler(),
        VenueDevicesHandler(),
        DeviceVenuesHandler(),
        VenueSearchHandler(),
        LowUptimeDevicesHandler(),
        DeviceTelemetryHandler(),
        DeviceDetailsHandler(),
        CampaignCreativesHandler(),
        CreativeUploadHandler(),
        CampaignImpressionsHandler(),
        CampaignSearchHandler(),
        AdvertiserListHandler(),
        PosterDetailsHandler(),
    ]
