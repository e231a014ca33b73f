import re
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict, Optional, Set

from .text import detect_host_tokens, extract_after_keyword, extract_campaign_id, extract_first_int, looks_like_uuid

if TYPE_CHECKING:
    from .db import Database
    from .resolvers import EntityResolvers

HYDRATE_MESSAGES = 50

# Deterministic answers quote scope and poster names this way.
CITY_QUOTE_RE = re.compile(r"(?i)city\s+'([a-z0-9_-]+)'")
REGION_QUOTE_RE = re.compile(r"(?i)region\s+'([a-z0-9_-]+)'")
POSTER_QUOTE_RE = re.compile(r"(?i)poster\s+'([^']+)'")
POSTER_CITY_QUOTE_RE = re.compile(r"(?i)poster\s+city\s+'([a-z0-9_-]+)'")
POSTER_REGION_QUOTE_RE = re.compile(r"(?i)poster\s+region\s+'([a-z0-9_-]+)'")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PendingRequest:
    """A handler waiting for one more piece of input from the user."""

    handler_id: str
    message: str


@dataclass
class ConversationState:
    city: str = ""
    region: str = ""
    host: str = ""
    poster_name: str = ""
    poster_id: str = ""
    poster_city: str = ""
    poster_region: str = ""
    campaign_id: str = ""
    venue_id: int = 0
    pending: Optional[PendingRequest] = None
    updated_at: Optional[datetime] = None

    def has_context(self) -> bool:
        return any(
            (self.city, self.region, self.host, self.poster_name, self.poster_id, self.poster_city, self.poster_region)
        )


def poster_name_from_question(message: str) -> str:
    """``play count of poster Lorla Studio from brt region`` -> ``Lorla Studio``."""
    name = extract_after_keyword(message, "poster")
    for sep in (" from ", " in ", " for "):
        idx = name.lower().find(sep)
        if idx >= 0:
            name = name[:idx]
    return name.strip().strip("?.!'\"").strip()


class ConversationMemory:
    """Per-conversation scope and entity memory.

    States are created lazily and live for the process lifetime. Reads return
    a copy; writes go through the update methods, which skip empty values so a
    message without a location never erases the remembered one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._states: Dict[str, ConversationState] = {}
        self._hydrated: Set[str] = set()

    def _state_locked(self, conversation_id: str) -> ConversationState:
        state = self._states.get(conversation_id)
        if state is None:
            state = ConversationState()
            self._states[conversation_id] = state
        return state

    def get(self, conversation_id: Optional[str]) -> ConversationState:
        cid = (conversation_id or "").strip()
        if not cid:
            return ConversationState()
        with self._lock:
            return replace(self._state_locked(cid))

    def _update(self, conversation_id: Optional[str], **changes) -> None:
        cid = (conversation_id or "").strip()
        if not cid:
            return
        with self._lock:
            state = self._state_locked(cid)
            for key, value in changes.items():
                setattr(state, key, value)
            state.updated_at = utc_now()

    def update_location(self, conversation_id: Optional[str], city: str = "", region: str = "") -> None:
        changes = {}
        if (city or "").strip():
            changes["city"] = city.strip().lower()
        if (region or "").strip():
            changes["region"] = region.strip().lower()
        self._update(conversation_id, **changes)

    def update_host(self, conversation_id: Optional[str], host: str) -> None:
        if (host or "").strip():
            self._update(conversation_id, host=host.strip().lower())

    def update_poster(
        self,
        conversation_id: Optional[str],
        name: str = "",
        city: str = "",
        region: str = "",
        poster_id: str = "",
    ) -> None:
        changes = {}
        if (name or "").strip():
            changes["poster_name"] = name.strip()
        if (city or "").strip():
            changes["poster_city"] = city.strip().lower()
        if (region or "").strip():
            changes["poster_region"] = region.strip().lower()
        if looks_like_uuid(poster_id):
            changes["poster_id"] = poster_id.strip()
        self._update(conversation_id, **changes)

    def update_campaign(self, conversation_id: Optional[str], campaign_id: str) -> None:
        if looks_like_uuid(campaign_id):
            self._update(conversation_id, campaign_id=campaign_id.strip())

    def update_venue(self, conversation_id: Optional[str], venue_id: int) -> None:
        if venue_id and venue_id > 0:
            self._update(conversation_id, venue_id=venue_id)

    def set_pending(self, conversation_id: Optional[str], handler_id: str, message: str) -> None:
        # Single slot: a new clarification replaces whatever was pending.
        self._update(conversation_id, pending=PendingRequest(handler_id.strip(), message.strip()))

    def clear_pending(self, conversation_id: Optional[str]) -> None:
        self._update(conversation_id, pending=None)

    def mark_hydrated(self, conversation_id: str) -> bool:
        """Return True the first time a conversation id is seen."""
        with self._lock:
            if conversation_id in self._hydrated:
                return False
            self._hydrated.add(conversation_id)
            return True

    async def hydrate(
        self,
        owner_key: str,
        conversation_id: Optional[str],
        store: "Database",
        resolvers: "EntityResolvers",
    ) -> None:
        """Rebuild memory from persisted history after a restart.

        Runs once per conversation and only when memory holds no scope, host
        or poster. Messages are scanned oldest first so later hints win.
        """
        cid = (conversation_id or "").strip()
        if not cid or self.get(cid).has_context():
            return
        if not self.mark_hydrated(cid):
            return
        messages = await store.list_messages(owner_key, cid, HYDRATE_MESSAGES)
        if not messages:
            return
        found: Dict[str, str] = {}
        venue_id = 0
        for message in messages:
            content = (message.content or "").strip()
            if not content:
                continue
            lower = content.lower()
            await self._scan_poster(content, lower, found, resolvers)
            campaign_id = extract_campaign_id(content)
            if campaign_id:
                found["campaign_id"] = campaign_id
            if "venue" in lower and extract_first_int(content):
                venue_id = extract_first_int(content)
            hosts = detect_host_tokens(content)
            if hosts:
                candidate = hosts[0].strip().lower()
                parts = candidate.replace("_", "-").split("-")
                if len(parts) >= 3:
                    found["host"] = candidate
                    if parts[0]:
                        found["city"] = parts[0]
                    if parts[1]:
                        found["region"] = parts[1]
            city = await resolvers.detect_city(lower)
            if city:
                found["city"] = city
            region = await resolvers.detect_region(lower)
            if region:
                found["region"] = region
            for key, pattern in (("city", CITY_QUOTE_RE), ("region", REGION_QUOTE_RE)):
                match = pattern.search(content)
                if match:
                    found[key] = match.group(1).lower()

        self.update_location(cid, found.get("city", ""), found.get("region", ""))
        self.update_host(cid, found.get("host", ""))
        self.update_poster(
            cid,
            name=found.get("poster_name", ""),
            city=found.get("poster_city", ""),
            region=found.get("poster_region", ""),
            poster_id=found.get("poster_id", ""),
        )
        self.update_campaign(cid, found.get("campaign_id", ""))
        self.update_venue(cid, venue_id)

    async def _scan_poster(
        self,
        content: str,
        lower: str,
        found: Dict[str, str],
        resolvers: "EntityResolvers",
    ) -> None:
        if "poster" in lower and ("play count" in lower or "plays" in lower):
            if not found.get("poster_name"):
                name = poster_name_from_question(content)
                if name:
                    found["poster_name"] = name
            if not found.get("poster_city"):
                found["poster_city"] = await resolvers.detect_city(lower)
            if not found.get("poster_region"):
                found["poster_region"] = await resolvers.detect_region(lower)
        if not found.get("poster_id") and "poster" in lower:
            poster_id = extract_campaign_id(content)
            if poster_id:
                found["poster_id"] = poster_id
        for key, pattern in (
            ("poster_name", POSTER_QUOTE_RE),
            ("poster_city", POSTER_CITY_QUOTE_RE),
            ("poster_region", POSTER_REGION_QUOTE_RE),
        ):
            match = pattern.search(content)
            if match and match.group(1).strip():
                value = match.group(1).strip()
                found[key] = value if key == "poster_name" else value.lower()