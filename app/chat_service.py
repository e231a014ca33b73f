"""Chat entry points shared by the JSON and SSE routes."""

import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from .agents import CONTEXT_JSON_HEADER, MOCK_ANSWER, MOCK_PREFETCH_SUFFIX, SYSTEM_PROMPT
from .db import Database
from .envelope import EnvelopeError
from .gateway import GatewayClient
from .handlers import default_handlers, parse_impressions
from .intents import HandlerContext, IntentRouter
from .llm import OpenAIClient
from .memory import ConversationMemory, ConversationState
from .resolvers import EntityCache, EntityResolvers
from .schemas import ChatData, ChatRequest, ChatResponse, Step
from .text import (
    clip,
    contains_word,
    detect_host_tokens,
    extract_campaign_id,
    looks_like_uuid,
    mentions_stats,
)
from .tool_catalog import ToolCatalog
from .tool_loop import ToolOrchestrator

logger = logging.getLogger("uvicorn.error")

HISTORY_MESSAGES = 10
HISTORY_CLIP = 1000
CONTEXT_CLIP = 8000
STREAM_CHUNK = 20

_HEADER_STOP = {"from", "in", "the", "a", "an", "of", "for", "on", "at", "to", "with"}
_HEADER_TRIM = "\"'.,;:()[]{}"
_HEALTH_WORDS = (
    "telemetry", "health", "metrics", "cpu", "memory", "disk", "storage", "uptime", "battery", "network",
    "bandwidth", "data usage", "volume", "mute",
)


def _neighbour(words: List[str], idx: int) -> str:
    if idx < 0 or idx >= len(words):
        return ""
    candidate = words[idx].strip(_HEADER_TRIM)
    return "" if candidate in _HEADER_STOP else candidate


def _scope_part(words: List[str], keyword: str) -> str:
    for idx, word in enumerate(words):
        if word.strip(_HEADER_TRIM) == keyword:
            found = _neighbour(words, idx - 1) or _neighbour(words, idx + 1)
            if found:
                return found
    return ""


def _after_word(lower: str, word: str) -> str:
    match = re.search(r"\b" + re.escape(word) + r"\b\s*(.*)", lower)
    return match.group(1).strip() if match else ""


def build_interpretation_header(message: str, state: Optional[ConversationState] = None) -> str:
    """One-line restatement of what the assistant understood.

    Empty when nothing recognisable was found. Scope and host fall back to
    conversation memory when the message itself names none.
    """
    message = (message or "").strip()
    if not message:
        return ""
    lower = message.lower()
    state = state or ConversationState()
    is_pop = "pop" in lower or "analytic" in lower or mentions_stats(lower)
    is_health = any(w in lower for w in _HEALTH_WORDS) or contains_word(lower, "ram")

    window = ""
    if "yesterday" in lower:
        window = "Yesterday"
    elif "today" in lower:
        window = "Today"
    elif "month" in lower:
        window = "Monthly"
    elif "since" in lower or ("last" in lower and "days" in lower):
        window = "Since"

    subject = ""
    if is_health:
        subject = "Device health"
    elif "venue" in lower:
        subject = "Venue devices" if "device" in lower else "Venue"
    elif "poster" in lower or "creative" in lower:
        if is_pop:
            subject = "Poster POP"
        elif "play" in lower or "count" in lower:
            subject = "Poster play count"
        else:
            subject = "Poster"
    elif any(w in lower for w in ("device", "kiosk", "server")) and any(
        w in lower for w in ("detail", "info", "show", "get")
    ):
        subject = "Device info"
    elif is_pop:
        subject = "POP"
    if not subject and "same" in lower and (state.poster_id or state.poster_name):
        subject = "Poster play count"

    shape = ""
    if any(w in lower for w in ("kiosk wise", "kiosk-wise", "kiosks wise", "kiosks-wise")):
        shape = "kiosk-wise"
    elif "top" in lower:
        for noun, label in (("kiosk", "top kiosks"), ("device", "top devices"), ("poster", "top posters")):
            if noun in lower:
                shape = label
                break
        else:
            shape = "top"

    words = lower.split()
    region = _scope_part(words, "region")
    city = _scope_part(words, "city")
    scope_parts = []
    if region:
        scope_parts.append("region=" + region)
    if city:
        scope_parts.append("city=" + city)
    if not scope_parts:
        if state.region:
            scope_parts.append("region=" + state.region)
        if state.city:
            scope_parts.append("city=" + state.city)

    target = ""
    explicit_host = False
    for token in detect_host_tokens(message):
        if len([p for p in token.lower().replace("_", "-").split("-") if p]) >= 3:
            target, explicit_host = token.lower(), True
        break
    if not target and state.host:
        if is_health or subject == "Device info":
            target = state.host
        elif "poster" not in subject.lower() and "poster" not in lower and "creative" not in lower:
            if any(w in lower for w in ("pop", "device", "kiosk", "server")):
                target = state.host

    poster_ref = ""
    if subject != "Device info" and not is_health:
        poster_ref = state.poster_id or state.poster_name
    after = _after_word(lower, "poster")
    if after:
        first = after.split()[0]
        if looks_like_uuid(first):
            poster_ref = first
        elif not poster_ref:
            poster_ref = after
    if extract_campaign_id(lower):
        poster_ref = extract_campaign_id(lower)
    poster_ref = clip(poster_ref.strip(), 60)
    if not explicit_host and not is_health and poster_ref and shape == "kiosk-wise":
        target = ""

    venue_id = state.venue_id
    venue_ref = ""
    if "venue" in lower:
        after = _after_word(lower, "venue")
        if after:
            first = after.split()[0]
            if first.isdigit():
                venue_id = int(first)
            else:
                venue_ref = clip(after, 60)

    parts = []
    if window:
        parts.append(window)
    if subject:
        parts.append(subject)
    if poster_ref:
        parts.append("poster=" + poster_ref)
    if venue_id > 0:
        parts.append(f"venue_id={venue_id}")
    elif venue_ref:
        parts.append("venue=" + venue_ref)
    if target:
        parts.append("for " + target)
    if shape:
        parts.append(f"({shape})")
    if scope_parts:
        parts.append("[" + ",".join(scope_parts) + "]")
    if "minute" in lower:
        parts.append("in minutes")
    if not parts:
        return ""
    return "Interpreted request: " + " ".join(parts)


def prefix_if_needed(header: str, answer: str) -> str:
    header_text = (header or "").strip()
    answer_text = (answer or "").strip()
    if not header_text:
        return answer
    if not answer_text:
        return header
    if answer_text.startswith(header_text):
        return answer
    return header_text + "\n" + answer


def chunks(text: str, size: int = STREAM_CHUNK) -> List[str]:
    return [text[i : i + size] for i in range(0, len(text), size)]


class ChatService:
    """Routes a message to a deterministic handler or the tool-calling model.

    ``chat`` and ``chat_stream`` share one flow; streaming only adds the
    token callback, which receives the interpretation header once ahead of
    the first token.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        llm: OpenAIClient,
        db: Database,
        *,
        mock_mode: bool = False,
        max_tool_calls: int = 6,
        max_tool_bytes: int = 1_000_000,
        catalog_ttl_s: float = 120,
        entity_cache_ttl_s: float = 600,
        memory: Optional[ConversationMemory] = None,
    ):
        self.gateway = gateway
        self.llm = llm
        self.db = db
        self.mock_mode = mock_mode
        self.memory = memory or ConversationMemory()
        self.resolvers = EntityResolvers(gateway, EntityCache(gateway, ttl_s=entity_cache_ttl_s))
        self.catalog = ToolCatalog(gateway, ttl_s=catalog_ttl_s)
        self.router = IntentRouter(default_handlers())
        self.orchestrator = ToolOrchestrator(
            llm,
            gateway,
            self.catalog,
            self.resolvers,
            max_tool_calls=max_tool_calls,
            max_tool_bytes=max_tool_bytes,
        )

    async def chat(self, owner_key: str, request: ChatRequest) -> ChatResponse:
        return await self.chat_stream(owner_key, request, None)

    async def chat_stream(
        self,
        owner_key: str,
        request: ChatRequest,
        on_token: Optional[Callable[[str], None]],
    ) -> ChatResponse:
        conversation_id = request.conversation_id
        if conversation_id:
            await self.memory.hydrate(owner_key, conversation_id, self.db, self.resolvers)
            await self.db.append_message(owner_key, conversation_id, "user", request.message)

        header = build_interpretation_header(request.message, self.memory.get(conversation_id))
        emit = self._with_header(header, on_token)

        ctx = HandlerContext(
            owner_key=owner_key,
            conversation_id=conversation_id,
            gateway=self.gateway,
            resolvers=self.resolvers,
            memory=self.memory,
            catalog=self.catalog,
        )
        result = await self.router.route(ctx, request, emit)
        if result is not None:
            if result.error:
                logger.warning("intent handler reported: %s", result.error)
            response = result.response
            response.answer = prefix_if_needed(header, response.answer)
            await self.db.append_message(owner_key, conversation_id, "assistant", response.answer)
            return response

        data, steps, tool_data = await self.prefetch(request.message)
        if self.mock_mode:
            answer = MOCK_ANSWER + (MOCK_PREFETCH_SUFFIX if tool_data else "")
        else:
            messages = await self._model_messages(owner_key, conversation_id, request.message, tool_data)
            answer = await self.orchestrator.run(messages, tool_choice="required")
        if emit is not None:
            for chunk in chunks(answer):
                emit(chunk)
        answer = prefix_if_needed(header, answer)
        await self.db.append_message(owner_key, conversation_id, "assistant", answer)
        return ChatResponse(answer=answer, data=data, steps=steps)

    @staticmethod
    def _with_header(header: str, on_token: Optional[Callable[[str], None]]) -> Optional[Callable[[str], None]]:
        if on_token is None or not header.strip():
            return on_token
        sent = False

        def emit(token: str) -> None:
            nonlocal sent
            if not sent:
                sent = True
                on_token(header + "\n" + token)
                return
            on_token(token)

        return emit

    async def prefetch(self, message: str) -> Tuple[Optional[ChatData], List[Step], Dict[str, Any]]:
        """Fetch cheap context the model is likely to need."""
        lower = (message or "").lower()
        steps: List[Step] = []
        tool_data: Dict[str, Any] = {}
        data: Optional[ChatData] = None
        campaign_id = extract_campaign_id(message)
        if "impression" in lower and campaign_id:
            result = await self.gateway.get(f"/ads/campaigns/{campaign_id}/impressions")
            steps.append(result.step("adsCampaignImpressions", campaign_id=campaign_id))
            if result.ok:
                try:
                    tool_data["ads_campaign_impressions"] = result.json()
                except EnvelopeError as exc:
                    logger.debug("impressions prefetch unreadable: %s", exc)
                impressions = parse_impressions(result)
                if impressions is not None:
                    data = ChatData(campaign_impressions=impressions)
        if "advertiser" in lower:
            result = await self.gateway.get("/ads/advertisers")
            steps.append(result.step("adsAdvertisers"))
            if result.ok:
                try:
                    tool_data["ads_advertisers"] = result.json()
                except EnvelopeError as exc:
                    logger.debug("advertisers prefetch unreadable: %s", exc)
        return data, steps, tool_data

    async def build_history(self, owner_key: str, conversation_id: Optional[str]) -> List[Dict[str, str]]:
        if not conversation_id:
            return []
        messages = await self.db.list_messages(owner_key, conversation_id, HISTORY_MESSAGES)
        return [
            {"role": m.role, "content": clip(m.content, HISTORY_CLIP)}
            for m in messages[-HISTORY_MESSAGES:]
            if m.role in ("user", "assistant")
        ]

    async def _model_messages(
        self,
        owner_key: str,
        conversation_id: Optional[str],
        message: str,
        tool_data: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        user_content = message
        if tool_data:
            user_content += CONTEXT_JSON_HEADER + clip(json.dumps(tool_data), CONTEXT_CLIP)
        history = await self.build_history(owner_key, conversation_id)
        # The stored user turn is replaced by the one carrying context.
        if history and history[-1]["role"] == "user" and history[-1]["content"] == clip(message, HISTORY_CLIP):
            history = history[:-1]
        return [{"role": "system", "content": SYSTEM_PROMPT}, *history, {"role": "user", "content": user_content}]

    async def close(self) -> None:
        await self.gateway.close()
        await self.llm.close()
