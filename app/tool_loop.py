"""Bounded tool-calling loop between the chat model and the Gateway."""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlsplit

from .agents import FINAL_ANSWER_MESSAGE, REQUIRE_TOOL_MESSAGE, SCM_REQUEST_TOOL, TOOL_NAME
from .gateway import GatewayClient
from .llm import OpenAIClient, ToolCall
from .resolvers import EntityResolvers
from .text import clip
from .tool_catalog import ToolCatalog

logger = logging.getLogger("uvicorn.error")

TOOL_BODY_LIMIT = 8000

_LIST_DEFAULTS = {"page": "1", "page_size": "20"}
_ADS_LIST_PATHS = ("/ads/devices", "/ads/venues", "/ads/creatives", "/ads/projects", "/ads/advertisers")


def _set_if_missing(query: Dict[str, str], defaults: Dict[str, str]) -> None:
    for key, value in defaults.items():
        if not str(query.get(key) or "").strip():
            query[key] = value


def _cap(query: Dict[str, str], key: str, limit: int) -> None:
    raw = str(query.get(key) or "").strip()
    if not raw:
        return
    try:
        value = int(raw)
    except ValueError:
        return
    if value > limit:
        query[key] = str(limit)


def apply_query_defaults(method: str, path: str, query: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Fill safe pagination and window defaults into GET queries."""
    query = dict(query or {})
    if (method or "").strip().upper() != "GET":
        return query
    path = (path or "").strip()
    if path == "/pop/stats":
        _set_if_missing(query, {"limit": "10", "last_days": "30"})
        _cap(query, "limit", 200)
    elif path == "/pop":
        _set_if_missing(query, _LIST_DEFAULTS)
        _cap(query, "page_size", 200)
    elif path == "/ads/campaigns":
        _set_if_missing(query, {"page": "1", "page_size": "50"})
        _cap(query, "page_size", 200)
    elif path in _ADS_LIST_PATHS or path.startswith(("/ads/venues/", "/ads/devices/")):
        _set_if_missing(query, _LIST_DEFAULTS)
        _cap(query, "page_size", 100)
    elif path.startswith("/metrics/"):
        _set_if_missing(query, {"include_totals": "false", "page": "1", "page_size": "50"})
        _cap(query, "page_size", 200)
    return query


async def normalize_pop_query_location(
    resolvers: EntityResolvers, path: str, query: Dict[str, str]
) -> Dict[str, str]:
    """Move a ``/pop/stats`` ``city`` that is really a region code to ``region``.

    Short codes (three characters or fewer) that are known regions always
    move; longer ones stay a city when a project uses them as its city.
    """
    if (path or "").strip() != "/pop/stats":
        return query
    city = str(query.get("city") or "").strip().lower()
    if not city or str(query.get("region") or "").strip():
        return query
    if not await resolvers.is_known_region(city):
        return query
    if len(city) <= 3 or not await resolvers.is_project_city(city):
        query = dict(query)
        query["region"] = city
        query.pop("city", None)
    return query


def split_path_query(path: str, query: Optional[Dict[str, str]]) -> Tuple[str, Dict[str, str]]:
    """Move a query string embedded in ``path`` into ``query``; explicit keys win."""
    query = {str(k): str(v) for k, v in (query or {}).items() if v is not None}
    if "?" not in path:
        return path, query
    parts = urlsplit(path)
    for key, value in parse_qsl(parts.query, keep_blank_values=False):
        query.setdefault(key, value)
    return (parts.path or path.split("?", 1)[0]), query


class ToolOrchestrator:
    def __init__(
        self,
        llm: OpenAIClient,
        gateway: GatewayClient,
        catalog: ToolCatalog,
        resolvers: EntityResolvers,
        max_tool_calls: int = 6,
        max_tool_bytes: int = 1_000_000,
    ):
        self.llm = llm
        self.gateway = gateway
        self.catalog = catalog
        self.resolvers = resolvers
        self.max_tool_calls = max_tool_calls if max_tool_calls > 0 else 6
        self.max_tool_bytes = max_tool_bytes if max_tool_bytes > 0 else 1_000_000

    async def run(self, messages: List[Dict[str, Any]], tool_choice: Any = "auto") -> str:
        """Let the model call ``scm_request`` until it answers or the budget runs out.

        Every tool call id gets a tool message back, including the ones
        rejected for budget, name, arguments or allowlist reasons.
        """
        msgs = list(messages)
        required = isinstance(tool_choice, str) and tool_choice.strip().lower() == "required"
        tools = [SCM_REQUEST_TOOL]
        total_calls = 0
        for _ in range(self.max_tool_calls):
            assistant = await self.llm.chat_with_tools(msgs, tools, tool_choice=tool_choice)
            if not assistant.tool_calls:
                if required:
                    msgs.append({"role": "user", "content": REQUIRE_TOOL_MESSAGE})
                    continue
                return assistant.content
            msgs.append(
                {
                    "role": "assistant",
                    "content": assistant.content,
                    "tool_calls": [call.to_message() for call in assistant.tool_calls],
                }
            )
            for call in assistant.tool_calls:
                total_calls += 1
                if total_calls > self.max_tool_calls:
                    content = {"error": "tool_limit_exceeded"}
                else:
                    content = await self._execute(call)
                msgs.append({"role": "tool", "tool_call_id": call.id, "content": json.dumps(content)})
            if total_calls > self.max_tool_calls:
                break
        msgs.append({"role": "user", "content": FINAL_ANSWER_MESSAGE})
        return await self.llm.chat(msgs)

    async def _execute(self, call: ToolCall) -> Dict[str, Any]:
        if call.type != "function" or call.name != TOOL_NAME:
            return {"error": "unsupported_tool"}
        try:
            args = json.loads(call.arguments or "{}")
        except json.JSONDecodeError:
            args = {}
        if not isinstance(args, dict):
            args = {}
        method = str(args.get("method") or "").strip().upper()
        path = str(args.get("path") or "").strip()
        if not method or not path:
            return {"error": "invalid_args"}
        query = args.get("query") if isinstance(args.get("query"), dict) else None
        path, query = split_path_query(path, query)

        if not await self.catalog.is_allowed(method, path):
            logger.info("tool call refused: %s %s", method, path)
            return {"error": "forbidden_tool"}

        query = apply_query_defaults(method, path, query)
        query = await normalize_pop_query_location(self.resolvers, path, query)
        multipart = args.get("multipart")
        if isinstance(multipart, dict):
            result = await self.gateway.request_multipart(method, path, query, multipart)
        else:
            result = await self.gateway.request_json(method, path, query, args.get("body"))

        payload: Dict[str, Any] = {"status": result.status}
        if result.error is not None:
            payload["error"] = result.error
            return payload
        body = result.body
        if len(body) > self.max_tool_bytes:
            payload["truncated"] = True
            body = body[: self.max_tool_bytes]
        payload["body"] = clip(body.decode("utf-8", errors="replace"), TOOL_BODY_LIMIT)
        return payload
