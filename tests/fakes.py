import json
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from app.gateway import GatewayResult
from app.intents import HandlerContext
from app.llm import AssistantMessage, ToolCall
from app.memory import ConversationMemory
from app.resolvers import EntityCache, EntityResolvers
from app.tool_catalog import ToolCatalog

Route = Union[GatewayResult, List[GatewayResult], Callable[[str], GatewayResult]]

COUNT_ROWS = [
    {"city": "kcmo", "region": "brt", "count": 12},
    {"city": "kcmo", "region": "main", "count": 8},
    {"city": "moco", "region": "brt", "count": 5},
]

PROJECT_ROWS = [
    {"name": "kcmo", "description": "Kansas City"},
    {"name": "moco", "description": "Montgomery County"},
]

OPENAPI_PATHS = {
    "/ads/advertisers": {"get": {}},
    "/ads/campaigns": {"get": {}},
    "/ads/campaigns/{id}/impressions": {"get": {}},
    "/ads/devices": {"get": {}},
    "/ads/devices/{host}": {"get": {}},
    "/ads/devices/counts/regions": {"get": {}},
    "/pop": {"get": {}},
    "/pop/stats": {"get": {}},
    "/metrics/history": {"get": {}},
}


def ok(payload: Any, status: int = 200) -> GatewayResult:
    return GatewayResult(status=status, body=json.dumps(payload).encode("utf-8"))


def http_status(status: int, payload: Any = None) -> GatewayResult:
    return ok(payload if payload is not None else {"error": "status"}, status=status)


def transport_error(message: str = "connection refused") -> GatewayResult:
    return GatewayResult(error=message)


class FakeGateway:
    """Gateway double keyed by path; the longest registered prefix wins.

    A list route is consumed one result per call and repeats its last entry.
    """

    def __init__(self, routes: Optional[Dict[str, Route]] = None, entities: bool = True) -> None:
        self.routes: Dict[str, Route] = {}
        if entities:
            self.routes["/ads/devices/counts/regions"] = ok({"data": COUNT_ROWS})
            self.routes["/ads/projects"] = ok({"data": PROJECT_ROWS})
            self.routes["/openapi.json"] = ok({"paths": OPENAPI_PATHS})
        self.routes.update(routes or {})
        self.calls: List[str] = []
        self.requests: List[Dict[str, Any]] = []
        self.closed = False

    def add(self, path: str, route: Route) -> None:
        self.routes[path] = route

    def paths_called(self, prefix: str) -> List[str]:
        return [c for c in self.calls if c.startswith(prefix)]

    def _lookup(self, path: str) -> GatewayResult:
        key = path if path in self.routes else ""
        if not key:
            candidates = [p for p in self.routes if path.startswith(p)]
            key = max(candidates, key=len) if candidates else ""
        if not key:
            return http_status(404, {"error": "not_found"})
        route = self.routes[key]
        if isinstance(route, list):
            if len(route) > 1:
                return route.pop(0)
            return route[0]
        if callable(route):
            return route(path)
        return route

    async def get(self, path: str) -> GatewayResult:
        self.calls.append(path)
        return self._lookup(path)

    async def request_json(
        self,
        method: str,
        path: str,
        query: Optional[Dict[str, str]] = None,
        body: Optional[Any] = None,
    ) -> GatewayResult:
        self.requests.append({"method": method, "path": path, "query": dict(query or {}), "body": body})
        self.calls.append(path)
        return self._lookup(path)

    async def request_multipart(
        self,
        method: str,
        path: str,
        query: Optional[Dict[str, str]] = None,
        multipart: Optional[Dict[str, Any]] = None,
    ) -> GatewayResult:
        self.requests.append({"method": method, "path": path, "query": dict(query or {}), "multipart": multipart})
        self.calls.append(path)
        return self._lookup(path)

    async def close(self) -> None:
        self.closed = True


class FakeLLM:
    """Scripted chat model; ``turns`` are returned by ``chat_with_tools`` in order."""

    def __init__(self, turns: Optional[List[AssistantMessage]] = None, final_answer: str = "final answer") -> None:
        self.turns = list(turns or [])
        self.final_answer = final_answer
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    async def chat_with_tools(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        tool_choice: Any = "auto",
    ) -> AssistantMessage:
        self.calls.append({"kind": "tools", "messages": list(messages), "tool_choice": tool_choice})
        if self.turns:
            return self.turns.pop(0)
        return AssistantMessage(content=self.final_answer)

    async def chat(self, messages: List[Dict[str, Any]]) -> str:
        self.calls.append({"kind": "chat", "messages": list(messages)})
        return self.final_answer

    async def close(self) -> None:
        self.closed = True


class FailingLLM(FakeLLM):
    async def chat_with_tools(self, messages, tools, tool_choice="auto"):
        raise httpx.ConnectError("provider down")


def tool_call(call_id: str, arguments: Dict[str, Any], name: str = "scm_request") -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=json.dumps(arguments))


def make_context(
    gateway: FakeGateway,
    conversation_id: Optional[str] = "conv-1",
    memory: Optional[ConversationMemory] = None,
    owner_key: str = "key-a",
) -> HandlerContext:
    resolvers = EntityResolvers(gateway, EntityCache(gateway, ttl_s=600))
    return HandlerContext(
        owner_key=owner_key,
        conversation_id=conversation_id,
        gateway=gateway,
        resolvers=resolvers,
        memory=memory or ConversationMemory(),
        catalog=ToolCatalog(gateway, ttl_s=120),
    )
