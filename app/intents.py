"""Deterministic intent routing.

Every handler follows one template: a cheap keyword gate, parameter
extraction (falling back to conversation memory), validation with a
clarifying reply, Gateway reads, local aggregation and a rendered answer.
The router tries handlers strictly in order; the first one that claims the
message owns the reply.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .envelope import EnvelopeError
from .gateway import GatewayClient, GatewayResult
from .memory import ConversationMemory, ConversationState
from .resolvers import EntityResolvers
from .schemas import ChatData, ChatRequest, ChatResponse, Step
from .text import detect_host_tokens, is_full_host_token
from .tool_catalog import ToolCatalog

logger = logging.getLogger("uvicorn.error")

OnToken = Optional[Callable[[str], None]]

# Any of these in a reply means the user moved on to an analytics question.
PENDING_ESCAPE_WORDS = ("analytic", "pop", "stat", "poster")


@dataclass
class HandlerContext:
    owner_key: str
    conversation_id: Optional[str]
    gateway: GatewayClient
    resolvers: EntityResolvers
    memory: ConversationMemory
    catalog: ToolCatalog

    @property
    def state(self) -> ConversationState:
        return self.memory.get(self.conversation_id)


@dataclass
class HandlerResult:
    response: ChatResponse = field(default_factory=ChatResponse)
    handled: bool = False
    error: Optional[str] = None


def not_handled() -> HandlerResult:
    return HandlerResult()


@dataclass
class PageWalk:
    rows: List[dict] = field(default_factory=list)
    steps: List[Step] = field(default_factory=list)
    pages: int = 0
    last: Optional[GatewayResult] = None

    @property
    def failed(self) -> bool:
        return self.last is not None and not self.last.ok


async def walk_pages(
    gateway: GatewayClient,
    build_path: Callable[[int], str],
    tool: str,
    page_size: int,
    max_pages: int = 10,
) -> PageWalk:
    """Fetch pages until a short page, the reported total, or ``max_pages``.

    A failed request stops the walk; ``walk.last`` holds it so callers can
    retry with another shape on a 400.
    """
    walk = PageWalk()
    for page in range(1, max_pages + 1):
        result = await gateway.get(build_path(page))
        walk.last = result
        walk.steps.append(result.step(tool))
        if not result.ok:
            break
        try:
            rows = result.rows()
        except EnvelopeError as exc:
            logger.debug("%s page %s unreadable: %s", tool, page, exc)
            break
        walk.pages = page
        if not rows:
            break
        walk.rows.extend(rows.items)
        if rows.total is not None and rows.total <= page * page_size:
            break
        if len(rows) < page_size:
            break
    return walk


class IntentHandler:
    handler_id = ""

    def matches(self, lower: str) -> bool:
        raise NotImplementedError

    async def handle(self, ctx: HandlerContext, request: ChatRequest, on_token: OnToken) -> HandlerResult:
        lower = (request.message or "").strip().lower()
        if not lower or not self.matches(lower):
            return not_handled()
        return await self.run(ctx, request, lower, on_token)

    async def run(
        self,
        ctx: HandlerContext,
        request: ChatRequest,
        lower: str,
        on_token: OnToken,
    ) -> HandlerResult:
        raise NotImplementedError

    def reply(
        self,
        answer: str,
        on_token: OnToken,
        steps: Optional[Sequence[Step]] = None,
        data: Optional[ChatData] = None,
        error: Optional[str] = None,
    ) -> HandlerResult:
        if on_token is not None and answer:
            on_token(answer)
        return HandlerResult(
            response=ChatResponse(answer=answer, data=data, steps=list(steps or [])),
            handled=True,
            error=error,
        )


class IntentRouter:
    def __init__(self, handlers: Sequence[IntentHandler]):
        self.handlers: List[IntentHandler] = list(handlers)
        self._by_id: Dict[str, IntentHandler] = {h.handler_id: h for h in self.handlers if h.handler_id}

    def get(self, handler_id: str) -> Optional[IntentHandler]:
        return self._by_id.get(handler_id)

    async def route(self, ctx: HandlerContext, request: ChatRequest, on_token: OnToken) -> Optional[HandlerResult]:
        result = await self.dispatch_pending(ctx, request, on_token)
        if result is not None:
            return result
        for handler in self.handlers:
            result = await handler.handle(ctx, request, on_token)
            if result.handled:
                logger.debug("intent %s handled message", handler.handler_id)
                return result
        return None

    async def _host_from_reply(self, ctx: HandlerContext, message: str) -> Tuple[str, Optional[Step]]:
        if is_full_host_token(message):
            return message.lower(), None
        state = ctx.state
        host, step = await ctx.resolvers.resolve_host(message, city=state.city, region=state.region)
        if host:
            return host, step
        tokens = detect_host_tokens(message)
        if len(tokens) == 1 and tokens[0] == message:
            return message.lower(), step
        return "", step

    async def dispatch_pending(
        self,
        ctx: HandlerContext,
        request: ChatRequest,
        on_token: OnToken,
    ) -> Optional[HandlerResult]:
        """Resume a handler that asked the user for a device.

        Returns None when there is nothing to resume or the reply does not
        look like an answer; pending state is cleared in every case.
        """
        pending = ctx.state.pending
        if pending is None:
            return None
        ctx.memory.clear_pending(ctx.conversation_id)
        handler = self.get(pending.handler_id)
        message = (request.message or "").strip()
        if handler is None or not message:
            return None
        if any(word in message.lower() for word in PENDING_ESCAPE_WORDS):
            return None
        host, step = await self._host_from_reply(ctx, message)
        if not host:
            return None
        ctx.memory.update_host(ctx.conversation_id, host)
        replay = request.model_copy(update={"message": f"{pending.message} {host}".strip()})
        result = await handler.handle(ctx, replay, on_token)
        if not result.handled:
            return None
        if step is not None:
            result.response.steps.insert(0, step)
        return result
