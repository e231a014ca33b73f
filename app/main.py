import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from .chat_service import ChatService
from .config import AppSettings, load_settings
from .db import Database
from .gateway import GatewayClient
from .llm import OpenAIClient
from .schemas import ChatRequest, ChatResponse, CreateConversationRequest

logger = logging.getLogger("uvicorn.error")

ANONYMOUS_OWNER = "anonymous"


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


def require_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(default=None),
) -> str:
    """Return the owner key for the caller; auth is off when no keys are configured."""
    allowed = request.app.state.settings.agent_api_keys
    if not allowed:
        return ANONYMOUS_OWNER
    key = (x_api_key or "").strip()
    if not key:
        raise HTTPException(status_code=401, detail={"error": "missing_x_api_key"})
    if key not in allowed:
        raise HTTPException(status_code=403, detail={"error": "invalid_x_api_key"})
    return key


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def validate_chat_request(payload: ChatRequest) -> ChatRequest:
    if not payload.message.strip() and not payload.attachments:
        raise HTTPException(status_code=400, detail={"error": "message_required"})
    return payload


router = APIRouter()


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.post("/conversations")
async def create_conversation(
    payload: Optional[CreateConversationRequest] = None,
    owner_key: str = Depends(require_api_key),
    db: Database = Depends(get_db),
):
    conversation = await db.create_conversation(owner_key, payload.title if payload else None)
    return {"data": conversation.model_dump()}


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    owner_key: str = Depends(require_api_key),
    db: Database = Depends(get_db),
):
    conversation = await db.get_conversation(owner_key, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail={"error": "not_found"})
    return {"data": conversation.model_dump()}


@router.get("/conversations/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    limit: int = Query(default=20),
    owner_key: str = Depends(require_api_key),
    db: Database = Depends(get_db),
):
    messages = await db.list_messages(owner_key, conversation_id, limit)
    return {"data": [m.model_dump() for m in messages]}


@router.post("/chat", response_model=ChatResponse)
async def chat(
    payload: ChatRequest,
    owner_key: str = Depends(require_api_key),
    service: ChatService = Depends(get_chat_service),
):
    validate_chat_request(payload)
    try:
        return await service.chat(owner_key, payload)
    except (httpx.HTTPError, ValueError) as exc:
        logger.exception("chat failed: %s", exc)
        raise HTTPException(status_code=500, detail={"error": "chat_failed", "detail": str(exc)})


@router.post("/chat/stream")
async def chat_stream(
    payload: ChatRequest,
    owner_key: str = Depends(require_api_key),
    service: ChatService = Depends(get_chat_service),
):
    validate_chat_request(payload)
    queue: asyncio.Queue = asyncio.Queue()

    def on_token(text: str) -> None:
        queue.put_nowait({"event": "token", "text": text})

    async def run_chat() -> None:
        try:
            response = await service.chat_stream(owner_key, payload, on_token)
            await queue.put({"event": "final", **response.model_dump()})
        except (httpx.HTTPError, ValueError) as exc:
            logger.exception("chat stream failed: %s", exc)
            await queue.put({"event": "error", "error": "chat_failed", "detail": str(exc)})
        finally:
            await queue.put(None)

    async def event_generator():
        task = asyncio.create_task(run_chat())
        try:
            while True:
                ev = await queue.get()
                if ev is None:
                    break
                yield sse_format(ev)
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    gateway: Optional[GatewayClient] = None,
    llm: Optional[OpenAIClient] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        logger.info("scm chat agent starting: %s", app.state.settings.to_safe_dict())
        try:
            yield
        finally:
            await app.state.chat_service.close()

    app = FastAPI(title="SCM Chat Agent", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    gateway = gateway or GatewayClient(
        settings.gateway_base_url,
        settings.gateway_api_key,
        timeout=settings.gateway_timeout_s,
        debug=settings.gateway_debug,
    )
    llm = llm or OpenAIClient(
        settings.openai_base_url,
        settings.openai_api_key,
        settings.openai_model,
        max_output_tokens=settings.openai_max_output_tokens,
    )
    app.state.chat_service = ChatService(
        gateway,
        llm,
        app.state.db,
        mock_mode=settings.mock_mode,
        max_tool_calls=settings.max_tool_calls,
        max_tool_bytes=settings.max_tool_bytes,
        catalog_ttl_s=settings.catalog_ttl_s,
        entity_cache_ttl_s=settings.entity_cache_ttl_s,
    )

    if settings.cors_allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allowed_origins,
            allow_credentials="*" not in settings.cors_allowed_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import uvicorn

    settings = app.state.settings
    try:
        uvicorn.run("app.main:app", host=settings.host, port=settings.port)
    except KeyboardInterrupt:
        pass
