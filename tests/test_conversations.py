import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from app.agents import MOCK_ANSWER
from app.config import AppSettings
from app.main import create_app
from tests.fakes import FailingLLM, FakeGateway, ok


@pytest.mark.asyncio
async def test_health(client):
    res = await client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_conversation_crud(client):
    res = await client.post("/conversations", json={"title": "Test chat"})
    assert res.status_code == 200
    convo = res.json()["data"]
    assert convo["title"] == "Test chat"
    assert convo["owner_key"] == "anonymous"

    res = await client.get(f"/conversations/{convo['id']}")
    assert res.status_code == 200
    assert res.json()["data"]["id"] == convo["id"]

    res = await client.get("/conversations/missing")
    assert res.status_code == 404
    assert res.json()["detail"] == {"error": "not_found"}

    res = await client.post("/conversations")
    assert res.status_code == 200
    assert res.json()["data"]["title"] is None


@pytest.mark.asyncio
async def test_api_key_required_when_configured(app_factory):
    app, _, _ = app_factory(agent_api_keys=["key-a", "key-b"])
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/conversations", json={})
            assert res.status_code == 401
            assert res.json()["detail"] == {"error": "missing_x_api_key"}

            res = await client.post("/conversations", json={}, headers={"X-API-Key": "nope"})
            assert res.status_code == 403
            assert res.json()["detail"] == {"error": "invalid_x_api_key"}

            res = await client.post("/conversations", json={"title": "Mine"}, headers={"X-API-Key": "key-a"})
            assert res.status_code == 200
            convo_id = res.json()["data"]["id"]

            res = await client.get(f"/conversations/{convo_id}", headers={"X-API-Key": "key-b"})
            assert res.status_code == 404
            res = await client.get(f"/conversations/{convo_id}", headers={"X-API-Key": "key-a"})
            assert res.status_code == 200


@pytest.mark.asyncio
async def test_chat_persists_messages(client):
    res = await client.post("/chat", json={"message": "hello there", "conversation_id": "c-42"})
    assert res.status_code == 200
    body = res.json()
    assert body["answer"] == MOCK_ANSWER
    assert body["steps"] == []

    res = await client.get("/conversations/c-42/messages", params={"limit": 10})
    assert res.status_code == 200
    messages = res.json()["data"]
    assert [(m["role"], m["content"]) for m in messages] == [("user", "hello there"), ("assistant", MOCK_ANSWER)]


@pytest.mark.asyncio
async def test_chat_routes_to_intent_handler(app_factory):
    gateway = FakeGateway({"/pop/stats": ok({"data": [{"PosterName": "Summer", "Metric": 3}]})})
    app, _, _ = app_factory(fake_gateway=gateway)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/chat", json={"message": "top posters in brt region"})
            assert res.status_code == 200
            body = res.json()
            assert "Top posters in region 'brt' by clicks" in body["answer"]
            assert body["steps"][0]["tool"] == "popStats"
            assert body["steps"][0]["status"] == 200


@pytest.mark.asyncio
async def test_chat_rejects_empty_message(client):
    res = await client.post("/chat", json={"message": "   "})
    assert res.status_code == 400
    assert res.json()["detail"] == {"error": "message_required"}


@pytest.mark.asyncio
async def test_chat_provider_failure_is_500(app_factory):
    app, _, _ = app_factory(fake_llm=FailingLLM(), mock_mode=False)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/chat", json={"message": "hello there"})
            assert res.status_code == 500
            detail = res.json()["detail"]
            assert detail["error"] == "chat_failed"
            assert "provider down" in detail["detail"]


@pytest.mark.asyncio
async def test_lifespan_closes_clients(app_factory):
    app, gateway, llm = app_factory()
    async with LifespanManager(app):
        pass
    assert gateway.closed
    assert llm.closed


@pytest.mark.asyncio
async def test_create_app_passes_output_token_cap(tmp_path):
    settings = AppSettings(database_path=str(tmp_path / "cap.db"), openai_max_output_tokens=300)
    app = create_app(settings)
    async with LifespanManager(app):
        assert app.state.chat_service.llm.max_output_tokens == 300
