from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from app.config import AppSettings
from app.db import Database
from app.main import create_app
from tests.fakes import FakeGateway, FakeLLM


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        openai_base_url="http://llm.test/v1",
        openai_api_key="test-openai-key",
        openai_model="test-model",
        mock_mode=True,
        gateway_base_url="http://gateway.test",
        gateway_api_key="test-gateway-key",
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8091,
        agent_api_keys=[],
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_gateway: FakeGateway | None = None,
        fake_llm: FakeLLM | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        gateway = fake_gateway or FakeGateway()
        llm = fake_llm or FakeLLM()
        app = create_app(settings, gateway=gateway, llm=llm)
        return app, gateway, llm

    return _factory


@pytest.fixture
async def client(app_factory):
    app, gateway, llm = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_gateway = gateway  # type: ignore[attr-defined]
            http_client.fake_llm = llm  # type: ignore[attr-defined]
            yield http_client


@pytest.fixture
async def db(tmp_path: Path):
    database = Database(str(tmp_path / "chat.db"))
    await database.init()
    return database
