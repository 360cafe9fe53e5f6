from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from conduit.config import AppSettings
from conduit.db import Database
from conduit.main import create_app
from conduit.registry import ModelRegistry
from conduit.scheduler import Scheduler
from conduit.tools import ToolRegistry
from tests.fakes import FakeGateway


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        ollama_url="http://ollama.test",
        openai_base_url="http://openai.test/v1",
        anthropic_base_url="http://anthropic.test",
        google_base_url="http://google.test",
        openai_api_key="sk-openai",
        anthropic_api_key="sk-anthropic",
        google_api_key="g-key",
        preferred_model_id="gpt-4o",
        retry_base_delay_s=0.0,
        database_path=str(tmp_path / "test.db"),
        vault_path=str(tmp_path / "vault"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    return make_settings(tmp_path)


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(str(tmp_path / "state.db"))
    await database.init()
    return database


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(*, gateway=None, tools=None, scheduler=None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        fake_gateway = gateway or FakeGateway()
        app = create_app(
            settings,
            registry=ModelRegistry(),
            tools=tools or ToolRegistry(settings.tools_enabled),
            gateway=fake_gateway,
            scheduler=scheduler or Scheduler(),
            sync_local_models=False,
        )
        return app, fake_gateway

    return _factory


@pytest.fixture
async def client(app_factory):
    app, gateway = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.gateway = gateway  # type: ignore[attr-defined]
            yield http_client
