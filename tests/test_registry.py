import pytest
import respx
from httpx import Response

from conduit.registry import ModelRegistry, local_model_from_tag


def test_local_tag_capabilities():
    llava = local_model_from_tag("llava:13b")
    assert llava.capabilities.vision is True
    assert llava.capabilities.tools is False
    assert llava.display_name == "LLAVA"
    assert local_model_from_tag("llama3.1:8b").capabilities.tools is True


@pytest.mark.asyncio
async def test_sync_replaces_local_models():
    registry = ModelRegistry()
    registry.add_model(local_model_from_tag("stale:latest"))
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.get("http://ollama.test/api/tags").mock(
            return_value=Response(200, json={"models": [{"name": "llama3:8b"}, {"name": "llava:7b"}, {}]})
        )
        count = await registry.sync_ollama_models("http://ollama.test/")
    assert count == 2
    assert [m.id for m in registry.all_models(type="local")] == ["llama3:8b", "llava:7b"]
    assert registry.get_model_by_id("gpt-4o") is not None


@pytest.mark.asyncio
async def test_sync_failure_keeps_existing_models():
    registry = ModelRegistry()
    registry.add_model(local_model_from_tag("mistral:7b"))
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.get("http://ollama.test/api/tags").mock(return_value=Response(500))
        count = await registry.sync_ollama_models("http://ollama.test")
    assert count == 1
    assert registry.get_model_by_id("mistral:7b") is not None
