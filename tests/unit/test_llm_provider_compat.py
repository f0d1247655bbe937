from __future__ import annotations

from types import SimpleNamespace

import pytest

from rematch.config import Settings
from rematch.llm.providers import LLMProvider, ProviderConfig, ProviderPool, parse_json


class DummyAPIError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class FakeResponsePayload:
    def __init__(self, *, output_text: str = "", raw: dict | None = None):
        self.output_text = output_text
        self._raw = raw or {}

    def model_dump(self) -> dict:
        return self._raw


class FakeChatPayload:
    def __init__(self, *, content: str, raw: dict | None = None):
        self.choices = [SimpleNamespace(message=SimpleNamespace(content=content))]
        self._raw = raw or {}

    def model_dump(self) -> dict:
        return self._raw


class FakeAPI:
    def __init__(self, fn):
        self._fn = fn

    def create(self, **kwargs):
        return self._fn(**kwargs)


class FakeClient:
    def __init__(self, *, responses_fn=None, chat_fn=None, embeddings_fn=None):
        self.responses = FakeAPI(responses_fn)
        self.chat = SimpleNamespace(completions=FakeAPI(chat_fn))
        self.embeddings = FakeAPI(embeddings_fn)


def _provider_with_fake_client(fake_client: FakeClient, name: str = "openai") -> LLMProvider:
    provider = LLMProvider(
        ProviderConfig(
            name=name,
            base_url="http://localhost:9999/v1",
            api_key="dummy",
            timeout_sec=5,
            chat_model="test-chat",
            embedding_model="test-embed",
        )
    )
    provider.client = fake_client
    return provider


def test_complete_text_uses_responses_when_available() -> None:
    chat_called = {"value": False}

    def chat_fn(**kwargs):
        chat_called["value"] = True
        return FakeChatPayload(content="CHAT_OK")

    provider = _provider_with_fake_client(
        FakeClient(responses_fn=lambda **kwargs: FakeResponsePayload(output_text="RESP_OK"), chat_fn=chat_fn)
    )
    result = provider.complete_text(model="gpt-5-mini", prompt="ping")

    assert result.content == "RESP_OK"
    assert result.raw["api_path"] == "responses"
    assert chat_called["value"] is False


def test_complete_text_falls_back_to_chat_on_responses_not_found() -> None:
    def responses_fn(**kwargs):
        raise DummyAPIError("Not found", status_code=404)

    provider = _provider_with_fake_client(
        FakeClient(responses_fn=responses_fn, chat_fn=lambda **kwargs: FakeChatPayload(content="CHAT_OK"))
    )
    result = provider.complete_text(model="local-model", prompt="ping")

    assert result.content == "CHAT_OK"
    assert result.raw["api_path"] == "chat_completions"


def test_complete_text_propagates_other_errors() -> None:
    def responses_fn(**kwargs):
        raise DummyAPIError("rate limited", status_code=429)

    provider = _provider_with_fake_client(FakeClient(responses_fn=responses_fn))
    with pytest.raises(DummyAPIError, match="rate limited"):
        provider.complete_text(model="gpt-5-mini", prompt="ping")


def test_complete_json_reads_fenced_output() -> None:
    provider = _provider_with_fake_client(
        FakeClient(
            responses_fn=lambda **kwargs: FakeResponsePayload(output_text='```json\n{"summary": "ok"}\n```')
        )
    )

    assert provider.complete_json(model="gpt-5-mini", prompt="json please") == {"summary": "ok"}


def test_parse_json_returns_empty_dict_for_garbage() -> None:
    assert parse_json("not json at all") == {}
    assert parse_json("[1, 2]") == {}
    assert parse_json("") == {}


def test_embed_orders_vectors_by_index_and_passes_dimensions() -> None:
    seen: dict = {}

    def embeddings_fn(**kwargs):
        seen.update(kwargs)
        return SimpleNamespace(
            data=[
                SimpleNamespace(index=1, embedding=[0.0, 1.0]),
                SimpleNamespace(index=0, embedding=[1.0, 0.0]),
            ]
        )

    provider = _provider_with_fake_client(FakeClient(embeddings_fn=embeddings_fn))
    vectors = provider.embed(["first", "second"], dimensions=2)

    assert vectors == [[1.0, 0.0], [0.0, 1.0]]
    assert seen == {"model": "test-embed", "input": ["first", "second"], "dimensions": 2}


def test_embed_rejects_short_responses() -> None:
    provider = _provider_with_fake_client(
        FakeClient(embeddings_fn=lambda **kwargs: SimpleNamespace(data=[SimpleNamespace(index=0, embedding=[1.0])]))
    )
    with pytest.raises(RuntimeError, match="expected 2 embeddings"):
        provider.embed(["a", "b"])


def test_provider_pool_reflects_configuration() -> None:
    assert ProviderPool(Settings(openai_api_key="", local_llm_enabled=False)).available() == []

    pool = ProviderPool(Settings(openai_api_key="sk-test", local_llm_enabled=True))
    assert [provider.config.name for provider in pool.available()] == ["openai", "local"]


def test_parse_json_finds_object_inside_prose() -> None:
    assert parse_json('Here is the profile: {"skills": "Python"} hope it helps') == {"skills": "Python"}


def test_provider_config_picks_model_per_task() -> None:
    pool = ProviderPool(Settings(openai_api_key="sk-test", openai_model_analyzer="gpt-5", local_llm_enabled=True))
    hosted, local = pool.available()

    assert hosted.config.model_for("parse") == "gpt-5-mini"
    assert hosted.config.model_for("analyze") == "gpt-5"
    assert local.config.model_for("analyze") == local.config.chat_model
    assert pool.get("openai") is hosted
