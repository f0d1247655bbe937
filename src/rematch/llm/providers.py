from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from openai import OpenAI

from rematch.config import Settings
from rematch.types import ModelResponse

logger = logging.getLogger(__name__)

_FENCED_OBJECT = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


@dataclass(slots=True)
class ProviderConfig:
    name: str
    base_url: str
    api_key: str
    timeout_sec: int
    chat_model: str
    embedding_model: str
    analysis_model: str | None = None

    def model_for(self, task: str) -> str:
        """Model used for a router task ("parse" or "analyze")."""
        if task == "analyze" and self.analysis_model:
            return self.analysis_model
        return self.chat_model


def responses_unavailable(exc: Exception) -> bool:
    """True when a server does not implement the Responses API (most local runtimes)."""
    if getattr(exc, "status_code", None) == 404:
        return True
    message = str(exc).lower()
    return "404" in message or "not found" in message


def _raw_payload(response: Any, api_path: str) -> dict[str, Any]:
    dumped = response.model_dump() if hasattr(response, "model_dump") else {}
    raw = dumped if isinstance(dumped, dict) else {"raw": dumped}
    raw["api_path"] = api_path
    return raw


def _chat_text(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    message = getattr(choices[0], "message", None) if choices else None
    content = getattr(message, "content", None)
    return "" if content is None else str(content)


class LLMProvider:
    """OpenAI-compatible endpoint used for completions and embeddings."""

    def __init__(self, config: ProviderConfig):
        self.config = config
        self.client = OpenAI(base_url=config.base_url, api_key=config.api_key, timeout=float(config.timeout_sec))

    def complete_text(self, *, model: str, prompt: str) -> ModelResponse:
        try:
            response = self.client.responses.create(
                model=model,
                input=[{"role": "user", "content": [{"type": "input_text", "text": prompt}]}],
            )
        except Exception as exc:
            if not responses_unavailable(exc):
                raise
            logger.warning(
                "Responses API unavailable provider=%s base_url=%s, using chat.completions: %s",
                self.config.name,
                self.config.base_url,
                exc,
            )
            response = self.client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": prompt}],
            )
            return ModelResponse(content=_chat_text(response), raw=_raw_payload(response, "chat_completions"))

        text = getattr(response, "output_text", "") or ""
        return ModelResponse(content=text, raw=_raw_payload(response, "responses"))

    def complete_json(self, *, model: str, prompt: str) -> dict[str, Any]:
        return parse_json(self.complete_text(model=model, prompt=prompt).content)

    def embed(self, texts: list[str], *, dimensions: int | None = None) -> list[list[float]]:
        request: dict[str, Any] = {"model": self.config.embedding_model, "input": texts}
        if dimensions:
            request["dimensions"] = dimensions
        response = self.client.embeddings.create(**request)

        items = sorted(getattr(response, "data", None) or [], key=lambda item: getattr(item, "index", 0))
        vectors = [list(getattr(item, "embedding", None) or []) for item in items]
        if len(vectors) != len(texts):
            raise RuntimeError(f"expected {len(texts)} embeddings, got {len(vectors)}")
        return vectors


def parse_json(content: str) -> dict[str, Any]:
    """Pull a JSON object out of model output, fenced or bare. Anything else yields {}."""
    text = content.strip()
    if not text:
        return {}

    fenced = _FENCED_OBJECT.search(text)
    if fenced:
        text = fenced.group(1)
    elif not text.startswith("{") and "{" in text:
        text = text[text.index("{") : text.rfind("}") + 1]

    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Model output is not a JSON object (%s chars)", len(content))
        return {}
    return value if isinstance(value, dict) else {}


class ProviderPool:
    """Configured providers in preference order: hosted OpenAI first, then the local runtime."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._providers: dict[str, LLMProvider] = {}

    def available(self) -> list[LLMProvider]:
        names = []
        if self.settings.openai_api_key:
            names.append("openai")
        if self.settings.local_llm_enabled:
            names.append("local")
        return [self.get(name) for name in names]

    def get(self, name: str) -> LLMProvider:
        if name not in self._providers:
            self._providers[name] = LLMProvider(self._config(name))
        return self._providers[name]

    def _config(self, name: str) -> ProviderConfig:
        s = self.settings
        if name == "openai":
            return ProviderConfig(
                name="openai",
                base_url=s.openai_base_url,
                api_key=s.openai_api_key,
                timeout_sec=s.openai_timeout_sec,
                chat_model=s.openai_model_parser,
                embedding_model=s.openai_embedding_model,
                analysis_model=s.openai_model_analyzer,
            )
        if name == "local":
            return ProviderConfig(
                name="local",
                base_url=s.local_llm_base_url,
                api_key=s.local_llm_api_key,
                timeout_sec=s.local_llm_timeout_sec,
                chat_model=s.local_llm_model,
                embedding_model=s.local_llm_embedding_model,
            )
        raise ValueError(f"unknown provider {name!r}")
