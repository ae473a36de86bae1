from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from openai import AsyncOpenAI

from taskagent.config import AgentConfig
from taskagent.errors import InferenceUnavailable
from taskagent.observability import get_json_logger

ChatTurn = Mapping[str, str]


class InferenceClient(Protocol):
    """Language inference service: ordered chat turns in, a raw completion out.

    The return value is whatever the backend produced; callers pass it through
    ``extract_completion_text`` to obtain usable text.
    """

    async def complete(
        self,
        messages: Sequence[ChatTurn],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> Any: ...


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _nonempty_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def extract_completion_text(raw: Any) -> str | None:
    """Return the completion text from a backend response, or None when nothing usable.

    Checked in order:
    1. ``raw`` itself when it is a string
    2. ``response``
    3. ``result.response``
    4. ``choices[0].message.content`` (chat completions)
    5. ``output_text`` (responses API)
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        return _nonempty_str(raw)

    text = _nonempty_str(_field(raw, "response"))
    if text is not None:
        return text

    result = _field(raw, "result")
    if result is not None:
        text = _nonempty_str(_field(result, "response"))
        if text is not None:
            return text

    choices = _field(raw, "choices")
    if isinstance(choices, Sequence) and not isinstance(choices, str) and choices:
        message = _field(choices[0], "message")
        if message is not None:
            text = _nonempty_str(_field(message, "content"))
            if text is not None:
                return text

    return _nonempty_str(_field(raw, "output_text"))


class OpenAIInferenceClient:
    """Inference through the OpenAI chat completions API."""

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        client: AsyncOpenAI | None = None,
        max_tokens: int = 512,
        temperature: float = 0.3,
    ) -> None:
        self._model = model
        self._client = client or AsyncOpenAI(api_key=api_key)
        self._max_tokens = max_tokens
        self._temperature = temperature

    @property
    def model(self) -> str:
        return self._model

    async def complete(
        self,
        messages: Sequence[ChatTurn],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> Any:
        return await self._client.chat.completions.create(
            model=self._model,
            messages=[{"role": m["role"], "content": m["content"]} for m in messages],  # type: ignore[misc]
            max_tokens=max_tokens or self._max_tokens,
            temperature=self._temperature if temperature is None else temperature,
        )


class UnavailableInferenceClient:
    """Stand-in used when no backend is configured; every call takes the fallback path."""

    async def complete(
        self,
        messages: Sequence[ChatTurn],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> Any:
        raise InferenceUnavailable("no inference backend configured (set OPENAI_API_KEY)")


def build_inference_from_config(cfg: AgentConfig) -> InferenceClient:
    logger = get_json_logger("taskagent")
    if cfg.api_key:
        logger.info(
            "inference selected",
            extra={
                "event": "inference_selected",
                "attributes": {"backend": "openai", "model": cfg.model},
            },
        )
        return OpenAIInferenceClient(
            cfg.model,
            api_key=cfg.api_key,
            max_tokens=cfg.max_tokens,
            temperature=cfg.temperature,
        )
    logger.warning(
        "inference unavailable",
        extra={"event": "inference_selected", "attributes": {"backend": "unavailable"}},
    )
    return UnavailableInferenceClient()


__all__ = [
    "ChatTurn",
    "InferenceClient",
    "OpenAIInferenceClient",
    "UnavailableInferenceClient",
    "build_inference_from_config",
    "extract_completion_text",
]
