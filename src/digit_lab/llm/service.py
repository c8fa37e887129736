from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Protocol

import openai
from openai import AsyncAzureOpenAI, AsyncOpenAI
from openai.types.chat import ChatCompletionMessageParam

from ..config import LlmConfig
from ..errors import ErrorCode, app_error
from ..logging import get_logger
from . import prompts


class LlmService(Protocol):
    async def explain_prediction(
        self, digit: int, confidence: float, probs: Sequence[float], thumbnail_b64: str
    ) -> str: ...

    async def build_quiz(self, recent_mistakes: Sequence[int]) -> str: ...

    async def ask(self, question: str) -> str: ...

    async def summarize(self, text: str) -> str: ...

    async def close(self) -> None: ...


class UnconfiguredLlmService:
    """Stand-in used when no credentials are present; every call fails with 503."""

    async def explain_prediction(
        self, digit: int, confidence: float, probs: Sequence[float], thumbnail_b64: str
    ) -> str:
        raise app_error(ErrorCode.llm_not_configured)

    async def build_quiz(self, recent_mistakes: Sequence[int]) -> str:
        raise app_error(ErrorCode.llm_not_configured)

    async def ask(self, question: str) -> str:
        raise app_error(ErrorCode.llm_not_configured)

    async def summarize(self, text: str) -> str:
        raise app_error(ErrorCode.llm_not_configured)

    async def close(self) -> None:
        return None


class OpenAiLlmService:
    """Chat-completion backed tutor, quiz and chat helpers."""

    def __init__(self, config: LlmConfig, client: AsyncOpenAI | None = None) -> None:
        self._config = config
        self._client = client or _make_client(config)
        self._summarize_template = _load_template(config)

    async def explain_prediction(
        self, digit: int, confidence: float, probs: Sequence[float], thumbnail_b64: str
    ) -> str:
        user = prompts.explain_user(digit, confidence, probs, thumbnail_b64)
        return await self._complete(
            [
                {"role": "system", "content": prompts.EXPLAIN_SYSTEM},
                {"role": "user", "content": user},
            ],
            temperature=self._config.explain_temperature,
        )

    async def build_quiz(self, recent_mistakes: Sequence[int]) -> str:
        return await self._complete(
            [
                {"role": "system", "content": prompts.QUIZ_SYSTEM},
                {"role": "user", "content": prompts.quiz_user(recent_mistakes)},
            ],
            temperature=self._config.quiz_temperature,
        )

    async def ask(self, question: str) -> str:
        return await self._complete([{"role": "user", "content": question}])

    async def summarize(self, text: str) -> str:
        prompt = prompts.render_template(self._summarize_template, text)
        return await self._complete([{"role": "user", "content": prompt}])

    async def close(self) -> None:
        await self._client.close()

    async def _complete(
        self, messages: list[ChatCompletionMessageParam], temperature: float | None = None
    ) -> str:
        log = get_logger()
        try:
            if temperature is None:
                resp = await self._client.chat.completions.create(
                    model=self._config.deployment, messages=messages
                )
            else:
                resp = await self._client.chat.completions.create(
                    model=self._config.deployment, messages=messages, temperature=temperature
                )
        except openai.APITimeoutError:
            log.warning("llm_timeout model=%s", self._config.deployment)
            raise app_error(ErrorCode.timeout, "Language model timed out") from None
        except openai.APIError as exc:
            log.warning("llm_failed model=%s error=%s", self._config.deployment, type(exc).__name__)
            raise app_error(ErrorCode.llm_failed) from None
        if not resp.choices:
            return ""
        return resp.choices[0].message.content or ""


def create_llm_service(config: LlmConfig) -> LlmService:
    if not config.configured:
        get_logger().info("llm_not_configured provider=%s", config.provider)
        return UnconfiguredLlmService()
    return OpenAiLlmService(config)


def parse_json_reply(text: str) -> object | None:
    """Decode a reply that is expected to be JSON, tolerating a fenced code block."""
    body = text.strip()
    if body.startswith("```"):
        body = body.strip("`").strip()
        if body.lower().startswith("json"):
            body = body[4:]
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        return None


def _make_client(config: LlmConfig) -> AsyncOpenAI:
    if config.provider == "azure":
        return AsyncAzureOpenAI(
            api_key=config.api_key,
            azure_endpoint=config.endpoint,
            azure_deployment=config.deployment,
            api_version=config.api_version,
            timeout=config.timeout_seconds,
        )
    if config.endpoint:
        return AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.endpoint.rstrip("/"),
            timeout=config.timeout_seconds,
        )
    return AsyncOpenAI(api_key=config.api_key, timeout=config.timeout_seconds)


def _load_template(config: LlmConfig) -> str:
    path = config.summarize_prompt_path
    if path is None:
        return prompts.DEFAULT_SUMMARIZE_TEMPLATE
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise RuntimeError(f"Failed to read summarize prompt: {path}") from exc
