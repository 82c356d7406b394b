"""OpenRouter chat-completions client using the openai SDK (OpenAI-compatible API)."""

import logging
import time
from collections.abc import AsyncIterator

import openai
from openai import AsyncOpenAI

from config.config_loader import ApiConfig
from chimera.models import CompletionResult, ConversationTurn
from chimera.providers.base import ChatClient, ProviderError, TransportError, build_messages

logger = logging.getLogger(__name__)


class OpenRouterClient(ChatClient):
    """One client for every model routed through OpenRouter."""

    def __init__(self, config: ApiConfig, api_key: str, client: AsyncOpenAI | None = None) -> None:
        self._config = config
        if client is None:
            if not api_key or not api_key.strip():
                raise ProviderError("openrouter", f"Missing API key: {config.api_key_env}")
            headers = {}
            if config.referer:
                headers["HTTP-Referer"] = config.referer
            if config.title:
                headers["X-Title"] = config.title
            client = AsyncOpenAI(
                api_key=api_key.strip(),
                base_url=config.base_url,
                default_headers=headers,
                timeout=config.timeout_sec,
                max_retries=0,
            )
        self._client = client

    async def stream(
        self,
        model: str,
        new_user_text: str,
        history: list[ConversationTurn],
    ) -> AsyncIterator[str]:
        start = time.monotonic()
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=build_messages(new_user_text, history),
                stream=True,
            )
        except openai.APIStatusError as exc:
            raise TransportError(model, f"API request failed: {exc.status_code}") from exc
        except openai.APIError as exc:
            raise TransportError(model, f"API request failed: {exc}") from exc

        partial = ""
        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content if chunk.choices[0].delta else None
                if not delta:
                    continue
                partial += delta
                yield partial
        except openai.APIError as exc:
            raise TransportError(model, f"Stream failed: {exc}") from exc
        except ValueError as exc:
            raise TransportError(model, f"Malformed stream frame: {exc}") from exc
        finally:
            await response.close()

        logger.info("%s streamed: %.2fs, %d chars", model, time.monotonic() - start, len(partial))

    async def complete(
        self,
        model: str,
        new_user_text: str,
        history: list[ConversationTurn],
    ) -> CompletionResult:
        start = time.monotonic()
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=build_messages(new_user_text, history),
                stream=False,
            )
        except openai.APIStatusError as exc:
            raise TransportError(model, f"API request failed: {exc.status_code}") from exc
        except openai.APIError as exc:
            raise TransportError(model, f"API request failed: {exc}") from exc

        choice = response.choices[0] if response.choices else None
        if choice is None or choice.message is None:
            raise TransportError(model, "Malformed response envelope: no choices")

        text = choice.message.content or ""
        logger.info("%s completed: %.2fs, %d chars", model, time.monotonic() - start, len(text))
        return CompletionResult(text=text, raw=response.model_dump())

    async def aclose(self) -> None:
        await self._client.close()
