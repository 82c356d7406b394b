"""Application context: owns the model client and chat storage for one session."""

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from config.config_loader import AppConfig
from chimera.aggregator import Aggregator
from chimera.models import Message
from chimera.providers.base import ChatClient
from chimera.providers.openrouter import OpenRouterClient
from chimera.transcript import ChatRepository, JsonChatRepository, Transcript

logger = logging.getLogger(__name__)


@dataclass
class ChimeraContext:
    config: AppConfig
    client: ChatClient
    repository: ChatRepository

    def aggregator_for(
        self,
        transcript: Transcript,
        on_update: Callable[[Message], None] | None = None,
    ) -> Aggregator:
        return Aggregator(
            client=self.client,
            transcript=transcript,
            prompts=self.config.prompts,
            retry=self.config.retry,
            race_policy=self.config.defaults.race_policy,
            on_update=on_update,
        )

    async def aclose(self) -> None:
        await self.client.aclose()


@asynccontextmanager
async def open_context(
    config: AppConfig,
    client: ChatClient | None = None,
    repository: ChatRepository | None = None,
) -> AsyncIterator[ChimeraContext]:
    """Build the session context and release its client on exit.

    Raises:
        ProviderError: If no client is given and the API key is missing.
    """
    ctx = ChimeraContext(
        config=config,
        client=client or OpenRouterClient(config.api, config.api_key),
        repository=repository or JsonChatRepository(config.defaults.chats_dir),
    )
    try:
        yield ctx
    finally:
        await ctx.aclose()
        logger.debug("Context closed")
