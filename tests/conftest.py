"""Shared pytest fixtures."""

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from config.config_loader import AppConfig, ApiConfig, DefaultsConfig, PromptsConfig, RetryConfig
from chimera.aggregator import Aggregator
from chimera.models import CompletionResult, ConversationTurn
from chimera.providers.base import ChatClient
from chimera.transcript import ChatRepository, Transcript


@dataclass
class Call:
    model: str
    text: str
    history: list[ConversationTurn]
    streamed: bool


class FakeClient(ChatClient):
    """Scripted ChatClient test double.

    ``script`` maps model -> steps consumed one per call. A step is the
    response text, an exception instance to raise, or a ``(delay, step)``
    tuple. The last step repeats once the list runs out; unscripted models
    answer "answer from <model>".
    """

    def __init__(self, script: dict[str, list[Any]] | None = None, chunk_size: int = 4) -> None:
        self.script = {model: list(steps) for model, steps in (script or {}).items()}
        self.chunk_size = chunk_size
        self.calls: list[Call] = []
        self.cancelled: list[str] = []
        self.closed = False

    def calls_for(self, model: str) -> list[Call]:
        return [c for c in self.calls if c.model == model]

    def _next_step(self, model: str) -> Any:
        steps = self.script.get(model)
        if not steps:
            return f"answer from {model}"
        return steps.pop(0) if len(steps) > 1 else steps[0]

    async def _resolve(self, model: str, text: str, history: list[ConversationTurn], streamed: bool) -> str:
        self.calls.append(Call(model, text, list(history), streamed))
        step = self._next_step(model)
        delay = 0.0
        if isinstance(step, tuple):
            delay, step = step
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self.cancelled.append(model)
            raise
        if isinstance(step, BaseException):
            raise step
        return step

    async def stream(self, model: str, new_user_text: str, history: list[ConversationTurn]) -> AsyncIterator[str]:
        answer = await self._resolve(model, new_user_text, history, streamed=True)
        for end in range(self.chunk_size, len(answer) + self.chunk_size, self.chunk_size):
            yield answer[:end]

    async def complete(self, model: str, new_user_text: str, history: list[ConversationTurn]) -> CompletionResult:
        answer = await self._resolve(model, new_user_text, history, streamed=False)
        return CompletionResult(text=answer, raw={"choices": [{"message": {"content": answer}}]})

    async def aclose(self) -> None:
        self.closed = True


class FakeRepository(ChatRepository):
    """In-memory ChatRepository that records every save."""

    def __init__(self) -> None:
        self.docs: dict[str, dict[str, Any]] = {}
        self.saves: list[dict[str, Any]] = []
        self.fail_saves = False
        self.save_delay = 0.0

    def create_chat(self, name: str, model_ids: list[str]) -> str:
        chat_id = f"chat{len(self.docs) + 1}"
        self.docs[chat_id] = {"id": chat_id, "name": name, "modelIds": list(model_ids), "chatHistory": []}
        return chat_id

    def load_chat(self, chat_id: str) -> dict[str, Any]:
        if chat_id not in self.docs:
            raise FileNotFoundError(f"Chat not found: {chat_id}")
        return self.docs[chat_id]

    def list_chats(self) -> list[dict[str, Any]]:
        return list(self.docs.values())

    def delete_chat(self, chat_id: str) -> None:
        del self.docs[chat_id]

    async def save_message(self, chat_id: str, record: dict[str, Any]) -> None:
        if self.save_delay:
            await asyncio.sleep(self.save_delay)
        if self.fail_saves:
            raise OSError("disk full")
        self.saves.append(dict(record))
        history = [r for r in self.docs[chat_id]["chatHistory"] if r["id"] != record["id"]]
        history.append(dict(record))
        self.docs[chat_id]["chatHistory"] = history


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        series_enhance="ENHANCE: {question}\nPREVIOUS: {previous_response}",
        parallel_synthesis="SYNTHESIZE: {question}\n{responses}",
    )


@pytest.fixture
def fast_retry_config() -> RetryConfig:
    return RetryConfig(max_attempts=3, base_delay_sec=0.0, max_delay_sec=0.0, jitter=0.0)


@pytest.fixture
def sample_app_config(tmp_path: Path, sample_prompts_config: PromptsConfig, fast_retry_config: RetryConfig) -> AppConfig:
    return AppConfig(
        api=ApiConfig(
            base_url="https://openrouter.ai/api/v1",
            api_key_env="TEST_OPENROUTER_KEY",
            referer="https://example.com/chimera",
            title="ChimeraAI",
        ),
        retry=fast_retry_config,
        defaults=DefaultsConfig(
            chats_dir=tmp_path / "chats",
            export_dir=tmp_path / "output",
            models=["vendor/alpha", "vendor/beta"],
        ),
        prompts=sample_prompts_config,
    )


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def transcript(repository: FakeRepository) -> Transcript:
    return Transcript(repository.create_chat("Test chat", ["a", "b"]), repository)


@pytest.fixture
def make_aggregator(transcript: Transcript, sample_prompts_config: PromptsConfig, fast_retry_config: RetryConfig):
    def _make(client: ChatClient, race_policy: str = "first_settled", on_update=None) -> Aggregator:
        return Aggregator(
            client=client,
            transcript=transcript,
            prompts=sample_prompts_config,
            retry=fast_retry_config,
            race_policy=race_policy,
            on_update=on_update,
        )

    return _make
