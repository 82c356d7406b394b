"""Abstract chat-completion client and the per-model error taxonomy."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable

from chimera.models import CompletionResult, ConversationTurn


class ProviderError(Exception):
    """Raised when a call to a single model fails."""

    def __init__(self, model: str, message: str) -> None:
        self.model = model
        self.message = message
        super().__init__(f"[{model}] {message}")


class TransportError(ProviderError):
    """Non-success HTTP status, connection failure or malformed envelope."""


class EmptyResponseError(ProviderError):
    """The provider answered successfully but without usable content."""


def build_messages(new_user_text: str, history: list[ConversationTurn]) -> list[dict[str, str]]:
    """History turns in order, then one final user turn."""
    return [turn.as_dict() for turn in history] + [{"role": "user", "content": new_user_text}]


class ChatClient(ABC):
    """Issues chat-completion calls against a remote LLM provider."""

    @abstractmethod
    def stream(
        self,
        model: str,
        new_user_text: str,
        history: list[ConversationTurn],
    ) -> AsyncIterator[str]:
        """Yield the accumulated response text after every content delta.

        Raises:
            TransportError: On HTTP failure or a malformed stream.
            asyncio.CancelledError: When the consuming task is cancelled.
        """
        ...

    @abstractmethod
    async def complete(
        self,
        model: str,
        new_user_text: str,
        history: list[ConversationTurn],
    ) -> CompletionResult:
        """Request a unary (non-streamed) completion."""
        ...

    async def invoke(
        self,
        model: str,
        new_user_text: str,
        history: list[ConversationTurn],
        on_partial: Callable[[str], None] | None = None,
    ) -> CompletionResult:
        """Run one chat completion.

        Streams when ``on_partial`` is given, calling it with the running
        text after every delta; otherwise requests a unary response.

        Returns:
            CompletionResult with the full text and the provider envelope.

        Raises:
            TransportError: On HTTP failure or malformed envelope.
            asyncio.CancelledError: When cancelled mid-flight. No partial
                result is returned.
        """
        if on_partial is None:
            return await self.complete(model, new_user_text, history)

        text = ""
        async for text in self.stream(model, new_user_text, history):
            on_partial(text)
        return CompletionResult(
            text=text,
            raw={"choices": [{"message": {"role": "assistant", "content": text}}]},
        )

    async def aclose(self) -> None:
        """Release transport resources. Default: nothing to release."""
        return None
