"""Multi-model response aggregation: race, series and parallel strategies.

One ``respond`` call is one round. The round appends the user message,
streams model output into a single pending placeholder, then either
finalizes and commits that placeholder or removes it. A failed round never
leaves a pending or partial assistant message behind.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from config.config_loader import PromptsConfig, RetryConfig
from chimera.commands import parse_command
from chimera.models import (
    CompletionResult,
    ConversationTurn,
    Message,
    RoundState,
    Strategy,
    StrategyResult,
)
from chimera.providers.base import ChatClient, ProviderError
from chimera.retry import with_retry
from chimera.transcript import Transcript

logger = logging.getLogger(__name__)

FIRST_SETTLED = "first_settled"
FIRST_SUCCESS = "first_success"


class AllModelsFailedError(Exception):
    """No model produced a usable result for the round."""

    def __init__(self, failures: dict[str, str], message: str | None = None) -> None:
        self.failures = dict(failures)
        if message is None:
            detail = "; ".join(f"{model}: {err}" for model, err in self.failures.items())
            message = f"All models failed: {detail}" if detail else "All models failed"
        super().__init__(message)


class RoundInProgressError(RuntimeError):
    """A round was started while another one is still in flight."""


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, ProviderError):
        return exc.message
    return str(exc) or type(exc).__name__


def _format_contributions(contributions: list[tuple[str, str]]) -> str:
    """Label each model's answer for the synthesis prompt."""
    return "\n\n".join(f"**{model}**\n{text}" for model, text in contributions)


async def _cancel_tasks(tasks: list[asyncio.Task]) -> None:
    """Cancel every unfinished task and wait until all have stopped."""
    for task in tasks:
        if not task.done():
            task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


class Aggregator:
    """Runs aggregation rounds for one transcript."""

    def __init__(
        self,
        client: ChatClient,
        transcript: Transcript,
        prompts: PromptsConfig,
        retry: RetryConfig | None = None,
        race_policy: str = FIRST_SETTLED,
        on_update: Callable[[Message], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if race_policy not in (FIRST_SETTLED, FIRST_SUCCESS):
            raise ValueError(f"Unknown race policy: {race_policy}")
        self._client = client
        self._transcript = transcript
        self._prompts = prompts
        self._retry = retry or RetryConfig()
        self._race_policy = race_policy
        self.on_update = on_update
        self._sleep = sleep
        self._placeholder_id: int | None = None
        self._in_flight = False
        self.state = RoundState.IDLE

    async def respond(self, raw_text: str, models: list[str]) -> StrategyResult:
        """Run one round for the raw chat input over the selected models.

        Returns:
            The StrategyResult that was committed to the transcript.

        Raises:
            RoundInProgressError: If a round is already running.
            ValueError: If no models are selected or the prompt is empty.
            AllModelsFailedError: If the round failed; the placeholder has
                been removed.
        """
        if self._in_flight:
            raise RoundInProgressError("A response is already being generated")
        if not models:
            raise ValueError("At least one model must be selected")
        strategy, prompt = parse_command(raw_text)
        if not prompt.strip():
            raise ValueError("Message is empty")

        self._in_flight = True
        try:
            return await self._run_round(strategy, prompt, list(models))
        finally:
            self._in_flight = False

    async def _run_round(self, strategy: Strategy, prompt: str, models: list[str]) -> StrategyResult:
        transcript = self._transcript
        history = transcript.conversation_turns()

        user_msg = Message(id=transcript.new_message_id(), content=prompt, author="user")
        transcript.append_message(user_msg)
        self._notify(user_msg)
        try:
            await transcript.commit_message(user_msg)
        except (Exception, asyncio.CancelledError):
            transcript.remove_message(user_msg.id)
            raise

        placeholder = Message(
            id=transcript.new_message_id(),
            content="",
            author="assistant",
            source_model=models[-1] if strategy is Strategy.SERIES else models[0],
            is_pending=True,
        )
        transcript.append_message(placeholder)
        self._placeholder_id = placeholder.id
        self.state = RoundState.DISPATCHING
        self._notify(placeholder)
        logger.info("Round started: %s over %d model(s)", strategy.value, len(models))

        runners = {
            Strategy.RACE: self.run_race,
            Strategy.SERIES: self.run_series,
            Strategy.PARALLEL: self.run_parallel,
        }
        try:
            result = await runners[strategy](prompt, models, history)

            self.state = RoundState.FINALIZING
            final = transcript.update_message(
                placeholder.id,
                content=result.text,
                source_model=result.contributing_model,
                is_pending=False,
            )
            self._placeholder_id = None
            self._notify(final)
            await transcript.commit_message(final)
        except (Exception, asyncio.CancelledError) as exc:
            self.state = RoundState.FAILED
            self._placeholder_id = None
            transcript.remove_message(placeholder.id)
            logger.warning("Round failed (%s): %s", strategy.value, str(exc) or type(exc).__name__)
            raise

        if strategy is Strategy.PARALLEL:
            for model, error in result.failures.items():
                self._append_error_bubble(model, error)

        self.state = RoundState.COMMITTED
        logger.info("Round committed: %s via %s", strategy.value, result.contributing_model)
        return result

    def _append_error_bubble(self, model: str, error: str) -> None:
        """Visible, local-only note about a contributor that failed."""
        bubble = Message(
            id=self._transcript.new_message_id(),
            content=f"{model} failed: {error}",
            author="assistant",
            source_model=model,
            is_error=True,
        )
        self._transcript.append_message(bubble)
        self._notify(bubble)

    def _notify(self, msg: Message) -> None:
        if self.on_update:
            self.on_update(msg)

    def _partial_for(self, model: str) -> Callable[[str], None]:
        """Callback that streams a model's running text into the placeholder."""

        def on_partial(text: str) -> None:
            if self._placeholder_id is None or self._transcript.get_message(self._placeholder_id) is None:
                return
            if self.state == RoundState.DISPATCHING:
                self.state = RoundState.STREAMING
            msg = self._transcript.update_message(self._placeholder_id, content=text, source_model=model)
            self._notify(msg)

        return on_partial

    async def _call(
        self,
        model: str,
        prompt: str,
        history: list[ConversationTurn],
        on_partial: Callable[[str], None] | None = None,
    ) -> CompletionResult:
        return await with_retry(
            lambda: self._client.invoke(model, prompt, history, on_partial),
            model,
            self._retry,
            self._sleep,
        )

    async def run_race(self, prompt: str, models: list[str], history: list[ConversationTurn]) -> StrategyResult:
        """First model to finish wins; the rest are cancelled.

        With the ``first_settled`` policy the first call to settle decides
        the round even if it failed. ``first_success`` keeps waiting until
        some call succeeds or all have failed.
        """
        tasks = [
            asyncio.create_task(self._call(m, prompt, history, self._partial_for(m)), name=f"race:{m}")
            for m in models
        ]
        owners = dict(zip(tasks, models))
        failures: dict[str, str] = {}
        try:
            pending = set(tasks)
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in (t for t in tasks if t in done):
                    model = owners[task]
                    exc = task.exception()
                    if exc is None:
                        logger.info("Race won by %s", model)
                        return StrategyResult(task.result().text, model, failures)
                    failures[model] = _error_text(exc)
                    logger.warning("Race entrant %s failed: %s", model, exc)
                    if self._race_policy == FIRST_SETTLED:
                        raise AllModelsFailedError(failures, f"First model to finish failed: {exc}")
            raise AllModelsFailedError(failures)
        finally:
            await _cancel_tasks(tasks)

    async def run_series(self, prompt: str, models: list[str], history: list[ConversationTurn]) -> StrategyResult:
        """Each model refines the last successful answer; only the last one streams."""
        failures: dict[str, str] = {}
        previous: str | None = None
        last_index = len(models) - 1

        for index, model in enumerate(models):
            is_final = index == last_index
            if previous is None:
                stage_prompt = prompt
            else:
                stage_prompt = self._prompts.series_enhance.format(
                    question=prompt,
                    previous_response=previous,
                )
            logger.debug("Series stage %d/%d: %s", index + 1, len(models), model)
            try:
                result = await self._call(
                    model,
                    stage_prompt,
                    history,
                    self._partial_for(model) if is_final else None,
                )
            except Exception as exc:
                failures[model] = _error_text(exc)
                logger.warning("Series stage %s failed: %s", model, exc)
                if is_final:
                    raise AllModelsFailedError(failures, f"Final stage {model} failed: {exc}") from exc
                continue
            previous = result.text

        return StrategyResult(previous or "", models[-1], failures)

    async def run_parallel(self, prompt: str, models: list[str], history: list[ConversationTurn]) -> StrategyResult:
        """Ask every model at once, then have one model synthesize the answers."""
        results = await asyncio.gather(
            *(self._call(m, prompt, history) for m in models),
            return_exceptions=True,
        )

        contributions: list[tuple[str, str]] = []
        failures: dict[str, str] = {}
        for model, result in zip(models, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                failures[model] = _error_text(result)
                logger.warning("Parallel contributor %s failed: %s", model, result)
            else:
                contributions.append((model, result.text))

        if not contributions:
            raise AllModelsFailedError(failures)

        logger.info("Parallel: %d/%d models answered", len(contributions), len(models))

        synthesizer = contributions[0][0]
        synthesis_prompt = self._prompts.parallel_synthesis.format(
            question=prompt,
            responses=_format_contributions(contributions),
        )
        try:
            result = await self._call(synthesizer, synthesis_prompt, history, self._partial_for(synthesizer))
        except Exception as exc:
            raise AllModelsFailedError(
                {**failures, synthesizer: _error_text(exc)},
                f"Synthesis by {synthesizer} failed: {exc}",
            ) from exc

        return StrategyResult(result.text, synthesizer, failures)
