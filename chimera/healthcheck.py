"""Model health checks: ping each selected model before starting a chat."""

import asyncio
import logging

from chimera.providers.base import ChatClient

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_TIMEOUT_SEC = 15.0


async def _check_one(client: ChatClient, model: str) -> tuple[str, bool, str]:
    """Ping a single model. Returns (model, ok, error_message)."""
    try:
        await asyncio.wait_for(client.invoke(model, _PING_PROMPT, []), timeout=_TIMEOUT_SEC)
        return model, True, ""
    except Exception as exc:
        logger.debug("Health check failed for %s: %s", model, exc)
        return model, False, str(exc) or type(exc).__name__


async def run_health_checks(client: ChatClient, models: list[str]) -> dict[str, tuple[bool, str]]:
    """Ping all models in parallel, once per distinct identifier.

    Returns:
        Dict mapping model -> (ok, error_message).
        error_message is "" when ok is True.
    """
    unique = list(dict.fromkeys(models))
    results = await asyncio.gather(*(_check_one(client, m) for m in unique))
    return {model: (ok, err) for model, ok, err in results}
