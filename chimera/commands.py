"""Strategy selection from a leading command token in the chat input."""

from chimera.models import Strategy

COMMANDS: dict[str, Strategy] = {
    "/parallel": Strategy.PARALLEL,
    "/series": Strategy.SERIES,
}


def parse_command(raw_text: str) -> tuple[Strategy, str]:
    """Split raw input into (strategy, prompt).

    A recognized prefix and the single separator after it are stripped.
    Anything else, including an unknown ``/word``, is a Race prompt passed
    through unchanged.
    """
    for token, strategy in COMMANDS.items():
        if raw_text == token:
            return strategy, ""
        if raw_text.startswith(token) and raw_text[len(token)].isspace():
            return strategy, raw_text[len(token) + 1:]
    return Strategy.RACE, raw_text
