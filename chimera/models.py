"""Pure dataclasses for the chat orchestrator. No I/O, no deps."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Strategy(str, Enum):
    RACE = "race"            # default: first call to finish wins
    SERIES = "series"        # chain of refinement
    PARALLEL = "parallel"    # fan-out, then synthesize


class RoundState(str, Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(frozen=True)
class ConversationTurn:
    role: str                # "user" or "assistant"
    content: str

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class Message:
    id: int
    content: str
    author: str              # "user" or "assistant"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source_model: str | None = None
    is_pending: bool = False
    is_error: bool = False

    @property
    def is_user(self) -> bool:
        return self.author == "user"


@dataclass
class CompletionResult:
    text: str
    raw: dict[str, Any]


@dataclass
class StrategyResult:
    text: str
    contributing_model: str
    failures: dict[str, str] = field(default_factory=dict)   # model -> error message
