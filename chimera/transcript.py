"""Append-only chat transcript with optimistic local writes and durable commits.

Local mutations (append, update, remove) apply immediately so the display can
re-render; ``commit_message`` then writes a finalized message through a
ChatRepository. Pending placeholders are never persisted.
"""

import asyncio
import json
import logging
import re
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from chimera.models import ConversationTurn, Message

logger = logging.getLogger(__name__)

# create_chat issues uuid4().hex ids; nothing else may become a file name.
_CHAT_ID_RE = re.compile(r"[0-9a-f]{32}")

_MUTABLE_FIELDS = {"content", "source_model", "is_pending", "is_error"}


def to_record(msg: Message) -> dict[str, Any]:
    """Persisted shape of a message inside a chat document."""
    return {
        "id": msg.id,
        "content": msg.content,
        "timestamp": msg.created_at.isoformat(),
        "isUser": msg.is_user,
        "modelId": msg.source_model,
        "isStreaming": msg.is_pending,
    }


def from_record(record: dict[str, Any]) -> Message:
    return Message(
        id=int(record["id"]),
        content=str(record.get("content", "")),
        author="user" if record.get("isUser") else "assistant",
        created_at=datetime.fromisoformat(record["timestamp"]),
        source_model=record.get("modelId"),
        is_pending=bool(record.get("isStreaming", False)),
    )


class ChatRepository(ABC):
    """Durable storage for chat documents."""

    @abstractmethod
    def create_chat(self, name: str, model_ids: list[str]) -> str:
        """Create an empty chat and return its id."""
        ...

    @abstractmethod
    def load_chat(self, chat_id: str) -> dict[str, Any]:
        """Return the chat document.

        Raises:
            FileNotFoundError: If no chat with this id exists.
            ValueError: If the id is malformed.
        """
        ...

    @abstractmethod
    def list_chats(self) -> list[dict[str, Any]]:
        """Return all chat documents, most recently updated first."""
        ...

    @abstractmethod
    def delete_chat(self, chat_id: str) -> None:
        ...

    @abstractmethod
    async def save_message(self, chat_id: str, record: dict[str, Any]) -> None:
        """Insert or replace the message with ``record['id']``."""
        ...


class JsonChatRepository(ChatRepository):
    """One JSON document per chat in a directory."""

    def __init__(self, chats_dir: Path) -> None:
        self._dir = chats_dir
        self._lock = asyncio.Lock()

    def _path(self, chat_id: str) -> Path:
        if not _CHAT_ID_RE.fullmatch(chat_id):
            raise ValueError(f"Invalid chat id: {chat_id!r}")
        return self._dir / f"{chat_id}.json"

    def _write(self, chat_id: str, doc: dict[str, Any]) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self._path(chat_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(doc, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)

    def create_chat(self, name: str, model_ids: list[str]) -> str:
        chat_id = uuid.uuid4().hex
        now = datetime.now(timezone.utc).isoformat()
        self._write(chat_id, {
            "id": chat_id,
            "name": name,
            "modelIds": list(model_ids),
            "createdOn": now,
            "updatedAt": now,
            "chatHistory": [],
        })
        logger.info("Created chat %s (%s)", chat_id, name)
        return chat_id

    def load_chat(self, chat_id: str) -> dict[str, Any]:
        path = self._path(chat_id)
        if not path.exists():
            raise FileNotFoundError(f"Chat not found: {chat_id}")
        return json.loads(path.read_text(encoding="utf-8"))

    def list_chats(self) -> list[dict[str, Any]]:
        if not self._dir.exists():
            return []
        chats = []
        for path in self._dir.glob("*.json"):
            try:
                doc = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable chat file %s: %s", path.name, exc)
                continue
            if not isinstance(doc, dict):
                logger.warning("Skipping chat file %s: not a chat document", path.name)
                continue
            chats.append(doc)
        return sorted(chats, key=lambda c: c.get("updatedAt", ""), reverse=True)

    def delete_chat(self, chat_id: str) -> None:
        path = self._path(chat_id)
        if not path.exists():
            raise FileNotFoundError(f"Chat not found: {chat_id}")
        path.unlink()
        logger.info("Deleted chat %s", chat_id)

    def _upsert(self, chat_id: str, record: dict[str, Any]) -> None:
        doc = self.load_chat(chat_id)
        history = [r for r in doc.get("chatHistory", []) if r.get("id") != record["id"]]
        history.append(record)
        history.sort(key=lambda r: r["id"])
        doc["chatHistory"] = history
        doc["updatedAt"] = datetime.now(timezone.utc).isoformat()
        self._write(chat_id, doc)

    async def save_message(self, chat_id: str, record: dict[str, Any]) -> None:
        async with self._lock:
            await asyncio.to_thread(self._upsert, chat_id, record)


class Transcript:
    """Ordered messages of one chat.

    At most one pending message may exist at a time.
    """

    def __init__(self, chat_id: str, repository: ChatRepository, messages: list[Message] | None = None) -> None:
        self.chat_id = chat_id
        self._repository = repository
        self._messages: list[Message] = list(messages or [])
        self._last_id = max((m.id for m in self._messages), default=0)

    @classmethod
    def load(cls, repository: ChatRepository, chat_id: str) -> "Transcript":
        doc = repository.load_chat(chat_id)
        messages = [from_record(r) for r in doc.get("chatHistory", [])]
        # A pending record can only come from an interrupted write; it is not history.
        messages = [m for m in messages if not m.is_pending]
        return cls(chat_id, repository, messages)

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def new_message_id(self) -> int:
        """Millisecond timestamp, bumped when needed so ids strictly increase."""
        candidate = time.time_ns() // 1_000_000
        self._last_id = max(candidate, self._last_id + 1)
        return self._last_id

    def get_message(self, msg_id: int) -> Message | None:
        return next((m for m in self._messages if m.id == msg_id), None)

    def pending_message(self) -> Message | None:
        return next((m for m in self._messages if m.is_pending), None)

    def append_message(self, msg: Message) -> None:
        if self.get_message(msg.id) is not None:
            raise ValueError(f"Duplicate message id: {msg.id}")
        if msg.is_pending and self.pending_message() is not None:
            raise ValueError("A pending message already exists in this transcript")
        self._messages.append(msg)
        self._last_id = max(self._last_id, msg.id)

    def update_message(self, msg_id: int, **changes: Any) -> Message:
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        msg = self.get_message(msg_id)
        if msg is None:
            raise KeyError(msg_id)
        for name, value in changes.items():
            setattr(msg, name, value)
        return msg

    def remove_message(self, msg_id: int) -> bool:
        """Local rollback. Returns False if the message was already gone."""
        before = len(self._messages)
        self._messages = [m for m in self._messages if m.id != msg_id]
        return len(self._messages) != before

    async def commit_message(self, msg: Message) -> None:
        if msg.is_pending:
            raise ValueError(f"Refusing to persist pending message {msg.id}")
        await self._repository.save_message(self.chat_id, to_record(msg))
        logger.debug("Committed message %s to chat %s", msg.id, self.chat_id)

    def conversation_turns(self) -> list[ConversationTurn]:
        """History for the next model call, without pending or error entries."""
        return [
            ConversationTurn(role="user" if m.is_user else "assistant", content=m.content)
            for m in self._messages
            if not m.is_pending and not m.is_error
        ]
