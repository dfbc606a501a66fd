"""
ACTIONGATE Session Manager

Issues and resolves conversation ids and owns the append-only message
history of each (submission, section) thread. No other component writes
to a conversation's message list.

Two stores ship with it:
  - InMemoryMessageStore   process-local, for tests and the CLI
  - JsonlMessageStore      one append-only JSONL file per conversation
"""

from __future__ import annotations

import asyncio
import json
import re
import uuid
from pathlib import Path
from typing import Protocol

from loguru import logger

from actiongate.state import ChatMessage, ConversationSession, Section

_CONVERSATION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


class UnknownConversationError(KeyError):
    pass


def _check_conversation_id(conversation_id: str) -> str:
    if not _CONVERSATION_ID_RE.match(conversation_id):
        raise ValueError(f"Invalid conversation id: {conversation_id!r}")
    return conversation_id


class MessageStore(Protocol):
    async def new_conversation_id(self, submission_id: str, section: Section) -> str: ...

    async def ensure_session(self, conversation_id: str, submission_id: str, section: Section) -> None: ...

    async def get_session(self, conversation_id: str) -> ConversationSession | None: ...

    async def append(self, conversation_id: str, message: ChatMessage) -> None: ...

    async def append_many(self, conversation_id: str, messages: list[ChatMessage]) -> None: ...

    async def list(self, conversation_id: str) -> list[ChatMessage]: ...


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class InMemoryMessageStore:
    def __init__(self):
        self._sessions: dict[str, ConversationSession] = {}

    async def new_conversation_id(self, submission_id: str, section: Section) -> str:
        conversation_id = uuid.uuid4().hex
        self._sessions[conversation_id] = ConversationSession(
            id=conversation_id, submission_id=submission_id, section=section
        )
        return conversation_id

    async def ensure_session(self, conversation_id: str, submission_id: str, section: Section) -> None:
        if conversation_id not in self._sessions:
            self._sessions[conversation_id] = ConversationSession(
                id=conversation_id, submission_id=submission_id, section=section
            )

    async def get_session(self, conversation_id: str) -> ConversationSession | None:
        return self._sessions.get(conversation_id)

    async def append(self, conversation_id: str, message: ChatMessage) -> None:
        session = self._sessions.get(conversation_id)
        if session is None:
            raise UnknownConversationError(conversation_id)
        session.messages.append(message)

    async def append_many(self, conversation_id: str, messages: list[ChatMessage]) -> None:
        session = self._sessions.get(conversation_id)
        if session is None:
            raise UnknownConversationError(conversation_id)
        session.messages.extend(messages)

    async def list(self, conversation_id: str) -> list[ChatMessage]:
        session = self._sessions.get(conversation_id)
        return list(session.messages) if session else []


class JsonlMessageStore:
    """
    File-backed store.

    Layout under `directory`:
      sessions.jsonl        one line per session header
      <conversation>.jsonl  one line per message, in arrival order
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._index_path = self.directory / "sessions.jsonl"
        self._lock = asyncio.Lock()

    def _messages_path(self, conversation_id: str) -> Path:
        return self.directory / f"{_check_conversation_id(conversation_id)}.jsonl"

    def _read_index(self) -> dict[str, ConversationSession]:
        sessions: dict[str, ConversationSession] = {}
        if not self._index_path.exists():
            return sessions
        with open(self._index_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                session = ConversationSession.model_validate_json(line)
                sessions[session.id] = session
        return sessions

    def _write_header(self, session: ConversationSession) -> None:
        header = session.model_dump(mode="json", exclude={"messages"})
        with open(self._index_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(header) + "\n")

    async def new_conversation_id(self, submission_id: str, section: Section) -> str:
        conversation_id = uuid.uuid4().hex
        await self.ensure_session(conversation_id, submission_id, section)
        return conversation_id

    async def ensure_session(self, conversation_id: str, submission_id: str, section: Section) -> None:
        _check_conversation_id(conversation_id)
        async with self._lock:
            if conversation_id in await asyncio.to_thread(self._read_index):
                return
            session = ConversationSession(id=conversation_id, submission_id=submission_id, section=section)
            await asyncio.to_thread(self._write_header, session)

    async def get_session(self, conversation_id: str) -> ConversationSession | None:
        session = (await asyncio.to_thread(self._read_index)).get(conversation_id)
        if session is None:
            return None
        return session.model_copy(update={"messages": await self.list(conversation_id)})

    async def append(self, conversation_id: str, message: ChatMessage) -> None:
        await self.append_many(conversation_id, [message])

    async def append_many(self, conversation_id: str, messages: list[ChatMessage]) -> None:
        """Append all messages in a single locked write."""
        path = self._messages_path(conversation_id)
        lines = "".join(m.model_dump_json(by_alias=True) + "\n" for m in messages)

        def _write() -> None:
            with open(path, "a", encoding="utf-8") as f:
                f.write(lines)

        async with self._lock:
            if conversation_id not in await asyncio.to_thread(self._read_index):
                raise UnknownConversationError(conversation_id)
            await asyncio.to_thread(_write)

    async def list(self, conversation_id: str) -> list[ChatMessage]:
        path = self._messages_path(conversation_id)

        def _read() -> list[ChatMessage]:
            if not path.exists():
                return []
            with open(path, "r", encoding="utf-8") as f:
                return [ChatMessage.model_validate_json(line) for line in f if line.strip()]

        return await asyncio.to_thread(_read)


def build_store(backend: str, directory: str | Path) -> MessageStore:
    if backend == "jsonl":
        return JsonlMessageStore(Path(directory))
    return InMemoryMessageStore()


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class SessionManager:
    def __init__(self, store: MessageStore, greeting: str = ""):
        self.store = store
        self.greeting = greeting

    async def resolve_session(
        self,
        submission_id: str,
        section: Section,
        conversation_id: str | None = None,
    ) -> str:
        """Return the conversation id for this turn, creating the session if needed.

        An explicit id is adopted as-is, so resolving it twice is a no-op.
        An id that already belongs to another (submission, section) is not
        reused: a fresh session is created instead. Without an id a fresh
        session is created and its id must be kept by the caller for later turns.
        """
        if conversation_id:
            existing = await self.store.get_session(_check_conversation_id(conversation_id))
            if existing is None:
                await self.store.ensure_session(conversation_id, submission_id, section)
                return conversation_id
            if existing.submission_id == submission_id and existing.section == section:
                return conversation_id
            logger.warning(
                f"[SESSION] Conversation {conversation_id} belongs to "
                f"{existing.submission_id}/{existing.section.value}, not {submission_id}/{section.value}"
            )

        new_id = await self.store.new_conversation_id(submission_id, section)
        logger.info(f"[SESSION] New conversation {new_id} for {submission_id}/{section.value}")
        return new_id

    async def start_new_conversation(self, submission_id: str, section: Section) -> str:
        """Discard the current thread. Nothing is carried over."""
        return await self.resolve_session(submission_id, section, None)

    async def append_message(self, conversation_id: str, message: ChatMessage) -> None:
        if message.conversation_id != conversation_id:
            raise ValueError(
                f"Message belongs to {message.conversation_id}, not {conversation_id}"
            )
        await self.store.append(conversation_id, message)

    async def append_turn(self, conversation_id: str, messages: list[ChatMessage]) -> None:
        """Store a user message and its reply together, or neither."""
        for message in messages:
            if message.conversation_id != conversation_id:
                raise ValueError(
                    f"Message belongs to {message.conversation_id}, not {conversation_id}"
                )
        await self.store.append_many(conversation_id, messages)

    async def load_history(self, conversation_id: str, newest_first: bool = False) -> list[ChatMessage]:
        """Oldest-first for prompting; `newest_first=True` for display."""
        messages = sorted(await self.store.list(conversation_id), key=lambda m: m.timestamp)
        if newest_first:
            messages.reverse()
        return messages

    async def open_session(
        self,
        submission_id: str,
        section: Section,
        conversation_id: str | None = None,
    ) -> tuple[str, list[ChatMessage]]:
        """Open a chat surface: resolve the thread and return its display history.

        An empty thread shows the greeting, which is not stored.
        """
        resolved = await self.resolve_session(submission_id, section, conversation_id)
        history = await self.load_history(resolved, newest_first=True)
        if not history and self.greeting:
            history = [ChatMessage(role="assistant", content=self.greeting, conversation_id=resolved)]
        return resolved, history
