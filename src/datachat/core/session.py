"""In-memory chat sessions keyed by user identity."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable

from datachat.core.types import Role
from datachat.log import get_logger

if TYPE_CHECKING:
    from datachat.ai.tools.base import ToolCall

logger = get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: Role
    content: str
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None  # only on tool-role messages
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ChatSession:
    """Append-only conversation log for one user."""

    user_id: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)
    _messages: list[ChatMessage] = field(default_factory=list, repr=False)
    clock: Callable[[], datetime] = field(default=utcnow, repr=False, compare=False)

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return tuple(self._messages)

    def append(self, message: ChatMessage) -> None:
        self._messages.append(message)
        self.last_activity_at = message.timestamp

    def add_message(
        self,
        role: Role,
        content: str,
        tool_calls: list[ToolCall] | None = None,
        tool_call_id: str | None = None,
    ) -> ChatMessage:
        message = ChatMessage(
            role=role,
            content=content,
            tool_calls=tuple(tool_calls or ()),
            tool_call_id=tool_call_id,
            timestamp=self.clock(),
        )
        self.append(message)
        return message

    def recent_turns(self, window: int) -> list[ChatMessage]:
        """Return the last *window* conversational turns, oldest first.

        Tool-role messages and tool-call-only assistant messages are skipped:
        they cannot be replayed to a provider without their matching pair.
        """
        if window <= 0:
            return []
        turns = [
            m
            for m in self._messages
            if m.role == Role.USER or (m.role == Role.ASSISTANT and m.content and not m.tool_calls)
        ]
        return turns[-window:]


class SessionStore:
    """Maps a user id to its single ChatSession."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._sessions: dict[str, ChatSession] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get_or_create(self, user_id: str) -> ChatSession:
        with self._lock:
            session = self._sessions.get(user_id)
            if session is not None:
                return session
            now = self._clock()
            session = ChatSession(user_id=user_id, created_at=now, last_activity_at=now, clock=self._clock)
            self._sessions[user_id] = session
        logger.info("session_created", user_id=user_id, session_id=session.session_id)
        return session

    def clear(self, user_id: str) -> bool:
        """Drop the user's session. Returns True if one existed."""
        with self._lock:
            removed = self._sessions.pop(user_id, None)
        if removed is not None:
            logger.info("session_cleared", user_id=user_id, session_id=removed.session_id)
        return removed is not None

    def sweep_idle(self, max_idle: timedelta) -> int:
        """Remove sessions idle for longer than *max_idle*. Returns the count removed."""
        cutoff = self._clock() - max_idle
        with self._lock:
            expired = [uid for uid, s in self._sessions.items() if s.last_activity_at < cutoff]
            for uid in expired:
                del self._sessions[uid]
        if expired:
            logger.info("sessions_expired", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
