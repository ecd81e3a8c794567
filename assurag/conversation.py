"""Conversation sessions, history and chat prompt composition."""

from __future__ import annotations

import asyncio
import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from .config import config
from .models import Prompt, Role, Session, Turn

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from .context import ContextBlock

logger = config.get_logger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful assistant for a bank's life and health assurance "
    "products. You answer questions based on the provided document context "
    "and conversation history.\n\n"
    "Use the following guidelines:\n"
    "1. Base your answer only on the provided document sections\n"
    "2. Consider the conversation history to maintain context continuity\n"
    "3. If the answer is not in the documents, say so plainly and do not guess\n"
    "4. Quote figures (ages, terms, amounts, durations) exactly as written\n"
    "5. Refer to sources by their bracketed citation, e.g. [guide.pdf#3]"
)

NO_CONTEXT_SIGNAL = "NO RELEVANT CONTEXT FOUND"

NO_CONTEXT_INSTRUCTIONS = (
    f"=== {NO_CONTEXT_SIGNAL} ===\n"
    "No section of the product documents is relevant to this question. Tell the "
    "user you cannot answer it from the available documents."
)

REWRITE_PROMPT = (
    "Given the following conversation history and a follow-up question, "
    "rewrite the follow-up question as a standalone question that can be "
    "understood without the conversation context.\n\n"
    "Conversation History:\n{history}\n\n"
    "Follow-up Question: {question}\n\n"
    "Standalone Question:"
)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.UTC)


class SessionState(StrEnum):
    """Lifecycle of a session, derived from its last activity."""

    ACTIVE = "active"
    IDLE = "idle"
    EXPIRED = "expired"


class HistoryCondenser(Protocol):
    """Summarizes turns that fall outside the history window into one turn."""

    def condense(self, turns: Sequence[Turn]) -> Turn: ...


class ConversationManager:
    """Keeps per-session dialogue history in memory.

    A session is Active until ``idle_timeout`` passes without a turn, then
    Idle; a new turn makes it Active again. Once ``expiry_timeout`` passes it
    is Expired and discarded, and the next reference starts a fresh session.

    The two timeouts are separate so an Idle session can resume with its
    history. Passing the same value for both makes any session idle past
    ``idle_timeout`` expire at once.
    """

    def __init__(
        self,
        idle_timeout: float | None = None,
        expiry_timeout: float | None = None,
        *,
        clock: Callable[[], datetime.datetime] | None = None,
        condenser: HistoryCondenser | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            idle_timeout: Seconds of inactivity before a session is Idle.
            expiry_timeout: Seconds of inactivity before a session expires.
            clock: Returns the current aware datetime; injectable for tests.
            condenser: Optional summarizer for turns beyond the window.

        Raises:
            ValueError: If the expiry timeout is shorter than the idle timeout.
        """
        idle = config.SESSION_IDLE_TIMEOUT if idle_timeout is None else idle_timeout
        expiry = (
            config.SESSION_EXPIRY_TIMEOUT if expiry_timeout is None else expiry_timeout
        )
        if expiry < idle:
            msg = "expiry_timeout must not be shorter than idle_timeout"
            raise ValueError(msg)
        self.idle_timeout = datetime.timedelta(seconds=idle)
        self.expiry_timeout = datetime.timedelta(seconds=expiry)
        self._clock = clock or _utcnow
        self.condenser = condenser
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def _state_at(self, session: Session, now: datetime.datetime) -> SessionState:
        inactive = now - session.last_active
        if inactive > self.expiry_timeout:
            return SessionState.EXPIRED
        if inactive > self.idle_timeout:
            return SessionState.IDLE
        return SessionState.ACTIVE

    def _discard(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]
        return session is not None

    def _live_session(
        self, session_id: str, now: datetime.datetime
    ) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._state_at(session, now) is SessionState.EXPIRED:
            self._discard(session_id)
            logger.info("Session %s expired; history discarded", session_id)
            return None
        return session

    def state(self, session_id: str) -> SessionState | None:
        """Current state of a session, or None if it was never started."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return self._state_at(session, self._clock())

    def lock(self, session_id: str) -> asyncio.Lock:
        """Lock serializing requests within one session."""
        return self._locks.setdefault(session_id, asyncio.Lock())

    def append_turn(self, session_id: str, role: Role | str, text: str) -> Turn:
        """Append a turn, starting a fresh session if needed.

        Returns:
            The stored turn.
        """
        now = self._clock()
        session = self._live_session(session_id, now)
        if session is None:
            session = Session(session_id=session_id, created_at=now, last_active=now)
            self._sessions[session_id] = session
            logger.info("Started session %s", session_id)
        turn = Turn(role=Role(role), text=text, timestamp=now)
        session.turns.append(turn)
        session.last_active = now
        return turn

    def history(self, session_id: str, max_turns: int | None = None) -> list[Turn]:
        """Return the most recent turns, oldest first.

        With a condenser, turns beyond the window are summarized into one
        leading turn that counts towards ``max_turns``.
        """
        max_turns = config.HISTORY_MAX_TURNS if max_turns is None else max_turns
        session = self._live_session(session_id, self._clock())
        if session is None or max_turns <= 0:
            return []

        turns = session.turns
        if len(turns) <= max_turns:
            return list(turns)
        if self.condenser is None:
            return turns[-max_turns:]
        keep = max_turns - 1
        recent = turns[-keep:] if keep else []
        return [self.condenser.condense(turns[: len(turns) - keep]), *recent]

    def clear(self, session_id: str) -> None:
        """Forget a session's history."""
        if self._discard(session_id):
            logger.info("Conversation history cleared for session %s", session_id)

    def purge_expired(self) -> int:
        """Discard every expired session.

        Returns:
            Number of sessions removed.
        """
        now = self._clock()
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if self._state_at(session, now) is SessionState.EXPIRED
        ]
        for session_id in expired:
            self._discard(session_id)
        if expired:
            logger.info("Purged %d expired sessions", len(expired))
        return len(expired)


class PromptBuilder:
    """Composes chat messages from history, context and the question."""

    def __init__(self, system_prompt: str = SYSTEM_PROMPT) -> None:
        self.system_prompt = system_prompt

    def build(
        self, question: str, context: ContextBlock, history: Sequence[Turn] = ()
    ) -> Prompt:
        """Build the answer prompt.

        Returns:
            Prompt whose final user message holds the context, or the explicit
            no-context signal, followed by the question.
        """
        messages = [{"role": "system", "content": self.system_prompt}]
        messages.extend(
            {"role": turn.role.value, "content": turn.text} for turn in history
        )
        if context.is_empty:
            context_text = NO_CONTEXT_INSTRUCTIONS
        else:
            context_text = f"=== Relevant Document Sections ===\n{context.render()}"
        messages.append(
            {
                "role": "user",
                "content": f"{context_text}\n\nCurrent Question: {question}",
            }
        )
        return Prompt(messages=tuple(messages), has_context=not context.is_empty)

    @staticmethod
    def build_rewrite(question: str, history: Sequence[Turn]) -> Prompt:
        """Build the prompt that turns a follow-up into a standalone question.

        Returns:
            Single-message prompt for the completion endpoint.
        """
        lines = []
        for turn in history:
            speaker = "Human" if turn.role is Role.USER else "Assistant"
            lines.append(f"{speaker}: {turn.text}")
        content = REWRITE_PROMPT.format(history="\n".join(lines), question=question)
        return Prompt(messages=({"role": "user", "content": content},))
