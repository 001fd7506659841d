from __future__ import annotations

import json
import logging
from typing import List, Optional

from pydantic import TypeAdapter, ValidationError

from .errors import PersistenceError
from .models import DEFAULT_TITLE, ChatSession, Message
from .storage import KeyValueSlot
from .utils import derive_title, first_user_message, new_id, now_ms

logger = logging.getLogger("gemini_chat.store")

DEFAULT_SESSIONS_KEY = "gemini_chat_sessions"

_SESSION_LIST = TypeAdapter(List[ChatSession])


class SessionStore:
    """Ordered (most-recent-first) collection of chat sessions backed by a durable slot."""

    def __init__(self, slot: KeyValueSlot, key: str = DEFAULT_SESSIONS_KEY) -> None:
        """Purpose: Initialize the store around a durable slot.
        Inputs/Outputs: Inputs are the slot and the key holding the session blob; no return.
        Side Effects / State: Starts with an empty in-memory collection; call load_all to hydrate.
        Dependencies: KeyValueSlot implementations from storage.
        Failure Modes: None at construction time.
        If Removed: Sessions cannot be created, updated, or persisted.
        Testing Notes: A fresh store over an empty slot loads no sessions.
        """
        self._slot = slot
        self._key = key
        self._sessions: List[ChatSession] = []

    @property
    def sessions(self) -> List[ChatSession]:
        return list(self._sessions)

    def get(self, session_id: str) -> Optional[ChatSession]:
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    def load_all(self) -> List[ChatSession]:
        """Purpose: Deserialize persisted sessions into memory.
        Inputs/Outputs: No inputs; returns the ordered list of sessions.
        Side Effects / State: Replaces the in-memory collection.
        Dependencies: Uses the slot, json.loads and pydantic validation.
        Failure Modes: Read, JSON, or schema errors are logged and yield an empty list.
        If Removed: Previously stored sessions are never restored on startup.
        Testing Notes: Corrupt JSON should not raise; valid JSON should round-trip.
        """
        # Missing key is the canonical empty state; anything unreadable degrades to empty.
        try:
            raw = self._slot.get(self._key)
        except PersistenceError:
            logger.exception("Failed to read sessions from slot key=%s", self._key)
            self._sessions = []
            return []
        if raw is None:
            self._sessions = []
            return []
        try:
            sessions = _SESSION_LIST.validate_python(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Failed to load sessions key=%s: %s", self._key, exc)
            self._sessions = []
            return []
        self._sessions = sessions
        logger.debug("Loaded %d sessions", len(sessions))
        return list(sessions)

    def persist(self, sessions: Optional[List[ChatSession]] = None) -> None:
        """Purpose: Write the full session collection to the durable slot.
        Inputs/Outputs: Optional explicit collection (defaults to in-memory); no return.
        Side Effects / State: Writes or deletes the slot key.
        Dependencies: Uses pydantic JSON serialization and the slot.
        Failure Modes: Slot failures are logged and swallowed; memory is left untouched.
        If Removed: Mutations are lost on restart.
        Testing Notes: persist([]) must delete the key rather than store "[]".
        """
        # Empty collections are represented by absence of the key.
        target = self._sessions if sessions is None else sessions
        try:
            if not target:
                self._slot.delete(self._key)
                return
            payload = _SESSION_LIST.dump_json(target).decode("utf-8")
            self._slot.set(self._key, payload)
        except PersistenceError:
            logger.exception("Failed to persist %d sessions", len(target))

    def create_session(self) -> ChatSession:
        """Create an empty session and insert it at the front."""
        timestamp = now_ms()
        session = ChatSession(
            id=new_id(),
            title=DEFAULT_TITLE,
            messages=[],
            created_at=timestamp,
            updated_at=timestamp,
        )
        self._sessions.insert(0, session)
        logger.info("session=%s created", session.id)
        return session

    def delete_session(self, session_id: str) -> List[ChatSession]:
        # Replacement selection for the active session is the controller's job.
        self._sessions = [session for session in self._sessions if session.id != session_id]
        return list(self._sessions)

    def clear(self) -> None:
        self._sessions = []

    def update_messages(self, session_id: str, messages: List[Message]) -> List[ChatSession]:
        """Purpose: Replace the message list of a session and refresh derived fields.
        Inputs/Outputs: Inputs are session_id and the full message list; returns the collection.
        Side Effects / State: Swaps in an updated ChatSession; does not persist.
        Dependencies: Uses derive_title and now_ms.
        Failure Modes: Unknown session ids leave the collection unchanged.
        If Removed: Turns and streamed fragments never reach session state.
        Testing Notes: Title derives only on the empty-to-non-empty transition.
        """
        # Derive the title once, and only while the default title is still in place.
        updated: List[ChatSession] = []
        for session in self._sessions:
            if session.id != session_id:
                updated.append(session)
                continue
            title = session.title
            if not session.messages and messages and title == DEFAULT_TITLE:
                first = first_user_message(messages)
                if first is not None:
                    title = derive_title(first.text)
            updated.append(
                session.model_copy(
                    update={
                        "messages": list(messages),
                        "title": title,
                        "updated_at": max(session.updated_at, now_ms()),
                    }
                )
            )
        self._sessions = updated
        return list(updated)
