"""Turn orchestration for chat sessions.

Role:
    Owns the "current session" selection and the registry of in-flight streams, and
    drives each user turn through SessionStore and StreamIngestor. All observable
    effects go through SessionStore.update_messages followed by an immediate persist
    (write-through), so a crash mid-stream never loses the submitted user text.

Turn state machine:
    IDLE -> USER_MESSAGE_APPENDED -> PLACEHOLDER_APPENDED -> STREAMING
        -> COMPLETED | FAILED | CANCELLED

Stream ownership:
    Each stream is tied to (session_id, placeholder_id). A fragment is folded only
    while the handle is not cancelled and the placeholder still exists in the stored
    session; otherwise consumption stops and the fragment is discarded.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncGenerator, Callable, Coroutine, Dict, List, Optional

from .attachment_validator import AttachmentValidator
from .errors import SessionNotFound, StreamError, StreamErrorKind, StreamInProgress
from .models import Attachment, ChatSession, Fragment, GroundingChunk, Message, UserSettings
from .session_store import SessionStore
from .stream_ingestor import StreamIngestor
from .utils import new_id, now_ms

logger = logging.getLogger("gemini_chat.controller")

SessionListener = Callable[[ChatSession], None]

ERROR_PREFIX = "**Error**: "


class TurnState(str, Enum):
    IDLE = "idle"
    USER_MESSAGE_APPENDED = "user_message_appended"
    PLACEHOLDER_APPENDED = "placeholder_appended"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StreamHandle:
    """Ties one in-flight stream to the placeholder message it fills."""
    session_id: str
    placeholder_id: Optional[str] = None
    state: TurnState = TurnState.IDLE
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class ChatSessionController:
    """Coordinator for session selection and streamed chat turns."""

    def __init__(
        self,
        store: SessionStore,
        ingestor: StreamIngestor,
        validator: Optional[AttachmentValidator] = None,
    ) -> None:
        self._store = store
        self._ingestor = ingestor
        self._validator = validator or AttachmentValidator()
        self._current_session_id: Optional[str] = None
        self._streams: Dict[str, StreamHandle] = {}

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def current_session_id(self) -> Optional[str]:
        return self._current_session_id

    @property
    def current_session(self) -> Optional[ChatSession]:
        if self._current_session_id is None:
            return None
        return self._store.get(self._current_session_id)

    def is_configured(self) -> bool:
        return self._ingestor.is_configured()

    def bootstrap(self) -> ChatSession:
        """Purpose: Restore persisted sessions and select one to show.
        Inputs/Outputs: No inputs; returns the selected session.
        Side Effects / State: Loads the store; creates and persists a session when empty.
        Dependencies: SessionStore.load_all/create_session/persist.
        Failure Modes: Corrupt storage degrades to a fresh session (store never raises).
        If Removed: The app starts with no selectable session.
        Testing Notes: Empty slot creates one session; stored sessions select the first.
        """
        # Degraded or empty storage always yields one fresh session.
        sessions = self._store.load_all()
        if sessions:
            self._current_session_id = sessions[0].id
            return sessions[0]
        return self.create_session()

    def create_session(self) -> ChatSession:
        session = self._store.create_session()
        self._current_session_id = session.id
        self._store.persist()
        return session

    def select_session(self, session_id: str) -> ChatSession:
        # Streams keep targeting their own session id, so switching does not cancel them.
        session = self._require(session_id)
        self._current_session_id = session_id
        return session

    def delete_session(self, session_id: str) -> Optional[ChatSession]:
        """Purpose: Delete a session and keep a valid selection.
        Inputs/Outputs: Input is session_id; returns the session selected afterwards.
        Side Effects / State: Cancels its stream, mutates the store, persists.
        Dependencies: SessionStore.delete_session/create_session/persist.
        Failure Modes: Raises SessionNotFound for unknown ids.
        If Removed: Users cannot prune history from the sidebar.
        Testing Notes: Deleting the only session must leave one fresh session selected.
        """
        # Replacement policy: front of the remaining list, else a fresh session.
        self._require(session_id)
        self.cancel_stream(session_id)
        was_current = self._current_session_id == session_id
        remaining = self._store.delete_session(session_id)
        logger.info("session=%s deleted remaining=%d", session_id, len(remaining))
        if not remaining:
            return self.create_session()
        if was_current:
            self._current_session_id = remaining[0].id
        self._store.persist()
        return self.current_session

    def clear_history(self) -> ChatSession:
        for session_id in list(self._streams):
            self.cancel_stream(session_id)
        self._store.clear()
        self._store.persist()
        logger.info("history cleared")
        return self.create_session()

    def add_attachment(self, name: Optional[str], mime_type: str, payload: bytes) -> Attachment:
        """Validate and encode a file; AttachmentRejected propagates to the caller."""
        return self._validator.prepare(name, mime_type, payload)

    def is_streaming(self, session_id: str) -> bool:
        return session_id in self._streams

    def cancel_stream(self, session_id: str) -> bool:
        handle = self._streams.get(session_id)
        if handle is None:
            return False
        handle.cancel()
        logger.info("session=%s stream cancel requested", session_id)
        return True

    async def submit_turn(
        self,
        session_id: str,
        text: str,
        attachments: Optional[List[Attachment]] = None,
        settings: Optional[UserSettings] = None,
        listener: Optional[SessionListener] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Purpose: Run one user turn end to end.
        Inputs/Outputs: Inputs are target session, text, validated attachments, settings,
            an optional listener called with the session after every mutation, and an
            optional per-fragment timeout in seconds; no return value.
        Side Effects / State: Appends user + placeholder messages (and an error message on
            failure), folds fragments into the placeholder, persists after every mutation.
        Dependencies: SessionStore, StreamIngestor.
        Failure Modes: Raises SessionNotFound or StreamInProgress before any mutation;
            streaming failures never raise and become one error message instead.
        If Removed: No chat turn can be executed.
        Testing Notes: Successful turns add 2 messages, failed turns add 3.
        """
        await self.begin_turn(session_id, text, attachments, settings, listener, timeout)

    def begin_turn(
        self,
        session_id: str,
        text: str,
        attachments: Optional[List[Attachment]] = None,
        settings: Optional[UserSettings] = None,
        listener: Optional[SessionListener] = None,
        timeout: Optional[float] = None,
    ) -> Coroutine[Any, Any, None]:
        """Reserve the session's stream slot now and return the turn to await.

        The reservation happens synchronously, so a second turn for the same session
        raises StreamInProgress even before the first one has been scheduled. The
        returned awaitable must be awaited (or wrapped in a task) to release the slot.
        """
        # Guard the single-active-stream rule before touching state.
        self._require(session_id)
        if session_id in self._streams:
            raise StreamInProgress(f"A response is already streaming into session {session_id}")
        handle = StreamHandle(session_id=session_id)
        self._streams[session_id] = handle
        return self._run_turn(
            handle,
            text,
            list(attachments or []),
            settings or UserSettings(),
            listener,
            timeout,
        )

    async def _run_turn(
        self,
        handle: StreamHandle,
        text: str,
        turn_attachments: List[Attachment],
        turn_settings: UserSettings,
        listener: Optional[SessionListener],
        timeout: Optional[float],
    ) -> None:
        session_id = handle.session_id
        try:
            session = self._store.get(session_id)
            if handle.cancelled or session is None:
                # Deleted or cleared between reservation and start.
                handle.state = TurnState.CANCELLED
                logger.info("session=%s turn abandoned before start", session_id)
                return
            history = list(session.messages)
            logger.info("session=%s turn start model=%s", session_id, turn_settings.model)
            user_message = Message(
                id=new_id(),
                role="user",
                text=text,
                timestamp=now_ms(),
                attachments=turn_attachments or None,
            )
            self._commit(session_id, history + [user_message], listener)
            handle.state = TurnState.USER_MESSAGE_APPENDED

            placeholder = Message(id=new_id(), role="model", text="", timestamp=now_ms())
            handle.placeholder_id = placeholder.id
            self._commit(session_id, history + [user_message, placeholder], listener)
            handle.state = TurnState.PLACEHOLDER_APPENDED

            fragments = self._ingestor.stream(history, text, turn_attachments, turn_settings)
            await self._consume(handle, fragments, listener, timeout)
        finally:
            if self._streams.get(session_id) is handle:
                del self._streams[session_id]
        logger.info("session=%s turn end state=%s", session_id, handle.state.value)

    async def _consume(
        self,
        handle: StreamHandle,
        fragments: AsyncGenerator[Fragment, None],
        listener: Optional[SessionListener],
        timeout: Optional[float],
    ) -> None:
        # Fold strictly in emission order: one fragment pulled, folded, persisted at a time.
        text = ""
        sources: List[GroundingChunk] = []
        handle.state = TurnState.STREAMING
        try:
            while True:
                try:
                    if timeout is None:
                        fragment = await fragments.__anext__()
                    else:
                        fragment = await asyncio.wait_for(fragments.__anext__(), timeout)
                except StopAsyncIteration:
                    break
                if not self._is_live(handle):
                    handle.state = TurnState.CANCELLED
                    logger.info("session=%s stream abandoned, discarding output", handle.session_id)
                    return
                text += fragment.text_delta
                if fragment.grounding_chunks_delta:
                    sources.extend(fragment.grounding_chunks_delta)
                self._fold(handle, text, sources, listener)
        except StreamError as exc:
            self._fail(handle, exc, listener)
            return
        except asyncio.TimeoutError:
            self._fail(handle, StreamError(StreamErrorKind.TIMEOUT), listener)
            return
        finally:
            await fragments.aclose()
        handle.state = TurnState.COMPLETED

    def _fold(
        self,
        handle: StreamHandle,
        text: str,
        sources: List[GroundingChunk],
        listener: Optional[SessionListener],
    ) -> None:
        session = self._store.get(handle.session_id)
        if session is None:
            return
        messages = [
            message.model_copy(update={"text": text, "grounding_sources": list(sources) or None})
            if message.id == handle.placeholder_id
            else message
            for message in session.messages
        ]
        self._commit(handle.session_id, messages, listener)

    def _fail(self, handle: StreamHandle, error: StreamError, listener: Optional[SessionListener]) -> None:
        # The placeholder keeps its partial text; the failure gets its own message.
        if not self._is_live(handle):
            handle.state = TurnState.CANCELLED
            logger.info("session=%s stream failed after abandonment kind=%s", handle.session_id, error.kind.value)
            return
        session = self._store.get(handle.session_id)
        error_message = Message(
            id=new_id(),
            role="model",
            text=ERROR_PREFIX + error.human_message(),
            timestamp=now_ms(),
            is_error=True,
        )
        self._commit(handle.session_id, session.messages + [error_message], listener)
        handle.state = TurnState.FAILED
        logger.warning("session=%s turn failed kind=%s", handle.session_id, error.kind.value)

    def _is_live(self, handle: StreamHandle) -> bool:
        if handle.cancelled:
            return False
        session = self._store.get(handle.session_id)
        if session is None:
            return False
        return any(message.id == handle.placeholder_id for message in session.messages)

    def _commit(self, session_id: str, messages: List[Message], listener: Optional[SessionListener]) -> None:
        self._store.update_messages(session_id, messages)
        self._store.persist()
        if listener is not None:
            session = self._store.get(session_id)
            if session is not None:
                listener(session)

    def _require(self, session_id: str) -> ChatSession:
        session = self._store.get(session_id)
        if session is None:
            raise SessionNotFound(f"Unknown session: {session_id}")
        return session
