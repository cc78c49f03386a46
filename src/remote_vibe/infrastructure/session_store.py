from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import RLock
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple
import logging
import uuid

from ..core.errors import AlreadyBusy, InvalidSessionState, InvalidTransition, QuestionNotFound, SessionNotFound
from ..core.state_machine import allowed_transitions, command_rejection, is_valid_transition
from ..domain.session_models import (
    ConversationMessage,
    DetectedQuestion,
    MessageRole,
    PendingQuestion,
    Session,
    SessionStatus,
)


logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    def create_session(self, repository: str, task_description: Optional[str] = None) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def require_session(self, session_id: str) -> Session: ...

    def list_sessions(self) -> List[Session]: ...

    def count_sessions(self, active_only: bool = False) -> int: ...

    def delete_session(self, session_id: str) -> Session: ...

    def begin_command(self, session_id: str, command: str) -> Tuple[Session, str]: ...

    def resolve_question(self, session_id: str, question_id: str, answer: str) -> Tuple[PendingQuestion, Session, str]: ...

    def find_question_session(self, question_id: str) -> Optional[str]: ...

    def add_message(self, session_id: str, role: MessageRole, content: str, metadata: Optional[Dict[str, Any]] = None) -> ConversationMessage: ...

    def list_messages(self, session_id: str, skip: int = 0, take: Optional[int] = None) -> List[ConversationMessage]: ...

    def get_pending_question(self, session_id: str) -> Optional[PendingQuestion]: ...

    def status_snapshot(self, session_id: str) -> Tuple[Session, Optional[PendingQuestion]]: ...

    def set_pending_question(self, session_id: str, detected: DetectedQuestion, message_id: Optional[str] = None) -> Tuple[PendingQuestion, Session]: ...

    def complete_command(self, session_id: str) -> Session: ...

    def fail_command(self, session_id: str) -> Session: ...


@dataclass
class _Message:
    message_id: str
    session_id: str
    role: MessageRole
    content: str
    created_at: str
    metadata: Dict[str, Any] | None = None


@dataclass
class _Question:
    question_id: str
    session_id: str
    question: str
    question_type: str
    options: Optional[List[str]]
    created_at: str
    message_id: Optional[str] = None


@dataclass
class _SessionRecord:
    session_id: str
    repository: str
    task_description: Optional[str]
    status: SessionStatus
    created_at: str
    last_activity_at: Optional[str] = None
    current_command: Optional[str] = None
    messages: List[_Message] = field(default_factory=list)
    pending: Optional[_Question] = None
    removed: bool = False
    lock: Any = field(default_factory=RLock, repr=False)


class InMemorySessionStore:
    """Thread-safe in-memory session store.

    The map itself is guarded by one lock; each session record carries its own
    lock so mutations of one session are serialized without blocking others.
    All returned values are snapshots detached from the records.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, _SessionRecord] = {}
        self._question_index: Dict[str, str] = {}
        self._lock = RLock()

    def _now_iso(self) -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    def _session_model(self, rec: _SessionRecord) -> Session:
        return Session(
            session_id=rec.session_id,
            repository=rec.repository,
            task_description=rec.task_description,
            status=rec.status,
            created_at=rec.created_at,
            last_activity_at=rec.last_activity_at,
            current_command=rec.current_command,
        )

    def _message_model(self, message: _Message) -> ConversationMessage:
        return ConversationMessage(
            message_id=message.message_id,
            session_id=message.session_id,
            role=message.role,
            content=message.content,
            created_at=message.created_at,
            metadata=dict(message.metadata) if message.metadata else None,
        )

    def _question_model(self, question: _Question) -> PendingQuestion:
        return PendingQuestion(
            question_id=question.question_id,
            session_id=question.session_id,
            question=question.question,
            question_type=question.question_type,
            options=list(question.options) if question.options is not None else None,
            created_at=question.created_at,
            message_id=question.message_id,
        )

    def _record(self, session_id: str) -> _SessionRecord:
        with self._lock:
            rec = self._sessions.get(session_id)
        if rec is None:
            raise SessionNotFound(session_id)
        return rec

    @contextmanager
    def _locked(self, session_id: str) -> Iterator[_SessionRecord]:
        rec = self._record(session_id)
        with rec.lock:
            # The record may have been evicted between lookup and lock
            if rec.removed:
                raise SessionNotFound(session_id)
            yield rec

    def _transition(self, rec: _SessionRecord, target: SessionStatus) -> None:
        if not is_valid_transition(rec.status, target):
            raise InvalidTransition(rec.status.value, target.value, [s.value for s in allowed_transitions(rec.status)])
        logger.debug("Session %s status %s -> %s", rec.session_id, rec.status.value, target.value)
        rec.status = target
        rec.last_activity_at = self._now_iso()
        if target != SessionStatus.PROCESSING:
            rec.current_command = None

    def create_session(self, repository: str, task_description: Optional[str] = None) -> Session:
        sid = uuid.uuid4().hex
        rec = _SessionRecord(
            session_id=sid,
            repository=repository,
            task_description=task_description,
            status=SessionStatus.IDLE,
            created_at=self._now_iso(),
        )
        with self._lock:
            self._sessions[sid] = rec
        logger.info("Started session %s for repository %s", sid, repository)
        return self._session_model(rec)

    def get_session(self, session_id: str) -> Optional[Session]:
        try:
            with self._locked(session_id) as rec:
                return self._session_model(rec)
        except SessionNotFound:
            return None

    def require_session(self, session_id: str) -> Session:
        with self._locked(session_id) as rec:
            return self._session_model(rec)

    def list_sessions(self) -> List[Session]:
        with self._lock:
            records = list(self._sessions.values())
        out: List[Session] = []
        for rec in records:
            with rec.lock:
                if rec.removed:
                    continue
                out.append(self._session_model(rec))
        # Newest first
        return sorted(out, key=lambda s: s.created_at, reverse=True)

    def count_sessions(self, active_only: bool = False) -> int:
        with self._lock:
            records = list(self._sessions.values())
        if not active_only:
            return len(records)
        return sum(1 for rec in records if rec.status not in (SessionStatus.COMPLETED, SessionStatus.ERROR))

    def delete_session(self, session_id: str) -> Session:
        """Mark the session completed and evict it; returns the final snapshot."""
        with self._locked(session_id) as rec:
            self._transition(rec, SessionStatus.COMPLETED)
            if rec.pending is not None:
                with self._lock:
                    self._question_index.pop(rec.pending.question_id, None)
                rec.pending = None
            rec.removed = True
            with self._lock:
                self._sessions.pop(session_id, None)
            logger.info("Stopped and removed session %s", session_id)
            return self._session_model(rec)

    def begin_command(self, session_id: str, command: str) -> Tuple[Session, str]:
        with self._locked(session_id) as rec:
            reason = command_rejection(rec.status)
            if reason == "busy":
                raise AlreadyBusy(session_id)
            if reason:
                raise InvalidSessionState(reason, {"session_id": session_id, "status": rec.status.value})
            self._transition(rec, SessionStatus.PROCESSING)
            rec.current_command = command
            return self._session_model(rec), uuid.uuid4().hex

    def resolve_question(self, session_id: str, question_id: str, answer: str) -> Tuple[PendingQuestion, Session, str]:
        with self._locked(session_id) as rec:
            pending = rec.pending
            if pending is None or pending.question_id != question_id:
                raise QuestionNotFound(question_id, session_id)
            resolved = self._question_model(pending)
            rec.pending = None
            with self._lock:
                self._question_index.pop(question_id, None)
            self._transition(rec, SessionStatus.PROCESSING)
            rec.current_command = answer
            logger.info("Resolved question %s in session %s", question_id, session_id)
            return resolved, self._session_model(rec), uuid.uuid4().hex

    def find_question_session(self, question_id: str) -> Optional[str]:
        with self._lock:
            return self._question_index.get(question_id)

    def add_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConversationMessage:
        with self._locked(session_id) as rec:
            now = self._now_iso()
            msg = _Message(
                message_id=uuid.uuid4().hex,
                session_id=session_id,
                role=MessageRole(role),
                content=content,
                created_at=now,
                metadata=dict(metadata) if metadata else None,
            )
            rec.messages.append(msg)
            rec.last_activity_at = now
            return self._message_model(msg)

    def list_messages(self, session_id: str, skip: int = 0, take: Optional[int] = None) -> List[ConversationMessage]:
        with self._locked(session_id) as rec:
            start = max(0, skip)
            window = rec.messages[start:] if take is None else rec.messages[start:start + max(0, take)]
            return [self._message_model(m) for m in window]

    def get_pending_question(self, session_id: str) -> Optional[PendingQuestion]:
        with self._locked(session_id) as rec:
            return self._question_model(rec.pending) if rec.pending else None

    def status_snapshot(self, session_id: str) -> Tuple[Session, Optional[PendingQuestion]]:
        """Session and its pending question read under one lock, so they always agree."""
        with self._locked(session_id) as rec:
            pending = self._question_model(rec.pending) if rec.pending else None
            return self._session_model(rec), pending

    def set_pending_question(
        self,
        session_id: str,
        detected: DetectedQuestion,
        message_id: Optional[str] = None,
    ) -> Tuple[PendingQuestion, Session]:
        with self._locked(session_id) as rec:
            if rec.pending is not None:
                raise InvalidSessionState(
                    "Session already has a pending question",
                    {"session_id": session_id, "question_id": rec.pending.question_id},
                )
            self._transition(rec, SessionStatus.WAITING_FOR_INPUT)
            question = _Question(
                question_id=uuid.uuid4().hex,
                session_id=session_id,
                question=detected.question,
                question_type=detected.question_type.value,
                options=list(detected.options) if detected.options is not None else None,
                created_at=self._now_iso(),
                message_id=message_id,
            )
            rec.pending = question
            with self._lock:
                self._question_index[question.question_id] = session_id
            logger.info("Added pending %s question %s to session %s", question.question_type, question.question_id, session_id)
            return self._question_model(question), self._session_model(rec)

    def complete_command(self, session_id: str) -> Session:
        with self._locked(session_id) as rec:
            self._transition(rec, SessionStatus.IDLE)
            return self._session_model(rec)

    def fail_command(self, session_id: str) -> Session:
        with self._locked(session_id) as rec:
            self._transition(rec, SessionStatus.ERROR)
            return self._session_model(rec)
