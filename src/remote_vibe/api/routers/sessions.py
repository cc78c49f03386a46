from __future__ import annotations

import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status

from ...domain.session_models import (
    AnswerRequest,
    CommandAccepted,
    ConversationMessage,
    PendingQuestion,
    RespondToQuestionRequest,
    SendCommandRequest,
    Session,
    SessionStatusResponse,
    StartSessionRequest,
)
from ...infrastructure.session_store import SessionStore
from ...observability.metrics import ACTIVE_SESSIONS
from ...security.auth import require_token
from ...services.command_executor import CommandExecutor
from ...services.notification_bridge import NotificationBridge
from ..dependencies import get_bridge, get_executor, get_store


logger = logging.getLogger(__name__)

router = APIRouter(tags=["sessions"], dependencies=[Depends(require_token)])


@router.post("/sessions", response_model=Session, status_code=status.HTTP_201_CREATED)
async def create_session(
    req: StartSessionRequest,
    store: SessionStore = Depends(get_store),
    bridge: NotificationBridge = Depends(get_bridge),
) -> Session:
    sess = store.create_session(req.repository, req.task_description)
    ACTIVE_SESSIONS.set(store.count_sessions())
    bridge.on_status_changed(sess)
    return sess


@router.get("/sessions", response_model=List[Session])
def list_sessions(store: SessionStore = Depends(get_store)) -> List[Session]:
    return store.list_sessions()


@router.get("/sessions/{session_id}/status", response_model=SessionStatusResponse)
def get_status(session_id: str, store: SessionStore = Depends(get_store)) -> SessionStatusResponse:
    sess, pending = store.status_snapshot(session_id)
    return SessionStatusResponse(session=sess, pending_question=pending)


@router.get("/sessions/{session_id}/messages", response_model=List[ConversationMessage])
def list_messages(
    session_id: str,
    skip: int = Query(0, ge=0),
    take: Optional[int] = Query(None, ge=0, le=1000),
    store: SessionStore = Depends(get_store),
) -> List[ConversationMessage]:
    return store.list_messages(session_id, skip=skip, take=take)


@router.get("/sessions/{session_id}/questions", response_model=List[PendingQuestion])
def list_questions(session_id: str, store: SessionStore = Depends(get_store)) -> List[PendingQuestion]:
    pending = store.get_pending_question(session_id)
    return [pending] if pending else []


@router.post("/sessions/{session_id}/command", response_model=CommandAccepted, status_code=status.HTTP_202_ACCEPTED)
async def send_command(
    session_id: str,
    req: SendCommandRequest,
    executor: CommandExecutor = Depends(get_executor),
) -> CommandAccepted:
    return await executor.execute(session_id, req.command, req.context)


@router.post("/sessions/{session_id}/respond", response_model=CommandAccepted, status_code=status.HTTP_202_ACCEPTED)
async def respond_to_question(
    session_id: str,
    req: RespondToQuestionRequest,
    executor: CommandExecutor = Depends(get_executor),
) -> CommandAccepted:
    return await executor.respond(session_id, req.question_id, req.answer)


@router.post("/questions/{question_id}/respond", response_model=CommandAccepted, status_code=status.HTTP_202_ACCEPTED)
async def answer_question(
    question_id: str,
    req: AnswerRequest,
    executor: CommandExecutor = Depends(get_executor),
) -> CommandAccepted:
    return await executor.respond_to_question(question_id, req.answer)


@router.delete("/sessions/{session_id}")
async def delete_session(
    session_id: str,
    store: SessionStore = Depends(get_store),
    bridge: NotificationBridge = Depends(get_bridge),
) -> dict:
    final = store.delete_session(session_id)
    ACTIVE_SESSIONS.set(store.count_sessions())
    # Subscribers see the final completed status, then nothing more
    bridge.on_status_changed(final)
    bridge.close_session(session_id)
    return {"success": True, "session_id": session_id, "message": "Session stopped"}
