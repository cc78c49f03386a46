from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class SessionStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    WAITING_FOR_INPUT = "waiting_for_input"
    COMPLETED = "completed"
    ERROR = "error"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class QuestionType(str, Enum):
    YES_NO = "yes_no"
    MULTIPLE_CHOICE = "multiple_choice"
    FREE_TEXT = "free_text"
    CONFIRMATION = "confirmation"


def _require_text(value: str, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field} must not be empty")
    return value


class CommandContext(BaseModel):
    include_workspace: bool = False
    include_files: List[str] = Field(default_factory=list)


class StartSessionRequest(BaseModel):
    repository: str = Field(min_length=1)
    task_description: Optional[str] = None

    @field_validator("repository")
    @classmethod
    def _repository_not_blank(cls, value: str) -> str:
        return _require_text(value, "repository").strip()


class SendCommandRequest(BaseModel):
    command: str = Field(min_length=1)
    context: Optional[CommandContext] = None

    @field_validator("command")
    @classmethod
    def _command_not_blank(cls, value: str) -> str:
        return _require_text(value, "command")


class RespondToQuestionRequest(BaseModel):
    question_id: str = Field(min_length=1)
    answer: str = Field(min_length=1)

    @field_validator("answer")
    @classmethod
    def _answer_not_blank(cls, value: str) -> str:
        return _require_text(value, "answer")


class AnswerRequest(BaseModel):
    answer: str = Field(min_length=1)

    @field_validator("answer")
    @classmethod
    def _answer_not_blank(cls, value: str) -> str:
        return _require_text(value, "answer")


class Session(BaseModel):
    session_id: str
    repository: str
    task_description: Optional[str] = None
    status: SessionStatus
    created_at: str
    last_activity_at: Optional[str] = None
    current_command: Optional[str] = None


class ConversationMessage(BaseModel):
    message_id: str
    session_id: str
    role: MessageRole
    content: str
    created_at: str
    metadata: Optional[Dict[str, Any]] = None


class DetectedQuestion(BaseModel):
    """Question found in an assistant reply, before it is attached to a session."""

    model_config = ConfigDict(frozen=True)

    question: str
    question_type: QuestionType
    options: Optional[List[str]] = None


class PendingQuestion(BaseModel):
    question_id: str
    session_id: str
    question: str
    question_type: QuestionType
    options: Optional[List[str]] = None
    created_at: str
    message_id: Optional[str] = None


class SessionStatusResponse(BaseModel):
    session: Session
    pending_question: Optional[PendingQuestion] = None


class CommandAccepted(BaseModel):
    session_id: str
    command_id: str
    status: str = "accepted"
    message: str = "Command queued for processing"


class TaskResult(BaseModel):
    session_id: str
    command_id: str
    success: bool
    summary: str
    files_changed: List[str] = Field(default_factory=list)


class SessionEvent(BaseModel):
    event: str
    session_id: str
    payload: Dict[str, Any]
    timestamp: str


class HealthResponse(BaseModel):
    status: str
    active_session_count: int
    live_session_count: int
    timestamp: str
    version: str
