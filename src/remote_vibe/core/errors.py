from __future__ import annotations

"""Error taxonomy shared by the session pipeline and the HTTP layer.

Every error carries a stable ``code`` (returned to clients) and the HTTP
status the API layer maps it to. Collaborator failures never reach a client
synchronously; they are recorded on the session instead.
"""

from typing import Any, Dict, List, Optional


class RemoteVibeError(Exception):
    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(RemoteVibeError):
    code = "validation_error"
    status_code = 400


class NotFound(RemoteVibeError):
    code = "not_found"
    status_code = 404


class SessionNotFound(NotFound):
    def __init__(self, session_id: str) -> None:
        super().__init__("Session not found", {"session_id": session_id})
        self.session_id = session_id


class QuestionNotFound(NotFound):
    def __init__(self, question_id: str, session_id: Optional[str] = None) -> None:
        details: Dict[str, Any] = {"question_id": question_id}
        if session_id:
            details["session_id"] = session_id
        super().__init__("Question not found", details)
        self.question_id = question_id


class AlreadyBusy(RemoteVibeError):
    code = "already_busy"
    status_code = 409

    def __init__(self, session_id: str) -> None:
        super().__init__("Session is already processing a command", {"session_id": session_id})
        self.session_id = session_id


class InvalidSessionState(RemoteVibeError):
    code = "invalid_session_state"
    status_code = 409


class InvalidTransition(RemoteVibeError):
    code = "invalid_transition"
    status_code = 500

    def __init__(self, current: str, target: str, allowed: Optional[List[str]] = None) -> None:
        super().__init__(
            f"Invalid session transition {current} -> {target}",
            {"from": current, "to": target, "allowed": list(allowed or [])},
        )
        self.current = current
        self.target = target


class CollaboratorFailure(RemoteVibeError):
    code = "collaborator_failure"
    status_code = 502


class ModelCallFailed(CollaboratorFailure):
    pass


class ContextRetrievalFailed(CollaboratorFailure):
    pass


class Unauthorized(RemoteVibeError):
    code = "unauthorized"
    status_code = 401
