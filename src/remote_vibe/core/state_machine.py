from __future__ import annotations

from typing import Dict, List, Optional

from ..domain.session_models import SessionStatus

# Session status transitions. ``completed`` is reached only by stopping a
# session and has no way out.
SESSION_TRANSITIONS: Dict[SessionStatus, List[SessionStatus]] = {
    SessionStatus.IDLE: [SessionStatus.PROCESSING, SessionStatus.COMPLETED],
    SessionStatus.PROCESSING: [
        SessionStatus.IDLE,
        SessionStatus.WAITING_FOR_INPUT,
        SessionStatus.ERROR,
        SessionStatus.COMPLETED,
    ],
    SessionStatus.WAITING_FOR_INPUT: [SessionStatus.PROCESSING, SessionStatus.COMPLETED],
    SessionStatus.ERROR: [SessionStatus.PROCESSING, SessionStatus.COMPLETED],
    SessionStatus.COMPLETED: [],
}

# Statuses from which a new command may be accepted.
COMMAND_READY: frozenset = frozenset({SessionStatus.IDLE, SessionStatus.ERROR})


def allowed_transitions(current: SessionStatus) -> List[SessionStatus]:
    return list(SESSION_TRANSITIONS.get(current, []))


def is_valid_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in SESSION_TRANSITIONS.get(current, [])


def command_rejection(status: SessionStatus) -> Optional[str]:
    """Return why a command cannot start from ``status``, or None if it can."""
    if status in COMMAND_READY:
        return None
    if status == SessionStatus.PROCESSING:
        return "busy"
    if status == SessionStatus.WAITING_FOR_INPUT:
        return "Session is waiting for an answer to its pending question"
    return "Session has been completed"
