from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Set

from ..core.errors import QuestionNotFound, RemoteVibeError, SessionNotFound, ValidationError
from ..domain.session_models import (
    CommandAccepted,
    CommandContext,
    DetectedQuestion,
    MessageRole,
    TaskResult,
)
from ..infrastructure.session_store import SessionStore
from ..observability.metrics import COMMANDS_TOTAL, MODEL_LATENCY, QUESTIONS_DETECTED
from .context_builder import WorkspaceContextBuilder
from .model_client import ModelClient
from .notification_bridge import NotificationBridge
from .question_detector import QuestionDetector
from .streaming import collect_text


logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful AI assistant working in a developer's repository.\n"
    "Your task is to help users with coding tasks, answer questions, and make code changes when requested.\n"
    "When you need additional information from the user, end your reply with one clear question.\n"
)


def summarize_reply(text: str, limit: int = 200) -> str:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped:
            return stripped if len(stripped) <= limit else stripped[: limit - 1] + "…"
    return ""


class CommandExecutor:
    """Runs commands and answers through the model, one at a time per session.

    ``execute`` and ``respond`` validate and record synchronously, then return
    an acknowledgment while the model call continues in a background task.
    Background failures never propagate to the caller; they surface as an
    ``error`` status, a system message, and push events.
    """

    def __init__(
        self,
        store: SessionStore,
        bridge: NotificationBridge,
        model_client: ModelClient,
        context_builder: Optional[WorkspaceContextBuilder] = None,
        detector: Optional[Callable[[str], Optional[DetectedQuestion]]] = None,
        model_timeout: float = 120.0,
        history_limit: int = 40,
    ) -> None:
        self._store = store
        self._bridge = bridge
        self._model = model_client
        self._context_builder = context_builder or WorkspaceContextBuilder()
        self._detector = detector or QuestionDetector()
        self._model_timeout = model_timeout
        self._history_limit = history_limit
        self._tasks: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def execute(self, session_id: str, command: str, context: Optional[CommandContext] = None) -> CommandAccepted:
        if not command or not command.strip():
            raise ValidationError("Command is required", {"session_id": session_id})
        try:
            session, command_id = self._store.begin_command(session_id, command)
        except RemoteVibeError as exc:
            COMMANDS_TOTAL.labels(outcome=f"rejected_{exc.code}").inc()
            raise
        self._bridge.on_status_changed(session)
        message = self._store.add_message(session_id, MessageRole.USER, command, {"command_id": command_id})
        self._bridge.on_message_added(message)
        COMMANDS_TOTAL.labels(outcome="accepted").inc()
        logger.info("Command %s accepted for session %s", command_id, session_id)
        self._spawn(session_id, command_id, context)
        return CommandAccepted(session_id=session_id, command_id=command_id)

    async def respond(self, session_id: str, question_id: str, answer: str) -> CommandAccepted:
        if not answer or not answer.strip():
            raise ValidationError("Answer is required", {"question_id": question_id})
        _question, session, command_id = self._store.resolve_question(session_id, question_id, answer)
        self._bridge.on_status_changed(session)
        message = self._store.add_message(
            session_id,
            MessageRole.USER,
            answer,
            {"command_id": command_id, "question_id": question_id},
        )
        self._bridge.on_message_added(message)
        COMMANDS_TOTAL.labels(outcome="answered").inc()
        logger.info("Answer to question %s accepted for session %s", question_id, session_id)
        self._spawn(session_id, command_id, None)
        return CommandAccepted(session_id=session_id, command_id=command_id, message="Answer queued for processing")

    async def respond_to_question(self, question_id: str, answer: str) -> CommandAccepted:
        session_id = self._store.find_question_session(question_id)
        if session_id is None:
            raise QuestionNotFound(question_id)
        return await self.respond(session_id, question_id, answer)

    async def drain(self) -> None:
        """Wait until every background continuation has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()

    # ------------------------------------------------------------------
    # Background continuation
    # ------------------------------------------------------------------
    def _spawn(self, session_id: str, command_id: str, context: Optional[CommandContext]) -> None:
        task = asyncio.get_running_loop().create_task(
            self._run(session_id, command_id, context),
            name=f"command-{command_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _model_messages(self, session_id: str, context_text: str) -> List[Dict[str, str]]:
        history = [
            m for m in self._store.list_messages(session_id)
            if m.role in (MessageRole.USER, MessageRole.ASSISTANT)
        ][-self._history_limit:]
        messages = [{"role": "system", "content": SYSTEM_PROMPT + context_text}]
        messages.extend({"role": m.role.value, "content": m.content} for m in history)
        return messages

    async def _invoke_model(self, session_id: str, context: Optional[CommandContext]) -> str:
        session = self._store.require_session(session_id)
        context_text = await self._context_builder.build_context(session.repository, context)
        messages = self._model_messages(session_id, context_text)
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(collect_text(self._model.stream_reply(messages)), timeout=self._model_timeout)
        except asyncio.TimeoutError as exc:
            raise TimeoutError(f"Language model call timed out after {self._model_timeout:g}s") from exc
        finally:
            MODEL_LATENCY.observe(time.perf_counter() - started)

    async def _run(self, session_id: str, command_id: str, context: Optional[CommandContext]) -> None:
        try:
            reply = await self._invoke_model(session_id, context)
            self._record_reply(session_id, command_id, reply)
        except SessionNotFound:
            logger.info("Session %s was removed before command %s finished", session_id, command_id)
        except asyncio.CancelledError:
            logger.warning("Command %s in session %s was cancelled", command_id, session_id)
            self._record_failure(session_id, command_id, "Command was cancelled")
            raise
        except Exception as exc:
            logger.exception("Command %s failed in session %s", command_id, session_id)
            self._record_failure(session_id, command_id, str(exc) or exc.__class__.__name__)

    def _record_reply(self, session_id: str, command_id: str, reply: str) -> None:
        message = self._store.add_message(session_id, MessageRole.ASSISTANT, reply, {"command_id": command_id})
        self._bridge.on_message_added(message)
        detected = self._detector(reply)
        if detected is not None:
            question, session = self._store.set_pending_question(session_id, detected, message.message_id)
            QUESTIONS_DETECTED.labels(question_type=question.question_type.value).inc()
            logger.info("Question %s (%s) detected in session %s", question.question_id, question.question_type.value, session_id)
            self._bridge.on_question_pending(question)
            self._bridge.on_status_changed(session)
            return
        session = self._store.complete_command(session_id)
        COMMANDS_TOTAL.labels(outcome="completed").inc()
        self._bridge.on_status_changed(session)
        self._bridge.on_task_completed(
            TaskResult(
                session_id=session_id,
                command_id=command_id,
                success=True,
                summary=summarize_reply(reply),
            )
        )

    def _record_failure(self, session_id: str, command_id: str, detail: str) -> None:
        try:
            message = self._store.add_message(
                session_id,
                MessageRole.SYSTEM,
                f"Command failed: {detail}",
                {"command_id": command_id, "error": True},
            )
            self._bridge.on_message_added(message)
            session = self._store.fail_command(session_id)
        except SessionNotFound:
            logger.info("Session %s was removed before failure of command %s was recorded", session_id, command_id)
            return
        except RemoteVibeError:
            logger.exception("Could not record failure of command %s in session %s", command_id, session_id)
            return
        COMMANDS_TOTAL.labels(outcome="failed").inc()
        self._bridge.on_status_changed(session)
        self._bridge.on_task_completed(
            TaskResult(session_id=session_id, command_id=command_id, success=False, summary=detail)
        )
