import asyncio
import threading

import pytest

from remote_vibe.core.errors import (
    AlreadyBusy,
    InvalidSessionState,
    ModelCallFailed,
    QuestionNotFound,
    SessionNotFound,
    ValidationError,
)
from remote_vibe.domain.session_models import CommandContext, MessageRole, QuestionType, SessionStatus
from remote_vibe.services.command_executor import CommandExecutor, summarize_reply

from utils import ScriptedModelClient


def _drain_events(observer):
    events = []
    while not observer.queue.empty():
        events.append(observer.queue.get_nowait())
    return events


@pytest.mark.asyncio
async def test_round_trip_returns_to_idle(store, executor, model):
    model.replies = ["Files:\nREADME.md\nsetup.py"]
    sid = store.create_session("/repo").session_id

    ack = await executor.execute(sid, "list files")
    assert ack.status == "accepted"
    # The user message is recorded before the model call finishes
    assert store.require_session(sid).status == SessionStatus.PROCESSING
    assert [m.role for m in store.list_messages(sid)] == [MessageRole.USER]

    await executor.drain()
    messages = store.list_messages(sid)
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert messages[1].content == "Files:\nREADME.md\nsetup.py"
    assert all(m.metadata["command_id"] == ack.command_id for m in messages)
    sess = store.require_session(sid)
    assert sess.status == SessionStatus.IDLE
    assert sess.current_command is None
    assert executor.in_flight == 0


@pytest.mark.asyncio
async def test_question_moves_session_to_waiting(store, executor, model):
    model.replies = ["Which framework should I use?\n1. React\n2. Vue\n3. Svelte"]
    sid = store.create_session("/repo").session_id
    await executor.execute(sid, "scaffold a frontend")
    await executor.drain()

    assert store.require_session(sid).status == SessionStatus.WAITING_FOR_INPUT
    pending = store.get_pending_question(sid)
    assert pending.question_type == QuestionType.MULTIPLE_CHOICE
    assert pending.options == ["React", "Vue", "Svelte"]
    assert pending.message_id == store.list_messages(sid)[-1].message_id


@pytest.mark.asyncio
async def test_answer_continues_the_conversation(store, executor, model):
    model.replies = ["Should I add tests? (yes/no)", "Added tests."]
    sid = store.create_session("/repo").session_id
    await executor.execute(sid, "refactor the parser")
    await executor.drain()
    pending = store.get_pending_question(sid)

    ack = await executor.respond(sid, pending.question_id, "yes")
    assert store.require_session(sid).status == SessionStatus.PROCESSING
    assert store.get_pending_question(sid) is None
    await executor.drain()

    messages = store.list_messages(sid)
    assert [m.content for m in messages] == [
        "refactor the parser",
        "Should I add tests? (yes/no)",
        "yes",
        "Added tests.",
    ]
    assert messages[2].metadata == {"command_id": ack.command_id, "question_id": pending.question_id}
    assert store.require_session(sid).status == SessionStatus.IDLE
    # The answer goes to the model together with the prior history
    assert [m["role"] for m in model.calls[1]] == ["system", "user", "assistant", "user"]


@pytest.mark.asyncio
async def test_respond_to_question_by_id(store, executor, model):
    model.replies = ["Is this correct?", "Great."]
    sid = store.create_session("/repo").session_id
    await executor.execute(sid, "rename module")
    await executor.drain()
    pending = store.get_pending_question(sid)

    ack = await executor.respond_to_question(pending.question_id, "yes")
    assert ack.session_id == sid
    await executor.drain()
    assert store.require_session(sid).status == SessionStatus.IDLE

    with pytest.raises(QuestionNotFound):
        await executor.respond_to_question(pending.question_id, "again")


@pytest.mark.asyncio
async def test_mismatched_answer_leaves_state_alone(store, executor, model):
    model.replies = ["Are you sure?"]
    sid = store.create_session("/repo").session_id
    await executor.execute(sid, "drop the table")
    await executor.drain()
    before = store.require_session(sid)
    count = len(store.list_messages(sid))

    with pytest.raises(QuestionNotFound):
        await executor.respond(sid, "wrong-id", "yes")
    assert store.require_session(sid) == before
    assert len(store.list_messages(sid)) == count


@pytest.mark.asyncio
async def test_busy_session_rejects_second_command(store, bridge):
    gate = threading.Event()
    model = ScriptedModelClient(["first done"], gate=gate)
    executor = CommandExecutor(store=store, bridge=bridge, model_client=model, model_timeout=2.0)
    sid = store.create_session("/repo").session_id

    await executor.execute(sid, "first")
    with pytest.raises(AlreadyBusy):
        await executor.execute(sid, "second")
    gate.set()
    await executor.drain()

    assert [m.content for m in store.list_messages(sid)] == ["first", "first done"]
    assert store.require_session(sid).status == SessionStatus.IDLE


@pytest.mark.asyncio
async def test_waiting_session_rejects_new_command(store, executor, model):
    model.replies = ["Would you like a changelog entry?"]
    sid = store.create_session("/repo").session_id
    await executor.execute(sid, "bump version")
    await executor.drain()
    with pytest.raises(InvalidSessionState):
        await executor.execute(sid, "something else")


@pytest.mark.asyncio
async def test_input_validation(store, executor):
    sid = store.create_session("/repo").session_id
    with pytest.raises(ValidationError):
        await executor.execute(sid, "   ")
    with pytest.raises(SessionNotFound):
        await executor.execute("missing", "hello")
    assert store.list_messages(sid) == []


@pytest.mark.asyncio
async def test_model_failure_sets_error_and_is_recoverable(store, bridge):
    model = ScriptedModelClient(error=ModelCallFailed("upstream 503"))
    executor = CommandExecutor(store=store, bridge=bridge, model_client=model, model_timeout=2.0)
    sid = store.create_session("/repo").session_id
    await executor.execute(sid, "build it")
    await executor.drain()

    assert store.require_session(sid).status == SessionStatus.ERROR
    last = store.list_messages(sid)[-1]
    assert last.role == MessageRole.SYSTEM
    assert "upstream 503" in last.content
    assert last.metadata["error"] is True

    model.error = None
    model.replies = ["Built."]
    await executor.execute(sid, "try again")
    await executor.drain()
    assert store.require_session(sid).status == SessionStatus.IDLE
    # System messages are not replayed to the model
    assert "system" not in [m["role"] for m in model.calls[-1][1:]]


@pytest.mark.asyncio
async def test_model_timeout_is_a_failure(store, bridge):
    model = ScriptedModelClient(gate=threading.Event())
    executor = CommandExecutor(store=store, bridge=bridge, model_client=model, model_timeout=0.05)
    sid = store.create_session("/repo").session_id
    await executor.execute(sid, "slow thing")
    await executor.drain()

    assert store.require_session(sid).status == SessionStatus.ERROR
    assert "timed out" in store.list_messages(sid)[-1].content


@pytest.mark.asyncio
async def test_deleted_session_discards_late_reply(store, bridge):
    gate = threading.Event()
    model = ScriptedModelClient(["too late"], gate=gate)
    executor = CommandExecutor(store=store, bridge=bridge, model_client=model, model_timeout=2.0)
    sid = store.create_session("/repo").session_id
    await executor.execute(sid, "long task")
    store.delete_session(sid)
    gate.set()
    await executor.drain()

    assert store.get_session(sid) is None
    assert executor.in_flight == 0


@pytest.mark.asyncio
async def test_context_is_added_to_system_prompt(store, executor, model, tmp_path):
    (tmp_path / "README.md").write_text("# Demo\n")
    sid = store.create_session(str(tmp_path)).session_id
    await executor.execute(sid, "summarize", CommandContext(include_workspace=True, include_files=["README.md"]))
    await executor.drain()

    system = model.calls[0][0]
    assert system["role"] == "system"
    assert "### Project Structure:" in system["content"]
    assert "# Demo" in system["content"]


@pytest.mark.asyncio
async def test_context_failure_is_recorded(store, executor, model, tmp_path):
    sid = store.create_session(str(tmp_path / "nope")).session_id
    await executor.execute(sid, "summarize", CommandContext(include_workspace=True))
    await executor.drain()

    assert store.require_session(sid).status == SessionStatus.ERROR
    assert model.calls == []


@pytest.mark.asyncio
async def test_history_limit_trims_model_input(store, bridge):
    model = ScriptedModelClient()
    executor = CommandExecutor(store=store, bridge=bridge, model_client=model, history_limit=2)
    sid = store.create_session("/repo").session_id
    for text in ("one", "two", "three"):
        await executor.execute(sid, text)
        await executor.drain()

    last_call = model.calls[-1]
    assert [m["content"] for m in last_call[1:]] == ["Done.", "three"]


@pytest.mark.asyncio
async def test_events_follow_pipeline_order(store, bridge, executor, model):
    model.replies = ["All set."]
    sid = store.create_session("/repo").session_id
    observer = bridge.subscribe("obs-1", sid)
    await executor.execute(sid, "go")
    await executor.drain()

    events = _drain_events(observer)
    assert [e.event for e in events] == [
        "status_changed",
        "message_received",
        "message_received",
        "status_changed",
        "task_completed",
    ]
    assert events[0].payload["status"] == "processing"
    assert events[3].payload["status"] == "idle"
    assert events[4].payload["success"] is True
    assert events[4].payload["summary"] == "All set."


@pytest.mark.asyncio
async def test_question_events_have_no_task_completed(store, bridge, executor, model):
    model.replies = ["Do you want me to push?"]
    sid = store.create_session("/repo").session_id
    observer = bridge.subscribe("obs-1", sid)
    await executor.execute(sid, "commit")
    await executor.drain()

    events = _drain_events(observer)
    assert [e.event for e in events][-2:] == ["question_pending", "status_changed"]
    assert events[-1].payload["status"] == "waiting_for_input"
    assert "task_completed" not in [e.event for e in events]


@pytest.mark.asyncio
async def test_failure_events(store, bridge):
    model = ScriptedModelClient(error=RuntimeError("kaboom"))
    executor = CommandExecutor(store=store, bridge=bridge, model_client=model)
    sid = store.create_session("/repo").session_id
    observer = bridge.subscribe("obs-1", sid)
    await executor.execute(sid, "explode")
    await executor.drain()

    events = _drain_events(observer)
    assert [e.event for e in events][-3:] == ["message_received", "status_changed", "task_completed"]
    assert events[-1].payload["success"] is False
    assert events[-1].payload["summary"] == "kaboom"


@pytest.mark.asyncio
async def test_shutdown_cancels_in_flight(store, bridge):
    model = ScriptedModelClient(gate=threading.Event())
    executor = CommandExecutor(store=store, bridge=bridge, model_client=model)
    sid = store.create_session("/repo").session_id
    observer = bridge.subscribe("o1", sid)
    await executor.execute(sid, "wait forever")
    assert executor.in_flight == 1
    # Let the command reach the model before cancelling it
    await asyncio.sleep(0.05)
    await executor.shutdown()
    assert executor.in_flight == 0

    assert store.require_session(sid).status == SessionStatus.ERROR
    last = store.list_messages(sid)[-1]
    assert last.role == MessageRole.SYSTEM
    assert last.content == "Command failed: Command was cancelled"
    events = _drain_events(observer)
    assert events[-1].event == "task_completed"
    assert events[-1].payload["success"] is False


def test_summarize_reply():
    assert summarize_reply("\n\nFirst line\nsecond") == "First line"
    assert summarize_reply("x" * 300, limit=10) == "x" * 9 + "…"
    assert summarize_reply("") == ""
