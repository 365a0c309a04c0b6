import asyncio

import pytest

from taskcore import db
from taskcore.errors import (
    AlreadyRunningError,
    InvalidStateError,
    NotFoundError,
    TaskcoreError,
    ValidationError,
)
from taskcore.runner import AgentResult
from taskcore.task_queue import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    TaskQueue,
    TaskStatus,
    build_task_prompt,
    resolve_checkpoints,
)

PROJECT = "proj-1"


async def _enqueue(queue: TaskQueue, title: str = "Add login", **kwargs):
    kwargs.setdefault("task_type", "code-generation")
    kwargs.setdefault("agent_type", "developer")
    return await queue.enqueue(PROJECT, title, **kwargs)


@pytest.mark.asyncio
async def test_enqueue_defaults(queue) -> None:
    task = await _enqueue(queue)

    assert task.status == "pending"
    assert task.priority == 50
    assert task.autonomy_level == "auto"
    assert task.approval_required is False
    assert task.checkpoints == []


@pytest.mark.asyncio
async def test_supervised_requires_approval(queue) -> None:
    task = await _enqueue(queue, autonomy_level="supervised")

    assert task.approval_required is True
    assert task.checkpoints == ["before_start", "after_completion"]


@pytest.mark.asyncio
async def test_approval_gates_uses_declared_checkpoints(queue) -> None:
    default = await _enqueue(queue, "a", autonomy_level="approval_gates")
    declared = await _enqueue(queue, "b", autonomy_level="approval_gates", checkpoints=["before_start"])
    none = await _enqueue(queue, "c", autonomy_level="approval_gates", checkpoints=[])

    assert default.checkpoints == ["after_completion"]
    assert declared.checkpoints == ["before_start"]
    assert none.checkpoints == []
    assert none.approval_required is False


@pytest.mark.asyncio
async def test_enqueue_rejects_unknown_enums_without_writing(queue) -> None:
    with pytest.raises(ValidationError):
        await _enqueue(queue, task_type="painting")
    with pytest.raises(ValidationError):
        await _enqueue(queue, agent_type="wizard")
    with pytest.raises(ValidationError):
        await _enqueue(queue, autonomy_level="yolo")

    assert await queue.list_tasks(PROJECT) == []


@pytest.mark.asyncio
async def test_enqueue_emits_task_queued(queue, recorder) -> None:
    task = await _enqueue(queue)

    assert recorder.types() == ["task-queued"]
    assert recorder.events[0].subject_id == task.id
    assert recorder.events[0].data["task"]["title"] == "Add login"


@pytest.mark.asyncio
async def test_list_orders_by_priority_then_creation(queue) -> None:
    low = await _enqueue(queue, "low", priority=90)
    first = await _enqueue(queue, "first")
    urgent = await _enqueue(queue, "urgent", priority=1)
    second = await _enqueue(queue, "second")

    tasks = await queue.list_tasks(PROJECT)

    assert [t.id for t in tasks] == [urgent.id, first.id, second.id, low.id]
    assert [t.priority for t in tasks] == sorted(t.priority for t in tasks)


@pytest.mark.asyncio
async def test_get_unknown_returns_none(queue) -> None:
    assert await queue.get_task("missing") is None


@pytest.mark.asyncio
async def test_update_autonomy_round_trip(queue) -> None:
    task = await _enqueue(queue)

    await queue.update_autonomy(task.id, "supervised")
    fetched = await queue.get_task(task.id)

    assert fetched.autonomy_level == "supervised"
    assert fetched.approval_required is True


@pytest.mark.asyncio
async def test_update_autonomy_on_terminal_task_fails(queue) -> None:
    task = await _enqueue(queue)
    await queue.cancel(task.id)

    with pytest.raises(InvalidStateError):
        await queue.update_autonomy(task.id, "supervised")


@pytest.mark.asyncio
async def test_update_autonomy_unknown_task(queue) -> None:
    with pytest.raises(NotFoundError):
        await queue.update_autonomy("missing", "auto")


@pytest.mark.asyncio
async def test_get_approvals_empty_for_new_task(queue) -> None:
    task = await _enqueue(queue, autonomy_level="supervised")
    assert await queue.get_approvals(task.id) == []


@pytest.mark.asyncio
async def test_cancel_is_idempotent(queue, recorder) -> None:
    task = await _enqueue(queue)

    assert await queue.cancel(task.id) is True
    assert await queue.cancel(task.id) is False

    fetched = await queue.get_task(task.id)
    assert fetched.status == "cancelled"
    assert recorder.types().count("task-cancelled") == 1


@pytest.mark.asyncio
async def test_purge_only_cancelled(queue) -> None:
    task = await _enqueue(queue)
    with pytest.raises(InvalidStateError):
        await queue.purge(task.id)

    await queue.cancel(task.id)
    await queue.purge(task.id)
    assert await queue.get_task(task.id) is None


@pytest.mark.asyncio
async def test_execute_auto_task_completes(queue, recorder, runner) -> None:
    task = await _enqueue(queue, description="Implement the login form")

    done = await queue.execute_task(task.id)

    assert done.status == "completed"
    assert done.output_data["result"] == runner.default_output
    assert done.started_at is not None and done.completed_at is not None
    assert runner.calls[0][0] == "developer"
    assert runner.calls[0][1] == "Implement the login form"
    assert recorder.types() == [
        "task-queued",
        "task-started",
        "task-progress",
        "task-completed",
    ]


@pytest.mark.asyncio
async def test_supervised_task_passes_both_gates(queue, recorder) -> None:
    task = await _enqueue(queue, autonomy_level="supervised")

    waiting = await queue.execute_task(task.id)
    assert waiting.status == "waiting_approval"
    [start_gate] = await queue.get_approvals(task.id)
    assert start_gate.checkpoint == "before_start"
    assert start_gate.status == "pending"

    approved = await queue.approve(start_gate.id, "alice")
    assert approved.status == "queued"

    reviewed = await queue.execute_task(task.id)
    assert reviewed.status == "waiting_approval"
    gates = await queue.get_approvals(task.id)
    review_gate = next(g for g in gates if g.checkpoint == "after_completion")
    assert review_gate.requires_review is True

    completed = await queue.approve(review_gate.id, "alice", "looks good")
    assert completed.status == "completed"
    assert completed.approved_by == "alice"
    assert recorder.types().count("task-approval-required") == 2
    assert recorder.types()[-1] == "task-completed"


@pytest.mark.asyncio
async def test_reject_fails_task_with_reason(queue, recorder) -> None:
    task = await _enqueue(queue, autonomy_level="supervised")
    await queue.execute_task(task.id)
    [gate] = await queue.get_approvals(task.id)

    rejected = await queue.reject(gate.id, "bob", "Not this sprint")

    assert rejected.status == "failed"
    assert rejected.error_message == "Not this sprint"
    [gate] = await queue.get_approvals(task.id)
    assert gate.status == "rejected"
    assert recorder.of("task-failed")[-1].data["error"] == "Not this sprint"


@pytest.mark.asyncio
async def test_resolved_gate_cannot_be_reopened(queue) -> None:
    task = await _enqueue(queue, autonomy_level="supervised")
    await queue.execute_task(task.id)
    [gate] = await queue.get_approvals(task.id)
    await queue.approve(gate.id)

    with pytest.raises(InvalidStateError):
        await queue.approve(gate.id)
    with pytest.raises(InvalidStateError):
        await queue.reject(gate.id)
    with pytest.raises(NotFoundError):
        await queue.approve("missing-gate")


@pytest.mark.asyncio
async def test_manual_gate_blocks_until_resolved(queue) -> None:
    task = await _enqueue(queue)

    gate = await queue.create_approval_gate(task.id, "security", "Security sign-off")
    waiting = await queue.get_task(task.id)
    assert waiting.status == "waiting_approval"

    resumed = await queue.approve(gate.id)
    assert resumed.status == "queued"


@pytest.mark.asyncio
async def test_transient_failure_is_requeued(queue, runner, recorder) -> None:
    runner.script["developer"] = [AgentResult(success=False, output="", error="Request timed out")]
    task = await _enqueue(queue)

    retried = await queue.execute_task(task.id)

    assert retried.status == "queued"
    assert retried.retry_count == 1
    assert retried.input_data["previous_errors"] == ["Request timed out"]
    assert "task-failed" not in recorder.types()

    done = await queue.execute_task(task.id)
    assert done.status == "completed"
    assert "Previous attempts failed with" in runner.calls[1][1]


@pytest.mark.asyncio
async def test_failure_is_terminal_once_retries_are_used(database, bus, runner, recorder) -> None:
    queue = TaskQueue(database, bus, runner, max_retries=0)
    runner.script["developer"] = [AgentResult(success=False, output="", error="Request timed out")]
    task = await _enqueue(queue)

    failed = await queue.execute_task(task.id)

    assert failed.status == "failed"
    assert failed.error_message == "Request timed out"
    assert recorder.of("task-failed")[0].data["error"] == "Request timed out"


@pytest.mark.asyncio
async def test_escalated_errors_are_not_retried(queue, runner) -> None:
    runner.script["developer"] = [AgentResult(success=False, output="", error="EACCES: permission denied")]
    task = await _enqueue(queue)

    failed = await queue.execute_task(task.id)

    assert failed.status == "failed"
    assert failed.retry_count == 0


@pytest.mark.asyncio
async def test_runner_exception_becomes_failure(queue, runner) -> None:
    runner.script["developer"] = [RuntimeError("boom")]
    task = await _enqueue(queue, max_retries=0)

    failed = await queue.execute_task(task.id)

    assert failed.status == "failed"
    assert "boom" in failed.error_message


@pytest.mark.asyncio
async def test_cancel_running_task_stops_the_run(queue, runner) -> None:
    runner.hold["developer"] = asyncio.Event()
    task = await _enqueue(queue)

    running = asyncio.create_task(queue.execute_task(task.id))
    await runner.started.wait()

    assert await queue.cancel(task.id) is True
    result = await running

    assert result.status == "cancelled"
    assert task.id in runner.cancel_calls


@pytest.mark.asyncio
async def test_gate_approved_mid_turn_keeps_the_turn(queue, runner, recorder) -> None:
    runner.hold["developer"] = asyncio.Event()
    task = await _enqueue(queue)
    running = asyncio.create_task(queue.execute_task(task.id))
    await runner.started.wait()

    gate = await queue.create_approval_gate(task.id, "manual", "Check the plan")
    resumed = await queue.approve(gate.id)
    assert resumed.status == "running"

    with pytest.raises(AlreadyRunningError):
        await queue.execute_task(task.id)

    runner.hold["developer"].set()
    done = await running

    assert done.status == "completed"
    assert runner.agents_called() == ["developer"]
    assert len(recorder.of("task-completed")) == 1


@pytest.mark.asyncio
async def test_output_landing_while_gated_completes_on_approval(queue, runner) -> None:
    runner.hold["developer"] = asyncio.Event()
    task = await _enqueue(queue)
    running = asyncio.create_task(queue.execute_task(task.id))
    await runner.started.wait()

    gate = await queue.create_approval_gate(task.id, "manual", "Check the plan")
    runner.hold["developer"].set()
    parked = await running
    assert parked.status == "waiting_approval"

    done = await queue.approve(gate.id)
    assert done.status == "completed"
    assert done.output_data == {"result": runner.default_output}
    assert runner.agents_called() == ["developer"]


@pytest.mark.asyncio
async def test_cancel_while_gated_mid_turn_stops_the_run(queue, runner) -> None:
    runner.hold["developer"] = asyncio.Event()
    task = await _enqueue(queue)
    running = asyncio.create_task(queue.execute_task(task.id))
    await runner.started.wait()
    await queue.create_approval_gate(task.id, "manual", "Check the plan")

    assert await queue.cancel(task.id) is True
    result = await running

    assert result.status == "cancelled"
    assert task.id in runner.cancel_calls


class TestConcurrentCallers:
    @pytest.mark.asyncio
    async def test_two_executes_run_the_agent_once(self, queue, runner) -> None:
        runner.hold["developer"] = asyncio.Event()
        task = await _enqueue(queue)

        first = asyncio.create_task(queue.execute_task(task.id))
        second = asyncio.create_task(queue.execute_task(task.id))
        await runner.started.wait()
        runner.hold["developer"].set()
        results = await asyncio.gather(first, second, return_exceptions=True)

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], TaskcoreError)
        assert runner.agents_called() == ["developer"]
        assert (await queue.get_task(task.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_cancel_racing_the_finish_concludes_once(self, queue, runner, database) -> None:
        runner.hold["developer"] = asyncio.Event()
        task = await _enqueue(queue)
        running = asyncio.create_task(queue.execute_task(task.id))
        await runner.started.wait()

        runner.hold["developer"].set()
        cancelled, finished = await asyncio.gather(queue.cancel(task.id), running)

        final = await queue.get_task(task.id)
        assert final.status == ("cancelled" if cancelled else "completed")
        assert finished.status == final.status
        async with database.session() as session:
            transitions = await db.list_transitions(session, task.id)
        terminal = [t for t in transitions if TaskStatus(t.to_status) in TERMINAL_STATUSES]
        assert len(terminal) == 1

    @pytest.mark.asyncio
    async def test_two_approvals_of_one_gate(self, queue, database) -> None:
        task = await _enqueue(queue)
        gate = await queue.create_approval_gate(task.id, "manual", "Sign-off")

        results = await asyncio.gather(
            queue.approve(gate.id, "alice"),
            queue.approve(gate.id, "bob"),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidStateError)
        resolved = await queue.get_gate(gate.id)
        assert resolved.status == "approved"
        assert resolved.approved_by in ("alice", "bob")
        async with database.session() as session:
            transitions = await db.list_transitions(session, task.id)
        assert [t.from_status for t in transitions].count("waiting_approval") == 1


@pytest.mark.asyncio
async def test_unmet_dependencies_block_execution(queue) -> None:
    first = await _enqueue(queue, "first")
    second = await _enqueue(queue, "second", depends_on=[first.id])

    assert await queue.dependencies_satisfied(second) is False
    with pytest.raises(InvalidStateError):
        await queue.execute_task(second.id)

    await queue.execute_task(first.id)
    done = await queue.execute_task(second.id)
    assert done.status == "completed"


@pytest.mark.asyncio
async def test_paused_queue_refuses_execution(queue, recorder) -> None:
    task = await _enqueue(queue)

    await queue.pause()
    await queue.pause()
    with pytest.raises(InvalidStateError):
        await queue.execute_task(task.id)
    await queue.resume()

    assert recorder.types().count("queue-paused") == 1
    assert recorder.types().count("queue-resumed") == 1


@pytest.mark.asyncio
async def test_transitions_follow_state_machine(queue, database, runner) -> None:
    runner.script["developer"] = [AgentResult(success=False, output="", error="Request timed out")]
    task = await _enqueue(queue, autonomy_level="approval_gates")
    await queue.execute_task(task.id)
    await queue.execute_task(task.id)
    [gate] = await queue.get_approvals(task.id)
    await queue.approve(gate.id)

    async with database.session() as session:
        transitions = await db.list_transitions(session, task.id)

    assert transitions[0].to_status == "pending"
    for tr in transitions[1:]:
        assert TaskStatus(tr.to_status) in ALLOWED_TRANSITIONS[TaskStatus(tr.from_status)]
    assert transitions[-1].to_status == "completed"


@pytest.mark.asyncio
async def test_reconcile_recovers_orphaned_running_tasks(queue, database) -> None:
    task = await _enqueue(queue)
    async with database.session() as session:
        stored = await db.get_task(session, task.id)
        await db.update_task_status(session, stored, "queued")
        await db.update_task_status(session, stored, "running")

    recovered = await queue.reconcile_running(PROJECT)

    assert recovered == [task.id]
    assert (await queue.get_task(task.id)).status == "queued"


@pytest.mark.asyncio
async def test_hierarchy_nests_subtasks(queue) -> None:
    parent = await _enqueue(queue, "parent")
    child = await _enqueue(queue, "child", parent_task_id=parent.id)

    tree = await queue.get_tasks_hierarchy(PROJECT)

    assert [node["task"].id for node in tree] == [parent.id]
    assert [node["task"].id for node in tree[0]["subtasks"]] == [child.id]


def test_resolve_checkpoints_rejects_unknown() -> None:
    with pytest.raises(ValidationError):
        resolve_checkpoints("approval_gates", ["halfway"])  # type: ignore[arg-type]


def test_build_task_prompt_includes_retry_context() -> None:
    from taskcore.models import QueuedTask

    task = QueuedTask(
        title="Fix bug",
        description="Fix the crash",
        input_data={"previous_errors": ["SyntaxError"], "retry_hint": "Try again carefully."},
    )

    prompt = build_task_prompt(task)

    assert prompt.startswith("Fix the crash")
    assert "- SyntaxError" in prompt
    assert prompt.endswith("Try again carefully.")
