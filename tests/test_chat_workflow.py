import asyncio

import pytest

from taskcore.agents import AgentType
from taskcore.errors import AlreadyRunningError, InvalidStateError, NotFoundError, ValidationError
from taskcore.runner import AgentResult
from taskcore.workflow import (
    ChatWorkflowExecutor,
    ChatWorkflowStatus,
    ParsedIntent,
    StepStatus,
    WorkflowCallbacks,
    WorkflowIntent,
    WorkflowTask,
    WorkflowType,
)

PROJECT = "proj-chat"


def _intent(*agents: str, workflow_type: WorkflowType = WorkflowType.SEQUENTIAL) -> ParsedIntent:
    tasks = [WorkflowTask(agent=AgentType(a), instruction=f"{a} work") for a in agents]
    if workflow_type == WorkflowType.SEQUENTIAL:
        for index, task in enumerate(tasks[1:], start=1):
            task.depends_on = [index - 1]
    return ParsedIntent(
        workflow_type=workflow_type,
        agents=[t.agent for t in tasks],
        tasks=tasks,
        input_context="chat request",
    )


@pytest.fixture
def workflows(runner, bus) -> ChatWorkflowExecutor:
    return ChatWorkflowExecutor(runner, bus)


async def _create(workflows, *agents: str, session: str = "s1", **kwargs):
    return await workflows.create_chat_workflow(PROJECT, session, "chat request", _intent(*agents, **kwargs))


class TestCreate:
    @pytest.mark.asyncio
    async def test_created_workflow_waits_for_confirmation(self, workflows, recorder) -> None:
        workflow = await _create(workflows, "developer", "tester")

        assert workflow.status == ChatWorkflowStatus.CONFIRMING
        assert workflow.id.startswith("chat-wf-")
        assert [r.status for r in workflows.get_step_results(workflow.id)] == [
            StepStatus.PENDING,
            StepStatus.PENDING,
        ]
        [event] = recorder.of("chat-workflow-created")
        assert event.subject_id == workflow.id
        assert event.data["workflow"]["parsed_intent"]["tasks"][1]["depends_on"] == [0]

    @pytest.mark.asyncio
    async def test_empty_workflow_is_rejected(self, workflows, recorder) -> None:
        empty = ParsedIntent(workflow_type=WorkflowType.SEQUENTIAL, agents=[], tasks=[])

        with pytest.raises(ValidationError):
            await workflows.create_chat_workflow(PROJECT, "s1", "nothing", empty)
        assert recorder.events == []

    def test_intent_parser_is_swappable(self, runner, bus) -> None:
        workflows = ChatWorkflowExecutor(
            runner, bus, intent_parser=lambda message: WorkflowIntent(is_workflow=False, confidence=7)
        )
        assert workflows.parse_workflow_intent("anything").confidence == 7


class TestSequential:
    @pytest.mark.asyncio
    async def test_steps_run_in_order_with_context(self, workflows, runner, recorder) -> None:
        runner.script["developer"] = ["login implemented"]
        runner.script["tester"] = ["all tests pass"]
        finished = []
        workflow = await _create(workflows, "developer", "tester")

        results = await workflows.execute_chat_workflow(
            workflow.id, callbacks=WorkflowCallbacks(on_workflow_complete=finished.append)
        )

        assert [r.status for r in results] == [StepStatus.COMPLETED, StepStatus.COMPLETED]
        assert [r.output for r in results] == ["login implemented", "all tests pass"]
        assert runner.agents_called() == ["developer", "tester"]
        assert runner.calls[1][1] == "tester work\n\nContext from previous step:\nlogin implemented"
        assert runner.calls[0][2] == f"{workflow.id}:0"

        assert workflow.status == ChatWorkflowStatus.COMPLETED
        assert workflow.completed_at is not None
        assert finished == [results]
        assert recorder.types() == [
            "chat-workflow-created",
            "chat-workflow-step-complete",
            "chat-workflow-step-complete",
            "chat-workflow-complete",
        ]
        complete = recorder.of("chat-workflow-complete")[0]
        assert complete.data["status"] == "completed"
        assert len(complete.data["results"]) == 2

    @pytest.mark.asyncio
    async def test_progress_is_streamed(self, workflows, runner) -> None:
        chunks = []
        workflow = await _create(workflows, "developer", "tester")

        await workflows.execute_chat_workflow(
            workflow.id,
            callbacks=WorkflowCallbacks(on_step_progress=lambda index, chunk: chunks.append(index)),
        )

        assert chunks == [0, 1]

    @pytest.mark.asyncio
    async def test_failure_stops_later_steps(self, workflows, runner, recorder) -> None:
        runner.script["developer"] = [AgentResult(success=False, output="", error="exit code 1")]
        errors = []
        workflow = await _create(workflows, "developer", "tester", "documentation")

        results = await workflows.execute_chat_workflow(
            workflow.id,
            callbacks=WorkflowCallbacks(on_error=lambda error, index: errors.append((index, error))),
        )

        assert [r.status for r in results] == [StepStatus.FAILED] * 3
        assert results[0].error == "exit code 1"
        assert results[1].error == "Skipped after step 0 failed"
        assert runner.agents_called() == ["developer"]
        assert errors == [(0, "exit code 1")]
        assert workflow.status == ChatWorkflowStatus.FAILED

        complete = recorder.of("chat-workflow-complete")[0]
        assert complete.data["status"] == "failed"
        assert complete.data["error"] == "exit code 1"

        with pytest.raises(InvalidStateError):
            await workflows.execute_chat_workflow(workflow.id)

    @pytest.mark.asyncio
    async def test_runner_exception_fails_the_step(self, workflows, runner) -> None:
        runner.script["developer"] = [RuntimeError("spawn failed")]
        workflow = await _create(workflows, "developer", "tester")

        results = await workflows.execute_chat_workflow(workflow.id)

        assert results[0].status == StepStatus.FAILED
        assert results[0].error == "spawn failed"
        assert workflow.status == ChatWorkflowStatus.FAILED


class TestParallel:
    @pytest.mark.asyncio
    async def test_partial_failure_still_completes(self, workflows, runner) -> None:
        runner.script["security"] = [AgentResult(success=False, output="", error="audit crashed")]
        workflow = await _create(workflows, "security", "documentation", workflow_type=WorkflowType.PARALLEL)

        results = await workflows.execute_chat_workflow(workflow.id)

        assert results[0].status == StepStatus.FAILED
        assert results[1].status == StepStatus.COMPLETED
        assert sorted(runner.agents_called()) == ["documentation", "security"]
        assert all("Context from previous step" not in call[1] for call in runner.calls)
        assert workflow.status == ChatWorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_all_failures_are_recorded_per_step(self, workflows, runner, recorder) -> None:
        runner.script["security"] = [AgentResult(success=False, output="", error="no")]
        runner.script["documentation"] = [AgentResult(success=False, output="", error="no")]
        workflow = await _create(workflows, "security", "documentation", workflow_type=WorkflowType.PARALLEL)

        results = await workflows.execute_chat_workflow(workflow.id)

        assert [r.status for r in results] == [StepStatus.FAILED, StepStatus.FAILED]
        assert [r.error for r in results] == ["no", "no"]
        assert workflow.status == ChatWorkflowStatus.COMPLETED
        assert len(recorder.of("chat-workflow-complete")) == 1


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_pause_between_steps_then_resume(self, workflows, runner, recorder) -> None:
        workflow = await _create(workflows, "developer", "tester", "documentation")

        async def pause_after_first(index, result):
            if index == 0:
                assert await workflows.pause_chat_workflow(workflow.id) is True

        results = await workflows.execute_chat_workflow(
            workflow.id, callbacks=WorkflowCallbacks(on_step_complete=pause_after_first)
        )

        assert workflow.status == ChatWorkflowStatus.PAUSED
        assert [r.status for r in results] == [StepStatus.COMPLETED, StepStatus.PENDING, StepStatus.PENDING]
        assert recorder.of("chat-workflow-complete") == []

        results = await workflows.resume_chat_workflow(workflow.id)

        assert runner.agents_called() == ["developer", "tester", "documentation"]
        assert [r.status for r in results] == [StepStatus.COMPLETED] * 3
        assert workflow.status == ChatWorkflowStatus.COMPLETED
        assert len(recorder.of("chat-workflow-complete")) == 1

    @pytest.mark.asyncio
    async def test_pause_interrupts_the_running_step(self, workflows, runner) -> None:
        runner.hold["developer"] = asyncio.Event()
        workflow = await _create(workflows, "developer", "tester")

        running = asyncio.create_task(workflows.execute_chat_workflow(workflow.id))
        await runner.started.wait()
        assert await workflows.pause_chat_workflow(workflow.id) is True
        results = await running

        assert runner.cancel_calls == [f"{workflow.id}:0"]
        assert workflow.status == ChatWorkflowStatus.PAUSED
        assert results[0].status == StepStatus.PENDING
        assert results[0].output == ""

        del runner.hold["developer"]
        results = await workflows.resume_chat_workflow(workflow.id)

        assert runner.agents_called() == ["developer", "developer", "tester"]
        assert workflow.status == ChatWorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, workflows) -> None:
        workflow = await _create(workflows, "developer", "tester")

        with pytest.raises(InvalidStateError):
            await workflows.resume_chat_workflow(workflow.id)
        assert await workflows.pause_chat_workflow(workflow.id) is False

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, workflows) -> None:
        assert workflows.get_chat_workflow("chat-wf-missing") is None
        with pytest.raises(NotFoundError):
            await workflows.execute_chat_workflow("chat-wf-missing")
        with pytest.raises(NotFoundError):
            await workflows.resume_chat_workflow("chat-wf-missing")
        with pytest.raises(NotFoundError):
            await workflows.pause_chat_workflow("chat-wf-missing")
        with pytest.raises(NotFoundError):
            await workflows.cancel_chat_workflow("chat-wf-missing")


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_running_workflow(self, workflows, runner, recorder) -> None:
        runner.hold["developer"] = asyncio.Event()
        workflow = await _create(workflows, "developer", "tester")

        running = asyncio.create_task(workflows.execute_chat_workflow(workflow.id))
        await runner.started.wait()

        with pytest.raises(AlreadyRunningError):
            await workflows.execute_chat_workflow(workflow.id)
        with pytest.raises(InvalidStateError):
            await workflows.resume_chat_workflow(workflow.id)

        await workflows.cancel_chat_workflow(workflow.id)
        await running

        assert workflow.status == ChatWorkflowStatus.FAILED
        assert runner.agents_called() == ["developer"]
        [complete] = recorder.of("chat-workflow-complete")
        assert complete.data["cancelled"] is True
        with pytest.raises(InvalidStateError):
            await workflows.execute_chat_workflow(workflow.id)

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, workflows, recorder) -> None:
        workflow = await _create(workflows, "developer", "tester")

        await workflows.cancel_chat_workflow(workflow.id)
        await workflows.cancel_chat_workflow(workflow.id)

        assert workflow.status == ChatWorkflowStatus.FAILED
        assert len(recorder.of("chat-workflow-complete")) == 1
        assert len(workflows.get_step_results(workflow.id)) == 2

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_workflows(self, workflows, runner) -> None:
        runner.hold["developer"] = asyncio.Event()
        workflow = await _create(workflows, "developer", "tester")
        running = asyncio.create_task(workflows.execute_chat_workflow(workflow.id))
        await runner.started.wait()

        await workflows.shutdown()
        await running

        assert workflow.status == ChatWorkflowStatus.FAILED


class TestQueries:
    @pytest.mark.asyncio
    async def test_listings_and_delete(self, workflows) -> None:
        first = await _create(workflows, "developer", "tester", session="s1")
        second = await _create(workflows, "developer", "tester", session="s1")
        other = await _create(workflows, "developer", "tester", session="s2")

        assert {w.id for w in workflows.get_session_workflows("s1")} == {first.id, second.id}
        assert {w.id for w in workflows.get_project_workflows(PROJECT)} == {first.id, second.id, other.id}
        assert workflows.get_project_workflows("elsewhere") == []

        await workflows.delete_chat_workflow(first.id)

        assert workflows.get_chat_workflow(first.id) is None
        assert [w.id for w in workflows.get_session_workflows("s1")] == [second.id]
        with pytest.raises(NotFoundError):
            workflows.get_step_results(first.id)
