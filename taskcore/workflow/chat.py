"""
Chat-driven multi-agent workflows.

A free-text request is parsed into a short pipeline, held in ``confirming``
until the caller executes it, then driven step by step through the agent
runner. Workflows live in memory for the lifetime of the executor.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any
from uuid import uuid4

from ..errors import AlreadyRunningError, InvalidStateError, NotFoundError, ValidationError
from ..events import EventBus, EventType
from ..models import utcnow
from ..runner import AgentRunner, ProjectContext
from .base import (
    AgentStep,
    ParallelRun,
    RunToken,
    SequentialRun,
    StepStatus,
    WorkflowCallbacks,
    WorkflowContext,
    WorkflowStatus,
    WorkflowStepResult,
    step_run_id,
)
from .intent import ParsedIntent, WorkflowIntent, WorkflowType, parse_workflow_intent

logger = logging.getLogger(__name__)


class ChatWorkflowStatus(StrEnum):
    PARSING = "parsing"
    CONFIRMING = "confirming"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ChatWorkflowRequest:
    project_id: str
    session_id: str
    original_message: str
    parsed_intent: ParsedIntent
    status: ChatWorkflowStatus = ChatWorkflowStatus.CONFIRMING
    id: str = field(default_factory=lambda: f"chat-wf-{uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "session_id": self.session_id,
            "original_message": self.original_message,
            "parsed_intent": self.parsed_intent.to_dict(),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


IntentParser = Callable[[str], WorkflowIntent]


class ChatWorkflowExecutor:
    """Owns chat workflows and their pause/resume/cancel state."""

    def __init__(
        self,
        runner: AgentRunner,
        bus: EventBus,
        *,
        intent_parser: IntentParser = parse_workflow_intent,
    ) -> None:
        self._runner = runner
        self._bus = bus
        self._intent_parser = intent_parser
        self._workflows: dict[str, ChatWorkflowRequest] = {}
        self._results: dict[str, list[WorkflowStepResult]] = {}
        self._tokens: dict[str, RunToken] = {}

    def parse_workflow_intent(self, message: str) -> WorkflowIntent:
        return self._intent_parser(message)

    def _require(self, workflow_id: str) -> ChatWorkflowRequest:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow not found: {workflow_id}")
        return workflow

    async def create_chat_workflow(
        self,
        project_id: str,
        session_id: str,
        original_message: str,
        parsed_intent: ParsedIntent,
    ) -> ChatWorkflowRequest:
        if not parsed_intent.tasks:
            raise ValidationError("Workflow has no tasks")
        workflow = ChatWorkflowRequest(
            project_id=project_id,
            session_id=session_id,
            original_message=original_message,
            parsed_intent=parsed_intent,
        )
        self._workflows[workflow.id] = workflow
        self._results[workflow.id] = [
            WorkflowStepResult(step_index=i, agent=task.agent.value, instruction=task.instruction)
            for i, task in enumerate(parsed_intent.tasks)
        ]
        await self._bus.publish(
            EventType.CHAT_WORKFLOW_CREATED,
            project_id=project_id,
            subject_id=workflow.id,
            message=f"{parsed_intent.workflow_type.value} workflow with {len(parsed_intent.tasks)} steps",
            data={"workflow": workflow.to_dict()},
        )
        return workflow

    def _observed(self, workflow: ChatWorkflowRequest, callbacks: WorkflowCallbacks | None) -> WorkflowCallbacks:
        user = callbacks or WorkflowCallbacks()

        async def step_complete(index: int, result: WorkflowStepResult) -> None:
            await self._bus.publish(
                EventType.CHAT_WORKFLOW_STEP_COMPLETE,
                project_id=workflow.project_id,
                subject_id=workflow.id,
                message=f"Step {index + 1} ({result.agent}) complete",
                data={"step_index": index, "result": result.to_dict()},
            )
            await user.fire("on_step_complete", index, result)

        return dataclasses.replace(user, on_step_complete=step_complete)

    def _build_run(self, workflow: ChatWorkflowRequest) -> SequentialRun | ParallelRun:
        steps = [
            AgentStep(self._runner, i, task.agent.value, task.instruction, task.depends_on)
            for i, task in enumerate(workflow.parsed_intent.tasks)
        ]
        if workflow.parsed_intent.workflow_type == WorkflowType.PARALLEL:
            return ParallelRun(workflow.id, steps)
        return SequentialRun(workflow.id, steps)

    async def _publish_complete(self, workflow: ChatWorkflowRequest, **extra: Any) -> None:
        results = self._results.get(workflow.id, [])
        await self._bus.publish(
            EventType.CHAT_WORKFLOW_COMPLETE,
            project_id=workflow.project_id,
            subject_id=workflow.id,
            message=f"Workflow {workflow.status.value}",
            data={
                "workflow_id": workflow.id,
                "status": workflow.status.value,
                "results": [r.to_dict() for r in results],
                **extra,
            },
        )

    async def execute_chat_workflow(
        self,
        workflow_id: str,
        project_path: Path | None = None,
        callbacks: WorkflowCallbacks | None = None,
    ) -> list[WorkflowStepResult]:
        """Run (or continue) a workflow until it completes, fails or is paused.

        Completed steps are never run again; a paused workflow continues from
        its first unfinished step.
        """
        workflow = self._require(workflow_id)
        if workflow_id in self._tokens:
            raise AlreadyRunningError("Workflow is already running")
        if workflow.status in (ChatWorkflowStatus.COMPLETED, ChatWorkflowStatus.FAILED):
            raise InvalidStateError(f"Workflow is already {workflow.status.value}")

        token = RunToken()
        self._tokens[workflow_id] = token
        workflow.status = ChatWorkflowStatus.RUNNING
        results = self._results[workflow_id]
        observed = self._observed(workflow, callbacks)
        ctx = WorkflowContext(
            workflow_id=workflow_id,
            project=ProjectContext(project_id=workflow.project_id, project_path=project_path),
            token=token,
            results=results,
            callbacks=observed,
        )
        logger.info("Executing workflow %s (%s)", workflow_id, workflow.parsed_intent.workflow_type.value)

        try:
            outcome = await self._build_run(workflow).execute(ctx)
        finally:
            self._tokens.pop(workflow_id, None)

        if token.reason == "cancelled":
            return results
        if outcome.status == WorkflowStatus.PAUSED:
            workflow.status = ChatWorkflowStatus.PAUSED
            logger.info("Workflow %s paused", workflow_id)
            return results

        workflow.status = (
            ChatWorkflowStatus.COMPLETED
            if outcome.status == WorkflowStatus.COMPLETED
            else ChatWorkflowStatus.FAILED
        )
        workflow.completed_at = utcnow()
        if workflow.status == ChatWorkflowStatus.COMPLETED:
            await observed.fire("on_workflow_complete", results)
        else:
            logger.warning("Workflow %s failed: %s", workflow_id, outcome.error)
        await self._publish_complete(workflow, error=outcome.error)
        return results

    async def _cancel_running_steps(self, workflow_id: str) -> None:
        for result in self._results.get(workflow_id, []):
            if result.status == StepStatus.RUNNING:
                await self._runner.cancel(step_run_id(workflow_id, result.step_index))

    async def pause_chat_workflow(self, workflow_id: str) -> bool:
        """Stop before the next step and interrupt the current agent turn."""
        workflow = self._require(workflow_id)
        token = self._tokens.get(workflow_id)
        if token is None:
            return False
        token.pause()
        workflow.status = ChatWorkflowStatus.PAUSED
        await self._cancel_running_steps(workflow_id)
        return True

    async def resume_chat_workflow(
        self,
        workflow_id: str,
        project_path: Path | None = None,
        callbacks: WorkflowCallbacks | None = None,
    ) -> list[WorkflowStepResult]:
        workflow = self._require(workflow_id)
        if workflow.status != ChatWorkflowStatus.PAUSED:
            raise InvalidStateError("Workflow is not paused")
        if workflow_id in self._tokens:
            raise AlreadyRunningError("Workflow is still stopping; try again shortly")
        return await self.execute_chat_workflow(workflow_id, project_path, callbacks)

    async def cancel_chat_workflow(self, workflow_id: str) -> None:
        workflow = self._require(workflow_id)
        token = self._tokens.get(workflow_id)
        if token is not None:
            token.cancel()
            await self._cancel_running_steps(workflow_id)
        if workflow.status in (ChatWorkflowStatus.COMPLETED, ChatWorkflowStatus.FAILED):
            return
        workflow.status = ChatWorkflowStatus.FAILED
        workflow.completed_at = utcnow()
        await self._publish_complete(workflow, cancelled=True)

    def get_chat_workflow(self, workflow_id: str) -> ChatWorkflowRequest | None:
        return self._workflows.get(workflow_id)

    def get_step_results(self, workflow_id: str) -> list[WorkflowStepResult]:
        self._require(workflow_id)
        return list(self._results[workflow_id])

    def get_session_workflows(self, session_id: str) -> list[ChatWorkflowRequest]:
        return sorted(
            (wf for wf in self._workflows.values() if wf.session_id == session_id),
            key=lambda wf: wf.created_at,
            reverse=True,
        )

    def get_project_workflows(self, project_id: str) -> list[ChatWorkflowRequest]:
        return sorted(
            (wf for wf in self._workflows.values() if wf.project_id == project_id),
            key=lambda wf: wf.created_at,
            reverse=True,
        )

    async def delete_chat_workflow(self, workflow_id: str) -> None:
        await self.cancel_chat_workflow(workflow_id)
        self._workflows.pop(workflow_id, None)
        self._results.pop(workflow_id, None)

    async def shutdown(self) -> None:
        for workflow_id in list(self._tokens):
            await self.cancel_chat_workflow(workflow_id)
