"""
Base workflow abstractions: steps, cooperative run tokens, and the
sequential/parallel composites that drive agent steps.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from ..errors import UpstreamFailure
from ..models import utcnow
from ..runner import AgentRunner, ProjectContext

logger = logging.getLogger(__name__)


class WorkflowStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class StepStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunToken:
    """Cooperative stop signal checked before each step is started.

    A step already in flight is not interrupted by the token itself; the
    owner asks the agent runner to cancel the current turn separately.
    """

    def __init__(self) -> None:
        self._reason: str | None = None

    def pause(self) -> None:
        if self._reason is None:
            self._reason = "paused"

    def cancel(self) -> None:
        self._reason = "cancelled"

    @property
    def stop_requested(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason


@dataclass
class WorkflowStepResult:
    step_index: int
    agent: str
    instruction: str
    output: str = ""
    status: StepStatus = StepStatus.PENDING
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def reset(self) -> None:
        self.output = ""
        self.status = StepStatus.PENDING
        self.error = None
        self.started_at = None
        self.completed_at = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_index": self.step_index,
            "agent": self.agent,
            "instruction": self.instruction,
            "output": self.output,
            "status": self.status.value,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


Callback = Callable[..., Awaitable[None] | None]


@dataclass
class WorkflowCallbacks:
    """Optional observers of a run. Sync or async callables are accepted."""

    on_step_start: Callback | None = None  # (step_index, agent)
    on_step_progress: Callback | None = None  # (step_index, chunk)
    on_step_complete: Callback | None = None  # (step_index, WorkflowStepResult)
    on_workflow_complete: Callback | None = None  # (list[WorkflowStepResult])
    on_error: Callback | None = None  # (error, step_index)

    async def fire(self, name: str, *args: Any) -> None:
        callback = getattr(self, name)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Workflow callback %s failed", name)


@dataclass
class WorkflowContext:
    """Context passed through workflow execution."""

    workflow_id: str
    project: ProjectContext
    token: RunToken
    results: list[WorkflowStepResult]
    callbacks: WorkflowCallbacks = field(default_factory=WorkflowCallbacks)
    state: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.state.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.state[key] = value


@dataclass
class WorkflowResult:
    """Result of a workflow step."""

    status: WorkflowStatus
    output: Any = None
    error: str | None = None

    @classmethod
    def success(cls, output: Any = None) -> WorkflowResult:
        return cls(status=WorkflowStatus.COMPLETED, output=output)

    @classmethod
    def failed(cls, error: str) -> WorkflowResult:
        return cls(status=WorkflowStatus.FAILED, error=error)

    @classmethod
    def paused(cls, reason: str) -> WorkflowResult:
        return cls(status=WorkflowStatus.PAUSED, output=reason)


class WorkflowStep(ABC):
    """Base class for a workflow step."""

    name: str
    description: str = ""

    @abstractmethod
    async def execute(self, ctx: WorkflowContext) -> WorkflowResult:
        pass

    async def on_start(self, ctx: WorkflowContext) -> None:
        del ctx

    async def on_complete(self, ctx: WorkflowContext, result: WorkflowResult) -> None:
        del ctx
        del result

    async def on_error(self, ctx: WorkflowContext, error: Exception) -> None:
        del ctx
        del error


def step_run_id(workflow_id: str, index: int) -> str:
    return f"{workflow_id}:{index}"


class AgentStep(WorkflowStep):
    """One agent turn; writes its progress into ``ctx.results[index]``."""

    CONTEXT_HEADER = "\n\nContext from previous step:\n"

    def __init__(
        self,
        runner: AgentRunner,
        index: int,
        agent: str,
        instruction: str,
        depends_on: list[int] | None = None,
    ):
        self.runner = runner
        self.index = index
        self.agent = agent
        self.instruction = instruction
        self.depends_on = depends_on or []
        self.name = f"step-{index}:{agent}"

    def full_instruction(self, ctx: WorkflowContext) -> str:
        if not self.depends_on:
            return self.instruction
        previous = ctx.results[self.depends_on[-1]].output
        if not previous:
            return self.instruction
        return f"{self.instruction}{self.CONTEXT_HEADER}{previous}"

    async def on_start(self, ctx: WorkflowContext) -> None:
        result = ctx.results[self.index]
        result.reset()
        result.status = StepStatus.RUNNING
        result.started_at = utcnow()
        await ctx.callbacks.fire("on_step_start", self.index, self.agent)

    async def execute(self, ctx: WorkflowContext) -> WorkflowResult:
        step = ctx.results[self.index]
        streamed: list[str] = []

        async def on_output(chunk: str) -> None:
            streamed.append(chunk)
            step.output = "".join(streamed)
            await ctx.callbacks.fire("on_step_progress", self.index, chunk)

        agent_result = await self.runner.run(
            self.agent,
            self.full_instruction(ctx),
            ctx.project,
            run_id=step_run_id(ctx.workflow_id, self.index),
            on_output=on_output,
        )

        if ctx.token.stop_requested and not agent_result.success:
            # Interrupted mid-turn: the step is run again from scratch on resume.
            step.reset()
            return WorkflowResult.paused(ctx.token.reason or "paused")
        if not agent_result.success:
            raise UpstreamFailure(agent_result.error or "Agent run failed")

        step.output = agent_result.output or step.output
        step.status = StepStatus.COMPLETED
        step.completed_at = utcnow()
        return WorkflowResult.success(step.output)

    async def on_complete(self, ctx: WorkflowContext, result: WorkflowResult) -> None:
        if result.status == WorkflowStatus.COMPLETED:
            await ctx.callbacks.fire("on_step_complete", self.index, ctx.results[self.index])

    async def on_error(self, ctx: WorkflowContext, error: Exception) -> None:
        step = ctx.results[self.index]
        step.status = StepStatus.FAILED
        step.error = str(error)
        step.completed_at = utcnow()
        logger.warning("Workflow %s step %d (%s) failed: %s", ctx.workflow_id, self.index, self.agent, error)
        await ctx.callbacks.fire("on_error", str(error), self.index)


class SequentialRun(WorkflowStep):
    """Executes steps in order, skipping those already completed."""

    def __init__(self, name: str, steps: list[AgentStep]):
        self.name = name
        self.steps = steps

    async def execute(self, ctx: WorkflowContext) -> WorkflowResult:
        for position, step in enumerate(self.steps):
            if ctx.results[step.index].status == StepStatus.COMPLETED:
                continue
            if ctx.token.stop_requested:
                return WorkflowResult.paused(ctx.token.reason or "paused")

            await step.on_start(ctx)
            try:
                result = await step.execute(ctx)
            except Exception as exc:
                await step.on_error(ctx, exc)
                for later in self.steps[position + 1 :]:
                    pending = ctx.results[later.index]
                    pending.status = StepStatus.FAILED
                    pending.error = f"Skipped after step {step.index} failed"
                return WorkflowResult.failed(str(exc))
            await step.on_complete(ctx, result)
            if result.status != WorkflowStatus.COMPLETED:
                return result
        return WorkflowResult.success()


class ParallelRun(WorkflowStep):
    """Executes steps concurrently; one failure does not abort the others."""

    def __init__(self, name: str, steps: list[AgentStep]):
        self.name = name
        self.steps = steps

    async def execute(self, ctx: WorkflowContext) -> WorkflowResult:
        async def run_step(step: AgentStep) -> WorkflowResult:
            await step.on_start(ctx)
            try:
                result = await step.execute(ctx)
            except Exception as exc:
                await step.on_error(ctx, exc)
                return WorkflowResult.failed(str(exc))
            await step.on_complete(ctx, result)
            return result

        pending = [s for s in self.steps if ctx.results[s.index].status != StepStatus.COMPLETED]
        if pending and ctx.token.stop_requested:
            return WorkflowResult.paused(ctx.token.reason or "paused")

        results = await asyncio.gather(*[run_step(step) for step in pending], return_exceptions=True)

        statuses: list[WorkflowStatus] = []
        for step, result in zip(pending, results):
            if isinstance(result, BaseException):
                await step.on_error(ctx, result if isinstance(result, Exception) else Exception(str(result)))
                statuses.append(WorkflowStatus.FAILED)
            else:
                statuses.append(result.status)

        if WorkflowStatus.PAUSED in statuses:
            return WorkflowResult.paused(ctx.token.reason or "paused")
        # Failures stay on their steps; the run itself completes once all settle.
        return WorkflowResult.success(output=[ctx.results[s.index].output for s in self.steps])
