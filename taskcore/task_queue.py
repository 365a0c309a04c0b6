"""
Task queue: lifecycle, priority ordering, autonomy levels and approval gates.

Every status write goes through ``TaskQueue._transition`` while holding the
per-task lock, so two callers can never conclude the same task twice.
Events are published only after the session that produced them commits.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .agents import AgentType
from .assessor import classify_error
from .db import Database
from .errors import AlreadyRunningError, InvalidStateError, NotFoundError, ValidationError
from .events import EventBus, EventType
from .models import ApprovalGate, QueuedTask, as_utc, utcnow
from .runner import AgentResult, AgentRunner, ProjectContext

logger = logging.getLogger(__name__)


class TaskType(StrEnum):
    CODE_GENERATION = "code-generation"
    CODE_REVIEW = "code-review"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    SECURITY_AUDIT = "security-audit"
    DEPLOYMENT = "deployment"
    REFACTORING = "refactoring"
    BUG_FIX = "bug-fix"
    TECH_DECISION = "tech-decision"
    DECOMPOSITION = "decomposition"


class AutonomyLevel(StrEnum):
    AUTO = "auto"
    APPROVAL_GATES = "approval_gates"
    SUPERVISED = "supervised"


class TaskStatus(StrEnum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class GateType(StrEnum):
    MANUAL = "manual"
    QUALITY = "quality"
    SECURITY = "security"
    TECH_DECISION = "tech_decision"
    REVIEW = "review"


class GateStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class Checkpoint(StrEnum):
    BEFORE_START = "before_start"
    AFTER_COMPLETION = "after_completion"


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED, TaskStatus.SKIPPED}
)

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.QUEUED, TaskStatus.CANCELLED, TaskStatus.SKIPPED}),
    TaskStatus.QUEUED: frozenset(
        {
            TaskStatus.RUNNING,
            TaskStatus.WAITING_APPROVAL,
            TaskStatus.CANCELLED,
            TaskStatus.SKIPPED,
        }
    ),
    TaskStatus.RUNNING: frozenset(
        {
            TaskStatus.WAITING_APPROVAL,
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        }
    ),
    TaskStatus.WAITING_APPROVAL: frozenset(
        {
            TaskStatus.RUNNING,
            TaskStatus.QUEUED,
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        }
    ),
    # Retry path; the cap is checked by the caller.
    TaskStatus.FAILED: frozenset({TaskStatus.QUEUED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
    TaskStatus.SKIPPED: frozenset(),
}


def _coerce(enum_cls: type[StrEnum], value: Any, label: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Unknown {label}: {value!r} (expected one of: {allowed})") from None


def resolve_checkpoints(level: AutonomyLevel, declared: list[str] | None = None) -> list[str]:
    """Checkpoints a task must pass for its autonomy level.

    ``approval_gates`` tasks block only at the checkpoints they declare,
    falling back to a single review after completion.
    """
    if level == AutonomyLevel.SUPERVISED:
        return [Checkpoint.BEFORE_START.value, Checkpoint.AFTER_COMPLETION.value]
    if level == AutonomyLevel.AUTO:
        return []
    if declared is None:
        return [Checkpoint.AFTER_COMPLETION.value]
    return [_coerce(Checkpoint, c, "checkpoint").value for c in declared]


def build_task_prompt(task: QueuedTask) -> str:
    prompt = task.description or task.title
    data = task.input_data or {}
    if data.get("prompt"):
        prompt = data["prompt"]
    if data.get("context"):
        prompt = f"Context:\n{data['context']}\n\nTask:\n{prompt}"
    if data.get("parent_output"):
        prompt = f"Previous output:\n{data['parent_output']}\n\n{prompt}"
    if data.get("previous_errors"):
        errors = "\n".join(f"- {e}" for e in data["previous_errors"])
        prompt = f"{prompt}\n\nPrevious attempts failed with:\n{errors}"
    if data.get("retry_hint"):
        prompt = f"{prompt}\n\n{data['retry_hint']}"
    return prompt


@dataclass
class _Pending:
    """Events collected inside a session, published after commit."""

    items: list[tuple[EventType, QueuedTask, str, dict[str, Any]]] = field(default_factory=list)

    def add(
        self,
        type_: EventType,
        task: QueuedTask,
        message: str = "",
        data: dict[str, Any] | None = None,
    ) -> None:
        self.items.append((type_, task, message, data or {}))


class TaskQueue:
    """Owns task lifecycle; the only writer of task and gate status."""

    def __init__(
        self,
        database: Database,
        bus: EventBus,
        runner: AgentRunner | None = None,
        *,
        default_priority: int = 50,
        max_retries: int = 2,
    ) -> None:
        self._db = database
        self._bus = bus
        self._runner = runner
        self.default_priority = default_priority
        self.max_retries = max_retries
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._enqueue_lock = asyncio.Lock()
        self._paused = False
        self._in_flight: set[str] = set()  # task ids with an agent turn not yet concluded

    @property
    def paused(self) -> bool:
        return self._paused

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def _publish(self, pending: _Pending) -> None:
        for type_, task, message, data in pending.items:
            await self._bus.publish(
                type_,
                project_id=task.project_id,
                subject_id=task.id,
                message=message,
                data={"task": task.to_dict(), **data},
            )

    async def _require_task(self, session: AsyncSession, task_id: str) -> QueuedTask:
        task = await db.get_task(session, task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    async def _transition(
        self,
        session: AsyncSession,
        task: QueuedTask,
        new_status: TaskStatus,
        message: str | None = None,
    ) -> None:
        current = TaskStatus(task.status)
        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStateError(
                f"Cannot move task {task.id} from {current.value} to {new_status.value}"
            )
        await db.update_task_status(session, task, new_status.value, message)

    async def _open_gate(
        self,
        session: AsyncSession,
        task: QueuedTask,
        pending: _Pending,
        *,
        gate_type: GateType,
        title: str,
        checkpoint: str | None = None,
        description: str | None = None,
        requires_review: bool = False,
        review_data: dict[str, Any] | None = None,
    ) -> ApprovalGate:
        gate = await db.create_gate(
            session,
            task,
            gate_type.value,
            title,
            description=description,
            checkpoint=checkpoint,
            requires_review=requires_review,
            review_data=review_data,
        )
        if task.status == TaskStatus.PENDING:
            await self._transition(session, task, TaskStatus.QUEUED)
        if task.status != TaskStatus.WAITING_APPROVAL:
            await self._transition(
                session, task, TaskStatus.WAITING_APPROVAL, f"Waiting for approval: {title}"
            )
        task.approval_checkpoint = checkpoint
        pending.add(
            EventType.TASK_APPROVAL_REQUIRED,
            task,
            title,
            {"gate": gate.to_dict()},
        )
        return gate

    async def _skip_pending_gates(self, session: AsyncSession, task_id: str) -> None:
        for gate in await db.list_gates(session, task_id, status=GateStatus.PENDING.value):
            gate.status = GateStatus.SKIPPED.value
            gate.resolved_at = utcnow()

    async def _fail_or_requeue(
        self,
        session: AsyncSession,
        task: QueuedTask,
        error: str,
        pending: _Pending,
    ) -> None:
        await self._transition(session, task, TaskStatus.FAILED, error)
        task.error_message = error

        analysis = classify_error(error)
        if analysis.is_retryable and task.retry_count < task.max_retries:
            task.retry_count += 1
            data = dict(task.input_data or {})
            data["previous_errors"] = [*data.get("previous_errors", []), error]
            if analysis.context_hint:
                context = data.get("context") or ""
                data["context"] = f"{context}\n\n{analysis.context_hint}".strip()
            if analysis.suggested_action == "retry-with-context":
                data["retry_hint"] = (
                    "Address the issues from previous attempts and try a different approach if needed."
                )
            task.input_data = data
            task.completed_at = None
            await self._transition(
                session,
                task,
                TaskStatus.QUEUED,
                f"Retry {task.retry_count}/{task.max_retries} after {analysis.error_type} error",
            )
            logger.warning(
                "Task %s failed (%s), retry %d/%d: %s",
                task.id,
                analysis.error_type,
                task.retry_count,
                task.max_retries,
                error,
            )
            pending.add(
                EventType.TASK_QUEUED,
                task,
                "Re-queued after failure",
                {"retry": task.retry_count, "error": error},
            )
            return

        logger.error("Task %s failed: %s", task.id, error)
        pending.add(EventType.TASK_FAILED, task, error, {"error": error})

    # ------------------------------------------------------------------
    # commands
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        project_id: str,
        title: str,
        *,
        task_type: str,
        agent_type: str,
        description: str | None = None,
        parent_task_id: str | None = None,
        roadmap_item_id: str | None = None,
        autonomy_level: str = AutonomyLevel.AUTO,
        priority: int | None = None,
        input_data: dict[str, Any] | None = None,
        checkpoints: list[str] | None = None,
        depends_on: list[str] | None = None,
        estimated_duration: int | None = None,
        max_retries: int | None = None,
    ) -> QueuedTask:
        """Create a task in ``pending``."""
        if not project_id:
            raise ValidationError("project_id is required")
        if not title or not title.strip():
            raise ValidationError("title is required")
        task_type = _coerce(TaskType, task_type, "task type")
        agent_type = _coerce(AgentType, agent_type, "agent type")
        level = _coerce(AutonomyLevel, autonomy_level, "autonomy level")
        if priority is None:
            priority = self.default_priority
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationError(f"priority must be an integer, got {priority!r}")
        resolved = resolve_checkpoints(level, checkpoints)

        pending = _Pending()
        async with self._enqueue_lock:
            async with self._db.session() as session:
                if parent_task_id and await db.get_task(session, parent_task_id) is None:
                    raise NotFoundError(f"Parent task not found: {parent_task_id}")
                task = await db.create_task(
                    session,
                    project_id=project_id,
                    title=title.strip(),
                    description=description,
                    parent_task_id=parent_task_id,
                    roadmap_item_id=roadmap_item_id,
                    task_type=task_type.value,
                    agent_type=agent_type.value,
                    autonomy_level=level.value,
                    priority=priority,
                    queue_position=await db.next_queue_position(session, project_id),
                    checkpoints=resolved,
                    depends_on=list(depends_on or []),
                    input_data=dict(input_data or {}),
                    approval_required=bool(resolved),
                    max_retries=self.max_retries if max_retries is None else max_retries,
                    estimated_duration=estimated_duration,
                )
                await db.update_task_status(session, task, TaskStatus.PENDING.value, "Task created")
                pending.add(EventType.TASK_QUEUED, task, f"Task queued: {task.title}")
        await self._publish(pending)
        return task

    async def list_tasks(self, project_id: str, status: str | None = None) -> list[QueuedTask]:
        statuses = [_coerce(TaskStatus, status, "task status").value] if status else None
        async with self._db.session() as session:
            return await db.list_tasks(session, project_id, statuses)

    async def get_task(self, task_id: str) -> QueuedTask | None:
        async with self._db.session() as session:
            return await db.get_task(session, task_id)

    async def get_tasks_hierarchy(self, project_id: str) -> list[dict[str, Any]]:
        """Root tasks with their subtasks nested under ``subtasks``."""
        tasks = await self.list_tasks(project_id)
        children: dict[str | None, list[QueuedTask]] = defaultdict(list)
        known = {t.id for t in tasks}
        for t in tasks:
            parent = t.parent_task_id if t.parent_task_id in known else None
            children[parent].append(t)

        def build(parent_id: str | None) -> list[dict[str, Any]]:
            return [{"task": t, "subtasks": build(t.id)} for t in children.get(parent_id, [])]

        return build(None)

    async def update_autonomy(
        self,
        task_id: str,
        level: str,
        checkpoints: list[str] | None = None,
    ) -> QueuedTask:
        """Change autonomy of a non-terminal task. Existing gates are left alone."""
        new_level = _coerce(AutonomyLevel, level, "autonomy level")
        resolved = resolve_checkpoints(new_level, checkpoints)
        async with self._locks[task_id]:
            async with self._db.session() as session:
                task = await self._require_task(session, task_id)
                if task.status in TERMINAL_STATUSES:
                    raise InvalidStateError(
                        f"Cannot change autonomy of task {task_id}: task is {task.status}"
                    )
                task.autonomy_level = new_level.value
                task.checkpoints = resolved
                task.approval_required = bool(resolved)
                return task

    async def reorder(self, task_id: str, priority: int) -> QueuedTask:
        async with self._locks[task_id]:
            async with self._db.session() as session:
                task = await self._require_task(session, task_id)
                if task.status in TERMINAL_STATUSES:
                    raise InvalidStateError(f"Cannot reorder task {task_id}: task is {task.status}")
                task.priority = priority
                return task

    async def cancel(self, task_id: str) -> bool:
        """Cancel a non-terminal task. Returns False when it was already terminal."""
        pending = _Pending()
        async with self._locks[task_id]:
            async with self._db.session() as session:
                task = await self._require_task(session, task_id)
                if task.status in TERMINAL_STATUSES:
                    return False
                was_running = task.status == TaskStatus.RUNNING or task_id in self._in_flight
                await self._transition(session, task, TaskStatus.CANCELLED, "Cancelled")
                await self._skip_pending_gates(session, task_id)
                pending.add(EventType.TASK_CANCELLED, task, "Task cancelled")

        if was_running and self._runner is not None:
            await self._runner.cancel(task_id)
        await self._publish(pending)
        return True

    async def purge(self, task_id: str) -> None:
        """Delete a cancelled task and its gates."""
        async with self._locks[task_id]:
            async with self._db.session() as session:
                task = await self._require_task(session, task_id)
                if task.status != TaskStatus.CANCELLED:
                    raise InvalidStateError(
                        f"Only cancelled tasks can be purged; task {task_id} is {task.status}"
                    )
                await db.delete_task(session, task)
        self._locks.pop(task_id, None)

    async def mark_queued(self, task_id: str) -> QueuedTask:
        pending = _Pending()
        async with self._locks[task_id]:
            async with self._db.session() as session:
                task = await self._require_task(session, task_id)
                if task.status == TaskStatus.QUEUED:
                    return task
                await self._transition(session, task, TaskStatus.QUEUED)
                pending.add(EventType.TASK_QUEUED, task, f"Task queued: {task.title}")
        await self._publish(pending)
        return task

    async def retry(self, task_id: str) -> QueuedTask:
        """Manually re-queue a failed task within its retry cap."""
        pending = _Pending()
        async with self._locks[task_id]:
            async with self._db.session() as session:
                task = await self._require_task(session, task_id)
                if task.status != TaskStatus.FAILED:
                    raise InvalidStateError(f"Only failed tasks can be retried; task {task_id} is {task.status}")
                if task.retry_count >= task.max_retries:
                    raise InvalidStateError(
                        f"Task {task_id} has used all {task.max_retries} retries"
                    )
                task.retry_count += 1
                task.completed_at = None
                await self._transition(session, task, TaskStatus.QUEUED, "Manual retry")
                pending.add(EventType.TASK_QUEUED, task, "Re-queued for retry", {"retry": task.retry_count})
        await self._publish(pending)
        return task

    async def pause(self) -> None:
        if self._paused:
            return
        self._paused = True
        await self._bus.publish(EventType.QUEUE_PAUSED, message="Task queue paused")

    async def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        await self._bus.publish(EventType.QUEUE_RESUMED, message="Task queue resumed")

    # ------------------------------------------------------------------
    # approval gates
    # ------------------------------------------------------------------

    async def create_approval_gate(
        self,
        task_id: str,
        gate_type: str,
        title: str,
        *,
        description: str | None = None,
        checkpoint: str | None = None,
        requires_review: bool = False,
        review_data: dict[str, Any] | None = None,
    ) -> ApprovalGate:
        """Attach a pending gate; the task waits for approval until it is resolved."""
        kind = _coerce(GateType, gate_type, "gate type")
        if checkpoint is not None:
            checkpoint = _coerce(Checkpoint, checkpoint, "checkpoint").value
        pending = _Pending()
        async with self._locks[task_id]:
            async with self._db.session() as session:
                task = await self._require_task(session, task_id)
                if task.status in TERMINAL_STATUSES:
                    raise InvalidStateError(f"Cannot add a gate to task {task_id}: task is {task.status}")
                gate = await self._open_gate(
                    session,
                    task,
                    pending,
                    gate_type=kind,
                    title=title,
                    checkpoint=checkpoint,
                    description=description,
                    requires_review=requires_review,
                    review_data=review_data,
                )
        await self._publish(pending)
        return gate

    async def get_approvals(self, task_id: str) -> list[ApprovalGate]:
        async with self._db.session() as session:
            return await db.list_gates(session, task_id)

    async def get_gate(self, gate_id: str) -> ApprovalGate | None:
        async with self._db.session() as session:
            return await db.get_gate(session, gate_id)

    async def list_pending_gates(self, project_id: str) -> list[ApprovalGate]:
        async with self._db.session() as session:
            return await db.list_pending_gates_for_project(session, project_id)

    async def _gate_task_id(self, gate_id: str) -> str:
        gate = await self.get_gate(gate_id)
        if gate is None:
            raise NotFoundError(f"Approval gate not found: {gate_id}")
        return gate.task_id

    async def approve(
        self,
        gate_id: str,
        approved_by: str = "user",
        notes: str | None = None,
    ) -> QueuedTask:
        """Approve a gate and move the task toward completion or the next gate."""
        task_id = await self._gate_task_id(gate_id)
        pending = _Pending()
        async with self._locks[task_id]:
            async with self._db.session() as session:
                gate = await db.get_gate(session, gate_id)
                if gate is None:
                    raise NotFoundError(f"Approval gate not found: {gate_id}")
                if gate.status != GateStatus.PENDING:
                    raise InvalidStateError(f"Approval gate {gate_id} is already {gate.status}")
                now = utcnow()
                gate.status = GateStatus.APPROVED.value
                gate.approved_by = approved_by
                gate.approval_notes = notes
                gate.resolved_at = now

                task = await self._require_task(session, task_id)
                remaining = await db.list_gates(session, task_id, status=GateStatus.PENDING.value)
                if task.status == TaskStatus.WAITING_APPROVAL and not remaining:
                    task.approved_by = approved_by
                    task.approved_at = now
                    work_done = gate.checkpoint == Checkpoint.AFTER_COMPLETION or (
                        gate.checkpoint is None and task.output_data is not None
                    )
                    if task_id in self._in_flight:
                        # The agent turn is still going; its result concludes the task.
                        started_at = task.started_at
                        await self._transition(
                            session, task, TaskStatus.RUNNING, f"Approved by {approved_by}, agent still running"
                        )
                        task.started_at = started_at
                        pending.add(EventType.TASK_STARTED, task, "Task approved, agent still running")
                    elif work_done:
                        await self._transition(session, task, TaskStatus.COMPLETED, f"Approved by {approved_by}")
                        pending.add(EventType.TASK_COMPLETED, task, "Task approved and completed")
                    else:
                        await self._transition(session, task, TaskStatus.QUEUED, f"Approved by {approved_by}")
                        pending.add(EventType.TASK_QUEUED, task, "Task approved, ready to run")
        await self._publish(pending)
        return task

    async def reject(
        self,
        gate_id: str,
        rejected_by: str = "user",
        reason: str | None = None,
    ) -> QueuedTask:
        """Reject a gate; the owning task fails with the reason as its error."""
        task_id = await self._gate_task_id(gate_id)
        pending = _Pending()
        async with self._locks[task_id]:
            async with self._db.session() as session:
                gate = await db.get_gate(session, gate_id)
                if gate is None:
                    raise NotFoundError(f"Approval gate not found: {gate_id}")
                if gate.status != GateStatus.PENDING:
                    raise InvalidStateError(f"Approval gate {gate_id} is already {gate.status}")
                message = reason or f"Rejected by {rejected_by}"
                gate.status = GateStatus.REJECTED.value
                gate.approved_by = rejected_by
                gate.approval_notes = reason
                gate.resolved_at = utcnow()

                task = await self._require_task(session, task_id)
                await self._skip_pending_gates(session, task_id)
                if task.status not in TERMINAL_STATUSES:
                    await self._transition(session, task, TaskStatus.FAILED, message)
                    task.error_message = message
                    pending.add(EventType.TASK_FAILED, task, message, {"error": message})
        await self._publish(pending)
        return task

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    async def _dependencies_met(self, session: AsyncSession, task: QueuedTask) -> bool:
        if not task.depends_on:
            return True
        deps = await db.list_tasks_by_ids(session, task.depends_on)
        done = {d.id for d in deps if d.status == TaskStatus.COMPLETED}
        return all(dep_id in done for dep_id in task.depends_on)

    async def dependencies_satisfied(self, task: QueuedTask) -> bool:
        async with self._db.session() as session:
            return await self._dependencies_met(session, task)

    async def _start_approved(self, session: AsyncSession, task_id: str) -> bool:
        gates = await db.list_gates(session, task_id, status=GateStatus.APPROVED.value)
        return any(g.checkpoint == Checkpoint.BEFORE_START for g in gates)

    async def execute_task(self, task_id: str, context: ProjectContext | None = None) -> QueuedTask:
        """Drive one task through gates, the agent run and its outcome.

        The agent turn runs without holding the task lock or a database
        session, so ``cancel`` can interrupt it.
        """
        if self._paused:
            raise InvalidStateError("Task queue is paused")
        if self._runner is None:
            raise InvalidStateError("No agent runner configured")

        pending = _Pending()
        async with self._locks[task_id]:
            async with self._db.session() as session:
                task = await self._require_task(session, task_id)
                if task_id in self._in_flight:
                    raise AlreadyRunningError(f"Task {task_id} still has an agent turn in flight")
                if task.status == TaskStatus.PENDING:
                    await self._transition(session, task, TaskStatus.QUEUED)
                if task.status != TaskStatus.QUEUED:
                    raise InvalidStateError(f"Task {task_id} is {task.status}, expected queued")
                if not await self._dependencies_met(session, task):
                    raise InvalidStateError(f"Task {task_id} has unfinished dependencies")

                needs_start_gate = Checkpoint.BEFORE_START in (task.checkpoints or [])
                if needs_start_gate and not await self._start_approved(session, task_id):
                    await self._open_gate(
                        session,
                        task,
                        pending,
                        gate_type=GateType.MANUAL,
                        title=f"Approve start: {task.title}",
                        checkpoint=Checkpoint.BEFORE_START.value,
                        description=task.description,
                    )
                    waiting = True
                else:
                    await self._transition(session, task, TaskStatus.RUNNING, "Execution started")
                    pending.add(EventType.TASK_STARTED, task, f"Task started: {task.title}")
                    self._in_flight.add(task_id)
                    waiting = False
                prompt = build_task_prompt(task)
                agent = task.agent_type
                project_id = task.project_id
        await self._publish(pending)
        if waiting:
            return task

        async def on_output(chunk: str) -> None:
            await self._bus.publish(
                EventType.TASK_PROGRESS,
                project_id=project_id,
                subject_id=task_id,
                data={"chunk": chunk},
            )

        try:
            result = await self._runner.run(
                agent,
                prompt,
                context or ProjectContext(project_id=project_id),
                run_id=task_id,
                on_output=on_output,
            )
        except asyncio.CancelledError:
            # Left running in the store; reconcile_running or the watchdog picks it up.
            self._in_flight.discard(task_id)
            raise
        except Exception as exc:
            logger.exception("Agent runner raised for task %s", task_id)
            result = AgentResult(success=False, output="", error=f"Agent runner error: {exc}")

        return await self._finish(task_id, result)

    async def interrupt(self, task_id: str) -> bool:
        """Ask the runner to stop an in-flight turn; the task concludes through ``_finish``."""
        if task_id not in self._in_flight or self._runner is None:
            return False
        return await self._runner.cancel(task_id)

    async def _finish(self, task_id: str, result: AgentResult) -> QueuedTask:
        pending = _Pending()
        async with self._locks[task_id]:
            self._in_flight.discard(task_id)
            async with self._db.session() as session:
                task = await self._require_task(session, task_id)
                if task.status != TaskStatus.RUNNING:
                    # Cancelled, or a gate was added while the agent was working.
                    if task.status == TaskStatus.WAITING_APPROVAL and result.success:
                        task.output_data = {"result": result.output}
                    return task

                started = as_utc(task.started_at)
                if started is not None:
                    task.actual_duration = int((utcnow() - started).total_seconds())

                if not result.success:
                    await self._fail_or_requeue(
                        session, task, result.error or "Agent run failed", pending
                    )
                else:
                    task.output_data = {
                        "result": result.output,
                        "duration_seconds": result.duration_seconds,
                    }
                    task.error_message = None
                    if Checkpoint.AFTER_COMPLETION in (task.checkpoints or []):
                        await self._open_gate(
                            session,
                            task,
                            pending,
                            gate_type=GateType.REVIEW,
                            title=f"Review output: {task.title}",
                            checkpoint=Checkpoint.AFTER_COMPLETION.value,
                            requires_review=True,
                            review_data={"output": result.output[:4000]},
                        )
                    else:
                        await self._transition(session, task, TaskStatus.COMPLETED, "Execution finished")
                        pending.add(EventType.TASK_COMPLETED, task, f"Task completed: {task.title}")
        await self._publish(pending)
        return task

    async def fail_running(self, task_id: str, error: str) -> bool:
        """Abort a running task (e.g. stuck past its deadline), retrying when allowed."""
        pending = _Pending()
        async with self._locks[task_id]:
            async with self._db.session() as session:
                task = await self._require_task(session, task_id)
                if task.status != TaskStatus.RUNNING:
                    return False
                await self._fail_or_requeue(session, task, error, pending)
        if self._runner is not None:
            await self._runner.cancel(task_id)
        await self._publish(pending)
        return True

    async def reconcile_running(self, project_id: str) -> list[str]:
        """Recover tasks left ``running`` by a process that died mid-turn."""
        recovered: list[str] = []
        async with self._db.session() as session:
            orphans = [t.id for t in await db.list_tasks(session, project_id, [TaskStatus.RUNNING.value])]

        for task_id in orphans:
            pending = _Pending()
            async with self._locks[task_id]:
                async with self._db.session() as session:
                    task = await self._require_task(session, task_id)
                    if task.status != TaskStatus.RUNNING:
                        continue
                    await self._fail_or_requeue(
                        session, task, "Interrupted: process stopped while task was running", pending
                    )
            await self._publish(pending)
            recovered.append(task_id)
        if recovered:
            logger.info("Reconciled %d orphaned running task(s) in %s", len(recovered), project_id)
        return recovered
