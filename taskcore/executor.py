"""
Autonomous executor: a supervisory loop that keeps a project's queue moving.

Each tick assesses pending approval gates once, auto-approving the ones the
assessor clears, then runs the most urgent task whose dependencies are done.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from .assessor import ApprovalAssessor
from .errors import AlreadyRunningError, SchemaNotInitializedError, TaskcoreError
from .events import CoreEvent, EventBus, EventType
from .models import QueuedTask, as_utc, utcnow
from .runner import ProjectContext
from .task_queue import AutonomyLevel, TaskQueue, TaskStatus

logger = logging.getLogger(__name__)

AUTO_APPROVER = "autonomous-executor"


@dataclass
class AutonomousConfig:
    project_id: str
    project_path: Path | None = None
    default_autonomy_level: str = AutonomyLevel.AUTO.value
    poll_interval_seconds: float = 5.0
    auto_approve_threshold: int = 80
    max_idle_minutes: float = 30.0
    enable_auto_approval: bool = True
    watchdog_interval_seconds: float = 60.0


@dataclass
class ExecutionError:
    task_id: str
    error: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ExecutionStats:
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_auto_approved: int = 0
    tasks_manual_approval: int = 0
    total_run_time_seconds: float = 0.0
    last_activity_at: datetime = field(default_factory=utcnow)
    errors: list[ExecutionError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_activity_at"] = self.last_activity_at.isoformat()
        data["errors"] = [
            {"task_id": e.task_id, "error": e.error, "timestamp": e.timestamp.isoformat()}
            for e in self.errors
        ]
        return data


@dataclass
class AutonomousState:
    is_running: bool
    is_paused: bool
    started_at: datetime | None
    config: AutonomousConfig | None
    stats: ExecutionStats


class AutonomousExecutor:
    """Single background loop per process over one project's queue."""

    def __init__(
        self,
        queue: TaskQueue,
        bus: EventBus,
        assessor: ApprovalAssessor,
        *,
        stop_timeout_seconds: float = 5.0,
    ) -> None:
        self._queue = queue
        self._bus = bus
        self._assessor = assessor
        self._stop_timeout = stop_timeout_seconds

        self._running = False
        self._paused = False
        self._started_at: datetime | None = None
        self._config: AutonomousConfig | None = None
        self._stats = ExecutionStats()
        self._assessed: set[str] = set()
        self._wake = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._current_task_id: str | None = None
        self._watchdog_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # control
    # ------------------------------------------------------------------

    async def start_continuous(self, config: AutonomousConfig) -> None:
        """Start the loop in the background and return once it is running."""
        if self._running:
            raise AlreadyRunningError("Autonomous executor is already running")
        self._running = True
        self._paused = False
        self._config = config
        self._started_at = utcnow()
        self._stats = ExecutionStats()
        self._assessed = set()
        self._wake = asyncio.Event()

        try:
            await self._queue.reconcile_running(config.project_id)
        except Exception:
            self._running = False
            raise

        self._bus.add_listener(self._on_task_event)
        await self._bus.publish(
            EventType.AUTONOMOUS_STARTED,
            project_id=config.project_id,
            message="Autonomous execution started",
            data={"config": _config_dict(config), "started_at": self._started_at.isoformat()},
        )
        self._loop_task = asyncio.create_task(self._run_loop(config), name="taskcore-autonomous")
        self._watchdog_task = asyncio.create_task(self._watchdog(config), name="taskcore-watchdog")

    async def wait_closed(self) -> None:
        if self._loop_task is not None:
            await asyncio.wait({self._loop_task})

    async def pause(self) -> None:
        if not self._running or self._paused:
            return
        self._paused = True
        self._wake.set()
        await self._bus.publish(
            EventType.AUTONOMOUS_PAUSED,
            project_id=self._project_id,
            message="Autonomous execution paused",
            data={"stats": self._snapshot().to_dict()},
        )

    async def resume(self) -> None:
        if not self._running or not self._paused:
            return
        self._paused = False
        self._wake.set()
        await self._bus.publish(
            EventType.AUTONOMOUS_RESUMED,
            project_id=self._project_id,
            message="Autonomous execution resumed",
        )

    async def stop(self) -> None:
        """Stop the loop. Always reports a stopped event with the final stats."""
        if not self._running:
            await self._publish_stopped("stopped")
            return
        await self._shutdown("stopped")

        loop_task = self._loop_task
        if loop_task is None or loop_task is asyncio.current_task():
            return
        if self._current_task_id is not None:
            await self._queue.interrupt(self._current_task_id)
        done, _ = await asyncio.wait({loop_task}, timeout=self._stop_timeout)
        if not done:
            # Runner ignored the interrupt; reconcile_running picks the task up next start.
            loop_task.cancel()
            logger.warning("Autonomous loop did not finish within %.1fs, cancelled", self._stop_timeout)

    def get_state(self) -> AutonomousState:
        return AutonomousState(
            is_running=self._running,
            is_paused=self._paused,
            started_at=self._started_at,
            config=self._config,
            stats=self._snapshot(),
        )

    def get_stats(self) -> ExecutionStats:
        return self._snapshot()

    async def submit(
        self,
        title: str,
        *,
        task_type: str,
        agent_type: str,
        autonomy_level: str | None = None,
        **kwargs: Any,
    ) -> QueuedTask:
        """Enqueue into the active project using the configured default autonomy."""
        if self._config is None:
            raise TaskcoreError("Autonomous executor has not been started")
        return await self._queue.enqueue(
            self._config.project_id,
            title,
            task_type=task_type,
            agent_type=agent_type,
            autonomy_level=autonomy_level or self._config.default_autonomy_level,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    @property
    def _project_id(self) -> str | None:
        return self._config.project_id if self._config else None

    def _snapshot(self) -> ExecutionStats:
        if self._started_at is not None and self._running:
            self._stats.total_run_time_seconds = (utcnow() - self._started_at).total_seconds()
        return ExecutionStats(
            tasks_completed=self._stats.tasks_completed,
            tasks_failed=self._stats.tasks_failed,
            tasks_auto_approved=self._stats.tasks_auto_approved,
            tasks_manual_approval=self._stats.tasks_manual_approval,
            total_run_time_seconds=self._stats.total_run_time_seconds,
            last_activity_at=self._stats.last_activity_at,
            errors=list(self._stats.errors),
        )

    def _record_error(self, task_id: str, error: str) -> None:
        self._stats.errors.append(ExecutionError(task_id=task_id, error=error))

    def _touch(self) -> None:
        self._stats.last_activity_at = utcnow()

    async def _on_task_event(self, event: CoreEvent) -> None:
        if event.project_id != self._project_id or not event.type.value.startswith("task-"):
            return
        self._touch()
        if event.type == EventType.TASK_COMPLETED:
            self._stats.tasks_completed += 1
        elif event.type == EventType.TASK_FAILED:
            self._stats.tasks_failed += 1
            self._record_error(event.subject_id or "", str(event.data.get("error") or "Unknown error"))

    async def _shutdown(self, reason: str, error: str | None = None) -> None:
        if not self._running:
            return
        self._running = False
        self._paused = False
        self._wake.set()
        self._bus.remove_listener(self._on_task_event)
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            self._watchdog_task = None

        await self._publish_stopped(reason, error)

    async def _publish_stopped(self, reason: str, error: str | None = None) -> None:
        stats = self._snapshot()
        data: dict[str, Any] = {"reason": reason, "stats": stats.to_dict()}
        if error:
            data["error"] = error
        logger.info(
            "Autonomous executor stopped (%s): %d completed, %d failed",
            reason,
            stats.tasks_completed,
            stats.tasks_failed,
        )
        await self._bus.publish(
            EventType.AUTONOMOUS_STOPPED,
            project_id=self._project_id,
            message=f"Autonomous execution stopped: {reason}",
            data=data,
        )

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), seconds)
        except TimeoutError:
            pass
        self._wake.clear()

    async def _run_loop(self, config: AutonomousConfig) -> None:
        while self._running:
            if self._paused:
                await self._wake.wait()
                self._wake.clear()
                continue

            try:
                worked = await self._tick(config)
            except SchemaNotInitializedError as exc:
                self._record_error("executor", str(exc))
                await self._shutdown("error", error=str(exc))
                return
            except Exception as exc:
                logger.exception("Autonomous tick failed")
                self._record_error("executor", str(exc))
                await self._sleep(config.poll_interval_seconds * 2)
                continue

            if not self._running:
                return
            if not worked:
                idle = (utcnow() - self._stats.last_activity_at).total_seconds()
                if idle > config.max_idle_minutes * 60:
                    await self._shutdown("idle")
                    return
            await self._sleep(config.poll_interval_seconds)

    async def _tick(self, config: AutonomousConfig) -> bool:
        worked = False
        if config.enable_auto_approval:
            worked = await self._process_auto_approvals(config)
        if not self._running or self._paused or self._queue.paused:
            return worked

        task = await self._next_task(config.project_id)
        if task is None:
            return worked

        self._touch()
        self._current_task_id = task.id
        try:
            await self._queue.execute_task(
                task.id, ProjectContext(project_id=config.project_id, project_path=config.project_path)
            )
        except TaskcoreError as exc:
            # Lost a race with another caller (cancelled, approved, paused).
            logger.info("Skipped task %s: %s", task.id, exc)
            self._record_error(task.id, str(exc))
        finally:
            self._current_task_id = None
        return True

    async def _next_task(self, project_id: str) -> QueuedTask | None:
        candidates = await self._queue.list_tasks(project_id)
        for task in candidates:
            if task.status not in (TaskStatus.PENDING, TaskStatus.QUEUED):
                continue
            if await self._queue.dependencies_satisfied(task):
                return task
        return None

    async def _process_auto_approvals(self, config: AutonomousConfig) -> bool:
        acted = False
        for gate in await self._queue.list_pending_gates(config.project_id):
            if gate.id in self._assessed:
                continue
            self._assessed.add(gate.id)

            task = await self._queue.get_task(gate.task_id)
            if task is None or task.status != TaskStatus.WAITING_APPROVAL:
                continue
            output = (task.output_data or {}).get("result")
            try:
                assessment = await self._assessor.assess(task, output)
            except Exception as exc:
                logger.warning("Assessment failed for gate %s: %s", gate.id, exc)
                self._record_error(task.id, f"Assessment failed: {exc}")
                continue

            if (
                assessment.can_auto_approve
                and assessment.quality_score >= config.auto_approve_threshold
            ):
                try:
                    await self._queue.approve(
                        gate.id,
                        AUTO_APPROVER,
                        f"Auto-approved: quality score {assessment.quality_score}%, "
                        f"risk {assessment.risk_level}",
                    )
                except TaskcoreError as exc:
                    logger.info("Gate %s resolved elsewhere: %s", gate.id, exc)
                    continue
                self._stats.tasks_auto_approved += 1
                self._touch()
                acted = True
            else:
                self._stats.tasks_manual_approval += 1
                logger.info(
                    "Gate %s needs a human: quality %d, risk %s",
                    gate.id,
                    assessment.quality_score,
                    assessment.risk_level,
                )
        return acted

    async def _watchdog(self, config: AutonomousConfig) -> None:
        """Fail and retry tasks running longer than twice their estimate."""
        while self._running:
            await asyncio.sleep(config.watchdog_interval_seconds)
            try:
                await self.check_stuck_tasks(config.project_id)
            except Exception:
                logger.exception("Stuck-task check failed")

    async def check_stuck_tasks(self, project_id: str) -> list[str]:
        stuck: list[str] = []
        now = utcnow()
        for task in await self._queue.list_tasks(project_id, TaskStatus.RUNNING.value):
            started = as_utc(task.started_at)
            if started is None:
                continue
            limit = (task.estimated_duration or 300) * 2
            elapsed = (now - started).total_seconds()
            if elapsed <= limit:
                continue
            error = f"Timeout after {int(elapsed)}s (limit {limit}s)"
            if await self._queue.fail_running(task.id, error):
                logger.warning("Task %s stuck: %s", task.id, error)
                stuck.append(task.id)
        return stuck


def _config_dict(config: AutonomousConfig) -> dict[str, Any]:
    data = asdict(config)
    data["project_path"] = str(config.project_path) if config.project_path else None
    return data
