"""Composition root: one set of service objects per process or per test."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .assessor import HeuristicAssessor
from .config import Settings
from .conflicts import ConflictArbitrator
from .db import Database
from .events import EventBus, RedisEventPublisher
from .executor import AutonomousConfig, AutonomousExecutor
from .runner import AgentRunner, build_runner
from .task_queue import TaskQueue
from .workflow.chat import ChatWorkflowExecutor

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    database: Database
    bus: EventBus
    runner: AgentRunner
    queue: TaskQueue
    assessor: HeuristicAssessor
    executor: AutonomousExecutor
    arbitrator: ConflictArbitrator
    workflows: ChatWorkflowExecutor
    redis_publisher: RedisEventPublisher | None = None

    def autonomous_config(self, project_id: str, **overrides) -> AutonomousConfig:
        """Executor config seeded from settings."""
        values = {
            "project_path": self.settings.project_path,
            "poll_interval_seconds": self.settings.poll_interval_seconds,
            "auto_approve_threshold": self.settings.auto_approve_threshold,
            "max_idle_minutes": self.settings.max_idle_minutes,
            "enable_auto_approval": self.settings.enable_auto_approval,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return AutonomousConfig(project_id=project_id, **values)

    async def aclose(self) -> None:
        if self.executor.get_state().is_running:
            await self.executor.stop()
        await self.workflows.shutdown()
        if self.redis_publisher is not None:
            self.bus.remove_listener(self.redis_publisher)
            await self.redis_publisher.aclose()
        await self.database.dispose()


def build_services(
    settings: Settings,
    runner: AgentRunner | None = None,
    *,
    database: Database | None = None,
) -> Services:
    database = database or Database(settings.async_database_url)
    bus = EventBus()
    runner = runner or build_runner(settings)

    redis_publisher = None
    if settings.redis_events_enabled:
        redis_publisher = RedisEventPublisher.from_url(settings.redis_url)
        bus.add_listener(redis_publisher)
        logger.info("Mirroring events to Redis at %s", settings.redis_url)

    queue = TaskQueue(
        database,
        bus,
        runner,
        default_priority=settings.default_priority,
        max_retries=settings.max_retries,
    )
    assessor = HeuristicAssessor()
    return Services(
        settings=settings,
        database=database,
        bus=bus,
        runner=runner,
        queue=queue,
        assessor=assessor,
        executor=AutonomousExecutor(queue, bus, assessor),
        arbitrator=ConflictArbitrator(database, bus),
        workflows=ChatWorkflowExecutor(runner, bus),
        redis_publisher=redis_publisher,
    )
