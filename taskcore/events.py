"""
Publish/subscribe event bus shared by the queue, executor, arbitrator and workflows.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from redis.asyncio import ConnectionPool, Redis

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    TASK_QUEUED = "task-queued"
    TASK_STARTED = "task-started"
    TASK_PROGRESS = "task-progress"
    TASK_APPROVAL_REQUIRED = "task-approval-required"
    TASK_COMPLETED = "task-completed"
    TASK_FAILED = "task-failed"
    TASK_CANCELLED = "task-cancelled"
    QUEUE_PAUSED = "queue-paused"
    QUEUE_RESUMED = "queue-resumed"

    AUTONOMOUS_STARTED = "autonomous-started"
    AUTONOMOUS_PAUSED = "autonomous-paused"
    AUTONOMOUS_RESUMED = "autonomous-resumed"
    AUTONOMOUS_STOPPED = "autonomous-stopped"

    CONFLICT_DETECTED = "conflict-detected"
    CONFLICT_RESOLVED = "conflict-resolved"
    CONFLICT_DISMISSED = "conflict-dismissed"

    CHAT_WORKFLOW_CREATED = "chat-workflow-created"
    CHAT_WORKFLOW_STEP_COMPLETE = "chat-workflow-step-complete"
    CHAT_WORKFLOW_COMPLETE = "chat-workflow-complete"


@dataclass
class CoreEvent:
    """One published event. ``subject_id`` is the task, conflict or workflow id."""

    type: EventType
    project_id: str | None = None
    subject_id: str | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "project_id": self.project_id,
            "subject_id": self.subject_id,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[CoreEvent], Awaitable[None] | None]


@dataclass
class _Subscription:
    handler: EventHandler
    types: frozenset[EventType] | None


class EventBus:
    """Delivers events to listeners in registration order.

    A listener that raises is logged and skipped; the remaining listeners
    still receive the event.
    """

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []

    def add_listener(
        self, handler: EventHandler, types: Iterable[EventType] | None = None
    ) -> None:
        self._subscriptions.append(
            _Subscription(handler=handler, types=frozenset(types) if types else None)
        )

    def remove_listener(self, handler: EventHandler) -> bool:
        for index, sub in enumerate(self._subscriptions):
            if sub.handler == handler:
                del self._subscriptions[index]
                return True
        return False

    @property
    def listener_count(self) -> int:
        return len(self._subscriptions)

    async def emit(self, event: CoreEvent) -> None:
        # Snapshot so listeners may unsubscribe themselves during delivery.
        for sub in list(self._subscriptions):
            if sub.types is not None and event.type not in sub.types:
                continue
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event listener failed for %s", event.type.value)

    async def publish(
        self,
        type_: EventType,
        *,
        project_id: str | None = None,
        subject_id: str | None = None,
        message: str = "",
        data: dict[str, Any] | None = None,
    ) -> CoreEvent:
        event = CoreEvent(
            type=type_,
            project_id=project_id,
            subject_id=subject_id,
            message=message,
            data=data or {},
        )
        await self.emit(event)
        return event


class RedisEventPublisher:
    """Listener that forwards events to Redis Pub/Sub, one channel per project."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    @classmethod
    def from_url(cls, url: str) -> RedisEventPublisher:
        pool = ConnectionPool.from_url(url, max_connections=20, decode_responses=True)
        return cls(Redis(connection_pool=pool))

    @staticmethod
    def channel_for(event: CoreEvent) -> str:
        return f"channel:project:{event.project_id or 'global'}"

    async def __call__(self, event: CoreEvent) -> None:
        try:
            await self._redis.publish(
                self.channel_for(event), json.dumps(event.to_dict(), default=str)
            )
        except Exception as exc:
            logger.warning("Redis publish failed for %s: %s", event.type.value, exc)

    async def aclose(self) -> None:
        await self._redis.aclose()
