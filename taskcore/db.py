"""Async database connection and store operations for tasks, gates and conflicts."""

from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from .errors import SchemaNotInitializedError, is_schema_missing_error, schema_not_initialized_message
from .models import AgentConflict, ApprovalGate, Base, QueuedTask, TaskTransition, utcnow


class Database:
    """Owns one async engine and its session factory."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        kwargs: dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite") and ":memory:" in url:
            # One shared connection, otherwise every session sees an empty database.
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        elif not url.startswith("sqlite"):
            kwargs["pool_pre_ping"] = True
        self.engine: AsyncEngine = create_async_engine(url, **kwargs)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    async def init_db(self) -> None:
        """Create all tables (for development/testing)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Async context manager for database sessions."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as exc:
                await session.rollback()
                if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                    raise SchemaNotInitializedError(
                        schema_not_initialized_message(exc)
                    ) from exc
                raise


# =============================================================================
# Task Operations
# =============================================================================


async def get_task(session: AsyncSession, task_id: str) -> QueuedTask | None:
    """Get a task by its ID."""
    result = await session.execute(select(QueuedTask).where(QueuedTask.id == task_id))
    return result.scalar_one_or_none()


async def next_queue_position(session: AsyncSession, project_id: str) -> int:
    result = await session.execute(
        select(func.coalesce(func.max(QueuedTask.queue_position), 0)).where(
            QueuedTask.project_id == project_id
        )
    )
    return int(result.scalar_one()) + 1


async def create_task(session: AsyncSession, **fields: Any) -> QueuedTask:
    """Create a new task in ``pending``."""
    task = QueuedTask(status="pending", **fields)
    session.add(task)
    await session.flush()
    return task


async def list_tasks(
    session: AsyncSession,
    project_id: str,
    statuses: Sequence[str] | None = None,
) -> list[QueuedTask]:
    """Tasks for a project, most urgent first."""
    query = select(QueuedTask).where(QueuedTask.project_id == project_id)
    if statuses:
        query = query.where(QueuedTask.status.in_(list(statuses)))
    query = query.order_by(
        QueuedTask.priority.asc(),
        QueuedTask.created_at.asc(),
        QueuedTask.queue_position.asc(),
    )
    result = await session.execute(query)
    return list(result.scalars().all())


async def list_tasks_by_ids(session: AsyncSession, task_ids: Sequence[str]) -> list[QueuedTask]:
    if not task_ids:
        return []
    result = await session.execute(select(QueuedTask).where(QueuedTask.id.in_(list(task_ids))))
    return list(result.scalars().all())


async def update_task_status(
    session: AsyncSession,
    task: QueuedTask,
    new_status: str,
    message: str | None = None,
) -> QueuedTask:
    """Update task status with an audit row."""
    old_status = task.status
    task.status = new_status

    if new_status == "running":
        task.started_at = utcnow()
    if new_status in ("completed", "failed", "cancelled", "skipped"):
        task.completed_at = utcnow()

    session.add(
        TaskTransition(
            task_id=task.id,
            from_status=old_status,
            to_status=new_status,
            message=message or f"Status changed from {old_status} to {new_status}",
        )
    )
    return task


async def list_transitions(session: AsyncSession, task_id: str) -> list[TaskTransition]:
    result = await session.execute(
        select(TaskTransition)
        .where(TaskTransition.task_id == task_id)
        .order_by(TaskTransition.id)
    )
    return list(result.scalars().all())


async def delete_task(session: AsyncSession, task: QueuedTask) -> None:
    """Physically remove a task with its gates and audit rows."""
    await session.execute(delete(TaskTransition).where(TaskTransition.task_id == task.id))
    await session.execute(delete(ApprovalGate).where(ApprovalGate.task_id == task.id))
    await session.delete(task)
    await session.flush()


# =============================================================================
# Approval Gate Operations
# =============================================================================


async def create_gate(
    session: AsyncSession,
    task: QueuedTask,
    gate_type: str,
    title: str,
    *,
    description: str | None = None,
    checkpoint: str | None = None,
    requires_review: bool = False,
    review_data: dict[str, Any] | None = None,
) -> ApprovalGate:
    gate = ApprovalGate(
        task_id=task.id,
        gate_type=gate_type,
        checkpoint=checkpoint,
        title=title,
        description=description,
        status="pending",
        requires_review=requires_review,
        review_data=review_data,
    )
    session.add(gate)
    await session.flush()
    return gate


async def get_gate(session: AsyncSession, gate_id: str) -> ApprovalGate | None:
    result = await session.execute(select(ApprovalGate).where(ApprovalGate.id == gate_id))
    return result.scalar_one_or_none()


async def list_gates(
    session: AsyncSession,
    task_id: str,
    status: str | None = None,
) -> list[ApprovalGate]:
    query = select(ApprovalGate).where(ApprovalGate.task_id == task_id)
    if status is not None:
        query = query.where(ApprovalGate.status == status)
    result = await session.execute(query.order_by(ApprovalGate.created_at))
    return list(result.scalars().all())


async def list_pending_gates_for_project(
    session: AsyncSession, project_id: str
) -> list[ApprovalGate]:
    result = await session.execute(
        select(ApprovalGate)
        .join(QueuedTask, QueuedTask.id == ApprovalGate.task_id)
        .where(QueuedTask.project_id == project_id, ApprovalGate.status == "pending")
        .order_by(QueuedTask.priority.asc(), ApprovalGate.created_at.asc())
    )
    return list(result.scalars().all())


# =============================================================================
# Conflict Operations
# =============================================================================


async def create_conflict(session: AsyncSession, **fields: Any) -> AgentConflict:
    conflict = AgentConflict(status="open", **fields)
    session.add(conflict)
    await session.flush()
    return conflict


async def get_conflict(session: AsyncSession, conflict_id: str) -> AgentConflict | None:
    result = await session.execute(select(AgentConflict).where(AgentConflict.id == conflict_id))
    return result.scalar_one_or_none()


async def list_open_conflicts(session: AsyncSession, project_id: str) -> list[AgentConflict]:
    result = await session.execute(
        select(AgentConflict)
        .where(AgentConflict.project_id == project_id, AgentConflict.status == "open")
        .order_by(AgentConflict.created_at.desc())
    )
    return list(result.scalars().all())


async def list_item_conflicts(session: AsyncSession, item_id: str) -> list[AgentConflict]:
    result = await session.execute(
        select(AgentConflict)
        .where(AgentConflict.item_id == item_id)
        .order_by(AgentConflict.created_at.desc())
    )
    return list(result.scalars().all())


async def list_resolved_conflicts(
    session: AsyncSession,
    conflict_type: str,
    agent1: str,
    agent2: str,
    *,
    exclude_id: str | None = None,
) -> list[AgentConflict]:
    """Resolved conflicts for one type and ordered agent pair, oldest resolution first."""
    query = select(AgentConflict).where(
        AgentConflict.conflict_type == conflict_type,
        AgentConflict.agent1 == agent1,
        AgentConflict.agent2 == agent2,
        AgentConflict.status == "resolved",
    )
    if exclude_id is not None:
        query = query.where(AgentConflict.id != exclude_id)
    result = await session.execute(
        query.order_by(AgentConflict.resolved_at.asc(), AgentConflict.created_at.asc())
    )
    return list(result.scalars().all())
