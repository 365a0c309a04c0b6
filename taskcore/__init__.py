"""
Task Orchestration Core

Queues work for autonomous development agents, gates it behind human
approvals, arbitrates conflicts between agents and runs multi-agent
workflows parsed from free-text requests.
"""

__version__ = "0.1.0"

# Configuration
from taskcore.config import Settings

# Conflict arbitration
from taskcore.conflicts import ConflictArbitrator, ConflictType, classify_conflict
from taskcore.db import Database

# Errors
from taskcore.errors import (
    AlreadyRunningError,
    InvalidStateError,
    NotFoundError,
    TaskcoreError,
    UpstreamFailure,
    ValidationError,
)

# Events
from taskcore.events import CoreEvent, EventBus, EventType

# Autonomous execution
from taskcore.executor import AutonomousConfig, AutonomousExecutor

# Models
from taskcore.models import AgentConflict, ApprovalGate, QueuedTask

# Agent runner
from taskcore.runner import AgentResult, AgentRunner, ProjectContext
from taskcore.services import Services, build_services

# Task queue
from taskcore.task_queue import AutonomyLevel, TaskQueue, TaskStatus, TaskType

# Workflows
from taskcore.workflow import ChatWorkflowExecutor, parse_workflow_intent

__all__ = [
    # Version
    "__version__",
    # Models
    "QueuedTask",
    "ApprovalGate",
    "AgentConflict",
    # Config
    "Settings",
    "Database",
    "Services",
    "build_services",
    # Errors
    "TaskcoreError",
    "ValidationError",
    "NotFoundError",
    "AlreadyRunningError",
    "InvalidStateError",
    "UpstreamFailure",
    # Events
    "EventBus",
    "EventType",
    "CoreEvent",
    # Queue
    "TaskQueue",
    "TaskType",
    "TaskStatus",
    "AutonomyLevel",
    # Executor
    "AutonomousExecutor",
    "AutonomousConfig",
    # Conflicts
    "ConflictArbitrator",
    "ConflictType",
    "classify_conflict",
    # Workflows
    "ChatWorkflowExecutor",
    "parse_workflow_intent",
    # Runner
    "AgentRunner",
    "AgentResult",
    "ProjectContext",
]
