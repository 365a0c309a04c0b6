"""Multi-agent workflows parsed from free-text requests."""

from taskcore.workflow.base import (
    RunToken,
    StepStatus,
    WorkflowCallbacks,
    WorkflowStepResult,
)
from taskcore.workflow.chat import ChatWorkflowExecutor, ChatWorkflowRequest, ChatWorkflowStatus
from taskcore.workflow.intent import (
    ParsedIntent,
    WorkflowIntent,
    WorkflowTask,
    WorkflowType,
    parse_workflow_intent,
)

__all__ = [
    "ChatWorkflowExecutor",
    "ChatWorkflowRequest",
    "ChatWorkflowStatus",
    "ParsedIntent",
    "RunToken",
    "StepStatus",
    "WorkflowCallbacks",
    "WorkflowIntent",
    "WorkflowStepResult",
    "WorkflowTask",
    "WorkflowType",
    "parse_workflow_intent",
]
