import pytest

from taskcore.assessor import HeuristicAssessor, RiskLevel, classify_error
from taskcore.models import QueuedTask

CODE_OUTPUT = (
    "Added the login handler with session support.\n\n"
    "```python\ndef login(user):\n    return session_for(user)\n```\n"
)


def _task(task_type: str) -> QueuedTask:
    return QueuedTask(project_id="p1", title="t", task_type=task_type, agent_type="developer")


@pytest.mark.parametrize(
    "message, error_type, retryable, action",
    [
        ("Request timed out after 30s", "transient", True, "retry"),
        ("429 Too Many Requests", "transient", True, "retry"),
        ("ENOENT: no such file or directory", "fixable", True, "retry-with-context"),
        ("SyntaxError: unexpected token", "fixable", True, "retry-with-context"),
        ("EACCES: permission denied", "structural", False, "escalate"),
        ("JavaScript heap out of memory", "structural", False, "escalate"),
        ("please try again later", "transient", True, "retry"),
        ("something odd happened", "unknown", True, "retry-with-context"),
    ],
)
def test_classify_error(message, error_type, retryable, action) -> None:
    analysis = classify_error(message)

    assert analysis.error_type == error_type
    assert analysis.is_retryable is retryable
    assert analysis.suggested_action == action


def test_unknown_errors_carry_the_message_as_hint() -> None:
    assert classify_error("something odd happened").context_hint == (
        "Previous attempt failed with: something odd happened"
    )


@pytest.mark.asyncio
async def test_clean_code_is_auto_approved() -> None:
    assessment = await HeuristicAssessor().assess(_task("code-generation"), CODE_OUTPUT)

    assert assessment.risk_level == RiskLevel.MEDIUM
    assert assessment.quality_score == 100
    assert assessment.can_auto_approve is True
    assert assessment.reasons == []


@pytest.mark.asyncio
async def test_missing_output_needs_a_human() -> None:
    assessment = await HeuristicAssessor().assess(_task("code-generation"), None)

    assert assessment.can_auto_approve is False
    assert "Output Completeness" in assessment.reasons[-1]


@pytest.mark.asyncio
async def test_hardcoded_secret_blocks_approval() -> None:
    output = CODE_OUTPUT + '\n```python\npassword = "hunter2"\n```\n'
    assessment = await HeuristicAssessor().assess(_task("code-generation"), output)

    assert assessment.can_auto_approve is False
    assert not next(c for c in assessment.checks if c.name == "No Hardcoded Secrets").passed


@pytest.mark.asyncio
async def test_destructive_operations_are_critical() -> None:
    output = "Cleaned up the environment by running rm -rf /var/app and redeploying the stack."
    assessment = await HeuristicAssessor().assess(_task("documentation"), output)

    assert assessment.risk_level == RiskLevel.CRITICAL
    assert assessment.can_auto_approve is False


@pytest.mark.asyncio
async def test_deployments_are_high_risk() -> None:
    output = "Rolled the new build out to staging and verified the health checks are green."
    assessment = await HeuristicAssessor().assess(_task("deployment"), output)

    assert assessment.risk_level == RiskLevel.HIGH
    assert assessment.quality_score == 90
    assert assessment.can_auto_approve is True
    assert "Risk level is high" not in assessment.reasons
