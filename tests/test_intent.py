from taskcore.agents import AgentType
from taskcore.workflow.intent import (
    WorkflowType,
    confidence_score,
    extract_instruction,
    extract_tasks,
    mentioned_agents,
    parse_workflow_intent,
    split_by_indicators,
)


def test_sequential_request() -> None:
    intent = parse_workflow_intent("First have the developer implement login, then the tester verify it")

    assert intent.is_workflow is True
    assert intent.confidence == 100
    parsed = intent.parsed
    assert parsed.workflow_type == WorkflowType.SEQUENTIAL
    assert parsed.agents == [AgentType.DEVELOPER, AgentType.TESTER]
    assert [t.agent for t in parsed.tasks] == [AgentType.DEVELOPER, AgentType.TESTER]
    assert parsed.tasks[0].depends_on == []
    assert parsed.tasks[1].depends_on == [0]
    assert "login" in parsed.tasks[0].instruction
    assert "verify" in parsed.tasks[1].instruction


def test_parallel_request() -> None:
    intent = parse_workflow_intent(
        "Have the security team audit the API and the documentation writer document the endpoints in parallel"
    )

    assert intent.is_workflow is True
    parsed = intent.parsed
    assert parsed.workflow_type == WorkflowType.PARALLEL
    assert [t.agent for t in parsed.tasks] == [AgentType.SECURITY, AgentType.DOCUMENTATION]
    assert all(t.depends_on == [] for t in parsed.tasks)
    assert parsed.input_context.startswith("Have the security team")


def test_sequential_wins_over_parallel_words() -> None:
    intent = parse_workflow_intent("The developer and the tester should build it, then test it")

    assert intent.is_workflow is True
    assert intent.parsed.workflow_type == WorkflowType.SEQUENTIAL


def test_single_agent_is_not_a_workflow() -> None:
    intent = parse_workflow_intent("Ask the developer to implement login")

    assert intent.is_workflow is False
    assert intent.confidence == 0
    assert intent.parsed is None


def test_low_confidence_is_not_a_workflow() -> None:
    intent = parse_workflow_intent("A question for the developer or the tester?")

    assert intent.is_workflow is False
    assert intent.confidence == 40


def test_keywords_match_whole_words() -> None:
    assert mentioned_agents("A protester at the podium") == []
    assert mentioned_agents("Ask QA and the DevOps folks") == [AgentType.TESTER, AgentType.DEVOPS]


def test_split_consumes_longest_indicator() -> None:
    assert split_by_indicators("build it, and then test it; finally deploy.") == [
        "build it",
        "test it",
        "deploy",
    ]


def test_instruction_keeps_fragment_when_little_remains() -> None:
    assert extract_instruction("the tester") == "the tester"
    assert extract_instruction("developer to add rate limiting") == "add rate limiting"


def test_generic_tasks_when_nothing_splits() -> None:
    tasks = extract_tasks(
        "please handle this", [AgentType.DEVELOPER, AgentType.TESTER], WorkflowType.SEQUENTIAL
    )

    assert [t.instruction for t in tasks] == [
        "Process the request using developer capabilities",
        "Process the request using tester capabilities",
    ]
    assert tasks[1].depends_on == [0]


def test_confidence_is_capped() -> None:
    assert confidence_score(6, 10, True) == 100
    assert confidence_score(2, 0, False) == 40
    assert confidence_score(2, 1, False) == 55
