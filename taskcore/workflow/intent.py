"""
Free-text to multi-agent workflow intent.

Keyword heuristics only; ``parse_workflow_intent`` is a pure function so it
can be replaced by a model-backed parser.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ..agents import AgentType


class WorkflowType(StrEnum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


AGENT_PATTERNS: dict[AgentType, tuple[str, ...]] = {
    AgentType.DEVELOPER: ("developer", "dev", "implement", "code", "build"),
    AgentType.PRODUCT_OWNER: ("product owner", "po", "refine", "story", "requirement"),
    AgentType.TESTER: ("tester", "test", "qa", "quality"),
    AgentType.SECURITY: ("security", "secure", "audit", "vulnerability"),
    AgentType.DEVOPS: ("devops", "deploy", "infrastructure", "ci/cd", "pipeline"),
    AgentType.DOCUMENTATION: ("documentation", "docs", "document", "write docs"),
}

SEQUENTIAL_INDICATORS = (
    "and then",
    "after that",
    "followed by",
    "once done",
    "then",
    "next",
    "afterwards",
    "subsequently",
    "after",
    "finally",
    "lastly",
)

PARALLEL_INDICATORS = (
    "in parallel",
    "at the same time",
    "together",
    "simultaneously",
    "concurrently",
    "both",
    "also",
    "and",
)

ACTION_VERBS = (
    "review",
    "implement",
    "test",
    "audit",
    "document",
    "refine",
    "create",
    "generate",
    "analyze",
    "check",
    "validate",
    "build",
    "verify",
    "fix",
    "write",
    "deploy",
)

CONFIDENCE_THRESHOLD = 50


def _word_re(phrase: str) -> re.Pattern[str]:
    return re.compile(rf"(?<!\w){re.escape(phrase)}(?!\w)", re.IGNORECASE)


_KEYWORD_RES = {agent: [_word_re(k) for k in keywords] for agent, keywords in AGENT_PATTERNS.items()}
_SEQUENTIAL_RES = [_word_re(i) for i in SEQUENTIAL_INDICATORS]
_PARALLEL_RES = [_word_re(i) for i in PARALLEL_INDICATORS]
_VERB_RES = [_word_re(v) for v in ACTION_VERBS]
# Longest indicators first so "and then" is consumed before "and".
_SPLIT_RE = re.compile(
    "|".join(
        rf"(?<!\w){re.escape(i)}(?!\w)"
        for i in sorted(SEQUENTIAL_INDICATORS + PARALLEL_INDICATORS, key=len, reverse=True)
    ),
    re.IGNORECASE,
)


@dataclass
class WorkflowTask:
    agent: AgentType
    instruction: str
    depends_on: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"agent": self.agent.value, "instruction": self.instruction, "depends_on": list(self.depends_on)}


@dataclass
class ParsedIntent:
    workflow_type: WorkflowType
    agents: list[AgentType]
    tasks: list[WorkflowTask]
    input_context: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_type": self.workflow_type.value,
            "agents": [a.value for a in self.agents],
            "tasks": [t.to_dict() for t in self.tasks],
            "input_context": self.input_context,
        }


@dataclass
class WorkflowIntent:
    is_workflow: bool
    confidence: int
    parsed: ParsedIntent | None = None


def mentioned_agents(text: str) -> list[AgentType]:
    """Agents referenced in ``text``, in pattern order."""
    return [agent for agent, regexes in _KEYWORD_RES.items() if any(r.search(text) for r in regexes)]


def _has_any(regexes: list[re.Pattern[str]], text: str) -> bool:
    return any(r.search(text) for r in regexes)


def split_by_indicators(message: str) -> list[str]:
    return [part.strip(" ,;.") for part in _SPLIT_RE.split(message) if part.strip(" ,;.")]


def _agent_in_text(text: str, agents: list[AgentType]) -> AgentType | None:
    for agent in agents:
        if _has_any(_KEYWORD_RES[agent], text):
            return agent
    return None


def extract_instruction(text: str) -> str:
    """Strip agent keywords from a fragment; keep the fragment if little remains."""
    instruction = text.strip()
    for regexes in _KEYWORD_RES.values():
        for regex in regexes:
            instruction = regex.sub("", instruction)
    instruction = re.sub(r"\s{2,}", " ", instruction).strip(" ,;.")
    instruction = re.sub(r"^to\s+", "", instruction, flags=re.IGNORECASE)
    if len(instruction) < 10:
        return text.strip()
    return instruction


def extract_tasks(message: str, agents: list[AgentType], workflow_type: WorkflowType) -> list[WorkflowTask]:
    tasks: list[WorkflowTask] = []
    for part in split_by_indicators(message):
        agent = _agent_in_text(part, agents)
        if agent is None:
            continue
        tasks.append(WorkflowTask(agent=agent, instruction=extract_instruction(part)))

    if not tasks:
        tasks = [
            WorkflowTask(agent=agent, instruction=f"Process the request using {agent.value} capabilities")
            for agent in agents
        ]

    if workflow_type == WorkflowType.SEQUENTIAL:
        for index, task in enumerate(tasks[1:], start=1):
            task.depends_on = [index - 1]
    return tasks


def confidence_score(agent_count: int, verb_count: int, has_indicator: bool) -> int:
    score = min(agent_count * 20, 40) + min(verb_count * 15, 30) + (30 if has_indicator else 0)
    return min(score, 100)


def parse_workflow_intent(message: str) -> WorkflowIntent:
    """Detect a multi-agent request and derive its ordered task list."""
    agents = mentioned_agents(message)
    if len(agents) < 2:
        return WorkflowIntent(is_workflow=False, confidence=0)

    sequential = _has_any(_SEQUENTIAL_RES, message)
    parallel = _has_any(_PARALLEL_RES, message)
    workflow_type = WorkflowType.PARALLEL if parallel and not sequential else WorkflowType.SEQUENTIAL

    verbs = sum(1 for r in _VERB_RES if r.search(message))
    confidence = confidence_score(len(agents), verbs, sequential or parallel)
    if confidence < CONFIDENCE_THRESHOLD:
        return WorkflowIntent(is_workflow=False, confidence=confidence)

    return WorkflowIntent(
        is_workflow=True,
        confidence=confidence,
        parsed=ParsedIntent(
            workflow_type=workflow_type,
            agents=agents,
            tasks=extract_tasks(message, agents, workflow_type),
            input_context=message,
        ),
    )
