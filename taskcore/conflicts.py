"""
Conflict detection and arbitration between agent outputs.

Classification is a pure function of the two outputs so it can be swapped
for a model-backed classifier; the arbitrator only persists and publishes.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import Counter, defaultdict
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .agents import AgentType
from .db import Database
from .errors import InvalidStateError, NotFoundError, ValidationError
from .events import EventBus, EventType
from .models import AgentConflict, utcnow

logger = logging.getLogger(__name__)


class ConflictType(StrEnum):
    SECURITY_VIOLATION = "security_violation"
    REQUIREMENT_CHANGE = "requirement_change"
    TEST_DISAGREEMENT = "test_disagreement"
    PRIORITY_CONFLICT = "priority_conflict"
    APPROACH_CONFLICT = "approach_conflict"


class ConflictSeverity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ConflictStatus(StrEnum):
    OPEN = "open"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class ResolutionDecision(StrEnum):
    SIDE_WITH_AGENT1 = "side_with_agent1"
    SIDE_WITH_AGENT2 = "side_with_agent2"
    COMPROMISE = "compromise"


class ItemType(StrEnum):
    STORY = "story"
    TASK = "task"
    ROADMAP = "roadmap"
    CODE = "code"


@dataclass
class AgentPosition:
    stance: str
    reasoning: str
    recommendation: str
    evidence: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentPosition:
        return cls(
            stance=str(data.get("stance", "")),
            reasoning=str(data.get("reasoning", "")),
            recommendation=str(data.get("recommendation", "")),
            evidence=list(data.get("evidence") or []),
        )


@dataclass
class ConflictResolution:
    decision: ResolutionDecision
    explanation: str
    resolved_by: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision.value,
            "explanation": self.explanation,
            "resolved_by": self.resolved_by,
        }


@dataclass
class ConflictFinding:
    """Output of a classifier: what kind of disagreement, and each side's position."""

    conflict_type: ConflictType
    severity: ConflictSeverity
    agent1_position: AgentPosition
    agent2_position: AgentPosition
    confidence: float = 0.5


@dataclass
class SuggestedResolution:
    decision: ResolutionDecision
    confidence: float
    reasoning: str
    based_on_similar_cases: int


# =============================================================================
# Pattern tables
# =============================================================================


@dataclass(frozen=True)
class ConflictPattern:
    conflict_type: ConflictType
    keywords: tuple[str, ...]
    default_severity: ConflictSeverity
    critical: tuple[str, ...] = ()
    high: tuple[str, ...] = ()
    medium: tuple[str, ...] = ()
    low: tuple[str, ...] = ()


CONFLICT_PATTERNS: dict[ConflictType, ConflictPattern] = {
    ConflictType.SECURITY_VIOLATION: ConflictPattern(
        ConflictType.SECURITY_VIOLATION,
        keywords=(
            "security vulnerability",
            "insecure",
            "xss",
            "sql injection",
            "csrf",
            "unsafe",
            "exploit",
            "attack vector",
        ),
        default_severity=ConflictSeverity.HIGH,
        critical=("critical vulnerability", "exploit", "remote code execution", "rce", "injection"),
        high=("high severity", "data breach", "authentication bypass", "privilege escalation"),
        medium=("medium severity", "weak encryption", "insecure default"),
        low=("low severity", "information disclosure", "minor issue"),
    ),
    ConflictType.REQUIREMENT_CHANGE: ConflictPattern(
        ConflictType.REQUIREMENT_CHANGE,
        keywords=(
            "requirement changed",
            "specification changed",
            "no longer needed",
            "different approach",
            "scope change",
        ),
        default_severity=ConflictSeverity.HIGH,
        critical=("complete redesign", "architecture change", "major rework"),
        high=("significant change", "breaking change", "incompatible"),
        medium=("moderate change", "partial rework"),
        low=("minor change", "small adjustment"),
    ),
    ConflictType.TEST_DISAGREEMENT: ConflictPattern(
        ConflictType.TEST_DISAGREEMENT,
        keywords=(
            "bug",
            "failing test",
            "unexpected behavior",
            "incorrect result",
            "test failure",
            "assertion failed",
        ),
        default_severity=ConflictSeverity.MEDIUM,
        critical=("critical bug", "data loss", "system crash", "complete failure"),
        high=("major bug", "incorrect output", "functional failure"),
        medium=("moderate bug", "edge case", "inconsistent behavior"),
        low=("minor bug", "cosmetic issue", "rare occurrence"),
    ),
    ConflictType.PRIORITY_CONFLICT: ConflictPattern(
        ConflictType.PRIORITY_CONFLICT,
        keywords=("priority", "should be", "more important", "urgent", "blocker", "critical priority"),
        default_severity=ConflictSeverity.MEDIUM,
        critical=("blocker", "blocks release", "showstopper"),
        high=("high priority", "urgent", "asap"),
        medium=("medium priority", "should be higher"),
        low=("low priority", "nice to have"),
    ),
    ConflictType.APPROACH_CONFLICT: ConflictPattern(
        ConflictType.APPROACH_CONFLICT,
        keywords=(
            "instead use",
            "better approach",
            "alternative",
            "different pattern",
            "suggest using",
            "prefer",
        ),
        default_severity=ConflictSeverity.LOW,
        critical=("fundamentally flawed", "unscalable", "unmaintainable"),
        high=("poor design", "inefficient", "technical debt"),
        medium=("could be improved", "suboptimal", "better alternative"),
        low=("minor improvement", "stylistic preference"),
    ),
}

# (construct in code, words a report uses for it, description)
SECURITY_CHECKS: list[tuple[re.Pattern[str], tuple[str, ...], str]] = [
    (
        re.compile(r"\beval\s*\("),
        ("eval", "code injection", "code execution"),
        "Use of eval() - potential code injection",
    ),
    (re.compile(r"innerHTML\s*="), ("innerhtml", "xss"), "Direct innerHTML usage - XSS risk"),
    (re.compile(r"document\.write"), ("document.write", "xss"), "document.write() - XSS risk"),
    (
        re.compile(r"sql.*\+.*['\"`]", re.IGNORECASE),
        ("sql", "injection"),
        "String concatenation in SQL - injection risk",
    ),
    (
        re.compile(r"password.*=.*['\"`][^'\"`]+['\"`]", re.IGNORECASE),
        ("password", "credential", "hardcoded"),
        "Hardcoded password detected",
    ),
    (
        re.compile(r"api[_-]?key.*=.*['\"`][^'\"`]+['\"`]", re.IGNORECASE),
        ("api key", "api_key", "apikey", "secret", "hardcoded"),
        "Hardcoded API key detected",
    ),
]

SECURITY_CONCERN_WORDS = (
    "xss",
    "vulnerab",
    "insecure",
    "injection",
    "risk",
    "unsafe",
    "dangerous",
    "exploit",
    "hardcoded",
)
REQUIREMENT_CHANGE_INDICATORS = (
    "actually",
    "instead",
    "changed",
    "updated requirements",
    "no longer",
    "different approach",
)
TEST_FAILURE_WORDS = ("fail", "error", "incorrect", "unexpected", "bug")
NEGATION_WORDS = ("not", "don't", "never", "avoid", "incorrect", "wrong", "disagree")
RECOMMENDATION_MARKERS = ("recommend", "suggest", "should", "must", "need to")


def _contains_word(text: str, word: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(word)}(?!\w)", text) is not None


def _has_any(text: str, words: tuple[str, ...]) -> bool:
    return any(w in text for w in words)


# =============================================================================
# Pure text helpers
# =============================================================================


def check_security_violations(code: str, description: str) -> list[str]:
    """Dangerous constructs present in ``code`` that ``description`` calls out."""
    report = description.lower()
    return [
        issue
        for pattern, report_words, issue in SECURITY_CHECKS
        if pattern.search(code) and _has_any(report, report_words)
    ]


def severity_from_issues(issues: list[str]) -> ConflictSeverity:
    for issue in issues:
        lowered = issue.lower()
        if _has_any(lowered, ("injection", "code execution", "hardcoded password")):
            return ConflictSeverity.CRITICAL
        if _has_any(lowered, ("xss", "api key", "eval")):
            return ConflictSeverity.HIGH
    return ConflictSeverity.MEDIUM


def determine_severity(text: str, pattern: ConflictPattern) -> ConflictSeverity:
    lowered = text.lower()
    for level, indicators in (
        (ConflictSeverity.CRITICAL, pattern.critical),
        (ConflictSeverity.HIGH, pattern.high),
        (ConflictSeverity.MEDIUM, pattern.medium),
        (ConflictSeverity.LOW, pattern.low),
    ):
        if _has_any(lowered, indicators):
            return level
    return pattern.default_severity


def extract_stance(output: str) -> str:
    return output.strip().split(".")[0][:200]


def extract_evidence(output: str, keywords: tuple[str, ...], limit: int = 3) -> list[str]:
    evidence: list[str] = []
    for line in output.splitlines():
        if _has_any(line.lower(), keywords):
            evidence.append(line.strip())
            if len(evidence) >= limit:
                break
    return evidence


def extract_recommendation(output: str) -> str:
    for line in output.splitlines():
        if _has_any(line.lower(), RECOMMENDATION_MARKERS):
            return line.strip()[:300]
    return "Review and decide on appropriate action"


def _position(output: str, keywords: tuple[str, ...]) -> AgentPosition:
    return AgentPosition(
        stance=extract_stance(output),
        reasoning=output[:500],
        recommendation=extract_recommendation(output),
        evidence=extract_evidence(output, keywords),
    )


def _pattern_conflict(
    pattern: ConflictPattern, output1: str, output2: str
) -> ConflictFinding | None:
    """Both outputs discuss the same topic and at least one of them pushes back."""
    low1, low2 = output1.lower(), output2.lower()
    shared_topic = any(kw in low1 and kw in low2 for kw in pattern.keywords)
    if not shared_topic:
        return None
    negated = any(_contains_word(low1, w) or _contains_word(low2, w) for w in NEGATION_WORDS)
    if not negated:
        return None
    return ConflictFinding(
        conflict_type=pattern.conflict_type,
        severity=determine_severity(output1 + "\n" + output2, pattern),
        agent1_position=_position(output1, pattern.keywords),
        agent2_position=_position(output2, pattern.keywords),
        confidence=0.5,
    )


# =============================================================================
# Per-category heuristics, checked in precedence order
# =============================================================================


def _security_heuristic(agent1: str, output1: str, agent2: str, output2: str) -> ConflictFinding | None:
    pattern = CONFLICT_PATTERNS[ConflictType.SECURITY_VIOLATION]
    for reviewer, report, author, code, reviewer_first in (
        (agent1, output1, agent2, output2, True),
        (agent2, output2, agent1, output1, False),
    ):
        if reviewer != AgentType.SECURITY or author == AgentType.SECURITY:
            continue
        report_lower, code_lower = report.lower(), code.lower()
        if not _has_any(report_lower, SECURITY_CONCERN_WORDS) or _has_any(code_lower, SECURITY_CONCERN_WORDS):
            continue
        issues = check_security_violations(code, report)
        if not issues:
            continue
        reviewer_pos = AgentPosition(
            stance="Security concerns identified",
            reasoning=report[:500],
            recommendation="Address security vulnerabilities before proceeding",
            evidence=issues,
        )
        author_pos = AgentPosition(
            stance="Implementation provided",
            reasoning=code[:500],
            recommendation="Code as written",
        )
        first, second = (reviewer_pos, author_pos) if reviewer_first else (author_pos, reviewer_pos)
        return ConflictFinding(
            conflict_type=ConflictType.SECURITY_VIOLATION,
            severity=severity_from_issues(issues),
            agent1_position=first,
            agent2_position=second,
            confidence=0.9,
        )
    return _pattern_conflict(pattern, output1, output2)


def _requirement_heuristic(agent1: str, output1: str, agent2: str, output2: str) -> ConflictFinding | None:
    pattern = CONFLICT_PATTERNS[ConflictType.REQUIREMENT_CHANGE]
    for owner, owner_out, other_out, owner_first in (
        (agent1, output1, output2, True),
        (agent2, output2, output1, False),
    ):
        if owner != AgentType.PRODUCT_OWNER:
            continue
        owner_lower, other_lower = owner_out.lower(), other_out.lower()
        if not _has_any(owner_lower, REQUIREMENT_CHANGE_INDICATORS):
            continue
        if _has_any(other_lower, REQUIREMENT_CHANGE_INDICATORS):
            continue
        changes = [
            line.strip()
            for line in owner_out.splitlines()
            if _has_any(line.lower(), ("change", "instead", "update", "no longer"))
        ][:5]
        owner_pos = AgentPosition(
            stance="Requirements updated",
            reasoning=owner_out[:500],
            recommendation="Update implementation to match new requirements",
            evidence=changes,
        )
        other_pos = AgentPosition(
            stance="Original implementation",
            reasoning=other_out[:500],
            recommendation="Continue with current approach",
        )
        first, second = (owner_pos, other_pos) if owner_first else (other_pos, owner_pos)
        return ConflictFinding(
            conflict_type=ConflictType.REQUIREMENT_CHANGE,
            severity=determine_severity(owner_out, pattern),
            agent1_position=first,
            agent2_position=second,
            confidence=0.7,
        )
    return _pattern_conflict(pattern, output1, output2)


def _test_heuristic(agent1: str, output1: str, agent2: str, output2: str) -> ConflictFinding | None:
    pattern = CONFLICT_PATTERNS[ConflictType.TEST_DISAGREEMENT]
    if {agent1, agent2} == {AgentType.TESTER.value, AgentType.DEVELOPER.value}:
        tester_out, dev_out = (output1, output2) if agent1 == AgentType.TESTER else (output2, output1)
        tester_lower, dev_lower = tester_out.lower(), dev_out.lower()
        failures = [w for w in TEST_FAILURE_WORDS if w in tester_lower]
        if failures and not _has_any(dev_lower, TEST_FAILURE_WORDS):
            tester_pos = AgentPosition(
                stance="Test failures found",
                reasoning=tester_out[:500],
                recommendation="Fix failing tests",
                evidence=[f"Test {w} mentioned" for w in failures],
            )
            dev_pos = AgentPosition(
                stance="Implementation is correct",
                reasoning=dev_out[:500],
                recommendation="Tests need to be updated",
            )
            first, second = (tester_pos, dev_pos) if agent1 == AgentType.TESTER else (dev_pos, tester_pos)
            return ConflictFinding(
                conflict_type=ConflictType.TEST_DISAGREEMENT,
                severity=determine_severity(tester_out, pattern),
                agent1_position=first,
                agent2_position=second,
                confidence=0.7,
            )
    return _pattern_conflict(pattern, output1, output2)


def _priority_heuristic(agent1: str, output1: str, agent2: str, output2: str) -> ConflictFinding | None:
    return _pattern_conflict(CONFLICT_PATTERNS[ConflictType.PRIORITY_CONFLICT], output1, output2)


def _approach_heuristic(agent1: str, output1: str, agent2: str, output2: str) -> ConflictFinding | None:
    return _pattern_conflict(CONFLICT_PATTERNS[ConflictType.APPROACH_CONFLICT], output1, output2)


Heuristic = Callable[[str, str, str, str], ConflictFinding | None]

HEURISTICS: list[Heuristic] = [
    _security_heuristic,
    _requirement_heuristic,
    _test_heuristic,
    _priority_heuristic,
    _approach_heuristic,
]


def classify_conflict(agent1: str, output1: str, agent2: str, output2: str) -> ConflictFinding | None:
    """First category whose heuristic fires, or None when the outputs agree."""
    if " ".join(output1.lower().split()) == " ".join(output2.lower().split()):
        return None
    for heuristic in HEURISTICS:
        finding = heuristic(agent1, output1, agent2, output2)
        if finding is not None:
            return finding
    return None


ConflictClassifier = Callable[[str, str, str, str], ConflictFinding | None]


def _coerce(enum_cls: type[StrEnum], value: Any, label: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Unknown {label}: {value!r} (expected one of: {allowed})") from None


# =============================================================================
# Arbitrator
# =============================================================================


class ConflictArbitrator:
    """Persists, resolves and learns from agent conflicts."""

    def __init__(
        self,
        database: Database,
        bus: EventBus,
        classifier: ConflictClassifier = classify_conflict,
    ) -> None:
        self._db = database
        self._bus = bus
        self._classifier = classifier
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _publish(self, type_: EventType, conflict: AgentConflict, message: str) -> None:
        await self._bus.publish(
            type_,
            project_id=conflict.project_id,
            subject_id=conflict.id,
            message=message,
            data={"conflict": conflict.to_dict()},
        )

    async def detect_conflict(
        self,
        project_id: str,
        item_id: str,
        item_type: str,
        agent1: str,
        agent1_output: str,
        agent2: str,
        agent2_output: str,
        *,
        severity: str | None = None,
    ) -> AgentConflict | None:
        """Classify two outputs and record a conflict when one is found."""
        item_type = _coerce(ItemType, item_type, "item type")
        agent1 = _coerce(AgentType, agent1, "agent type")
        agent2 = _coerce(AgentType, agent2, "agent type")
        override = _coerce(ConflictSeverity, severity, "severity") if severity else None

        finding = self._classifier(agent1.value, agent1_output, agent2.value, agent2_output)
        if finding is None:
            return None
        logger.info(
            "Detected %s between %s and %s on %s %s",
            finding.conflict_type.value,
            agent1.value,
            agent2.value,
            item_type.value,
            item_id,
        )
        return await self._store(
            project_id=project_id,
            item_id=item_id,
            item_type=item_type.value,
            conflict_type=finding.conflict_type.value,
            agent1=agent1.value,
            agent1_position=finding.agent1_position.to_dict(),
            agent2=agent2.value,
            agent2_position=finding.agent2_position.to_dict(),
            severity=(override or finding.severity).value,
        )

    async def report_conflict(
        self,
        project_id: str,
        item_id: str,
        item_type: str,
        conflict_type: str,
        agent1: str,
        agent1_position: AgentPosition | dict[str, Any],
        agent2: str,
        agent2_position: AgentPosition | dict[str, Any],
        severity: str = ConflictSeverity.MEDIUM,
    ) -> AgentConflict:
        """Record a conflict of a known category without running detection."""
        item_type = _coerce(ItemType, item_type, "item type")
        kind = _coerce(ConflictType, conflict_type, "conflict type")
        agent1 = _coerce(AgentType, agent1, "agent type")
        agent2 = _coerce(AgentType, agent2, "agent type")
        level = _coerce(ConflictSeverity, severity, "severity")
        return await self._store(
            project_id=project_id,
            item_id=item_id,
            item_type=item_type.value,
            conflict_type=kind.value,
            agent1=agent1.value,
            agent1_position=_position_dict(agent1_position),
            agent2=agent2.value,
            agent2_position=_position_dict(agent2_position),
            severity=level.value,
        )

    async def _store(self, **fields: Any) -> AgentConflict:
        async with self._db.session() as session:
            conflict = await db.create_conflict(session, **fields)
        await self._publish(
            EventType.CONFLICT_DETECTED,
            conflict,
            f"{conflict.conflict_type} between {conflict.agent1} and {conflict.agent2}",
        )
        return conflict

    async def resolve_conflict(
        self,
        conflict_id: str,
        decision: str,
        explanation: str,
        resolved_by: str = "user",
    ) -> AgentConflict:
        resolution = ConflictResolution(
            decision=_coerce(ResolutionDecision, decision, "resolution decision"),
            explanation=explanation,
            resolved_by=resolved_by,
        )
        async with self._locks[conflict_id]:
            async with self._db.session() as session:
                conflict = await self._require_open(session, conflict_id)
                conflict.status = ConflictStatus.RESOLVED.value
                conflict.resolution = resolution.to_dict()
                conflict.resolved_by = resolved_by
                conflict.resolved_at = utcnow()
        await self._publish(EventType.CONFLICT_RESOLVED, conflict, f"Resolved: {resolution.decision.value}")
        return conflict

    async def dismiss_conflict(self, conflict_id: str, reason: str | None = None) -> AgentConflict:
        async with self._locks[conflict_id]:
            async with self._db.session() as session:
                conflict = await self._require_open(session, conflict_id)
                conflict.status = ConflictStatus.DISMISSED.value
                conflict.resolution = None
                conflict.dismissal_reason = reason
                conflict.resolved_at = utcnow()
        await self._publish(EventType.CONFLICT_DISMISSED, conflict, reason or "Dismissed")
        return conflict

    async def _require_open(self, session: AsyncSession, conflict_id: str) -> AgentConflict:
        conflict = await db.get_conflict(session, conflict_id)
        if conflict is None:
            raise NotFoundError(f"Conflict not found: {conflict_id}")
        if conflict.status != ConflictStatus.OPEN:
            raise InvalidStateError(f"Conflict {conflict_id} is already {conflict.status}")
        return conflict

    async def get_conflict(self, conflict_id: str) -> AgentConflict | None:
        async with self._db.session() as session:
            return await db.get_conflict(session, conflict_id)

    async def get_open_conflicts(self, project_id: str) -> list[AgentConflict]:
        async with self._db.session() as session:
            return await db.list_open_conflicts(session, project_id)

    async def get_item_conflicts(self, item_id: str) -> list[AgentConflict]:
        async with self._db.session() as session:
            return await db.list_item_conflicts(session, item_id)

    async def suggest_resolution(self, conflict_id: str) -> SuggestedResolution | None:
        """Majority decision over past resolutions for the same type and agent pair."""
        async with self._db.session() as session:
            conflict = await db.get_conflict(session, conflict_id)
            if conflict is None:
                return None
            history = await db.list_resolved_conflicts(
                session,
                conflict.conflict_type,
                conflict.agent1,
                conflict.agent2,
                exclude_id=conflict.id,
            )

        votes: Counter[str] = Counter()
        for past in history:
            decision = (past.resolution or {}).get("decision")
            if decision in {d.value for d in ResolutionDecision}:
                votes[decision] += 1
        total = sum(votes.values())
        if total == 0:
            return None

        # most_common keeps first-seen order among equal counts
        decision, count = votes.most_common(1)[0]
        return SuggestedResolution(
            decision=ResolutionDecision(decision),
            confidence=count / total,
            reasoning=f"Based on {total} similar past conflicts, {decision} was chosen {count} times",
            based_on_similar_cases=total,
        )


def _position_dict(position: AgentPosition | dict[str, Any]) -> dict[str, Any]:
    if isinstance(position, AgentPosition):
        return position.to_dict()
    return AgentPosition.from_dict(position).to_dict()
