"""
Heuristic quality and risk assessment of agent output, plus error classification.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol

from .models import QueuedTask


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class QualityCheck:
    name: str
    passed: bool
    score: int
    details: str = ""


@dataclass
class Assessment:
    """Verdict on whether a task's output may proceed without a human."""

    can_auto_approve: bool
    quality_score: int
    risk_level: RiskLevel
    reasons: list[str] = field(default_factory=list)
    checks: list[QualityCheck] = field(default_factory=list)


class ApprovalAssessor(Protocol):
    async def assess(self, task: QueuedTask, output: str | None) -> Assessment: ...


def _check(name: str, passed: bool, pass_score: int, fail_score: int, details: str) -> QualityCheck:
    return QualityCheck(name=name, passed=passed, score=pass_score if passed else fail_score, details=details)


class HeuristicAssessor:
    """Scores output with regex checks per task type and derives a risk level."""

    # Minimum quality per risk level; critical output is never auto-approved.
    RISK_THRESHOLDS = {
        RiskLevel.LOW: 70,
        RiskLevel.MEDIUM: 80,
        RiskLevel.HIGH: 90,
    }

    HIGH_RISK_TASK_TYPES = {"deployment", "security-audit"}
    MEDIUM_RISK_TASK_TYPES = {"code-generation", "refactoring"}
    CODE_TASK_TYPES = {"code-generation", "refactoring", "bug-fix"}

    ERROR_INDICATORS = re.compile(r"error|failed|exception|cannot|unable", re.IGNORECASE)
    CRITICAL_OPERATIONS = re.compile(r"delete\s+production|drop\s+database|rm\s+-rf", re.IGNORECASE)
    SECRET_WORDS = re.compile(r"password|secret|credential|api.?key|token", re.IGNORECASE)
    CHANGE_WORDS = re.compile(r"change|update|modify|set", re.IGNORECASE)
    HARDCODED_SECRET = re.compile(
        r"password\s*=\s*['\"][^'\"]+['\"]|api_key\s*=\s*['\"][^'\"]+['\"]", re.IGNORECASE
    )

    async def assess(self, task: QueuedTask, output: str | None) -> Assessment:
        checks = [self._completeness(output)]
        checks.extend(self._task_type_checks(task.task_type, output or ""))

        risk = self.risk_level(task.task_type, output or "")
        quality = self.quality_score(checks)
        can_auto_approve = self.can_auto_approve(quality, risk)

        reasons: list[str] = []
        if not can_auto_approve:
            if risk in (RiskLevel.HIGH, RiskLevel.CRITICAL):
                reasons.append(f"Risk level is {risk.value}")
            if quality < self.RISK_THRESHOLDS[RiskLevel.LOW]:
                reasons.append(f"Quality score {quality}% is below threshold")
            failed = [c.name for c in checks if not c.passed]
            if failed:
                reasons.append(f"Failed checks: {', '.join(failed)}")

        return Assessment(
            can_auto_approve=can_auto_approve,
            quality_score=quality,
            risk_level=risk,
            reasons=reasons,
            checks=checks,
        )

    def _completeness(self, output: str | None) -> QualityCheck:
        if not output:
            return QualityCheck("Output Completeness", False, 0, "No output produced")
        if len(output) < 50:
            return QualityCheck("Output Completeness", False, 20, "Output too short")
        if self.ERROR_INDICATORS.search(output):
            return QualityCheck("Output Completeness", False, 40, "Output contains error indicators")
        return QualityCheck("Output Completeness", True, 100, f"Output length: {len(output)} characters")

    def _task_type_checks(self, task_type: str, text: str) -> list[QualityCheck]:
        if task_type in self.CODE_TASK_TYPES:
            has_todos = bool(re.search(r"TODO|FIXME|HACK|XXX", text, re.IGNORECASE))
            has_secrets = bool(self.HARDCODED_SECRET.search(text))
            return [
                _check("Contains Code", bool(re.search(r"```[\s\S]*?```", text)), 100, 30, "Code blocks"),
                _check("No TODOs", not has_todos, 100, 60, "Incomplete markers"),
                _check("No Hardcoded Secrets", not has_secrets, 100, 0, "Hardcoded secrets"),
            ]
        if task_type == "testing":
            return [
                _check(
                    "Test Structure",
                    bool(re.search(r"describe|it\(|test\(|expect|assert", text, re.IGNORECASE)),
                    100,
                    40,
                    "Test structure",
                ),
                _check(
                    "Has Assertions",
                    bool(re.search(r"expect|assert|should|toBe|toEqual", text, re.IGNORECASE)),
                    100,
                    30,
                    "Assertions",
                ),
            ]
        if task_type == "security-audit":
            return [
                _check(
                    "Security Analysis",
                    bool(re.search(r"vulnerability|CVE|security issue|risk|severity", text, re.IGNORECASE)),
                    100,
                    50,
                    "Security analysis",
                ),
                _check(
                    "Has Recommendations",
                    bool(re.search(r"recommend|fix|remediate|patch|update", text, re.IGNORECASE)),
                    100,
                    60,
                    "Recommendations",
                ),
            ]
        if task_type == "documentation":
            return [
                _check("Document Structure", bool(re.search(r"^#+\s", text, re.MULTILINE)), 100, 50, "Headers"),
                _check(
                    "Has Examples",
                    bool(re.search(r"```|example|usage", text, re.IGNORECASE)),
                    100,
                    70,
                    "Examples",
                ),
            ]
        return [QualityCheck("Generic Output Check", True, 80, "No specific checks for this task type")]

    def risk_level(self, task_type: str, text: str) -> RiskLevel:
        if task_type in self.HIGH_RISK_TASK_TYPES:
            return RiskLevel.HIGH
        if self.CRITICAL_OPERATIONS.search(text):
            return RiskLevel.CRITICAL
        if self.SECRET_WORDS.search(text) and self.CHANGE_WORDS.search(text):
            return RiskLevel.HIGH
        if task_type in self.MEDIUM_RISK_TASK_TYPES:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    @staticmethod
    def quality_score(checks: list[QualityCheck]) -> int:
        if not checks:
            return 50
        return round(sum(c.score for c in checks) / len(checks))

    def can_auto_approve(self, quality: int, risk: RiskLevel) -> bool:
        if risk == RiskLevel.CRITICAL:
            return False
        return quality >= self.RISK_THRESHOLDS[risk]


# =============================================================================
# Error classification
# =============================================================================


@dataclass
class ErrorAnalysis:
    error_type: str  # transient, fixable, structural, unknown
    is_retryable: bool
    suggested_action: str  # retry, retry-with-context, escalate
    context_hint: str | None = None


# (name, pattern, error_type, action, context hint)
ERROR_PATTERNS: list[tuple[str, re.Pattern[str], str, str, str | None]] = [
    ("timeout", re.compile(r"timeout|timed out|ETIMEDOUT", re.I), "transient", "retry", None),
    ("rate-limit", re.compile(r"rate limit|429|too many requests", re.I), "transient", "retry", None),
    (
        "file-not-found",
        re.compile(r"ENOENT|no such file|file not found|cannot find", re.I),
        "fixable",
        "retry-with-context",
        "The file mentioned was not found. Check the file path or create the file first.",
    ),
    (
        "syntax-error",
        re.compile(r"SyntaxError|unexpected token|parse error", re.I),
        "fixable",
        "retry-with-context",
        "The previous attempt had syntax errors. Make sure the output is syntactically valid.",
    ),
    (
        "type-error",
        re.compile(r"TypeError|is not a function|undefined is not", re.I),
        "fixable",
        "retry-with-context",
        "The previous attempt had type errors. Check types and handle missing values.",
    ),
    (
        "permission-denied",
        re.compile(r"EACCES|permission denied|access denied", re.I),
        "structural",
        "escalate",
        None,
    ),
    (
        "network-error",
        re.compile(r"ECONNREFUSED|ENOTFOUND|network|connection refused", re.I),
        "transient",
        "retry",
        None,
    ),
    ("memory-error", re.compile(r"out of memory|heap|memory limit", re.I), "structural", "escalate", None),
    (
        "missing-dependency",
        re.compile(r"cannot find module|module not found|import.*failed", re.I),
        "fixable",
        "retry-with-context",
        "A required module is missing. Install dependencies or check import paths.",
    ),
]


def classify_error(message: str) -> ErrorAnalysis:
    """Map failure text to a recovery strategy. Escalations are never retried."""
    for _name, pattern, error_type, action, hint in ERROR_PATTERNS:
        if pattern.search(message):
            return ErrorAnalysis(
                error_type=error_type,
                is_retryable=action != "escalate",
                suggested_action=action,
                context_hint=hint,
            )

    transient = bool(re.search(r"temporary|retry|again", message, re.IGNORECASE))
    return ErrorAnalysis(
        error_type="transient" if transient else "unknown",
        is_retryable=True,
        suggested_action="retry" if transient else "retry-with-context",
        context_hint=f"Previous attempt failed with: {message[:200]}",
    )
