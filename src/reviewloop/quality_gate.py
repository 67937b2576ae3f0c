from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Literal

from reviewloop.models import (
    ISSUE_CATEGORIES,
    SEVERITY_ORDER,
    IssueCategory,
    QualityGateThresholds,
    QualityMetrics,
    ReviewIssue,
    Severity,
    is_severity_at_or_above,
)
from reviewloop.observability import log_event


LOGGER = logging.getLogger("reviewloop.quality_gate")

CheckStatus = Literal["passed", "failed", "skipped"]
GateVerdict = Literal["passed", "failed", "warning"]

SEVERITY_CHECK = "Severity Threshold"
REQUIRED_CATEGORIES_CHECK = "Required Categories"
TEST_COVERAGE_CHECK = "Test Coverage"
COMPLEXITY_CHECK = "Code Complexity"
DUPLICATION_CHECK = "Code Duplication"


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: CheckStatus
    message: str
    current_value: float | None = None
    threshold: float | None = None
    details: tuple[str, ...] = ()


@dataclass(frozen=True)
class QualityGateEvaluation:
    verdict: GateVerdict
    should_block_pr: bool
    summary: str
    checks: tuple[CheckResult, ...]
    severity_counts: dict[Severity, int]
    category_counts: dict[IssueCategory, int]
    total_issues: int
    evaluated_at: str

    def check(self, name: str) -> CheckResult | None:
        for item in self.checks:
            if item.name == name:
                return item
        return None


def count_issues_by_severity(issues: Iterable[ReviewIssue]) -> dict[Severity, int]:
    counts: dict[Severity, int] = {severity: 0 for severity in SEVERITY_ORDER}
    for issue in issues:
        counts[issue.severity] += 1
    return counts


def count_issues_by_category(issues: Iterable[ReviewIssue]) -> dict[IssueCategory, int]:
    counts: dict[IssueCategory, int] = {category: 0 for category in ISSUE_CATEGORIES}
    for issue in issues:
        counts[issue.category] += 1
    return counts


def count_issues_at_or_above_severity(issues: Iterable[ReviewIssue], threshold: Severity) -> int:
    return sum(1 for issue in issues if is_severity_at_or_above(issue.severity, threshold))


def get_issues_in_category(
    issues: Iterable[ReviewIssue], category: IssueCategory
) -> tuple[ReviewIssue, ...]:
    return tuple(issue for issue in issues if issue.category == category)


def get_blocking_issues(
    issues: Iterable[ReviewIssue],
    threshold: Severity,
    required_categories: Sequence[IssueCategory] = ("security",),
) -> tuple[ReviewIssue, ...]:
    """Issues that block a PR: at or above ``threshold``, or in a required category."""
    required = set(required_categories)
    return tuple(
        issue
        for issue in issues
        if is_severity_at_or_above(issue.severity, threshold) or issue.category in required
    )


def _check_severity_threshold(
    issues: Sequence[ReviewIssue], severity_threshold: Severity
) -> CheckResult:
    blocking = [
        issue for issue in issues if is_severity_at_or_above(issue.severity, severity_threshold)
    ]
    if not blocking:
        return CheckResult(
            name=SEVERITY_CHECK,
            status="passed",
            message=f"No issues at or above '{severity_threshold}' severity",
            current_value=0,
            threshold=0,
        )
    return CheckResult(
        name=SEVERITY_CHECK,
        status="failed",
        message=f"Found {len(blocking)} issue(s) at or above '{severity_threshold}' severity",
        current_value=len(blocking),
        threshold=0,
        details=tuple(f"[{issue.severity}] {issue.description[:100]}" for issue in blocking[:5]),
    )


def _check_required_categories(
    issues: Sequence[ReviewIssue], required_categories: Sequence[IssueCategory]
) -> CheckResult:
    if not required_categories:
        return CheckResult(
            name=REQUIRED_CATEGORIES_CHECK,
            status="skipped",
            message="No required categories configured",
        )

    failed: list[str] = []
    details: list[str] = []
    for category in required_categories:
        in_category = get_issues_in_category(issues, category)
        if not in_category:
            continue
        failed.append(f"{category}: {len(in_category)}")
        details.extend(f"[{category}] {issue.description[:80]}" for issue in in_category[:3])

    if not failed:
        return CheckResult(
            name=REQUIRED_CATEGORIES_CHECK,
            status="passed",
            message=(
                f"All required categories ({', '.join(required_categories)}) have zero issues"
            ),
        )
    return CheckResult(
        name=REQUIRED_CATEGORIES_CHECK,
        status="failed",
        message=f"Issues found in required categories: {', '.join(failed)}",
        details=tuple(details),
    )


def _check_test_coverage(coverage: float | None, minimum: float) -> CheckResult:
    if coverage is None:
        return CheckResult(
            name=TEST_COVERAGE_CHECK,
            status="skipped",
            message="Test coverage data not available",
        )
    if coverage >= minimum:
        return CheckResult(
            name=TEST_COVERAGE_CHECK,
            status="passed",
            message=f"Test coverage {coverage:.1f}% meets minimum {minimum:g}%",
            current_value=coverage,
            threshold=minimum,
        )
    return CheckResult(
        name=TEST_COVERAGE_CHECK,
        status="failed",
        message=f"Test coverage {coverage:.1f}% is below minimum {minimum:g}%",
        current_value=coverage,
        threshold=minimum,
    )


def _check_complexity(
    complexity_by_function: dict[str, int] | None, max_complexity: int
) -> CheckResult:
    if not complexity_by_function:
        return CheckResult(
            name=COMPLEXITY_CHECK,
            status="skipped",
            message="Complexity data not available",
        )

    max_found = max(complexity_by_function.values())
    violations = sorted(
        (
            (name, complexity)
            for name, complexity in complexity_by_function.items()
            if complexity > max_complexity
        ),
        key=lambda item: (-item[1], item[0]),
    )
    if not violations:
        return CheckResult(
            name=COMPLEXITY_CHECK,
            status="passed",
            message=(
                f"All functions have complexity <= {max_complexity} (max found: {max_found})"
            ),
            current_value=max_found,
            threshold=max_complexity,
        )
    return CheckResult(
        name=COMPLEXITY_CHECK,
        status="failed",
        message=f"{len(violations)} function(s) exceed complexity limit of {max_complexity}",
        current_value=violations[0][1],
        threshold=max_complexity,
        details=tuple(f"{name}: complexity {complexity}" for name, complexity in violations[:5]),
    )


def _check_duplication(duplication: float | None, maximum: float) -> CheckResult:
    if duplication is None:
        return CheckResult(
            name=DUPLICATION_CHECK,
            status="skipped",
            message="Duplication data not available",
        )
    if duplication <= maximum:
        return CheckResult(
            name=DUPLICATION_CHECK,
            status="passed",
            message=f"Code duplication {duplication:.1f}% is within limit of {maximum:g}%",
            current_value=duplication,
            threshold=maximum,
        )
    return CheckResult(
        name=DUPLICATION_CHECK,
        status="failed",
        message=f"Code duplication {duplication:.1f}% exceeds limit of {maximum:g}%",
        current_value=duplication,
        threshold=maximum,
    )


def _summarize(
    verdict: GateVerdict,
    checks: Sequence[CheckResult],
    severity_counts: dict[Severity, int],
) -> str:
    failed = [check for check in checks if check.status == "failed"]
    passed = [check for check in checks if check.status == "passed"]
    skipped = [check for check in checks if check.status == "skipped"]
    total_issues = sum(severity_counts.values())

    if verdict == "passed":
        summary = f"Quality gate passed. {len(passed)} check(s) passed"
        if skipped:
            summary += f", {len(skipped)} skipped"
        summary += "."
        if total_issues:
            summary += f" {total_issues} non-blocking issue(s) found."
        return summary
    if verdict == "failed":
        names = ", ".join(check.name for check in failed)
        summary = f"Quality gate failed. {len(failed)} check(s) failed: {names}."
        if severity_counts["critical"]:
            summary += f" {severity_counts['critical']} critical issue(s)."
        if severity_counts["high"]:
            summary += f" {severity_counts['high']} high severity issue(s)."
        return summary
    return (
        f"Quality gate passed with warnings. {len(passed)} check(s) passed, "
        f"{len(skipped)} skipped."
    )


def evaluate_quality_gate(
    issues: Sequence[ReviewIssue],
    thresholds: QualityGateThresholds,
    severity_threshold: Severity,
    metrics: QualityMetrics | None = None,
    *,
    evaluated_at: str | None = None,
) -> QualityGateEvaluation:
    """Run the five gate checks and derive a verdict.

    Any failed check blocks the PR. When every check is skipped the verdict is
    ``warning`` and the PR is not blocked. The result depends only on the
    arguments, apart from ``evaluated_at`` when it is not supplied.
    """
    effective_metrics = metrics or QualityMetrics()
    checks = (
        _check_severity_threshold(issues, severity_threshold),
        _check_required_categories(issues, thresholds.required_categories),
        _check_test_coverage(effective_metrics.test_coverage, thresholds.min_test_coverage),
        _check_complexity(effective_metrics.complexity_by_function, thresholds.max_complexity),
        _check_duplication(effective_metrics.duplication_percentage, thresholds.max_duplication),
    )

    failed_names = [check.name for check in checks if check.status == "failed"]
    any_passed = any(check.status == "passed" for check in checks)
    verdict: GateVerdict
    if failed_names:
        verdict = "failed"
    elif not any_passed:
        verdict = "warning"
    else:
        verdict = "passed"

    severity_counts = count_issues_by_severity(issues)
    log_event(
        LOGGER,
        "quality_gate_evaluated",
        verdict=verdict,
        issue_count=len(issues),
        severity_threshold=severity_threshold,
        failed_checks=failed_names,
    )
    return QualityGateEvaluation(
        verdict=verdict,
        should_block_pr=verdict == "failed",
        summary=_summarize(verdict, checks, severity_counts),
        checks=checks,
        severity_counts=severity_counts,
        category_counts=count_issues_by_category(issues),
        total_issues=len(issues),
        evaluated_at=evaluated_at or _utc_now_iso8601(),
    )


def would_pass_quality_gate(
    issues: Sequence[ReviewIssue],
    severity_threshold: Severity = "medium",
    thresholds: QualityGateThresholds | None = None,
) -> bool:
    result = evaluate_quality_gate(
        issues,
        thresholds or QualityGateThresholds(),
        severity_threshold,
    )
    return not result.should_block_pr


def get_issue_summary(issues: Sequence[ReviewIssue]) -> str:
    if not issues:
        return "No issues found"
    counts = count_issues_by_severity(issues)
    parts = [f"{counts[severity]} {severity}" for severity in SEVERITY_ORDER if counts[severity]]
    return f"{len(issues)} issue(s): {', '.join(parts)}"


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
