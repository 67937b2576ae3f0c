from __future__ import annotations

from dataclasses import replace

from hypothesis import given
from hypothesis import strategies as st
import pytest

from reviewloop.models import (
    ISSUE_CATEGORIES,
    SEVERITY_ORDER,
    QualityGateThresholds,
    QualityMetrics,
    ReviewIssue,
)
from reviewloop.observability import configure_logging
from reviewloop.quality_gate import (
    COMPLEXITY_CHECK,
    DUPLICATION_CHECK,
    REQUIRED_CATEGORIES_CHECK,
    SEVERITY_CHECK,
    TEST_COVERAGE_CHECK,
    count_issues_at_or_above_severity,
    count_issues_by_category,
    count_issues_by_severity,
    evaluate_quality_gate,
    get_blocking_issues,
    get_issue_summary,
    get_issues_in_category,
    would_pass_quality_gate,
)


def _issue(
    issue_id: str, severity: str, category: str, description: str = "needs attention"
) -> ReviewIssue:
    return ReviewIssue(
        id=issue_id,
        severity=severity,  # type: ignore[arg-type]
        category=category,  # type: ignore[arg-type]
        description=description,
    )


def test_critical_security_issue_blocks_with_two_failed_checks() -> None:
    issues = [_issue("SEC-001", "critical", "security", "SQL injection in login query")]

    result = evaluate_quality_gate(issues, QualityGateThresholds(), "medium")

    assert result.should_block_pr is True
    assert result.verdict == "failed"
    severity_check = result.check(SEVERITY_CHECK)
    categories_check = result.check(REQUIRED_CATEGORIES_CHECK)
    assert severity_check is not None and severity_check.status == "failed"
    assert categories_check is not None and categories_check.status == "failed"
    assert severity_check.details == ("[critical] SQL injection in login query",)
    assert categories_check.message == "Issues found in required categories: security: 1"
    assert result.summary == (
        "Quality gate failed. 2 check(s) failed: Severity Threshold, Required Categories. "
        "1 critical issue(s)."
    )


def test_low_issues_pass_and_are_reported_as_non_blocking() -> None:
    issues = [_issue("STYLE-001", "low", "style"), _issue("DOC-001", "suggestion", "documentation")]

    result = evaluate_quality_gate(issues, QualityGateThresholds(), "medium")

    assert result.verdict == "passed"
    assert result.should_block_pr is False
    assert result.summary == (
        "Quality gate passed. 2 check(s) passed, 3 skipped. 2 non-blocking issue(s) found."
    )
    assert result.total_issues == 2


def test_empty_required_categories_skip_that_check() -> None:
    thresholds = QualityGateThresholds(required_categories=())

    result = evaluate_quality_gate([_issue("SEC-001", "low", "security")], thresholds, "medium")

    check = result.check(REQUIRED_CATEGORIES_CHECK)
    assert check is not None
    assert check.status == "skipped"
    assert result.verdict == "passed"
    assert result.summary == (
        "Quality gate passed. 1 check(s) passed, 4 skipped. 1 non-blocking issue(s) found."
    )


def test_metrics_checks() -> None:
    metrics = QualityMetrics(
        test_coverage=72.5,
        complexity_by_function={"parse": 14, "render": 4, "load": 22, "save": 11},
        duplication_percentage=3.0,
    )

    result = evaluate_quality_gate([], QualityGateThresholds(), "medium", metrics)

    coverage = result.check(TEST_COVERAGE_CHECK)
    complexity = result.check(COMPLEXITY_CHECK)
    duplication = result.check(DUPLICATION_CHECK)
    assert coverage is not None and coverage.status == "failed"
    assert coverage.message == "Test coverage 72.5% is below minimum 80%"
    assert complexity is not None and complexity.status == "failed"
    assert complexity.current_value == 22
    assert complexity.details == (
        "load: complexity 22",
        "parse: complexity 14",
        "save: complexity 11",
    )
    assert duplication is not None and duplication.status == "passed"
    assert result.should_block_pr is True
    assert result.summary == (
        "Quality gate failed. 2 check(s) failed: Test Coverage, Code Complexity."
    )


def test_metrics_within_limits_pass() -> None:
    metrics = QualityMetrics(
        test_coverage=91.0, complexity_by_function={"f": 3}, duplication_percentage=5.0
    )

    result = evaluate_quality_gate([], QualityGateThresholds(), "medium", metrics)

    assert [check.status for check in result.checks] == ["passed"] * 5
    assert result.summary == "Quality gate passed. 5 check(s) passed."


def test_severity_details_are_capped_and_truncated() -> None:
    issues = [_issue(f"LOGIC-{index:03d}", "high", "logic", "x" * 150) for index in range(7)]

    result = evaluate_quality_gate(issues, QualityGateThresholds(), "medium")

    check = result.check(SEVERITY_CHECK)
    assert check is not None
    assert check.current_value == 7
    assert len(check.details) == 5
    assert check.details[0] == f"[high] {'x' * 100}"
    assert result.summary.endswith("7 high severity issue(s).")


def test_evaluation_logs_event(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)

    evaluate_quality_gate([_issue("SEC-001", "low", "security")], QualityGateThresholds(), "high")

    stderr = capsys.readouterr().err
    assert "event=quality_gate_evaluated" in stderr
    assert 'failed_checks="Required Categories"' in stderr
    assert "verdict=failed" in stderr


def test_counting_helpers() -> None:
    issues = [
        _issue("SEC-001", "critical", "security"),
        _issue("LOGIC-001", "medium", "logic"),
        _issue("LOGIC-002", "low", "logic"),
    ]

    assert count_issues_by_severity(issues)["critical"] == 1
    assert count_issues_by_severity(issues)["high"] == 0
    assert count_issues_by_category(issues)["logic"] == 2
    assert count_issues_at_or_above_severity(issues, "medium") == 2
    assert [item.id for item in get_issues_in_category(issues, "logic")] == [
        "LOGIC-001",
        "LOGIC-002",
    ]
    assert [item.id for item in get_blocking_issues(issues, "high")] == ["SEC-001"]
    low_security = [_issue("SEC-002", "low", "security"), _issue("STYLE-001", "low", "style")]
    assert [item.id for item in get_blocking_issues(low_security, "high")] == ["SEC-002"]
    assert get_blocking_issues(low_security, "high", required_categories=()) == ()


def test_issue_summary_and_would_pass() -> None:
    assert get_issue_summary([]) == "No issues found"
    issues = [
        _issue("SEC-001", "critical", "security"),
        _issue("PERF-001", "low", "performance"),
        _issue("PERF-002", "low", "performance"),
    ]
    assert get_issue_summary(issues) == "3 issue(s): 1 critical, 2 low"
    assert would_pass_quality_gate(issues) is False
    assert would_pass_quality_gate(issues[1:]) is True


_issues = st.lists(
    st.builds(
        ReviewIssue,
        id=st.text(min_size=1, max_size=8),
        severity=st.sampled_from(SEVERITY_ORDER),
        category=st.sampled_from(ISSUE_CATEGORIES),
        description=st.text(max_size=120),
    ),
    max_size=10,
)
_metrics = st.builds(
    QualityMetrics,
    test_coverage=st.one_of(st.none(), st.floats(min_value=0, max_value=100)),
    complexity_by_function=st.one_of(
        st.none(), st.dictionaries(st.text(max_size=5), st.integers(min_value=1, max_value=40))
    ),
    duplication_percentage=st.one_of(st.none(), st.floats(min_value=0, max_value=100)),
)


@given(_issues, st.sampled_from(SEVERITY_ORDER), _metrics)
def test_evaluation_is_pure(
    issues: list[ReviewIssue], threshold: str, metrics: QualityMetrics
) -> None:
    first = evaluate_quality_gate(
        issues, QualityGateThresholds(), threshold, metrics  # type: ignore[arg-type]
    )
    second = evaluate_quality_gate(
        list(issues), QualityGateThresholds(), threshold, metrics  # type: ignore[arg-type]
    )

    assert replace(first, evaluated_at="") == replace(second, evaluated_at="")
    assert first.should_block_pr == (first.verdict == "failed")
    assert first.should_block_pr == any(check.status == "failed" for check in first.checks)
