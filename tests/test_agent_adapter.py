from __future__ import annotations

import pytest

from reviewloop.agent_adapter import (
    ExplicitIdClassifier,
    Fixer,
    KeywordOverlapClassifier,
    Reviewer,
)
from reviewloop.models import ReviewIssue


def _issue(issue_id: str, description: str = "needs attention") -> ReviewIssue:
    return ReviewIssue(id=issue_id, severity="high", category="logic", description=description)


def test_adapters_are_abstract() -> None:
    with pytest.raises(TypeError):
        Reviewer()  # type: ignore[abstract]
    with pytest.raises(TypeError):
        Fixer()  # type: ignore[abstract]


def test_explicit_id_requires_fix_keyword_nearby() -> None:
    issues = [_issue("SEC-001"), _issue("LOGIC-002"), _issue("PERF-003")]
    response = (
        "Fixed SEC-001 by parameterizing the query.\n"
        "LOGIC-002 is out of scope for this change.\n"
    )

    result = ExplicitIdClassifier(window=20).classify(issues, response)

    assert result.addressed_issue_ids == ("SEC-001",)
    assert result.unaddressed_issue_ids == ("LOGIC-002", "PERF-003")
    assert result.notes == response.strip()


def test_explicit_id_matching_is_case_insensitive_and_whole_token() -> None:
    issues = [_issue("SEC-001"), _issue("SEC-0011")]

    result = ExplicitIdClassifier().classify(issues, "resolved sec-001 as requested")

    assert result.addressed_issue_ids == ("SEC-001",)
    assert result.unaddressed_issue_ids == ("SEC-0011",)


def test_mentioning_an_id_without_fixing_it_does_not_count() -> None:
    result = ExplicitIdClassifier().classify([_issue("STYLE-004")], "STYLE-004 looks intentional")

    assert result.addressed_issue_ids == ()
    assert result.unaddressed_issue_ids == ("STYLE-004",)


def test_notes_are_truncated() -> None:
    result = ExplicitIdClassifier().classify([], "x" * 900)

    assert len(result.notes) == 500


def test_keyword_overlap_falls_back_to_descriptions() -> None:
    issues = [
        _issue("SEC-001"),
        _issue("LOGIC-002", "Missing validation for negative quantity values"),
        _issue("PERF-003", "Cache lookups inside the rendering loop"),
    ]
    response = (
        "Fixed SEC-001.\n"
        "Added validation so negative quantity values are rejected.\n"
        "Rendering was not touched."
    )

    result = KeywordOverlapClassifier().classify(issues, response)

    assert result.addressed_issue_ids == ("SEC-001", "LOGIC-002")
    assert result.unaddressed_issue_ids == ("PERF-003",)


def test_keyword_overlap_ignores_sentences_without_fix_keywords() -> None:
    issues = [_issue("LOGIC-002", "Missing validation for negative quantity values")]

    result = KeywordOverlapClassifier().classify(
        issues, "Negative quantity values still lack validation."
    )

    assert result.addressed_issue_ids == ()
    assert result.unaddressed_issue_ids == ("LOGIC-002",)
