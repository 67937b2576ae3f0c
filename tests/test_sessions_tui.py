from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from textual.widgets import DataTable

from reviewloop import sessions_tui as tui
from reviewloop.models import ReviewIssue, ReviewLoopSession, ReviewResult, SessionError
from reviewloop.session_store import SessionStatistics, SessionStore


def _issue(
    issue_id: str, *, file: str | None = "src/app.py", line: int | None = 12
) -> ReviewIssue:
    return ReviewIssue(
        id=issue_id,
        severity="high",
        category="security",
        description=f"unsafe input handling in {issue_id}",
        file=file,
        line_start=line,
    )


def _session(**overrides: object) -> ReviewLoopSession:
    values: dict[str, object] = {
        "feature_id": "feat-login",
        "state": "awaiting_pr_feedback",
        "iterations": (),
        "current_iteration": 0,
        "started_at": "2026-03-01T12:00:00Z",
        "last_updated_at": "2026-03-01T12:05:00Z",
    }
    values.update(overrides)
    return ReviewLoopSession(**values)  # type: ignore[arg-type]


def test_session_row_formats_pr_column() -> None:
    assert tui._session_row(_session(pr_number=42, current_iteration=2)) == (
        "feat-login",
        "awaiting_pr_feedback",
        "2",
        "#42",
        "2026-03-01T12:05:00Z",
    )
    assert tui._session_row(_session())[3] == "-"


def test_summary_text() -> None:
    stats = SessionStatistics(
        total=4,
        active=3,
        completed=1,
        by_state={"merged": 1, "self_reviewing": 3},
        average_iterations=1.5,
    )

    assert tui._summary_text(stats) == "total=4 active=3 completed=1 avg_iterations=1.5"


def test_session_detail_without_reviews() -> None:
    detail = tui._session_detail(
        _session(
            pr_url="https://github.com/acme/app/pull/42",
            last_error=SessionError(
                stage="pr_creation", message="gh failed", occurred_at="2026-03-01T12:04:00Z"
            ),
        )
    )

    assert detail.splitlines() == [
        "feat-login (awaiting_pr_feedback)",
        "PR: https://github.com/acme/app/pull/42",
        "Last error during pr_creation: gh failed",
        "No reviews recorded.",
    ]


def test_session_detail_lists_latest_issues() -> None:
    first = ReviewResult(
        verdict="critical_issues",
        issues=(_issue("old-1"),),
        summary="first pass",
        iteration=1,
        timestamp="2026-03-01T12:01:00Z",
    )
    latest = ReviewResult(
        verdict="needs_work",
        issues=(_issue("sec-1"), _issue("sec-2", line=None), _issue("gen-1", file=None)),
        summary="two left",
        iteration=2,
        timestamp="2026-03-01T12:02:00Z",
    )
    detail = tui._session_detail(
        _session(iterations=(first, latest), unresolved_issues=(_issue("sec-1"),))
    )
    lines = detail.splitlines()

    assert lines[1] == "Review #2: needs_work"
    assert lines[2] == "two left"
    assert lines[3].startswith("- sec-1 [high/security] src/app.py:12 ")
    assert lines[4].startswith("- sec-2 [high/security] src/app.py unsafe")
    assert lines[5].startswith("- gen-1 [high/security] unsafe")
    assert lines[-1] == "Unresolved at PR creation: 1"
    assert "old-1" not in detail


def test_truncate() -> None:
    assert tui._truncate("short") == "short"
    truncated = tui._truncate("x" * 150)
    assert len(truncated) == 100
    assert truncated.endswith("...")


def test_run_sessions_tui_runs_app(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    called: dict[str, object] = {}

    class FakeApp:
        def __init__(self, **kwargs) -> None:  # type: ignore[no-untyped-def]
            called["kwargs"] = kwargs

        def run(self) -> None:
            called["ran"] = True

    monkeypatch.setattr(tui, "SessionsApp", FakeApp)
    tui.run_sessions_tui(project_dir=tmp_path, refresh_seconds=5)

    assert called["ran"] is True
    assert called["kwargs"] == {"project_dir": tmp_path, "refresh_seconds": 5}


def test_sessions_app_refresh(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.create("feat-a")
    store.create("feat-b", state="awaiting_pr_feedback")
    store.update("feat-b", pr_number=7, pr_url="https://github.com/acme/app/pull/7")

    app = tui.SessionsApp(project_dir=tmp_path, refresh_seconds=60)

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.pause()
            table = app.query_one("#sessions-table", DataTable)
            assert table.row_count == 2
            assert {session.feature_id for session in app._sessions} == {"feat-a", "feat-b"}

            store.delete("feat-a")
            app.action_refresh()
            assert table.row_count == 1
            assert app._sessions[0].pr_number == 7

            app._show_detail(5)

            store.delete("feat-b")
            app.action_refresh()
            assert table.row_count == 0
            assert app._sessions == ()

    asyncio.run(run_app())
