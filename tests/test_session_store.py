from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
import json
from pathlib import Path
import threading

import pytest

from reviewloop.config import ConfigError, ReviewLoopConfig
from reviewloop.models import (
    QualityGateThresholds,
    ReviewIssue,
    ReviewLoopSession,
    ReviewResult,
    SessionError,
)
from reviewloop.observability import configure_logging
from reviewloop.session_store import (
    KeyedLockTable,
    SessionCorruptError,
    SessionExistsError,
    SessionNotFoundError,
    SessionStore,
    format_timestamp,
    parse_timestamp,
    session_from_dict,
    session_to_dict,
    validate_feature_id,
    write_json_atomic,
)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def _clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


def _result(iteration: int, *issues: ReviewIssue) -> ReviewResult:
    return ReviewResult(
        verdict="needs_work" if issues else "pass",
        issues=issues,
        summary=f"iteration {iteration}",
        iteration=iteration,
        timestamp="2026-03-01T12:00:00Z",
    )


def _issue(issue_id: str) -> ReviewIssue:
    return ReviewIssue(
        id=issue_id,
        severity="high",
        category="logic",
        description=f"problem {issue_id}",
        file="src/app.py",
        line_start=3,
        line_end=4,
        suggested_fix="fix it",
    )


def test_create_and_read_round_trip(tmp_path: Path) -> None:
    clock = _clock()
    store = SessionStore(tmp_path, clock=clock)

    created = store.create("feat-1", branch="feat/one", worktree_path="/wt/one")

    assert created.state == "pending_self_review"
    assert created.started_at == "2026-03-01T12:00:00.000000Z"
    assert store.read("feat-1") == created
    assert store.exists("feat-1") is True
    assert (tmp_path / ".reviewloop" / "sessions" / "feat-1.json").exists()
    assert store.read("missing") is None


def test_create_rejects_duplicate_and_invalid_ids(tmp_path: Path) -> None:
    store = SessionStore(tmp_path, clock=_clock())
    store.create("feat-1")

    with pytest.raises(SessionExistsError):
        store.create("feat-1")
    with pytest.raises(ValueError, match="Invalid feature id"):
        store.create("../escape")
    with pytest.raises(ValueError):
        validate_feature_id("")
    assert validate_feature_id("feat_2.b-c") == "feat_2.b-c"


def test_update_preserves_fields_and_advances_timestamp(tmp_path: Path) -> None:
    clock = _clock()
    store = SessionStore(tmp_path, clock=clock)
    created = store.create("feat-1", branch="feat/one")
    clock.advance(seconds=5)

    updated = store.update("feat-1", pr_url="https://github.com/o/r/pull/3", pr_number=3)

    assert updated == replace(
        created,
        pr_url="https://github.com/o/r/pull/3",
        pr_number=3,
        last_updated_at="2026-03-01T12:00:05.000000Z",
    )
    assert store.read("feat-1") == updated


def test_update_timestamp_is_strictly_monotonic_with_frozen_clock(tmp_path: Path) -> None:
    store = SessionStore(tmp_path, clock=_clock())
    store.create("feat-1")

    first = store.update("feat-1", current_iteration=1)
    second = store.update("feat-1", current_iteration=2)

    assert parse_timestamp(second.last_updated_at) > parse_timestamp(first.last_updated_at)
    assert parse_timestamp(first.last_updated_at) > parse_timestamp(first.started_at)


def test_update_rejects_immutable_unknown_and_missing(tmp_path: Path) -> None:
    store = SessionStore(tmp_path, clock=_clock())
    store.create("feat-1")

    with pytest.raises(ValueError, match="immutable"):
        store.update("feat-1", started_at="2020-01-01T00:00:00Z")
    with pytest.raises(ValueError, match="Unknown session field"):
        store.update("feat-1", colour="blue")
    with pytest.raises(SessionNotFoundError):
        store.update("missing", current_iteration=1)


def test_completed_at_follows_terminal_state(tmp_path: Path) -> None:
    clock = _clock()
    store = SessionStore(tmp_path, clock=clock)
    store.create("feat-1")
    clock.advance(minutes=1)

    merged = store.complete_session("feat-1", "merged")
    assert merged.completed_at == merged.last_updated_at
    assert merged.is_terminal

    reopened = store.update("feat-1", state="awaiting_pr_feedback")
    assert reopened.completed_at is None

    with pytest.raises(ValueError, match="approved or merged"):
        store.complete_session("feat-1", "pr_created")


def test_transition_state_returns_previous(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    store = SessionStore(tmp_path, clock=_clock())
    store.create("feat-1")
    configure_logging(verbose=True)

    previous, session = store.transition_state("feat-1", "self_reviewing")

    assert previous == "pending_self_review"
    assert session.state == "self_reviewing"
    stderr = capsys.readouterr().err
    assert (
        "event=session_state_transition feature_id=feat-1 new_state=self_reviewing "
        "previous_state=pending_self_review"
    ) in stderr


def test_add_review_result_appends_and_rejects_stale_iteration(tmp_path: Path) -> None:
    store = SessionStore(tmp_path, clock=_clock())
    store.create("feat-1")

    store.add_review_result("feat-1", _result(1, _issue("LOGIC-001")))
    session = store.add_review_result("feat-1", _result(2))

    assert session.current_iteration == 2
    assert [item.iteration for item in session.iterations] == [1, 2]
    assert session.iterations[0].issues[0] == _issue("LOGIC-001")
    with pytest.raises(ValueError, match="must follow iteration 2"):
        store.add_review_result("feat-1", _result(2))


def test_link_pr_moves_to_pr_created(tmp_path: Path) -> None:
    store = SessionStore(tmp_path, clock=_clock())
    store.create("feat-1")

    session = store.link_pr("feat-1", 12, "https://github.com/o/r/pull/12")

    assert (session.state, session.pr_number) == ("pr_created", 12)
    assert session.pr_url == "https://github.com/o/r/pull/12"


def test_concurrent_updates_for_one_feature_are_not_lost(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.create("feat-1")
    barrier = threading.Barrier(8)

    def add_issue(index: int) -> None:
        barrier.wait()
        store.update_with(
            "feat-1",
            lambda session: replace(
                session,
                unresolved_issues=(*session.unresolved_issues, _issue(f"LOGIC-{index:03d}")),
            ),
        )

    threads = [threading.Thread(target=add_issue, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    session = store.read("feat-1")
    assert session is not None
    assert sorted(issue.id for issue in session.unresolved_issues) == [
        f"LOGIC-{index:03d}" for index in range(8)
    ]
    assert store._locks.active_keys() == ()


def test_keyed_lock_table_serializes_one_key_only() -> None:
    table = KeyedLockTable()
    entered_other = threading.Event()

    with table.hold("a"):
        assert table.active_keys() == ("a",)

        def take_other() -> None:
            with table.hold("b"):
                entered_other.set()

        thread = threading.Thread(target=take_other)
        thread.start()
        assert entered_other.wait(timeout=2)
        thread.join()

    assert table.active_keys() == ()


def test_get_all_sorts_and_skips_corrupt_files(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    clock = _clock()
    store = SessionStore(tmp_path, clock=clock)
    store.create("older")
    clock.advance(minutes=1)
    store.create("newer")
    (store.sessions_dir / "broken.json").write_text("{not json", encoding="utf-8")
    configure_logging(verbose=True)

    sessions = store.get_all()

    assert [session.feature_id for session in sessions] == ["newer", "older"]
    assert "event=session_read_skipped" in capsys.readouterr().err
    with pytest.raises(SessionCorruptError):
        store.read("broken")


def test_queries_and_statistics(tmp_path: Path) -> None:
    clock = _clock()
    store = SessionStore(tmp_path, clock=clock)
    assert store.get_all() == []
    store.create("a")
    store.create("b")
    store.create("c")
    store.add_review_result("a", _result(1, _issue("LOGIC-001")))
    store.add_review_result("a", _result(2))
    store.transition_state("b", "awaiting_pr_feedback")
    store.complete_session("c", "merged")

    assert [item.feature_id for item in store.get_by_state("awaiting_pr_feedback")] == ["b"]
    assert sorted(item.feature_id for item in store.get_active()) == ["a", "b"]
    assert [item.feature_id for item in store.get_completed()] == ["c"]

    stats = store.get_statistics()
    assert (stats.total, stats.active, stats.completed) == (3, 2, 1)
    assert stats.by_state["merged"] == 1
    assert stats.by_state["pending_self_review"] == 1
    assert stats.by_state["refining"] == 0
    assert stats.average_iterations == pytest.approx(2 / 3)


def test_delete(tmp_path: Path) -> None:
    store = SessionStore(tmp_path, clock=_clock())
    store.create("feat-1")

    assert store.delete("feat-1") is True
    assert store.delete("feat-1") is False
    assert store.read("feat-1") is None


def test_archive_old_sessions(tmp_path: Path) -> None:
    clock = _clock()
    store = SessionStore(tmp_path, clock=clock)
    store.create("old-merged")
    store.create("recent-merged")
    store.create("old-active")
    store.complete_session("old-merged", "merged")
    clock.advance(days=20)
    store.complete_session("recent-merged", "approved")
    clock.advance(days=20)

    archived = store.archive_old_sessions(30)

    assert archived == ("old-merged",)
    assert (store.archive_dir / "old-merged.json").exists()
    assert store.read("old-merged") is None
    assert store.read("recent-merged") is not None
    assert store.read("old-active") is not None
    assert store.archive_old_sessions(30) == ()


def test_archive_skips_session_replaced_after_listing(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    clock = _clock()
    store = SessionStore(tmp_path, clock=clock)
    store.create("feat-1")
    store.complete_session("feat-1", "merged")
    clock.advance(days=40)
    list_completed = store.get_completed

    def list_then_restart() -> list[ReviewLoopSession]:
        sessions = list_completed()
        store.delete("feat-1")
        store.create("feat-1")
        return sessions

    monkeypatch.setattr(store, "get_completed", list_then_restart)

    assert store.archive_old_sessions(30) == ()
    restarted = store.read("feat-1")
    assert restarted is not None
    assert restarted.state == "pending_self_review"
    assert not (store.archive_dir / "feat-1.json").exists()


def test_config_defaults_round_trip_and_validation(tmp_path: Path) -> None:
    store = SessionStore(tmp_path, clock=_clock())
    assert store.read_config() == ReviewLoopConfig()

    custom = ReviewLoopConfig(
        max_iterations=5,
        severity_threshold="high",
        notification_channels=("github", "slack"),
        quality_gate=QualityGateThresholds(
            min_test_coverage=70.0, required_categories=("security", "testing")
        ),
    )
    store.write_config(custom)
    assert store.read_config() == custom

    store.config_path.write_text(json.dumps({"max_iterations": 2}), encoding="utf-8")
    assert store.read_config() == ReviewLoopConfig(max_iterations=2)

    store.config_path.write_text("[]", encoding="utf-8")
    with pytest.raises(ConfigError, match="JSON object"):
        store.read_config()
    store.config_path.write_text("{", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid review loop config JSON"):
        store.read_config()


def test_session_dict_round_trip_keeps_optional_fields(tmp_path: Path) -> None:
    store = SessionStore(tmp_path, clock=_clock())
    store.create("feat-1", branch="feat/one")
    session = store.update(
        "feat-1",
        unresolved_issues=(_issue("SEC-001"),),
        last_error=SessionError(
            stage="self_review", message="boom", occurred_at="2026-03-01T12:00:00Z"
        ),
    )

    assert session_from_dict(json.loads(json.dumps(session_to_dict(session)))) == session
    with pytest.raises(ValueError, match="state must be one of"):
        session_from_dict({**session_to_dict(session), "state": "unknown"})


def test_write_json_atomic_leaves_no_temp_files(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "doc.json"

    write_json_atomic(path, {"a": 1})
    write_json_atomic(path, {"a": 2})

    assert json.loads(path.read_text(encoding="utf-8")) == {"a": 2}
    assert [item.name for item in path.parent.iterdir()] == ["doc.json"]


def test_timestamp_helpers() -> None:
    moment = datetime(2026, 3, 1, 12, 0, 0, 250, tzinfo=timezone.utc)
    assert format_timestamp(moment) == "2026-03-01T12:00:00.000250Z"
    assert parse_timestamp(format_timestamp(moment)) == moment
    assert parse_timestamp("2026-03-01T12:00:00").tzinfo == timezone.utc
