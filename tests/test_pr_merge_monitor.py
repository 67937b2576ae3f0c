from __future__ import annotations

from pathlib import Path

import pytest

from reviewloop.config import AutoPullConfig
from reviewloop.events import (
    EventBus,
    FeatureStatusChanged,
    MonitorError,
    MonitorStarted,
    MonitorStopped,
    PRClosed,
    PRMerged,
    PullCompleted,
    PullFailed,
    PullStarted,
    ReviewLoopEvent,
    WorktreeCleanupFailed,
)
from reviewloop.github_gateway import GitHubPollingError
from reviewloop.models import PRState
from reviewloop.observability import configure_logging
from reviewloop.pr_feedback_monitor import MonitorRequest
from reviewloop.pr_merge_monitor import MergeMonitorConfig, PRMergeMonitor


class FakeGitHub:
    def __init__(self, *states: PRState | Exception) -> None:
        self.states = list(states)

    def is_available(self) -> bool:
        return True

    def fetch_pr_state(self, pr_number: int) -> PRState:
        _ = pr_number
        item = self.states.pop(0) if len(self.states) > 1 else self.states[0]
        if isinstance(item, Exception):
            raise item
        return item


class FakeRepo:
    def __init__(self, project_dir: Path, *, pull_error: Exception | None = None) -> None:
        self.project_dir = project_dir
        self.pull_error = pull_error
        self.remove_error: Exception | None = None
        self.synced: list[str] = []
        self.removed: list[Path] = []

    def sync_branch(self, branch: str) -> None:
        self.synced.append(branch)
        if self.pull_error is not None:
            raise self.pull_error

    def remove_worktree(self, worktree_path: Path) -> None:
        if self.remove_error is not None:
            raise self.remove_error
        self.removed.append(worktree_path)


class FakeStatusUpdater:
    def __init__(self, *failures: Exception) -> None:
        self.failures = list(failures)
        self.calls: list[tuple[str, str, str]] = []

    def set_status(self, *, feature_id: str, status: str, reason: str) -> None:
        self.calls.append((feature_id, status, reason))
        if self.failures:
            raise self.failures.pop(0)


def _request(worktree_path: str | None = None) -> MonitorRequest:
    return MonitorRequest(
        feature_id="feat-1",
        pr_number=42,
        pr_url="https://example/pr/42",
        branch="feat/login",
        worktree_path=worktree_path,
        poll_interval_seconds=3600,
    )


def _monitor(
    github: FakeGitHub,
    repo: FakeRepo,
    updater: FakeStatusUpdater,
    auto_pull: AutoPullConfig | None = None,
    *,
    max_concurrent_prs: int = 20,
) -> tuple[PRMergeMonitor, list[ReviewLoopEvent]]:
    bus = EventBus()
    events: list[ReviewLoopEvent] = []
    bus.subscribe(events.append)
    monitor = PRMergeMonitor(
        github=github,  # type: ignore[arg-type]
        repo=repo,  # type: ignore[arg-type]
        status_updater=updater,
        events=bus,
        config=MergeMonitorConfig(max_concurrent_prs=max_concurrent_prs),
        auto_pull=auto_pull,
    )
    return monitor, events


def test_merge_marks_verified_pulls_and_cleans_worktree(tmp_path: Path) -> None:
    worktree = tmp_path / "worktrees" / "feat-1"
    repo = FakeRepo(tmp_path)
    updater = FakeStatusUpdater()
    monitor, events = _monitor(
        FakeGitHub("OPEN", "MERGED"),
        repo,
        updater,
        AutoPullConfig(target_branch="trunk", auto_cleanup_worktrees=True),
    )

    assert monitor.start_monitoring(_request(str(worktree))) is True
    assert monitor.poll_once("feat-1") is True

    assert updater.calls == [("feat-1", "verified", "pr_merged")]
    assert repo.synced == ["trunk"]
    assert repo.removed == [worktree]
    assert [type(event) for event in events] == [
        MonitorStarted,
        PRMerged,
        FeatureStatusChanged,
        PullStarted,
        PullCompleted,
        MonitorStopped,
    ]
    completed = events[4]
    assert isinstance(completed, PullCompleted) and completed.worktree_cleaned_up is True
    stopped = events[-1]
    assert isinstance(stopped, MonitorStopped) and stopped.reason == "merged"
    assert monitor.is_monitoring("feat-1") is False


def test_cleanup_disabled_leaves_worktree(tmp_path: Path) -> None:
    repo = FakeRepo(tmp_path)
    monitor, events = _monitor(FakeGitHub("OPEN", "MERGED"), repo, FakeStatusUpdater())

    monitor.start_monitoring(_request(str(tmp_path / "wt")))
    monitor.poll_once("feat-1")

    assert repo.synced == ["main"]
    assert repo.removed == []
    completed = [event for event in events if isinstance(event, PullCompleted)]
    assert completed[0].worktree_cleaned_up is False


def test_main_checkout_is_never_removed(tmp_path: Path) -> None:
    repo = FakeRepo(tmp_path)
    monitor, _ = _monitor(
        FakeGitHub("MERGED"),
        repo,
        FakeStatusUpdater(),
        AutoPullConfig(auto_cleanup_worktrees=True),
    )

    monitor.start_monitoring(_request(str(tmp_path)))

    assert repo.removed == []


def test_auto_pull_disabled_skips_sync(tmp_path: Path) -> None:
    repo = FakeRepo(tmp_path)
    monitor, events = _monitor(
        FakeGitHub("OPEN", "MERGED"), repo, FakeStatusUpdater(), AutoPullConfig(enabled=False)
    )

    monitor.start_monitoring(_request())
    monitor.poll_once("feat-1")

    assert repo.synced == []
    assert not any(isinstance(event, PullStarted) for event in events)


def test_already_merged_pr_is_handled_without_watch(tmp_path: Path) -> None:
    updater = FakeStatusUpdater()
    monitor, events = _monitor(FakeGitHub("MERGED"), FakeRepo(tmp_path), updater)

    assert monitor.start_monitoring(_request()) is True

    assert monitor.is_monitoring("feat-1") is False
    assert updater.calls == [("feat-1", "verified", "pr_merged")]
    assert [type(event) for event in events] == [
        PRMerged,
        FeatureStatusChanged,
        PullStarted,
        PullCompleted,
    ]


def test_already_closed_pr_is_rejected(tmp_path: Path) -> None:
    updater = FakeStatusUpdater()
    monitor, events = _monitor(FakeGitHub("CLOSED"), FakeRepo(tmp_path), updater)

    assert monitor.start_monitoring(_request()) is False

    assert updater.calls == []
    assert [type(event) for event in events] == [PRClosed]


def test_closed_while_watching_stops_without_status_change(tmp_path: Path) -> None:
    updater = FakeStatusUpdater()
    monitor, events = _monitor(FakeGitHub("OPEN", "CLOSED"), FakeRepo(tmp_path), updater)

    monitor.start_monitoring(_request())
    monitor.poll_once("feat-1")

    assert updater.calls == []
    assert [type(event) for event in events] == [MonitorStarted, PRClosed, MonitorStopped]
    stopped = events[-1]
    assert isinstance(stopped, MonitorStopped) and stopped.reason == "closed"


def test_status_update_failure_is_retried_next_poll(tmp_path: Path) -> None:
    updater = FakeStatusUpdater(OSError("disk full"))
    monitor, events = _monitor(FakeGitHub("OPEN", "MERGED"), FakeRepo(tmp_path), updater)

    monitor.start_monitoring(_request())
    monitor.poll_once("feat-1")

    assert monitor.is_monitoring("feat-1") is True
    error = events[-1]
    assert isinstance(error, MonitorError)
    assert (error.stage, error.error) == ("status_update", "disk full")
    state = monitor.get_monitored("feat-1")
    assert state is not None and state.pr_state == "OPEN"

    monitor.poll_once("feat-1")

    assert len(updater.calls) == 2
    assert monitor.is_monitoring("feat-1") is False
    assert any(isinstance(event, PRMerged) for event in events)


def test_pull_failure_is_reported_and_monitor_still_stops(tmp_path: Path) -> None:
    repo = FakeRepo(tmp_path, pull_error=RuntimeError("not a fast-forward"))
    monitor, events = _monitor(FakeGitHub("OPEN", "MERGED"), repo, FakeStatusUpdater())

    monitor.start_monitoring(_request(str(tmp_path / "wt")))
    monitor.poll_once("feat-1")

    failed = [event for event in events if isinstance(event, PullFailed)]
    assert failed[0].error == "not a fast-forward"
    assert not any(isinstance(event, PullCompleted) for event in events)
    assert monitor.is_monitoring("feat-1") is False


def test_worktree_cleanup_failure_is_reported(tmp_path: Path) -> None:
    repo = FakeRepo(tmp_path)
    repo.remove_error = RuntimeError("locked")
    monitor, events = _monitor(
        FakeGitHub("MERGED"), repo, FakeStatusUpdater(), AutoPullConfig(auto_cleanup_worktrees=True)
    )

    monitor.start_monitoring(_request(str(tmp_path / "wt")))

    cleanup = [event for event in events if isinstance(event, WorktreeCleanupFailed)]
    assert cleanup[0].error == "locked"
    completed = [event for event in events if isinstance(event, PullCompleted)]
    assert completed[0].worktree_cleaned_up is False


def test_fetch_error_keeps_watching(tmp_path: Path) -> None:
    monitor, events = _monitor(
        FakeGitHub("OPEN", GitHubPollingError("timeout"), "OPEN"),
        FakeRepo(tmp_path),
        FakeStatusUpdater(),
    )

    try:
        monitor.start_monitoring(_request())
        monitor.poll_once("feat-1")
        error = events[-1]
        assert isinstance(error, MonitorError) and error.stage == "fetch"
        assert monitor.is_monitoring("feat-1") is True
    finally:
        monitor.stop_all()


def test_capacity_limit(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    monitor, events = _monitor(
        FakeGitHub("OPEN"), FakeRepo(tmp_path), FakeStatusUpdater(), max_concurrent_prs=1
    )

    try:
        assert monitor.start_monitoring(_request()) is True
        second = MonitorRequest(feature_id="feat-2", pr_number=43, pr_url="u", branch="b")
        assert monitor.start_monitoring(second) is False
        assert monitor.get_monitored("feat-2") is None
        error = events[-1]
        assert isinstance(error, MonitorError) and error.stage == "precondition"
        assert "event=pr_merge_monitor_start_failed" in capsys.readouterr().err
    finally:
        monitor.stop_all()
