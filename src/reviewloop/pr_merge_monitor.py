from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import logging
from pathlib import Path
import threading

from reviewloop.agent_adapter import FeatureStatusUpdater
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
    StopReason,
    WorktreeCleanupFailed,
)
from reviewloop.git_ops import LocalRepository
from reviewloop.github_gateway import GitHubGateway
from reviewloop.models import PRState
from reviewloop.observability import log_event, log_warning_event, logging_feature_context
from reviewloop.pr_feedback_monitor import MonitorRequest


LOGGER = logging.getLogger("reviewloop.pr_merge_monitor")


@dataclass(frozen=True)
class MergeMonitorConfig:
    poll_interval_seconds: float = 60.0
    max_concurrent_prs: int = 20


@dataclass(frozen=True)
class MergeWatchState:
    feature_id: str
    pr_number: int
    pr_url: str
    branch: str
    worktree_path: str | None
    started_at: str
    last_checked: str
    pr_state: PRState


@dataclass
class _Handle:
    state: MergeWatchState
    stop: threading.Event = field(default_factory=threading.Event)
    emit_lock: threading.RLock = field(default_factory=threading.RLock)
    thread: threading.Thread | None = None


class PRMergeMonitor:
    """Watches open pull requests until they merge or close.

    A merge marks the feature ``verified``, then optionally syncs the target
    branch locally and removes the feature worktree. A PR that is already
    merged when monitoring starts is handled immediately without a watch entry.
    """

    def __init__(
        self,
        *,
        github: GitHubGateway,
        repo: LocalRepository,
        status_updater: FeatureStatusUpdater,
        events: EventBus,
        config: MergeMonitorConfig | None = None,
        auto_pull: AutoPullConfig | None = None,
        project_dir: Path | None = None,
    ) -> None:
        self._github = github
        self._repo = repo
        self._status_updater = status_updater
        self._events = events
        self._config = config or MergeMonitorConfig()
        self._auto_pull = auto_pull or AutoPullConfig()
        self._project_dir = (project_dir or repo.project_dir).resolve()
        self._lock = threading.Lock()
        self._handles: dict[str, _Handle] = {}
        self._reserved: set[str] = set()

    def start_monitoring(self, request: MonitorRequest) -> bool:
        """Returns True when a watch started or an already-merged PR was handled."""
        feature_id = request.feature_id
        with self._lock:
            if feature_id in self._handles or feature_id in self._reserved:
                reason = f"Already monitoring merge of PR for feature {feature_id}"
            elif len(self._handles) + len(self._reserved) >= self._config.max_concurrent_prs:
                reason = (
                    "Maximum concurrent merge monitors reached "
                    f"({self._config.max_concurrent_prs})"
                )
            else:
                reason = None
                self._reserved.add(feature_id)
        if reason is not None:
            self._emit_start_failure(request, reason, stage="precondition")
            return False

        try:
            if not self._github.is_available():
                self._emit_start_failure(
                    request, "GitHub CLI (gh) is not available", stage="precondition"
                )
                return False
            try:
                pr_state = self._github.fetch_pr_state(request.pr_number)
            except Exception as exc:  # noqa: BLE001
                self._emit_start_failure(request, str(exc), stage="initial_fetch")
                return False

            if pr_state == "MERGED":
                log_event(
                    LOGGER,
                    "pr_merge_already_merged",
                    feature_id=feature_id,
                    pr_number=request.pr_number,
                )
                self._handle_merged(request, handle=None)
                return True
            if pr_state == "CLOSED":
                log_event(
                    LOGGER,
                    "pr_merge_already_closed",
                    feature_id=feature_id,
                    pr_number=request.pr_number,
                )
                self._events.emit(PRClosed(feature_id=feature_id, pr_number=request.pr_number))
                return False

            now = _utc_now_iso8601()
            handle = _Handle(
                state=MergeWatchState(
                    feature_id=feature_id,
                    pr_number=request.pr_number,
                    pr_url=request.pr_url,
                    branch=request.branch,
                    worktree_path=request.worktree_path,
                    started_at=now,
                    last_checked=now,
                    pr_state=pr_state,
                )
            )
            interval = request.poll_interval_seconds or self._config.poll_interval_seconds
            handle.thread = threading.Thread(
                target=self._run_loop,
                args=(feature_id, handle, interval),
                name=f"pr-merge-{feature_id}",
                daemon=True,
            )
            with self._lock:
                self._handles[feature_id] = handle
        finally:
            with self._lock:
                self._reserved.discard(feature_id)

        log_event(
            LOGGER,
            "pr_merge_monitor_started",
            feature_id=feature_id,
            pr_number=request.pr_number,
            poll_interval_seconds=interval,
        )
        self._events.emit(
            MonitorStarted(
                feature_id=feature_id,
                pr_number=request.pr_number,
                pr_url=request.pr_url,
                monitor="merge",
            )
        )
        handle.thread.start()
        return True

    def stop_monitoring(self, feature_id: str, reason: StopReason = "manual") -> bool:
        with self._lock:
            handle = self._handles.pop(feature_id, None)
        if handle is None:
            return False
        with handle.emit_lock:
            handle.stop.set()
        log_event(
            LOGGER,
            "pr_merge_monitor_stopped",
            feature_id=feature_id,
            pr_number=handle.state.pr_number,
            reason=reason,
        )
        self._events.emit(
            MonitorStopped(
                feature_id=feature_id,
                pr_number=handle.state.pr_number,
                reason=reason,
                monitor="merge",
            )
        )
        return True

    def get_monitored(self, feature_id: str) -> MergeWatchState | None:
        with self._lock:
            handle = self._handles.get(feature_id)
            return handle.state if handle is not None else None

    def get_all(self) -> tuple[MergeWatchState, ...]:
        with self._lock:
            return tuple(handle.state for handle in self._handles.values())

    def is_monitoring(self, feature_id: str) -> bool:
        with self._lock:
            return feature_id in self._handles

    def stop_all(self, reason: StopReason = "shutdown", *, join_timeout: float = 5.0) -> None:
        with self._lock:
            feature_ids = list(self._handles)
            threads = [handle.thread for handle in self._handles.values()]
        for feature_id in feature_ids:
            self.stop_monitoring(feature_id, reason)
        current = threading.current_thread()
        for thread in threads:
            if thread is not None and thread is not current and thread.is_alive():
                thread.join(timeout=join_timeout)
        log_event(LOGGER, "pr_merge_monitor_all_stopped", count=len(feature_ids), reason=reason)

    def poll_once(self, feature_id: str) -> bool:
        with self._lock:
            handle = self._handles.get(feature_id)
        if handle is None or handle.stop.is_set():
            return False
        try:
            pr_state = self._github.fetch_pr_state(handle.state.pr_number)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "pr_merge_fetch_failed",
                feature_id=feature_id,
                pr_number=handle.state.pr_number,
                error_type=type(exc).__name__,
            )
            self._emit_unless_stopped(
                handle,
                MonitorError(
                    feature_id=feature_id,
                    pr_number=handle.state.pr_number,
                    error=str(exc),
                    stage="fetch",
                    monitor="merge",
                ),
            )
            return True

        previous = handle.state.pr_state
        with self._lock:
            if self._handles.get(feature_id) is handle:
                handle.state = replace(
                    handle.state, last_checked=_utc_now_iso8601(), pr_state=pr_state
                )
        if pr_state == previous:
            return True
        if pr_state == "MERGED":
            self._handle_merged(_request_from_state(handle.state), handle=handle)
        elif pr_state == "CLOSED":
            log_event(
                LOGGER, "pr_merge_closed", feature_id=feature_id, pr_number=handle.state.pr_number
            )
            self._emit_unless_stopped(
                handle, PRClosed(feature_id=feature_id, pr_number=handle.state.pr_number)
            )
            self.stop_monitoring(feature_id, "closed")
        return True

    def _run_loop(self, feature_id: str, handle: _Handle, interval: float) -> None:
        with logging_feature_context(feature_id):
            while not handle.stop.is_set():
                if handle.stop.wait(interval):
                    break
                self.poll_once(feature_id)

    def _handle_merged(self, request: MonitorRequest, *, handle: _Handle | None) -> None:
        feature_id = request.feature_id
        log_event(LOGGER, "pr_merge_detected", feature_id=feature_id, pr_number=request.pr_number)
        try:
            self._status_updater.set_status(
                feature_id=feature_id, status="verified", reason="pr_merged"
            )
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "pr_merge_status_update_failed",
                feature_id=feature_id,
                pr_number=request.pr_number,
                error_type=type(exc).__name__,
            )
            error_event = MonitorError(
                feature_id=feature_id,
                pr_number=request.pr_number,
                error=str(exc),
                stage="status_update",
                monitor="merge",
            )
            if handle is None:
                self._events.emit(error_event)
                return
            # Retry on the next poll.
            with self._lock:
                if self._handles.get(feature_id) is handle:
                    handle.state = replace(handle.state, pr_state="OPEN")
            self._emit_unless_stopped(handle, error_event)
            return

        self._emit(
            handle,
            PRMerged(feature_id=feature_id, pr_number=request.pr_number, pr_url=request.pr_url),
        )
        self._emit(handle, FeatureStatusChanged(feature_id=feature_id, status="verified"))
        if self._auto_pull.enabled:
            self._pull_after_merge(request, handle)
        if handle is not None:
            self.stop_monitoring(feature_id, "merged")

    def _pull_after_merge(self, request: MonitorRequest, handle: _Handle | None) -> None:
        feature_id = request.feature_id
        target = self._auto_pull.target_branch
        self._emit(handle, PullStarted(feature_id=feature_id, branch=target))
        try:
            self._repo.sync_branch(target)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "pr_merge_pull_failed",
                feature_id=feature_id,
                branch=target,
                error_type=type(exc).__name__,
            )
            self._emit(handle, PullFailed(feature_id=feature_id, branch=target, error=str(exc)))
            return

        cleaned_up = False
        if self._auto_pull.auto_cleanup_worktrees and request.worktree_path:
            cleaned_up = self._cleanup_worktree(feature_id, Path(request.worktree_path), handle)
        log_event(
            LOGGER,
            "pr_merge_pull_completed",
            feature_id=feature_id,
            branch=target,
            worktree_cleaned_up=cleaned_up,
        )
        self._emit(
            handle,
            PullCompleted(feature_id=feature_id, branch=target, worktree_cleaned_up=cleaned_up),
        )

    def _cleanup_worktree(
        self, feature_id: str, worktree_path: Path, handle: _Handle | None
    ) -> bool:
        if worktree_path.resolve() == self._project_dir:
            # Never remove the main checkout.
            return False
        try:
            self._repo.remove_worktree(worktree_path)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "pr_merge_worktree_cleanup_failed",
                feature_id=feature_id,
                worktree_path=str(worktree_path),
                error_type=type(exc).__name__,
            )
            self._emit(
                handle,
                WorktreeCleanupFailed(
                    feature_id=feature_id, worktree_path=str(worktree_path), error=str(exc)
                ),
            )
            return False
        return True

    def _emit(self, handle: _Handle | None, event: ReviewLoopEvent) -> None:
        if handle is None:
            self._events.emit(event)
        else:
            self._emit_unless_stopped(handle, event)

    def _emit_unless_stopped(self, handle: _Handle, event: ReviewLoopEvent) -> None:
        with handle.emit_lock:
            if not handle.stop.is_set():
                self._events.emit(event)

    def _emit_start_failure(self, request: MonitorRequest, error: str, *, stage: str) -> None:
        LOGGER.error(
            "event=pr_merge_monitor_start_failed feature_id=%s pr_number=%s stage=%s error=%s",
            request.feature_id,
            request.pr_number,
            stage,
            error,
        )
        self._events.emit(
            MonitorError(
                feature_id=request.feature_id,
                pr_number=request.pr_number,
                error=error,
                stage="initial_fetch" if stage == "initial_fetch" else "precondition",
                monitor="merge",
            )
        )


def _request_from_state(state: MergeWatchState) -> MonitorRequest:
    return MonitorRequest(
        feature_id=state.feature_id,
        pr_number=state.pr_number,
        pr_url=state.pr_url,
        branch=state.branch,
        worktree_path=state.worktree_path,
    )


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
