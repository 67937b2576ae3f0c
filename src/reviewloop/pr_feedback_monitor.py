from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import logging
import threading

from reviewloop.events import (
    ChecksChanged,
    EventBus,
    MonitorError,
    MonitorStarted,
    MonitorStopped,
    NewFeedback,
    PRStateChanged,
    ReviewLoopEvent,
    StopReason,
)
from reviewloop.github_gateway import GitHubGateway
from reviewloop.models import ChecksStatus, PRFeedback
from reviewloop.observability import log_event, log_warning_event, logging_feature_context


LOGGER = logging.getLogger("reviewloop.pr_feedback_monitor")


@dataclass(frozen=True)
class FeedbackMonitorConfig:
    poll_interval_seconds: float = 30.0
    max_concurrent_prs: int = 10


@dataclass(frozen=True)
class MonitorRequest:
    feature_id: str
    pr_number: int
    pr_url: str
    branch: str
    worktree_path: str | None = None
    poll_interval_seconds: float | None = None


@dataclass(frozen=True)
class MonitoredPRState:
    feature_id: str
    pr_number: int
    pr_url: str
    branch: str
    worktree_path: str | None
    started_at: str
    last_checked: str
    last_comment_count: int
    last_review_count: int
    checks_status: ChecksStatus
    mergeable: bool
    requested_changes: bool
    paused: bool = False


@dataclass
class _Handle:
    state: MonitoredPRState
    stop: threading.Event = field(default_factory=threading.Event)
    emit_lock: threading.RLock = field(default_factory=threading.RLock)
    thread: threading.Thread | None = None


class PRFeedbackMonitor:
    """Polls one pull request per feature for comments, reviews and check status."""

    def __init__(
        self,
        *,
        github: GitHubGateway,
        events: EventBus,
        config: FeedbackMonitorConfig | None = None,
    ) -> None:
        self._github = github
        self._events = events
        self._config = config or FeedbackMonitorConfig()
        self._lock = threading.Lock()
        self._handles: dict[str, _Handle] = {}
        self._reserved: set[str] = set()

    def start_monitoring(self, request: MonitorRequest) -> bool:
        """Begin polling; returns False when a precondition or the initial fetch failed."""
        feature_id = request.feature_id
        with self._lock:
            if feature_id in self._handles or feature_id in self._reserved:
                reason = f"Already monitoring PR for feature {feature_id}"
            elif len(self._handles) + len(self._reserved) >= self._config.max_concurrent_prs:
                reason = (
                    "Maximum concurrent PR monitors reached "
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
                feedback = self._github.fetch_pr_feedback(request.pr_number)
            except Exception as exc:  # noqa: BLE001
                self._emit_start_failure(request, str(exc), stage="initial_fetch")
                return False

            if feedback.state != "OPEN":
                log_event(
                    LOGGER,
                    "pr_monitor_skipped_terminal",
                    feature_id=feature_id,
                    pr_number=request.pr_number,
                    pr_state=feedback.state,
                )
                return False

            now = _utc_now_iso8601()
            handle = _Handle(
                state=MonitoredPRState(
                    feature_id=feature_id,
                    pr_number=request.pr_number,
                    pr_url=request.pr_url,
                    branch=request.branch,
                    worktree_path=request.worktree_path,
                    started_at=now,
                    last_checked=now,
                    last_comment_count=len(feedback.comments),
                    last_review_count=len(feedback.reviews),
                    checks_status=feedback.checks_status,
                    mergeable=feedback.mergeable,
                    requested_changes=feedback.requested_changes,
                )
            )
            interval = request.poll_interval_seconds or self._config.poll_interval_seconds
            handle.thread = threading.Thread(
                target=self._run_loop,
                args=(feature_id, handle, interval),
                name=f"pr-feedback-{feature_id}",
                daemon=True,
            )
            with self._lock:
                self._handles[feature_id] = handle
        finally:
            with self._lock:
                self._reserved.discard(feature_id)

        log_event(
            LOGGER,
            "pr_monitor_started",
            feature_id=feature_id,
            pr_number=request.pr_number,
            poll_interval_seconds=interval,
        )
        self._events.emit(
            MonitorStarted(
                feature_id=feature_id,
                pr_number=request.pr_number,
                pr_url=request.pr_url,
                monitor="feedback",
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
            "pr_monitor_stopped",
            feature_id=feature_id,
            pr_number=handle.state.pr_number,
            reason=reason,
        )
        self._events.emit(
            MonitorStopped(
                feature_id=feature_id,
                pr_number=handle.state.pr_number,
                reason=reason,
                monitor="feedback",
            )
        )
        return True

    def pause(self, feature_id: str) -> bool:
        return self._set_paused(feature_id, True)

    def resume(self, feature_id: str) -> bool:
        return self._set_paused(feature_id, False)

    def get_monitored(self, feature_id: str) -> MonitoredPRState | None:
        with self._lock:
            handle = self._handles.get(feature_id)
            return handle.state if handle is not None else None

    def get_all(self) -> tuple[MonitoredPRState, ...]:
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
        log_event(LOGGER, "pr_monitor_all_stopped", count=len(feature_ids), reason=reason)

    def poll_once(self, feature_id: str) -> bool:
        """Fetch and diff one snapshot now. Returns False when the feature is not polled."""
        with self._lock:
            handle = self._handles.get(feature_id)
        if handle is None or handle.stop.is_set() or handle.state.paused:
            return False
        try:
            feedback = self._github.fetch_pr_feedback(handle.state.pr_number)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "pr_monitor_fetch_failed",
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
                    monitor="feedback",
                ),
            )
            return True
        self._apply_snapshot(handle, feedback)
        return True

    def _run_loop(self, feature_id: str, handle: _Handle, interval: float) -> None:
        with logging_feature_context(feature_id):
            while not handle.stop.is_set():
                if handle.stop.wait(interval):
                    break
                self.poll_once(feature_id)

    def _apply_snapshot(self, handle: _Handle, feedback: PRFeedback) -> None:
        with handle.emit_lock:
            if handle.stop.is_set():
                return
            previous = handle.state
            new_comments = feedback.comments[previous.last_comment_count :]
            new_reviews = feedback.reviews[previous.last_review_count :]
            updated = replace(
                previous,
                last_checked=_utc_now_iso8601(),
                last_comment_count=len(feedback.comments),
                last_review_count=len(feedback.reviews),
                checks_status=feedback.checks_status,
                mergeable=feedback.mergeable,
                requested_changes=feedback.requested_changes,
            )
            with self._lock:
                if self._handles.get(previous.feature_id) is handle:
                    handle.state = replace(updated, paused=handle.state.paused)

            events: list[ReviewLoopEvent] = []
            if new_comments or new_reviews:
                events.append(
                    NewFeedback(
                        feature_id=previous.feature_id,
                        pr_number=previous.pr_number,
                        feedback=feedback,
                        new_comments=tuple(new_comments),
                        new_reviews=tuple(new_reviews),
                    )
                )
            if feedback.checks_status != previous.checks_status:
                events.append(
                    ChecksChanged(
                        feature_id=previous.feature_id,
                        pr_number=previous.pr_number,
                        old_status=previous.checks_status,
                        new_status=feedback.checks_status,
                    )
                )
            if (
                feedback.mergeable != previous.mergeable
                or feedback.requested_changes != previous.requested_changes
            ):
                events.append(
                    PRStateChanged(
                        feature_id=previous.feature_id,
                        pr_number=previous.pr_number,
                        mergeable=feedback.mergeable,
                        requested_changes=feedback.requested_changes,
                    )
                )
            for event in events:
                log_event(
                    LOGGER,
                    event.event_type,
                    feature_id=previous.feature_id,
                    pr_number=previous.pr_number,
                )
                self._events.emit(event)

        if feedback.state != "OPEN":
            self.stop_monitoring(
                previous.feature_id, "merged" if feedback.state == "MERGED" else "closed"
            )

    def _emit_unless_stopped(self, handle: _Handle, event: ReviewLoopEvent) -> None:
        with handle.emit_lock:
            if not handle.stop.is_set():
                self._events.emit(event)

    def _emit_start_failure(self, request: MonitorRequest, error: str, *, stage: str) -> None:
        LOGGER.error(
            "event=pr_monitor_start_failed feature_id=%s pr_number=%s stage=%s error=%s",
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
                monitor="feedback",
            )
        )

    def _set_paused(self, feature_id: str, paused: bool) -> bool:
        with self._lock:
            handle = self._handles.get(feature_id)
            if handle is None:
                return False
            handle.state = replace(handle.state, paused=paused)
        log_event(
            LOGGER,
            "pr_monitor_paused" if paused else "pr_monitor_resumed",
            feature_id=feature_id,
        )
        return True


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
