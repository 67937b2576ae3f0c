"""Outbound events for the review loop and its PR monitors.

Each event kind is its own frozen dataclass, and ``ReviewLoopEvent`` is the
closed union of all of them. Consumers dispatch with ``match`` and finish with
``assert_never`` so that adding a kind is a type error until it is handled
everywhere (see ``describe_event``).
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
import threading
from typing import ClassVar, Literal, assert_never

from reviewloop.models import (
    AnalyzedFeedback,
    ChecksStatus,
    PRComment,
    PRFeedback,
    PRReview,
    ReviewIssue,
    ReviewLoopSession,
    ReviewLoopState,
    ReviewResult,
)
from reviewloop.observability import log_event


LOGGER = logging.getLogger("reviewloop.events")

MonitorKind = Literal["feedback", "merge"]
StopReason = Literal["manual", "merged", "closed", "error", "shutdown", "completed"]


@dataclass(frozen=True)
class StateChanged:
    event_type: ClassVar[str] = "review_loop_state_changed"
    feature_id: str
    previous_state: ReviewLoopState | None
    new_state: ReviewLoopState
    session: ReviewLoopSession


@dataclass(frozen=True)
class ReviewCompleted:
    event_type: ClassVar[str] = "review_loop_review_completed"
    feature_id: str
    result: ReviewResult
    passed: bool
    gate_summary: str


@dataclass(frozen=True)
class RefinementStarted:
    event_type: ClassVar[str] = "review_loop_refinement_started"
    feature_id: str
    iteration: int
    issues: tuple[ReviewIssue, ...]


@dataclass(frozen=True)
class RefinementCompleted:
    event_type: ClassVar[str] = "review_loop_refinement_completed"
    feature_id: str
    iteration: int
    addressed_issue_ids: tuple[str, ...]
    unaddressed_issue_ids: tuple[str, ...]
    notes: str


@dataclass(frozen=True)
class PRFeedbackReceived:
    event_type: ClassVar[str] = "review_loop_pr_feedback_received"
    feature_id: str
    pr_number: int
    feedback: AnalyzedFeedback


@dataclass(frozen=True)
class ReadyForHuman:
    event_type: ClassVar[str] = "review_loop_ready_for_human"
    feature_id: str
    pr_url: str | None
    summary: str
    session: ReviewLoopSession


@dataclass(frozen=True)
class LoopError:
    event_type: ClassVar[str] = "review_loop_error"
    feature_id: str
    stage: str
    error: str


@dataclass(frozen=True)
class MonitorStarted:
    event_type: ClassVar[str] = "pr_monitor_started"
    feature_id: str
    pr_number: int
    pr_url: str
    monitor: MonitorKind


@dataclass(frozen=True)
class MonitorStopped:
    event_type: ClassVar[str] = "pr_monitor_stopped"
    feature_id: str
    pr_number: int
    reason: StopReason
    monitor: MonitorKind


@dataclass(frozen=True)
class MonitorError:
    event_type: ClassVar[str] = "pr_monitor_error"
    feature_id: str
    pr_number: int
    error: str
    stage: Literal["precondition", "initial_fetch", "fetch", "status_update"]
    monitor: MonitorKind


@dataclass(frozen=True)
class NewFeedback:
    event_type: ClassVar[str] = "pr_monitor_new_feedback"
    feature_id: str
    pr_number: int
    feedback: PRFeedback
    new_comments: tuple[PRComment, ...]
    new_reviews: tuple[PRReview, ...]


@dataclass(frozen=True)
class ChecksChanged:
    event_type: ClassVar[str] = "pr_monitor_checks_changed"
    feature_id: str
    pr_number: int
    old_status: ChecksStatus
    new_status: ChecksStatus


@dataclass(frozen=True)
class PRStateChanged:
    event_type: ClassVar[str] = "pr_monitor_state_changed"
    feature_id: str
    pr_number: int
    mergeable: bool
    requested_changes: bool


@dataclass(frozen=True)
class PRMerged:
    event_type: ClassVar[str] = "pr_merged"
    feature_id: str
    pr_number: int
    pr_url: str


@dataclass(frozen=True)
class PRClosed:
    event_type: ClassVar[str] = "pr_closed"
    feature_id: str
    pr_number: int


@dataclass(frozen=True)
class FeatureStatusChanged:
    event_type: ClassVar[str] = "feature_status_changed"
    feature_id: str
    status: str


@dataclass(frozen=True)
class PullStarted:
    event_type: ClassVar[str] = "pr_merge_pull_started"
    feature_id: str
    branch: str


@dataclass(frozen=True)
class PullCompleted:
    event_type: ClassVar[str] = "pr_merge_pull_completed"
    feature_id: str
    branch: str
    worktree_cleaned_up: bool


@dataclass(frozen=True)
class PullFailed:
    event_type: ClassVar[str] = "pr_merge_pull_failed"
    feature_id: str
    branch: str
    error: str


@dataclass(frozen=True)
class WorktreeCleanupFailed:
    event_type: ClassVar[str] = "pr_merge_worktree_cleanup_failed"
    feature_id: str
    worktree_path: str
    error: str


ReviewLoopEvent = (
    StateChanged
    | ReviewCompleted
    | RefinementStarted
    | RefinementCompleted
    | PRFeedbackReceived
    | ReadyForHuman
    | LoopError
    | MonitorStarted
    | MonitorStopped
    | MonitorError
    | NewFeedback
    | ChecksChanged
    | PRStateChanged
    | PRMerged
    | PRClosed
    | FeatureStatusChanged
    | PullStarted
    | PullCompleted
    | PullFailed
    | WorktreeCleanupFailed
)

EventHandler = Callable[[ReviewLoopEvent], None]


class EventBus:
    """Synchronous fan-out to subscribers. Handlers run on the emitting thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return _unsubscribe

    def emit(self, event: ReviewLoopEvent) -> None:
        with self._lock:
            handlers = tuple(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "event_handler_failed",
                    event_type=event.event_type,
                    feature_id=event.feature_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )


def describe_event(event: ReviewLoopEvent) -> str:
    match event:
        case StateChanged():
            previous = event.previous_state or "none"
            return f"{event.feature_id}: {previous} -> {event.new_state}"
        case ReviewCompleted():
            outcome = "passed" if event.passed else "failed"
            return (
                f"{event.feature_id}: review #{event.result.iteration} {outcome} "
                f"({event.result.verdict}, {len(event.result.issues)} issue(s))"
            )
        case RefinementStarted():
            return (
                f"{event.feature_id}: refining {len(event.issues)} issue(s) "
                f"after iteration {event.iteration}"
            )
        case RefinementCompleted():
            return (
                f"{event.feature_id}: refinement addressed {len(event.addressed_issue_ids)}, "
                f"left {len(event.unaddressed_issue_ids)}"
            )
        case PRFeedbackReceived():
            return (
                f"{event.feature_id}: PR #{event.pr_number} feedback "
                f"{event.feedback.overall_status} "
                f"({len(event.feedback.actionable_items)} actionable)"
            )
        case ReadyForHuman():
            return f"{event.feature_id}: ready for human review {event.pr_url or ''}".rstrip()
        case LoopError():
            return f"{event.feature_id}: error during {event.stage}: {event.error}"
        case MonitorStarted():
            return f"{event.feature_id}: {event.monitor} monitor started for PR #{event.pr_number}"
        case MonitorStopped():
            return (
                f"{event.feature_id}: {event.monitor} monitor stopped for PR "
                f"#{event.pr_number} ({event.reason})"
            )
        case MonitorError():
            return f"{event.feature_id}: {event.monitor} monitor {event.stage} error: {event.error}"
        case NewFeedback():
            return (
                f"{event.feature_id}: PR #{event.pr_number} has {len(event.new_comments)} new "
                f"comment(s) and {len(event.new_reviews)} new review(s)"
            )
        case ChecksChanged():
            return (
                f"{event.feature_id}: PR #{event.pr_number} checks "
                f"{event.old_status} -> {event.new_status}"
            )
        case PRStateChanged():
            return (
                f"{event.feature_id}: PR #{event.pr_number} mergeable={event.mergeable} "
                f"requested_changes={event.requested_changes}"
            )
        case PRMerged():
            return f"{event.feature_id}: PR #{event.pr_number} merged"
        case PRClosed():
            return f"{event.feature_id}: PR #{event.pr_number} closed without merge"
        case FeatureStatusChanged():
            return f"{event.feature_id}: feature status is now {event.status}"
        case PullStarted():
            return f"{event.feature_id}: pulling {event.branch}"
        case PullCompleted():
            cleanup = ", worktree removed" if event.worktree_cleaned_up else ""
            return f"{event.feature_id}: pulled {event.branch}{cleanup}"
        case PullFailed():
            return f"{event.feature_id}: pull of {event.branch} failed: {event.error}"
        case WorktreeCleanupFailed():
            return f"{event.feature_id}: could not remove worktree {event.worktree_path}"
        case _:
            assert_never(event)
