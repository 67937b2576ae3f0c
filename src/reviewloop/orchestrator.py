from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
import logging
import threading
from typing import Final, TypeVar

from reviewloop.agent_adapter import Fixer, PullRequestOpener, Reviewer
from reviewloop.config import ReviewLoopConfig
from reviewloop.diff_analyzer import extract_code_context, format_diff_for_review, parse_diff
from reviewloop.events import (
    ChecksChanged,
    EventBus,
    LoopError,
    NewFeedback,
    PRClosed,
    PRFeedbackReceived,
    PRMerged,
    PRStateChanged,
    ReadyForHuman,
    RefinementCompleted,
    RefinementStarted,
    ReviewCompleted,
    ReviewLoopEvent,
    StateChanged,
)
from reviewloop.feedback_loop import analyze_feedback, feedback_to_issues
from reviewloop.git_ops import LocalRepository
from reviewloop.models import (
    AnalyzedFeedback,
    ChecksStatus,
    FeatureMeta,
    RefinementContext,
    ReviewContext,
    ReviewIssue,
    ReviewLoopSession,
    ReviewLoopState,
    SessionError,
)
from reviewloop.observability import log_event, logging_feature_context
from reviewloop.pr_feedback_monitor import MonitorRequest, PRFeedbackMonitor
from reviewloop.pr_merge_monitor import PRMergeMonitor
from reviewloop.quality_gate import evaluate_quality_gate, get_blocking_issues
from reviewloop.session_store import SessionStore


LOGGER = logging.getLogger("reviewloop.orchestrator")

_T = TypeVar("_T")

_MAX_REVIEW_DIFF_LINES: Final[int] = 2000
_PR_STATES: Final[frozenset[ReviewLoopState]] = frozenset(
    {
        "pr_created",
        "awaiting_pr_feedback",
        "addressing_feedback",
        "ready_for_human_review",
        "approved",
    }
)
_PRE_PR_STATES: Final[frozenset[ReviewLoopState]] = frozenset(
    {
        "pending_self_review",
        "self_reviewing",
        "self_review_passed",
        "self_review_failed",
        "refining",
    }
)


class ReviewLoopError(RuntimeError):
    """Base class for review-loop control failures raised to the caller."""


class DuplicateSessionError(ReviewLoopError):
    """A non-terminal session already exists for the feature."""


class ReviewLoopDisabledError(ReviewLoopError):
    """The project's review-loop config has ``enabled = false``."""


class InvalidTransitionError(ReviewLoopError):
    """A manual override was requested from a state that does not allow it."""


class ReviewLoopOrchestrator:
    """Drives each feature from self-review through PR feedback to merge.

    Control flow for one feature is serialized by a per-feature reentrant lock.
    Monitor events arrive on monitor threads and are handed to the executor, so
    polling never waits on an agent turn.
    """

    def __init__(
        self,
        *,
        store: SessionStore,
        reviewer: Reviewer,
        fixer: Fixer,
        pull_requests: PullRequestOpener,
        repo: LocalRepository,
        feedback_monitor: PRFeedbackMonitor,
        merge_monitor: PRMergeMonitor,
        events: EventBus,
        executor: Executor | None = None,
        worker_count: int = 2,
    ) -> None:
        self._store = store
        self._reviewer = reviewer
        self._fixer = fixer
        self._pull_requests = pull_requests
        self._repo = repo
        self._feedback_monitor = feedback_monitor
        self._merge_monitor = merge_monitor
        self._events = events
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=worker_count, thread_name_prefix="review-loop"
        )
        self._guard = threading.Lock()
        self._feature_locks: dict[str, threading.RLock] = {}
        self._features: dict[str, FeatureMeta] = {}
        self._unsubscribe = events.subscribe(self._on_event)

    # Loop entry points

    def start_loop(self, feature: FeatureMeta) -> ReviewLoopSession:
        """Create a session for ``feature`` and run it until it waits on a PR or fails.

        A terminal session for the same feature is replaced. A non-terminal one
        raises DuplicateSessionError.
        """
        config = self._store.read_config()
        if not config.enabled:
            raise ReviewLoopDisabledError("Review loop is disabled for this project")
        feature_id = feature.feature_id
        with self._feature_lock(feature_id), logging_feature_context(feature_id):
            existing = self._store.read(feature_id)
            if existing is not None:
                if not existing.is_terminal:
                    raise DuplicateSessionError(
                        f"Feature {feature_id} already has an active review loop "
                        f"in state {existing.state}"
                    )
                self._store.delete(feature_id)
                log_event(
                    LOGGER,
                    "review_loop_session_replaced",
                    feature_id=feature_id,
                    previous_state=existing.state,
                )
            self._remember(feature)
            session = self._store.create(
                feature_id, branch=feature.branch, worktree_path=feature.worktree_path
            )
            log_event(
                LOGGER,
                "review_loop_started",
                feature_id=feature_id,
                branch=feature.branch,
                max_iterations=config.max_iterations,
                self_review=config.self_review_before_pr,
            )
            self._emit_state(None, session)
            if config.self_review_before_pr:
                self._self_review_loop(feature, config)
            else:
                self._open_pull_request_stage(feature, revert_to="pending_self_review")
            return self._require_session(feature_id)

    def retry(self, feature_id: str) -> ReviewLoopSession:
        """Re-enter the stage that follows the session's current state."""
        config = self._store.read_config()
        with self._feature_lock(feature_id), logging_feature_context(feature_id):
            session = self._require_session(feature_id)
            if session.is_terminal:
                raise InvalidTransitionError(f"Cannot retry a {session.state} session")
            if session.last_error is not None:
                session = self._store.update(feature_id, last_error=None)
            feature = self._feature_for(session)
            log_event(LOGGER, "review_loop_retry", feature_id=feature_id, state=session.state)
            state = session.state
            if state in ("pending_self_review", "self_reviewing"):
                if config.self_review_before_pr:
                    self._self_review_loop(feature, config)
                else:
                    self._open_pull_request_stage(feature, revert_to=state)
            elif state in ("self_review_failed", "refining"):
                if session.current_iteration >= config.max_iterations:
                    self._force_advance(feature, config, session)
                else:
                    self._refine_then_continue(feature, config)
            elif state == "self_review_passed":
                self._open_pull_request_stage(feature, revert_to="self_review_passed")
            else:
                self._resume_pr_tracking(session)
            return self._require_session(feature_id)

    # Manual overrides

    def skip_to_pr_created(self, feature: FeatureMeta) -> ReviewLoopSession:
        feature_id = feature.feature_id
        with self._feature_lock(feature_id), logging_feature_context(feature_id):
            session = self._store.read(feature_id)
            if session is None:
                session = self._store.create(
                    feature_id, branch=feature.branch, worktree_path=feature.worktree_path
                )
                self._emit_state(None, session)
            elif session.state not in _PRE_PR_STATES or session.pr_number is not None:
                raise InvalidTransitionError(
                    f"Cannot skip to pr_created from {session.state}"
                )
            self._remember(feature)
            log_event(
                LOGGER,
                "review_loop_manual_override",
                feature_id=feature_id,
                override="skip_to_pr_created",
                from_state=session.state,
            )
            self._open_pull_request_stage(feature, revert_to=session.state)
            return self._require_session(feature_id)

    def force_refinement(self, feature_id: str) -> ReviewLoopSession:
        config = self._store.read_config()
        with self._feature_lock(feature_id), logging_feature_context(feature_id):
            session = self._require_session(feature_id)
            if session.state not in (
                "pending_self_review",
                "self_review_passed",
                "self_review_failed",
            ):
                raise InvalidTransitionError(f"Cannot force refinement from {session.state}")
            latest = session.latest_result
            if latest is None or not latest.issues:
                raise InvalidTransitionError(
                    f"Feature {feature_id} has no review issues to refine"
                )
            log_event(
                LOGGER,
                "review_loop_manual_override",
                feature_id=feature_id,
                override="force_refinement",
                from_state=session.state,
            )
            self._refine_then_continue(self._feature_for(session), config, forced=True)
            return self._require_session(feature_id)

    def force_ready_for_human(self, feature_id: str) -> ReviewLoopSession:
        config = self._store.read_config()
        with self._feature_lock(feature_id), logging_feature_context(feature_id):
            session = self._require_session(feature_id)
            if session.is_terminal or session.pr_number is None:
                raise InvalidTransitionError(
                    f"Cannot force ready_for_human_review from {session.state}"
                )
            log_event(
                LOGGER,
                "review_loop_manual_override",
                feature_id=feature_id,
                override="force_ready_for_human",
                from_state=session.state,
            )
            self._mark_ready(session, config, reason="manual override")
            return self._require_session(feature_id)

    def link_pr(self, feature_id: str, pr_number: int, pr_url: str) -> ReviewLoopSession:
        """Attach a PR created outside the loop and start tracking it."""
        with self._feature_lock(feature_id), logging_feature_context(feature_id):
            session = self._require_session(feature_id)
            if session.is_terminal:
                raise InvalidTransitionError(f"Cannot link a PR to a {session.state} session")
            previous = session.state
            session = self._store.link_pr(feature_id, pr_number, pr_url)
            log_event(LOGGER, "review_loop_pr_linked", feature_id=feature_id, pr_number=pr_number)
            self._emit_state(previous, session)
            self._resume_pr_tracking(session)
            return self._require_session(feature_id)

    def stop(self, feature_id: str) -> bool:
        stopped_feedback = self._feedback_monitor.stop_monitoring(feature_id, "manual")
        stopped_merge = self._merge_monitor.stop_monitoring(feature_id, "manual")
        log_event(
            LOGGER,
            "review_loop_stopped",
            feature_id=feature_id,
            feedback_monitor=stopped_feedback,
            merge_monitor=stopped_merge,
        )
        return stopped_feedback or stopped_merge

    def shutdown(self) -> None:
        self._unsubscribe()
        self._feedback_monitor.stop_all("shutdown")
        self._merge_monitor.stop_all("shutdown")
        if self._owns_executor:
            self._executor.shutdown(wait=True)
        log_event(LOGGER, "review_loop_shutdown")

    def get_session(self, feature_id: str) -> ReviewLoopSession | None:
        return self._store.read(feature_id)

    def is_tracking(self, feature_id: str) -> bool:
        if self._feedback_monitor.is_monitoring(feature_id):
            return True
        return self._merge_monitor.is_monitoring(feature_id)

    # Monitor events

    def handle_monitor_event(self, event: ReviewLoopEvent) -> None:
        feature_id = event.feature_id
        with self._feature_lock(feature_id), logging_feature_context(feature_id):
            session = self._store.read(feature_id)
            if session is None:
                log_event(
                    LOGGER,
                    "review_loop_event_ignored",
                    feature_id=feature_id,
                    event_type=event.event_type,
                    reason="no_session",
                )
                return
            config = self._store.read_config()
            if isinstance(event, PRMerged):
                self._handle_merged(session)
            elif isinstance(event, PRClosed):
                self._feedback_monitor.stop_monitoring(feature_id, "closed")
                log_event(
                    LOGGER,
                    "review_loop_pr_closed",
                    feature_id=feature_id,
                    pr_number=event.pr_number,
                    state=session.state,
                )
            elif isinstance(event, NewFeedback):
                self._handle_new_feedback(session, event, config)
            elif isinstance(event, ChecksChanged):
                self._handle_checks_changed(session, event, config)
            elif isinstance(event, PRStateChanged):
                checks = self._monitored_checks_status(feature_id)
                self._maybe_mark_ready(
                    session,
                    config,
                    mergeable=event.mergeable,
                    requested_changes=event.requested_changes,
                    checks_status=checks,
                )

    def _on_event(self, event: ReviewLoopEvent) -> None:
        if isinstance(event, (NewFeedback, ChecksChanged, PRStateChanged, PRMerged, PRClosed)):
            self._executor.submit(self._handle_monitor_event_safely, event)

    def _handle_monitor_event_safely(self, event: ReviewLoopEvent) -> None:
        try:
            self.handle_monitor_event(event)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "review_loop_event_handling_failed",
                feature_id=event.feature_id,
                event_type=event.event_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _handle_merged(self, session: ReviewLoopSession) -> None:
        feature_id = session.feature_id
        if session.state == "merged":
            return
        if session.state not in _PR_STATES:
            log_event(
                LOGGER,
                "review_loop_event_ignored",
                feature_id=feature_id,
                event_type=PRMerged.event_type,
                reason=f"state_{session.state}",
            )
            return
        previous = session.state
        session = self._store.complete_session(feature_id, "merged")
        log_event(LOGGER, "review_loop_merged", feature_id=feature_id, pr_number=session.pr_number)
        self._emit_state(previous, session)
        self._feedback_monitor.stop_monitoring(feature_id, "merged")

    def _handle_new_feedback(
        self, session: ReviewLoopSession, event: NewFeedback, config: ReviewLoopConfig
    ) -> None:
        if session.state == "ready_for_human_review" and any(
            review.state == "approved" for review in event.new_reviews
        ):
            previous = session.state
            session = self._store.complete_session(session.feature_id, "approved")
            log_event(
                LOGGER,
                "review_loop_approved",
                feature_id=session.feature_id,
                pr_number=session.pr_number,
            )
            self._emit_state(previous, session)
            return
        if session.state not in ("awaiting_pr_feedback", "ready_for_human_review"):
            log_event(
                LOGGER,
                "review_loop_event_ignored",
                feature_id=session.feature_id,
                event_type=event.event_type,
                reason=f"state_{session.state}",
            )
            return
        analysis = analyze_feedback(new_comments=event.new_comments, new_reviews=event.new_reviews)
        self._events.emit(
            PRFeedbackReceived(
                feature_id=session.feature_id, pr_number=event.pr_number, feedback=analysis
            )
        )
        if analysis.actionable_items and config.auto_address_review_comments:
            self._address_feedback(session, analysis)
            return
        self._maybe_mark_ready(
            session,
            config,
            mergeable=event.feedback.mergeable,
            requested_changes=event.feedback.requested_changes,
            checks_status=event.feedback.checks_status,
        )

    def _handle_checks_changed(
        self, session: ReviewLoopSession, event: ChecksChanged, config: ReviewLoopConfig
    ) -> None:
        if event.new_status == "failing":
            if (
                session.state not in ("awaiting_pr_feedback", "ready_for_human_review")
                or not config.auto_address_review_comments
            ):
                log_event(
                    LOGGER,
                    "review_loop_event_ignored",
                    feature_id=session.feature_id,
                    event_type=event.event_type,
                    reason=(
                        f"state_{session.state}"
                        if config.auto_address_review_comments
                        else "auto_address_disabled"
                    ),
                )
                return
            analysis = analyze_feedback(new_comments=(), new_reviews=(), checks_status="failing")
            self._events.emit(
                PRFeedbackReceived(
                    feature_id=session.feature_id, pr_number=event.pr_number, feedback=analysis
                )
            )
            self._address_feedback(session, analysis)
            return
        monitored = self._feedback_monitor.get_monitored(session.feature_id)
        if monitored is None:
            return
        self._maybe_mark_ready(
            session,
            config,
            mergeable=monitored.mergeable,
            requested_changes=monitored.requested_changes,
            checks_status=event.new_status,
        )

    def _address_feedback(self, session: ReviewLoopSession, analysis: AnalyzedFeedback) -> None:
        feature = self._feature_for(session)
        issues = feedback_to_issues(analysis.actionable_items)

        def _stage() -> None:
            previous, current = self._store.transition_state(
                session.feature_id, "addressing_feedback"
            )
            self._emit_state(previous, current)
            self._run_fixer(
                feature,
                current,
                issues,
                RefinementContext(
                    iteration=current.current_iteration,
                    source="pr_feedback",
                    worktree_path=current.worktree_path,
                    pr_number=current.pr_number,
                    notes=analysis.questions,
                ),
            )
            previous, current = self._store.transition_state(
                session.feature_id, "awaiting_pr_feedback"
            )
            self._emit_state(previous, current)
            self._check_monitored_readiness(current)

        self._run_stage(session.feature_id, "feedback", revert_to=session.state, body=_stage)

    def _check_monitored_readiness(self, session: ReviewLoopSession) -> None:
        monitored = self._feedback_monitor.get_monitored(session.feature_id)
        if monitored is None:
            return
        self._maybe_mark_ready(
            session,
            self._store.read_config(),
            mergeable=monitored.mergeable,
            requested_changes=monitored.requested_changes,
            checks_status=monitored.checks_status,
        )

    def _maybe_mark_ready(
        self,
        session: ReviewLoopSession,
        config: ReviewLoopConfig,
        *,
        mergeable: bool,
        requested_changes: bool,
        checks_status: ChecksStatus | None,
    ) -> None:
        if session.state != "awaiting_pr_feedback":
            return
        if not mergeable or requested_changes or checks_status != "passing":
            return
        self._mark_ready(session, config, reason="mergeable with passing checks")

    def _mark_ready(
        self, session: ReviewLoopSession, config: ReviewLoopConfig, *, reason: str
    ) -> None:
        previous, session = self._store.transition_state(
            session.feature_id, "ready_for_human_review"
        )
        self._emit_state(previous, session)
        log_event(
            LOGGER,
            "review_loop_ready_for_human",
            feature_id=session.feature_id,
            pr_number=session.pr_number,
            reason=reason,
            channels=config.notification_channels,
        )
        if config.notify_on_ready:
            self._events.emit(
                ReadyForHuman(
                    feature_id=session.feature_id,
                    pr_url=session.pr_url,
                    summary=_ready_summary(session, reason),
                    session=session,
                )
            )

    def _monitored_checks_status(self, feature_id: str) -> ChecksStatus | None:
        monitored = self._feedback_monitor.get_monitored(feature_id)
        return monitored.checks_status if monitored is not None else None

    # Self-review and refinement

    def _self_review_loop(self, feature: FeatureMeta, config: ReviewLoopConfig) -> None:
        while True:
            passed = self._run_stage(
                feature.feature_id,
                "self_review",
                revert_to="pending_self_review",
                body=lambda: self._self_review_once(feature, config),
            )
            if passed is None:
                return
            if passed:
                self._open_pull_request_stage(feature, revert_to="self_review_passed")
                return
            session = self._require_session(feature.feature_id)
            if session.current_iteration >= config.max_iterations:
                self._force_advance(feature, config, session)
                return
            if self._refine_once(feature, config) is None:
                return

    def _refine_then_continue(
        self, feature: FeatureMeta, config: ReviewLoopConfig, *, forced: bool = False
    ) -> None:
        addressed_all = self._refine_once(feature, config, forced=forced)
        if addressed_all is None:
            return
        session = self._require_session(feature.feature_id)
        if not addressed_all and session.current_iteration >= config.max_iterations:
            self._force_advance(feature, config, session)
            return
        self._self_review_loop(feature, config)

    def _self_review_once(self, feature: FeatureMeta, config: ReviewLoopConfig) -> bool:
        feature_id = feature.feature_id
        previous, session = self._store.transition_state(feature_id, "self_reviewing")
        self._emit_state(previous, session)
        iteration = session.current_iteration + 1
        raw_diff = self._repo.branch_diff(
            feature.base_branch,
            feature.branch,
            cwd=None if feature.worktree_path is None else Path(feature.worktree_path),
        )
        diff = parse_diff(raw_diff)
        context = ReviewContext(
            iteration=iteration,
            formatted_diff=format_diff_for_review(diff, max_lines=_MAX_REVIEW_DIFF_LINES),
            code_context=extract_code_context(diff),
            previous_results=session.iterations,
        )
        result = self._reviewer.review(diff=diff, context=context, feature=feature)
        if result.iteration != iteration:
            result = replace(result, iteration=iteration)
        session = self._store.add_review_result(feature_id, result)
        gate = evaluate_quality_gate(
            result.issues, config.quality_gate, config.severity_threshold
        )
        passed = not gate.should_block_pr
        log_event(
            LOGGER,
            "review_loop_review_completed",
            feature_id=feature_id,
            iteration=iteration,
            verdict=result.verdict,
            gate_verdict=gate.verdict,
            issue_count=len(result.issues),
            passed=passed,
        )
        self._events.emit(
            ReviewCompleted(
                feature_id=feature_id, result=result, passed=passed, gate_summary=gate.summary
            )
        )
        previous, session = self._store.transition_state(
            feature_id, "self_review_passed" if passed else "self_review_failed"
        )
        self._emit_state(previous, session)
        return passed

    def _refine_once(
        self, feature: FeatureMeta, config: ReviewLoopConfig, *, forced: bool = False
    ) -> bool | None:
        """Run the fixer on the latest blocking issues; None when the stage failed."""
        session = self._require_session(feature.feature_id)
        revert_to: ReviewLoopState = (
            session.state if session.state != "refining" else "self_review_failed"
        )

        def _stage() -> bool:
            current = self._require_session(feature.feature_id)
            issues = self._issues_to_refine(current, config, forced=forced)
            previous, current = self._store.transition_state(feature.feature_id, "refining")
            self._emit_state(previous, current)
            return self._run_fixer(
                feature,
                current,
                issues,
                RefinementContext(
                    iteration=current.current_iteration,
                    source="self_review",
                    worktree_path=current.worktree_path,
                ),
            )

        return self._run_stage(feature.feature_id, "refinement", revert_to=revert_to, body=_stage)

    def _issues_to_refine(
        self, session: ReviewLoopSession, config: ReviewLoopConfig, *, forced: bool
    ) -> tuple[ReviewIssue, ...]:
        latest = session.latest_result
        if latest is None:
            return ()
        blocking = get_blocking_issues(
            latest.issues, config.severity_threshold, config.quality_gate.required_categories
        )
        if forced and not blocking:
            return latest.issues
        return blocking

    def _run_fixer(
        self,
        feature: FeatureMeta,
        session: ReviewLoopSession,
        issues: tuple[ReviewIssue, ...],
        context: RefinementContext,
    ) -> bool:
        """Returns True when every issue handed to the fixer was addressed."""
        self._events.emit(
            RefinementStarted(
                feature_id=feature.feature_id, iteration=context.iteration, issues=issues
            )
        )
        fix = self._fixer.refine(issues=issues, context=context, feature=feature)
        sent = [issue.id for issue in issues]
        claimed = set(fix.addressed_issue_ids)
        addressed = tuple(issue_id for issue_id in sent if issue_id in claimed)
        unaddressed = tuple(issue_id for issue_id in sent if issue_id not in claimed)
        log_event(
            LOGGER,
            "review_loop_refinement_completed",
            feature_id=feature.feature_id,
            source=context.source,
            iteration=context.iteration,
            addressed_count=len(addressed),
            unaddressed_count=len(unaddressed),
        )
        self._events.emit(
            RefinementCompleted(
                feature_id=feature.feature_id,
                iteration=context.iteration,
                addressed_issue_ids=addressed,
                unaddressed_issue_ids=unaddressed,
                notes=fix.notes,
            )
        )
        return not unaddressed

    def _force_advance(
        self, feature: FeatureMeta, config: ReviewLoopConfig, session: ReviewLoopSession
    ) -> None:
        latest = session.latest_result
        unresolved = (
            get_blocking_issues(
                latest.issues, config.severity_threshold, config.quality_gate.required_categories
            )
            if latest is not None
            else ()
        )
        self._store.update(feature.feature_id, unresolved_issues=unresolved)
        log_event(
            LOGGER,
            "review_loop_forced_advance",
            feature_id=feature.feature_id,
            iteration=session.current_iteration,
            max_iterations=config.max_iterations,
            unresolved_count=len(unresolved),
        )
        self._open_pull_request_stage(feature, revert_to=session.state)

    # Pull request

    def _open_pull_request_stage(self, feature: FeatureMeta, *, revert_to: ReviewLoopState) -> None:
        def _stage() -> None:
            session = self._require_session(feature.feature_id)
            pull_request = self._pull_requests.open_pull_request(feature=feature, session=session)
            previous = session.state
            session = self._store.link_pr(
                feature.feature_id, pull_request.number, pull_request.html_url
            )
            log_event(
                LOGGER,
                "review_loop_pr_created",
                feature_id=feature.feature_id,
                pr_number=pull_request.number,
                pr_url=pull_request.html_url,
            )
            self._emit_state(previous, session)

        created = self._run_stage(
            feature.feature_id, "pr_creation", revert_to=revert_to, body=_stage
        )
        if created is None:
            return
        self._resume_pr_tracking(self._require_session(feature.feature_id))

    def _resume_pr_tracking(self, session: ReviewLoopSession) -> None:
        if session.pr_number is None or session.pr_url is None:
            return
        request = MonitorRequest(
            feature_id=session.feature_id,
            pr_number=session.pr_number,
            pr_url=session.pr_url,
            branch=session.branch or session.feature_id,
            worktree_path=session.worktree_path,
        )
        if not self._feedback_monitor.is_monitoring(session.feature_id):
            self._feedback_monitor.start_monitoring(request)
        if not self._merge_monitor.is_monitoring(session.feature_id):
            self._merge_monitor.start_monitoring(request)
        # A merge seen while starting the monitors may already have finished the session.
        current = self._require_session(session.feature_id)
        if current.state in ("pr_created", "addressing_feedback"):
            previous, current = self._store.transition_state(
                session.feature_id, "awaiting_pr_feedback"
            )
            self._emit_state(previous, current)
        # The monitor may already hold a green snapshot that will not change again.
        self._check_monitored_readiness(current)

    # Helpers

    def _run_stage(
        self,
        feature_id: str,
        stage: str,
        *,
        revert_to: ReviewLoopState,
        body: Callable[[], _T],
    ) -> _T | None:
        try:
            return body()
        except Exception as exc:  # noqa: BLE001
            self._record_stage_failure(feature_id, stage, revert_to, exc)
            return None

    def _record_stage_failure(
        self, feature_id: str, stage: str, revert_to: ReviewLoopState, exc: Exception
    ) -> None:
        LOGGER.error(
            "event=review_loop_stage_failed feature_id=%s stage=%s error_type=%s",
            feature_id,
            stage,
            type(exc).__name__,
            exc_info=True,
        )
        error = SessionError(
            stage=stage,
            message=str(exc) or type(exc).__name__,
            occurred_at=_utc_now_iso8601(),
        )
        try:
            session = self._store.read(feature_id)
            if session is not None:
                previous = session.state
                session = self._store.update(feature_id, state=revert_to, last_error=error)
                if previous != revert_to:
                    self._emit_state(previous, session)
        except Exception as store_exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "review_loop_error_record_failed",
                feature_id=feature_id,
                stage=stage,
                error_type=type(store_exc).__name__,
            )
        self._events.emit(LoopError(feature_id=feature_id, stage=stage, error=error.message))

    def _emit_state(
        self, previous: ReviewLoopState | None, session: ReviewLoopSession
    ) -> None:
        self._events.emit(
            StateChanged(
                feature_id=session.feature_id,
                previous_state=previous,
                new_state=session.state,
                session=session,
            )
        )

    def _require_session(self, feature_id: str) -> ReviewLoopSession:
        session = self._store.read(feature_id)
        if session is None:
            raise ReviewLoopError(f"No review loop session for feature {feature_id}")
        return session

    def _feature_lock(self, feature_id: str) -> threading.RLock:
        with self._guard:
            lock = self._feature_locks.get(feature_id)
            if lock is None:
                lock = threading.RLock()
                self._feature_locks[feature_id] = lock
            return lock

    def _remember(self, feature: FeatureMeta) -> None:
        with self._guard:
            self._features[feature.feature_id] = feature

    def _feature_for(self, session: ReviewLoopSession) -> FeatureMeta:
        with self._guard:
            known = self._features.get(session.feature_id)
        if known is not None:
            return known
        return FeatureMeta(
            feature_id=session.feature_id,
            title=session.feature_id,
            branch=session.branch or session.feature_id,
            worktree_path=session.worktree_path,
        )


def _ready_summary(session: ReviewLoopSession, reason: str) -> str:
    parts = [f"PR #{session.pr_number} is ready for human review ({reason})."]
    parts.append(f"{len(session.iterations)} self-review iteration(s).")
    if session.unresolved_issues:
        parts.append(f"{len(session.unresolved_issues)} unresolved issue(s) carried over.")
    return " ".join(parts)


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
