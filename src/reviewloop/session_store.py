"""File-backed persistence for review-loop sessions.

Layout under ``<project>/.reviewloop``::

    config.json                  project loop policy, merged over defaults
    sessions/<feature_id>.json   one ReviewLoopSession per feature
    sessions/archive/            completed sessions past the retention window

Every write goes to a uniquely named sibling temp file which is then renamed
over the target, so readers only ever see a complete document. Mutations of
one feature are serialized through a per-feature lock; different features
never block each other.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta, timezone
import json
import logging
import os
from pathlib import Path
import re
import secrets
import threading
from typing import Final, cast

from reviewloop.config import (
    ConfigError,
    ReviewLoopConfig,
    parse_review_loop_config,
    review_loop_config_to_dict,
)
from reviewloop.models import (
    ISSUE_CATEGORIES,
    REVIEW_LOOP_STATES,
    REVIEW_VERDICTS,
    SEVERITY_ORDER,
    TERMINAL_STATES,
    IssueCategory,
    ReviewIssue,
    ReviewLoopSession,
    ReviewLoopState,
    ReviewResult,
    ReviewVerdict,
    SessionError,
    Severity,
)
from reviewloop.observability import log_event, log_warning_event


LOGGER = logging.getLogger("reviewloop.session_store")

_FEATURE_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_IMMUTABLE_FIELDS: Final[frozenset[str]] = frozenset({"feature_id", "started_at"})
_SESSION_FIELDS: Final[frozenset[str]] = frozenset(
    item.name for item in fields(ReviewLoopSession)
)


class SessionStoreError(RuntimeError):
    pass


class SessionExistsError(SessionStoreError):
    pass


class SessionNotFoundError(SessionStoreError):
    pass


class SessionCorruptError(SessionStoreError):
    pass


@dataclass(frozen=True)
class SessionStatistics:
    total: int
    active: int
    completed: int
    by_state: dict[ReviewLoopState, int]
    average_iterations: float


class KeyedLockTable:
    """One mutex per key, created on demand and dropped once nobody holds it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._holders: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            self._holders[key] = self._holders.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                remaining = self._holders[key] - 1
                if remaining:
                    self._holders[key] = remaining
                else:
                    del self._holders[key]
                    del self._locks[key]

    def active_keys(self) -> tuple[str, ...]:
        with self._guard:
            return tuple(sorted(self._locks))


def write_json_atomic(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp.{os.getpid()}.{secrets.token_hex(6)}")
    try:
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def validate_feature_id(feature_id: str) -> str:
    if not _FEATURE_ID_RE.match(feature_id):
        raise ValueError(f"Invalid feature id: {feature_id!r}")
    return feature_id


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _completed_before(session: ReviewLoopSession, cutoff: datetime) -> bool:
    if not session.is_terminal or session.completed_at is None:
        return False
    return parse_timestamp(session.completed_at) < cutoff


class SessionStore:
    def __init__(
        self,
        project_dir: Path,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.project_dir = project_dir
        self.state_dir = project_dir / ".reviewloop"
        self.sessions_dir = self.state_dir / "sessions"
        self.archive_dir = self.sessions_dir / "archive"
        self.config_path = self.state_dir / "config.json"
        self._clock = clock
        self._locks = KeyedLockTable()
        self._config_lock = threading.Lock()

    def session_path(self, feature_id: str) -> Path:
        return self.sessions_dir / f"{validate_feature_id(feature_id)}.json"

    def create(
        self,
        feature_id: str,
        *,
        state: ReviewLoopState = "pending_self_review",
        branch: str | None = None,
        worktree_path: str | None = None,
    ) -> ReviewLoopSession:
        path = self.session_path(feature_id)
        with self._locks.hold(feature_id):
            if path.exists():
                raise SessionExistsError(f"Review loop session already exists: {feature_id}")
            now = format_timestamp(self._clock())
            session = ReviewLoopSession(
                feature_id=feature_id,
                state=state,
                iterations=(),
                current_iteration=0,
                started_at=now,
                last_updated_at=now,
                completed_at=now if state in TERMINAL_STATES else None,
                branch=branch,
                worktree_path=worktree_path,
            )
            write_json_atomic(path, session_to_dict(session))
        log_event(LOGGER, "session_created", feature_id=feature_id, state=state)
        return session

    def read(self, feature_id: str) -> ReviewLoopSession | None:
        return self._read_path(self.session_path(feature_id))

    def exists(self, feature_id: str) -> bool:
        return self.session_path(feature_id).exists()

    def update(self, feature_id: str, **changes: object) -> ReviewLoopSession:
        """Merge ``changes`` into the stored session and persist it.

        ``feature_id`` and ``started_at`` cannot change. ``last_updated_at``
        always moves forward, and ``completed_at`` follows the state: it is
        set on entering ``approved``/``merged`` and cleared on leaving them.
        """
        immutable = _IMMUTABLE_FIELDS.intersection(changes)
        if immutable:
            raise ValueError(f"Cannot modify immutable session field(s): {sorted(immutable)}")
        unknown = set(changes) - _SESSION_FIELDS
        if unknown:
            raise ValueError(f"Unknown session field(s): {sorted(unknown)}")
        return self.update_with(feature_id, lambda session: replace(session, **changes))

    def update_with(
        self,
        feature_id: str,
        mutate: Callable[[ReviewLoopSession], ReviewLoopSession],
    ) -> ReviewLoopSession:
        path = self.session_path(feature_id)
        with self._locks.hold(feature_id):
            existing = self._read_path(path)
            if existing is None:
                raise SessionNotFoundError(f"Review loop session not found: {feature_id}")
            candidate = mutate(existing)
            updated = self._normalize_update(existing, candidate)
            write_json_atomic(path, session_to_dict(updated))
        return updated

    def delete(self, feature_id: str) -> bool:
        path = self.session_path(feature_id)
        with self._locks.hold(feature_id):
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        log_event(LOGGER, "session_deleted", feature_id=feature_id)
        return True

    def get_all(self) -> list[ReviewLoopSession]:
        if not self.sessions_dir.is_dir():
            return []
        sessions: list[ReviewLoopSession] = []
        for path in sorted(self.sessions_dir.glob("*.json")):
            try:
                session = self._read_path(path)
            except SessionCorruptError as exc:
                log_warning_event(
                    LOGGER,
                    "session_read_skipped",
                    path=str(path),
                    error_type=type(exc).__name__,
                )
                continue
            if session is not None:
                sessions.append(session)
        sessions.sort(key=lambda item: parse_timestamp(item.last_updated_at), reverse=True)
        return sessions

    def get_by_state(self, state: ReviewLoopState) -> list[ReviewLoopSession]:
        return [session for session in self.get_all() if session.state == state]

    def get_active(self) -> list[ReviewLoopSession]:
        return [session for session in self.get_all() if not session.is_terminal]

    def get_completed(self) -> list[ReviewLoopSession]:
        return [session for session in self.get_all() if session.is_terminal]

    def transition_state(
        self, feature_id: str, new_state: ReviewLoopState
    ) -> tuple[ReviewLoopState, ReviewLoopSession]:
        """Move a session to ``new_state``; returns the previous state and the session."""
        previous: list[ReviewLoopState] = []

        def _apply(session: ReviewLoopSession) -> ReviewLoopSession:
            previous.append(session.state)
            return replace(session, state=new_state)

        updated = self.update_with(feature_id, _apply)
        log_event(
            LOGGER,
            "session_state_transition",
            feature_id=feature_id,
            previous_state=previous[0],
            new_state=new_state,
        )
        return previous[0], updated

    def add_review_result(self, feature_id: str, result: ReviewResult) -> ReviewLoopSession:
        def _append(session: ReviewLoopSession) -> ReviewLoopSession:
            last = session.latest_result
            if last is not None and result.iteration <= last.iteration:
                raise ValueError(
                    f"Review iteration {result.iteration} must follow iteration {last.iteration}"
                )
            return replace(
                session,
                iterations=(*session.iterations, result),
                current_iteration=result.iteration,
            )

        updated = self.update_with(feature_id, _append)
        log_event(
            LOGGER,
            "session_review_recorded",
            feature_id=feature_id,
            iteration=result.iteration,
            verdict=result.verdict,
            issue_count=len(result.issues),
        )
        return updated

    def link_pr(self, feature_id: str, pr_number: int, pr_url: str) -> ReviewLoopSession:
        return self.update(feature_id, pr_number=pr_number, pr_url=pr_url, state="pr_created")

    def complete_session(
        self, feature_id: str, final_state: ReviewLoopState = "approved"
    ) -> ReviewLoopSession:
        if final_state not in TERMINAL_STATES:
            raise ValueError(f"Sessions can only complete as approved or merged: {final_state}")
        return self.update(feature_id, state=final_state)

    def get_statistics(self) -> SessionStatistics:
        sessions = self.get_all()
        by_state: dict[ReviewLoopState, int] = {state: 0 for state in REVIEW_LOOP_STATES}
        for session in sessions:
            by_state[session.state] += 1
        completed = sum(1 for session in sessions if session.is_terminal)
        average = (
            sum(len(session.iterations) for session in sessions) / len(sessions)
            if sessions
            else 0.0
        )
        return SessionStatistics(
            total=len(sessions),
            active=len(sessions) - completed,
            completed=completed,
            by_state=by_state,
            average_iterations=average,
        )

    def archive_old_sessions(self, older_than_days: int = 30) -> tuple[str, ...]:
        cutoff = self._clock() - timedelta(days=older_than_days)
        archived: list[str] = []
        for snapshot in self.get_completed():
            if not _completed_before(snapshot, cutoff):
                continue
            path = self.session_path(snapshot.feature_id)
            with self._locks.hold(snapshot.feature_id):
                # The session may have been replaced since the listing.
                session = self._read_path(path)
                if session is None or not _completed_before(session, cutoff):
                    continue
                self.archive_dir.mkdir(parents=True, exist_ok=True)
                os.replace(path, self.archive_dir / path.name)
            archived.append(session.feature_id)
            log_event(
                LOGGER,
                "session_archived",
                feature_id=session.feature_id,
                completed_at=session.completed_at,
            )
        return tuple(archived)

    def read_config(self) -> ReviewLoopConfig:
        with self._config_lock:
            try:
                raw = self.config_path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return ReviewLoopConfig()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Invalid review loop config JSON at {self.config_path}") from exc
        if not isinstance(data, dict):
            raise ConfigError("Review loop config must be a JSON object")
        return parse_review_loop_config(cast(dict[str, object], data))

    def write_config(self, config: ReviewLoopConfig) -> None:
        with self._config_lock:
            write_json_atomic(self.config_path, review_loop_config_to_dict(config))
        log_event(LOGGER, "review_loop_config_written", path=str(self.config_path))

    def _read_path(self, path: Path) -> ReviewLoopSession | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            payload = json.loads(raw)
            return session_from_dict(payload)
        except (json.JSONDecodeError, ValueError, TypeError, KeyError) as exc:
            raise SessionCorruptError(f"Unreadable session file: {path}") from exc

    def _normalize_update(
        self, existing: ReviewLoopSession, candidate: ReviewLoopSession
    ) -> ReviewLoopSession:
        now = self._clock()
        previous = parse_timestamp(existing.last_updated_at)
        if now <= previous:
            now = previous + timedelta(microseconds=1)
        completed_at = candidate.completed_at
        if candidate.state in TERMINAL_STATES:
            if completed_at is None or existing.state != candidate.state:
                completed_at = format_timestamp(now)
        else:
            completed_at = None
        return replace(
            candidate,
            feature_id=existing.feature_id,
            started_at=existing.started_at,
            last_updated_at=format_timestamp(now),
            completed_at=completed_at,
        )


def review_issue_to_dict(issue: ReviewIssue) -> dict[str, object]:
    return {
        "id": issue.id,
        "severity": issue.severity,
        "category": issue.category,
        "description": issue.description,
        "file": issue.file,
        "line_start": issue.line_start,
        "line_end": issue.line_end,
        "suggested_fix": issue.suggested_fix,
    }


def review_issue_from_dict(payload: object) -> ReviewIssue:
    data = _require_mapping(payload, "issue")
    severity = _require_choice(data, "severity", SEVERITY_ORDER)
    category = _require_choice(data, "category", ISSUE_CATEGORIES)
    return ReviewIssue(
        id=_require_text(data, "id"),
        severity=cast(Severity, severity),
        category=cast(IssueCategory, category),
        description=_require_text(data, "description"),
        file=_optional_text(data, "file"),
        line_start=_optional_int(data, "line_start"),
        line_end=_optional_int(data, "line_end"),
        suggested_fix=_optional_text(data, "suggested_fix"),
    )


def review_result_to_dict(result: ReviewResult) -> dict[str, object]:
    return {
        "verdict": result.verdict,
        "issues": [review_issue_to_dict(issue) for issue in result.issues],
        "summary": result.summary,
        "iteration": result.iteration,
        "timestamp": result.timestamp,
    }


def review_result_from_dict(payload: object) -> ReviewResult:
    data = _require_mapping(payload, "review result")
    issues = data.get("issues", [])
    if not isinstance(issues, list):
        raise ValueError("review result issues must be a list")
    iteration = _optional_int(data, "iteration")
    if iteration is None or iteration < 1:
        raise ValueError("review result iteration must be a positive integer")
    return ReviewResult(
        verdict=cast(ReviewVerdict, _require_choice(data, "verdict", REVIEW_VERDICTS)),
        issues=tuple(review_issue_from_dict(item) for item in issues),
        summary=_require_text(data, "summary", allow_empty=True),
        iteration=iteration,
        timestamp=_require_text(data, "timestamp"),
    )


def session_to_dict(session: ReviewLoopSession) -> dict[str, object]:
    last_error: dict[str, object] | None = None
    if session.last_error is not None:
        last_error = {
            "stage": session.last_error.stage,
            "message": session.last_error.message,
            "occurred_at": session.last_error.occurred_at,
        }
    return {
        "feature_id": session.feature_id,
        "state": session.state,
        "iterations": [review_result_to_dict(item) for item in session.iterations],
        "current_iteration": session.current_iteration,
        "pr_number": session.pr_number,
        "pr_url": session.pr_url,
        "started_at": session.started_at,
        "last_updated_at": session.last_updated_at,
        "completed_at": session.completed_at,
        "branch": session.branch,
        "worktree_path": session.worktree_path,
        "unresolved_issues": [review_issue_to_dict(item) for item in session.unresolved_issues],
        "last_error": last_error,
    }


def session_from_dict(payload: object) -> ReviewLoopSession:
    data = _require_mapping(payload, "session")
    iterations = data.get("iterations", [])
    unresolved = data.get("unresolved_issues", [])
    if not isinstance(iterations, list) or not isinstance(unresolved, list):
        raise ValueError("session iterations and unresolved_issues must be lists")
    error_data = data.get("last_error")
    last_error: SessionError | None = None
    if error_data is not None:
        error_obj = _require_mapping(error_data, "last_error")
        last_error = SessionError(
            stage=_require_text(error_obj, "stage"),
            message=_require_text(error_obj, "message", allow_empty=True),
            occurred_at=_require_text(error_obj, "occurred_at"),
        )
    return ReviewLoopSession(
        feature_id=_require_text(data, "feature_id"),
        state=cast(ReviewLoopState, _require_choice(data, "state", REVIEW_LOOP_STATES)),
        iterations=tuple(review_result_from_dict(item) for item in iterations),
        current_iteration=_optional_int(data, "current_iteration") or 0,
        started_at=_require_text(data, "started_at"),
        last_updated_at=_require_text(data, "last_updated_at"),
        pr_number=_optional_int(data, "pr_number"),
        pr_url=_optional_text(data, "pr_url"),
        completed_at=_optional_text(data, "completed_at"),
        branch=_optional_text(data, "branch"),
        worktree_path=_optional_text(data, "worktree_path"),
        unresolved_issues=tuple(review_issue_from_dict(item) for item in unresolved),
        last_error=last_error,
    )


def _require_mapping(value: object, label: str) -> dict[str, object]:
    if not isinstance(value, dict) or not all(isinstance(key, str) for key in value):
        raise ValueError(f"{label} must be a JSON object")
    return cast(dict[str, object], value)


def _require_text(data: dict[str, object], key: str, *, allow_empty: bool = False) -> str:
    value = data.get(key)
    if not isinstance(value, str) or (not allow_empty and not value):
        raise ValueError(f"{key} must be a non-empty string")
    return value


def _optional_text(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string or null")
    return value


def _optional_int(data: dict[str, object], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer or null")
    return value


def _require_choice(data: dict[str, object], key: str, choices: tuple[str, ...]) -> str:
    value = data.get(key)
    if not isinstance(value, str) or value not in choices:
        raise ValueError(f"{key} must be one of: {', '.join(choices)}")
    return value
