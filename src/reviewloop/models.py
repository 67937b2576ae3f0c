from __future__ import annotations

from dataclasses import dataclass, field
from typing import Final, Literal


Severity = Literal["critical", "high", "medium", "low", "suggestion"]
IssueCategory = Literal[
    "security",
    "architecture",
    "logic",
    "style",
    "performance",
    "testing",
    "documentation",
]
ReviewVerdict = Literal["pass", "needs_work", "critical_issues"]
ReviewLoopState = Literal[
    "pending_self_review",
    "self_reviewing",
    "self_review_passed",
    "self_review_failed",
    "refining",
    "pr_created",
    "awaiting_pr_feedback",
    "addressing_feedback",
    "ready_for_human_review",
    "approved",
    "merged",
]
DiffChangeType = Literal["added", "modified", "deleted", "renamed", "binary"]
DiffLineType = Literal["added", "removed", "context"]
PRState = Literal["OPEN", "MERGED", "CLOSED"]
ChecksStatus = Literal["pending", "passing", "failing"]
ReviewState = Literal["approved", "changes_requested", "commented", "pending"]
FeedbackSource = Literal["comment", "review", "check"]
FeedbackStatus = Literal["ready_to_fix", "needs_human_input", "blocked"]

# Most severe first.
SEVERITY_ORDER: Final[tuple[Severity, ...]] = ("critical", "high", "medium", "low", "suggestion")
ISSUE_CATEGORIES: Final[tuple[IssueCategory, ...]] = (
    "security",
    "architecture",
    "logic",
    "style",
    "performance",
    "testing",
    "documentation",
)
REVIEW_VERDICTS: Final[tuple[ReviewVerdict, ...]] = ("pass", "needs_work", "critical_issues")
REVIEW_LOOP_STATES: Final[tuple[ReviewLoopState, ...]] = (
    "pending_self_review",
    "self_reviewing",
    "self_review_passed",
    "self_review_failed",
    "refining",
    "pr_created",
    "awaiting_pr_feedback",
    "addressing_feedback",
    "ready_for_human_review",
    "approved",
    "merged",
)
TERMINAL_STATES: Final[frozenset[ReviewLoopState]] = frozenset({"approved", "merged"})


def severity_rank(severity: Severity) -> int:
    return SEVERITY_ORDER.index(severity)


def is_severity_at_or_above(severity: Severity, threshold: Severity) -> bool:
    """True when ``severity`` is as severe as ``threshold`` or more severe."""
    return severity_rank(severity) <= severity_rank(threshold)


@dataclass(frozen=True)
class ReviewIssue:
    id: str
    severity: Severity
    category: IssueCategory
    description: str
    file: str | None = None
    line_start: int | None = None
    line_end: int | None = None
    suggested_fix: str | None = None


@dataclass(frozen=True)
class ReviewResult:
    verdict: ReviewVerdict
    issues: tuple[ReviewIssue, ...]
    summary: str
    iteration: int
    timestamp: str


@dataclass(frozen=True)
class SessionError:
    stage: str
    message: str
    occurred_at: str


@dataclass(frozen=True)
class ReviewLoopSession:
    feature_id: str
    state: ReviewLoopState
    iterations: tuple[ReviewResult, ...]
    current_iteration: int
    started_at: str
    last_updated_at: str
    pr_number: int | None = None
    pr_url: str | None = None
    completed_at: str | None = None
    branch: str | None = None
    worktree_path: str | None = None
    unresolved_issues: tuple[ReviewIssue, ...] = ()
    last_error: SessionError | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def latest_result(self) -> ReviewResult | None:
        if not self.iterations:
            return None
        return self.iterations[-1]


@dataclass(frozen=True)
class QualityGateThresholds:
    min_test_coverage: float = 80.0
    max_complexity: int = 10
    max_duplication: float = 5.0
    required_categories: tuple[IssueCategory, ...] = ("security",)


@dataclass(frozen=True)
class QualityMetrics:
    test_coverage: float | None = None
    complexity_by_function: dict[str, int] | None = None
    duplication_percentage: float | None = None


@dataclass(frozen=True)
class FeatureMeta:
    feature_id: str
    title: str
    branch: str
    base_branch: str = "main"
    description: str = ""
    worktree_path: str | None = None


@dataclass(frozen=True)
class PullRequest:
    number: int
    html_url: str


@dataclass(frozen=True)
class DiffLine:
    type: DiffLineType
    content: str
    old_line_number: int | None
    new_line_number: int | None


@dataclass(frozen=True)
class DiffHunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    header: str | None
    lines: tuple[DiffLine, ...]


@dataclass(frozen=True)
class DiffFile:
    path: str
    old_path: str | None
    change_type: DiffChangeType
    hunks: tuple[DiffHunk, ...]
    is_binary: bool = False


@dataclass(frozen=True)
class DiffSummary:
    files_changed: int = 0
    files_added: int = 0
    files_modified: int = 0
    files_deleted: int = 0
    files_renamed: int = 0
    lines_added: int = 0
    lines_removed: int = 0


@dataclass(frozen=True)
class AnalyzedDiff:
    files: tuple[DiffFile, ...]
    summary: DiffSummary
    raw_diff: str


@dataclass(frozen=True)
class CodeContext:
    path: str
    start_line: int
    end_line: int
    content: str
    added_lines: tuple[int, ...]
    removed_lines: tuple[int, ...]


@dataclass(frozen=True)
class PRComment:
    id: str
    author: str
    body: str
    created_at: str
    path: str | None = None
    line: int | None = None
    is_bot: bool = False


@dataclass(frozen=True)
class PRReview:
    id: str
    author: str
    state: ReviewState
    body: str
    submitted_at: str
    comments: tuple[PRComment, ...] = ()


@dataclass(frozen=True)
class PRFeedback:
    pr_number: int
    title: str
    state: PRState
    comments: tuple[PRComment, ...]
    reviews: tuple[PRReview, ...]
    checks_status: ChecksStatus
    mergeable: bool
    requested_changes: bool


@dataclass(frozen=True)
class ActionableFeedbackItem:
    id: str
    source: FeedbackSource
    description: str
    severity: Severity
    author: str | None = None
    file: str | None = None
    line: int | None = None


@dataclass(frozen=True)
class AnalyzedFeedback:
    actionable_items: tuple[ActionableFeedbackItem, ...]
    questions: tuple[str, ...]
    requires_human_decision: tuple[str, ...]
    overall_status: FeedbackStatus


@dataclass(frozen=True)
class FixResult:
    addressed_issue_ids: tuple[str, ...]
    unaddressed_issue_ids: tuple[str, ...]
    new_issues_introduced: tuple[ReviewIssue, ...] = ()
    notes: str = ""


@dataclass(frozen=True)
class ReviewContext:
    iteration: int
    formatted_diff: str
    code_context: tuple[CodeContext, ...]
    previous_results: tuple[ReviewResult, ...] = ()


@dataclass(frozen=True)
class RefinementContext:
    iteration: int
    source: Literal["self_review", "pr_feedback"]
    worktree_path: str | None
    pr_number: int | None = None
    notes: tuple[str, ...] = field(default_factory=tuple)
