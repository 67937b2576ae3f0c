from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
import re
from typing import Final, Literal

from reviewloop.models import (
    AnalyzedDiff,
    FeatureMeta,
    FixResult,
    PullRequest,
    RefinementContext,
    ReviewContext,
    ReviewIssue,
    ReviewLoopSession,
    ReviewResult,
)


FeatureStatus = Literal["in_review", "merged", "verified"]

_FIX_KEYWORDS: Final[tuple[str, ...]] = (
    "fixed",
    "addressed",
    "resolved",
    "implemented",
    "updated",
    "changed",
    "added",
    "removed",
)
_STOP_WORDS: Final[frozenset[str]] = frozenset(
    {"the", "and", "that", "this", "with", "from", "should", "have", "into", "when", "there"}
)


class Reviewer(ABC):
    @abstractmethod
    def review(
        self,
        *,
        diff: AnalyzedDiff,
        context: ReviewContext,
        feature: FeatureMeta,
    ) -> ReviewResult:
        """Review the change set and report a verdict with issues for ``context.iteration``."""


class Fixer(ABC):
    @abstractmethod
    def refine(
        self,
        *,
        issues: Sequence[ReviewIssue],
        context: RefinementContext,
        feature: FeatureMeta,
    ) -> FixResult:
        """Apply fixes for ``issues`` in the feature worktree and report which were addressed."""


class PullRequestOpener(ABC):
    @abstractmethod
    def open_pull_request(
        self, *, feature: FeatureMeta, session: ReviewLoopSession
    ) -> PullRequest:
        """Create the pull request for a feature whose self-review loop finished."""


class FeatureStatusUpdater(ABC):
    @abstractmethod
    def set_status(self, *, feature_id: str, status: FeatureStatus, reason: str) -> None:
        """Record the feature's externally visible status."""


class AddressedIssueClassifier(ABC):
    """Decides which issues a fixer's free-text response actually addressed."""

    @abstractmethod
    def classify(self, issues: Sequence[ReviewIssue], response_text: str) -> FixResult:
        """Partition ``issues`` into addressed and unaddressed ids."""


class ExplicitIdClassifier(AddressedIssueClassifier):
    """Counts an issue as addressed only when its id is cited next to a fix keyword."""

    def __init__(self, *, window: int = 120) -> None:
        self._window = window

    def classify(self, issues: Sequence[ReviewIssue], response_text: str) -> FixResult:
        lowered = response_text.lower()
        addressed: list[str] = []
        unaddressed: list[str] = []
        for issue in issues:
            if self._cites_fix(issue.id.lower(), lowered):
                addressed.append(issue.id)
            else:
                unaddressed.append(issue.id)
        return FixResult(
            addressed_issue_ids=tuple(addressed),
            unaddressed_issue_ids=tuple(unaddressed),
            notes=response_text.strip()[:500],
        )

    def _cites_fix(self, issue_id: str, text: str) -> bool:
        for match in re.finditer(rf"(?<![\w-]){re.escape(issue_id)}(?![\w-])", text):
            start = max(0, match.start() - self._window)
            end = match.end() + self._window
            window = text[start:end]
            if any(keyword in window for keyword in _FIX_KEYWORDS):
                return True
        return False


class KeywordOverlapClassifier(ExplicitIdClassifier):
    """Explicit ids first, then falls back to description keyword overlap per sentence."""

    def __init__(self, *, window: int = 120, min_overlap: float = 0.5) -> None:
        super().__init__(window=window)
        self._min_overlap = min_overlap

    def classify(self, issues: Sequence[ReviewIssue], response_text: str) -> FixResult:
        explicit = super().classify(issues, response_text)
        if not explicit.unaddressed_issue_ids:
            return explicit
        sentences = [
            _keywords(sentence)
            for sentence in re.split(r"[.\n!?]+", response_text.lower())
            if any(keyword in sentence for keyword in _FIX_KEYWORDS)
        ]
        addressed = list(explicit.addressed_issue_ids)
        unaddressed: list[str] = []
        by_id = {issue.id: issue for issue in issues}
        for issue_id in explicit.unaddressed_issue_ids:
            issue_words = _keywords(by_id[issue_id].description.lower())
            if issue_words and any(
                len(issue_words & sentence) / len(issue_words) > self._min_overlap
                for sentence in sentences
            ):
                addressed.append(issue_id)
            else:
                unaddressed.append(issue_id)
        return FixResult(
            addressed_issue_ids=tuple(addressed),
            unaddressed_issue_ids=tuple(unaddressed),
            notes=explicit.notes,
        )


def _keywords(text: str) -> set[str]:
    return {word for word in re.findall(r"[a-z0-9_]{4,}", text) if word not in _STOP_WORDS}
