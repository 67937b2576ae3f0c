from __future__ import annotations

from collections.abc import Sequence
import hashlib

from reviewloop.models import (
    ActionableFeedbackItem,
    AnalyzedFeedback,
    ChecksStatus,
    FeedbackStatus,
    IssueCategory,
    PRComment,
    PRReview,
    ReviewIssue,
)


def is_bot_login(login: str) -> bool:
    return "[bot]" in login.strip().lower()


def is_bot_comment(comment: PRComment) -> bool:
    return comment.is_bot or is_bot_login(comment.author)


def feedback_item_id(*, source: str, source_id: str, body: str) -> str:
    digest = hashlib.sha256(f"{source}:{source_id}:{body}".encode("utf-8")).hexdigest()
    return f"pr-{source}-{digest[:10]}"


def _is_question(body: str) -> bool:
    return body.rstrip().endswith("?")


def analyze_feedback(
    *,
    new_comments: Sequence[PRComment],
    new_reviews: Sequence[PRReview],
    checks_status: ChecksStatus | None = None,
) -> AnalyzedFeedback:
    """Sort newly observed PR activity into work the fixer can do and work for humans."""
    actionable: list[ActionableFeedbackItem] = []
    questions: list[str] = []
    human: list[str] = []

    for review in new_reviews:
        body = review.body.strip()
        if review.state == "changes_requested":
            if body:
                actionable.append(
                    ActionableFeedbackItem(
                        id=feedback_item_id(source="review", source_id=review.id, body=body),
                        source="review",
                        description=body,
                        severity="high",
                        author=review.author,
                    )
                )
            elif not review.comments:
                human.append(f"{review.author} requested changes without details")
        elif body and review.state == "commented":
            if _is_question(body):
                questions.append(body)
            else:
                actionable.append(
                    ActionableFeedbackItem(
                        id=feedback_item_id(source="review", source_id=review.id, body=body),
                        source="review",
                        description=body,
                        severity="medium",
                        author=review.author,
                    )
                )
        for comment in review.comments:
            _classify_comment(comment, actionable=actionable, questions=questions)

    for comment in new_comments:
        _classify_comment(comment, actionable=actionable, questions=questions)

    if checks_status == "failing":
        actionable.append(
            ActionableFeedbackItem(
                id=feedback_item_id(source="check", source_id="rollup", body="failing"),
                source="check",
                description="One or more CI checks are failing on the pull request",
                severity="high",
            )
        )

    status: FeedbackStatus
    if actionable:
        status = "ready_to_fix"
    elif human:
        status = "blocked"
    elif questions:
        status = "needs_human_input"
    else:
        status = "ready_to_fix"
    return AnalyzedFeedback(
        actionable_items=tuple(actionable),
        questions=tuple(questions),
        requires_human_decision=tuple(human),
        overall_status=status,
    )


def _classify_comment(
    comment: PRComment,
    *,
    actionable: list[ActionableFeedbackItem],
    questions: list[str],
) -> None:
    body = comment.body.strip()
    if not body or is_bot_comment(comment):
        return
    if _is_question(body):
        questions.append(body)
        return
    actionable.append(
        ActionableFeedbackItem(
            id=feedback_item_id(source="comment", source_id=comment.id, body=body),
            source="comment",
            description=body,
            severity="medium",
            author=comment.author,
            file=comment.path,
            line=comment.line,
        )
    )


def feedback_to_issues(items: Sequence[ActionableFeedbackItem]) -> tuple[ReviewIssue, ...]:
    issues: list[ReviewIssue] = []
    for item in items:
        category: IssueCategory = "testing" if item.source == "check" else "logic"
        issues.append(
            ReviewIssue(
                id=item.id,
                severity=item.severity,
                category=category,
                description=item.description,
                file=item.file,
                line_start=item.line,
                line_end=item.line,
            )
        )
    return tuple(issues)
