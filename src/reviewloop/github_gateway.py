from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Final, cast

from reviewloop.agent_adapter import PullRequestOpener
from reviewloop.models import (
    ChecksStatus,
    FeatureMeta,
    PRComment,
    PRFeedback,
    PRReview,
    PRState,
    PullRequest,
    ReviewLoopSession,
    ReviewState,
)
from reviewloop.observability import log_event
from reviewloop.shell import CommandError, command_available, run


LOGGER = logging.getLogger("reviewloop.github_gateway")

_FEEDBACK_FIELDS: Final[str] = (
    "number,title,state,mergeable,mergeStateStatus,comments,reviews,statusCheckRollup"
)
_FAILING_STATES: Final[frozenset[str]] = frozenset({"FAILURE", "ERROR"})
_FAILING_CONCLUSIONS: Final[frozenset[str]] = frozenset(
    {"FAILURE", "ERROR", "TIMED_OUT", "CANCELLED", "ACTION_REQUIRED", "STARTUP_FAILURE"}
)
_GREEN_STATES: Final[frozenset[str]] = frozenset({"SUCCESS", "NEUTRAL"})
_GREEN_CONCLUSIONS: Final[frozenset[str]] = frozenset({"SUCCESS", "NEUTRAL", "SKIPPED"})
_REVIEW_STATES: Final[dict[str, ReviewState]] = {
    "APPROVED": "approved",
    "CHANGES_REQUESTED": "changes_requested",
    "COMMENTED": "commented",
}


class GitHubPollingError(RuntimeError):
    """Recoverable GitHub polling failure; caller should retry next poll."""


@dataclass(frozen=True)
class GitHubGateway(PullRequestOpener):
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def is_available(self) -> bool:
        if not command_available("gh"):
            log_event(
                LOGGER,
                "github_cli_unavailable",
                repo_full_name=self.full_name,
                reason="not_on_path",
            )
            return False
        try:
            run(["gh", "--version"])
        except CommandError:
            log_event(
                LOGGER,
                "github_cli_unavailable",
                repo_full_name=self.full_name,
                reason="version_failed",
            )
            return False
        return True

    def fetch_pr_feedback(self, pr_number: int) -> PRFeedback:
        payload = self._pr_view(pr_number, _FEEDBACK_FIELDS)
        try:
            return parse_pr_feedback(payload, pr_number=pr_number)
        except RuntimeError as exc:
            raise GitHubPollingError(f"Malformed feedback payload for PR #{pr_number}") from exc

    def fetch_pr_state(self, pr_number: int) -> PRState:
        payload = self._pr_view(pr_number, "state")
        state = _text(payload.get("state")).upper()
        if state not in {"OPEN", "MERGED", "CLOSED"}:
            raise GitHubPollingError(f"Unexpected state {state!r} for PR #{pr_number}")
        return cast(PRState, state)

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        request = json.dumps({"title": title, "head": head, "base": base, "body": body})
        try:
            payload = _decode_object(
                run(
                    ["gh", "api", "--method", "POST", f"/repos/{self.full_name}/pulls"]
                    + ["--input", "-"],
                    input_text=request,
                )
            )
            pr = PullRequest(
                number=_integer(payload.get("number"), field="number"),
                html_url=_text(payload.get("html_url")),
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=self.full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.full_name,
            pr_number=pr.number,
            pr_url=pr.html_url,
            base=base,
            head=head,
        )
        return pr

    def open_pull_request(
        self, *, feature: FeatureMeta, session: ReviewLoopSession
    ) -> PullRequest:
        return self.create_pull_request(
            title=feature.title,
            head=feature.branch,
            base=feature.base_branch,
            body=render_pull_request_body(feature, session),
        )

    def _pr_view(self, pr_number: int, json_fields: str) -> dict[str, object]:
        try:
            return _decode_object(
                run(
                    ["gh", "pr", "view", str(pr_number)]
                    + ["--repo", self.full_name, "--json", json_fields]
                )
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_view_failed",
                repo_full_name=self.full_name,
                pr_number=pr_number,
                error_type=type(exc).__name__,
            )
            raise GitHubPollingError(f"gh pr view failed for PR #{pr_number}: {exc}") from exc


def render_pull_request_body(feature: FeatureMeta, session: ReviewLoopSession) -> str:
    lines: list[str] = []
    if feature.description.strip():
        lines.extend([feature.description.strip(), ""])
    lines.append("## Self-review")
    latest = session.latest_result
    if latest is None:
        lines.append("Self-review was skipped for this change.")
    else:
        lines.append(
            f"{len(session.iterations)} review iteration(s); last verdict: `{latest.verdict}`."
        )
        if latest.summary.strip():
            lines.append("")
            lines.append(latest.summary.strip())
    if session.unresolved_issues:
        lines.extend(["", "## Unresolved issues"])
        for issue in session.unresolved_issues:
            location = f" ({issue.file})" if issue.file else ""
            lines.append(f"- [{issue.severity}/{issue.category}] {issue.description}{location}")
    return "\n".join(lines)


def parse_pr_feedback(payload: dict[str, object], *, pr_number: int) -> PRFeedback:
    comments = tuple(
        _parse_comment(item) for item in _items(payload.get("comments"), field="comments")
    )
    reviews = tuple(
        _parse_review(item) for item in _items(payload.get("reviews"), field="reviews")
    )
    checks_status = determine_checks_status(
        _items(payload.get("statusCheckRollup"), field="statusCheckRollup")
    )
    state = _text(payload.get("state")).upper() or "OPEN"
    if state not in {"OPEN", "MERGED", "CLOSED"}:
        raise RuntimeError(f"Unexpected PR state: {state}")
    return PRFeedback(
        pr_number=_optional_integer(payload.get("number"), field="number") or pr_number,
        title=_text(payload.get("title")),
        state=cast(PRState, state),
        comments=comments,
        reviews=reviews,
        checks_status=checks_status,
        mergeable=(
            _text(payload.get("mergeable")) == "MERGEABLE"
            or _text(payload.get("mergeStateStatus")) == "CLEAN"
        ),
        requested_changes=any(review.state == "changes_requested" for review in reviews),
    )


def determine_checks_status(checks: list[object]) -> ChecksStatus:
    if not checks:
        return "pending"
    normalized: list[tuple[str, str]] = []
    for item in checks:
        check = _object_or_none(item) or {}
        normalized.append(
            (
                _text(check.get("state")).upper(),
                _text(check.get("conclusion")).upper(),
            )
        )
    if any(
        state in _FAILING_STATES or conclusion in _FAILING_CONCLUSIONS
        for state, conclusion in normalized
    ):
        return "failing"
    if all(
        state in _GREEN_STATES or conclusion in _GREEN_CONCLUSIONS
        for state, conclusion in normalized
    ):
        return "passing"
    return "pending"


def normalize_review_state(value: object) -> ReviewState:
    return _REVIEW_STATES.get(_text(value).upper(), "pending")


def _parse_comment(value: object, *, author_override: str | None = None) -> PRComment:
    item = _object_or_none(value)
    if item is None:
        raise RuntimeError("Unexpected GitHub response: comment must be an object")
    author_obj = _object_or_none(item.get("author")) or {}
    login = author_override or _text(author_obj.get("login")) or "unknown"
    is_bot = author_obj.get("is_bot") is True or "[bot]" in login.lower()
    return PRComment(
        id=_text(item.get("id")),
        author=login,
        body=_text(item.get("body")),
        created_at=_text(item.get("createdAt")),
        path=_optional_text(item.get("path")),
        line=_optional_integer(item.get("line"), field="line"),
        is_bot=is_bot,
    )


def _parse_review(value: object) -> PRReview:
    item = _object_or_none(value)
    if item is None:
        raise RuntimeError("Unexpected GitHub response: review must be an object")
    author_obj = _object_or_none(item.get("author")) or {}
    login = _text(author_obj.get("login")) or "unknown"
    nested = _object_or_none(item.get("comments")) or {}
    nodes = nested.get("nodes")
    nested_comments = tuple(
        _parse_comment(node, author_override=login)
        for node in (nodes if isinstance(nodes, list) else [])
    )
    return PRReview(
        id=_text(item.get("id")),
        author=login,
        state=normalize_review_state(item.get("state")),
        body=_text(item.get("body")),
        submitted_at=_text(item.get("submittedAt")),
        comments=nested_comments,
    )


def _decode_object(raw: str) -> dict[str, object]:
    payload = _object_or_none(json.loads(raw))
    if payload is None:
        raise RuntimeError("Unexpected GitHub response: expected a JSON object")
    return payload


def _object_or_none(value: object) -> dict[str, object] | None:
    if isinstance(value, dict) and all(isinstance(key, str) for key in value):
        return cast(dict[str, object], value)
    return None


def _items(value: object, *, field: str) -> list[object]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    return cast(list[object], value)


def _text(value: object) -> str:
    return "" if value is None else str(value)


def _optional_text(value: object) -> str | None:
    return None if value is None else str(value)


def _optional_integer(value: object, *, field: str) -> int | None:
    # gh emits some numeric fields as strings; booleans never count as numbers.
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    raise RuntimeError(f"Unexpected GitHub response value for {field}: {value!r}")


def _integer(value: object, *, field: str) -> int:
    parsed = _optional_integer(value, field=field)
    if parsed is None:
        raise RuntimeError(f"Missing GitHub response field: {field}")
    return parsed
