from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone
import json
import re
from typing import Final, cast

from reviewloop.models import (
    ISSUE_CATEGORIES,
    REVIEW_VERDICTS,
    SEVERITY_ORDER,
    CodeContext,
    FeatureMeta,
    IssueCategory,
    ReviewIssue,
    ReviewResult,
    ReviewVerdict,
    Severity,
)


_ISSUE_ID_PREFIXES: Final[dict[str, str]] = {
    "security": "SEC",
    "architecture": "ARCH",
    "logic": "LOGIC",
    "style": "STYLE",
    "performance": "PERF",
    "testing": "TEST",
    "documentation": "DOC",
}
_JSON_FENCE_RE: Final[re.Pattern[str]] = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL)
_MAX_CONTEXT_BLOCKS: Final[int] = 20

PARSE_ERROR_ISSUE_ID: Final[str] = "parse-error"

_REVIEW_OUTPUT_SHAPE: Final[str] = """
{
  "verdict": "pass" | "needs_work" | "critical_issues",
  "issues": [
    {
      "id": "SEC-001",
      "severity": "critical" | "high" | "medium" | "low" | "suggestion",
      "category": "security" | "architecture" | "logic" | "style" | "performance" | "testing" | "documentation",
      "file": "path/to/file.py",
      "line_start": 42,
      "line_end": 45,
      "description": "Clear, actionable description of the issue",
      "suggested_fix": "How to fix it"
    }
  ],
  "summary": "Brief overall assessment (2-3 sentences)"
}
""".strip()

_FIX_OUTPUT_SHAPE: Final[str] = """
{
  "addressed_issue_ids": ["SEC-001"],
  "unaddressed_issue_ids": ["PERF-002"],
  "notes": "What changed, and why any issue was left unaddressed"
}
""".strip()


class ReviewResponseError(ValueError):
    pass


def generate_issue_id(category: str, index: int) -> str:
    prefix = _ISSUE_ID_PREFIXES.get(category, "ISSUE")
    return f"{prefix}-{index:03d}"


def build_self_review_prompt(
    *,
    feature: FeatureMeta,
    iteration: int,
    formatted_diff: str,
    code_context: Sequence[CodeContext] = (),
    previous_results: Sequence[ReviewResult] = (),
) -> str:
    description = ""
    if feature.description.strip():
        description = f"\nDescription:\n{feature.description.strip()}\n"
    context_blocks = "\n\n".join(
        f"{block.path} lines {block.start_line}-{block.end_line}:\n{block.content}"
        for block in code_context[:_MAX_CONTEXT_BLOCKS]
    )
    previous = _render_previous_results(previous_results)
    return f"""
You are a senior code reviewer examining the changes for feature {feature.feature_id}
before they become a pull request against {feature.base_branch}.

Feature title:
{feature.title}
{description}
Review iteration: {iteration}

Task:
- Review the diff critically, as you would a colleague's change.
- Cover security, architecture, logic, performance, testing, style and documentation.
- Only flag real issues. Give a file and line reference whenever you can.
- Assign severity by actual impact: critical for vulnerabilities or data loss,
  high for broken behavior, medium for missing edge cases, low for minor fixes,
  suggestion for optional improvements.
- Use ids made of a category prefix and a number, for example SEC-001 or LOGIC-002.
  Keep the id of an issue stable if it is still present from a previous iteration.

Verdict:
- pass: nothing that should block the pull request.
- needs_work: medium or high severity issues should be fixed first.
- critical_issues: critical security or correctness problems.
{previous}
Response format:
- Return JSON only, with this object shape:
{_REVIEW_OUTPUT_SHAPE}

Changes:
{formatted_diff}

Surrounding context:
{context_blocks or "(none)"}
""".strip()


def build_refinement_prompt(
    *,
    feature: FeatureMeta,
    issues: Sequence[ReviewIssue],
    iteration: int,
) -> str:
    return f"""
You are fixing review findings for feature {feature.feature_id} ({feature.title}).
Branch: {feature.branch}
Review iteration: {iteration}

Task:
- Address each issue below by editing files in the current worktree.
- Make targeted fixes that preserve existing behavior.
- Run the project's tests for the areas you touch.
- If an issue cannot be fixed safely, leave it and say why in notes.

Issues:
{_render_issues(issues)}

Response format:
- Return JSON only, with this object shape:
{_FIX_OUTPUT_SHAPE}
- Only list ids from the issues above.
- Only list an id as addressed if you actually changed files for it.
""".strip()


def build_feedback_prompt(
    *,
    feature: FeatureMeta,
    issues: Sequence[ReviewIssue],
    pr_number: int | None,
    notes: Sequence[str] = (),
) -> str:
    pr_line = f"Pull request: #{pr_number}" if pr_number is not None else "Pull request: (unknown)"
    extra = "\n".join(f"- {note}" for note in notes) or "- (none)"
    return f"""
You are addressing reviewer feedback on the pull request for feature {feature.feature_id}.
{pr_line}
Branch: {feature.branch}

Task:
- Each item below comes from a human reviewer or from CI.
- Make the requested change in the current worktree, keeping the reviewer's intent.
- For failing checks, reproduce the failure locally and fix it.
- Never rewrite history. Leave committing and pushing to the caller.

Feedback items:
{_render_issues(issues)}

Additional notes:
{extra}

Response format:
- Return JSON only, with this object shape:
{_FIX_OUTPUT_SHAPE}
""".strip()


def parse_review_response(
    text: str,
    iteration: int,
    *,
    timestamp: str | None = None,
) -> ReviewResult:
    """Turn a reviewer's reply into a ReviewResult.

    The JSON object may sit in a ```json fence or be the outermost braces of
    the reply. Anything unparseable yields a ``needs_work`` result with a single
    ``parse-error`` issue, so a garbled review never passes the loop.
    """
    stamp = timestamp or _utc_now_iso8601()
    try:
        payload = extract_json_object(text)
        return _review_result_from_payload(payload, iteration=iteration, timestamp=stamp)
    except ReviewResponseError as exc:
        return ReviewResult(
            verdict="needs_work",
            issues=(
                ReviewIssue(
                    id=PARSE_ERROR_ISSUE_ID,
                    severity="medium",
                    category="logic",
                    description=f"Could not parse review response: {exc}",
                ),
            ),
            summary="Review response could not be parsed; treating as needs_work.",
            iteration=iteration,
            timestamp=stamp,
        )


def extract_json_object(text: str) -> dict[str, object]:
    candidates: list[str] = [match.group(1) for match in _JSON_FENCE_RE.finditer(text)]
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        try:
            payload = json.loads(candidate.strip())
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return cast(dict[str, object], payload)
    raise ReviewResponseError("no JSON object found")


def _review_result_from_payload(
    payload: dict[str, object], *, iteration: int, timestamp: str
) -> ReviewResult:
    verdict = payload.get("verdict")
    if verdict not in REVIEW_VERDICTS:
        raise ReviewResponseError(f"invalid verdict {verdict!r}")
    raw_issues = payload.get("issues", [])
    if not isinstance(raw_issues, list):
        raise ReviewResponseError("issues must be a list")
    issues: list[ReviewIssue] = []
    seen: set[str] = set()
    for index, item in enumerate(raw_issues, start=1):
        issue = _issue_from_payload(item, index=index)
        if issue.id in seen:
            raise ReviewResponseError(f"duplicate issue id {issue.id!r}")
        seen.add(issue.id)
        issues.append(issue)
    summary = payload.get("summary", "")
    return ReviewResult(
        verdict=cast(ReviewVerdict, verdict),
        issues=tuple(issues),
        summary=summary if isinstance(summary, str) else str(summary),
        iteration=iteration,
        timestamp=timestamp,
    )


def _issue_from_payload(item: object, *, index: int) -> ReviewIssue:
    if not isinstance(item, dict):
        raise ReviewResponseError("each issue must be an object")
    data = cast(dict[str, object], item)
    severity = data.get("severity")
    if severity not in SEVERITY_ORDER:
        raise ReviewResponseError(f"invalid severity {severity!r}")
    category = data.get("category")
    if category not in ISSUE_CATEGORIES:
        raise ReviewResponseError(f"invalid category {category!r}")
    description = data.get("description")
    if not isinstance(description, str) or not description.strip():
        raise ReviewResponseError("issue description must be a non-empty string")
    raw_id = data.get("id")
    issue_id = (
        raw_id.strip()
        if isinstance(raw_id, str) and raw_id.strip()
        else generate_issue_id(cast(str, category), index)
    )
    return ReviewIssue(
        id=issue_id,
        severity=cast(Severity, severity),
        category=cast(IssueCategory, category),
        description=description.strip(),
        file=_optional_text(data, "file"),
        line_start=_optional_line(data, "line_start", "lineStart"),
        line_end=_optional_line(data, "line_end", "lineEnd"),
        suggested_fix=_optional_text(data, "suggested_fix") or _optional_text(data, "suggestedFix"),
    )


def _optional_text(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _optional_line(data: dict[str, object], *keys: str) -> int | None:
    for key in keys:
        value = data.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int) and value > 0:
            return value
    return None


def _render_issues(issues: Sequence[ReviewIssue]) -> str:
    if not issues:
        return "- (none)"
    lines: list[str] = []
    for issue in issues:
        location = ""
        if issue.file:
            location = f" in {issue.file}"
            if issue.line_start is not None:
                location += f":{issue.line_start}"
                if issue.line_end is not None and issue.line_end != issue.line_start:
                    location += f"-{issue.line_end}"
        lines.append(
            f"- {issue.id} [{issue.severity}/{issue.category}]{location}: {issue.description}"
        )
        if issue.suggested_fix:
            lines.append(f"  Suggested fix: {issue.suggested_fix}")
    return "\n".join(lines)


def _render_previous_results(results: Sequence[ReviewResult]) -> str:
    if not results:
        return ""
    lines = ["", "Previous iterations:"]
    for result in results:
        ids = ", ".join(issue.id for issue in result.issues) or "no issues"
        lines.append(f"- #{result.iteration} {result.verdict}: {ids}")
    lines.append("")
    return "\n".join(lines)


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
