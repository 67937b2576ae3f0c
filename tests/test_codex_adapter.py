from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
import json

import pytest

from reviewloop.agent_adapter import KeywordOverlapClassifier
from reviewloop.codex_adapter import CodexFixer, CodexReviewer, parse_fix_response
from reviewloop.config import CodexConfig
from reviewloop.diff_analyzer import parse_diff
from reviewloop.models import (
    FeatureMeta,
    FixResult,
    RefinementContext,
    ReviewContext,
    ReviewIssue,
)
from reviewloop.observability import configure_logging


FEATURE = FeatureMeta(
    feature_id="feat-1",
    title="Add login",
    branch="feat/login",
    worktree_path="/work/wt/feat-1",
)
ISSUES = (
    ReviewIssue(id="SEC-001", severity="high", category="security", description="Token logged"),
    ReviewIssue(id="PERF-002", severity="low", category="performance", description="Slow loop"),
)


def _enabled_config() -> CodexConfig:
    return CodexConfig(
        enabled=True,
        model="gpt-5-codex",
        sandbox="workspace-write",
        profile="default",
        extra_args=("--full-auto",),
    )


def _fake_run(
    message: str, calls: list[tuple[list[str], Path | None, str | None]]
) -> Callable[..., str]:
    def fake_run(
        cmd: list[str],
        *,
        cwd: Path | None = None,
        input_text: str | None = None,
        check: bool = True,
    ) -> str:
        _ = check
        calls.append((cmd, cwd, input_text))
        idx = cmd.index("--output-last-message")
        Path(cmd[idx + 1]).write_text(message, encoding="utf-8")
        return '{"type":"turn.completed"}\n'

    return fake_run


def test_review_runs_codex_in_feature_worktree(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    calls: list[tuple[list[str], Path | None, str | None]] = []
    reply = json.dumps(
        {
            "verdict": "needs_work",
            "issues": [
                {
                    "id": "SEC-001",
                    "severity": "high",
                    "category": "security",
                    "description": "Token logged",
                }
            ],
            "summary": "One issue.",
        }
    )
    monkeypatch.setattr("reviewloop.codex_adapter.run", _fake_run(reply, calls))
    configure_logging(verbose=True)

    result = CodexReviewer(_enabled_config(), project_dir=tmp_path).review(
        diff=parse_diff(""),
        context=ReviewContext(iteration=2, formatted_diff="## Diff Summary", code_context=()),
        feature=FEATURE,
    )

    assert result.verdict == "needs_work"
    assert result.iteration == 2
    assert [issue.id for issue in result.issues] == ["SEC-001"]
    cmd, cwd, prompt = calls[0]
    assert cmd[:4] == ["codex", "exec", "--json", "--skip-git-repo-check"]
    assert cmd[6] == "-"
    for flag in ("--model", "--sandbox", "--profile", "--full-auto"):
        assert flag in cmd
    assert cwd == Path("/work/wt/feat-1")
    assert prompt is not None and "Review iteration: 2" in prompt
    stderr = capsys.readouterr().err
    assert "event=codex_review_started feature_id=feat-1 files_changed=0 iteration=2" in stderr
    assert "event=codex_review_completed" in stderr
    assert "issue_count=1" in stderr


def test_disabled_codex_raises(tmp_path: Path) -> None:
    reviewer = CodexReviewer(CodexConfig(enabled=False), project_dir=tmp_path)

    with pytest.raises(RuntimeError, match="disabled"):
        reviewer.review(
            diff=parse_diff(""),
            context=ReviewContext(iteration=1, formatted_diff="", code_context=()),
            feature=FEATURE,
        )


def test_missing_final_message_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr("reviewloop.codex_adapter.run", lambda cmd, **kwargs: "")

    with pytest.raises(RuntimeError, match="final message"):
        CodexReviewer(CodexConfig(), project_dir=tmp_path).review(
            diff=parse_diff(""),
            context=ReviewContext(iteration=1, formatted_diff="", code_context=()),
            feature=FeatureMeta(feature_id="feat-1", title="t", branch="b"),
        )


def test_refine_uses_structured_ids(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    calls: list[tuple[list[str], Path | None, str | None]] = []
    reply = '```json\n{"addressed_issue_ids": ["SEC-001"], "notes": " masked token "}\n```'
    monkeypatch.setattr("reviewloop.codex_adapter.run", _fake_run(reply, calls))

    result = CodexFixer(CodexConfig(), project_dir=tmp_path).refine(
        issues=ISSUES,
        context=RefinementContext(iteration=1, source="self_review", worktree_path=None),
        feature=FEATURE,
    )

    assert result == FixResult(
        addressed_issue_ids=("SEC-001",),
        unaddressed_issue_ids=("PERF-002",),
        notes="masked token",
    )
    _, cwd, prompt = calls[0]
    assert cwd == Path("/work/wt/feat-1")
    assert prompt is not None and "You are fixing review findings" in prompt


def test_refine_pr_feedback_uses_feedback_prompt_and_classifier_fallback(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    calls: list[tuple[list[str], Path | None, str | None]] = []
    reply = "Fixed SEC-001 by masking the token. The slow loop was left as is."
    monkeypatch.setattr("reviewloop.codex_adapter.run", _fake_run(reply, calls))
    configure_logging(verbose=True)

    result = CodexFixer(
        CodexConfig(), project_dir=tmp_path, classifier=KeywordOverlapClassifier()
    ).refine(
        issues=ISSUES,
        context=RefinementContext(
            iteration=0, source="pr_feedback", worktree_path=str(tmp_path / "wt"), pr_number=42
        ),
        feature=FEATURE,
    )

    assert result.addressed_issue_ids == ("SEC-001",)
    assert result.unaddressed_issue_ids == ("PERF-002",)
    _, cwd, prompt = calls[0]
    assert cwd == tmp_path / "wt"
    assert prompt is not None and "Pull request: #42" in prompt
    stderr = capsys.readouterr().err
    assert "classifier=KeywordOverlapClassifier" in stderr
    assert "event=codex_refine_completed" in stderr


def test_parse_fix_response() -> None:
    assert parse_fix_response("no json here", ISSUES) is None
    assert parse_fix_response('{"notes": "x"}', ISSUES) is None
    assert parse_fix_response('{"addressed_issue_ids": ["NOPE-9"]}', ISSUES) is None

    empty = parse_fix_response('{"addressed_issue_ids": []}', ISSUES)
    assert empty == FixResult(addressed_issue_ids=(), unaddressed_issue_ids=("SEC-001", "PERF-002"))

    mixed = parse_fix_response(
        '{"addressed_issue_ids": ["PERF-002", "NOPE-9", 3], "notes": 5}', ISSUES
    )
    assert mixed == FixResult(addressed_issue_ids=("PERF-002",), unaddressed_issue_ids=("SEC-001",))
