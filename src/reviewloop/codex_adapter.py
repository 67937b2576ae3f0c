from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
import logging
import tempfile

from reviewloop.agent_adapter import (
    AddressedIssueClassifier,
    ExplicitIdClassifier,
    Fixer,
    Reviewer,
)
from reviewloop.config import CodexConfig
from reviewloop.models import (
    AnalyzedDiff,
    FeatureMeta,
    FixResult,
    RefinementContext,
    ReviewContext,
    ReviewIssue,
    ReviewResult,
)
from reviewloop.observability import log_event
from reviewloop.prompts import (
    ReviewResponseError,
    build_feedback_prompt,
    build_refinement_prompt,
    build_self_review_prompt,
    extract_json_object,
    parse_review_response,
)
from reviewloop.shell import run


LOGGER = logging.getLogger("reviewloop.codex_adapter")


class _CodexRunner:
    def __init__(self, config: CodexConfig, *, project_dir: Path) -> None:
        self._config = config
        self._project_dir = project_dir

    def _cwd_for(self, worktree_path: str | None) -> Path:
        return Path(worktree_path) if worktree_path else self._project_dir

    def _run_turn(self, *, prompt: str, cwd: Path) -> str:
        if not self._config.enabled:
            raise RuntimeError("Codex is disabled in config")

        with tempfile.TemporaryDirectory(prefix="reviewloop_codex_") as tmp:
            output_path = Path(tmp) / "last_message.txt"
            cmd = [
                "codex",
                "exec",
                "--json",
                "--skip-git-repo-check",
                "--output-last-message",
                str(output_path),
                "-",
            ]
            self._append_common_options(cmd)
            run(cmd, cwd=cwd, input_text=prompt)
            try:
                return output_path.read_text(encoding="utf-8").strip()
            except FileNotFoundError as exc:
                raise RuntimeError("Codex did not write a final message") from exc

    def _append_common_options(self, cmd: list[str]) -> None:
        if self._config.model:
            cmd.extend(["--model", self._config.model])
        if self._config.sandbox:
            cmd.extend(["--sandbox", self._config.sandbox])
        if self._config.profile:
            cmd.extend(["--profile", self._config.profile])
        if self._config.extra_args:
            cmd.extend(self._config.extra_args)


class CodexReviewer(_CodexRunner, Reviewer):
    def review(
        self,
        *,
        diff: AnalyzedDiff,
        context: ReviewContext,
        feature: FeatureMeta,
    ) -> ReviewResult:
        log_event(
            LOGGER,
            "codex_review_started",
            feature_id=feature.feature_id,
            iteration=context.iteration,
            files_changed=diff.summary.files_changed,
        )
        prompt = build_self_review_prompt(
            feature=feature,
            iteration=context.iteration,
            formatted_diff=context.formatted_diff,
            code_context=context.code_context,
            previous_results=context.previous_results,
        )
        message = self._run_turn(prompt=prompt, cwd=self._cwd_for(feature.worktree_path))
        result = parse_review_response(message, context.iteration)
        log_event(
            LOGGER,
            "codex_review_completed",
            feature_id=feature.feature_id,
            iteration=context.iteration,
            verdict=result.verdict,
            issue_count=len(result.issues),
        )
        return result


class CodexFixer(_CodexRunner, Fixer):
    """Runs a Codex turn that edits the worktree, then works out which issues it fixed.

    Structured ``addressed_issue_ids`` in the reply win. When the reply has no
    usable ids the injected classifier reads the free text instead.
    """

    def __init__(
        self,
        config: CodexConfig,
        *,
        project_dir: Path,
        classifier: AddressedIssueClassifier | None = None,
    ) -> None:
        super().__init__(config, project_dir=project_dir)
        self._classifier = classifier or ExplicitIdClassifier()

    def refine(
        self,
        *,
        issues: Sequence[ReviewIssue],
        context: RefinementContext,
        feature: FeatureMeta,
    ) -> FixResult:
        log_event(
            LOGGER,
            "codex_refine_started",
            feature_id=feature.feature_id,
            iteration=context.iteration,
            source=context.source,
            issue_count=len(issues),
        )
        if context.source == "pr_feedback":
            prompt = build_feedback_prompt(
                feature=feature,
                issues=issues,
                pr_number=context.pr_number,
                notes=context.notes,
            )
        else:
            prompt = build_refinement_prompt(
                feature=feature, issues=issues, iteration=context.iteration
            )
        cwd = self._cwd_for(context.worktree_path or feature.worktree_path)
        message = self._run_turn(prompt=prompt, cwd=cwd)
        result = parse_fix_response(message, issues)
        if result is None:
            log_event(
                LOGGER,
                "codex_refine_classifier_fallback",
                feature_id=feature.feature_id,
                classifier=type(self._classifier).__name__,
            )
            result = self._classifier.classify(issues, message)
        log_event(
            LOGGER,
            "codex_refine_completed",
            feature_id=feature.feature_id,
            iteration=context.iteration,
            addressed_count=len(result.addressed_issue_ids),
            unaddressed_count=len(result.unaddressed_issue_ids),
        )
        return result


def parse_fix_response(message: str, issues: Sequence[ReviewIssue]) -> FixResult | None:
    """Read structured ids from a fixer reply; None when the reply carries none."""
    try:
        payload = extract_json_object(message)
    except ReviewResponseError:
        return None
    addressed_raw = payload.get("addressed_issue_ids")
    if not isinstance(addressed_raw, list):
        return None
    known = [issue.id for issue in issues]
    cited = {item for item in addressed_raw if isinstance(item, str)}
    addressed = tuple(issue_id for issue_id in known if issue_id in cited)
    if not addressed and cited:
        # Ids that match nothing we sent are not trustworthy.
        return None
    notes = payload.get("notes")
    return FixResult(
        addressed_issue_ids=addressed,
        unaddressed_issue_ids=tuple(issue_id for issue_id in known if issue_id not in cited),
        notes=notes.strip() if isinstance(notes, str) else "",
    )
