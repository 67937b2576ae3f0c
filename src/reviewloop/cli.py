from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys
import time
from typing import cast

from reviewloop.codex_adapter import CodexFixer, CodexReviewer
from reviewloop.config import (
    AppConfig,
    ReviewLoopConfig,
    load_config,
    review_loop_config_to_dict,
)
from reviewloop.diff_analyzer import (
    filter_diff_by_patterns,
    format_diff_for_review,
    format_diff_summary,
    parse_diff,
)
from reviewloop.events import EventBus, ReviewLoopEvent, describe_event
from reviewloop.feature_status import FeatureStatusBoard
from reviewloop.git_ops import LocalRepository
from reviewloop.github_gateway import GitHubGateway
from reviewloop.models import (
    REVIEW_LOOP_STATES,
    SEVERITY_ORDER,
    FeatureMeta,
    QualityMetrics,
    ReviewLoopSession,
    ReviewLoopState,
    Severity,
)
from reviewloop.observability import configure_logging
from reviewloop.orchestrator import ReviewLoopOrchestrator
from reviewloop.pr_feedback_monitor import FeedbackMonitorConfig, PRFeedbackMonitor
from reviewloop.pr_merge_monitor import MergeMonitorConfig, PRMergeMonitor
from reviewloop.prompts import parse_review_response
from reviewloop.quality_gate import evaluate_quality_gate
from reviewloop.session_store import SessionStore, session_to_dict
from reviewloop.sessions_tui import run_sessions_tui


_DEFAULT_CONFIG_PATH = Path("reviewloop.toml")
_RUN_WAIT_SECONDS = 1.0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reviewloop")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser(
        "init-config", help="Write the default review-loop config for a project"
    )
    _add_common_arguments(init_parser)
    init_parser.add_argument(
        "--force", action="store_true", help="Overwrite an existing project config"
    )

    show_config_parser = subparsers.add_parser(
        "show-config", help="Print the effective review-loop config as JSON"
    )
    _add_common_arguments(show_config_parser)

    sessions_parser = subparsers.add_parser("sessions", help="List review-loop sessions")
    _add_common_arguments(sessions_parser)
    sessions_parser.add_argument(
        "--state", choices=REVIEW_LOOP_STATES, help="Only list sessions in this state"
    )
    sessions_parser.add_argument("--json", action="store_true", help="Print sessions as JSON")

    show_parser = subparsers.add_parser("show", help="Show one feature's session")
    _add_common_arguments(show_parser)
    show_parser.add_argument("feature_id")
    show_parser.add_argument("--json", action="store_true", help="Print the session as JSON")

    stats_parser = subparsers.add_parser("stats", help="Summarize sessions by state")
    _add_common_arguments(stats_parser)
    stats_parser.add_argument("--json", action="store_true", help="Print statistics as JSON")

    archive_parser = subparsers.add_parser(
        "archive", help="Move old completed sessions into sessions/archive"
    )
    _add_common_arguments(archive_parser)
    archive_parser.add_argument(
        "--older-than-days",
        type=int,
        default=None,
        help="Retention window in days (defaults to runtime.archive_after_days)",
    )

    diff_parser = subparsers.add_parser(
        "analyze-diff", help="Parse a unified diff and print the review rendering"
    )
    _add_common_arguments(diff_parser)
    diff_parser.add_argument("--file", type=Path, help="Read the diff from this file, not stdin")
    diff_parser.add_argument(
        "--pattern",
        action="append",
        default=[],
        help="Keep only files matching this glob (repeatable)",
    )
    diff_parser.add_argument("--max-lines", type=int, default=None)

    gate_parser = subparsers.add_parser(
        "gate", help="Evaluate the quality gate for a review result"
    )
    _add_common_arguments(gate_parser)
    gate_parser.add_argument(
        "--review-json", type=Path, required=True, help="Review response JSON file"
    )
    gate_parser.add_argument("--coverage", type=float, default=None)
    gate_parser.add_argument(
        "--complexity-json",
        type=Path,
        default=None,
        help='JSON object of function name to complexity, e.g. {"parse": 12}',
    )
    gate_parser.add_argument("--duplication", type=float, default=None)
    gate_parser.add_argument("--severity-threshold", choices=SEVERITY_ORDER, default=None)

    run_parser = subparsers.add_parser(
        "run", help="Run the self-review loop for a feature and track its PR"
    )
    _add_common_arguments(run_parser)
    run_parser.add_argument("feature_id")
    run_parser.add_argument("--branch", required=True)
    run_parser.add_argument("--title", default=None)
    run_parser.add_argument("--base", default=None, help="Base branch for the PR")
    run_parser.add_argument("--worktree", type=Path, default=None)
    run_parser.add_argument("--description", default="")
    run_parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Return once the loop reaches a PR instead of tracking it",
    )

    watch_parser = subparsers.add_parser("watch", help="Open the session dashboard")
    _add_common_arguments(watch_parser)
    watch_parser.add_argument("--refresh-seconds", type=int, default=2)

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=None,
        help="Project directory; overrides runtime.project_dir from --config",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        choices=("low", "high"),
        default=None,
        help="Enable runtime logging to stderr (default mode: high)",
    )


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(getattr(args, "verbose", None))

    if args.command == "init-config":
        _cmd_init_config(_project_dir(args), force=bool(args.force))
        return
    if args.command == "show-config":
        _cmd_show_config(_project_dir(args))
        return
    if args.command == "sessions":
        _cmd_sessions(_project_dir(args), state=args.state, as_json=bool(args.json))
        return
    if args.command == "show":
        _cmd_show(_project_dir(args), str(args.feature_id), as_json=bool(args.json))
        return
    if args.command == "stats":
        _cmd_stats(_project_dir(args), as_json=bool(args.json))
        return
    if args.command == "archive":
        _cmd_archive(args)
        return
    if args.command == "analyze-diff":
        _cmd_analyze_diff(args)
        return
    if args.command == "gate":
        _cmd_gate(args)
        return
    if args.command == "run":
        _cmd_run(_load_app_config(args), args)
        return
    if args.command == "watch":
        run_sessions_tui(project_dir=_project_dir(args), refresh_seconds=args.refresh_seconds)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_init_config(project_dir: Path, *, force: bool) -> None:
    store = SessionStore(project_dir)
    if store.config_path.exists() and not force:
        print(f"Config already exists: {store.config_path} (use --force to overwrite)")
        return
    store.write_config(ReviewLoopConfig())
    print(f"Wrote default review-loop config: {store.config_path}")


def _cmd_show_config(project_dir: Path) -> None:
    config = SessionStore(project_dir).read_config()
    print(json.dumps(review_loop_config_to_dict(config), indent=2, sort_keys=True))


def _cmd_sessions(project_dir: Path, *, state: str | None, as_json: bool) -> None:
    store = SessionStore(project_dir)
    if state is None:
        sessions = store.get_all()
    else:
        sessions = store.get_by_state(cast(ReviewLoopState, state))
    if as_json:
        print(json.dumps([session_to_dict(session) for session in sessions], indent=2))
        return
    if not sessions:
        print("No review loop sessions.")
        return
    for session in sessions:
        print(_session_line(session))


def _cmd_show(project_dir: Path, feature_id: str, *, as_json: bool) -> None:
    session = SessionStore(project_dir).read(feature_id)
    if session is None:
        raise RuntimeError(f"No review loop session for feature {feature_id}")
    if as_json:
        print(json.dumps(session_to_dict(session), indent=2))
        return
    print(_session_line(session))
    if session.branch:
        print(f"branch={session.branch}")
    if session.last_error is not None:
        print(f"last_error={session.last_error.stage}: {session.last_error.message}")
    for result in session.iterations:
        print(f"review #{result.iteration}: {result.verdict} ({len(result.issues)} issue(s))")
        for issue in result.issues:
            print(f"  {issue.id} [{issue.severity}/{issue.category}] {issue.description}")
    if session.unresolved_issues:
        print("unresolved at PR creation:")
        for issue in session.unresolved_issues:
            print(f"  {issue.id} [{issue.severity}/{issue.category}] {issue.description}")


def _cmd_stats(project_dir: Path, *, as_json: bool) -> None:
    stats = SessionStore(project_dir).get_statistics()
    if as_json:
        payload = {
            "total": stats.total,
            "active": stats.active,
            "completed": stats.completed,
            "by_state": stats.by_state,
            "average_iterations": stats.average_iterations,
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return
    print(
        f"total={stats.total} active={stats.active} completed={stats.completed} "
        f"average_iterations={stats.average_iterations:.2f}"
    )
    for state, count in sorted(stats.by_state.items()):
        print(f"{state}={count}")


def _cmd_archive(args: argparse.Namespace) -> None:
    older_than_days = args.older_than_days
    if args.project_dir is not None:
        project_dir = cast(Path, args.project_dir)
        if older_than_days is None:
            older_than_days = 30
    else:
        config = _load_app_config(args)
        project_dir = config.runtime.project_dir
        if older_than_days is None:
            older_than_days = config.runtime.archive_after_days
    if older_than_days < 0:
        raise RuntimeError("--older-than-days must be >= 0")
    archived = SessionStore(project_dir).archive_old_sessions(older_than_days)
    print(f"Archived {len(archived)} session(s).")
    for feature_id in archived:
        print(feature_id)


def _cmd_analyze_diff(args: argparse.Namespace) -> None:
    if args.file is not None:
        text = cast(Path, args.file).read_text(encoding="utf-8")
    else:
        text = sys.stdin.read()
    diff = parse_diff(text)
    if args.pattern:
        diff = filter_diff_by_patterns(diff, args.pattern)
    print(format_diff_summary(diff.summary))
    print()
    print(format_diff_for_review(diff, max_lines=args.max_lines))


def _cmd_gate(args: argparse.Namespace) -> None:
    if args.project_dir is not None or args.config is not None:
        loop_config = SessionStore(_project_dir(args)).read_config()
    else:
        loop_config = ReviewLoopConfig()
    review_text = cast(Path, args.review_json).read_text(encoding="utf-8")
    result = parse_review_response(review_text, 1)
    complexity: dict[str, int] | None = None
    if args.complexity_json is not None:
        complexity = _load_complexity(cast(Path, args.complexity_json))
    threshold = cast(Severity, args.severity_threshold or loop_config.severity_threshold)
    evaluation = evaluate_quality_gate(
        result.issues,
        loop_config.quality_gate,
        threshold,
        QualityMetrics(
            test_coverage=args.coverage,
            complexity_by_function=complexity,
            duplication_percentage=args.duplication,
        ),
    )
    print(evaluation.summary)
    for check in evaluation.checks:
        print(f"{check.status:7} {check.name}: {check.message}")
        for detail in check.details:
            print(f"        {detail}")
    if evaluation.should_block_pr:
        raise SystemExit(1)


def _cmd_run(config: AppConfig, args: argparse.Namespace) -> None:
    verbose = getattr(args, "verbose", None)
    if verbose:
        configure_logging(verbose, state_dir=config.runtime.state_dir)
    project_dir = config.runtime.project_dir
    events = EventBus()
    github = GitHubGateway(config.repo.owner, config.repo.name)
    repo = LocalRepository(project_dir)
    store = SessionStore(project_dir)
    feedback_monitor = PRFeedbackMonitor(
        github=github,
        events=events,
        config=FeedbackMonitorConfig(
            poll_interval_seconds=float(config.runtime.feedback_poll_interval_seconds),
            max_concurrent_prs=config.runtime.max_concurrent_prs,
        ),
    )
    merge_monitor = PRMergeMonitor(
        github=github,
        repo=repo,
        status_updater=FeatureStatusBoard(project_dir),
        events=events,
        config=MergeMonitorConfig(
            poll_interval_seconds=float(config.runtime.merge_poll_interval_seconds),
            max_concurrent_prs=config.runtime.max_concurrent_merge_prs,
        ),
        auto_pull=config.auto_pull,
        project_dir=project_dir,
    )
    orchestrator = ReviewLoopOrchestrator(
        store=store,
        reviewer=CodexReviewer(config.codex, project_dir=project_dir),
        fixer=CodexFixer(config.codex, project_dir=project_dir),
        pull_requests=github,
        repo=repo,
        feedback_monitor=feedback_monitor,
        merge_monitor=merge_monitor,
        events=events,
        worker_count=config.runtime.worker_count,
    )
    events.subscribe(_print_event)

    feature = FeatureMeta(
        feature_id=str(args.feature_id),
        title=args.title or str(args.feature_id),
        branch=str(args.branch),
        base_branch=args.base or config.repo.default_branch,
        description=str(args.description or ""),
        worktree_path=str(args.worktree) if args.worktree is not None else None,
    )
    try:
        session = orchestrator.start_loop(feature)
        print(_session_line(session))
        if args.no_wait:
            return
        while not session.is_terminal:
            if session.last_error is not None:
                print(f"Stopped: {session.last_error.stage} failed: {session.last_error.message}")
                break
            if not orchestrator.is_tracking(feature.feature_id):
                print("Stopped: the pull request is no longer monitored.")
                break
            time.sleep(_RUN_WAIT_SECONDS)
            current = orchestrator.get_session(feature.feature_id)
            if current is None:
                break
            session = current
        print(_session_line(session))
    except KeyboardInterrupt:
        print("Interrupted; stopping monitors.")
    finally:
        orchestrator.shutdown()


def _print_event(event: ReviewLoopEvent) -> None:
    print(describe_event(event), flush=True)


def _session_line(session: ReviewLoopSession) -> str:
    pr = f"#{session.pr_number}" if session.pr_number is not None else "-"
    return (
        f"feature={session.feature_id} state={session.state} "
        f"iteration={session.current_iteration} pr={pr} updated={session.last_updated_at}"
    )


def _load_complexity(path: Path) -> dict[str, int]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise RuntimeError(f"{path} must hold a JSON object of function name to complexity")
    complexity: dict[str, int] = {}
    for name, value in payload.items():
        if isinstance(value, bool) or not isinstance(value, int):
            raise RuntimeError(f"Complexity for {name!r} must be an integer")
        complexity[str(name)] = value
    return complexity


def _project_dir(args: argparse.Namespace) -> Path:
    project_dir = getattr(args, "project_dir", None)
    if project_dir is not None:
        return cast(Path, project_dir)
    return _load_app_config(args).runtime.project_dir


def _load_app_config(args: argparse.Namespace) -> AppConfig:
    return load_config(getattr(args, "config", None) or _DEFAULT_CONFIG_PATH)
