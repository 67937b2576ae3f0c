from __future__ import annotations

from pathlib import Path
import logging

from reviewloop.observability import log_event
from reviewloop.shell import run


LOGGER = logging.getLogger("reviewloop.git_ops")


class LocalRepository:
    """Git commands against the project checkout and its feature worktrees."""

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir

    def branch_diff(self, base_branch: str, branch: str, *, cwd: Path | None = None) -> str:
        checkout = cwd or self.project_dir
        log_event(
            LOGGER,
            "git_branch_diff",
            checkout_path=str(checkout),
            base_branch=base_branch,
            branch=branch,
        )
        return run(
            [
                "git",
                "-C",
                str(checkout),
                "diff",
                "--no-color",
                "--find-renames",
                f"{base_branch}...{branch}",
            ]
        )

    def fetch_branch(self, branch: str) -> None:
        log_event(LOGGER, "git_fetch_branch", checkout_path=str(self.project_dir), branch=branch)
        run(["git", "-C", str(self.project_dir), "fetch", "origin", branch])

    def current_branch(self) -> str:
        return run(
            ["git", "-C", str(self.project_dir), "rev-parse", "--abbrev-ref", "HEAD"]
        ).strip()

    def pull_branch(self, branch: str) -> None:
        log_event(LOGGER, "git_pull_branch", checkout_path=str(self.project_dir), branch=branch)
        run(["git", "-C", str(self.project_dir), "pull", "origin", branch])

    def fast_forward_ref(self, branch: str) -> None:
        # Updates refs/heads/<branch> without touching the checked-out branch.
        log_event(
            LOGGER,
            "git_fast_forward_ref",
            checkout_path=str(self.project_dir),
            branch=branch,
        )
        run(["git", "-C", str(self.project_dir), "fetch", "origin", f"{branch}:{branch}"])

    def sync_branch(self, branch: str) -> None:
        """Bring local ``branch`` up to date with origin, keeping the current checkout."""
        self.fetch_branch(branch)
        if self.current_branch() == branch:
            self.pull_branch(branch)
        else:
            self.fast_forward_ref(branch)

    def remove_worktree(self, worktree_path: Path) -> None:
        log_event(
            LOGGER,
            "git_worktree_remove",
            checkout_path=str(self.project_dir),
            worktree_path=str(worktree_path),
        )
        run(
            [
                "git",
                "-C",
                str(self.project_dir),
                "worktree",
                "remove",
                str(worktree_path),
                "--force",
            ]
        )
