from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
import tomllib
from typing import cast

from reviewloop.models import (
    ISSUE_CATEGORIES,
    SEVERITY_ORDER,
    IssueCategory,
    QualityGateThresholds,
    Severity,
)


@dataclass(frozen=True)
class RuntimeConfig:
    project_dir: Path
    worker_count: int = 2
    feedback_poll_interval_seconds: int = 30
    merge_poll_interval_seconds: int = 60
    max_concurrent_prs: int = 10
    max_concurrent_merge_prs: int = 20
    archive_after_days: int = 30

    @property
    def state_dir(self) -> Path:
        return self.project_dir / ".reviewloop"


@dataclass(frozen=True)
class RepoConfig:
    owner: str
    name: str
    default_branch: str = "main"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class AutoPullConfig:
    enabled: bool = True
    target_branch: str = "main"
    auto_cleanup_worktrees: bool = False


@dataclass(frozen=True)
class CodexConfig:
    enabled: bool = True
    model: str | None = None
    sandbox: str | None = None
    profile: str | None = None
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repo: RepoConfig
    auto_pull: AutoPullConfig
    codex: CodexConfig


@dataclass(frozen=True)
class ReviewLoopConfig:
    """Per-project loop policy, stored as JSON beside the sessions."""

    enabled: bool = True
    max_iterations: int = 3
    self_review_before_pr: bool = True
    auto_address_review_comments: bool = True
    severity_threshold: Severity = "medium"
    notify_on_ready: bool = True
    notification_channels: tuple[str, ...] = ("github",)
    quality_gate: QualityGateThresholds = field(default_factory=QualityGateThresholds)


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_fields = _Fields(_table(data, "runtime", required=True), "runtime")
    repo_fields = _Fields(_table(data, "repo", required=True), "repo")
    auto_pull_fields = _Fields(_table(data, "auto_pull"), "auto_pull")
    codex_fields = _Fields(_table(data, "codex"), "codex")

    runtime = RuntimeConfig(
        project_dir=Path(runtime_fields.required_text("project_dir")).expanduser(),
        worker_count=runtime_fields.positive_int("worker_count", 2),
        feedback_poll_interval_seconds=runtime_fields.positive_int(
            "feedback_poll_interval_seconds", 30
        ),
        merge_poll_interval_seconds=runtime_fields.positive_int("merge_poll_interval_seconds", 60),
        max_concurrent_prs=runtime_fields.positive_int("max_concurrent_prs", 10),
        max_concurrent_merge_prs=runtime_fields.positive_int("max_concurrent_merge_prs", 20),
        archive_after_days=runtime_fields.positive_int("archive_after_days", 30),
    )
    repo = RepoConfig(
        owner=repo_fields.required_text("owner"),
        name=repo_fields.required_text("name"),
        default_branch=repo_fields.text("default_branch", "main"),
    )
    auto_pull = AutoPullConfig(
        enabled=auto_pull_fields.flag("enabled", True),
        target_branch=auto_pull_fields.text("target_branch", repo.default_branch),
        auto_cleanup_worktrees=auto_pull_fields.flag("auto_cleanup_worktrees", False),
    )
    codex = CodexConfig(
        enabled=codex_fields.flag("enabled", True),
        model=codex_fields.optional_text("model"),
        sandbox=codex_fields.optional_text("sandbox"),
        profile=codex_fields.optional_text("profile"),
        extra_args=codex_fields.strings("extra_args", ()),
    )
    return AppConfig(runtime=runtime, repo=repo, auto_pull=auto_pull, codex=codex)


def parse_review_loop_config(data: dict[str, object]) -> ReviewLoopConfig:
    """Merge a decoded project config over the defaults. Unknown keys are ignored."""
    defaults = ReviewLoopConfig()
    gate_defaults = defaults.quality_gate
    fields = _Fields(data)
    gate = _Fields(_table(data, "quality_gate"), "quality_gate")

    return ReviewLoopConfig(
        enabled=fields.flag("enabled", defaults.enabled),
        max_iterations=fields.positive_int("max_iterations", defaults.max_iterations),
        self_review_before_pr=fields.flag(
            "self_review_before_pr", defaults.self_review_before_pr
        ),
        auto_address_review_comments=fields.flag(
            "auto_address_review_comments", defaults.auto_address_review_comments
        ),
        severity_threshold=cast(
            Severity,
            fields.choice("severity_threshold", defaults.severity_threshold, SEVERITY_ORDER),
        ),
        notify_on_ready=fields.flag("notify_on_ready", defaults.notify_on_ready),
        notification_channels=fields.strings(
            "notification_channels", defaults.notification_channels
        ),
        quality_gate=QualityGateThresholds(
            min_test_coverage=gate.number("min_test_coverage", gate_defaults.min_test_coverage),
            max_complexity=gate.integer("max_complexity", gate_defaults.max_complexity),
            max_duplication=gate.number("max_duplication", gate_defaults.max_duplication),
            required_categories=_categories(gate, gate_defaults.required_categories),
        ),
    )


def review_loop_config_to_dict(config: ReviewLoopConfig) -> dict[str, object]:
    payload = asdict(config)
    payload["notification_channels"] = list(config.notification_channels)
    payload["quality_gate"]["required_categories"] = list(
        config.quality_gate.required_categories
    )
    return payload


def _table(data: dict[str, object], key: str, *, required: bool = False) -> dict[str, object]:
    value = data.get(key)
    if value is None and not required:
        return {}
    if not isinstance(value, dict):
        qualifier = "is required and must be" if required else "must be"
        raise ConfigError(f"[{key}] {qualifier} a table")
    if any(not isinstance(name, str) for name in value):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _categories(fields: _Fields, default: tuple[IssueCategory, ...]) -> tuple[IssueCategory, ...]:
    parsed: list[IssueCategory] = []
    for item in fields.strings("required_categories", default):
        normalized = item.strip().lower()
        if normalized not in ISSUE_CATEGORIES:
            raise ConfigError(
                f"{fields.qualify('required_categories')} entries must be one of: "
                f"{', '.join(ISSUE_CATEGORIES)}"
            )
        if normalized not in parsed:
            parsed.append(cast(IssueCategory, normalized))
    return tuple(parsed)


class _Fields:
    """Typed reads from one decoded table; errors name the dotted key."""

    def __init__(self, data: dict[str, object], section: str = "") -> None:
        self._data = data
        self._section = section

    def qualify(self, key: str) -> str:
        return f"{self._section}.{key}" if self._section else key

    def required_text(self, key: str) -> str:
        value = self._data.get(key)
        if not isinstance(value, str) or not value:
            raise ConfigError(f"{self.qualify(key)} is required and must be a non-empty string")
        return value

    def optional_text(self, key: str) -> str | None:
        if self._data.get(key) is None:
            return None
        return self.text(key, "")

    def text(self, key: str, default: str) -> str:
        value = self._data.get(key, default)
        if not isinstance(value, str) or not value:
            raise ConfigError(f"{self.qualify(key)} must be a non-empty string")
        return value

    def choice(self, key: str, default: str, allowed: tuple[str, ...]) -> str:
        value = self._data.get(key, default)
        if not isinstance(value, str) or value.strip().lower() not in allowed:
            raise ConfigError(f"{self.qualify(key)} must be one of: {', '.join(allowed)}")
        return value.strip().lower()

    def flag(self, key: str, default: bool) -> bool:
        value = self._data.get(key, default)
        if not isinstance(value, bool):
            raise ConfigError(f"{self.qualify(key)} must be a boolean")
        return value

    def integer(self, key: str, default: int) -> int:
        value = self._data.get(key, default)
        # bool is an int subclass; TOML true must not read as 1.
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{self.qualify(key)} must be an integer")
        return value

    def positive_int(self, key: str, default: int) -> int:
        value = self.integer(key, default)
        if value < 1:
            raise ConfigError(f"{self.qualify(key)} must be >= 1")
        return value

    def number(self, key: str, default: float) -> float:
        value = self._data.get(key, default)
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise ConfigError(f"{self.qualify(key)} must be a number")
        return float(value)

    def strings(self, key: str, default: tuple[str, ...]) -> tuple[str, ...]:
        if key not in self._data:
            return default
        value = self._data[key]
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ConfigError(f"{self.qualify(key)} must be a list of strings")
        return tuple(value)
