from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal, TextIO, cast


ROOT_LOGGER_NAME: Final[str] = "reviewloop"
_MAX_VALUE_LEN: Final[int] = 120
_RECORD_FORMAT: Final[str] = (
    "%(asctime)s %(levelname)s %(name)s [%(threadName)s] feature=%(feature_id)s %(message)s"
)
# Events still shown in "low" mode; warnings and errors always pass.
LIFECYCLE_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "session_state_transition",
        "review_loop_started",
        "review_loop_pr_created",
        "review_loop_ready_for_human",
        "review_loop_approved",
        "review_loop_merged",
        "review_loop_forced_advance",
        "github_pr_created",
        "pr_monitor_started",
        "pr_monitor_stopped",
        "pr_merge_monitor_started",
        "pr_merge_monitor_stopped",
        "pr_merge_detected",
        "pr_merge_pull_completed",
        "pr_merge_pull_failed",
        "session_archived",
    }
)

_CURRENT_FEATURE: ContextVar[str | None] = ContextVar("reviewloop_feature_id", default=None)


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
) -> None:
    """Route ``reviewloop.*`` records to stderr and, with ``state_dir``, to daily log files.

    ``verbose`` of ``None``/``False`` silences the package, ``True``/``"high"``
    shows every event and ``"low"`` keeps lifecycle events plus warnings.
    Calling it again replaces the previous handlers.
    """
    mode = parse_verbose_mode(verbose)
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.propagate = False
    _drop_handlers(logger)

    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        handlers.append(_DailyLogHandler(state_dir / "logs"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_RECORD_FORMAT))
        handler.addFilter(_FeatureContextFilter())
        if mode == "low":
            handler.addFilter(_LifecycleFilter())
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def parse_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    mode = verbose.strip().lower()
    if mode not in ("low", "high"):
        raise ValueError(f"Unsupported verbose mode: {verbose!r}")
    return cast(VerboseMode, mode)


@contextmanager
def logging_feature_context(feature_id: str | None) -> Iterator[None]:
    """Tag every record logged in this scope with ``feature_id``."""
    token = _CURRENT_FEATURE.set(feature_id)
    try:
        yield
    finally:
        _CURRENT_FEATURE.reset(token)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    _emit(logger, logging.INFO, event, fields)


def log_warning_event(logger: logging.Logger, event: str, **fields: object) -> None:
    _emit(logger, logging.WARNING, event, fields)


def format_event(event: str, fields: dict[str, object]) -> str:
    """Render ``event=<name>`` followed by ``key=value`` pairs in key order."""
    rendered = [f"event={render_value(event)}"]
    rendered.extend(f"{key}={render_value(fields[key])}" for key in sorted(fields))
    return " ".join(rendered)


def render_value(value: object) -> str:
    if value is None:
        text = "null"
    elif isinstance(value, bool):
        text = str(value).lower()
    elif isinstance(value, int | float):
        text = repr(value)
    elif isinstance(value, str):
        text = _clip(" ".join(value.split()))
    elif isinstance(value, tuple | list) and all(isinstance(item, str) for item in value):
        text = _clip(",".join(cast(list[str], list(value))))
    else:
        return f"<{type(value).__name__}>"
    if not text:
        return "<empty>"
    if "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text


def _clip(text: str) -> str:
    if len(text) <= _MAX_VALUE_LEN:
        return text
    return f"{text[:_MAX_VALUE_LEN]}..."


def _emit(logger: logging.Logger, level: int, event: str, fields: dict[str, object]) -> None:
    if logger.isEnabledFor(level):
        logger.log(level, format_event(event, fields), extra={"event_name": event})


def _drop_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


class _FeatureContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "feature_id"):
            record.feature_id = _CURRENT_FEATURE.get() or "-"
        return True


class _LifecycleFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return getattr(record, "event_name", None) in LIFECYCLE_EVENTS


class _DailyLogHandler(logging.Handler):
    """Append records to ``<logs_dir>/<YYYY-MM-DD>.log``, switching files at UTC midnight."""

    def __init__(self, logs_dir: Path) -> None:
        super().__init__()
        self.logs_dir = logs_dir
        self._stream: TextIO | None = None
        self._date_key: str | None = None

    def emit(self, record: logging.LogRecord) -> None:
        try:
            stream = self._current_stream()
            stream.write(self.format(record) + "\n")
            stream.flush()
        except Exception:  # noqa: BLE001
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            self._release_stream()
        finally:
            self.release()
        super().close()

    def _current_stream(self) -> TextIO:
        date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        if self._stream is None or date_key != self._date_key:
            self._release_stream()
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            self._stream = (self.logs_dir / f"{date_key}.log").open("a", encoding="utf-8")
            self._date_key = date_key
        return self._stream

    def _release_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.close()
