from __future__ import annotations

from pathlib import Path

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical, VerticalScroll
from textual.widgets import DataTable, Footer, Header, Static

from reviewloop.models import ReviewLoopSession
from reviewloop.session_store import SessionStatistics, SessionStore


_DESCRIPTION_MAX_CHARS = 100


class SessionsApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 2;
        padding: 0 1;
    }
    #sessions-table {
        height: 1fr;
    }
    #detail-scroll {
        height: 1fr;
        border: round $boost;
        padding: 0 1;
    }
    """

    def __init__(self, *, project_dir: Path, refresh_seconds: int = 2) -> None:
        super().__init__()
        self._store = SessionStore(project_dir)
        self._refresh_seconds = refresh_seconds
        self._sessions: tuple[ReviewLoopSession, ...] = ()

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Sessions", classes="panel-title")
            yield DataTable(id="sessions-table")
            yield Static("Latest Review", classes="panel-title")
            with VerticalScroll(id="detail-scroll"):
                yield Static("", id="detail")
        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#sessions-table", DataTable)
        table.cursor_type = "row"
        table.add_columns("Feature", "State", "Iteration", "PR", "Last Updated")
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        self._show_detail(event.cursor_row)

    def refresh_data(self) -> None:
        self._sessions = tuple(self._store.get_all())
        table = self.query_one("#sessions-table", DataTable)
        previous_row = table.cursor_row if table.row_count > 0 else 0
        table.clear(columns=False)
        for session in self._sessions:
            table.add_row(*_session_row(session))
        self.query_one("#summary", Static).update(_summary_text(self._store.get_statistics()))
        if self._sessions:
            row = min(max(previous_row, 0), len(self._sessions) - 1)
            table.move_cursor(row=row, animate=False)
            self._show_detail(row)
        else:
            self.query_one("#detail", Static).update("No review loop sessions found.")

    def _show_detail(self, row_index: int) -> None:
        if not 0 <= row_index < len(self._sessions):
            return
        self.query_one("#detail", Static).update(_session_detail(self._sessions[row_index]))


def run_sessions_tui(*, project_dir: Path, refresh_seconds: int = 2) -> None:
    app = SessionsApp(project_dir=project_dir, refresh_seconds=refresh_seconds)
    app.run()


def _session_row(session: ReviewLoopSession) -> tuple[str, str, str, str, str]:
    return (
        session.feature_id,
        session.state,
        str(session.current_iteration),
        f"#{session.pr_number}" if session.pr_number is not None else "-",
        session.last_updated_at,
    )


def _summary_text(stats: SessionStatistics) -> str:
    return (
        f"total={stats.total} active={stats.active} completed={stats.completed} "
        f"avg_iterations={stats.average_iterations:.1f}"
    )


def _session_detail(session: ReviewLoopSession) -> str:
    lines = [f"{session.feature_id} ({session.state})"]
    if session.pr_url:
        lines.append(f"PR: {session.pr_url}")
    if session.last_error is not None:
        lines.append(f"Last error during {session.last_error.stage}: {session.last_error.message}")
    latest = session.latest_result
    if latest is None:
        lines.append("No reviews recorded.")
        return "\n".join(lines)
    lines.append(f"Review #{latest.iteration}: {latest.verdict}")
    if latest.summary:
        lines.append(latest.summary)
    for issue in latest.issues:
        location = f" {issue.file}" if issue.file else ""
        if issue.file and issue.line_start is not None:
            location += f":{issue.line_start}"
        lines.append(
            f"- {issue.id} [{issue.severity}/{issue.category}]{location} "
            f"{_truncate(issue.description)}"
        )
    if session.unresolved_issues:
        lines.append(f"Unresolved at PR creation: {len(session.unresolved_issues)}")
    return "\n".join(lines)


def _truncate(value: str) -> str:
    if len(value) <= _DESCRIPTION_MAX_CHARS:
        return value
    return f"{value[: _DESCRIPTION_MAX_CHARS - 3]}..."
