from __future__ import annotations

from typing import Callable

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from agentqueue.status import QueueStatus, TaskStatusRow


_TITLE_MAX_CHARS = 48


class StatusApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("tab", "cycle_focus", "Focus"),
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
        height: 3;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        loader: Callable[[], QueueStatus],
        refresh_seconds: int = 30,
    ) -> None:
        super().__init__()
        self._loader = loader
        self._refresh_seconds = refresh_seconds
        self._status: QueueStatus | None = None

    @property
    def status(self) -> QueueStatus | None:
        return self._status

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("In Flight", classes="panel-title")
            yield DataTable(id="active-table")
            yield Static("Agent Pull Requests", classes="panel-title")
            yield DataTable(id="pr-table")
            yield Static("Queue", classes="panel-title")
            yield DataTable(id="queue-table")
            yield Static("Blocked", classes="panel-title")
            yield DataTable(id="blocked-table")
        yield Footer()

    def on_mount(self) -> None:
        self._init_tables()
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_focus(self) -> None:
        self.screen.focus_next()

    def refresh_data(self) -> None:
        status = self._loader()
        self._status = status
        self.query_one("#summary", Static).update(_summary_text(status))
        _fill_task_table(self.query_one("#active-table", DataTable), status.active)
        _fill_task_table(self.query_one("#queue-table", DataTable), status.queue)
        _fill_task_table(self.query_one("#blocked-table", DataTable), status.blocked)

        pr_table = self.query_one("#pr-table", DataTable)
        pr_table.clear(columns=False)
        for row in status.pull_requests:
            pr_table.add_row(
                str(row.number),
                _clip(row.title),
                row.head_sha[:7],
                _render_mergeable(row.mergeable),
                str(row.passing),
                ", ".join(row.failing) or "-",
                str(row.pending),
            )

    def _init_tables(self) -> None:
        for selector in ("#active-table", "#queue-table", "#blocked-table"):
            self.query_one(selector, DataTable).add_columns(
                "Issue", "Title", "Phase", "Session", "PR", "Created"
            )
        self.query_one("#pr-table", DataTable).add_columns(
            "PR", "Title", "Head", "Mergeable", "Passing", "Failing", "Pending"
        )


def run_status_tui(*, loader: Callable[[], QueueStatus], refresh_seconds: int) -> None:
    StatusApp(loader=loader, refresh_seconds=refresh_seconds).run()


def _fill_task_table(table: DataTable, rows: tuple[TaskStatusRow, ...]) -> None:
    table.clear(columns=False)
    for row in rows:
        table.add_row(
            str(row.number),
            _clip(row.title),
            row.phase,
            f"{row.session_id} ({row.session_status})" if row.session_id else "-",
            str(row.pr_number) if row.pr_number is not None else "-",
            row.created_at,
        )


def _summary_text(status: QueueStatus) -> str:
    gate = status.gate
    if gate.busy:
        gate_text = f"busy (blocked by {gate.blocker_kind} #{gate.blocker_number})"
    else:
        gate_text = "idle"
    return (
        f"{status.repo_full_name}  gate={gate_text}  queued={len(status.queue)}  "
        f"in_flight={len(status.active)}  blocked={len(status.blocked)}"
    )


def _render_mergeable(value: bool | None) -> str:
    if value is None:
        return "unknown"
    return "yes" if value else "conflict"


def _clip(text: str) -> str:
    if len(text) <= _TITLE_MAX_CHARS:
        return text
    return text[: _TITLE_MAX_CHARS - 3] + "..."
