from __future__ import annotations

import asyncio

import pytest
from textual.widgets import DataTable

from agentqueue import status_tui as tui
from agentqueue.concurrency_gate import IDLE, GateDecision
from agentqueue.status import PullRequestStatusRow, QueueStatus, TaskStatusRow


def _row(number: int, phase: str, *, session_id: str | None = None) -> TaskStatusRow:
    return TaskStatusRow(
        number=number,
        title=f"Task {number}",
        html_url=f"https://github.com/acme/widgets/issues/{number}",
        created_at="2026-01-01T00:00:00Z",
        phase=phase,  # type: ignore[arg-type]
        session_id=session_id,
        session_status="running" if session_id else None,
        pr_number=None,
    )


def _status(*, busy: bool = True) -> QueueStatus:
    gate = (
        GateDecision(busy=True, blocker_kind="pull_request", blocker_number=10, blocker_url="u")
        if busy
        else IDLE
    )
    return QueueStatus(
        repo_full_name="acme/widgets",
        gate=gate,
        queue=(_row(2, "queued"), _row(3, "queued")),
        active=(_row(1, "session_running", session_id="sessions/1"),),
        blocked=(),
        pull_requests=(
            PullRequestStatusRow(
                number=10,
                title="Fix parser",
                html_url="u",
                head_sha="0123456789",
                mergeable=None,
                passing=2,
                failing=("unit",),
                pending=0,
            ),
        ),
    )


def test_helper_functions() -> None:
    assert tui._render_mergeable(True) == "yes"
    assert tui._render_mergeable(False) == "conflict"
    assert tui._render_mergeable(None) == "unknown"
    assert tui._clip("short") == "short"
    clipped = tui._clip("x" * 60)
    assert len(clipped) == 48
    assert clipped.endswith("...")

    summary = tui._summary_text(_status())
    assert summary.startswith("acme/widgets  gate=busy (blocked by pull_request #10)")
    assert "queued=2" in summary
    assert "in_flight=1" in summary
    assert "blocked=0" in summary
    assert "gate=idle" in tui._summary_text(_status(busy=False))


def test_fill_task_table() -> None:
    class FakeTable:
        def __init__(self) -> None:
            self.rows: list[tuple[object, ...]] = [("stale",)]

        def add_row(self, *items: object) -> None:
            self.rows.append(items)

        def clear(self, *, columns: bool = False) -> None:
            _ = columns
            self.rows.clear()

    table = FakeTable()
    rows = (_row(1, "session_running", session_id="s1"), _row(2, "queued"))
    tui._fill_task_table(table, rows)  # type: ignore[arg-type]

    assert table.rows == [
        ("1", "Task 1", "session_running", "s1 (running)", "-", "2026-01-01T00:00:00Z"),
        ("2", "Task 2", "queued", "-", "-", "2026-01-01T00:00:00Z"),
    ]


def test_status_app_renders_and_refreshes() -> None:
    loads: list[int] = []

    def loader() -> QueueStatus:
        loads.append(1)
        return _status()

    app = tui.StatusApp(loader=loader, refresh_seconds=60)

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.pause()
            assert app.query_one("#active-table", DataTable).row_count == 1
            assert app.query_one("#queue-table", DataTable).row_count == 2
            assert app.query_one("#blocked-table", DataTable).row_count == 0
            assert app.query_one("#pr-table", DataTable).row_count == 1
            assert app.status is not None
            assert app.status.gate.blocker_number == 10

            await pilot.press("r")
            await pilot.pause()
            assert len(loads) == 2
            assert app.query_one("#queue-table", DataTable).row_count == 2

            app.action_cycle_focus()

    asyncio.run(run_app())


def test_run_status_tui_runs_app(monkeypatch: pytest.MonkeyPatch) -> None:
    ran: list[int] = []

    def fake_run(self: tui.StatusApp) -> None:
        ran.append(self._refresh_seconds)

    monkeypatch.setattr(tui.StatusApp, "run", fake_run)

    tui.run_status_tui(loader=_status, refresh_seconds=15)

    assert ran == [15]
