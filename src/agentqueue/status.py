from __future__ import annotations

from dataclasses import dataclass
import json

from agentqueue.concurrency_gate import GateDecision, check_gate
from agentqueue.config import RepoConfig
from agentqueue.github_gateway import GitHubGateway
from agentqueue.ledger import SessionLedger
from agentqueue.models import CheckRollup, PullRequestSnapshot, Session, Task, TaskPhase
from agentqueue.queue_selector import rank_tasks


@dataclass(frozen=True)
class TaskStatusRow:
    number: int
    title: str
    html_url: str
    created_at: str
    phase: TaskPhase
    session_id: str | None
    session_status: str | None
    pr_number: int | None


@dataclass(frozen=True)
class PullRequestStatusRow:
    number: int
    title: str
    html_url: str
    head_sha: str
    mergeable: bool | None
    passing: int
    failing: tuple[str, ...]
    pending: int


@dataclass(frozen=True)
class QueueStatus:
    repo_full_name: str
    gate: GateDecision
    queue: tuple[TaskStatusRow, ...]
    active: tuple[TaskStatusRow, ...]
    blocked: tuple[TaskStatusRow, ...]
    pull_requests: tuple[PullRequestStatusRow, ...]

    def to_json(self) -> str:
        return json.dumps(
            {
                "repo": self.repo_full_name,
                "gate": {
                    "busy": self.gate.busy,
                    "blocker_kind": self.gate.blocker_kind,
                    "blocker_number": self.gate.blocker_number,
                },
                "queue": [_task_row_json(row) for row in self.queue],
                "active": [_task_row_json(row) for row in self.active],
                "blocked": [_task_row_json(row) for row in self.blocked],
                "pull_requests": [
                    {
                        "number": row.number,
                        "title": row.title,
                        "head_sha": row.head_sha,
                        "mergeable": row.mergeable,
                        "passing": row.passing,
                        "failing": list(row.failing),
                        "pending": row.pending,
                    }
                    for row in self.pull_requests
                ],
            },
            indent=2,
            sort_keys=True,
        )


def derive_task_phase(
    task: Task,
    *,
    repo: RepoConfig,
    session: Session | None,
    pr: PullRequestSnapshot | None,
    rollup: CheckRollup | None,
    gate_busy: bool,
) -> TaskPhase:
    if task.state == "closed":
        return "closed"
    if task.has_label(repo.blocked_label):
        return "blocked"
    if session is not None and not session.is_terminal:
        return "session_running" if session.status == "running" else "dispatched"
    if pr is not None:
        if pr.state == "merged":
            return "merged"
        if pr.state == "open":
            if rollup is not None and rollup.failing:
                return "checks_failing"
            return "pr_open"
    if task.has_label(repo.in_progress_label):
        return "dispatched"
    if task.has_label(repo.work_label) and gate_busy:
        return "queued"
    return "open"


def load_status(github: GitHubGateway, repo: RepoConfig) -> QueueStatus:
    ledger = SessionLedger(github)
    gate = check_gate(github, repo)

    tasks: dict[int, Task] = {}
    for label in (repo.work_label, repo.in_progress_label, repo.blocked_label):
        for task in github.list_open_issues_with_label(label):
            tasks.setdefault(task.number, task)

    pr_rows: list[PullRequestStatusRow] = []
    snapshots: dict[int, PullRequestSnapshot] = {}
    rollups: dict[int, CheckRollup] = {}
    for pr in sorted(github.list_open_pull_requests(), key=lambda item: item.number):
        if not pr.has_label(repo.agent_pr_label):
            continue
        rollup = github.get_check_rollup(pr.head_sha)
        snapshots[pr.number] = pr
        rollups[pr.number] = rollup
        pr_rows.append(
            PullRequestStatusRow(
                number=pr.number,
                title=pr.title,
                html_url=pr.html_url,
                head_sha=pr.head_sha,
                mergeable=pr.mergeable,
                passing=sum(1 for check in rollup.checks if check.outcome == "pass"),
                failing=tuple(check.name for check in rollup.failing),
                pending=sum(1 for check in rollup.checks if check.outcome == "pending"),
            )
        )

    ranked = rank_tasks(tasks.values(), repo=repo)
    queue_order = {task.number: index for index, task in enumerate(ranked)}
    queue: list[TaskStatusRow] = []
    active: list[TaskStatusRow] = []
    blocked: list[TaskStatusRow] = []
    for task in sorted(tasks.values(), key=lambda item: (item.created_at, item.number)):
        session = ledger.current_session(task.number)
        pr = None
        if session is not None and session.pr_number is not None:
            pr = snapshots.get(session.pr_number)
        phase = derive_task_phase(
            task,
            repo=repo,
            session=session,
            pr=pr,
            rollup=rollups.get(pr.number) if pr is not None else None,
            gate_busy=gate.busy,
        )
        row = TaskStatusRow(
            number=task.number,
            title=task.title,
            html_url=task.html_url,
            created_at=task.created_at,
            phase=phase,
            session_id=session.session_id if session is not None else None,
            session_status=session.status if session is not None else None,
            pr_number=session.pr_number if session is not None else None,
        )
        if phase == "blocked":
            blocked.append(row)
        elif task.number in queue_order:
            queue.append(row)
        else:
            active.append(row)

    queue.sort(key=lambda row: queue_order[row.number])
    return QueueStatus(
        repo_full_name=repo.full_name,
        gate=gate,
        queue=tuple(queue),
        active=tuple(active),
        blocked=tuple(blocked),
        pull_requests=tuple(pr_rows),
    )


def _task_row_json(row: TaskStatusRow) -> dict[str, object]:
    return {
        "number": row.number,
        "title": row.title,
        "phase": row.phase,
        "session_id": row.session_id,
        "session_status": row.session_status,
        "pr_number": row.pr_number,
    }
