from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


TaskState = Literal["open", "closed"]
SessionStatus = Literal["pending", "running", "completed", "failed"]
PullRequestState = Literal["open", "merged", "closed"]
CheckOutcome = Literal["pass", "fail", "pending"]
TaskPhase = Literal[
    "open",
    "queued",
    "dispatched",
    "session_running",
    "pr_open",
    "checks_failing",
    "merged",
    "closed",
    "blocked",
]

TERMINAL_SESSION_STATUSES: frozenset[SessionStatus] = frozenset({"completed", "failed"})


@dataclass(frozen=True)
class Task:
    number: int
    title: str
    body: str
    html_url: str
    labels: tuple[str, ...]
    state: TaskState
    created_at: str

    def has_label(self, label: str) -> bool:
        return label in self.labels


@dataclass(frozen=True)
class Session:
    task_number: int
    session_id: str
    status: SessionStatus
    created_at: str
    pr_number: int | None = None
    detail: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES


@dataclass(frozen=True)
class AgentSessionSnapshot:
    session_id: str
    status: SessionStatus
    result_branch: str | None = None
    pull_request_url: str | None = None
    url: str | None = None


@dataclass(frozen=True)
class PullRequest:
    number: int
    html_url: str


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    body: str
    html_url: str
    head_ref: str
    head_sha: str
    labels: tuple[str, ...]
    state: PullRequestState
    mergeable: bool | None
    mergeable_state: str

    def has_label(self, label: str) -> bool:
        return label in self.labels


@dataclass(frozen=True)
class CheckResult:
    name: str
    outcome: CheckOutcome
    summary: str
    details_url: str


@dataclass(frozen=True)
class CheckRollup:
    head_sha: str
    checks: tuple[CheckResult, ...]

    @property
    def pending(self) -> bool:
        if not self.checks:
            return True
        return any(check.outcome == "pending" for check in self.checks)

    @property
    def failing(self) -> tuple[CheckResult, ...]:
        return tuple(check for check in self.checks if check.outcome == "fail")

    @property
    def all_passed(self) -> bool:
        return bool(self.checks) and all(check.outcome == "pass" for check in self.checks)


@dataclass(frozen=True)
class TaskComment:
    comment_id: int
    body: str
    user_login: str
    html_url: str
    created_at: str
