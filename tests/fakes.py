from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
import threading
from typing import Literal

from agentqueue.agent_adapter import AgentAdapter, AgentCredentialsError, AgentError
from agentqueue.config import AgentConfig, AppConfig, RepoConfig, RuntimeConfig
from agentqueue.models import (
    AgentSessionSnapshot,
    CheckResult,
    CheckRollup,
    PullRequest,
    PullRequestSnapshot,
    SessionStatus,
    Task,
    TaskComment,
)
from agentqueue.shell import CommandError


REPO = RepoConfig(owner="acme", name="widgets")


def make_config(base_dir: Path, *, repo: RepoConfig = REPO, **runtime: int) -> AppConfig:
    runtime_fields: dict[str, int] = {
        "poll_interval_seconds": 60,
        "session_poll_interval_seconds": 300,
        "session_max_duration_seconds": 7200,
        "dispatch_lock_timeout_seconds": 5,
        "github_timeout_seconds": 10,
        "max_ci_failure_rounds": 3,
    }
    runtime_fields.update(runtime)
    return AppConfig(
        runtime=RuntimeConfig(base_dir=base_dir, **runtime_fields),
        repo=repo,
        agent=AgentConfig(api_base_url="https://jules.example/v1alpha"),
    )


def passing(name: str) -> CheckResult:
    return CheckResult(name=name, outcome="pass", summary="ok", details_url=f"https://ci/{name}")


def failing(name: str, summary: str = "failed") -> CheckResult:
    return CheckResult(
        name=name, outcome="fail", summary=summary, details_url=f"https://ci/{name}"
    )


def pending(name: str) -> CheckResult:
    return CheckResult(name=name, outcome="pending", summary="", details_url="")


@dataclass
class _PullRecord:
    snapshot: PullRequestSnapshot
    base: str


@dataclass
class FakeTaskStore:
    """In-memory stand-in for the GitHub issue and pull request surface."""

    owner: str = "acme"
    name: str = "widgets"
    tasks: dict[int, Task] = field(default_factory=dict)
    pulls: dict[int, _PullRecord] = field(default_factory=dict)
    comments: dict[int, list[TaskComment]] = field(default_factory=dict)
    checks: dict[str, tuple[CheckResult, ...]] = field(default_factory=dict)
    files: dict[str, tuple[str, str]] = field(default_factory=dict)
    merged: list[tuple[int, str]] = field(default_factory=list)
    fail_file_writes: bool = False
    failures: dict[str, int] = field(default_factory=dict)
    _next_number: int = 1
    _next_comment_id: int = 1
    _lock: threading.RLock = field(default_factory=threading.RLock)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    # Test setup helpers

    def add_task(
        self,
        number: int,
        *,
        title: str | None = None,
        body: str = "",
        labels: tuple[str, ...] = ("agent:queue",),
        created_at: str | None = None,
    ) -> Task:
        with self._lock:
            task = Task(
                number=number,
                title=title or f"Task {number}",
                body=body,
                html_url=f"https://github.com/{self.full_name}/issues/{number}",
                labels=labels,
                state="open",
                created_at=created_at or f"2026-01-01T00:00:{number % 60:02d}Z",
            )
            self.tasks[number] = task
            self._next_number = max(self._next_number, number + 1)
            return task

    def add_pull_request(
        self,
        number: int,
        *,
        body: str = "",
        head_ref: str = "agent/branch",
        head_sha: str = "sha-1",
        labels: tuple[str, ...] = ("agent-authored",),
        mergeable: bool | None = True,
        title: str | None = None,
    ) -> PullRequestSnapshot:
        with self._lock:
            snapshot = PullRequestSnapshot(
                number=number,
                title=title or f"PR {number}",
                body=body,
                html_url=f"https://github.com/{self.full_name}/pull/{number}",
                head_ref=head_ref,
                head_sha=head_sha,
                labels=labels,
                state="open",
                mergeable=mergeable,
                mergeable_state="clean" if mergeable else "dirty",
            )
            self.pulls[number] = _PullRecord(snapshot=snapshot, base="main")
            self._next_number = max(self._next_number, number + 1)
            return snapshot

    def push(self, pr_number: int, head_sha: str, *, mergeable: bool | None = True) -> None:
        with self._lock:
            record = self.pulls[pr_number]
            record.snapshot = replace(record.snapshot, head_sha=head_sha, mergeable=mergeable)

    def set_checks(self, head_sha: str, *checks: CheckResult) -> None:
        with self._lock:
            self.checks[head_sha] = tuple(checks)

    def merge_externally(self, pr_number: int) -> None:
        with self._lock:
            record = self.pulls[pr_number]
            record.snapshot = replace(record.snapshot, state="merged")

    def comment_bodies(self, number: int) -> list[str]:
        with self._lock:
            return [comment.body for comment in self.comments.get(number, [])]

    def fail_next(self, method: str, times: int = 1) -> None:
        """Make the next ``times`` calls of ``method`` raise like a failed ``gh`` call."""
        with self._lock:
            self.failures[method] = times

    def _maybe_fail(self, method: str) -> None:
        remaining = self.failures.get(method, 0)
        if remaining > 0:
            self.failures[method] = remaining - 1
            raise CommandError(f"gh {method} failed: HTTP 502")

    # Tasks

    def list_open_issues_with_label(self, label: str) -> list[Task]:
        with self._lock:
            return sorted(
                (t for t in self.tasks.values() if t.state == "open" and t.has_label(label)),
                key=lambda task: (task.created_at, task.number),
            )

    def get_issue(self, issue_number: int) -> Task:
        with self._lock:
            return self.tasks[issue_number]

    def list_issue_comments(self, issue_number: int) -> list[TaskComment]:
        with self._lock:
            return list(self.comments.get(issue_number, []))

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        with self._lock:
            comment = TaskComment(
                comment_id=self._next_comment_id,
                body=body,
                user_login="agentqueue-bot",
                html_url=f"https://github.com/{self.full_name}/issues/{issue_number}#c",
                created_at="2026-01-01T00:00:00Z",
            )
            self._next_comment_id += 1
            self.comments.setdefault(issue_number, []).append(comment)

    def add_labels(self, issue_number: int, labels: tuple[str, ...]) -> None:
        with self._lock:
            self._maybe_fail("add_labels")
            if issue_number in self.pulls:
                record = self.pulls[issue_number]
                merged = tuple(dict.fromkeys((*record.snapshot.labels, *labels)))
                record.snapshot = replace(record.snapshot, labels=merged)
                return
            task = self.tasks[issue_number]
            merged = tuple(dict.fromkeys((*task.labels, *labels)))
            self.tasks[issue_number] = replace(task, labels=merged)

    def remove_label(self, issue_number: int, label: str) -> None:
        with self._lock:
            self._maybe_fail("remove_label")
            task = self.tasks[issue_number]
            self.tasks[issue_number] = replace(
                task, labels=tuple(name for name in task.labels if name != label)
            )

    def close_issue(self, issue_number: int) -> None:
        with self._lock:
            self.tasks[issue_number] = replace(self.tasks[issue_number], state="closed")

    # Pull requests

    def list_open_pull_requests(self) -> list[PullRequestSnapshot]:
        with self._lock:
            return [r.snapshot for r in self.pulls.values() if r.snapshot.state == "open"]

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        with self._lock:
            return self.pulls[pr_number].snapshot

    def find_pull_request_by_head(
        self,
        *,
        head: str,
        base: str | None = None,
        state: Literal["open", "all"] = "open",
    ) -> PullRequest | None:
        with self._lock:
            for record in sorted(self.pulls.values(), key=lambda r: -r.snapshot.number):
                if record.snapshot.head_ref != head:
                    continue
                if base is not None and record.base != base:
                    continue
                if state == "open" and record.snapshot.state != "open":
                    continue
                return PullRequest(number=record.snapshot.number, html_url=record.snapshot.html_url)
            return None

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        with self._lock:
            number = self._next_number
            snapshot = self.add_pull_request(
                number, body=body, head_ref=head, head_sha=f"{head}-sha", labels=(), title=title
            )
            self.pulls[number].base = base
            return PullRequest(number=snapshot.number, html_url=snapshot.html_url)

    def update_pull_request_body(self, pr_number: int, body: str) -> None:
        with self._lock:
            record = self.pulls[pr_number]
            record.snapshot = replace(record.snapshot, body=body)

    def merge_pull_request(self, pr_number: int, *, head_sha: str, commit_title: str) -> None:
        with self._lock:
            record = self.pulls[pr_number]
            if record.snapshot.head_sha != head_sha:
                raise RuntimeError("Head branch was modified. Review and try the merge again.")
            record.snapshot = replace(record.snapshot, state="merged")
            self.merged.append((pr_number, commit_title))

    def close_pull_request(self, pr_number: int) -> None:
        with self._lock:
            record = self.pulls[pr_number]
            record.snapshot = replace(record.snapshot, state="closed")

    def get_check_rollup(self, head_sha: str) -> CheckRollup:
        with self._lock:
            return CheckRollup(head_sha=head_sha, checks=self.checks.get(head_sha, ()))

    # Repository contents

    def get_file_text(self, path: str, *, ref: str) -> tuple[str, str] | None:
        with self._lock:
            return self.files.get(path)

    def put_file_text(
        self, path: str, *, text: str, message: str, branch: str, sha: str | None
    ) -> None:
        with self._lock:
            if self.fail_file_writes:
                raise RuntimeError("contents API unavailable")
            self.files[path] = (text, f"{sha or 'new'}+1")


class FakeAgent(AgentAdapter):
    name = "fake-agent"

    def __init__(self, *, credentials: bool = True) -> None:
        self.credentials = credentials
        self.created: list[dict[str, str]] = []
        self.snapshots: dict[str, AgentSessionSnapshot] = {}
        self.session_errors: dict[str, AgentError] = {}
        self.create_error: AgentError | None = None
        self._lock = threading.Lock()

    def has_credentials(self) -> bool:
        return self.credentials

    def create_session(self, *, prompt: str, title: str, starting_branch: str) -> str:
        if not self.credentials:
            raise AgentCredentialsError("no api key")
        if self.create_error is not None:
            raise self.create_error
        with self._lock:
            session_id = f"sessions/{len(self.created) + 1}"
            self.created.append(
                {"prompt": prompt, "title": title, "starting_branch": starting_branch}
            )
            self.snapshots[session_id] = AgentSessionSnapshot(
                session_id=session_id, status="running"
            )
            return session_id

    def get_session(self, session_id: str) -> AgentSessionSnapshot:
        with self._lock:
            error = self.session_errors.get(session_id)
            if error is not None:
                raise error
            return self.snapshots[session_id]

    def finish(
        self,
        session_id: str,
        status: SessionStatus = "completed",
        *,
        branch: str | None = None,
        pull_request_url: str | None = None,
    ) -> None:
        with self._lock:
            self.snapshots[session_id] = AgentSessionSnapshot(
                session_id=session_id,
                status=status,
                result_branch=branch,
                pull_request_url=pull_request_url,
                url=f"https://jules.example/{session_id}",
            )
