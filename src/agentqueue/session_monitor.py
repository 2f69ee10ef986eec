from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
import logging
import re
import time
from typing import Literal

from agentqueue.agent_adapter import (
    AgentAdapter,
    AgentCredentialsError,
    AgentError,
    AgentUnavailableError,
)
from agentqueue.config import RepoConfig
from agentqueue.github_gateway import GitHubGateway
from agentqueue.ledger import (
    SessionLedger,
    append_action_token,
    append_session_marker,
    compute_action_token,
    parse_timestamp,
)
from agentqueue.models import AgentSessionSnapshot, PullRequest, Session, Task
from agentqueue.notifications import (
    extract_task_reference,
    render_pr_opened_on_pull_request,
    render_pr_opened_on_task,
    render_pull_request_body,
    render_pull_request_title,
    render_session_failed,
    render_session_stuck,
)
from agentqueue.observability import log_event


LOGGER = logging.getLogger("agentqueue.session_monitor")
_PULL_URL_PATTERN = re.compile(r"/pull/(\d+)(?:[/?#]|$)")

MonitorKind = Literal["no_session", "running", "completed", "failed", "stuck"]


@dataclass(frozen=True)
class MonitorOutcome:
    kind: MonitorKind
    task_number: int
    session: Session | None
    pr_number: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind != "running"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionMonitor:
    def __init__(
        self,
        *,
        github: GitHubGateway,
        agent: AgentAdapter,
        repo: RepoConfig,
        ledger: SessionLedger,
        poll_interval_seconds: int,
        max_duration_seconds: int,
        now: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._github = github
        self._agent = agent
        self._repo = repo
        self._ledger = ledger
        self._poll_interval_seconds = poll_interval_seconds
        self._max_duration_seconds = max_duration_seconds
        self._now = now
        self._sleep = sleep

    def poll(self, task: Task) -> MonitorOutcome:
        session = self._ledger.current_session(task.number)
        if session is None:
            return MonitorOutcome(kind="no_session", task_number=task.number, session=None)
        if session.status == "failed":
            # The failure is recorded; finish releasing the task if that was interrupted.
            self._release_task(task)
            return MonitorOutcome(kind="failed", task_number=task.number, session=session)
        if session.status == "completed":
            return MonitorOutcome(
                kind="completed",
                task_number=task.number,
                session=session,
                pr_number=session.pr_number,
            )

        try:
            snapshot: AgentSessionSnapshot | None = self._agent.get_session(session.session_id)
        except AgentUnavailableError:
            raise
        except AgentCredentialsError as exc:
            # The stuck bound below still applies while the session cannot be read.
            LOGGER.warning(
                "event=session_poll_failed issue_number=%s session_id=%s error_type=%s error=%s",
                task.number,
                session.session_id,
                type(exc).__name__,
                exc,
            )
            snapshot = None
        except AgentError as exc:
            return self._fail(
                task,
                session,
                kind="failed",
                body=render_session_failed(session=session, detail=str(exc)),
            )

        if snapshot is not None and snapshot.status == "completed":
            return self._handle_completed(task, session, snapshot)
        if snapshot is not None and snapshot.status == "failed":
            return self._fail(
                task,
                session,
                kind="failed",
                body=render_session_failed(session=session, detail=snapshot.url),
            )

        elapsed = (self._now() - parse_timestamp(session.created_at)).total_seconds()
        if elapsed > self._max_duration_seconds:
            return self._fail(
                task,
                session,
                kind="stuck",
                body=render_session_stuck(
                    session=session,
                    elapsed_seconds=elapsed,
                    limit_seconds=self._max_duration_seconds,
                ),
            )

        status = snapshot.status if snapshot is not None else session.status
        log_event(
            LOGGER,
            "session_still_running",
            issue_number=task.number,
            session_id=session.session_id,
            status=status,
            elapsed_seconds=int(elapsed),
        )
        return MonitorOutcome(
            kind="running",
            task_number=task.number,
            session=replace(session, status=status),
        )

    def watch(self, task: Task) -> MonitorOutcome:
        """Poll until the session reaches a terminal state or is declared stuck."""
        while True:
            outcome = self.poll(task)
            if outcome.is_terminal:
                return outcome
            self._sleep(float(self._poll_interval_seconds))

    def _handle_completed(
        self, task: Task, session: Session, snapshot: AgentSessionSnapshot
    ) -> MonitorOutcome:
        pr = self._resolve_pull_request(task, session, snapshot)
        if pr is None:
            return self._fail(
                task,
                session,
                kind="failed",
                body=render_session_failed(
                    session=session,
                    detail="the session completed without producing a branch or pull request",
                ),
            )

        self._github.add_labels(pr.number, (self._repo.agent_pr_label,))
        completed = replace(session, status="completed", pr_number=pr.number)
        self._github.post_issue_comment(
            task.number,
            append_session_marker(
                body=render_pr_opened_on_task(pr_number=pr.number, pr_url=pr.html_url),
                session=completed,
            ),
        )
        self._github.post_issue_comment(pr.number, render_pr_opened_on_pull_request(task=task))
        log_event(
            LOGGER,
            "session_completed",
            issue_number=task.number,
            session_id=session.session_id,
            pr_number=pr.number,
        )
        return MonitorOutcome(
            kind="completed", task_number=task.number, session=completed, pr_number=pr.number
        )

    def _resolve_pull_request(
        self, task: Task, session: Session, snapshot: AgentSessionSnapshot
    ) -> PullRequest | None:
        adopted_number = _pull_number_from_url(snapshot.pull_request_url)
        if adopted_number is not None:
            existing = self._github.get_pull_request(adopted_number)
            if extract_task_reference(existing.body) != task.number:
                self._github.update_pull_request_body(
                    existing.number, f"{existing.body.strip()}\n\nResolves #{task.number}".strip()
                )
            log_event(
                LOGGER,
                "agent_pull_request_adopted",
                issue_number=task.number,
                pr_number=existing.number,
            )
            return PullRequest(number=existing.number, html_url=existing.html_url)

        branch = snapshot.result_branch
        if not branch:
            return None
        # A retried poll may find the pull request it opened last time.
        reused = self._github.find_pull_request_by_head(
            head=branch, base=self._repo.default_branch
        )
        if reused is not None:
            return reused
        return self._github.create_pull_request(
            title=render_pull_request_title(task),
            head=branch,
            base=self._repo.default_branch,
            body=render_pull_request_body(task=task, session=session),
        )

    def _fail(
        self, task: Task, session: Session, *, kind: Literal["failed", "stuck"], body: str
    ) -> MonitorOutcome:
        failed = replace(session, status="failed")
        token = compute_action_token("session_failure", task.number, session.session_id)
        if not self._ledger.has_action(task.number, kind="session_failure", token=token):
            marked = append_session_marker(body=body, session=failed)
            self._github.post_issue_comment(
                task.number, append_action_token(body=marked, kind="session_failure", token=token)
            )
        self._release_task(task)
        LOGGER.warning(
            "event=session_%s issue_number=%s session_id=%s",
            kind,
            task.number,
            session.session_id,
        )
        return MonitorOutcome(kind=kind, task_number=task.number, session=failed)

    def _release_task(self, task: Task) -> None:
        # In-progress goes last so an interrupted release is still polled and finished.
        for label in (self._repo.work_label, self._repo.in_progress_label):
            if task.has_label(label):
                self._github.remove_label(task.number, label)


def _pull_number_from_url(url: str | None) -> int | None:
    if not url:
        return None
    match = _PULL_URL_PATTERN.search(url)
    if match is None:
        return None
    return int(match.group(1))
