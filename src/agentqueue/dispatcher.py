from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
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
    format_timestamp,
)
from agentqueue.models import Session, Task
from agentqueue.notifications import (
    render_agent_error_notice,
    render_credentials_notice,
    render_dispatch_comment,
)
from agentqueue.observability import log_event
from agentqueue.prompts import build_session_title, build_task_prompt


LOGGER = logging.getLogger("agentqueue.dispatcher")

DispatchKind = Literal["dispatched", "already_active", "misconfigured"]


@dataclass(frozen=True)
class DispatchOutcome:
    kind: DispatchKind
    task_number: int
    session: Session | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionDispatcher:
    def __init__(
        self,
        *,
        github: GitHubGateway,
        agent: AgentAdapter,
        repo: RepoConfig,
        ledger: SessionLedger,
        api_key_env: str,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._github = github
        self._agent = agent
        self._repo = repo
        self._ledger = ledger
        self._api_key_env = api_key_env
        self._now = now

    def dispatch(self, task: Task) -> DispatchOutcome:
        existing = self._ledger.active_session(task.number)
        if existing is not None:
            log_event(
                LOGGER,
                "dispatch_skipped",
                issue_number=task.number,
                session_id=existing.session_id,
                reason="session_already_active",
            )
            if not task.has_label(self._repo.in_progress_label):
                # A previous dispatch recorded the session but failed to label the task.
                self._github.add_labels(task.number, (self._repo.in_progress_label,))
                log_event(
                    LOGGER,
                    "in_progress_label_restored",
                    issue_number=task.number,
                    session_id=existing.session_id,
                )
            return DispatchOutcome(kind="already_active", task_number=task.number, session=existing)

        if not self._agent.has_credentials():
            return self._report_missing_credentials(task)

        prompt = build_task_prompt(
            task=task,
            repo_full_name=self._repo.full_name,
            default_branch=self._repo.default_branch,
            pre_pr_checks=self._repo.pre_pr_checks,
        )
        try:
            session_id = self._agent.create_session(
                prompt=prompt,
                title=build_session_title(task),
                starting_branch=self._repo.default_branch,
            )
        except AgentCredentialsError:
            return self._report_missing_credentials(task)
        except AgentUnavailableError:
            raise
        except AgentError as exc:
            return self._report_agent_error(task, exc)

        session = Session(
            task_number=task.number,
            session_id=session_id,
            status="pending",
            created_at=format_timestamp(self._now()),
        )
        # The tracking comment is the session record, so it is written before labeling.
        body = render_dispatch_comment(session=session, agent_name=self._agent.name)
        self._github.post_issue_comment(
            task.number, append_session_marker(body=body, session=session)
        )
        self._github.add_labels(task.number, (self._repo.in_progress_label,))
        log_event(
            LOGGER,
            "session_dispatched",
            issue_number=task.number,
            session_id=session_id,
            agent=self._agent.name,
        )
        return DispatchOutcome(kind="dispatched", task_number=task.number, session=session)

    def _report_missing_credentials(self, task: Task) -> DispatchOutcome:
        token = compute_action_token("credentials", task.number)
        if self._ledger.has_action(task.number, kind="credentials", token=token):
            log_event(
                LOGGER,
                "dispatch_skipped",
                issue_number=task.number,
                reason="missing_credentials_already_reported",
            )
        else:
            body = render_credentials_notice(
                agent_name=self._agent.name, api_key_env=self._api_key_env
            )
            self._github.post_issue_comment(
                task.number, append_action_token(body=body, kind="credentials", token=token)
            )
            LOGGER.warning(
                "event=agent_credentials_missing issue_number=%s api_key_env=%s",
                task.number,
                self._api_key_env,
            )
        return DispatchOutcome(kind="misconfigured", task_number=task.number, session=None)

    def _report_agent_error(self, task: Task, exc: AgentError) -> DispatchOutcome:
        token = compute_action_token("agent_error", task.number)
        if not self._ledger.has_action(task.number, kind="agent_error", token=token):
            body = render_agent_error_notice(agent_name=self._agent.name, error=str(exc))
            self._github.post_issue_comment(
                task.number, append_action_token(body=body, kind="agent_error", token=token)
            )
        LOGGER.warning(
            "event=agent_session_rejected issue_number=%s error_type=%s error=%s",
            task.number,
            type(exc).__name__,
            exc,
        )
        return DispatchOutcome(kind="misconfigured", task_number=task.number, session=None)
