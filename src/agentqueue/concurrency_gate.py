from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Literal

from agentqueue.config import RepoConfig
from agentqueue.github_gateway import GitHubGateway
from agentqueue.ledger import SessionLedger, append_action_token, compute_action_token
from agentqueue.models import Task
from agentqueue.notifications import render_queued_notice
from agentqueue.observability import log_event


LOGGER = logging.getLogger("agentqueue.concurrency_gate")

BlockerKind = Literal["pull_request", "task"]


@dataclass(frozen=True)
class GateDecision:
    busy: bool
    blocker_kind: BlockerKind | None = None
    blocker_number: int | None = None
    blocker_url: str | None = None


IDLE = GateDecision(busy=False)


def check_gate(github: GitHubGateway, repo: RepoConfig) -> GateDecision:
    """Derive busy/idle from the Task Store on every call; nothing is cached."""
    agent_prs = sorted(
        (pr for pr in github.list_open_pull_requests() if pr.has_label(repo.agent_pr_label)),
        key=lambda pr: pr.number,
    )
    if agent_prs:
        blocker = agent_prs[0]
        log_event(
            LOGGER,
            "gate_busy",
            blocker_kind="pull_request",
            blocker_number=blocker.number,
            open_agent_pr_count=len(agent_prs),
        )
        return GateDecision(
            busy=True,
            blocker_kind="pull_request",
            blocker_number=blocker.number,
            blocker_url=blocker.html_url,
        )

    # A session that has not yet opened its pull request still holds the slot.
    running = sorted(
        github.list_open_issues_with_label(repo.in_progress_label), key=lambda task: task.number
    )
    if running:
        blocker_task = running[0]
        log_event(
            LOGGER,
            "gate_busy",
            blocker_kind="task",
            blocker_number=blocker_task.number,
        )
        return GateDecision(
            busy=True,
            blocker_kind="task",
            blocker_number=blocker_task.number,
            blocker_url=blocker_task.html_url,
        )

    log_event(LOGGER, "gate_idle")
    return IDLE


def post_queued_notice(
    github: GitHubGateway,
    ledger: SessionLedger,
    *,
    task: Task,
    decision: GateDecision,
) -> bool:
    if not decision.busy or decision.blocker_kind is None or decision.blocker_number is None:
        raise ValueError("post_queued_notice requires a busy gate decision")

    token = compute_action_token(
        "queued", task.number, decision.blocker_kind, decision.blocker_number
    )
    if ledger.has_action(task.number, kind="queued", token=token):
        log_event(
            LOGGER,
            "queued_notice_skipped",
            issue_number=task.number,
            blocker_number=decision.blocker_number,
            reason="already_posted",
        )
        return False

    body = render_queued_notice(
        blocker_kind=decision.blocker_kind,
        blocker_number=decision.blocker_number,
        blocker_url=decision.blocker_url or "",
    )
    github.post_issue_comment(
        task.number, append_action_token(body=body, kind="queued", token=token)
    )
    log_event(
        LOGGER,
        "queued_notice_posted",
        issue_number=task.number,
        blocker_kind=decision.blocker_kind,
        blocker_number=decision.blocker_number,
    )
    return True
