from __future__ import annotations

from collections.abc import Iterable
import logging

from agentqueue.config import RepoConfig
from agentqueue.github_gateway import GitHubGateway
from agentqueue.models import Task
from agentqueue.observability import log_event


LOGGER = logging.getLogger("agentqueue.queue_selector")


def rank_tasks(tasks: Iterable[Task], *, repo: RepoConfig) -> list[Task]:
    """Return the dispatchable tasks, oldest first.

    A task is dispatchable when it is open, carries the work label and is neither
    already being worked on nor blocked. Ties on creation time are broken by
    number so the order is deterministic.
    """
    eligible = [
        task
        for task in tasks
        if task.state == "open"
        and task.has_label(repo.work_label)
        and not task.has_label(repo.in_progress_label)
        and not task.has_label(repo.blocked_label)
    ]
    return sorted(eligible, key=lambda task: (task.created_at, task.number))


def select_next_task(github: GitHubGateway, repo: RepoConfig) -> Task | None:
    # Task Store failures propagate; an unreachable store is never an empty queue.
    ranked = rank_tasks(github.list_open_issues_with_label(repo.work_label), repo=repo)
    if not ranked:
        log_event(LOGGER, "queue_empty", work_label=repo.work_label)
        return None
    selected = ranked[0]
    log_event(
        LOGGER,
        "task_selected",
        issue_number=selected.number,
        created_at=selected.created_at,
        queue_length=len(ranked),
    )
    return selected
