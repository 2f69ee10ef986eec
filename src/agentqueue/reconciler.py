from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
from typing import Literal

from agentqueue.config import RepoConfig
from agentqueue.github_gateway import GitHubGateway
from agentqueue.models import PullRequestSnapshot, Task
from agentqueue.notifications import extract_task_reference, render_task_completed
from agentqueue.observability import log_event
from agentqueue.tracking_doc import mark_task_complete


LOGGER = logging.getLogger("agentqueue.reconciler")

ReconcileKind = Literal["not_merged", "no_task_reference", "already_closed", "reconciled"]


@dataclass(frozen=True)
class ReconcileOutcome:
    kind: ReconcileKind
    pr_number: int
    task_number: int | None = None


class PostMergeReconciler:
    def __init__(
        self,
        *,
        github: GitHubGateway,
        repo: RepoConfig,
        on_next: Callable[[], object] | None = None,
    ) -> None:
        self._github = github
        self._repo = repo
        self._on_next = on_next

    def reconcile(self, pr_number: int) -> ReconcileOutcome:
        pr = self._github.get_pull_request(pr_number)
        if pr.state != "merged":
            log_event(LOGGER, "reconcile_skipped", pr_number=pr.number, reason=f"pr_{pr.state}")
            return ReconcileOutcome(kind="not_merged", pr_number=pr.number)

        task_number = extract_task_reference(pr.body)
        if task_number is None:
            LOGGER.warning(
                "event=reconcile_skipped pr_number=%s reason=no_task_reference", pr.number
            )
            return ReconcileOutcome(kind="no_task_reference", pr_number=pr.number)

        task = self._github.get_issue(task_number)
        if task.state == "closed":
            log_event(
                LOGGER,
                "reconcile_skipped",
                pr_number=pr.number,
                issue_number=task_number,
                reason="task_already_closed",
            )
            return ReconcileOutcome(
                kind="already_closed", pr_number=pr.number, task_number=task_number
            )

        self._github.post_issue_comment(task.number, render_task_completed(pr=pr))
        for label in (self._repo.work_label, self._repo.in_progress_label):
            if task.has_label(label):
                self._github.remove_label(task.number, label)
        self._github.close_issue(task.number)
        self._update_tracking_doc(task, pr)
        log_event(LOGGER, "task_reconciled", issue_number=task.number, pr_number=pr.number)

        if self._on_next is not None:
            self._on_next()
        return ReconcileOutcome(kind="reconciled", pr_number=pr.number, task_number=task.number)

    def _update_tracking_doc(self, task: Task, pr: PullRequestSnapshot) -> None:
        path = self._repo.tracking_doc_path
        if path is None:
            return
        try:
            current = self._github.get_file_text(path, ref=self._repo.default_branch)
            if current is None:
                log_event(LOGGER, "tracking_doc_skipped", path=path, reason="not_found")
                return
            text, sha = current
            updated = mark_task_complete(
                text, task_number=task.number, title=task.title, pr_number=pr.number
            )
            if updated == text:
                log_event(LOGGER, "tracking_doc_skipped", path=path, reason="unchanged")
                return
            self._github.put_file_text(
                path,
                text=updated,
                message=f"Mark #{task.number} complete in {path}",
                branch=self._repo.default_branch,
                sha=sha,
            )
        except (RuntimeError, ValueError) as exc:
            LOGGER.warning(
                "event=tracking_doc_update_failed issue_number=%s path=%s error_type=%s error=%s",
                task.number,
                path,
                type(exc).__name__,
                exc,
            )
