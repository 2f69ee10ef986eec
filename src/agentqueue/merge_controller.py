from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
from typing import Literal

from agentqueue.config import RepoConfig
from agentqueue.github_gateway import GitHubGateway
from agentqueue.ledger import SessionLedger, append_action_token, compute_action_token
from agentqueue.models import CheckRollup, PullRequestSnapshot
from agentqueue.notifications import (
    extract_task_reference,
    render_check_failure_report,
    render_conflict_notice,
    render_escalation,
    render_merge_success,
)
from agentqueue.observability import log_event


LOGGER = logging.getLogger("agentqueue.merge_controller")

MergeKind = Literal["skipped", "pending", "conflict", "checks_failed", "escalated", "merged"]


@dataclass(frozen=True)
class MergeOutcome:
    kind: MergeKind
    pr_number: int
    task_number: int | None = None
    failing_checks: tuple[str, ...] = ()


class MergeController:
    def __init__(
        self,
        *,
        github: GitHubGateway,
        repo: RepoConfig,
        ledger: SessionLedger,
        max_failure_rounds: int,
        on_merged: Callable[[int], object] | None = None,
    ) -> None:
        self._github = github
        self._repo = repo
        self._ledger = ledger
        self._max_failure_rounds = max_failure_rounds
        self._on_merged = on_merged

    def evaluate(self, pr_number: int) -> MergeOutcome:
        """Re-evaluate a pull request from scratch against its current head commit."""
        pr = self._github.get_pull_request(pr_number)
        if pr.state != "open" or not pr.has_label(self._repo.agent_pr_label):
            log_event(
                LOGGER,
                "merge_evaluation_skipped",
                pr_number=pr.number,
                state=pr.state,
                agent_authored=pr.has_label(self._repo.agent_pr_label),
            )
            return MergeOutcome(kind="skipped", pr_number=pr.number)

        task_number = extract_task_reference(pr.body)

        # Conflicted branches often never get checks, so this is decided first.
        if pr.mergeable is False:
            self._post_conflict_notice(pr)
            return MergeOutcome(kind="conflict", pr_number=pr.number, task_number=task_number)

        rollup = self._github.get_check_rollup(pr.head_sha)
        if rollup.pending:
            log_event(
                LOGGER,
                "merge_evaluation_pending",
                pr_number=pr.number,
                head_sha=pr.head_sha,
                check_count=len(rollup.checks),
            )
            return MergeOutcome(kind="pending", pr_number=pr.number, task_number=task_number)

        if rollup.failing:
            return self._handle_failures(pr, rollup, task_number=task_number)

        if pr.mergeable is None:
            log_event(
                LOGGER,
                "merge_evaluation_pending",
                pr_number=pr.number,
                head_sha=pr.head_sha,
                reason="mergeability_unknown",
            )
            return MergeOutcome(kind="pending", pr_number=pr.number, task_number=task_number)

        self._github.merge_pull_request(
            pr.number,
            head_sha=pr.head_sha,
            commit_title=f"{pr.title} (#{pr.number})",
        )
        self._github.post_issue_comment(pr.number, render_merge_success(pr=pr))
        log_event(LOGGER, "pr_merged", pr_number=pr.number, issue_number=task_number)
        if self._on_merged is not None:
            self._on_merged(pr.number)
        return MergeOutcome(kind="merged", pr_number=pr.number, task_number=task_number)

    def _post_conflict_notice(self, pr: PullRequestSnapshot) -> None:
        token = compute_action_token("conflict", pr.number, pr.head_sha)
        if self._ledger.has_action(pr.number, kind="conflict", token=token):
            log_event(LOGGER, "pr_conflict", pr_number=pr.number, notice="already_posted")
            return
        body = render_conflict_notice(pr=pr, default_branch=self._repo.default_branch)
        self._github.post_issue_comment(
            pr.number, append_action_token(body=body, kind="conflict", token=token)
        )
        log_event(LOGGER, "pr_conflict", pr_number=pr.number, head_sha=pr.head_sha)

    def _handle_failures(
        self, pr: PullRequestSnapshot, rollup: CheckRollup, *, task_number: int | None
    ) -> MergeOutcome:
        failing_names = tuple(check.name for check in rollup.failing)
        token = compute_action_token("ci_failure", pr.number, pr.head_sha)
        if self._ledger.has_action(pr.number, kind="ci_failure", token=token):
            log_event(
                LOGGER,
                "pr_checks_failed",
                pr_number=pr.number,
                head_sha=pr.head_sha,
                notice="already_posted",
            )
            rounds = self._ledger.count_actions(pr.number, kind="ci_failure")
            if rounds >= self._max_failure_rounds:
                # An earlier escalation stopped before closing the pull request.
                self._escalate(pr, task_number=task_number, rounds=rounds)
                return MergeOutcome(
                    kind="escalated",
                    pr_number=pr.number,
                    task_number=task_number,
                    failing_checks=failing_names,
                )
            return MergeOutcome(
                kind="checks_failed",
                pr_number=pr.number,
                task_number=task_number,
                failing_checks=failing_names,
            )

        failure_round = self._ledger.count_actions(pr.number, kind="ci_failure") + 1
        body = render_check_failure_report(
            pr=pr,
            rollup=rollup,
            failure_round=failure_round,
            max_rounds=self._max_failure_rounds,
        )
        escalate = failure_round >= self._max_failure_rounds
        if escalate:
            body = f"{body}\n\n{self._render_escalation(pr, failure_round)}"
        self._github.post_issue_comment(
            pr.number, append_action_token(body=body, kind="ci_failure", token=token)
        )
        log_event(
            LOGGER,
            "pr_checks_failed",
            pr_number=pr.number,
            head_sha=pr.head_sha,
            failing=",".join(failing_names),
            failure_round=failure_round,
        )
        if escalate:
            self._escalate(pr, task_number=task_number, rounds=failure_round)
            return MergeOutcome(
                kind="escalated",
                pr_number=pr.number,
                task_number=task_number,
                failing_checks=failing_names,
            )
        return MergeOutcome(
            kind="checks_failed",
            pr_number=pr.number,
            task_number=task_number,
            failing_checks=failing_names,
        )

    def _escalate(self, pr: PullRequestSnapshot, *, task_number: int | None, rounds: int) -> None:
        # The pull request stays open until the task is blocked.
        if task_number is not None:
            task = self._github.get_issue(task_number)
            token = compute_action_token("escalation", task_number, pr.number)
            if not self._ledger.has_action(task_number, kind="escalation", token=token):
                self._github.post_issue_comment(
                    task_number,
                    append_action_token(
                        body=self._render_escalation(pr, rounds),
                        kind="escalation",
                        token=token,
                    ),
                )
            for label in (self._repo.work_label, self._repo.in_progress_label):
                if task.has_label(label):
                    self._github.remove_label(task_number, label)
            self._github.add_labels(task_number, (self._repo.blocked_label,))
        self._github.close_pull_request(pr.number)
        LOGGER.warning(
            "event=pr_escalated pr_number=%s issue_number=%s rounds=%s",
            pr.number,
            task_number,
            rounds,
        )

    def _render_escalation(self, pr: PullRequestSnapshot, rounds: int) -> str:
        return render_escalation(
            pr=pr,
            rounds=rounds,
            work_label=self._repo.work_label,
            blocked_label=self._repo.blocked_label,
        )
