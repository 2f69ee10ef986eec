"""Human-readable comments posted onto tasks and pull requests."""

from __future__ import annotations

import re

from agentqueue.models import CheckRollup, PullRequestSnapshot, Session, Task


_TASK_REFERENCE_PATTERN = re.compile(
    r"(?i)\b(?:close[sd]?|fix(?:e[sd])?|resolve[sd]?)\s*:?\s+#(\d+)\b"
)
_STATUS_LINES = {
    "pending": "Session queued with the coding agent.",
    "running": "Coding agent is working on this task.",
    "completed": "Coding agent finished this task.",
    "failed": "Coding agent session failed.",
}


def extract_task_reference(body: str) -> int | None:
    match = _TASK_REFERENCE_PATTERN.search(body)
    if match is None:
        return None
    return int(match.group(1))


def render_queued_notice(*, blocker_kind: str, blocker_number: int, blocker_url: str) -> str:
    what = "pull request" if blocker_kind == "pull_request" else "task"
    return (
        f"Queued, waiting for current work: blocked by {what} #{blocker_number} "
        f"({blocker_url}).\n\n"
        "Tasks are processed one at a time, oldest first. This task will be dispatched "
        "automatically once the current work is merged or closed."
    )


def render_credentials_notice(*, agent_name: str, api_key_env: str) -> str:
    return (
        f"Cannot dispatch this task: credentials for the {agent_name} API are not configured.\n\n"
        f"Set the `{api_key_env}` secret for the orchestrator. No session was created; "
        "the task will be picked up on the next trigger once credentials are available."
    )


def render_agent_error_notice(*, agent_name: str, error: str) -> str:
    return (
        f"Cannot dispatch this task: the {agent_name} API refused to start a session.\n\n"
        f"Error: {error}\n\n"
        "No session was created. Fix the agent setup for this repository; the task will be "
        "picked up on the next trigger."
    )


def render_dispatch_comment(*, session: Session, agent_name: str) -> str:
    return (
        f"Dispatched to {agent_name}.\n\n"
        f"- Session: `{session.session_id}`\n"
        f"- Status: {session.status}. {_STATUS_LINES[session.status]}"
    )


def render_session_failed(*, session: Session, detail: str | None) -> str:
    lines = [
        f"Coding agent session `{session.session_id}` failed.",
        "",
        "The task stays open and has been removed from the queue. "
        "Re-add the work label to retry.",
    ]
    if detail:
        lines.extend(["", f"Detail: {detail}"])
    return "\n".join(lines)


def render_session_stuck(*, session: Session, elapsed_seconds: float, limit_seconds: int) -> str:
    return (
        f"Coding agent session `{session.session_id}` did not finish within "
        f"{_render_duration(limit_seconds)} (running for {_render_duration(elapsed_seconds)}) "
        "and is considered stuck.\n\n"
        "The task stays open and has been removed from the queue. "
        "Re-add the work label to retry."
    )


def render_pull_request_body(*, task: Task, session: Session, summary: str | None = None) -> str:
    lines = [f"Resolves #{task.number}", ""]
    if summary:
        lines.extend([summary.strip(), ""])
    lines.append(f"Agent session: `{session.session_id}`")
    return "\n".join(lines)


def render_pull_request_title(task: Task) -> str:
    return f"{task.title} (#{task.number})"


def render_pr_opened_on_task(*, pr_number: int, pr_url: str) -> str:
    return f"Opened pull request #{pr_number} for this task: {pr_url}"


def render_pr_opened_on_pull_request(*, task: Task) -> str:
    return f"Opened for task #{task.number}: {task.html_url}"


def render_check_failure_report(
    *,
    pr: PullRequestSnapshot,
    rollup: CheckRollup,
    failure_round: int,
    max_rounds: int,
) -> str:
    failing = rollup.failing
    lines = [
        f"CI failed for `{_short_sha(pr.head_sha)}`: {len(failing)} of {len(rollup.checks)} "
        "checks did not pass.",
        "",
        "| Check | Summary | Details |",
        "| --- | --- | --- |",
    ]
    for check in failing:
        details = f"[logs]({check.details_url})" if check.details_url else "-"
        summary = check.summary.replace("|", "\\|") or "-"
        lines.append(f"| `{check.name}` | {summary} | {details} |")
    lines.extend(
        [
            "",
            "This pull request was not merged. Push a fix to this branch; checks re-run and "
            f"the merge is re-evaluated automatically (attempt {failure_round} of {max_rounds}).",
        ]
    )
    return "\n".join(lines)


def render_conflict_notice(*, pr: PullRequestSnapshot, default_branch: str) -> str:
    return (
        f"Merge conflict: `{pr.head_ref}` cannot be merged into `{default_branch}` as of "
        f"`{_short_sha(pr.head_sha)}`. Please rebase onto `{default_branch}` and push.\n\n"
        "The merge is re-evaluated automatically after the branch is updated."
    )


def render_escalation(
    *, pr: PullRequestSnapshot, rounds: int, work_label: str, blocked_label: str
) -> str:
    return (
        f"CI failed on {rounds} successive revisions of pull request #{pr.number}; giving up "
        "on automatic processing.\n\n"
        "The pull request has been closed and the task marked blocked so the queue can move "
        f"on. To retry, remove the `{blocked_label}` label and add `{work_label}` again."
    )


def render_merge_success(*, pr: PullRequestSnapshot) -> str:
    return f"All checks passed; squash-merged `{_short_sha(pr.head_sha)}`."


def render_task_completed(*, pr: PullRequestSnapshot) -> str:
    return f"Completed by pull request #{pr.number} ({pr.html_url}), which has been merged."


def _short_sha(sha: str) -> str:
    return sha[:7] if sha else "<unknown>"


def _render_duration(seconds: float) -> str:
    if seconds < 120:
        return f"{int(seconds)}s"
    if seconds < 7200:
        return f"{int(seconds // 60)}m"
    return f"{seconds / 3600:.1f}h"
