from __future__ import annotations

from agentqueue.models import Task


def _pre_pr_check_lines(*, pre_pr_checks: str | None) -> str:
    if pre_pr_checks:
        return (
            f"- Before finishing, run `{pre_pr_checks}` from the repository root and fix "
            "every failure it reports."
        )
    return "- Before finishing, run the formatting, lint and test commands this repo uses in CI."


def build_task_prompt(
    *,
    task: Task,
    repo_full_name: str,
    default_branch: str,
    pre_pr_checks: str | None,
) -> str:
    check_lines = _pre_pr_check_lines(pre_pr_checks=pre_pr_checks)
    return f"""
You are the coding agent for repository {repo_full_name}.

Task:
- Resolve issue #{task.number} with focused code changes.
- Base branch is: {default_branch}
{check_lines}
- Add or update tests that cover the change.
- Keep scope tight to the requested work.

Output requirements:
- Commit your work on a new branch.
- Summarize what changed and reference issue #{task.number}.

Issue title:
{task.title}

Issue URL:
{task.html_url}

Issue body:
{task.body}
""".strip()


def build_session_title(task: Task) -> str:
    return f"#{task.number}: {task.title}".strip()
