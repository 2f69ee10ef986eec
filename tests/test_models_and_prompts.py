from __future__ import annotations

from agentqueue.models import CheckRollup, Session, Task
from agentqueue.prompts import build_session_title, build_task_prompt
from fakes import failing, passing, pending


def _task(**overrides: object) -> Task:
    fields: dict[str, object] = {
        "number": 7,
        "title": "Add retries",
        "body": "The client should retry on 503.",
        "html_url": "https://github.com/acme/widgets/issues/7",
        "labels": ("agent:queue", "bug"),
        "state": "open",
        "created_at": "2026-01-01T00:00:00Z",
    }
    fields.update(overrides)
    return Task(**fields)  # type: ignore[arg-type]


def test_task_labels_and_session_terminal_states() -> None:
    task = _task()
    assert task.has_label("bug")
    assert not task.has_label("agent:in-progress")

    assert not Session(7, "s", "pending", "t").is_terminal
    assert not Session(7, "s", "running", "t").is_terminal
    assert Session(7, "s", "completed", "t").is_terminal
    assert Session(7, "s", "failed", "t").is_terminal


def test_check_rollup_classification() -> None:
    empty = CheckRollup(head_sha="a", checks=())
    assert empty.pending
    assert not empty.all_passed
    assert empty.failing == ()

    mixed = CheckRollup(head_sha="a", checks=(passing("unit"), failing("lint"), pending("e2e")))
    assert mixed.pending
    assert [check.name for check in mixed.failing] == ["lint"]

    green = CheckRollup(head_sha="a", checks=(passing("unit"), passing("lint")))
    assert not green.pending
    assert green.all_passed


def test_build_task_prompt_includes_issue_and_checks() -> None:
    prompt = build_task_prompt(
        task=_task(),
        repo_full_name="acme/widgets",
        default_branch="main",
        pre_pr_checks="make check",
    )

    assert prompt.startswith("You are the coding agent for repository acme/widgets.")
    assert "Resolve issue #7" in prompt
    assert "Base branch is: main" in prompt
    assert "run `make check` from the repository root" in prompt
    assert "https://github.com/acme/widgets/issues/7" in prompt
    assert prompt.endswith("The client should retry on 503.")


def test_build_task_prompt_without_configured_checks() -> None:
    prompt = build_task_prompt(
        task=_task(body=""),
        repo_full_name="acme/widgets",
        default_branch="develop",
        pre_pr_checks=None,
    )

    assert "formatting, lint and test commands this repo uses in CI" in prompt
    assert "Base branch is: develop" in prompt


def test_build_session_title() -> None:
    assert build_session_title(_task()) == "#7: Add retries"
