from __future__ import annotations

from dataclasses import replace

import pytest

from agentqueue.config import RepoConfig
from agentqueue.observability import configure_logging
from agentqueue.reconciler import PostMergeReconciler
from fakes import REPO, FakeTaskStore


_TRACKED_REPO = replace(REPO, tracking_doc_path="docs/ROADMAP.md")


def _setup(store: FakeTaskStore) -> None:
    store.add_task(5, title="Fix parser", labels=("agent:queue", "agent:in-progress", "bug"))
    store.add_pull_request(11, body="Summary\n\nResolves #5")


def _reconciler(
    store: FakeTaskStore, calls: list[str] | None = None, *, repo: RepoConfig = REPO
) -> PostMergeReconciler:
    return PostMergeReconciler(
        github=store,
        repo=repo,
        on_next=(lambda: calls.append("next")) if calls is not None else None,
    )


def test_reconcile_closes_task_and_triggers_next(store: FakeTaskStore) -> None:
    _setup(store)
    store.merge_externally(11)
    calls: list[str] = []

    outcome = _reconciler(store, calls).reconcile(11)

    assert outcome.kind == "reconciled"
    assert outcome.task_number == 5
    task = store.get_issue(5)
    assert task.state == "closed"
    assert task.labels == ("bug",)
    assert store.comment_bodies(5) == [
        "Completed by pull request #11 (https://github.com/acme/widgets/pull/11), "
        "which has been merged."
    ]
    assert calls == ["next"]


def test_reconcile_is_idempotent(store: FakeTaskStore) -> None:
    _setup(store)
    store.merge_externally(11)
    calls: list[str] = []
    reconciler = _reconciler(store, calls)

    reconciler.reconcile(11)
    again = reconciler.reconcile(11)

    assert again.kind == "already_closed"
    assert len(store.comment_bodies(5)) == 1
    assert calls == ["next"]


def test_unmerged_pull_request_is_ignored(store: FakeTaskStore) -> None:
    _setup(store)
    calls: list[str] = []

    assert _reconciler(store, calls).reconcile(11).kind == "not_merged"
    store.close_pull_request(11)
    assert _reconciler(store, calls).reconcile(11).kind == "not_merged"

    assert store.get_issue(5).state == "open"
    assert calls == []


def test_pull_request_without_task_reference(store: FakeTaskStore) -> None:
    store.add_pull_request(11, body="See #5")
    store.merge_externally(11)

    assert _reconciler(store).reconcile(11).kind == "no_task_reference"


def test_reconcile_updates_tracking_doc(store: FakeTaskStore) -> None:
    _setup(store)
    store.merge_externally(11)
    store.files["docs/ROADMAP.md"] = ("# Roadmap\n\n- [ ] #5 Fix parser\n", "abc")

    _reconciler(store, repo=_TRACKED_REPO).reconcile(11)

    assert store.files["docs/ROADMAP.md"] == ("# Roadmap\n\n- [x] #5 Fix parser\n", "abc+1")


def test_tracking_doc_missing_is_skipped(store: FakeTaskStore) -> None:
    _setup(store)
    store.merge_externally(11)

    assert _reconciler(store, repo=_TRACKED_REPO).reconcile(11).kind == "reconciled"
    assert store.files == {}


def test_tracking_doc_failure_does_not_block_reconcile(
    store: FakeTaskStore, capsys: pytest.CaptureFixture[str]
) -> None:
    _setup(store)
    store.merge_externally(11)
    store.files["docs/ROADMAP.md"] = ("- [ ] #5 Fix parser\n", "abc")
    store.fail_file_writes = True
    calls: list[str] = []

    configure_logging("high")
    outcome = _reconciler(store, calls, repo=_TRACKED_REPO).reconcile(11)

    assert outcome.kind == "reconciled"
    assert store.get_issue(5).state == "closed"
    assert calls == ["next"]
    assert "event=tracking_doc_update_failed" in capsys.readouterr().err


@pytest.mark.parametrize(
    "error",
    [
        UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"),
        ValueError("Contents of docs/ROADMAP.md are not inline (encoding=none)"),
    ],
)
def test_unreadable_tracking_doc_does_not_block_next_task(
    store: FakeTaskStore,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    error: ValueError,
) -> None:
    _setup(store)
    store.merge_externally(11)

    def unreadable(path: str, *, ref: str) -> tuple[str, str] | None:
        raise error

    monkeypatch.setattr(store, "get_file_text", unreadable)
    calls: list[str] = []

    configure_logging("high")
    outcome = _reconciler(store, calls, repo=_TRACKED_REPO).reconcile(11)

    assert outcome.kind == "reconciled"
    assert store.get_issue(5).state == "closed"
    assert store.files == {}
    assert calls == ["next"]
    assert f"error_type={type(error).__name__}" in capsys.readouterr().err
