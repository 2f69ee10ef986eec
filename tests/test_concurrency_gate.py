from __future__ import annotations

import pytest

from agentqueue.concurrency_gate import IDLE, GateDecision, check_gate, post_queued_notice
from agentqueue.ledger import SessionLedger
from fakes import REPO, FakeTaskStore


def test_gate_idle_without_agent_work(store: FakeTaskStore) -> None:
    store.add_task(1)
    store.add_pull_request(20, labels=("dependencies",))

    assert check_gate(store, REPO) == IDLE


def test_gate_blocked_by_lowest_agent_pull_request(store: FakeTaskStore) -> None:
    store.add_pull_request(12)
    store.add_pull_request(10)
    store.add_task(3, labels=("agent:in-progress",))

    decision = check_gate(store, REPO)

    assert decision == GateDecision(
        busy=True,
        blocker_kind="pull_request",
        blocker_number=10,
        blocker_url="https://github.com/acme/widgets/pull/10",
    )


def test_gate_blocked_by_in_progress_task(store: FakeTaskStore) -> None:
    store.add_task(3, labels=("agent:in-progress",))

    decision = check_gate(store, REPO)

    assert decision.busy
    assert decision.blocker_kind == "task"
    assert decision.blocker_number == 3


def test_gate_ignores_merged_agent_pull_requests(store: FakeTaskStore) -> None:
    store.add_pull_request(10)
    store.merge_externally(10)

    assert not check_gate(store, REPO).busy


def test_queued_notice_posted_once_per_blocker(store: FakeTaskStore) -> None:
    task = store.add_task(2)
    ledger = SessionLedger(store)
    store.add_pull_request(10)
    decision = check_gate(store, REPO)

    assert post_queued_notice(store, ledger, task=task, decision=decision) is True
    assert post_queued_notice(store, ledger, task=task, decision=decision) is False
    assert len(store.comment_bodies(2)) == 1
    assert "blocked by pull request #10" in store.comment_bodies(2)[0]

    store.close_pull_request(10)
    store.add_pull_request(11)
    assert post_queued_notice(store, ledger, task=task, decision=check_gate(store, REPO))
    assert len(store.comment_bodies(2)) == 2


def test_queued_notice_requires_busy_decision(store: FakeTaskStore) -> None:
    task = store.add_task(2)
    with pytest.raises(ValueError, match="busy gate decision"):
        post_queued_notice(store, SessionLedger(store), task=task, decision=IDLE)
