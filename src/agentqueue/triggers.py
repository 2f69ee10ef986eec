from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import logging
from typing import Literal

from agentqueue.config import RepoConfig
from agentqueue.observability import log_event


LOGGER = logging.getLogger("agentqueue.triggers")

TriggerKind = Literal["dispatch", "tick", "evaluate", "reconcile", "ignored"]


@dataclass(frozen=True)
class Trigger:
    kind: TriggerKind
    pr_numbers: tuple[int, ...] = ()
    reason: str | None = None


def parse_trigger(event_name: str, payload: Mapping[str, object], *, repo: RepoConfig) -> Trigger:
    """Map a GitHub Actions event onto the orchestrator entry point it should run."""
    action = payload.get("action")
    trigger: Trigger
    if event_name in {"schedule", "workflow_dispatch"}:
        trigger = Trigger(kind="tick")
    elif event_name == "issues":
        label = _as_mapping(payload.get("label"))
        if action == "labeled" and label is not None and label.get("name") == repo.work_label:
            trigger = Trigger(kind="dispatch")
        else:
            trigger = Trigger(kind="ignored", reason=f"issues_{action}")
    elif event_name in {"check_suite", "check_run"}:
        if action != "completed":
            trigger = Trigger(kind="ignored", reason=f"{event_name}_{action}")
        else:
            numbers = _linked_pull_numbers(payload.get(event_name))
            if numbers:
                trigger = Trigger(kind="evaluate", pr_numbers=numbers)
            else:
                trigger = Trigger(kind="ignored", reason="no_linked_pull_request")
    elif event_name == "pull_request":
        pr = _as_mapping(payload.get("pull_request"))
        number = pr.get("number") if pr is not None else None
        if action == "closed" and pr is not None and pr.get("merged") is True and _is_int(number):
            trigger = Trigger(kind="reconcile", pr_numbers=(number,))  # type: ignore[arg-type]
        else:
            trigger = Trigger(kind="ignored", reason=f"pull_request_{action}")
    else:
        trigger = Trigger(kind="ignored", reason=f"unsupported_event_{event_name}")

    log_event(
        LOGGER,
        "trigger_parsed",
        event_name=event_name,
        action=action if isinstance(action, str) else None,
        kind=trigger.kind,
        pr_numbers=",".join(str(n) for n in trigger.pr_numbers) or None,
        reason=trigger.reason,
    )
    return trigger


def _linked_pull_numbers(check_obj: object) -> tuple[int, ...]:
    check = _as_mapping(check_obj)
    if check is None:
        return ()
    pulls = check.get("pull_requests")
    numbers: set[int] = set()
    if isinstance(pulls, list):
        for item in pulls:
            pull = _as_mapping(item)
            if pull is None:
                continue
            number = pull.get("number")
            if _is_int(number):
                numbers.add(number)  # type: ignore[arg-type]
    # check_run events nest the suite that owns them.
    if not numbers and "check_suite" in check:
        return _linked_pull_numbers(check.get("check_suite"))
    return tuple(sorted(numbers))


def _as_mapping(value: object) -> Mapping[str, object] | None:
    if isinstance(value, Mapping):
        return value
    return None


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
