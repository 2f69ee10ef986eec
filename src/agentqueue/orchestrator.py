from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Literal, TypeVar

from agentqueue.agent_adapter import AgentAdapter, AgentUnavailableError
from agentqueue.concurrency_gate import check_gate, post_queued_notice
from agentqueue.config import AppConfig
from agentqueue.dispatcher import SessionDispatcher
from agentqueue.github_gateway import GitHubGateway, GitHubPollingError
from agentqueue.ledger import SessionLedger
from agentqueue.merge_controller import MergeController, MergeOutcome
from agentqueue.models import Task
from agentqueue.observability import log_event, logging_task_context
from agentqueue.process_lock import ProcessLockError, serialization_lock
from agentqueue.queue_selector import select_next_task
from agentqueue.reconciler import PostMergeReconciler, ReconcileOutcome
from agentqueue.session_monitor import MonitorOutcome, SessionMonitor
from agentqueue.shell import CommandError
from agentqueue.triggers import Trigger


LOGGER = logging.getLogger("agentqueue.orchestrator")
_MAX_WORKERS = 4
_TRANSIENT_ERRORS = (GitHubPollingError, CommandError, AgentUnavailableError, ProcessLockError)

_T = TypeVar("_T")
_R = TypeVar("_R")
_D = TypeVar("_D")

CycleKind = Literal["queue_empty", "queued", "dispatched", "already_active", "misconfigured"]


@dataclass(frozen=True)
class CycleOutcome:
    kind: CycleKind
    task_number: int | None = None
    blocker_number: int | None = None


@dataclass(frozen=True)
class TickReport:
    reconciled: tuple[ReconcileOutcome, ...] = ()
    sessions: tuple[MonitorOutcome, ...] = ()
    pull_requests: tuple[MergeOutcome, ...] = ()
    cycle: CycleOutcome | None = None


@dataclass(frozen=True)
class TriggerResult:
    trigger: Trigger
    cycle: CycleOutcome | None = None
    tick: TickReport | None = None
    evaluations: tuple[MergeOutcome, ...] = field(default_factory=tuple)
    reconciliations: tuple[ReconcileOutcome, ...] = field(default_factory=tuple)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Orchestrator:
    """Entry points for one task-at-a-time processing of the work queue.

    Every entry point re-derives its decisions from the Task Store, so each one
    can be invoked from a short-lived process (a workflow run, a cron job) or
    from the long-running :meth:`run` loop.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        github: GitHubGateway,
        agent: AgentAdapter,
        now: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._github = github
        self._agent = agent
        self._sleep = sleep
        self._ledger = SessionLedger(github)
        self._dispatcher = SessionDispatcher(
            github=github,
            agent=agent,
            repo=config.repo,
            ledger=self._ledger,
            api_key_env=config.agent.api_key_env,
            now=now,
        )
        self._monitor = SessionMonitor(
            github=github,
            agent=agent,
            repo=config.repo,
            ledger=self._ledger,
            poll_interval_seconds=config.runtime.session_poll_interval_seconds,
            max_duration_seconds=config.runtime.session_max_duration_seconds,
            now=now,
            sleep=sleep,
        )
        self._reconciler = PostMergeReconciler(
            github=github, repo=config.repo, on_next=self.run_dispatch_cycle
        )
        self._merge_controller = MergeController(
            github=github,
            repo=config.repo,
            ledger=self._ledger,
            max_failure_rounds=config.runtime.max_ci_failure_rounds,
            on_merged=self._reconciler.reconcile,
        )

    @property
    def ledger(self) -> SessionLedger:
        return self._ledger

    def run_dispatch_cycle(self) -> CycleOutcome:
        """Select the next task and dispatch it if nothing else is in flight."""
        with serialization_lock(
            base_dir=self._config.runtime.base_dir,
            name="dispatch",
            command="dispatch",
            wait_seconds=self._config.runtime.dispatch_lock_timeout_seconds,
        ):
            task = select_next_task(self._github, self._config.repo)
            if task is None:
                return CycleOutcome(kind="queue_empty")
            with logging_task_context(task.number):
                decision = check_gate(self._github, self._config.repo)
                if decision.busy:
                    post_queued_notice(self._github, self._ledger, task=task, decision=decision)
                    return CycleOutcome(
                        kind="queued",
                        task_number=task.number,
                        blocker_number=decision.blocker_number,
                    )
                outcome = self._dispatcher.dispatch(task)
                return CycleOutcome(kind=outcome.kind, task_number=task.number)

    def poll_sessions(
        self, *, pool: ThreadPoolExecutor | None = None
    ) -> tuple[MonitorOutcome, ...]:
        tasks = self._github.list_open_issues_with_label(self._config.repo.in_progress_label)
        return _map_each(pool, self._poll_task, tasks)

    def watch_sessions(self) -> tuple[MonitorOutcome, ...]:
        tasks = self._github.list_open_issues_with_label(self._config.repo.in_progress_label)
        outcomes: list[MonitorOutcome] = []
        for task in tasks:
            with logging_task_context(task.number):
                outcomes.append(self._monitor.watch(task))
        return tuple(outcomes)

    def watch_task(self, task_number: int) -> MonitorOutcome:
        with logging_task_context(task_number):
            return self._monitor.watch(self._github.get_issue(task_number))

    def evaluate_pull_requests(
        self, *, pool: ThreadPoolExecutor | None = None
    ) -> tuple[MergeOutcome, ...]:
        numbers = [
            pr.number
            for pr in self._github.list_open_pull_requests()
            if pr.has_label(self._config.repo.agent_pr_label)
        ]
        return _map_each(pool, self.evaluate_pull_request, numbers)

    def evaluate_pull_request(self, pr_number: int) -> MergeOutcome:
        return self._merge_controller.evaluate(pr_number)

    def reconcile_pull_request(self, pr_number: int) -> ReconcileOutcome:
        return self._reconciler.reconcile(pr_number)

    def reconcile_merged(self) -> tuple[ReconcileOutcome, ...]:
        """Close out in-progress tasks whose pull request was merged without us seeing the event."""
        outcomes: list[ReconcileOutcome] = []
        for task in self._github.list_open_issues_with_label(self._config.repo.in_progress_label):
            session = self._ledger.current_session(task.number)
            if session is None or session.pr_number is None:
                continue
            pr = self._github.get_pull_request(session.pr_number)
            if pr.state != "merged":
                continue
            with logging_task_context(task.number):
                outcomes.append(self._reconciler.reconcile(pr.number))
        return tuple(outcomes)

    def tick(self, *, pool: ThreadPoolExecutor | None = None) -> TickReport:
        """Run every phase once; a transient failure in one phase does not skip the others.

        The first transient error is re-raised after all phases have run.
        """
        errors: list[Exception] = []
        reconciled = _run_phase("reconcile", self.reconcile_merged, (), errors)
        sessions = _run_phase("poll_sessions", lambda: self.poll_sessions(pool=pool), (), errors)
        pull_requests = _run_phase(
            "evaluate_pull_requests", lambda: self.evaluate_pull_requests(pool=pool), (), errors
        )
        cycle = _run_phase("dispatch_cycle", self.run_dispatch_cycle, None, errors)
        if errors:
            raise errors[0]
        return TickReport(
            reconciled=reconciled,
            sessions=sessions,
            pull_requests=pull_requests,
            cycle=cycle,
        )

    def handle_trigger(self, trigger: Trigger) -> TriggerResult:
        log_event(LOGGER, "trigger_handling", kind=trigger.kind, reason=trigger.reason)
        if trigger.kind == "dispatch":
            return TriggerResult(trigger=trigger, cycle=self.run_dispatch_cycle())
        if trigger.kind == "tick":
            return TriggerResult(trigger=trigger, tick=self.tick())
        if trigger.kind == "evaluate":
            return TriggerResult(
                trigger=trigger,
                evaluations=tuple(self.evaluate_pull_request(n) for n in trigger.pr_numbers),
            )
        if trigger.kind == "reconcile":
            return TriggerResult(
                trigger=trigger,
                reconciliations=tuple(self.reconcile_pull_request(n) for n in trigger.pr_numbers),
            )
        return TriggerResult(trigger=trigger)

    def run(self, *, once: bool) -> None:
        with ThreadPoolExecutor(max_workers=_MAX_WORKERS) as pool:
            while True:
                log_event(LOGGER, "poll_started", once=once)
                try:
                    report = self.tick(pool=pool)
                except _TRANSIENT_ERRORS as exc:
                    if once:
                        raise
                    LOGGER.warning(
                        "event=poll_failed error_type=%s error=%s", type(exc).__name__, exc
                    )
                else:
                    log_event(
                        LOGGER,
                        "poll_completed",
                        reconciled_count=len(report.reconciled),
                        session_count=len(report.sessions),
                        pull_request_count=len(report.pull_requests),
                        cycle=report.cycle.kind if report.cycle is not None else None,
                    )

                if once:
                    break

                self._sleep(float(self._config.runtime.poll_interval_seconds))

    def _poll_task(self, task: Task) -> MonitorOutcome:
        with logging_task_context(task.number):
            return self._monitor.poll(task)


def _map_each(
    pool: ThreadPoolExecutor | None, fn: Callable[[_T], _R], items: Iterable[_T]
) -> tuple[_R, ...]:
    if pool is None:
        return tuple(fn(item) for item in items)
    futures: list[Future[_R]] = [pool.submit(fn, item) for item in items]
    # result() re-raises the first failure after every item has run.
    for fut in futures:
        fut.exception()
    return tuple(fut.result() for fut in futures)


def _run_phase(
    name: str, fn: Callable[[], _R], default: _D, errors: list[Exception]
) -> _R | _D:
    try:
        return fn()
    except _TRANSIENT_ERRORS as exc:
        LOGGER.warning(
            "event=tick_phase_failed phase=%s error_type=%s error=%s",
            name,
            type(exc).__name__,
            exc,
        )
        errors.append(exc)
        return default
