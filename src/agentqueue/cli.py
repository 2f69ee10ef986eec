from __future__ import annotations

import argparse
import json
import os
from pathlib import Path

from agentqueue.agent_adapter import AgentError
from agentqueue.config import AppConfig, ConfigError, load_config
from agentqueue.github_gateway import GitHubGateway, GitHubPollingError
from agentqueue.jules_adapter import JulesAdapter
from agentqueue.observability import configure_logging
from agentqueue.orchestrator import Orchestrator, TriggerResult
from agentqueue.process_lock import ProcessLockError
from agentqueue.shell import CommandError
from agentqueue.status import QueueStatus, load_status
from agentqueue.status_tui import run_status_tui
from agentqueue.triggers import parse_trigger


_DEFAULT_CONFIG = Path("agentqueue.toml")
_OPERATIONAL_ERRORS = (ConfigError, GitHubPollingError, CommandError, AgentError, ProcessLockError)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agentqueue")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = _add_command(
        subparsers, "run", help="Poll sessions, pull requests and the queue in a loop"
    )
    run_parser.add_argument("--once", action="store_true", help="Run a single tick and exit")

    dispatch_parser = _add_command(
        subparsers, "dispatch", help="Select the next task and dispatch it if the gate is idle"
    )
    dispatch_parser.add_argument(
        "--watch",
        action="store_true",
        help="After dispatching, poll the session until it finishes",
    )

    monitor_parser = _add_command(
        subparsers, "monitor", help="Check the sessions of in-progress tasks"
    )
    monitor_parser.add_argument(
        "--watch",
        action="store_true",
        help="Keep polling each session until it reaches a terminal state",
    )

    evaluate_parser = _add_command(
        subparsers, "evaluate", help="Evaluate an agent pull request for merge"
    )
    evaluate_parser.add_argument("--pr", type=int, required=True)

    reconcile_parser = _add_command(
        subparsers, "reconcile", help="Close out the task of a merged pull request"
    )
    reconcile_parser.add_argument("--pr", type=int, required=True)

    event_parser = _add_command(
        subparsers, "handle-event", help="Handle a GitHub Actions event"
    )
    event_parser.add_argument(
        "--event-name",
        default=os.environ.get("GITHUB_EVENT_NAME"),
        help="Event name (defaults to $GITHUB_EVENT_NAME)",
    )
    event_parser.add_argument(
        "--payload",
        type=Path,
        default=_env_path("GITHUB_EVENT_PATH"),
        help="Path to the event JSON payload (defaults to $GITHUB_EVENT_PATH)",
    )

    status_parser = _add_command(subparsers, "status", help="Print the queue status")
    status_parser.add_argument("--json", action="store_true", help="Print status as JSON")

    top_parser = _add_command(subparsers, "top", help="Open the interactive status dashboard")
    top_parser.add_argument("--refresh-seconds", type=int, default=30)

    return parser


def _add_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser], name: str, *, help: str
) -> argparse.ArgumentParser:
    command_parser = subparsers.add_parser(name, help=help)
    command_parser.add_argument("--config", type=Path, default=_DEFAULT_CONFIG)
    command_parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        choices=("low", "high"),
        default=None,
        help="Enable runtime logging to stderr (low or high, default high)",
    )
    return command_parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config)
        configure_logging(
            args.verbose, state_dir=config.runtime.base_dir if args.verbose else None
        )
        _dispatch_command(config, args)
    except _OPERATIONAL_ERRORS as exc:
        raise SystemExit(f"agentqueue {args.command} failed: {type(exc).__name__}: {exc}") from exc


def _dispatch_command(config: AppConfig, args: argparse.Namespace) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    github = _build_github(config)

    if args.command == "status":
        _cmd_status(load_status(github, config.repo), as_json=bool(args.json))
        return
    if args.command == "top":
        run_status_tui(
            loader=lambda: load_status(github, config.repo),
            refresh_seconds=int(args.refresh_seconds),
        )
        return

    with JulesAdapter(config.agent, config.repo) as agent:
        orchestrator = Orchestrator(config, github=github, agent=agent)
        if args.command == "run":
            orchestrator.run(once=bool(args.once))
            return
        if args.command == "dispatch":
            _cmd_dispatch(orchestrator, watch=bool(args.watch))
            return
        if args.command == "monitor":
            outcomes = orchestrator.watch_sessions() if args.watch else orchestrator.poll_sessions()
            if not outcomes:
                print("No in-progress tasks.")
            for outcome in outcomes:
                print(f"#{outcome.task_number}: {outcome.kind}{_pr_suffix(outcome.pr_number)}")
            return
        if args.command == "evaluate":
            merge = orchestrator.evaluate_pull_request(int(args.pr))
            print(f"PR #{merge.pr_number}: {merge.kind}{_failing_suffix(merge.failing_checks)}")
            return
        if args.command == "reconcile":
            reconciled = orchestrator.reconcile_pull_request(int(args.pr))
            print(f"PR #{reconciled.pr_number}: {reconciled.kind}")
            return
        if args.command == "handle-event":
            _cmd_handle_event(orchestrator, config, args)
            return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_dispatch(orchestrator: Orchestrator, *, watch: bool) -> None:
    cycle = orchestrator.run_dispatch_cycle()
    if cycle.kind == "queue_empty":
        print("Queue is empty.")
        return
    if cycle.kind == "queued":
        print(f"#{cycle.task_number}: queued behind #{cycle.blocker_number}")
        return
    print(f"#{cycle.task_number}: {cycle.kind}")
    if watch and cycle.task_number is not None and cycle.kind in {"dispatched", "already_active"}:
        outcome = orchestrator.watch_task(cycle.task_number)
        print(f"#{outcome.task_number}: {outcome.kind}{_pr_suffix(outcome.pr_number)}")


def _cmd_handle_event(
    orchestrator: Orchestrator, config: AppConfig, args: argparse.Namespace
) -> None:
    if not args.event_name:
        raise ConfigError("handle-event requires --event-name or $GITHUB_EVENT_NAME")
    if args.payload is None:
        raise ConfigError("handle-event requires --payload or $GITHUB_EVENT_PATH")
    try:
        payload = json.loads(Path(args.payload).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Could not read event payload {args.payload}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Event payload {args.payload} must be a JSON object")
    trigger = parse_trigger(str(args.event_name), payload, repo=config.repo)
    print(_render_trigger_result(orchestrator.handle_trigger(trigger)))


def _cmd_status(status: QueueStatus, *, as_json: bool) -> None:
    if as_json:
        print(status.to_json())
        return
    gate = status.gate
    if gate.busy:
        print(f"Gate: busy ({gate.blocker_kind} #{gate.blocker_number})")
    else:
        print("Gate: idle")
    sections = (("In flight", status.active), ("Queue", status.queue), ("Blocked", status.blocked))
    for title, rows in sections:
        print(f"{title}:")
        if not rows:
            print("  (none)")
        for row in rows:
            print(f"  #{row.number} [{row.phase}] {row.title}{_pr_suffix(row.pr_number)}")
    print("Agent pull requests:")
    if not status.pull_requests:
        print("  (none)")
    for pr in status.pull_requests:
        print(
            f"  #{pr.number} {pr.title} passing={pr.passing} pending={pr.pending}"
            f"{_failing_suffix(pr.failing)}"
        )


def _render_trigger_result(result: TriggerResult) -> str:
    trigger = result.trigger
    if trigger.kind == "ignored":
        return f"ignored: {trigger.reason}"
    if result.cycle is not None:
        return f"dispatch: {result.cycle.kind}"
    if result.tick is not None:
        cycle = result.tick.cycle.kind if result.tick.cycle is not None else "none"
        return (
            f"tick: reconciled={len(result.tick.reconciled)} sessions={len(result.tick.sessions)} "
            f"pull_requests={len(result.tick.pull_requests)} dispatch={cycle}"
        )
    lines = [f"PR #{item.pr_number}: {item.kind}" for item in result.evaluations]
    lines.extend(f"PR #{item.pr_number}: {item.kind}" for item in result.reconciliations)
    return "\n".join(lines) or trigger.kind


def _build_github(config: AppConfig) -> GitHubGateway:
    return GitHubGateway(
        config.repo.owner,
        config.repo.name,
        timeout_seconds=float(config.runtime.github_timeout_seconds),
    )


def _env_path(name: str) -> Path | None:
    value = os.environ.get(name)
    return Path(value) if value else None


def _pr_suffix(pr_number: int | None) -> str:
    return f" (PR #{pr_number})" if pr_number is not None else ""


def _failing_suffix(failing: tuple[str, ...]) -> str:
    return f" failing={','.join(failing)}" if failing else ""
