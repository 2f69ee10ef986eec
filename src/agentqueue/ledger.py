"""Machine-readable state embedded in task and pull-request comments.

The orchestrator keeps no database. Two kinds of hidden HTML markers make the
comment stream double as its record:

* session markers carry a JSON rendering of a :class:`Session`; the last one on
  a task is that task's current session.
* action tokens are content-addressed hashes of one-time notices, so a notice
  is never posted twice for the same cause.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime, timezone
import hashlib
import json
import re
from typing import Literal, Protocol, cast

from agentqueue.models import Session, SessionStatus, TaskComment


ActionKind = Literal[
    "queued",
    "credentials",
    "agent_error",
    "ci_failure",
    "conflict",
    "escalation",
    "session_failure",
]

ACTION_TOKEN_PATTERN = re.compile(r"<!--\s*agentqueue-action:([a-z_]+):([0-9a-f]{64})\s*-->")
SESSION_MARKER_PATTERN = re.compile(r"<!--\s*agentqueue-session:(\{.*?\})\s*-->")
_SESSION_STATUSES: frozenset[str] = frozenset({"pending", "running", "completed", "failed"})


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(text: str) -> datetime:
    normalized = text.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CommentSource(Protocol):
    def list_issue_comments(self, issue_number: int) -> list[TaskComment]: ...


def compute_action_token(kind: ActionKind, *parts: object) -> str:
    payload = ":".join([kind, *(str(part) for part in parts)])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def append_action_token(*, body: str, kind: ActionKind, token: str) -> str:
    marker = f"<!-- agentqueue-action:{kind}:{token} -->"
    stripped = body.strip()
    if marker in stripped:
        return stripped
    if not stripped:
        return marker
    return f"{stripped}\n\n{marker}"


def extract_action_tokens(text: str) -> tuple[tuple[str, str], ...]:
    return tuple((match.group(1), match.group(2)) for match in ACTION_TOKEN_PATTERN.finditer(text))


def render_session_marker(session: Session) -> str:
    payload: dict[str, object] = {
        "task": session.task_number,
        "session_id": session.session_id,
        "status": session.status,
        "created_at": session.created_at,
    }
    if session.pr_number is not None:
        payload["pr"] = session.pr_number
    return f"<!-- agentqueue-session:{json.dumps(payload, sort_keys=True)} -->"


def append_session_marker(*, body: str, session: Session) -> str:
    return f"{body.strip()}\n\n{render_session_marker(session)}"


def parse_session_markers(text: str) -> tuple[Session, ...]:
    sessions: list[Session] = []
    for match in SESSION_MARKER_PATTERN.finditer(text):
        try:
            payload = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        session = _session_from_payload(payload)
        if session is not None:
            sessions.append(session)
    return tuple(sessions)


def latest_session(comments: Sequence[TaskComment], *, task_number: int) -> Session | None:
    current: Session | None = None
    for comment in comments:
        for session in parse_session_markers(comment.body):
            if session.task_number != task_number:
                continue
            if current is not None and current.session_id == session.session_id:
                # Later transitions of the same session keep the original start time.
                current = replace(session, created_at=current.created_at)
            else:
                current = session
    return current


class SessionLedger:
    """Reads sessions and one-time notices back out of a comment stream."""

    def __init__(self, comments: CommentSource) -> None:
        self._comments = comments

    def current_session(self, task_number: int) -> Session | None:
        comments = self._comments.list_issue_comments(task_number)
        return latest_session(comments, task_number=task_number)

    def active_session(self, task_number: int) -> Session | None:
        session = self.current_session(task_number)
        if session is None or session.is_terminal:
            return None
        return session

    def has_action(self, number: int, *, kind: ActionKind, token: str) -> bool:
        return (kind, token) in self._tokens(number)

    def count_actions(self, number: int, *, kind: ActionKind) -> int:
        return len({token for token_kind, token in self._tokens(number) if token_kind == kind})

    def _tokens(self, number: int) -> set[tuple[str, str]]:
        tokens: set[tuple[str, str]] = set()
        for comment in self._comments.list_issue_comments(number):
            tokens.update(extract_action_tokens(comment.body))
        return tokens


def _session_from_payload(payload: object) -> Session | None:
    if not isinstance(payload, dict):
        return None
    data = cast(dict[str, object], payload)
    task_number = data.get("task")
    session_id = data.get("session_id")
    status = data.get("status")
    created_at = data.get("created_at")
    pr_number = data.get("pr")
    if not isinstance(task_number, int) or isinstance(task_number, bool):
        return None
    if not isinstance(session_id, str) or not session_id:
        return None
    if not isinstance(status, str) or status not in _SESSION_STATUSES:
        return None
    if not isinstance(created_at, str):
        return None
    if pr_number is not None and (not isinstance(pr_number, int) or isinstance(pr_number, bool)):
        return None
    return Session(
        task_number=task_number,
        session_id=session_id,
        status=cast(SessionStatus, status),
        created_at=created_at,
        pr_number=pr_number,
    )
