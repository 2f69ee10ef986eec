from __future__ import annotations

import base64
from dataclasses import dataclass, field
import json
import logging
from typing import Literal, cast
from urllib.parse import quote, urlencode

from agentqueue.models import (
    CheckOutcome,
    CheckResult,
    CheckRollup,
    PullRequest,
    PullRequestSnapshot,
    PullRequestState,
    Task,
    TaskComment,
)
from agentqueue.observability import log_event
from agentqueue.shell import run


LOGGER = logging.getLogger("agentqueue.github_gateway")
_PAGE_SIZE = 100
_GREEN_CONCLUSIONS = frozenset({"success", "neutral", "skipped"})
_STATUS_OUTCOMES: dict[str, CheckOutcome] = {
    "success": "pass",
    "pending": "pending",
    "failure": "fail",
    "error": "fail",
}
_SUMMARY_LIMIT = 300


class GitHubPollingError(RuntimeError):
    """Recoverable GitHub read failure; caller should retry on the next trigger."""


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    timeout_seconds: float = 10.0
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    # Tasks

    def list_open_issues_with_label(self, label: str) -> list[Task]:
        tasks: list[Task] = []
        for item_obj in self._paginate(
            f"/repos/{self.owner}/{self.name}/issues",
            {"state": "open", "labels": label, "sort": "created", "direction": "asc"},
        ):
            # GitHub returns pull requests in the issues endpoint; ignore those.
            if "pull_request" in item_obj:
                continue
            tasks.append(_parse_task(item_obj))
        log_event(LOGGER, "github_read", endpoint="issues", label=label, count=len(tasks))
        return tasks

    def get_issue(self, issue_number: int) -> Task:
        payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/issues/{issue_number}")
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for issue")
        task = _parse_task(payload_obj)
        log_event(LOGGER, "github_read", endpoint="issue", issue_number=task.number)
        return task

    def list_issue_comments(self, issue_number: int) -> list[TaskComment]:
        comments: list[TaskComment] = []
        for item_obj in self._paginate(
            f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments", {}
        ):
            user_obj = _as_object_dict(item_obj.get("user"))
            comments.append(
                TaskComment(
                    comment_id=_as_int(item_obj.get("id"), field="id"),
                    body=_as_string(item_obj.get("body")),
                    user_login=_as_string(user_obj.get("login") if user_obj else None),
                    html_url=_as_string(item_obj.get("html_url")),
                    created_at=_as_string(item_obj.get("created_at")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            issue_number=issue_number,
            count=len(comments),
        )
        return comments

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", issue_number=issue_number)

    def add_labels(self, issue_number: int, labels: tuple[str, ...]) -> None:
        if not labels:
            return
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels"
        self._api_json("POST", path, payload={"labels": list(labels)})
        log_event(LOGGER, "github_labels_added", issue_number=issue_number, labels=",".join(labels))

    def remove_label(self, issue_number: int, label: str) -> None:
        path = (
            f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels/{quote(label, safe='')}"
        )
        self._api_json("DELETE", path)
        log_event(LOGGER, "github_label_removed", issue_number=issue_number, label=label)

    def close_issue(self, issue_number: int) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}"
        self._api_json("PATCH", path, payload={"state": "closed", "state_reason": "completed"})
        log_event(LOGGER, "github_issue_closed", issue_number=issue_number)

    # Pull requests

    def list_open_pull_requests(self) -> list[PullRequestSnapshot]:
        pulls = [
            _parse_pull_request(item_obj)
            for item_obj in self._paginate(
                f"/repos/{self.owner}/{self.name}/pulls", {"state": "open"}
            )
        ]
        log_event(LOGGER, "github_read", endpoint="pulls", state="open", count=len(pulls))
        return pulls

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/pulls/{pr_number}")
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for pull request")
        snapshot = _parse_pull_request(payload_obj)
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=snapshot.number,
            state=snapshot.state,
            mergeable=snapshot.mergeable,
        )
        return snapshot

    def find_pull_request_by_head(
        self,
        *,
        head: str,
        base: str | None = None,
        state: Literal["open", "all"] = "open",
    ) -> PullRequest | None:
        if state not in {"open", "all"}:
            raise ValueError("state must be 'open' or 'all'")
        query_items: dict[str, str] = {
            "state": state,
            "head": f"{self.owner}:{head}",
            "per_page": str(_PAGE_SIZE),
        }
        if base is not None:
            query_items["base"] = base
        path = f"/repos/{self.owner}/{self.name}/pulls?{urlencode(query_items)}"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected GitHub response: expected list for pull request lookup")

        candidates: list[PullRequest] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            number = _as_int(item_obj.get("number"), field="number")
            html_url = _as_string(item_obj.get("html_url"))
            candidates.append(PullRequest(number=number, html_url=html_url))

        selected = max(candidates, key=lambda pr: pr.number) if candidates else None
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_lookup_by_head",
            head=head,
            base=base,
            state=state,
            found=selected is not None,
            pr_number=selected.number if selected else None,
        )
        return selected

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        path = f"/repos/{self.owner}/{self.name}/pulls"
        try:
            payload = self._api_json(
                "POST",
                path,
                payload={"title": title, "head": head, "base": base, "body": body},
            )
            payload_obj = _as_object_dict(payload)
            if payload_obj is None:
                raise RuntimeError("Unexpected GitHub response: expected object for PR")
            number = _as_int(payload_obj.get("number"), field="number")
            html_url = _as_string(payload_obj.get("html_url"))
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=self.full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.full_name,
            pr_number=number,
            pr_url=html_url,
            base=base,
            head=head,
        )
        return PullRequest(number=number, html_url=html_url)

    def update_pull_request_body(self, pr_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        self._api_json("PATCH", path, payload={"body": body})
        log_event(LOGGER, "github_pr_body_updated", pr_number=pr_number)

    def merge_pull_request(self, pr_number: int, *, head_sha: str, commit_title: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/merge"
        self._api_json(
            "PUT",
            path,
            payload={"merge_method": "squash", "sha": head_sha, "commit_title": commit_title},
        )
        log_event(LOGGER, "github_pr_merged", pr_number=pr_number, head_sha=head_sha)

    def close_pull_request(self, pr_number: int) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        self._api_json("PATCH", path, payload={"state": "closed"})
        log_event(LOGGER, "github_pr_closed", pr_number=pr_number)

    def get_check_rollup(self, head_sha: str) -> CheckRollup:
        by_name: dict[str, tuple[int, CheckResult]] = {}

        runs_payload = self._api_json(
            "GET",
            f"/repos/{self.owner}/{self.name}/commits/{head_sha}/check-runs?per_page={_PAGE_SIZE}",
        )
        runs_obj = _as_object_dict(runs_payload)
        if runs_obj is None or not isinstance(runs_obj.get("check_runs"), list):
            raise RuntimeError("Unexpected GitHub response: expected check_runs list")
        for item in cast(list[object], runs_obj["check_runs"]):
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            run_id = _as_int(item_obj.get("id"), field="id")
            result = _parse_check_run(item_obj)
            existing = by_name.get(result.name)
            if existing is None or existing[0] < run_id:
                by_name[result.name] = (run_id, result)

        status_payload = self._api_json(
            "GET", f"/repos/{self.owner}/{self.name}/commits/{head_sha}/status"
        )
        status_obj = _as_object_dict(status_payload)
        statuses = status_obj.get("statuses") if status_obj is not None else None
        if not isinstance(statuses, list):
            raise RuntimeError("Unexpected GitHub response: expected statuses list")
        for item in statuses:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            result = _parse_commit_status(item_obj)
            # check runs take precedence over legacy statuses with the same name
            if result.name not in by_name:
                by_name[result.name] = (0, result)

        rollup = CheckRollup(
            head_sha=head_sha,
            checks=tuple(by_name[name][1] for name in sorted(by_name)),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="check_rollup",
            head_sha=head_sha,
            count=len(rollup.checks),
            failing=len(rollup.failing),
            pending=rollup.pending,
        )
        return rollup

    # Repository contents

    def get_file_text(self, path: str, *, ref: str) -> tuple[str, str] | None:
        query = urlencode({"ref": ref})
        api_path = f"/repos/{self.owner}/{self.name}/contents/{quote(path)}?{query}"
        payload = self._api_json("GET", api_path, allow_not_found=True)
        if payload is None:
            return None
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for file contents")
        encoding = _as_string(payload_obj.get("encoding"))
        if encoding != "base64":
            # Files over 1 MB come back with encoding "none" and no content.
            raise ValueError(
                f"Contents of {path} are not inline (encoding={encoding or '<none>'})"
            )
        encoded = _as_string(payload_obj.get("content"))
        text = base64.b64decode(encoded).decode("utf-8")
        return text, _as_string(payload_obj.get("sha"))

    def put_file_text(
        self,
        path: str,
        *,
        text: str,
        message: str,
        branch: str,
        sha: str | None,
    ) -> None:
        payload: dict[str, object] = {
            "message": message,
            "content": base64.b64encode(text.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if sha is not None:
            payload["sha"] = sha
        self._api_json("PUT", f"/repos/{self.owner}/{self.name}/contents/{quote(path)}", payload)
        log_event(LOGGER, "github_file_updated", path=path, branch=branch)

    # Transport

    def _paginate(self, path: str, query: dict[str, str]) -> list[dict[str, object]]:
        items: list[dict[str, object]] = []
        page = 1
        while True:
            query_items = dict(query)
            query_items["per_page"] = str(_PAGE_SIZE)
            query_items["page"] = str(page)
            payload = self._api_json("GET", f"{path}?{urlencode(query_items)}")
            if not isinstance(payload, list):
                raise RuntimeError(f"Unexpected GitHub response: expected list for {path}")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    items.append(item_obj)
            if len(payload) < _PAGE_SIZE:
                return items
            page += 1

    def _api_json(
        self,
        method: str,
        path: str,
        payload: dict[str, object] | None = None,
        *,
        allow_not_found: bool = False,
    ) -> object:
        method_upper = method.upper()
        if method_upper == "GET":
            return self._api_get(path, allow_not_found=allow_not_found)

        cmd = ["gh", "api", "--method", method_upper, path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload, timeout_seconds=self.timeout_seconds)
        if not raw.strip():
            return None
        return json.loads(raw)

    def _api_get(self, path: str, *, allow_not_found: bool) -> object:
        cmd = ["gh", "api", "--method", "GET"]
        etag = self._etags_by_path.get(path)
        if etag:
            cmd.extend(["--header", f"If-None-Match: {etag}"])
        cmd.extend(["--include", path])

        raw = ""
        try:
            raw = run(cmd, check=False, timeout_seconds=self.timeout_seconds)
            status_code, headers, body = _parse_http_response(raw)

            if status_code == 304:
                cached_payload = self._cached_get_payload_by_path.get(path)
                if cached_payload is None:
                    raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
                return cached_payload

            if status_code == 404 and allow_not_found:
                return None

            if status_code < 200 or status_code >= 300:
                message = body.strip() or "<empty>"
                raise RuntimeError(
                    f"GitHub API request failed with status {status_code}: {message}"
                )

            payload_obj = json.loads(body)
            etag = headers.get("etag")
            if etag:
                self._etags_by_path[path] = etag
                self._cached_get_payload_by_path[path] = payload_obj
            return payload_obj
        except Exception as exc:
            log_event(
                LOGGER,
                "github_poll_get_failed",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise GitHubPollingError(f"GitHub polling GET failed for path {path}: {exc}") from exc


def _parse_task(item_obj: dict[str, object]) -> Task:
    state_raw = _as_string(item_obj.get("state")).strip().lower()
    return Task(
        number=_as_int(item_obj.get("number"), field="number"),
        title=_as_string(item_obj.get("title")),
        body=_as_string(item_obj.get("body")),
        html_url=_as_string(item_obj.get("html_url")),
        labels=_label_names(item_obj.get("labels")),
        state="closed" if state_raw == "closed" else "open",
        created_at=_as_string(item_obj.get("created_at")),
    )


def _parse_pull_request(item_obj: dict[str, object]) -> PullRequestSnapshot:
    head = _as_object_dict(item_obj.get("head"))
    if head is None:
        raise RuntimeError("Unexpected GitHub response: missing pull request head")
    state_raw = _as_string(item_obj.get("state")).strip().lower()
    merged = item_obj.get("merged") is True or item_obj.get("merged_at") not in (None, "")
    state: PullRequestState
    if state_raw == "open":
        state = "open"
    elif merged:
        state = "merged"
    else:
        state = "closed"
    mergeable_raw = item_obj.get("mergeable")
    return PullRequestSnapshot(
        number=_as_int(item_obj.get("number"), field="number"),
        title=_as_string(item_obj.get("title")),
        body=_as_string(item_obj.get("body")),
        html_url=_as_string(item_obj.get("html_url")),
        head_ref=_as_string(head.get("ref")),
        head_sha=_as_string(head.get("sha")),
        labels=_label_names(item_obj.get("labels")),
        state=state,
        mergeable=mergeable_raw if isinstance(mergeable_raw, bool) else None,
        mergeable_state=_as_string(item_obj.get("mergeable_state")).strip().lower() or "unknown",
    )


def _parse_check_run(item_obj: dict[str, object]) -> CheckResult:
    status = _as_string(item_obj.get("status")).strip().lower()
    conclusion = _normalize_optional_lower_str(item_obj.get("conclusion"))
    outcome: CheckOutcome
    if status != "completed" or conclusion is None:
        outcome = "pending"
    elif conclusion in _GREEN_CONCLUSIONS:
        outcome = "pass"
    else:
        outcome = "fail"

    output_obj = _as_object_dict(item_obj.get("output"))
    summary_parts: list[str] = []
    if output_obj is not None:
        for key in ("title", "summary"):
            text = _as_string(output_obj.get(key)).strip()
            if text and text not in summary_parts:
                summary_parts.append(text)
    if not summary_parts and conclusion is not None:
        summary_parts.append(conclusion)
    details_url = _as_string(item_obj.get("details_url")) or _as_string(item_obj.get("html_url"))
    return CheckResult(
        name=_as_string(item_obj.get("name")).strip() or "unnamed-check",
        outcome=outcome,
        summary=_truncate(" - ".join(summary_parts)),
        details_url=details_url,
    )


def _parse_commit_status(item_obj: dict[str, object]) -> CheckResult:
    state = _as_string(item_obj.get("state")).strip().lower()
    return CheckResult(
        name=_as_string(item_obj.get("context")).strip() or "unnamed-status",
        outcome=_STATUS_OUTCOMES.get(state, "pending"),
        summary=_truncate(_as_string(item_obj.get("description")).strip() or state),
        details_url=_as_string(item_obj.get("target_url")),
    )


def _label_names(labels_obj: object) -> tuple[str, ...]:
    names: list[str] = []
    if not isinstance(labels_obj, list):
        return ()
    for entry in labels_obj:
        if isinstance(entry, str):
            names.append(entry)
            continue
        entry_obj = _as_object_dict(entry)
        if entry_obj is None:
            continue
        name = entry_obj.get("name")
        if isinstance(name, str):
            names.append(name)
    return tuple(names)


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _truncate(text: str, *, limit: int = _SUMMARY_LIMIT) -> str:
    compact = " ".join(text.split())
    if len(compact) <= limit:
        return compact
    return f"{compact[: limit - 3]}..."


def _normalize_optional_lower_str(value: object) -> str | None:
    if value is None:
        return None
    normalized = _as_string(value).strip().lower()
    return normalized or None


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")
