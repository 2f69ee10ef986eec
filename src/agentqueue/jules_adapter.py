"""Client for the Jules coding-agent REST API."""

from __future__ import annotations

import logging
import os
from typing import cast

import httpx

from agentqueue.agent_adapter import (
    AgentAdapter,
    AgentCredentialsError,
    AgentError,
    AgentUnavailableError,
)
from agentqueue.config import AgentConfig, RepoConfig
from agentqueue.models import AgentSessionSnapshot, SessionStatus
from agentqueue.observability import log_event


LOGGER = logging.getLogger("agentqueue.jules_adapter")
_CONNECT_TIMEOUT_SECONDS = 10.0
_STATE_TO_STATUS: dict[str, SessionStatus] = {
    "STATE_UNSPECIFIED": "pending",
    "QUEUED": "pending",
    "PLANNING": "running",
    "AWAITING_PLAN_APPROVAL": "running",
    "AWAITING_USER_FEEDBACK": "running",
    "IN_PROGRESS": "running",
    "PAUSED": "running",
    "COMPLETED": "completed",
    "FAILED": "failed",
}


class JulesAdapter(AgentAdapter):
    name = "jules"

    def __init__(
        self,
        config: AgentConfig,
        repo: RepoConfig,
        *,
        api_key: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config
        self._repo = repo
        self._api_key = api_key if api_key is not None else os.environ.get(config.api_key_env, "")
        self._transport = transport
        self._client: httpx.Client | None = None

    def has_credentials(self) -> bool:
        return bool(self._api_key.strip())

    def create_session(self, *, prompt: str, title: str, starting_branch: str) -> str:
        payload = {
            "prompt": prompt,
            "title": title,
            "sourceContext": {
                "source": self._config.source_for(self._repo),
                "githubRepoContext": {"startingBranch": starting_branch},
            },
            "requirePlanApproval": self._config.require_plan_approval,
        }
        body = self._request("POST", "/sessions", json_body=payload)
        session_id = _session_id_from_payload(body)
        log_event(
            LOGGER,
            "agent_session_created",
            session_id=session_id,
            starting_branch=starting_branch,
        )
        return session_id

    def get_session(self, session_id: str) -> AgentSessionSnapshot:
        body = self._request("GET", f"/sessions/{session_id}")
        state = _as_str(body.get("state")).strip().upper() or "STATE_UNSPECIFIED"
        status = _STATE_TO_STATUS.get(state)
        if status is None:
            log_event(LOGGER, "agent_state_unrecognized", session_id=session_id, state=state)
            status = "running"

        result_branch: str | None = None
        pull_request_url: str | None = None
        outputs = body.get("outputs")
        if isinstance(outputs, list):
            for output in outputs:
                if not isinstance(output, dict):
                    continue
                output_obj = cast(dict[str, object], output)
                pr_obj = output_obj.get("pullRequest")
                if isinstance(pr_obj, dict):
                    pr_dict = cast(dict[str, object], pr_obj)
                    pull_request_url = _as_optional_str(pr_dict.get("url")) or pull_request_url
                    result_branch = _as_optional_str(pr_dict.get("headRef")) or result_branch
                result_branch = _as_optional_str(output_obj.get("branch")) or result_branch

        snapshot = AgentSessionSnapshot(
            session_id=session_id,
            status=status,
            result_branch=result_branch,
            pull_request_url=pull_request_url,
            url=_as_optional_str(body.get("url")),
        )
        log_event(
            LOGGER,
            "agent_session_polled",
            session_id=session_id,
            state=state,
            status=status,
            has_branch=result_branch is not None,
            has_pull_request=pull_request_url is not None,
        )
        return snapshot

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> JulesAdapter:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self._config.api_base_url,
                timeout=httpx.Timeout(
                    float(self._config.timeout_seconds), connect=_CONNECT_TIMEOUT_SECONDS
                ),
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    def _request(
        self, method: str, path: str, *, json_body: dict[str, object] | None = None
    ) -> dict[str, object]:
        if not self.has_credentials():
            raise AgentCredentialsError(
                f"Jules API key is not configured; set the {self._config.api_key_env} "
                "environment variable"
            )
        try:
            response = self._http().request(
                method,
                path,
                json=json_body,
                headers={"X-Goog-Api-Key": self._api_key},
            )
        except httpx.TimeoutException as exc:
            log_event(LOGGER, "agent_request_timed_out", method=method, path=path)
            raise AgentUnavailableError(f"Jules API {method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            log_event(
                LOGGER,
                "agent_request_failed",
                method=method,
                path=path,
                error_type=type(exc).__name__,
            )
            raise AgentUnavailableError(f"Jules API {method} {path} failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise AgentCredentialsError(
                f"Jules API rejected credentials with status {response.status_code}"
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise AgentUnavailableError(
                f"Jules API {method} {path} returned status {response.status_code}"
            )
        if not response.is_success:
            raise AgentError(
                f"Jules API {method} {path} returned status {response.status_code}: "
                f"{response.text.strip() or '<empty>'}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise AgentError(f"Jules API {method} {path} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise AgentError(f"Jules API {method} {path} returned a non-object payload")
        return cast(dict[str, object], payload)


def _session_id_from_payload(payload: dict[str, object]) -> str:
    session_id = _as_optional_str(payload.get("id"))
    if session_id:
        return session_id
    name = _as_optional_str(payload.get("name"))
    if name and name.startswith("sessions/"):
        return name[len("sessions/") :]
    raise AgentError("Jules API response did not include a session id")


def _as_str(value: object) -> str:
    if isinstance(value, str):
        return value
    return ""


def _as_optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
