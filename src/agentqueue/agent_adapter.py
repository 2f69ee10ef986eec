from __future__ import annotations

from abc import ABC, abstractmethod

from agentqueue.models import AgentSessionSnapshot


class AgentError(RuntimeError):
    """Base class for coding-agent API failures."""


class AgentCredentialsError(AgentError):
    """The agent API cannot be called because credentials are not configured."""


class AgentUnavailableError(AgentError):
    """Transient agent API failure; caller should retry on the next trigger."""


class AgentAdapter(ABC):
    name: str = "agent"

    @abstractmethod
    def has_credentials(self) -> bool:
        """Return whether the adapter can authenticate against the agent API."""

    @abstractmethod
    def create_session(self, *, prompt: str, title: str, starting_branch: str) -> str:
        """Start a coding session and return its opaque session id."""

    @abstractmethod
    def get_session(self, session_id: str) -> AgentSessionSnapshot:
        """Return the current status of a previously created session."""
