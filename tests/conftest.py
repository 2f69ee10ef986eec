from __future__ import annotations

from pathlib import Path

import pytest

from agentqueue.config import AppConfig
from agentqueue.observability import configure_logging

from fakes import FakeAgent, FakeTaskStore, make_config


@pytest.fixture(autouse=True)
def _quiet_logging() -> None:
    configure_logging(False)


@pytest.fixture
def store() -> FakeTaskStore:
    return FakeTaskStore()


@pytest.fixture
def agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return make_config(tmp_path / "state")
