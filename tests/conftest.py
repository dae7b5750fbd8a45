"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from mission_control.scheduler.briefing import BriefingBuilder
from mission_control.scheduler.broadcaster import EventBroadcaster
from mission_control.scheduler.models import AgentCreate, TaskCreate, TaskView
from mission_control.scheduler.repository import WorkStore
from mission_control.scheduler.retry import RetryPolicy
from mission_control.scheduler.tokens import CapabilityIssuer
from tests.fakes import FakeGateway


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[WorkStore]:
    work_store = WorkStore(tmp_path / "mission-control.db")
    work_store.init_schema()
    yield work_store
    work_store.close()


@pytest.fixture()
def broadcaster() -> Iterator[EventBroadcaster]:
    hub = EventBroadcaster(inbox_size=256, subscriber_buffer=64, publish_timeout_seconds=0.5)
    hub.start()
    yield hub
    hub.stop()


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def capabilities(store: WorkStore) -> CapabilityIssuer:
    return CapabilityIssuer(store)


@pytest.fixture()
def briefings() -> BriefingBuilder:
    return BriefingBuilder("http://127.0.0.1:8080")


@pytest.fixture()
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=3, base_seconds=60, max_seconds=1_800)


@pytest.fixture()
def make_task(store: WorkStore) -> Callable[..., TaskView]:
    """Create a task, registering its agent first when one is given."""

    def _make(title: str = "Ship feature", **fields: object) -> TaskView:
        agent_id = fields.get("agent_id")
        if isinstance(agent_id, str) and store.get_agent(agent_id) is None:
            store.add_agent(AgentCreate(agent_id=agent_id))
        return store.create_task(TaskCreate(title=title, **fields))

    return _make
