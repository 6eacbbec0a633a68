"""
Shared fixtures: a controllable clock, a temp workflow store, recording
collaborator fakes and a state-machine factory.
"""

import pytest

from cancellations.engine.machine import EngineSettings, WorkflowStateMachine
from cancellations.engine.store import WorkflowStore
from cancellations.strategies import FulfillmentStrategy, get_strategy

from fakes import FakeClock, FakeCommerce, RecordingDispatcher, RecordingRefunds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    return WorkflowStore(tmp_path / "cancellations.db", clock=clock)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def refunds():
    return RecordingRefunds()


@pytest.fixture
def commerce():
    return FakeCommerce()


@pytest.fixture
def build_machine(store, dispatcher, refunds, commerce, clock):
    """Factory: build_machine(ScriptedStrategy(...), ...) overrides strategies by method."""

    def _build(*strategies: FulfillmentStrategy, **settings) -> WorkflowStateMachine:
        scripted = {s.method: s for s in strategies}

        def resolver(method):
            return scripted.get(method) or get_strategy(method)

        return WorkflowStateMachine(
            store,
            dispatcher=dispatcher,
            refunds=refunds,
            commerce=commerce,
            strategy_resolver=resolver,
            clock=clock,
            settings=EngineSettings(**settings),
            owner_id="test-runner",
        )

    return _build


@pytest.fixture
def machine(build_machine):
    return build_machine()
