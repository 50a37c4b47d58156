from unittest.mock import patch

import pytest
from fakes import FakeWorkspace, ScriptedRunner

from agentfactory.kanban.store import BoardStore
from agentfactory.lib.config import FactoryConfig
from agentfactory.workflow.engine import Orchestrator


@pytest.fixture(autouse=True)
def no_desktop_notifications():
    with patch("agentfactory.notifications.notify"):
        yield


@pytest.fixture
def store(tmp_path):
    board = BoardStore(tmp_path / "board.json")
    board.load()
    return board


@pytest.fixture
def workspace(tmp_path):
    return FakeWorkspace(tmp_path / "worktrees")


@pytest.fixture
def runner():
    return ScriptedRunner()


@pytest.fixture
def make_orch(store, workspace, runner):
    """Build orchestrators over the shared store with config overrides."""
    built = []

    def make(**overrides):
        orch = Orchestrator(store, workspace, runner, config=FactoryConfig(**overrides), max_workers=8)
        built.append(orch)
        return orch

    yield make
    runner.release()
    for orch in built:
        orch.dispatcher.shutdown(5)


@pytest.fixture
def orch(make_orch):
    return make_orch()
