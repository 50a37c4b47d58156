"""
Shared context for the lifecycle stages.

``FactoryContext`` bundles the collaborators every stage needs and owns the
one way agent runs are started: register the run in the store (through the
ledger), then hand the invocation to the dispatcher. The run is completed
only after its result handler has finished, so anything the handler
registers is visible before the run stops counting as active.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from agentfactory.agents.runner import AgentResult, AgentRunner, PromptData, Role
from agentfactory.git.worktree import WorkspaceManager
from agentfactory.kanban.models import AgentRun, Ticket
from agentfactory.lib.config import FactoryConfig
from agentfactory.lib.errors import Cancelled, TransientAgent
from agentfactory.runner.dispatch import Dispatcher
from agentfactory.runner.ledger import ActiveRunLedger

logger = logging.getLogger(__name__)

# Returns an error text when the output was unusable, None when it was handled
ResultHandler = Callable[[AgentResult], "str | None"]


class Metrics:
    """Orchestrator counters, safe to bump from agent threads.

    Token usage reported by agents is summed per usage key (input_tokens,
    output_tokens, cache reads...) under ``tokens`` in the snapshot.
    """

    COUNTERS = ("cycles_run", "agents_spawned", "agents_succeeded", "agents_failed", "tickets_completed")

    def __init__(self):
        self._lock = threading.Lock()
        self._counts = {name: 0 for name in self.COUNTERS}
        self._tokens: dict[str, int] = {}
        self.started_at = datetime.now(timezone.utc)

    def inc(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[name] += amount

    def add_tokens(self, stats: dict[str, int]) -> None:
        with self._lock:
            for key, value in stats.items():
                self._tokens[key] = self._tokens.get(key, 0) + value

    def snapshot(self) -> dict:
        with self._lock:
            data = dict(self._counts)
            data["tokens"] = dict(self._tokens)
        data["started_at"] = self.started_at.isoformat()
        data["runtime_seconds"] = (datetime.now(timezone.utc) - self.started_at).total_seconds()
        return data


@dataclass
class FactoryContext:
    """Collaborators shared by every stage of a tick."""
    store: object
    runner: AgentRunner
    workspace: WorkspaceManager
    ledger: ActiveRunLedger
    dispatcher: Dispatcher
    config: FactoryConfig = field(default_factory=FactoryConfig)
    metrics: Metrics = field(default_factory=Metrics)

    def new_run_id(self, ticket_id: str, role: str) -> str:
        """``{ticket}-{role}-{unix}``, suffixed when that id is taken."""
        base = f"{ticket_id}-{role}-{int(time.time())}"
        run_id, n = base, 1
        while self.store.get_run(run_id) is not None:
            n += 1
            run_id = f"{base}-{n}"
        return run_id

    def board_stats(self) -> dict[str, int]:
        return self.store.stats()

    def prompt_for(self, ticket: Ticket, **kwargs) -> PromptData:
        return PromptData(ticket=ticket.to_dict(), board_stats=self.board_stats(), **kwargs)

    def start_run(self, run: AgentRun, role: Role, prompt_data: PromptData,
                  on_result: ResultHandler, workspace_path: str = "") -> bool:
        """Register ``run`` and dispatch it. False if the role is already running."""
        if not self.ledger.register(run):
            return False
        self.submit_run(run, role, prompt_data, on_result, workspace_path)
        return True

    def submit_run(self, run: AgentRun, role: Role, prompt_data: PromptData,
                   on_result: ResultHandler, workspace_path: str = "") -> None:
        """Dispatch a run that is already registered."""
        self.metrics.inc("agents_spawned")
        logger.info(f"[AGENT] Dispatching {run.agent} for {run.ticket_id} ({run.id})")
        future = self.dispatcher.submit(run.id, self._execute, run, role, prompt_data, on_result, workspace_path)
        if future is None:
            self.store.complete_run(run.id, "failed", error="dispatcher shut down")

    def _execute(self, run: AgentRun, role: Role, prompt_data: PromptData,
                 on_result: ResultHandler, workspace_path: str) -> None:
        try:
            result = self.runner.dispatch(
                role, prompt_data, workspace_path,
                cancel=self.dispatcher.cancel,
                timeout=self.config.agent_timeout_seconds,
            )
        except Cancelled:
            logger.info(f"[AGENT] {run.id} cancelled")
            self.store.complete_run(run.id, "failed", error="cancelled")
            self.metrics.inc("agents_failed")
            return

        self.metrics.add_tokens(result.token_stats)
        if not result.success:
            note = "timeout" if result.error.startswith("timeout") else result.error
            logger.warning(f"[AGENT] {TransientAgent(run.agent, note, run.ticket_id)}")

        try:
            handler_error = on_result(result)
        except Exception as e:
            logger.exception(f"[AGENT] Handling output of {run.id} failed")
            handler_error = f"result handler error: {e}"

        if result.success and not handler_error:
            self.store.complete_run(run.id, "success", output=result.output)
            self.metrics.inc("agents_succeeded")
        else:
            self.store.complete_run(run.id, "failed", output=result.output, error=handler_error or result.error)
            self.metrics.inc("agents_failed")


def consecutive_failures(store, ticket_id: str, role: str, include_current: bool = True) -> int:
    """Trailing failed runs of ``role`` on a ticket.

    With ``include_current`` the still-running run being handled counts as
    one more failure.
    """
    count = 0
    for run in reversed(store.runs_for_ticket(ticket_id)):
        if run.agent != role or run.status == "running":
            continue
        if run.status != "failed":
            break
        count += 1
    return count + (1 if include_current else 0)
