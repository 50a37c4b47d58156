"""Active-run ledger.

An in-memory index of running agent runs, rebuilt from the store at the
start of every tick. Registration goes through the ledger so that at most
one run per (ticket, role) is ever running; PRD experts are exempt because
their role tags are already per expert.
"""

import logging
import threading

from agentfactory.kanban.models import AgentRun

logger = logging.getLogger(__name__)

EXPERT_ROLE_PREFIX = "prd-"
DEV_ROLE_PREFIX = "dev_"


def is_dev_role(role: str) -> bool:
    return role.startswith(DEV_ROLE_PREFIX)


class ActiveRunLedger:
    """Running runs per ticket, per role and per development class."""

    def __init__(self, store):
        self.store = store
        self._lock = threading.Lock()
        self._by_ticket: dict[str, list[AgentRun]] = {}

    def refresh(self) -> None:
        """Rebuild the view from the store's running runs."""
        by_ticket: dict[str, list[AgentRun]] = {}
        for run in self.store.active_runs():
            by_ticket.setdefault(run.ticket_id, []).append(run)
        with self._lock:
            self._by_ticket = by_ticket

    def register(self, run: AgentRun) -> bool:
        """Record a new running run in the store.

        Returns False (and records nothing) if the ticket already has a
        running run for the same role.
        """
        with self._lock:
            if not run.agent.startswith(EXPERT_ROLE_PREFIX):
                # Consult the store too: a completion may have landed since refresh
                if self.store.is_agent_running(run.ticket_id, run.agent):
                    logger.debug(f"[LEDGER] {run.agent} already running on {run.ticket_id}")
                    return False
            self.store.add_run(run)
            self._by_ticket.setdefault(run.ticket_id, []).append(run)
        logger.debug(f"[LEDGER] Registered {run.id}")
        return True

    def runs_for(self, ticket_id: str) -> list[AgentRun]:
        with self._lock:
            return list(self._by_ticket.get(ticket_id, []))

    def has_running(self, ticket_id: str) -> bool:
        return bool(self.runs_for(ticket_id))

    def has_role(self, ticket_id: str, role: str) -> bool:
        return any(r.agent == role for r in self.runs_for(ticket_id))

    def has_role_prefix(self, ticket_id: str, prefix: str) -> bool:
        return any(r.agent.startswith(prefix) for r in self.runs_for(ticket_id))

    def dev_tickets(self) -> set[str]:
        """Tickets with a running development-class run."""
        with self._lock:
            return {
                ticket_id for ticket_id, runs in self._by_ticket.items()
                if any(is_dev_role(r.agent) for r in runs)
            }

    def dev_count(self) -> int:
        with self._lock:
            return sum(1 for runs in self._by_ticket.values() for r in runs if is_dev_role(r.agent))
