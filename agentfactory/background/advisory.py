"""Advisory reconcilers. They read the board and log; they never change it."""

import logging

from agentfactory.background.manager import BackgroundAgent
from agentfactory.kanban.stats import blocked_reason, format_stats, system_health
from agentfactory.kanban.status import TicketState
from agentfactory.lib.constants import BLOCKING_SEVERITIES

logger = logging.getLogger(__name__)


class SecurityReconciler(BackgroundAgent):
    """Summarises open critical and high severity bugs."""

    agent_type = "security"
    period = 120.0

    def run_once(self) -> None:
        self.set_activity("Scanning open bugs")
        flagged = 0
        for ticket in self.store.list_tickets():
            bugs = ticket.open_bugs(BLOCKING_SEVERITIES)
            if bugs:
                flagged += 1
                logger.warning(
                    f"[SECURITY] {ticket.id} ({ticket.status}) has {len(bugs)} open "
                    f"critical/high bug(s): " + "; ".join(b.title or b.id for b in bugs)
                )
        if not flagged:
            logger.debug("[SECURITY] No open critical/high bugs")


class GathererReconciler(BackgroundAgent):
    """Logs board statistics, health and why blocked tickets are stuck."""

    agent_type = "gatherer"
    period = 300.0

    def run_once(self) -> None:
        self.set_activity("Gathering board statistics")
        stats = self.store.stats()
        logger.info(f"[GATHER] {format_stats(stats)} | health: {system_health(self.store).status}")
        for ticket in self.store.tickets_by_status(TicketState.BLOCKED.value):
            logger.info(f"[GATHER] {ticket.id} blocked: {blocked_reason(ticket, self.store)}")
