"""
Board statistics and health summaries for people watching the factory.
"""

from dataclasses import dataclass

from agentfactory.kanban.models import Ticket
from agentfactory.kanban.status import TicketState, round_of
from agentfactory.lib.constants import BLOCKING_SEVERITIES

# Statuses shown first in summaries, in pipeline order
STATUS_ORDER = [s.value for s in TicketState]

ACTIVE_STATES = (
    TicketState.IN_DEV.value,
    TicketState.IN_QA.value,
    TicketState.IN_UX.value,
    TicketState.IN_SEC.value,
    TicketState.PM_REVIEW.value,
)


def _sort_key(status: str) -> tuple[int, int]:
    n = round_of(status)
    if n is not None:
        return STATUS_ORDER.index(TicketState.REFINING_ROUND.value), n
    if status in STATUS_ORDER:
        return STATUS_ORDER.index(status), 0
    return len(STATUS_ORDER), 0


def format_stats(stats: dict[str, int]) -> str:
    """One-line summary, e.g. ``3 tickets: ready=2 in_dev=1``."""
    total = sum(stats.values())
    if not total:
        return "0 tickets"
    parts = [f"{status}={stats[status]}" for status in sorted(stats, key=_sort_key) if stats[status]]
    return f"{total} tickets: " + " ".join(parts)


def blocked_reason(ticket: Ticket, store) -> str:
    """Why a blocked ticket is stuck, for the status view."""
    if ticket.status != TicketState.BLOCKED.value:
        return ""

    for severity in BLOCKING_SEVERITIES:
        count = len(ticket.open_bugs((severity,)))
        if count:
            return f"{count} open {severity} bug(s)"

    for dep in ticket.dependencies:
        other = store.get_ticket(dep) or store.ticket_by_title(dep)
        if other is None:
            return f"Dependency {dep} not found"
        if other.status != TicketState.DONE.value:
            return f"Waiting on: {other.title} ({other.status})"

    for entry in reversed(ticket.history):
        if entry.status == TicketState.BLOCKED.value and entry.note:
            note = entry.note
            return note if len(note) <= 80 else note[:77] + "..."
    return "Blocked (reason not recorded)"


@dataclass
class SystemHealth:
    status: str          # stable, accumulating, stalled
    message: str
    active: int = 0
    blocked: int = 0


def system_health(store) -> SystemHealth:
    """Classify the board by how much of the in-flight work is blocked."""
    stats = store.stats()
    active = sum(stats.get(s, 0) for s in ACTIVE_STATES)
    blocked = stats.get(TicketState.BLOCKED.value, 0)

    if active + blocked == 0:
        return SystemHealth("stable", "No active work in progress")
    if active == 0:
        return SystemHealth("stalled", "All work is blocked - intervention may be needed", active, blocked)
    if blocked / (active + blocked) > 0.5:
        return SystemHealth("accumulating", f"{blocked} blocked vs {active} active - blockers piling up",
                            active, blocked)
    return SystemHealth("stable", f"{active} active, {blocked} blocked", active, blocked)
