"""File-pattern conflict detection between tickets.

Conservative by construction: two patterns are treated as overlapping
whenever the literal text before their first ``*`` could reach the same
path. A false positive only delays a ticket; a false negative would let two
agents write the same file.
"""

import logging

from agentfactory.kanban.models import Ticket
from agentfactory.kanban.status import TicketState

logger = logging.getLogger(__name__)

# Patterns that claim the whole repository
TOO_BROAD = {"*", "**", "**/*", "/", ".", "./"}


def _literal_prefix(pattern: str) -> str:
    """Text before the first glob star."""
    return pattern.split("*", 1)[0]


def patterns_overlap(a: str, b: str) -> bool:
    """Whether two file patterns may touch the same path.

    Examples:
        >>> patterns_overlap("cmd/init.go", "cmd/*.go")
        True
        >>> patterns_overlap("internal/auth/", "internal/db/")
        False
    """
    if a == b:
        return True
    if "*" not in a and "*" not in b:
        return False
    prefix_a = _literal_prefix(a)
    prefix_b = _literal_prefix(b)
    return a.startswith(prefix_b) or b.startswith(prefix_a)


def files_overlap(a: list[str], b: list[str]) -> bool:
    """Whether any pattern in ``a`` overlaps any pattern in ``b``."""
    return any(patterns_overlap(p, q) for p in a for q in b)


def can_run_in_parallel(t1: Ticket, t2: Ticket) -> bool:
    """Whether two tickets may be developed at the same time.

    Requires disjoint file patterns and no dependency in either direction.
    """
    if t2.id in t1.dependencies or t1.id in t2.dependencies:
        return False
    return not files_overlap(t1.files, t2.files)


def conflicting_tickets(ticket: Ticket, tickets: list[Ticket]) -> list[Ticket]:
    """Tickets currently in development whose files overlap ``ticket``'s."""
    return [
        other for other in tickets
        if other.id != ticket.id
        and other.status == TicketState.IN_DEV.value
        and files_overlap(ticket.files, other.files)
    ]


def conflict_matrix(tickets: list[Ticket]) -> dict[str, list[str]]:
    """Map each ticket id to the ids it cannot run alongside."""
    matrix: dict[str, list[str]] = {t.id: [] for t in tickets}
    for i, a in enumerate(tickets):
        for b in tickets[i + 1:]:
            if not can_run_in_parallel(a, b):
                matrix[a.id].append(b.id)
                matrix[b.id].append(a.id)
    return matrix


def suggest_parallel_groups(tickets: list[Ticket]) -> list[list[Ticket]]:
    """Greedily pack tickets into groups that can all run together.

    Each ticket goes into the first group where it conflicts with nobody.
    """
    groups: list[list[Ticket]] = []
    for ticket in tickets:
        for group in groups:
            if all(can_run_in_parallel(ticket, member) for member in group):
                group.append(ticket)
                break
        else:
            groups.append([ticket])
    return groups


def validate_ticket_files(files: list[str]) -> list[str]:
    """Return warnings for patterns that defeat conflict detection."""
    warnings = []
    for pattern in files:
        if pattern.strip() in TOO_BROAD:
            warnings.append(f"Pattern '{pattern}' matches the whole repository")
        elif pattern.startswith("/"):
            warnings.append(f"Pattern '{pattern}' is absolute; use a repository-relative path")
        elif ".." in pattern.split("/"):
            warnings.append(f"Pattern '{pattern}' escapes the repository")
        elif pattern.startswith("*"):
            warnings.append(f"Pattern '{pattern}' has no literal prefix and conflicts with everything")
    return warnings
