"""Ticket status values.

Statuses are stored as plain strings. The refining round family is one tag
carrying a round number: ``refining_round_3`` splits into
``("refining_round", 3)``.
"""

from enum import Enum


class TicketState(Enum):
    """Status tags a ticket can be in."""

    BACKLOG = "backlog"
    APPROVED = "approved"

    # Collaboration
    REFINING_ROUND = "refining_round"
    NEEDS_EXPERT = "needs_expert"
    AWAITING_USER = "awaiting_user"
    PRD_COMPLETE = "prd_complete"
    BREAKING_DOWN = "breaking_down"

    # Delivery
    READY = "ready"
    IN_DEV = "in_dev"
    IN_QA = "in_qa"
    IN_UX = "in_ux"
    IN_SEC = "in_sec"
    PM_REVIEW = "pm_review"

    DONE = "done"
    BLOCKED = "blocked"


ROUND_PREFIX = TicketState.REFINING_ROUND.value + "_"

# Tickets being actively worked by a development or review agent
ACTIVE_WORK_STATES = (
    TicketState.IN_DEV.value,
    TicketState.IN_QA.value,
    TicketState.IN_UX.value,
    TicketState.IN_SEC.value,
)


def refining_round(n: int) -> str:
    """Status string for collaboration round ``n`` (1-based)."""
    if n < 1:
        raise ValueError(f"Round number must be >= 1, got {n}")
    return f"{ROUND_PREFIX}{n}"


def split_status(status: str) -> tuple[str, int]:
    """Split a status string into (tag, round).

    Round is 0 for every tag other than refining_round.

    Raises:
        ValueError: If the status is not a known tag or round number is invalid
    """
    if status.startswith(ROUND_PREFIX):
        suffix = status[len(ROUND_PREFIX):]
        if not suffix.isdigit() or int(suffix) < 1:
            raise ValueError(f"Invalid refining round status: {status}")
        return TicketState.REFINING_ROUND.value, int(suffix)
    TicketState(status)
    return status, 0


def round_of(status: str) -> int | None:
    """Round number for a refining status, None for anything else."""
    if not status.startswith(ROUND_PREFIX):
        return None
    try:
        return split_status(status)[1]
    except ValueError:
        return None


def is_refining(status: str) -> bool:
    return round_of(status) is not None
