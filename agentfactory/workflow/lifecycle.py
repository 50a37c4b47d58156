"""Ticket lifecycle operations.

Every status change goes through ``transition``: the state machine validates
the move and the store records it together with a history entry, atomically
with any extra ticket changes passed in ``mutate``.
"""

import logging
from typing import Callable

from agentfactory import notifications
from agentfactory.kanban.conversations import open_thread
from agentfactory.kanban.models import HistoryEntry, Ticket
from agentfactory.kanban.status import TicketState
from agentfactory.lib.constants import SELF_HEAL_ACTOR
from agentfactory.lib.errors import FactoryError
from agentfactory.workflow.fsm import TicketFSM, TransitionRejected

logger = logging.getLogger(__name__)

BLOCKED = TicketState.BLOCKED.value
DONE = TicketState.DONE.value


class InvalidTransition(FactoryError):
    """Status change refused by the lifecycle rules."""

    def __init__(self, ticket_id: str, from_status: str, to_status: str, reason: str = ""):
        self.ticket_id = ticket_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid transition for {ticket_id}: {from_status} -> {to_status}"
            + (f" ({reason})" if reason else "")
        )


def blocked_from(ticket: Ticket) -> str:
    """Status a blocked ticket was blocked from, '' if unknown."""
    for entry in reversed(ticket.history):
        if entry.status == BLOCKED:
            return entry.from_status
    return ""


def transition(
    store,
    ticket_id: str,
    to_status: str,
    actor: str,
    note: str = "",
    expect: str | None = None,
    mutate: Callable[[Ticket], None] | None = None,
) -> Ticket:
    """
    Move a ticket to ``to_status`` and record who did it.

    Args:
        expect: Refuse unless the ticket is currently in this status
        mutate: Extra changes applied in the same store write

    Returns:
        The updated ticket

    Raises:
        InvalidTransition: If the move is not allowed
        KeyError: If the ticket doesn't exist
    """
    def apply(ticket: Ticket) -> Ticket:
        from_status = ticket.status
        if expect is not None and from_status != expect:
            raise InvalidTransition(ticket_id, from_status, to_status, f"expected {expect}")
        fsm = TicketFSM(ticket_id, from_status, previous=blocked_from(ticket))
        try:
            fsm.apply(to_status, actor=actor)
        except TransitionRejected as e:
            raise InvalidTransition(ticket_id, from_status, to_status, str(e)) from None
        if mutate is not None:
            mutate(ticket)
        ticket.status = fsm.status
        ticket.history.append(HistoryEntry(from_status=from_status, status=ticket.status, by=actor, note=note))
        return ticket

    ticket = store.mutate_ticket(ticket_id, apply)
    prior = ticket.history[-1].from_status
    logger.info(f"[STATE] {ticket_id}: {prior} -> {ticket.status} by {actor}" + (f" ({note})" if note else ""))
    return ticket


def try_transition(store, ticket_id: str, to_status: str, actor: str, note: str = "",
                   expect: str | None = None, mutate: Callable[[Ticket], None] | None = None) -> Ticket | None:
    """``transition`` that logs and returns None instead of raising."""
    try:
        return transition(store, ticket_id, to_status, actor, note, expect=expect, mutate=mutate)
    except InvalidTransition as e:
        logger.warning(f"[STATE] {e}")
        return None


def block(store, ticket_id: str, reason: str, actor: str, details: str = "",
          escalate: bool = False, mutate: Callable[[Ticket], None] | None = None) -> bool:
    """
    Block a ticket and open a blocker thread explaining why.

    Args:
        details: Extra text for the thread, e.g. manual resolution steps
        escalate: Open the thread as escalated instead of open

    Returns False if the ticket was already blocked or done.
    """
    def apply(ticket: Ticket) -> None:
        ticket.current_activity = ""
        if mutate is not None:
            mutate(ticket)

    try:
        transition(store, ticket_id, BLOCKED, actor, note=reason, mutate=apply)
    except InvalidTransition as e:
        logger.debug(f"[STATE] Not blocking: {e}")
        return False

    content = f"Ticket {ticket_id} is blocked: {reason}"
    if details:
        content += f"\n\n{details}"
    open_thread(
        store, ticket_id, "blocker", f"Blocked: {reason[:80]}", actor, content,
        message_type="blocker", status="escalated" if escalate else "open",
    )
    notifications.notify_blocked(ticket_id, reason)
    return True


def unblock(store, ticket_id: str, actor: str = "user", note: str = "") -> Ticket:
    """
    Return a blocked ticket to the state it was blocked from.

    Resolves the ticket's open blocker threads.

    Raises:
        InvalidTransition: If the ticket isn't blocked or its prior state is unknown
    """
    ticket = store.get_ticket(ticket_id)
    if ticket is None:
        raise KeyError(f"Ticket {ticket_id} not found")
    previous = blocked_from(ticket)
    if ticket.status != BLOCKED or not previous:
        raise InvalidTransition(ticket_id, ticket.status, previous or "?", "not blocked")

    def resume(t: Ticket) -> None:
        if t.collaboration is not None and t.collaboration.status == "blocked":
            t.collaboration.status = "in_progress"

    updated = transition(store, ticket_id, previous, actor, note=note or "Unblocked", expect=BLOCKED, mutate=resume)
    for conv in store.conversations_by_ticket(ticket_id):
        if conv.type == "blocker" and conv.status == "open":
            store.update_conversation_status(conv.id, "resolved")
    return updated


def self_heal(store, ticket_id: str, note: str = "No running agent, returning to ready") -> bool:
    """Hand an in_dev ticket with no running agent back to the scheduler."""
    def clear(ticket: Ticket) -> None:
        ticket.current_activity = ""
        ticket.assigned_agent = ""

    healed = try_transition(
        store, ticket_id, TicketState.READY.value, SELF_HEAL_ACTOR, note,
        expect=TicketState.IN_DEV.value, mutate=clear,
    )
    return healed is not None
