"""Ticket state machine using the transitions library.

States are status *tags*: the refining round family is one state,
``refining_round``, and the round number travels alongside it. Guards check
the number so that rounds only ever advance by one.

Usage:
    from agentfactory.workflow.fsm import TicketFSM

    fsm = TicketFSM("T-1", "refining_round_2")
    fsm.apply("refining_round_3", actor="PM")
    fsm.status  # "refining_round_3"
"""

import logging

from transitions import Machine, MachineError

from agentfactory.kanban.status import TicketState, refining_round, split_status
from agentfactory.lib.constants import SELF_HEAL_ACTOR

logger = logging.getLogger(__name__)

STATES = [s.value for s in TicketState]

_ROUND = TicketState.REFINING_ROUND.value

# Transitions defined as (trigger, source, dest). Each trigger becomes a method on the FSM.
TRANSITIONS = [
    {"trigger": "approve", "source": "backlog", "dest": "approved"},

    # Collaboration rounds
    {"trigger": "start_rounds", "source": "approved", "dest": _ROUND, "conditions": "is_first_round"},
    {"trigger": "next_round", "source": _ROUND, "dest": _ROUND, "conditions": "is_next_round"},
    {"trigger": "finalize", "source": _ROUND, "dest": "prd_complete"},
    {"trigger": "ask_user", "source": _ROUND, "dest": "awaiting_user"},
    {"trigger": "user_answered", "source": "awaiting_user", "dest": _ROUND, "conditions": "has_round"},
    {"trigger": "consult_expert", "source": _ROUND, "dest": "needs_expert"},
    {"trigger": "expert_answered", "source": "needs_expert", "dest": _ROUND, "conditions": "has_round"},

    # Breakdown and aggregation
    {"trigger": "begin_breakdown", "source": "prd_complete", "dest": "breaking_down"},
    {"trigger": "children_done", "source": "breaking_down", "dest": "done"},

    # Delivery
    {"trigger": "start_dev", "source": "ready", "dest": "in_dev"},
    {"trigger": "dev_complete", "source": "in_dev", "dest": "in_qa"},
    {"trigger": "qa_passed", "source": "in_qa", "dest": "in_ux"},
    {"trigger": "ux_passed", "source": "in_ux", "dest": "in_sec"},
    {"trigger": "security_passed", "source": "in_sec", "dest": "pm_review"},
    {"trigger": "pm_approved", "source": "pm_review", "dest": "done"},

    # Crash recovery: only the self-heal reconciler may hand a ticket back
    {"trigger": "self_heal", "source": "in_dev", "dest": "ready", "conditions": "is_self_heal"},

    # Blocking
    {"trigger": "block", "source": [s for s in STATES if s not in ("done", "blocked")], "dest": "blocked"},
]
# Unblocking returns to exactly the state the ticket was blocked from
TRANSITIONS += [
    {"trigger": "unblock", "source": "blocked", "dest": s, "conditions": "is_previous"}
    for s in STATES if s not in ("done", "blocked")
]


def _build_trigger_lookup() -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in TRANSITIONS:
        sources = t["source"] if isinstance(t["source"], list) else [t["source"]]
        for source in sources:
            lookup.setdefault((source, t["dest"]), t["trigger"])
    return lookup


TRIGGER_FOR = _build_trigger_lookup()


class TransitionRejected(Exception):
    """The requested status change is not an allowed transition."""

    def __init__(self, ticket_id: str, from_status: str, to_status: str, reason: str = ""):
        self.ticket_id = ticket_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"{ticket_id}: {from_status} -> {to_status} not allowed"
            + (f" ({reason})" if reason else "")
        )


class TicketFSM:
    """State machine for one ticket's status.

    Args:
        ticket_id: For log messages
        status: Current status string (e.g. "refining_round_2")
        previous: Status the ticket was blocked from, for unblocking
    """

    def __init__(self, ticket_id: str, status: str, previous: str = ""):
        self.ticket_id = ticket_id
        tag, self.round = split_status(status)
        self.previous = previous
        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=tag,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    @property
    def status(self) -> str:
        return refining_round(self.round) if self.state == _ROUND else self.state

    # --- Guards ---

    def is_first_round(self, event) -> bool:
        return event.kwargs.get("round") == 1

    def is_next_round(self, event) -> bool:
        return event.kwargs.get("round") == self.round + 1

    def has_round(self, event) -> bool:
        return (event.kwargs.get("round") or 0) >= 1

    def is_self_heal(self, event) -> bool:
        return event.kwargs.get("actor") == SELF_HEAL_ACTOR

    def is_previous(self, event) -> bool:
        target = event.kwargs.get("target")
        if not target or target != self.previous:
            return False
        return event.transition.dest == split_status(target)[0]

    # --- Callbacks ---

    def on_state_change(self, event) -> None:
        self.round = event.kwargs.get("round", 0) if self.state == _ROUND else 0
        logger.debug(f"[FSM] {self.ticket_id}: {event.transition.source} -> {self.status} ({event.event.name})")

    def apply(self, to_status: str, actor: str = "") -> None:
        """Move to ``to_status`` through its trigger.

        Raises:
            TransitionRejected: If no trigger leads there or a guard refuses
        """
        from_status = self.status
        try:
            to_tag, to_round = split_status(to_status)
        except ValueError as e:
            raise TransitionRejected(self.ticket_id, from_status, to_status, str(e)) from None

        trigger = TRIGGER_FOR.get((self.state, to_tag))
        if trigger is None:
            raise TransitionRejected(self.ticket_id, from_status, to_status)
        try:
            moved = self.trigger(trigger, round=to_round, actor=actor, target=to_status)
        except MachineError as e:
            raise TransitionRejected(self.ticket_id, from_status, to_status, e.value) from None
        if not moved:
            raise TransitionRejected(self.ticket_id, from_status, to_status, f"guard on {trigger} refused")

    def can_reach(self, to_status: str, actor: str = "") -> bool:
        """Whether ``apply`` would succeed, without changing state."""
        probe = TicketFSM(self.ticket_id, self.status, self.previous)
        try:
            probe.apply(to_status, actor)
        except TransitionRejected:
            return False
        return True
