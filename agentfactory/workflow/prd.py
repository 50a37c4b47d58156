"""
PRD collaboration engine.

Turns an approved ticket into a PRD through rounds of expert deliberation,
then breaks the PRD into child tickets. The deliberation is a state machine
over the ticket's status, advanced at most one step per tick:

    approved          facilitator opens round 1 and the experts fan out
    refining_round_N  missing experts are retried, then the facilitator
                      synthesises and decides what happens next
    awaiting_user     waits for ``answer_user``
    needs_expert      an expert consultation opens the next round
    prd_complete      breakdown into children
    breaking_down     done once every child is done

A new round is always opened in the same store write as the status change
that enters it, so ``refining_round_N`` and ``current_round == N`` never
disagree.
"""

import logging

from agentfactory import notifications
from agentfactory.agents.response_parser import (
    BreakdownReply,
    FacilitatorReply,
    parse_breakdown,
    parse_expert,
    parse_facilitator,
)
from agentfactory.agents.runner import AgentResult, Role
from agentfactory.kanban.conflict import validate_ticket_files
from agentfactory.kanban.conversations import open_thread, post
from agentfactory.kanban.models import AgentRun, Collaboration, Round, Ticket, utcnow
from agentfactory.kanban.status import ROUND_PREFIX, TicketState, refining_round, round_of
from agentfactory.lib.constants import (
    EXPERT_RETRY_LIMIT,
    EXPERTS,
    MAX_CONSECUTIVE_FAILURES,
    PM_ACTOR,
    SYSTEM_ACTOR,
)
from agentfactory.lib.errors import MalformedAgentOutput
from agentfactory.workflow.context import FactoryContext, consecutive_failures
from agentfactory.workflow.lifecycle import InvalidTransition, block, transition, try_transition

logger = logging.getLogger(__name__)

FACILITATOR = Role.PM_FACILITATOR.value
BREAKDOWN = Role.PM_BREAKDOWN.value
CONSULT = Role.EXPERT_CONSULT.value
EXPERT_TAG = "prd-"

APPROVED = TicketState.APPROVED.value
AWAITING_USER = TicketState.AWAITING_USER.value
NEEDS_EXPERT = TicketState.NEEDS_EXPERT.value
PRD_COMPLETE = TicketState.PRD_COMPLETE.value
BREAKING_DOWN = TicketState.BREAKING_DOWN.value
DONE = TicketState.DONE.value


def expert_role(expert: str) -> str:
    return f"{EXPERT_TAG}{expert}"


def expert_run_prefix(ticket_id: str, expert: str, round_number: int) -> str:
    return f"prd-{ticket_id}-{expert}-{round_number}-"


def discussion(ticket: Ticket) -> list[dict]:
    """Rounds so far, as agents see them."""
    if ticket.collaboration is None:
        return []
    return [rnd.to_dict() for rnd in ticket.collaboration.rounds]


def forced_unresolved(rnd: Round | None, reply: FacilitatorReply) -> list[str]:
    """Concerns left open when a PRD is forced."""
    if reply.unresolved:
        return list(reply.unresolved)
    unresolved: list[str] = []
    for inp in (rnd.expert_inputs.values() if rnd else []):
        if inp.approves:
            continue
        for concern in inp.concerns:
            entry = f"{inp.expert}: {concern}"
            if entry not in unresolved:
                unresolved.append(entry)
    return unresolved


def build_children(parent: Ticket, reply: BreakdownReply) -> list[Ticket]:
    """Child tickets for a breakdown, ids ``{parent}-SUB-{i}`` in reply order.

    Dependencies naming a sibling by title are rewritten to the sibling's id.
    """
    ids = {spec.title: f"{parent.id}-SUB-{i}" for i, spec in enumerate(reply.tickets, 1)}
    group_of = {title: g.group for g in reply.parallel_groups for title in g.tickets}

    children = []
    for i, spec in enumerate(reply.tickets, 1):
        child_id = f"{parent.id}-SUB-{i}"
        for warning in validate_ticket_files(spec.files):
            logger.warning(f"[PRD] {child_id}: {warning}")
        children.append(Ticket(
            id=child_id,
            title=spec.title,
            description=spec.description,
            domain=spec.domain,
            status=TicketState.READY.value,
            priority=parent.priority,
            type=parent.type,
            parent_id=parent.id,
            parallel_group=spec.parallel_group or group_of.get(spec.title, 0),
            files=list(spec.files),
            dependencies=[ids.get(dep, dep) for dep in spec.dependencies],
            acceptance_criteria=list(spec.acceptance_criteria),
            notes=spec.technical_notes,
        ))
    return children


class CollaborationEngine:
    """Drives tickets from approved through PRD and breakdown."""

    def __init__(self, ctx: FactoryContext):
        self.ctx = ctx
        self.store = ctx.store

    @property
    def max_rounds(self) -> int:
        return self.ctx.config.max_prd_rounds

    # --- Dispatch helpers ---

    def _dispatch_facilitator(self, ticket: Ticket, mode: str, on_result, **prompt) -> bool:
        run = AgentRun(id=self.ctx.new_run_id(ticket.id, FACILITATOR), agent=FACILITATOR, ticket_id=ticket.id)
        data = self.ctx.prompt_for(ticket, conversation=discussion(ticket), mode=mode, **prompt)
        return self.ctx.start_run(run, Role.PM_FACILITATOR, data, on_result)

    def _dispatch_expert(self, ticket: Ticket, number: int, expert: str) -> bool:
        prefix = expert_run_prefix(ticket.id, expert, number)
        attempt = sum(1 for r in self.store.runs_for_ticket(ticket.id) if r.id.startswith(prefix)) + 1
        rnd = ticket.collaboration.get_round(number)
        run = AgentRun(id=f"{prefix}{attempt}", agent=expert_role(expert), ticket_id=ticket.id)
        data = self.ctx.prompt_for(
            ticket,
            conversation=discussion(ticket),
            current_round=number,
            current_prompt=rnd.prompt,
            expert=expert,
            focus_areas=rnd.focus_areas.get(expert, []),
            mode="expert",
        )
        ticket_id = ticket.id
        return self.ctx.start_run(
            run, Role.PRD_EXPERT, data,
            lambda result: self._on_expert(ticket_id, number, expert, result),
        )

    def _fan_out(self, ticket_id: str, number: int) -> None:
        ticket = self.store.get_ticket(ticket_id)
        for expert in EXPERTS:
            self._dispatch_expert(ticket, number, expert)
        logger.info(f"[PRD] {ticket_id}: round {number} sent to {len(EXPERTS)} experts")

    def _open_next(self, ticket_id: str, expect: str, number: int, prompt: str, actor: str, note: str,
                   focus_areas: dict | None = None, synthesis: str | None = None, dispatch: bool = True) -> Ticket:
        """Open round ``number`` and enter refining_round_{number} in one write.

        Raises:
            InvalidTransition: If the ticket left ``expect`` meanwhile
            ValueError: If the round would break contiguous numbering
        """
        def apply(ticket: Ticket) -> None:
            collab = ticket.collaboration
            if synthesis is not None and collab.get_round(number - 1) is not None:
                collab.get_round(number - 1).synthesis = synthesis
            collab.status = "in_progress"
            collab.open_questions = []
            collab.open_round(Round(number=number, prompt=prompt, focus_areas=dict(focus_areas or {})))

        ticket = transition(self.store, ticket_id, refining_round(number), actor, note, expect=expect, mutate=apply)
        if dispatch:
            self._fan_out(ticket_id, number)
        return ticket

    # --- Round start ---

    def start_approved(self) -> int:
        """Ask the facilitator to open round 1 for every approved ticket."""
        started = 0
        for ticket in self.store.tickets_by_status(APPROVED):
            if self.ctx.ledger.has_role(ticket.id, FACILITATOR):
                continue
            ticket_id = ticket.id
            if self._dispatch_facilitator(ticket, "start", lambda r: self._on_round_start(ticket_id, 1, r)):
                started += 1
        return started

    def _on_round_start(self, ticket_id: str, number: int, result: AgentResult) -> str | None:
        if not result.success:
            return result.error
        try:
            reply = parse_facilitator(result.output)
        except MalformedAgentOutput as e:
            logger.warning(f"[PRD] {ticket_id}: facilitator reply unusable, will retry: {e}")
            return str(e)

        ticket = self.store.get_ticket(ticket_id)
        rnd = Round(number=number, prompt=reply.prompt or ticket.description or ticket.title,
                    focus_areas=reply.focus_areas)

        if number == 1 and ticket.status == APPROVED:
            def open_first(t: Ticket) -> None:
                if t.collaboration is None or not t.collaboration.rounds:
                    t.collaboration = Collaboration()
                t.collaboration.open_round(rnd)

            try:
                transition(self.store, ticket_id, refining_round(1), PM_ACTOR, "PRD round 1 started",
                           expect=APPROVED, mutate=open_first)
            except (InvalidTransition, ValueError) as e:
                logger.warning(f"[PRD] {ticket_id}: cannot open round 1: {e}")
                return str(e)
        else:
            # A refining ticket whose current round was never recorded
            def restore(t: Ticket) -> bool:
                if t.status != refining_round(number):
                    return False
                if t.collaboration is None:
                    t.collaboration = Collaboration()
                t.collaboration.open_round(rnd)
                return True

            try:
                restored = self.store.mutate_ticket(ticket_id, restore)
            except ValueError as e:
                block(self.store, ticket_id, "Collaboration history inconsistent", PM_ACTOR, details=str(e))
                return str(e)
            if not restored:
                return "ticket moved on before round could be restored"
            logger.info(f"[PRD] {ticket_id}: restored missing round {number}")

        self._fan_out(ticket_id, number)
        return None

    # --- Rounds ---

    def process_rounds(self) -> None:
        """Retry missing experts, or synthesise rounds that are complete."""
        for ticket in self.store.tickets_by_prefix(ROUND_PREFIX):
            number = round_of(ticket.status)
            if number is None or self.ctx.ledger.has_role(ticket.id, FACILITATOR):
                continue
            ticket_id = ticket.id
            collab = ticket.collaboration
            rnd = collab.get_round(number) if collab else None

            if rnd is None or collab.current_round != number:
                logger.warning(f"[PRD] {ticket_id}: round {number} missing, asking facilitator to restart it")
                self._dispatch_facilitator(ticket, "start", lambda r, n=number: self._on_round_start(ticket_id, n, r),
                                           current_round=number)
                continue

            missing = [e for e in EXPERTS if not (e in rnd.expert_inputs and rnd.expert_inputs[e].has_response)]
            if not missing:
                if self.ctx.ledger.has_role_prefix(ticket_id, EXPERT_TAG):
                    continue
                self._dispatch_facilitator(
                    ticket, "synthesis",
                    lambda r, n=number: self._on_synthesis(ticket_id, n, r),
                    current_round=number,
                    current_prompt=rnd.prompt,
                    final_inputs={name: inp.to_dict() for name, inp in rnd.expert_inputs.items()},
                )
                continue

            self._collect(ticket, number, missing)

    def _collect(self, ticket: Ticket, number: int, missing: list[str]) -> None:
        # Retry budget restarts whenever the ticket (re)enters its status
        budget_start = ticket.history[-1].at if ticket.history else ""
        runs = self.store.runs_for_ticket(ticket.id)
        exhausted = []
        for expert in missing:
            if self.ctx.ledger.has_role(ticket.id, expert_role(expert)):
                continue
            prefix = expert_run_prefix(ticket.id, expert, number)
            used = sum(1 for r in runs if r.id.startswith(prefix) and r.started_at >= budget_start)
            if used > EXPERT_RETRY_LIMIT:
                exhausted.append(expert)
                continue
            if used:
                logger.info(f"[PRD] {ticket.id}: retrying {expert} for round {number} ({used}/{EXPERT_RETRY_LIMIT})")
            self._dispatch_expert(ticket, number, expert)

        if exhausted:
            def mark(t: Ticket) -> None:
                t.collaboration.status = "blocked"

            block(
                self.store, ticket.id, "expert exhausted", PM_ACTOR,
                details=f"No usable response from {', '.join(exhausted)} in round {number} "
                        f"after {EXPERT_RETRY_LIMIT} retries.",
                mutate=mark,
            )

    def _on_expert(self, ticket_id: str, number: int, expert: str, result: AgentResult) -> str | None:
        if not result.success:
            logger.warning(f"[PRD] {ticket_id}: {expert} failed in round {number}: {result.error}")
            return result.error
        expert_input = parse_expert(expert, result.output)
        if not expert_input.has_response:
            return "empty expert response"
        if not self.store.record_expert_input(ticket_id, number, expert_input):
            return f"round {number} no longer exists"
        verdict = "approves" if expert_input.approves else f"{len(expert_input.concerns)} concern(s)"
        logger.info(f"[PRD] {ticket_id}: {expert} responded in round {number} ({verdict})")
        return None

    # --- Synthesis ---

    def _on_synthesis(self, ticket_id: str, number: int, result: AgentResult) -> str | None:
        if not result.success:
            return result.error
        try:
            reply = parse_facilitator(result.output)
        except MalformedAgentOutput as e:
            logger.warning(f"[PRD] {ticket_id}: synthesis unusable, round {number} not advanced: {e}")
            return str(e)

        current = refining_round(number)
        ticket = self.store.get_ticket(ticket_id)
        if ticket.status != current:
            logger.warning(f"[PRD] {ticket_id}: synthesis for round {number} arrived in {ticket.status}, ignoring")
            return "stale synthesis"

        at_cap = number >= self.max_rounds
        logger.info(f"[PRD] {ticket_id}: round {number} synthesis -> {reply.action}")
        try:
            if reply.action == "FINALIZE_PRD":
                self._finalize(ticket_id, number, reply)
            elif at_cap:
                self._force(ticket_id, number, reply)
            elif reply.action in ("CONTINUE_ROUND", "START_ROUND"):
                self._open_next(
                    ticket_id, current, number + 1,
                    prompt=reply.prompt or reply.synthesis,
                    actor=PM_ACTOR, note=f"Continuing to round {number + 1}",
                    focus_areas=reply.focus_areas, synthesis=reply.synthesis,
                )
            elif reply.action == "REQUEST_USER_INPUT":
                self._ask_user(ticket_id, number, reply)
            else:
                self._request_expert(ticket_id, number, reply)
        except (InvalidTransition, ValueError) as e:
            logger.warning(f"[PRD] {ticket_id}: could not apply {reply.action}: {e}")
            return str(e)
        return None

    def _finalize(self, ticket_id: str, number: int, reply: FacilitatorReply) -> None:
        def apply(t: Ticket) -> None:
            collab = t.collaboration
            collab.get_round(number).synthesis = reply.synthesis
            collab.status = "consensus"
            collab.final_prd = reply.prd if reply.prd else {"synthesis": reply.synthesis}
            collab.completed_at = utcnow()

        transition(self.store, ticket_id, PRD_COMPLETE, PM_ACTOR, "PRD consensus reached",
                   expect=refining_round(number), mutate=apply)
        notifications.notify_prd_complete(ticket_id)

    def _force(self, ticket_id: str, number: int, reply: FacilitatorReply) -> None:
        def apply(t: Ticket) -> None:
            collab = t.collaboration
            rnd = collab.get_round(number)
            rnd.synthesis = reply.synthesis
            unresolved = forced_unresolved(rnd, reply)
            collab.status = "forced_consensus"
            collab.unresolved = unresolved
            collab.final_prd = reply.prd if reply.prd else {"synthesis": reply.synthesis, "unresolved": unresolved}
            collab.completed_at = utcnow()

        transition(self.store, ticket_id, PRD_COMPLETE, PM_ACTOR,
                   f"Max rounds ({self.max_rounds}) reached - forcing PRD synthesis",
                   expect=refining_round(number), mutate=apply)
        notifications.notify_prd_complete(ticket_id, forced=True)

    def _ask_user(self, ticket_id: str, number: int, reply: FacilitatorReply) -> None:
        questions = reply.questions or [reply.synthesis or "The facilitator needs more input."]

        def apply(t: Ticket) -> None:
            t.collaboration.get_round(number).synthesis = reply.synthesis
            t.collaboration.status = "awaiting_user"
            t.collaboration.open_questions = list(questions)

        transition(self.store, ticket_id, AWAITING_USER, PM_ACTOR, "Waiting for user input",
                   expect=refining_round(number), mutate=apply)
        open_thread(
            self.store, ticket_id, "user_question", "Questions from PRD discussion", PM_ACTOR,
            "\n".join(f"- {q}" for q in questions), message_type="question",
        )
        notifications.notify_awaiting_user(ticket_id, len(questions))

    def _request_expert(self, ticket_id: str, number: int, reply: FacilitatorReply) -> None:
        question = reply.consult_question or reply.synthesis

        def apply(t: Ticket) -> None:
            t.collaboration.get_round(number).synthesis = reply.synthesis
            t.collaboration.open_questions = [question]

        transition(self.store, ticket_id, NEEDS_EXPERT, PM_ACTOR, "Consulting an expert",
                   expect=refining_round(number), mutate=apply)

    # --- User answers and expert consultation ---

    def answer_user(self, ticket_id: str, answer: str, dispatch: bool = True) -> Ticket:
        """
        Record the user's answer and open the next round with it.

        Args:
            dispatch: Fan the new round out to experts now; otherwise the
                running orchestrator picks the round up on its next tick

        Raises:
            InvalidTransition: If the ticket is not awaiting user input
        """
        ticket = self.store.get_ticket(ticket_id)
        if ticket is None:
            raise KeyError(f"Ticket {ticket_id} not found")
        if ticket.status != AWAITING_USER or ticket.collaboration is None:
            raise InvalidTransition(ticket_id, ticket.status, "refining_round", "not awaiting user input")

        number = ticket.collaboration.current_round + 1
        questions = "\n".join(f"- {q}" for q in ticket.collaboration.open_questions)
        prompt = f"The user answered the open questions.\n\nQuestions:\n{questions}\n\nAnswer:\n{answer}"
        updated = self._open_next(ticket_id, AWAITING_USER, number, prompt, actor="user",
                                  note="User answered open questions", dispatch=dispatch)

        for conv in self.store.conversations_by_ticket(ticket_id):
            if conv.type == "user_question" and conv.status == "open":
                post(self.store, conv.id, "user", answer)
                self.store.update_conversation_status(conv.id, "resolved")
        return updated

    def process_consults(self) -> None:
        """Consult an expert for every ticket in needs_expert."""
        for ticket in self.store.tickets_by_status(NEEDS_EXPERT):
            if self.ctx.ledger.has_role(ticket.id, CONSULT) or ticket.collaboration is None:
                continue
            ticket_id = ticket.id
            number = ticket.collaboration.current_round
            rnd = ticket.collaboration.get_round(number)
            question = (ticket.collaboration.open_questions or [rnd.synthesis if rnd else ""])[0]
            run = AgentRun(id=self.ctx.new_run_id(ticket_id, CONSULT), agent=CONSULT, ticket_id=ticket_id)
            data = self.ctx.prompt_for(ticket, conversation=discussion(ticket), current_round=number,
                                       questions=[question], mode="consult")
            self.ctx.start_run(run, Role.EXPERT_CONSULT, data,
                               lambda r, n=number, q=question: self._on_consult(ticket_id, n, q, r))

    def _on_consult(self, ticket_id: str, number: int, question: str, result: AgentResult) -> str | None:
        answer = result.output.strip() if result.success else ""
        if not answer:
            error = result.error or "empty consultation"
            if consecutive_failures(self.store, ticket_id, CONSULT) >= MAX_CONSECUTIVE_FAILURES:
                block(self.store, ticket_id, f"Agent failed {MAX_CONSECUTIVE_FAILURES} consecutive times",
                      CONSULT, details=error)
            return error

        prompt = f"Expert consultation.\n\nQuestion:\n{question}\n\nAnswer:\n{answer}"
        try:
            self._open_next(ticket_id, NEEDS_EXPERT, number + 1, prompt, actor=CONSULT, note="Expert consulted")
        except (InvalidTransition, ValueError) as e:
            logger.warning(f"[PRD] {ticket_id}: could not open round {number + 1}: {e}")
            return str(e)
        return None

    # --- Breakdown ---

    def process_breakdowns(self) -> None:
        """Break finished PRDs into child tickets, retrying empty breakdowns."""
        for ticket in self.store.tickets_by_status(PRD_COMPLETE):
            try:
                transition(self.store, ticket.id, BREAKING_DOWN, PM_ACTOR, "Breaking PRD into tickets",
                           expect=PRD_COMPLETE)
            except InvalidTransition as e:
                logger.warning(f"[PRD] {e}")

        for ticket in self.store.tickets_by_status(BREAKING_DOWN):
            if ticket.collaboration and ticket.collaboration.children:
                continue
            if self.ctx.ledger.has_role(ticket.id, BREAKDOWN):
                continue
            ticket_id = ticket.id
            run = AgentRun(id=self.ctx.new_run_id(ticket_id, BREAKDOWN), agent=BREAKDOWN, ticket_id=ticket_id)
            prd = ticket.collaboration.final_prd if ticket.collaboration else None
            data = self.ctx.prompt_for(ticket, conversation=discussion(ticket), prd=prd, mode="breakdown")
            self.ctx.start_run(run, Role.PM_BREAKDOWN, data, lambda r: self._on_breakdown(ticket_id, r))

    def _on_breakdown(self, ticket_id: str, result: AgentResult) -> str | None:
        if not result.success:
            return result.error
        try:
            reply = parse_breakdown(result.output)
        except MalformedAgentOutput as e:
            logger.warning(f"[PRD] {ticket_id}: breakdown unusable, will retry: {e}")
            return str(e)
        if not reply.tickets:
            logger.warning(f"[PRD] {ticket_id}: breakdown produced no tickets, will retry")
            return "breakdown produced no tickets"

        parent = self.store.get_ticket(ticket_id)
        created = self.store.add_children(ticket_id, build_children(parent, reply))
        logger.info(f"[PRD] {ticket_id}: created {len(created)} child ticket(s): {', '.join(created)}")
        return None

    # --- Parent aggregation ---

    def aggregate_parents(self) -> int:
        """Close parents whose children are all done. Returns parents closed."""
        closed = 0
        for ticket in self.store.tickets_by_status(BREAKING_DOWN):
            children = ticket.collaboration.children if ticket.collaboration else []
            if not children:
                continue
            states = [self.store.get_ticket(child_id) for child_id in children]
            if all(child is not None and child.status == DONE for child in states):
                if try_transition(self.store, ticket.id, DONE, SYSTEM_ACTOR, "All sub-tickets completed",
                                  expect=BREAKING_DOWN):
                    closed += 1
                    self.ctx.metrics.inc("tickets_completed")
                    logger.info(f"[PRD] {ticket.id}: all sub-tickets done, parent closed")
        return closed
