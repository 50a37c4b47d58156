"""
Parallel development scheduler.

Admits ready tickets into development under a hard capacity bound:

    cap = min(max_parallel_dev_agents, max_global_worktrees - active worktrees)

Tickets are taken most urgent first and only when their declared files don't
overlap any ticket already in development or admitted this tick.
"""

import logging

from agentfactory.agents.response_parser import parse_signoff
from agentfactory.agents.runner import AgentResult, Role
from agentfactory.git.worktree import branch_name
from agentfactory.kanban.conflict import can_run_in_parallel
from agentfactory.kanban.conversations import open_thread
from agentfactory.kanban.models import AgentRun, Signoff, Ticket, Worktree, WorktreePoolEntry
from agentfactory.kanban.status import TicketState
from agentfactory.lib.constants import MAX_CONSECUTIVE_FAILURES, WORKTREE_ACTOR
from agentfactory.lib.errors import WorkspaceFailure
from agentfactory.workflow.context import FactoryContext, consecutive_failures
from agentfactory.workflow.lifecycle import InvalidTransition, block, transition

logger = logging.getLogger(__name__)

READY = TicketState.READY.value
IN_DEV = TicketState.IN_DEV.value
IN_QA = TicketState.IN_QA.value
DONE = TicketState.DONE.value


def unmet_dependencies(store, ticket: Ticket) -> list[str]:
    """Dependencies (by id or title) that are missing or not done."""
    unmet = []
    for dep in ticket.dependencies:
        other = store.get_ticket(dep) or store.ticket_by_title(dep)
        if other is None or other.status != DONE:
            unmet.append(dep)
    return unmet


def admission_order(tickets: list[Ticket]) -> list[Ticket]:
    """Most urgent first, then oldest."""
    return sorted(tickets, key=lambda t: (t.priority, t.created_at))


class DevScheduler:
    """Starts development agents on ready tickets."""

    def __init__(self, ctx: FactoryContext):
        self.ctx = ctx
        self.store = ctx.store

    def capacity(self) -> int:
        """Dev runs allowed at once right now."""
        free_slots = self.ctx.config.max_global_worktrees - self.store.active_worktree_count()
        return max(0, min(self.ctx.config.max_parallel_dev_agents, free_slots))

    def select(self) -> list[Ticket]:
        """Ready tickets to admit this tick, in admission order."""
        active_ids = self.ctx.ledger.dev_tickets()
        active = [t for t in (self.store.get_ticket(i) for i in active_ids) if t is not None]
        # Worktree slots are already consumed by active tickets, so the cap
        # bounds total concurrency rather than new admissions
        cap = min(self.ctx.config.max_parallel_dev_agents, len(active) + self.capacity())

        accepted: list[Ticket] = []
        for ticket in admission_order(self.store.tickets_by_status(READY)):
            if len(active) + len(accepted) >= cap:
                break
            if ticket.id in active_ids:
                continue
            unmet = unmet_dependencies(self.store, ticket)
            if unmet:
                logger.debug(f"[DEV] {ticket.id} waiting on {', '.join(unmet)}")
                continue
            clash = next((o for o in active + accepted if not can_run_in_parallel(ticket, o)), None)
            if clash is not None:
                logger.debug(f"[DEV] {ticket.id} conflicts with {clash.id}, deferring")
                continue
            accepted.append(ticket)
        return accepted

    def schedule(self) -> list[str]:
        """Admit and start ready tickets. Returns the ticket ids started."""
        started = []
        for ticket in self.select():
            if self._start(ticket):
                started.append(ticket.id)
        if started:
            logger.info(f"[DEV] Started development on {', '.join(started)}")
        return started

    def _start(self, ticket: Ticket) -> bool:
        role = Role.for_domain(ticket.domain)
        branch = branch_name(self.ctx.config.branch_prefix, ticket.id, ticket.title)

        try:
            path = self.ctx.workspace.create_workspace(ticket.id, branch)
        except WorkspaceFailure as e:
            logger.warning(f"[DEV] {ticket.id}: {e}")
            block(self.store, ticket.id, f"Workspace creation failed: {e.message}", WORKTREE_ACTOR, details=str(e))
            return False

        run = AgentRun(id=self.ctx.new_run_id(ticket.id, role.value), agent=role.value,
                       ticket_id=ticket.id, workspace=path)
        if not self.ctx.ledger.register(run):
            return False

        def enter(t: Ticket) -> None:
            t.assigned_agent = role.value
            t.current_activity = "Implementing"
            t.worktree = Worktree(path=path, branch=branch)

        try:
            transition(self.store, ticket.id, IN_DEV, role.value, f"Assigned to {role.value}",
                       expect=READY, mutate=enter)
        except InvalidTransition as e:
            logger.warning(f"[DEV] {e}")
            self.store.complete_run(run.id, "failed", error=str(e))
            return False

        self.store.register_worktree(WorktreePoolEntry(ticket_id=ticket.id, branch=branch, path=path, agent=role.value))
        self.store.log_event(ticket.id, "created", f"{branch} at {path}")

        ticket_id = ticket.id
        data = self.ctx.prompt_for(self.store.get_ticket(ticket_id), mode="implement")
        self.ctx.submit_run(run, role, data, lambda r: self._on_result(ticket_id, role, r), workspace_path=path)
        return True

    def _on_result(self, ticket_id: str, role: Role, result: AgentResult) -> str | None:
        if not result.success:
            failures = consecutive_failures(self.store, ticket_id, role.value)
            if failures >= MAX_CONSECUTIVE_FAILURES:
                block(self.store, ticket_id, f"Agent failed {MAX_CONSECUTIVE_FAILURES} consecutive times",
                      role.value, details=result.error)
            else:
                logger.warning(f"[DEV] {ticket_id}: {role.value} failed ({failures}/{MAX_CONSECUTIVE_FAILURES}), "
                               f"leaving for self-heal")
            return result.error

        report = parse_signoff(result.output)
        summary = report.summary if report and report.summary else "Implementation complete."

        def complete(t: Ticket) -> None:
            t.current_activity = ""
            t.signoffs["dev"] = Signoff(agent=role.value)

        try:
            transition(self.store, ticket_id, IN_QA, role.value, "Development complete, ready for QA",
                       expect=IN_DEV, mutate=complete)
        except InvalidTransition as e:
            logger.warning(f"[DEV] {e}")
            return str(e)

        open_thread(self.store, ticket_id, "dev_signoff", "Development - Complete", role.value,
                    summary, message_type="signoff_report", status="resolved")
        return None
