"""
Review pipeline: in_qa → in_ux → in_sec → pm_review → done.

Each review state has one reviewer role. A successful review signs the
ticket off for its stage and moves it on; a failed one records the bugs it
reported and either blocks the ticket or leaves it for the next tick.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from agentfactory.agents.response_parser import SignoffReport, parse_signoff, report_bugs
from agentfactory.agents.runner import AgentResult, Role
from agentfactory.kanban.conversations import open_thread
from agentfactory.kanban.models import AgentRun, Signoff, Ticket
from agentfactory.kanban.status import TicketState
from agentfactory.lib.constants import BLOCKING_SEVERITIES, MAX_CONSECUTIVE_FAILURES, SYSTEM_ACTOR
from agentfactory.lib.errors import WorkspaceFailure
from agentfactory.workflow.context import FactoryContext, consecutive_failures
from agentfactory.workflow.lifecycle import InvalidTransition, block, transition

logger = logging.getLogger(__name__)

# Merge entries in these states hold a ticket out of final review
MERGE_IN_FLIGHT = ("pending", "in_progress")


@dataclass(frozen=True)
class ReviewStage:
    """One review state and who reviews it."""
    status: str
    role: Role
    stage: str          # signoff key
    name: str           # human name for threads and notes
    next_status: str
    activity: str


REVIEW_STAGES = (
    ReviewStage(TicketState.IN_QA.value, Role.QA, "qa", "QA", TicketState.IN_UX.value, "Testing"),
    ReviewStage(TicketState.IN_UX.value, Role.UX, "ux", "UX", TicketState.IN_SEC.value, "Reviewing UX"),
    ReviewStage(TicketState.IN_SEC.value, Role.SECURITY, "security", "Security",
                TicketState.PM_REVIEW.value, "Security audit"),
    ReviewStage(TicketState.PM_REVIEW.value, Role.PM, "pm", "PM final", TicketState.DONE.value, "Final review"),
)

STAGE_FOR_STATUS = {s.status: s for s in REVIEW_STAGES}


def signoff_title(stage: ReviewStage, report: SignoffReport | None) -> str:
    status = report.status.lower() if report else ""
    if status in ("passed", "approved"):
        return f"{stage.name} Review - Approved"
    if status in ("failed", "rejected"):
        return f"{stage.name} Review - Issues Found"
    return f"{stage.name} Review - Complete"


def signoff_content(report: SignoffReport | None, output: str) -> str:
    if report is None:
        return output.strip() or "Review complete."
    lines = [report.summary or f"Status: {report.status or 'complete'}"]
    if report.findings:
        lines.append("\nFindings:")
        lines.extend(f"- {f}" for f in report.findings)
    if report.bugs:
        lines.append("\nBugs:")
        lines.extend(f"- [{b.severity}] {b.title}" for b in report.bugs)
    return "\n".join(lines)


class ReviewPipeline:
    """Dispatches reviewers for tickets in review states."""

    def __init__(self, ctx: FactoryContext):
        self.ctx = ctx
        self.store = ctx.store

    def process(self, status: str) -> int:
        """Start reviewers for tickets in ``status``. Returns runs started."""
        stage = STAGE_FOR_STATUS[status]
        started = 0
        for ticket in self.store.tickets_by_status(status):
            if self.ctx.ledger.has_role(ticket.id, stage.role.value):
                continue
            if stage.status == TicketState.PM_REVIEW.value and self._merge_in_flight(ticket.id):
                logger.debug(f"[REVIEW] {ticket.id}: waiting for merge before final review")
                continue
            if self._start(ticket, stage):
                started += 1
        return started

    def _merge_in_flight(self, ticket_id: str) -> bool:
        entry = self.store.merge_by_ticket(ticket_id)
        return entry is not None and entry.status in MERGE_IN_FLIGHT

    def _start(self, ticket: Ticket, stage: ReviewStage) -> bool:
        path = ticket.worktree.path if ticket.worktree else ""
        if path and not Path(path).is_dir():
            error = WorkspaceFailure("review", f"worktree {path} not found")
            logger.warning(f"[REVIEW] {ticket.id}: {error}")
            block(self.store, ticket.id, f"Worktree directory missing: {path}", SYSTEM_ACTOR, details=str(error))
            return False

        run = AgentRun(id=self.ctx.new_run_id(ticket.id, stage.role.value), agent=stage.role.value,
                       ticket_id=ticket.id, workspace=path)
        ticket_id = ticket.id
        data = self.ctx.prompt_for(ticket, mode="review")
        if not self.ctx.ledger.register(run):
            return False
        # Written before dispatch so the result handler's clear always lands last
        self.store.update_activity(ticket_id, stage.activity, stage.role.value)
        self.ctx.submit_run(run, stage.role, data, lambda r: self._on_result(ticket_id, stage, r),
                            workspace_path=path)
        return True

    def _record_bugs(self, ticket_id: str, stage: ReviewStage, report: SignoffReport | None) -> int:
        bugs = report_bugs(report, stage.role.value, self.store.next_id(f"BUG-{ticket_id}"))
        for bug in bugs:
            self.store.add_bug(ticket_id, bug)
        if bugs:
            logger.info(f"[REVIEW] {ticket_id}: {stage.name} reported {len(bugs)} bug(s)")
        return len(bugs)

    def _on_result(self, ticket_id: str, stage: ReviewStage, result: AgentResult) -> str | None:
        report = parse_signoff(result.output) if result.output else None
        self._record_bugs(ticket_id, stage, report)
        actor = stage.role.value

        if not result.success:
            ticket = self.store.get_ticket(ticket_id)
            if ticket is not None and ticket.open_bugs(BLOCKING_SEVERITIES):
                block(self.store, ticket_id, "Bugs found during review", actor,
                      details="\n".join(f"- [{b.severity}] {b.title}" for b in ticket.open_bugs(BLOCKING_SEVERITIES)))
            elif consecutive_failures(self.store, ticket_id, actor) >= MAX_CONSECUTIVE_FAILURES:
                block(self.store, ticket_id, f"Agent failed {MAX_CONSECUTIVE_FAILURES} consecutive times",
                      actor, details=result.error)
            else:
                logger.warning(f"[REVIEW] {ticket_id}: {stage.name} review failed, retrying next tick")
                self.store.clear_activity(ticket_id)
            return result.error

        def sign(t: Ticket) -> None:
            t.current_activity = ""
            t.signoffs[stage.stage] = Signoff(agent=actor)

        try:
            transition(self.store, ticket_id, stage.next_status, actor, f"{stage.name} review complete",
                       expect=stage.status, mutate=sign)
        except InvalidTransition as e:
            logger.warning(f"[REVIEW] {e}")
            return str(e)

        open_thread(
            self.store, ticket_id, f"{stage.stage}_signoff", signoff_title(stage, report), actor,
            signoff_content(report, result.output), message_type="signoff_report", status="resolved",
        )
        if stage.next_status == TicketState.DONE.value:
            self.ctx.metrics.inc("tickets_completed")
            logger.info(f"[REVIEW] {ticket_id}: done")
        return None
