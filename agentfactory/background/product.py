"""
Product management reconciler.

Watches the development pipeline: warns about stalled agent runs, hands
in_dev tickets whose agent has gone back to the scheduler, and records
periodic check-ins on tickets in development and review.
"""

import logging
from dataclasses import dataclass, field

from agentfactory.background.manager import BackgroundAgent
from agentfactory.kanban.conversations import open_thread
from agentfactory.kanban.models import PMCheckin, Ticket, age_seconds
from agentfactory.kanban.status import ACTIVE_WORK_STATES, TicketState
from agentfactory.lib.constants import BLOCKING_SEVERITIES, PM_ACTOR
from agentfactory.workflow.lifecycle import self_heal

logger = logging.getLogger(__name__)

IN_DEV = TicketState.IN_DEV.value

# Progress estimates for review states
REVIEW_PROGRESS = {
    TicketState.IN_QA.value: 70,
    TicketState.IN_UX.value: 80,
    TicketState.IN_SEC.value: 90,
}

STALLED_UPDATE_SECONDS = 3600


@dataclass
class Findings:
    progress: int = 50
    concerns: list[str] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)


def time_in_state(ticket: Ticket) -> float:
    """Seconds since the ticket entered its current status."""
    since = ticket.history[-1].at if ticket.history else ticket.updated_at
    return age_seconds(since)


def dev_progress(seconds: float) -> int:
    minutes = seconds / 60
    if minutes < 30:
        return 25
    if minutes < 120:
        return 50
    if minutes < 240:
        return 75
    return 90


def analyze(ticket: Ticket, has_running_run: bool) -> Findings:
    """Progress estimate, concerns and blockers for one ticket."""
    findings = Findings()
    if ticket.status == IN_DEV:
        findings.progress = dev_progress(time_in_state(ticket))
        if findings.progress == 90:
            findings.concerns.append("Development taking longer than expected")
    else:
        findings.progress = REVIEW_PROGRESS.get(ticket.status, findings.progress)

    for bug in ticket.open_bugs():
        text = f"Bug: {bug.title or bug.description} ({bug.severity})"
        if bug.severity in BLOCKING_SEVERITIES:
            findings.blockers.append(text)
        else:
            findings.concerns.append(text)

    if ticket.status == IN_DEV:
        if not has_running_run:
            findings.concerns.append("No active agent running for ticket in development")
        if ticket.worktree is None:
            findings.blockers.append("No worktree created for development")
    return findings


def categorize(ticket: Ticket, findings: Findings) -> tuple[str, str]:
    """Check-in type and summary. Later checks take precedence."""
    kind = "progress"
    summary = f"Progress check on {ticket.id} ({ticket.status}): ~{findings.progress}%"
    if findings.progress < 10 and age_seconds(ticket.updated_at) > STALLED_UPDATE_SECONDS:
        kind = "guidance"
        summary = f"{ticket.id} appears to have stalled - limited progress detected"
    if findings.blockers:
        kind = "blocker"
        summary = f"{ticket.id} has blockers: {'; '.join(findings.blockers)}"
    if findings.concerns:
        kind = "review"
        summary = f"{ticket.id} has concerns requiring review"
    return kind, summary


class ProductReconciler(BackgroundAgent):
    """Stall detection, self-heal and PM check-ins."""

    agent_type = "product"
    period = 30.0

    def run_once(self) -> None:
        self.detect_stalls()
        self.heal_stuck_dev()
        self.checkins()

    def detect_stalls(self) -> list[str]:
        """Run ids running longer than the stall threshold."""
        threshold = self.ctx.config.stall_threshold_minutes * 60
        stalled = []
        for run in self.store.active_runs():
            age = age_seconds(run.started_at)
            if age > threshold:
                logger.warning(f"[PM] {run.agent} on {run.ticket_id} has been running {int(age // 60)} min")
                self.set_activity(f"Reviewing stalled work: {run.ticket_id}")
                stalled.append(run.id)
        return stalled

    def heal_stuck_dev(self) -> list[str]:
        """Return in_dev tickets with no running agent to ready."""
        healed = []
        for ticket in self.store.tickets_by_status(IN_DEV):
            if self.store.active_runs_for_ticket(ticket.id):
                continue
            if self_heal(self.store, ticket.id):
                logger.info(f"[PM] Self-healed {ticket.id}: no running agent")
                healed.append(ticket.id)
        return healed

    def checkins(self) -> list[PMCheckin]:
        """Check in on active tickets whose last check-in is older than the interval."""
        interval = self.ctx.config.pm_checkin_interval_minutes * 60
        recorded = []
        for status in ACTIVE_WORK_STATES:
            for ticket in self.store.tickets_by_status(status):
                last = self.store.last_checkin(ticket.id)
                if last is not None and age_seconds(last.created_at) < interval:
                    continue
                self.set_activity(f"Checking in on: {ticket.id}")
                recorded.append(self.checkin(ticket))
        return recorded

    def checkin(self, ticket: Ticket) -> PMCheckin:
        findings = analyze(ticket, bool(self.store.active_runs_for_ticket(ticket.id)))
        kind, summary = categorize(ticket, findings)
        checkin = PMCheckin(
            id=self.store.next_id(f"checkin-{ticket.id}"),
            ticket_id=ticket.id,
            type=kind,
            progress=findings.progress,
            concerns=findings.concerns,
            blockers=findings.blockers,
            summary=summary,
        )
        if kind != "progress":
            details = [summary]
            details += [f"Blocker: {b}" for b in findings.blockers]
            details += [f"Concern: {c}" for c in findings.concerns]
            conv = open_thread(self.store, ticket.id, "pm_checkin", f"PM Check-in: {kind}", PM_ACTOR, "\n".join(details))
            checkin.conversation_id = conv.id
        self.store.add_checkin(checkin)
        logger.info(f"[PM] Check-in on {ticket.id}: {kind} ({findings.progress}%)")
        return checkin
