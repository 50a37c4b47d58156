"""
Merge queue.

Tickets that pass development are squash-merged into main while QA runs, one
entry at a time, oldest first. A failing merge is retried up to
``max_merge_attempts`` times; after that the entry fails for good and the
ticket is blocked with manual resolution steps.

Done tickets can additionally be auto-merged (when ``auto_merge`` is set),
which also retires their worktree.
"""

import logging
import time

from agentfactory import notifications
from agentfactory.git.worktree import commit_message
from agentfactory.kanban.conversations import open_thread
from agentfactory.kanban.models import MergeQueueEntry, Ticket
from agentfactory.kanban.status import TicketState
from agentfactory.lib.constants import WORKTREE_ACTOR
from agentfactory.lib.errors import WorkspaceFailure
from agentfactory.workflow.context import FactoryContext
from agentfactory.workflow.lifecycle import block

logger = logging.getLogger(__name__)

IN_QA = TicketState.IN_QA.value
DONE = TicketState.DONE.value


def needs_merge(ticket: Ticket) -> bool:
    """Dev-signed-off ticket whose branch has not reached main yet."""
    return (
        ticket.status == IN_QA
        and "dev" in ticket.signoffs
        and ticket.worktree is not None
        and not ticket.worktree.merged
    )


def manual_steps(ticket: Ticket, error: str) -> str:
    branch = ticket.worktree.branch if ticket.worktree else "<branch>"
    return (
        f"Automatic merge failed: {error}\n\n"
        "To resolve manually:\n"
        "1. git checkout main && git pull\n"
        f"2. git merge --squash {branch}\n"
        "3. Resolve conflicts, commit and push main\n"
        f"4. factory unblock {ticket.id}"
    )


class MergeQueue:
    """Enqueues, drains and auto-merges ticket branches."""

    def __init__(self, ctx: FactoryContext):
        self.ctx = ctx
        self.store = ctx.store

    # --- Enqueue ---

    def detect_dev_signoffs(self) -> list[str]:
        """Queue a merge for every signed-off ticket without one. Returns ticket ids queued."""
        if not self.ctx.config.merge_after_dev_signoff:
            return []
        queued = []
        for ticket in self.store.tickets_by_status(IN_QA):
            if not needs_merge(ticket) or self.store.merge_by_ticket(ticket.id) is not None:
                continue
            entry = MergeQueueEntry(
                id=f"merge-{ticket.id}-{int(time.time())}",
                ticket_id=ticket.id,
                branch=ticket.worktree.branch,
            )
            if self.store.queue_merge(entry):
                queued.append(ticket.id)
                logger.info(f"[MERGE] Queued {entry.branch} for {ticket.id}")
        return queued

    # --- Drain ---

    def drain(self) -> int:
        """Process every pending entry, oldest first. Returns merges completed."""
        completed = 0
        for entry in self.store.pending_merges():
            if self.ctx.dispatcher.cancel.is_set():
                break
            if self._process(entry):
                completed += 1
        return completed

    def _process(self, entry: MergeQueueEntry) -> bool:
        ticket = self.store.get_ticket(entry.ticket_id)
        if ticket is None:
            logger.warning(f"[MERGE] {entry.id}: ticket {entry.ticket_id} is gone, failing entry")
            self.store.update_merge(entry.id, "failed", error="ticket not found")
            return False

        self.store.update_merge(entry.id, "in_progress")
        self.store.log_event(ticket.id, "merge_started", entry.branch)
        try:
            self.ctx.workspace.squash_merge(entry.branch, commit_message(ticket, merged_by=WORKTREE_ACTOR))
            self.ctx.workspace.push_main()
        except WorkspaceFailure as e:
            self._failed(entry, ticket, str(e))
            return False

        self.store.update_merge(entry.id, "completed")
        self.store.update_worktree_status(ticket.id, "merging")
        self.store.log_event(ticket.id, "merge_completed", entry.branch)
        self.store.mark_worktree(ticket.id, merged=True)
        open_thread(
            self.store, ticket.id, "qa_feedback", f"Main updated with {entry.branch}", WORKTREE_ACTOR,
            "Code merged to main - ready for QA",
        )
        logger.info(f"[MERGE] {ticket.id}: {entry.branch} merged into main")
        return True

    def _failed(self, entry: MergeQueueEntry, ticket: Ticket, error: str) -> None:
        attempts = entry.attempts + 1
        limit = self.ctx.config.max_merge_attempts
        if attempts < limit:
            logger.warning(f"[MERGE] {ticket.id}: attempt {attempts}/{limit} failed, will retry: {error}")
            self.store.update_merge(entry.id, "pending", error=error, attempts=attempts)
            return

        logger.error(f"[MERGE] {ticket.id}: giving up after {attempts} attempts: {error}")
        self.store.update_merge(entry.id, "failed", error=error, attempts=attempts)
        self.store.log_event(ticket.id, "merge_failed", error)
        block(
            self.store, ticket.id, f"Merge failed after {attempts} attempts", WORKTREE_ACTOR,
            details=manual_steps(ticket, error), escalate=True,
        )
        notifications.notify_merge_escalated(ticket.id, error)

    # --- Auto-merge ---

    def auto_merge(self) -> int:
        """Merge and retire the worktrees of done tickets. Returns tickets handled."""
        if not self.ctx.config.auto_merge:
            return 0
        handled = 0
        for ticket in self.store.tickets_by_status(DONE):
            if ticket.worktree is None or not ticket.worktree.active:
                continue
            try:
                self._auto_merge(ticket)
            except WorkspaceFailure as e:
                logger.warning(f"[MERGE] Auto-merge of {ticket.id} failed: {e}")
                continue
            handled += 1
        return handled

    def _auto_merge(self, ticket: Ticket) -> None:
        worktree = ticket.worktree
        if not worktree.merged:
            self.ctx.workspace.squash_merge(worktree.branch, commit_message(ticket))
            self.store.mark_worktree(ticket.id, merged=True)
            self.store.log_event(ticket.id, "merge_completed", worktree.branch)
        self.ctx.workspace.push_main()

        if self.ctx.config.cleanup_worktree_on_merge:
            self.ctx.workspace.remove_workspace(worktree.path, force=True)
            self.store.update_worktree_status(ticket.id, "removed")
            self.store.log_event(ticket.id, "removed", worktree.path)
        else:
            self.store.update_worktree_status(ticket.id, "cleanup_pending")
        self.store.mark_worktree(ticket.id, active=False)
        logger.info(f"[MERGE] Auto-merged {ticket.id}")
