"""
Workspace reconciler.

Keeps the worktree pool in step with the board: drains the merge queue,
queues merges for newly signed-off tickets, reports when the pool is full
while work waits, and removes worktrees of finished tickets.
"""

import logging

from agentfactory.background.manager import BackgroundAgent
from agentfactory.kanban.status import TicketState
from agentfactory.lib.errors import WorkspaceFailure
from agentfactory.workflow.merge_queue import MergeQueue

logger = logging.getLogger(__name__)

DONE = TicketState.DONE.value
READY = TicketState.READY.value


class WorkspaceReconciler(BackgroundAgent):
    """Merge queue, pool limits and worktree cleanup."""

    agent_type = "workspace"
    period = 30.0

    def __init__(self, ctx, merges: MergeQueue | None = None):
        super().__init__(ctx)
        self.merges = merges or MergeQueue(ctx)
        self._limited: set[str] = set()

    def run_once(self) -> None:
        self.set_activity("Draining merge queue")
        self.merges.drain()
        self.set_activity("Detecting dev signoffs")
        self.merges.detect_dev_signoffs()
        self.enforce_limits()
        self.set_activity("Cleaning up worktrees")
        self.cleanup()
        stats = self.store.pool_stats()
        logger.debug("[WORKTREE] Pool: " + ", ".join(f"{k}={v}" for k, v in stats.items()))

    def can_start_dev_work(self) -> bool:
        return self.store.active_worktree_count() < self.ctx.config.max_global_worktrees

    def enforce_limits(self) -> list[str]:
        """Log a limit event for each ready ticket newly held back by a full pool."""
        if self.can_start_dev_work():
            self._limited.clear()
            return []
        waiting = [t.id for t in self.store.tickets_by_status(READY)]
        newly = [tid for tid in waiting if tid not in self._limited]
        active = self.store.active_worktree_count()
        for ticket_id in newly:
            self.store.log_event(ticket_id, "limit_enforced",
                                 f"{active}/{self.ctx.config.max_global_worktrees} worktrees active")
        if newly:
            logger.info(f"[WORKTREE] Pool full ({active}), {len(waiting)} ready ticket(s) waiting")
        self._limited = set(waiting)
        return newly

    def cleanup(self) -> list[str]:
        """Remove worktrees of done tickets. Returns ticket ids cleaned up."""
        cleaned = []
        for entry in self.store.worktree_pool():
            ticket = self.store.get_ticket(entry.ticket_id)
            if ticket is None or ticket.status != DONE:
                continue
            if entry.status == "merging":
                self.store.update_worktree_status(entry.ticket_id, "cleanup_pending")
                entry.status = "cleanup_pending"
            if entry.status != "cleanup_pending":
                continue
            try:
                self.ctx.workspace.remove_workspace(entry.path, force=True)
            except WorkspaceFailure as e:
                logger.warning(f"[WORKTREE] Cleanup of {entry.ticket_id} failed: {e}")
                continue
            self.store.update_worktree_status(entry.ticket_id, "removed")
            self.store.log_event(entry.ticket_id, "cleaned_up", entry.path)
            self.store.mark_worktree(entry.ticket_id, active=False)
            cleaned.append(entry.ticket_id)
        if cleaned:
            logger.info(f"[WORKTREE] Cleaned up {', '.join(cleaned)}")
        return cleaned
