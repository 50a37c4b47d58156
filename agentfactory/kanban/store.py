"""
Board store: tickets, agent runs, merge queue, worktree pool, events,
conversations, check-ins and configuration.

``BoardStore`` keeps the board in memory behind a re-entrant lock and, when
given a path, persists every mutation to a JSON board file. Each public
method is atomic for the records it touches. Readers always receive copies,
so callers can never mutate shared state without going through the store.

The CLI and the orchestrator write the same file from separate processes.
Every write is a read-modify-write under the board file lock, so a change
made by one process is picked up, not overwritten, by the next writer.
"""

import copy
import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Protocol, TypeVar

from agentfactory.kanban.models import (
    AgentRun,
    Bug,
    Collaboration,
    Conversation,
    ExpertInput,
    HistoryEntry,
    Message,
    MergeQueueEntry,
    PMCheckin,
    Ticket,
    WorktreeEvent,
    WorktreePoolEntry,
    age_seconds,
    utcnow,
)
from agentfactory.lib.errors import StoreUnavailable
from agentfactory.lib.validate import ValidationError, validate_board
from agentfactory.runner.locking import LockTimeout, board_lock

logger = logging.getLogger(__name__)

BOARD_VERSION = 1

# Role tags of development-class agents
DEV_AGENT_PREFIX = "dev_"

T = TypeVar("T")


class Store(Protocol):
    """Operations the orchestration core needs from persistent storage."""

    def reload(self) -> None: ...
    def create_ticket(self, ticket: Ticket) -> None: ...
    def get_ticket(self, ticket_id: str) -> Ticket | None: ...
    def list_tickets(self) -> list[Ticket]: ...
    def tickets_by_status(self, status: str) -> list[Ticket]: ...
    def update_status(self, ticket_id: str, status: str, by: str, note: str = "") -> str: ...
    def mutate_ticket(self, ticket_id: str, fn: Callable[[Ticket], T]) -> T: ...
    def add_run(self, run: AgentRun) -> None: ...
    def complete_run(self, run_id: str, status: str, output: str = "", error: str = "") -> None: ...
    def active_runs(self) -> list[AgentRun]: ...
    def stats(self) -> dict[str, int]: ...
    def get_config_value(self, key: str) -> str | None: ...


class BoardStore:
    """Thread-safe board with optional JSON file persistence.

    Usage:
        store = BoardStore(Path("board.json"))
        store.load()
        store.create_ticket(Ticket(id="T-1", title="Login page"))
    """

    def __init__(self, path: Path | None = None):
        self.path = path
        self._lock = threading.RLock()
        self._tickets: dict[str, Ticket] = {}
        self._runs: dict[str, AgentRun] = {}
        self._merge_queue: dict[str, MergeQueueEntry] = {}
        self._pool: dict[str, WorktreePoolEntry] = {}
        self._events: list[WorktreeEvent] = []
        self._conversations: dict[str, Conversation] = {}
        self._checkins: list[PMCheckin] = []
        self._config: dict[str, str] = {}
        self._loaded_stamp: tuple[int, int, int] | None = None
        self._in_update = False
        self._seq = 0

    # --- Persistence ---

    def load(self) -> list[str]:
        """Load the board file, replacing in-memory state.

        Returns integrity warnings (dangling parent links).

        Raises:
            StoreUnavailable: If the file is unreadable or fails validation
        """
        if self.path is None or not self.path.exists():
            return []
        # Held across read and swap so no in-process write lands in between
        with self._lock:
            try:
                with board_lock(self.path):
                    data, warnings, stamp = self._read_locked()
            except LockTimeout as e:
                raise StoreUnavailable(f"Cannot load board {self.path}: {e}") from e
            self._apply(data, stamp)

        for warning in warnings:
            logger.warning(f"[STORE] {warning}")
        return warnings

    def reload(self) -> None:
        """Pick up changes written to the board file by another process."""
        if self.path is None or not self.path.exists():
            return
        with self._lock:
            if self._file_stamp() != self._loaded_stamp:
                logger.debug(f"[STORE] {self.path.name} changed on disk, reloading")
                self.load()

    def _file_stamp(self) -> tuple[int, int, int]:
        """Identity of the current board file. Every write replaces the inode."""
        try:
            st = self.path.stat()
        except OSError as e:
            raise StoreUnavailable(f"Cannot stat board {self.path}: {e}") from e
        return (st.st_mtime_ns, st.st_size, st.st_ino)

    def _read_locked(self) -> tuple[dict, list[str], tuple[int, int, int]]:
        """Read and validate the board file. Caller holds the board lock."""
        try:
            stamp = self._file_stamp()
            data = json.loads(self.path.read_text())
            warnings = validate_board(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise StoreUnavailable(f"Cannot load board {self.path}: {e}") from e
        return data, warnings, stamp

    def _apply(self, data: dict, stamp: tuple[int, int, int]) -> None:
        """Replace in-memory state with a validated board document."""
        self._tickets = {t["id"]: Ticket.from_dict(t) for t in data["tickets"]}
        self._runs = {r["id"]: AgentRun.from_dict(r) for r in data.get("runs", [])}
        self._merge_queue = {m["id"]: MergeQueueEntry.from_dict(m) for m in data.get("mergeQueue", [])}
        self._pool = {p["ticketId"]: WorktreePoolEntry.from_dict(p) for p in data.get("worktreePool", [])}
        self._events = [WorktreeEvent.from_dict(e) for e in data.get("events", [])]
        self._conversations = {c["id"]: Conversation.from_dict(c) for c in data.get("conversations", [])}
        self._checkins = [PMCheckin.from_dict(c) for c in data.get("checkins", [])]
        self._config = dict(data.get("config", {}))
        self._loaded_stamp = stamp

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "version": BOARD_VERSION,
                "tickets": [t.to_dict() for t in self._tickets.values()],
                "runs": [r.to_dict() for r in self._runs.values()],
                "mergeQueue": [m.to_dict() for m in self._merge_queue.values()],
                "worktreePool": [p.to_dict() for p in self._pool.values()],
                "events": [e.to_dict() for e in self._events],
                "conversations": [c.to_dict() for c in self._conversations.values()],
                "checkins": [c.to_dict() for c in self._checkins],
                "config": dict(self._config),
            }

    @contextmanager
    def _update(self):
        """Read-modify-write section for one mutation.

        Holds the board lock from the freshness check to the atomic replace:
        if another process wrote the file since we last saw it, its state is
        loaded first and the mutation applies on top of it. Nested sections
        join the outermost one. An exception in the body skips the write.
        """
        with self._lock:
            if self.path is None or self._in_update:
                yield
                return
            self._in_update = True
            try:
                with board_lock(self.path):
                    if self.path.exists() and self._file_stamp() != self._loaded_stamp:
                        logger.debug(f"[STORE] {self.path.name} changed on disk, refreshing before write")
                        data, _, stamp = self._read_locked()
                        self._apply(data, stamp)
                    yield
                    self._write_locked()
            except LockTimeout as e:
                raise StoreUnavailable(f"Cannot write board {self.path}: {e}") from e
            finally:
                self._in_update = False

    def _write_locked(self) -> None:
        """Replace the board file atomically. Caller holds the board lock."""
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            tmp_path.write_text(json.dumps(self.to_dict(), indent=2))
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StoreUnavailable(f"Cannot write board {self.path}: {e}") from e
        self._loaded_stamp = self._file_stamp()

    def next_id(self, prefix: str) -> str:
        """Unique id for store-generated records, across processes sharing a board."""
        with self._lock:
            self._seq += 1
            return f"{prefix}-{int(time.time())}-{os.getpid()}-{self._seq}"

    # --- Tickets ---

    def create_ticket(self, ticket: Ticket) -> None:
        with self._update():
            if ticket.id in self._tickets:
                raise ValueError(f"Ticket {ticket.id} already exists")
            self._tickets[ticket.id] = copy.deepcopy(ticket)

    def get_ticket(self, ticket_id: str) -> Ticket | None:
        with self._lock:
            ticket = self._tickets.get(ticket_id)
            return copy.deepcopy(ticket) if ticket else None

    def list_tickets(self) -> list[Ticket]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._tickets.values()]

    def tickets_by_status(self, status: str) -> list[Ticket]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._tickets.values() if t.status == status]

    def tickets_by_prefix(self, prefix: str) -> list[Ticket]:
        """Tickets whose status starts with ``prefix`` (e.g. every refining round)."""
        with self._lock:
            return [copy.deepcopy(t) for t in self._tickets.values() if t.status.startswith(prefix)]

    def tickets_by_parent(self, parent_id: str) -> list[Ticket]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._tickets.values() if t.parent_id == parent_id]

    def ticket_by_title(self, title: str) -> Ticket | None:
        with self._lock:
            for ticket in self._tickets.values():
                if ticket.title == title:
                    return copy.deepcopy(ticket)
        return None

    def mutate_ticket(self, ticket_id: str, fn: Callable[[Ticket], T]) -> T:
        """Apply ``fn`` to the stored ticket atomically and persist.

        Raises:
            KeyError: If the ticket doesn't exist
        """
        with self._update():
            current = self._tickets.get(ticket_id)
            if current is None:
                raise KeyError(f"Ticket {ticket_id} not found")
            # Work on a copy so a failing fn leaves the ticket untouched
            ticket = copy.deepcopy(current)
            result = fn(ticket)
            ticket.updated_at = utcnow()
            self._tickets[ticket_id] = ticket
            return copy.deepcopy(result)

    def update_status(self, ticket_id: str, status: str, by: str, note: str = "") -> str:
        """Set status and append a history entry. Returns the previous status."""
        def apply(ticket: Ticket) -> str:
            previous = ticket.status
            ticket.status = status
            ticket.history.append(HistoryEntry(from_status=previous, status=status, by=by, note=note))
            return previous
        return self.mutate_ticket(ticket_id, apply)

    def update_activity(self, ticket_id: str, activity: str, assignee: str = "") -> None:
        def apply(ticket: Ticket) -> None:
            ticket.current_activity = activity
            if assignee:
                ticket.assigned_agent = assignee
        self.mutate_ticket(ticket_id, apply)

    def clear_activity(self, ticket_id: str) -> None:
        self.mutate_ticket(ticket_id, lambda t: setattr(t, "current_activity", ""))

    def mark_worktree(self, ticket_id: str, active: bool | None = None, merged: bool | None = None) -> None:
        def apply(ticket: Ticket) -> None:
            if ticket.worktree is None:
                return
            if active is not None:
                ticket.worktree.active = active
            if merged is not None:
                ticket.worktree.merged = merged
        self.mutate_ticket(ticket_id, apply)

    def add_bug(self, ticket_id: str, bug: Bug) -> None:
        self.mutate_ticket(ticket_id, lambda t: t.bugs.append(copy.deepcopy(bug)))

    # --- Collaboration ---

    def record_expert_input(self, ticket_id: str, round_number: int, expert_input: ExpertInput) -> bool:
        """Store an expert's input into an existing round.

        Returns False when the round no longer exists.
        """
        def apply(ticket: Ticket) -> bool:
            rnd = ticket.collaboration.get_round(round_number) if ticket.collaboration else None
            if rnd is None:
                return False
            rnd.expert_inputs[expert_input.expert] = copy.deepcopy(expert_input)
            return True
        return self.mutate_ticket(ticket_id, apply)

    def add_children(self, parent_id: str, children: list[Ticket]) -> list[str]:
        """Create child tickets and record them on the parent in one step.

        Children whose id already exists are skipped. Returns the ids created.
        """
        with self._update():
            parent = self._tickets.get(parent_id)
            if parent is None:
                raise KeyError(f"Ticket {parent_id} not found")
            if parent.collaboration is None:
                parent.collaboration = Collaboration()
            created = []
            for child in children:
                if child.id in self._tickets:
                    logger.warning(f"[STORE] Child {child.id} already exists, skipping")
                    continue
                self._tickets[child.id] = copy.deepcopy(child)
                created.append(child.id)
                if child.id not in parent.collaboration.children:
                    parent.collaboration.children.append(child.id)
            parent.updated_at = utcnow()
            return created

    # --- Agent runs ---

    def add_run(self, run: AgentRun) -> None:
        with self._update():
            if run.id in self._runs:
                raise ValueError(f"Run {run.id} already registered")
            self._runs[run.id] = copy.deepcopy(run)

    def complete_run(self, run_id: str, status: str, output: str = "", error: str = "") -> None:
        """Move a running run to a terminal status. Terminal runs are never changed."""
        with self._update():
            run = self._runs.get(run_id)
            if run is None:
                logger.warning(f"[STORE] complete_run: unknown run {run_id}")
                return
            if run.status != "running":
                logger.debug(f"[STORE] Run {run_id} already {run.status}, ignoring {status}")
                return
            run.status = status
            run.output = output
            run.error = error
            run.completed_at = utcnow()

    def get_run(self, run_id: str) -> AgentRun | None:
        with self._lock:
            run = self._runs.get(run_id)
            return copy.deepcopy(run) if run else None

    def active_runs(self) -> list[AgentRun]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._runs.values() if r.status == "running"]

    def active_runs_for_ticket(self, ticket_id: str) -> list[AgentRun]:
        return [r for r in self.active_runs() if r.ticket_id == ticket_id]

    def active_dev_runs(self) -> list[AgentRun]:
        return [r for r in self.active_runs() if r.agent.startswith(DEV_AGENT_PREFIX)]

    def runs_for_ticket(self, ticket_id: str) -> list[AgentRun]:
        """All runs for a ticket in registration order."""
        with self._lock:
            return [copy.deepcopy(r) for r in self._runs.values() if r.ticket_id == ticket_id]

    def is_agent_running(self, ticket_id: str, agent: str) -> bool:
        return any(r.agent == agent for r in self.active_runs_for_ticket(ticket_id))

    def fail_running_runs(self, error: str, older_than_seconds: float | None = None) -> list[AgentRun]:
        """Fail running runs (all, or only those older than a threshold)."""
        def due(run: AgentRun) -> bool:
            if run.status != "running":
                return False
            return older_than_seconds is None or age_seconds(run.started_at) > older_than_seconds

        failed = []
        with self._lock:
            # Runs are only added by the orchestrator process
            if not any(due(r) for r in self._runs.values()):
                return failed
            with self._update():
                for run in self._runs.values():
                    if not due(run):
                        continue
                    run.status = "failed"
                    run.error = error
                    run.completed_at = utcnow()
                    failed.append(copy.deepcopy(run))
        return failed

    # --- Board statistics ---

    def stats(self) -> dict[str, int]:
        """Ticket count per status string."""
        counts: dict[str, int] = {}
        with self._lock:
            for ticket in self._tickets.values():
                counts[ticket.status] = counts.get(ticket.status, 0) + 1
        return counts

    # --- Merge queue ---

    def queue_merge(self, entry: MergeQueueEntry) -> bool:
        """Enqueue a merge unless the ticket already has an entry."""
        with self._update():
            if any(m.ticket_id == entry.ticket_id for m in self._merge_queue.values()):
                return False
            self._merge_queue[entry.id] = copy.deepcopy(entry)
            return True

    def pending_merges(self) -> list[MergeQueueEntry]:
        """Pending entries, oldest first."""
        with self._lock:
            pending = [copy.deepcopy(m) for m in self._merge_queue.values() if m.status == "pending"]
        return sorted(pending, key=lambda m: m.created_at)

    def requeue_interrupted_merges(self, error: str) -> list[MergeQueueEntry]:
        """Return in-progress entries to pending. Attempts are left as they were."""
        requeued = []
        with self._update():
            for entry in self._merge_queue.values():
                if entry.status != "in_progress":
                    continue
                entry.status = "pending"
                entry.last_error = error
                entry.updated_at = utcnow()
                requeued.append(copy.deepcopy(entry))
        return requeued

    def merge_queue(self) -> list[MergeQueueEntry]:
        with self._lock:
            return [copy.deepcopy(m) for m in self._merge_queue.values()]

    def merge_by_ticket(self, ticket_id: str) -> MergeQueueEntry | None:
        with self._lock:
            for entry in self._merge_queue.values():
                if entry.ticket_id == ticket_id:
                    return copy.deepcopy(entry)
        return None

    def update_merge(self, merge_id: str, status: str, error: str = "", attempts: int | None = None) -> None:
        """Update a merge entry. Completed and failed entries are terminal."""
        with self._update():
            entry = self._merge_queue.get(merge_id)
            if entry is None:
                raise KeyError(f"Merge {merge_id} not found")
            if entry.status in ("completed", "failed"):
                raise ValueError(f"Merge {merge_id} is {entry.status} and cannot change")
            entry.status = status
            if error:
                entry.last_error = error
            if attempts is not None:
                if attempts < entry.attempts:
                    raise ValueError(f"Merge {merge_id} attempts cannot decrease")
                entry.attempts = attempts
            entry.updated_at = utcnow()

    # --- Worktree pool ---

    def register_worktree(self, entry: WorktreePoolEntry) -> None:
        with self._update():
            self._pool[entry.ticket_id] = copy.deepcopy(entry)

    def worktree_pool(self) -> list[WorktreePoolEntry]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._pool.values()]

    def worktree_by_ticket(self, ticket_id: str) -> WorktreePoolEntry | None:
        with self._lock:
            entry = self._pool.get(ticket_id)
            return copy.deepcopy(entry) if entry else None

    def update_worktree_status(self, ticket_id: str, status: str) -> None:
        with self._update():
            entry = self._pool.get(ticket_id)
            if entry is None:
                logger.debug(f"[STORE] No pool entry for {ticket_id}")
                return
            entry.status = status
            entry.last_activity = utcnow()

    def active_worktree_count(self) -> int:
        with self._lock:
            return sum(1 for p in self._pool.values() if p.status == "active")

    def pool_stats(self) -> dict[str, int]:
        counts = {"active": 0, "merging": 0, "cleanup_pending": 0, "removed": 0}
        with self._lock:
            for entry in self._pool.values():
                counts[entry.status] = counts.get(entry.status, 0) + 1
        return counts

    # --- Event log ---

    def log_event(self, ticket_id: str, event: str, details: str = "") -> None:
        with self._update():
            self._events.append(WorktreeEvent(ticket_id=ticket_id, event=event, details=details))

    def events(self, ticket_id: str | None = None) -> list[WorktreeEvent]:
        with self._lock:
            return [
                copy.deepcopy(e) for e in self._events
                if ticket_id is None or e.ticket_id == ticket_id
            ]

    # --- Conversations ---

    def create_conversation(self, conversation: Conversation) -> None:
        with self._update():
            if conversation.id in self._conversations:
                raise ValueError(f"Conversation {conversation.id} already exists")
            self._conversations[conversation.id] = copy.deepcopy(conversation)

    def add_message(self, conversation_id: str, message: Message) -> None:
        with self._update():
            conv = self._conversations.get(conversation_id)
            if conv is None:
                raise KeyError(f"Conversation {conversation_id} not found")
            conv.messages.append(copy.deepcopy(message))

    def update_conversation_status(self, conversation_id: str, status: str) -> None:
        with self._update():
            conv = self._conversations.get(conversation_id)
            if conv is None:
                raise KeyError(f"Conversation {conversation_id} not found")
            conv.status = status

    def conversations_by_ticket(self, ticket_id: str) -> list[Conversation]:
        with self._lock:
            return [copy.deepcopy(c) for c in self._conversations.values() if c.ticket_id == ticket_id]

    # --- PM check-ins ---

    def add_checkin(self, checkin: PMCheckin) -> None:
        with self._update():
            self._checkins.append(copy.deepcopy(checkin))

    def last_checkin(self, ticket_id: str) -> PMCheckin | None:
        with self._lock:
            for checkin in reversed(self._checkins):
                if checkin.ticket_id == ticket_id:
                    return copy.deepcopy(checkin)
        return None

    # --- Configuration ---

    def get_config_value(self, key: str) -> str | None:
        with self._lock:
            return self._config.get(key)

    def set_config(self, key: str, value: str) -> None:
        with self._update():
            self._config[key] = str(value)

    def config_values(self) -> dict[str, str]:
        with self._lock:
            return dict(self._config)

