"""
Data models for the kanban board.

Records are dataclasses serialised with camelCase keys, the format the board
file uses. Timestamps are ISO-8601 strings in UTC. Records only hold ids of
other tickets, never references to them.
"""

import copy
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any


def utcnow() -> str:
    """Current time as an ISO timestamp."""
    return datetime.now(timezone.utc).isoformat()


def parse_ts(value: str) -> datetime:
    """Parse an ISO timestamp, assuming UTC when no offset is present."""
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def age_seconds(value: str, now: datetime | None = None) -> float:
    """Seconds elapsed since an ISO timestamp."""
    now = now or datetime.now(timezone.utc)
    return (now - parse_ts(value)).total_seconds()


def _camel(name: str) -> str:
    first, *rest = name.split("_")
    return first + "".join(part.title() for part in rest)


def _dump(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, list):
        return [_dump(v) for v in value]
    if isinstance(value, dict):
        return {k: _dump(v) for k, v in value.items()}
    return copy.deepcopy(value)


class Record:
    """camelCase dict conversion for flat dataclass records.

    Records with nested records override from_dict.
    """

    def to_dict(self) -> dict:
        return {_camel(f.name): _dump(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict):
        kwargs = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key in data:
                kwargs[f.name] = copy.deepcopy(data[key])
        return cls(**kwargs)


# --- Collaboration ---


@dataclass
class ExpertInput(Record):
    """One expert's contribution to a round."""
    expert: str
    response: str = ""
    key_points: list[str] = field(default_factory=list)
    concerns: list[str] = field(default_factory=list)
    approves: bool = False
    questions_for_others: list[str] = field(default_factory=list)

    @property
    def has_response(self) -> bool:
        return bool(self.response.strip())


@dataclass
class Round(Record):
    """One iteration of the expert deliberation."""
    number: int
    prompt: str = ""
    focus_areas: dict[str, list[str]] = field(default_factory=dict)
    expert_inputs: dict[str, ExpertInput] = field(default_factory=dict)
    synthesis: str = ""
    timestamp: str = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: dict) -> "Round":
        rnd = super().from_dict({k: v for k, v in data.items() if k != "expertInputs"})
        rnd.expert_inputs = {
            name: ExpertInput.from_dict(inp)
            for name, inp in (data.get("expertInputs") or {}).items()
        }
        return rnd

    def responded(self) -> list[str]:
        """Experts with a non-empty response."""
        return [name for name, inp in self.expert_inputs.items() if inp.has_response]


@dataclass
class Collaboration(Record):
    """Multi-round PRD deliberation attached to a ticket."""
    rounds: list[Round] = field(default_factory=list)
    current_round: int = 0
    status: str = "in_progress"   # in_progress, consensus, forced_consensus, awaiting_user, blocked
    final_prd: Any = None
    children: list[str] = field(default_factory=list)
    open_questions: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=utcnow)
    completed_at: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Collaboration":
        collab = super().from_dict({k: v for k, v in data.items() if k != "rounds"})
        collab.rounds = [Round.from_dict(r) for r in data.get("rounds") or []]
        return collab

    def get_round(self, number: int) -> Round | None:
        for rnd in self.rounds:
            if rnd.number == number:
                return rnd
        return None

    def open_round(self, rnd: Round) -> None:
        """Append the next round, keeping numbering contiguous from 1."""
        expected = len(self.rounds) + 1
        if rnd.number != expected:
            raise ValueError(f"Round {rnd.number} out of sequence (expected {expected})")
        self.rounds.append(rnd)
        self.current_round = rnd.number


# --- Ticket ---


@dataclass
class Worktree(Record):
    path: str
    branch: str
    active: bool = True
    merged: bool = False


@dataclass
class Bug(Record):
    id: str
    severity: str                  # critical, high, medium, low
    title: str = ""
    description: str = ""
    found_by: str = ""
    found_at: str = field(default_factory=utcnow)
    fixed: bool = False


@dataclass
class Signoff(Record):
    agent: str
    at: str = field(default_factory=utcnow)


@dataclass
class HistoryEntry(Record):
    """One recorded status transition."""
    from_status: str
    status: str
    by: str
    note: str = ""
    at: str = field(default_factory=utcnow)


@dataclass
class Ticket(Record):
    """A unit of work on the board."""
    id: str
    title: str
    description: str = ""
    domain: str = ""               # frontend, backend, infra or unset
    status: str = "backlog"
    priority: int = 3              # 1 critical .. 4 low
    type: str = "feature"
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)
    parent_id: str = ""
    parallel_group: int = 0
    files: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    worktree: Worktree | None = None
    bugs: list[Bug] = field(default_factory=list)
    collaboration: Collaboration | None = None
    signoffs: dict[str, Signoff] = field(default_factory=dict)
    assigned_agent: str = ""
    current_activity: str = ""
    notes: str = ""
    history: list[HistoryEntry] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "Ticket":
        nested = ("worktree", "bugs", "collaboration", "signoffs", "history")
        ticket = super().from_dict({k: v for k, v in data.items() if k not in nested})
        if data.get("worktree"):
            ticket.worktree = Worktree.from_dict(data["worktree"])
        ticket.bugs = [Bug.from_dict(b) for b in data.get("bugs") or []]
        if data.get("collaboration"):
            ticket.collaboration = Collaboration.from_dict(data["collaboration"])
        ticket.signoffs = {
            stage: Signoff.from_dict(s) for stage, s in (data.get("signoffs") or {}).items()
        }
        ticket.history = [HistoryEntry.from_dict(h) for h in data.get("history") or []]
        return ticket

    def open_bugs(self, severities: tuple[str, ...] | None = None) -> list[Bug]:
        return [
            b for b in self.bugs
            if not b.fixed and (severities is None or b.severity in severities)
        ]


# --- Runs, merge queue, worktree pool ---


@dataclass
class AgentRun(Record):
    """A single agent invocation."""
    id: str
    agent: str                     # role tag, e.g. dev_backend, prd-security
    ticket_id: str
    workspace: str = ""
    started_at: str = field(default_factory=utcnow)
    completed_at: str = ""
    status: str = "running"        # running, success, failed
    output: str = ""
    error: str = ""


@dataclass
class MergeQueueEntry(Record):
    id: str
    ticket_id: str
    branch: str
    status: str = "pending"        # pending, in_progress, completed, failed
    attempts: int = 0
    last_error: str = ""
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)


@dataclass
class WorktreePoolEntry(Record):
    ticket_id: str
    branch: str
    path: str
    agent: str = ""
    status: str = "active"         # active, merging, cleanup_pending, removed
    created_at: str = field(default_factory=utcnow)
    last_activity: str = field(default_factory=utcnow)


@dataclass
class WorktreeEvent(Record):
    ticket_id: str
    event: str                     # created, merge_started, merge_completed, ...
    details: str = ""
    at: str = field(default_factory=utcnow)


# --- Conversations ---


@dataclass
class Message(Record):
    id: str
    agent: str
    type: str                      # question, response, decision, status_update, blocker, signoff_report
    content: str
    at: str = field(default_factory=utcnow)


@dataclass
class Conversation(Record):
    """A discussion thread attached to a ticket."""
    id: str
    ticket_id: str
    type: str
    title: str
    status: str = "open"           # open, resolved, escalated
    messages: list[Message] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: dict) -> "Conversation":
        conv = super().from_dict({k: v for k, v in data.items() if k != "messages"})
        conv.messages = [Message.from_dict(m) for m in data.get("messages") or []]
        return conv


@dataclass
class PMCheckin(Record):
    id: str
    ticket_id: str
    type: str                      # progress, guidance, blocker, review
    progress: int = 0
    concerns: list[str] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)
    summary: str = ""
    conversation_id: str = ""
    created_at: str = field(default_factory=utcnow)
