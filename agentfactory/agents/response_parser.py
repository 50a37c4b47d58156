"""
Decode agent output into typed replies.

Agents answer in free text that ends with a JSON object, either in a fenced
```json block or bare. Earlier JSON in the text may be quoted context, so the
*last* object always wins.
"""

import json
import logging
import re
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from agentfactory.kanban.models import Bug, ExpertInput
from agentfactory.lib.constants import BUG_SEVERITIES, DOMAINS
from agentfactory.lib.errors import MalformedAgentOutput

logger = logging.getLogger(__name__)

FENCED_JSON = re.compile(r"```json[ \t]*\n(.*?)```", re.DOTALL)


def _balanced_end(text: str, start: int) -> int | None:
    """Index just past the brace matching text[start], honouring strings."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def _bare_objects(text: str) -> list[dict]:
    """Every top-level JSON object embedded in text, in order."""
    found = []
    i = text.find("{")
    while i != -1:
        end = _balanced_end(text, i)
        if end is not None:
            try:
                value = json.loads(text[i:end])
            except json.JSONDecodeError:
                value = None
            if isinstance(value, dict):
                found.append(value)
                i = text.find("{", end)
                continue
        i = text.find("{", i + 1)
    return found


def extract_json(text: str) -> dict | None:
    """
    Last JSON object in agent output.

    A fenced ```json block takes precedence over bare objects. Returns None
    when the text holds no decodable object.

    Examples:
        >>> extract_json('old: {"a": 1} new: {"a": 2}')
        {'a': 2}
    """
    for block in reversed(FENCED_JSON.findall(text)):
        try:
            value = json.loads(block.strip())
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value

    objects = _bare_objects(text)
    return objects[-1] if objects else None


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [str(v) for v in value]


class Reply(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# --- Facilitator ---


FacilitatorAction = Literal[
    "START_ROUND", "CONTINUE_ROUND", "FINALIZE_PRD", "REQUEST_USER_INPUT", "REQUEST_EXPERT",
]


class FacilitatorReply(Reply):
    """Round-start or synthesis decision from the PM facilitator."""
    action: FacilitatorAction
    synthesis: str = ""
    prd: Any = None
    prompt: str = ""
    focus_areas: dict[str, list[str]] = Field(default_factory=dict, alias="focusAreas")
    questions: list[str] = Field(default_factory=list)
    unresolved: list[str] = Field(default_factory=list, validation_alias=AliasChoices("unresolved", "blockers"))
    consult_question: str = Field(default="", validation_alias=AliasChoices("consultQuestion", "expertQuestion"))

    @field_validator("action", mode="before")
    @classmethod
    def _upper(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("focus_areas", mode="before")
    @classmethod
    def _focus(cls, v):
        if not v:
            return {}
        return {str(k): _as_list(areas) for k, areas in dict(v).items()}

    @field_validator("questions", "unresolved", mode="before")
    @classmethod
    def _lists(cls, v):
        return _as_list(v)


# --- Experts ---


class ExpertReply(Reply):
    response: str = ""
    key_points: list[str] = Field(default_factory=list, alias="keyPoints")
    concerns: list[str] = Field(default_factory=list)
    approves: bool = False
    questions_for_others: list[str] = Field(default_factory=list, alias="questionsForOthers")

    @field_validator("key_points", "concerns", "questions_for_others", mode="before")
    @classmethod
    def _lists(cls, v):
        return _as_list(v)


# --- Breakdown ---


class ChildSpec(Reply):
    title: str
    description: str = ""
    domain: str = ""
    files: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list, validation_alias=AliasChoices("dependencies", "deps"))
    acceptance_criteria: list[str] = Field(default_factory=list, alias="acceptanceCriteria")
    parallel_group: int = Field(default=0, alias="parallelGroup")
    technical_notes: str = Field(default="", validation_alias=AliasChoices("technicalNotes", "notes"))

    @field_validator("domain", mode="before")
    @classmethod
    def _domain(cls, v):
        v = (v or "").strip().lower()
        return v if v in DOMAINS else ""

    @field_validator("files", "dependencies", "acceptance_criteria", mode="before")
    @classmethod
    def _lists(cls, v):
        return _as_list(v)

    @field_validator("technical_notes", mode="before")
    @classmethod
    def _notes(cls, v):
        if isinstance(v, list):
            return "\n".join(str(n) for n in v)
        return v or ""


class ParallelGroup(Reply):
    group: int
    tickets: list[str] = Field(default_factory=list)


class BreakdownReply(Reply):
    tickets: list[ChildSpec] = Field(default_factory=list)
    parallel_groups: list[ParallelGroup] = Field(default_factory=list, alias="parallelGroups")


# --- Review signoff ---


class ReportedBug(Reply):
    severity: str = "medium"
    title: str = ""
    description: str = ""

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, v):
        v = (v or "").strip().lower()
        return v if v in BUG_SEVERITIES else "medium"


class SignoffReport(Reply):
    status: str = ""
    agent: str = ""
    ticket_id: str = Field(default="", validation_alias=AliasChoices("ticketId", "ticket_id"))
    summary: str = ""
    findings: list[str] = Field(default_factory=list)
    bugs: list[ReportedBug] = Field(default_factory=list)

    @field_validator("findings", mode="before")
    @classmethod
    def _lists(cls, v):
        return _as_list(v)


# --- Entry points ---


def _decode(kind: str, model: type[BaseModel], text: str):
    data = extract_json(text)
    if data is None:
        raise MalformedAgentOutput(kind, "no JSON object in output")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MalformedAgentOutput(kind, str(e).splitlines()[0]) from e


def parse_facilitator(text: str) -> FacilitatorReply:
    """
    Raises:
        MalformedAgentOutput: No JSON, or an unknown/missing action
    """
    return _decode("facilitator", FacilitatorReply, text)


def parse_breakdown(text: str) -> BreakdownReply:
    """
    Raises:
        MalformedAgentOutput: No JSON, or a child without a title
    """
    return _decode("breakdown", BreakdownReply, text)


def parse_expert(expert: str, text: str) -> ExpertInput:
    """Expert reply as an ExpertInput.

    Output without usable JSON is kept whole as the response so the round
    still gets the expert's view.
    """
    try:
        reply = _decode("expert", ExpertReply, text)
    except MalformedAgentOutput as e:
        logger.debug(f"[PRD] {expert} reply has no structured block ({e}), keeping raw text")
        return ExpertInput(expert=expert, response=text.strip())
    return ExpertInput(
        expert=expert,
        response=reply.response or text.strip(),
        key_points=reply.key_points,
        concerns=reply.concerns,
        approves=reply.approves,
        questions_for_others=reply.questions_for_others,
    )


def parse_signoff(text: str) -> SignoffReport | None:
    """Signoff report from a review agent, None if it sent none."""
    try:
        return _decode("signoff", SignoffReport, text)
    except MalformedAgentOutput as e:
        logger.debug(f"[REVIEW] No signoff report: {e}")
        return None


def report_bugs(report: SignoffReport | None, found_by: str, id_prefix: str) -> list[Bug]:
    """Bug records for every bug in a signoff report."""
    if report is None:
        return []
    return [
        Bug(
            id=f"{id_prefix}-{i}",
            severity=b.severity,
            title=b.title,
            description=b.description,
            found_by=found_by,
        )
        for i, b in enumerate(report.bugs, 1)
    ]
