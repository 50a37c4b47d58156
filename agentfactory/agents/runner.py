"""
Agent runner: the single seam between the orchestration core and agents.

The core only ever calls ``dispatch(role, prompt_data, workspace_path)``.
The role tag is the whole coupling: which CLI runs, where, and what reply
format is expected all follow from it.
"""

import json
import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from agentfactory.lib.agents_config import WORKTREE_ROLES, AgentsConfig, get_role_command
from agentfactory.lib.errors import Cancelled

logger = logging.getLogger(__name__)

# How often a running subprocess is checked for cancellation
POLL_INTERVAL = 0.5


class Role(Enum):
    """Closed set of agent roles."""
    PM = "pm"
    PM_REQUIREMENTS = "pm_requirements"
    PM_FACILITATOR = "pm_facilitator"
    PM_BREAKDOWN = "pm_breakdown"
    EXPERT_CONSULT = "expert_consult"
    PRD_EXPERT = "prd_expert"
    DEV_FRONTEND = "dev_frontend"
    DEV_BACKEND = "dev_backend"
    DEV_INFRA = "dev_infra"
    QA = "qa"
    UX = "ux"
    SECURITY = "security"

    @property
    def is_dev(self) -> bool:
        return self.value.startswith("dev_")

    @classmethod
    def for_domain(cls, domain: str) -> "Role":
        """Development role for a ticket domain; unset means backend."""
        return {
            "frontend": cls.DEV_FRONTEND,
            "infra": cls.DEV_INFRA,
        }.get(domain, cls.DEV_BACKEND)


@dataclass
class PromptData:
    """Everything an agent is told about its task."""
    ticket: dict = field(default_factory=dict)
    conversation: list[dict] = field(default_factory=list)
    current_round: int = 0
    current_prompt: str = ""
    expert: str = ""
    focus_areas: list[str] = field(default_factory=list)
    board_stats: dict[str, int] = field(default_factory=dict)
    prd: Any = None
    final_inputs: dict[str, dict] = field(default_factory=dict)
    questions: list[str] = field(default_factory=list)
    mode: str = ""

    def to_dict(self) -> dict:
        data = {
            "ticket": self.ticket,
            "conversation": self.conversation,
            "currentRound": self.current_round,
            "currentPrompt": self.current_prompt,
            "expert": self.expert,
            "focusAreas": self.focus_areas,
            "boardStats": self.board_stats,
            "prd": self.prd,
            "finalInputs": self.final_inputs,
            "questions": self.questions,
            "mode": self.mode,
        }
        return {k: v for k, v in data.items() if v not in (None, "", [], {}, 0)}


@dataclass
class AgentResult:
    """Outcome of one agent invocation."""
    success: bool
    output: str = ""
    error: str = ""
    token_stats: dict[str, int] = field(default_factory=dict)


class AgentRunner(Protocol):
    def dispatch(
        self,
        role: Role,
        prompt_data: PromptData,
        workspace_path: str = "",
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> AgentResult: ...


# One-line task statement per role, followed by the JSON context
ROLE_INSTRUCTIONS = {
    Role.PM: "You are the product manager. Review the ticket and report status as JSON.",
    Role.PM_REQUIREMENTS: "Turn the ticket into clear requirements. Reply with JSON.",
    Role.PM_FACILITATOR: (
        "You facilitate a PRD discussion between dev, qa, ux and security experts. "
        "Reply with a JSON object {action, prompt, focusAreas, synthesis, prd, questions} where "
        "action is START_ROUND, CONTINUE_ROUND, FINALIZE_PRD, REQUEST_USER_INPUT or REQUEST_EXPERT."
    ),
    Role.PM_BREAKDOWN: (
        "Break the final PRD into independently developable tickets. Reply with JSON "
        "{tickets: [{title, description, domain, files, dependencies, acceptanceCriteria, "
        "parallelGroup, technicalNotes}], parallelGroups: [{group, tickets}]}."
    ),
    Role.EXPERT_CONSULT: "Answer the facilitator's question for the PRD discussion. Plain text is fine.",
    Role.PRD_EXPERT: (
        "You are the {expert} expert in a PRD discussion. Reply with JSON "
        "{response, keyPoints, concerns, approves, questionsForOthers}."
    ),
    Role.DEV_FRONTEND: "Implement the ticket in this worktree and commit your work.",
    Role.DEV_BACKEND: "Implement the ticket in this worktree and commit your work.",
    Role.DEV_INFRA: "Implement the ticket in this worktree and commit your work.",
    Role.QA: "Test the ticket's changes. Reply with a signoff report JSON {status, summary, findings, bugs}.",
    Role.UX: "Review the ticket's user experience. Reply with a signoff report JSON {status, summary, findings, bugs}.",
    Role.SECURITY: "Audit the ticket's changes for security issues. Reply with a signoff report JSON {status, summary, findings, bugs}.",
}


def render_prompt(role: Role, data: PromptData) -> str:
    """Prompt text for a role: the task statement plus the JSON context."""
    instruction = ROLE_INSTRUCTIONS[role].replace("{expert}", data.expert or "assigned")
    return f"{instruction}\n\nContext:\n```json\n{json.dumps(data.to_dict(), indent=2, default=str)}\n```\n"


def unwrap_json_output(stdout: str) -> tuple[str, dict[str, int], str]:
    """Split a ``--output-format json`` wrapper into (text, token stats, error)."""
    try:
        wrapper = json.loads(stdout.strip())
    except json.JSONDecodeError:
        return stdout, {}, ""
    if not isinstance(wrapper, dict):
        return stdout, {}, ""
    usage = wrapper.get("usage") or {}
    stats = {k: v for k, v in usage.items() if isinstance(v, int)}
    error = str(wrapper.get("result", "")) if wrapper.get("is_error") else ""
    return str(wrapper.get("result", stdout)), stats, error


class CLIAgentRunner:
    """Runs each role as a configured CLI command (see agents.yaml).

    The rendered prompt goes to stdin unless the command template takes a
    {prompt} argument. Review and dev roles run inside the ticket worktree.
    """

    def __init__(self, config: AgentsConfig | None = None, default_cwd: Path | None = None):
        self.config = config or AgentsConfig()
        self.default_cwd = default_cwd

    def dispatch(
        self,
        role: Role,
        prompt_data: PromptData,
        workspace_path: str = "",
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> AgentResult:
        prompt = render_prompt(role, prompt_data)
        context = {"prompt": prompt}
        if workspace_path:
            context["worktree"] = workspace_path
        try:
            command = get_role_command(self.config, role.value, context)
        except ValueError as e:
            return AgentResult(success=False, error=str(e))

        cwd = workspace_path if (workspace_path and role.value in WORKTREE_ROLES) else self.default_cwd
        timeout = self.config.timeouts.get(role.value, timeout)

        # Remove ANTHROPIC_API_KEY so the CLI uses its own login
        env = {k: v for k, v in os.environ.items() if k != "ANTHROPIC_API_KEY"}

        logger.debug(f"[AGENT] {role.value}: {' '.join(command.cmd[:3])}...")
        try:
            proc = subprocess.Popen(
                command.cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                cwd=cwd,
                env=env,
            )
        except FileNotFoundError:
            return AgentResult(success=False, error=f"Agent CLI not found: {command.cmd[0]}")
        except OSError as e:
            return AgentResult(success=False, error=f"Failed to start {command.cmd[0]}: {e}")

        stdout, stderr = self._wait(proc, command.get_stdin_input(prompt), cancel, timeout)
        if stdout is None:
            return AgentResult(success=False, error=f"timeout after {timeout:.0f}s")

        if proc.returncode != 0:
            message = stderr.strip() or stdout.strip() or "(no output)"
            return AgentResult(success=False, output=stdout, error=f"exit {proc.returncode}: {message}")

        if command.output_format == "json":
            text, stats, error = unwrap_json_output(stdout)
            if error:
                return AgentResult(success=False, output=text, error=error, token_stats=stats)
            return AgentResult(success=True, output=text, token_stats=stats)
        return AgentResult(success=True, output=stdout)

    def _wait(self, proc, stdin_input, cancel, timeout):
        """Communicate with proc, killing it on cancel or timeout.

        Returns (None, None) on timeout.

        Raises:
            Cancelled: If the cancel event fired
        """
        deadline = time.monotonic() + timeout if timeout else None
        pending_input = stdin_input
        while True:
            try:
                return proc.communicate(input=pending_input, timeout=POLL_INTERVAL)
            except subprocess.TimeoutExpired:
                # Input is only sent on the first call
                pending_input = None
            if cancel is not None and cancel.is_set():
                proc.kill()
                proc.communicate()
                raise Cancelled("agent cancelled")
            if deadline is not None and time.monotonic() >= deadline:
                proc.kill()
                proc.communicate()
                return None, None
