"""
Agent command configuration.

Loads agents.yaml to determine which CLI command runs each agent role.
Without a config file every role uses the defaults below.

ROLE COMMAND TEMPLATES
======================

Each role maps to a CLI command template with {variable} substitution:

- {prompt}: The rendered prompt. If present in the template it is passed as a
  CLI argument; otherwise the prompt goes to the command's stdin.
- {worktree}: Workspace path for roles that edit code. Roles listed in
  ROLE_REQUIRED_VARIABLES must be given it.

Example agents.yaml:

    roles:
      dev_backend: codex exec --dangerously-bypass-approvals-and-sandbox -C {worktree} {prompt}
      prd_expert: claude -p --model sonnet --output-format json
"""

import logging
import re
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

PROMPT_PLACEHOLDER = "__PROMPT_PLACEHOLDER__"

_PLANNING = "claude -p --output-format json"
_EDITING = "claude -p --output-format json --permission-mode acceptEdits"

DEFAULT_ROLE_COMMANDS = {
    # Planning and deliberation: read-only, JSON replies
    "pm": _PLANNING,
    "pm_requirements": _PLANNING,
    "pm_facilitator": _PLANNING,
    "pm_breakdown": _PLANNING,
    "expert_consult": _PLANNING,
    "prd_expert": _PLANNING,

    # Development: edits code inside the ticket worktree
    "dev_frontend": _EDITING,
    "dev_backend": _EDITING,
    "dev_infra": _EDITING,

    # Review: reads the worktree, answers with a signoff report
    "qa": _PLANNING,
    "ux": _PLANNING,
    "security": _PLANNING,
}

# Roles whose command runs with the ticket worktree as cwd
WORKTREE_ROLES = ("dev_frontend", "dev_backend", "dev_infra", "qa", "ux", "security")

ROLE_REQUIRED_VARIABLES = {role: ["worktree"] for role in ("dev_frontend", "dev_backend", "dev_infra")}


@dataclass
class AgentsConfig:
    """Agent configuration from agents.yaml."""
    roles: dict[str, str] = field(default_factory=lambda: DEFAULT_ROLE_COMMANDS.copy())
    timeouts: dict[str, int] = field(default_factory=dict)


def load_agents_config(project_dir: Path | None) -> AgentsConfig:
    """Load agents.yaml and return AgentsConfig.

    If project_dir is None or the file doesn't exist, returns defaults. A
    malformed file is logged and ignored.
    """
    if project_dir is None:
        return AgentsConfig()

    config_path = project_dir / "agents.yaml"
    if not config_path.exists():
        return AgentsConfig()

    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return AgentsConfig()

    roles = DEFAULT_ROLE_COMMANDS.copy()
    unknown = set((data.get("roles") or {})) - set(DEFAULT_ROLE_COMMANDS)
    if unknown:
        logger.warning(f"Ignoring unknown roles in {config_path.name}: {sorted(unknown)}")
    roles.update({k: str(v) for k, v in (data.get("roles") or {}).items() if k in DEFAULT_ROLE_COMMANDS})

    timeouts = {}
    for role, seconds in (data.get("timeouts") or {}).items():
        try:
            timeouts[role] = int(seconds)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-integer timeout for {role}: {seconds!r}")
    return AgentsConfig(roles=roles, timeouts=timeouts)


@dataclass
class RoleCommand:
    """A role command ready for subprocess."""
    cmd: list[str]
    prompt_via_stdin: bool
    output_format: str | None     # "json" if --output-format json, else None

    def get_stdin_input(self, prompt: str) -> str | None:
        """Return prompt if it should be passed via stdin, else None."""
        return prompt if self.prompt_via_stdin else None


def _output_format(template: str) -> str | None:
    parts = shlex.split(template.replace("{prompt}", "X").replace("{worktree}", "/tmp"))
    for i, part in enumerate(parts):
        if part == "--output-format" and i + 1 < len(parts):
            return parts[i + 1]
        if part.startswith("--output-format="):
            return part.split("=", 1)[1]
    return None


def get_role_command(config: AgentsConfig, role: str, context: dict[str, str] | None = None) -> RoleCommand:
    """Build the command list for a role with variable substitution.

    Raises:
        ValueError: If the role is unknown or a required variable is missing

    Example:
        >>> cmd = get_role_command(AgentsConfig(), "pm_facilitator", {"prompt": "hi"})
        >>> cmd.cmd
        ['claude', '-p', '--output-format', 'json']
        >>> cmd.prompt_via_stdin
        True
    """
    if role not in config.roles:
        raise ValueError(f"Unknown role: {role}")

    context = context or {}
    missing = [v for v in ROLE_REQUIRED_VARIABLES.get(role, []) if v not in context]
    if missing:
        raise ValueError(f"Role '{role}' requires variables {missing} in context")

    template = config.roles[role]
    prompt_via_stdin = "{prompt}" not in template
    output_format = _output_format(template)

    # Substitute the prompt after shlex so quotes inside it survive
    template = template.replace("{prompt}", PROMPT_PLACEHOLDER)
    for key, value in context.items():
        if key != "prompt":
            template = template.replace(f"{{{key}}}", shlex.quote(value))

    remaining = re.findall(r"\{(\w+)\}", template)
    if remaining:
        logger.error(f"Role '{role}' has unsubstituted variables: {remaining}. Template: {template}")

    cmd = shlex.split(template)
    prompt = context.get("prompt")
    if prompt is not None:
        cmd = [prompt if arg == PROMPT_PLACEHOLDER else arg for arg in cmd]

    return RoleCommand(cmd=cmd, prompt_via_stdin=prompt_via_stdin, output_format=output_format)


def missing_binaries(config: AgentsConfig) -> dict[str, list[str]]:
    """Map each configured binary not on PATH to the roles that need it."""
    missing: dict[str, list[str]] = {}
    for role, template in config.roles.items():
        parts = shlex.split(template)
        binary = parts[0] if parts else ""
        if binary and shutil.which(binary) is None:
            missing.setdefault(binary, []).append(role)
    return missing
