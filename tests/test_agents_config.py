"""Tests for agents.yaml loading and role command building."""

import shlex
from unittest.mock import patch

import pytest

from agentfactory.lib.agents_config import (
    DEFAULT_ROLE_COMMANDS,
    AgentsConfig,
    get_role_command,
    load_agents_config,
    missing_binaries,
)


class TestLoadAgentsConfig:
    """Tests for load_agents_config()."""

    def test_none_returns_defaults(self):
        config = load_agents_config(None)
        assert config.roles == DEFAULT_ROLE_COMMANDS
        assert config.timeouts == {}

    def test_missing_file_returns_defaults(self, tmp_path):
        assert load_agents_config(tmp_path).roles == DEFAULT_ROLE_COMMANDS

    def test_custom_role_overrides_default(self, tmp_path):
        """Should override only the roles named in the file."""
        (tmp_path / "agents.yaml").write_text(
            "roles:\n"
            "  dev_backend: codex exec -C {worktree} {prompt}\n"
            "timeouts:\n"
            "  dev_backend: 3600\n"
        )
        config = load_agents_config(tmp_path)

        assert config.roles["dev_backend"] == "codex exec -C {worktree} {prompt}"
        assert config.roles["qa"] == DEFAULT_ROLE_COMMANDS["qa"]
        assert config.timeouts == {"dev_backend": 3600}

    def test_unknown_role_warns(self, tmp_path, caplog):
        (tmp_path / "agents.yaml").write_text("roles:\n  designer: figma-cli\n")
        config = load_agents_config(tmp_path)

        assert "designer" not in config.roles
        assert "Ignoring unknown roles" in caplog.text

    def test_non_integer_timeout_skipped(self, tmp_path, caplog):
        (tmp_path / "agents.yaml").write_text("timeouts:\n  qa: soon\n  ux: '600'\n")
        config = load_agents_config(tmp_path)

        assert config.timeouts == {"ux": 600}
        assert "non-integer timeout for qa" in caplog.text

    def test_invalid_yaml_returns_defaults(self, tmp_path, caplog):
        (tmp_path / "agents.yaml").write_text("roles: [unclosed\n")
        assert load_agents_config(tmp_path).roles == DEFAULT_ROLE_COMMANDS
        assert "Failed to parse" in caplog.text

    def test_empty_file(self, tmp_path):
        (tmp_path / "agents.yaml").write_text("")
        assert load_agents_config(tmp_path) == AgentsConfig()


class TestGetRoleCommand:
    """Tests for get_role_command()."""

    def test_stdin_default(self):
        command = get_role_command(AgentsConfig(), "pm_facilitator", {"prompt": "hi"})
        assert command.cmd == ["claude", "-p", "--output-format", "json"]
        assert command.prompt_via_stdin is True
        assert command.output_format == "json"
        assert command.get_stdin_input("hi") == "hi"

    def test_prompt_argument(self):
        """Should pass the prompt as one argument, quotes and all."""
        config = AgentsConfig(roles={"qa": "reviewer --prompt {prompt}"})
        prompt = 'Check "login" it\'s broken'

        command = get_role_command(config, "qa", {"prompt": prompt})

        assert command.cmd == ["reviewer", "--prompt", prompt]
        assert command.prompt_via_stdin is False
        assert command.output_format is None
        assert command.get_stdin_input(prompt) is None

    def test_output_format_equals_form(self):
        config = AgentsConfig(roles={"pm": "agent --output-format=text"})
        assert get_role_command(config, "pm").output_format == "text"

    def test_unknown_role(self):
        with pytest.raises(ValueError, match="Unknown role"):
            get_role_command(AgentsConfig(), "designer")

    def test_dev_role_requires_worktree(self):
        with pytest.raises(ValueError, match="requires variables"):
            get_role_command(AgentsConfig(), "dev_backend", {"prompt": "x"})

    def test_worktree_is_quoted(self):
        config = AgentsConfig(roles={"dev_infra": "codex exec -C {worktree}"})
        path = "/tmp/my worktrees/T-1"

        command = get_role_command(config, "dev_infra", {"worktree": path})

        assert command.cmd == ["codex", "exec", "-C", path]
        assert shlex.join(command.cmd).endswith(shlex.quote(path))

    def test_unsubstituted_variable_logged(self, caplog):
        config = AgentsConfig(roles={"pm": "agent --model {model}"})
        get_role_command(config, "pm")
        assert "unsubstituted variables: ['model']" in caplog.text


class TestMissingBinaries:
    """Tests for missing_binaries()."""

    def test_all_present(self):
        with patch("agentfactory.lib.agents_config.shutil.which", return_value="/usr/bin/claude"):
            assert missing_binaries(AgentsConfig()) == {}

    def test_groups_roles_by_binary(self):
        config = AgentsConfig(roles={"pm": "claude -p", "qa": "codex exec", "ux": "codex exec"})

        def which(name):
            return "/usr/bin/claude" if name == "claude" else None

        with patch("agentfactory.lib.agents_config.shutil.which", side_effect=which):
            assert missing_binaries(config) == {"codex": ["qa", "ux"]}
