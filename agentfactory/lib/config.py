"""
Factory configuration.

Runtime settings live in the board store as string key/values so that an
operator can change them while the orchestrator runs. ``load_factory_config``
turns them into a typed ``FactoryConfig``; ``load_env_config`` seeds them from
a ``factory.env`` file.
"""

import logging
from dataclasses import dataclass, fields
from pathlib import Path

from agentfactory.lib import envparse
from agentfactory.lib.errors import ConfigInvalid

logger = logging.getLogger(__name__)

TRUE_VALUES = ("true", "1", "yes")
FALSE_VALUES = ("false", "0", "no")


@dataclass
class FactoryConfig:
    """Typed view of the store's configuration keys."""
    max_parallel_dev_agents: int = 3
    max_global_worktrees: int = 3
    agent_timeout_minutes: int = 30
    cycle_interval_seconds: int = 10
    stall_threshold_minutes: int = 30
    pm_checkin_interval_minutes: int = 15
    max_prd_rounds: int = 5
    max_merge_attempts: int = 3
    auto_merge: bool = False
    merge_after_dev_signoff: bool = True
    cleanup_worktree_on_merge: bool = False
    branch_prefix: str = "feat"

    @property
    def agent_timeout_seconds(self) -> float:
        return self.agent_timeout_minutes * 60.0


CONFIG_KEYS = tuple(f.name for f in fields(FactoryConfig))


def parse_bool(key: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ConfigInvalid(key, value, "one of true/false/1/0/yes/no")


def parse_positive_int(key: str, value: str) -> int:
    try:
        number = int(value.strip())
    except ValueError:
        raise ConfigInvalid(key, value, "a positive integer") from None
    if number < 1:
        raise ConfigInvalid(key, value, "a positive integer")
    return number


def parse_config(values: dict[str, str]) -> FactoryConfig:
    """
    Build a FactoryConfig from string values, defaulting missing keys.

    Unknown keys are ignored.

    Raises:
        ConfigInvalid: If a value cannot be converted
    """
    kwargs = {}
    for f in fields(FactoryConfig):
        raw = values.get(f.name)
        if raw is None or raw == "":
            continue
        if f.type in (bool, "bool"):
            kwargs[f.name] = parse_bool(f.name, raw)
        elif f.type in (int, "int"):
            kwargs[f.name] = parse_positive_int(f.name, raw)
        else:
            value = raw.strip()
            if not value:
                raise ConfigInvalid(f.name, raw, "a non-empty string")
            kwargs[f.name] = value
    return FactoryConfig(**kwargs)


def load_factory_config(store) -> FactoryConfig:
    """Read every known key from the store and validate it."""
    values = {}
    for key in CONFIG_KEYS:
        value = store.get_config_value(key)
        if value is not None:
            values[key] = value
    return parse_config(values)


def load_env_config(path: Path) -> dict[str, str]:
    """
    Read ``factory.env`` into store config keys.

    Keys are written in upper case in the file (``MAX_PRD_ROUNDS=4``) and
    mapped to lower-case store keys. Unknown keys are logged and skipped.

    Raises:
        ConfigInvalid: If the file is malformed or a value doesn't validate
    """
    try:
        env = envparse.load_env(path)
    except ValueError as e:
        raise ConfigInvalid(str(path), "", f"a valid env file ({e})") from e

    values = {}
    for key, value in env.items():
        name = key.lower()
        if name not in CONFIG_KEYS:
            logger.warning(f"Ignoring unknown config key {key} in {path.name}")
            continue
        values[name] = value
    # Fail early on bad values rather than at orchestrator start
    parse_config(values)
    return values
