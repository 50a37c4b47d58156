"""
Safe KEY=value parser for factory.env files.

Values are taken literally; nothing is ever handed to a shell. Lines that
look like shell constructs are rejected instead of being silently accepted.
"""

import re
from pathlib import Path

FORBIDDEN_PATTERNS = [
    re.compile(r'`'),          # backticks
    re.compile(r'\$\('),       # command substitution
    re.compile(r'\$\{'),       # variable expansion
    re.compile(r';'),          # command chaining
    re.compile(r'&&|\|\|'),    # boolean chaining
    re.compile(r'\|'),         # pipe
]

KEY_PATTERN = re.compile(r'^[A-Z][A-Z0-9_]*$')

QUOTES = ('"', "'")


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] in QUOTES and value[-1] == value[0]:
        return value[1:-1]
    return value


def parse_env_text(text: str, source: str = "<string>") -> dict[str, str]:
    """
    Parse env-file content into a dict.

    Blank lines and ``#`` comments are skipped; ``export KEY=value`` is
    accepted for compatibility with files that are also sourced by shells.

    Raises:
        ValueError: On a malformed line, bad key or forbidden pattern
    """
    result: dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith('#'):
            continue
        if line.startswith('export '):
            line = line[len('export '):].lstrip()

        key, sep, value = line.partition('=')
        if not sep:
            raise ValueError(f"{source}:{lineno}: expected KEY=value")
        key = key.strip()
        if not KEY_PATTERN.match(key):
            raise ValueError(f"{source}:{lineno}: invalid key '{key}'")

        value = _unquote(value.strip())
        if any(p.search(value) for p in FORBIDDEN_PATTERNS):
            raise ValueError(f"{source}:{lineno}: forbidden shell construct in value of {key}")

        result[key] = value
    return result


def load_env(filepath: Path) -> dict[str, str]:
    """
    Parse an env file safely.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If syntax is invalid or a forbidden pattern is found
    """
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Env file not found: {path}")
    return parse_env_text(path.read_text(), source=path.name)
