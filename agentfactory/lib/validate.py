"""
Schema validation for board data.

Enforces JSON Schema validation where data crosses the file boundary.
Fails hard with clear errors when data doesn't match schema.
"""

import json
from pathlib import Path

import jsonschema


class ValidationError(Exception):
    """Schema validation failed."""

    def __init__(self, schema_name: str, message: str, path: str = None):
        self.schema_name = schema_name
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


# Cache loaded schemas
_schema_cache: dict[str, dict] = {}


def _get_schemas_dir() -> Path:
    """Get path to the packaged schemas directory."""
    return Path(__file__).parent.parent / "schemas"


def _load_schema(schema_name: str) -> dict:
    """Load schema by name, with caching."""
    if schema_name not in _schema_cache:
        schema_path = _get_schemas_dir() / f"{schema_name}.schema.json"
        if not schema_path.exists():
            raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
        _schema_cache[schema_name] = json.loads(schema_path.read_text())
    return _schema_cache[schema_name]


def validate(data: dict, schema_name: str) -> None:
    """
    Validate data against named schema.

    Args:
        data: Dictionary to validate
        schema_name: Schema name (e.g., "board")

    Raises:
        ValidationError: If validation fails
    """
    schema = _load_schema(schema_name)

    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as e:
        path = ".".join(str(p) for p in e.absolute_path) if e.absolute_path else "(root)"
        raise ValidationError(schema_name, e.message, path) from None


def validate_board(data: dict) -> list[str]:
    """
    Validate a board document and check cross-record references.

    Structural problems and duplicate ids are fatal. Dangling parent/child
    links are returned as warnings so an operator can repair them.

    Raises:
        ValidationError: If the board doesn't match schema or ids collide
    """
    validate(data, "board")

    seen: set[str] = set()
    for ticket in data["tickets"]:
        if ticket["id"] in seen:
            raise ValidationError("board", f"Duplicate ticket id {ticket['id']}", "tickets")
        seen.add(ticket["id"])

    by_id = {t["id"]: t for t in data["tickets"]}
    warnings = []
    for ticket in data["tickets"]:
        parent_id = ticket.get("parentId")
        if not parent_id:
            continue
        parent = by_id.get(parent_id)
        children = ((parent or {}).get("collaboration") or {}).get("children") or []
        if ticket["id"] not in children:
            warnings.append(f"Ticket {ticket['id']} names parent {parent_id} which does not list it")
    return warnings
