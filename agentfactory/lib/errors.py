"""Error kinds raised across the factory core.

Only initialization errors escape the driver. Everything else raised inside a
tick is turned into a ticket transition or a logged warning by the caller.
"""


class FactoryError(Exception):
    """Base class for expected factory failures."""


class TransientAgent(FactoryError):
    """Agent invocation failed in a way worth retrying on the next tick."""

    def __init__(self, role: str, message: str, ticket_id: str = ""):
        self.role = role
        self.ticket_id = ticket_id
        super().__init__(
            f"Agent {role} failed: {message}"
            + (f" (ticket: {ticket_id})" if ticket_id else "")
        )


class MalformedAgentOutput(FactoryError):
    """Agent output could not be decoded into the expected record."""

    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(f"[{kind}] {message}")


class WorkspaceFailure(FactoryError):
    """Worktree manipulation failed (create/merge/push/remove)."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.message = message
        super().__init__(f"{operation} failed: {message}")


class MergeConflict(WorkspaceFailure):
    """Squash merge of a ticket branch into main failed."""

    def __init__(self, branch: str, message: str):
        self.branch = branch
        super().__init__(f"merge {branch}", message)


class StoreUnavailable(FactoryError):
    """Board store could not be read or written."""


class Cancelled(FactoryError):
    """Work was abandoned because the root cancellation token fired."""


class ConfigInvalid(FactoryError):
    """A configuration value failed validation."""

    def __init__(self, key: str, value: str, expected: str):
        self.key = key
        self.value = value
        super().__init__(f"Invalid config {key}={value!r}: expected {expected}")
