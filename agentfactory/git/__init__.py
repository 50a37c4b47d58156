"""Git operations for the factory.

Return type conventions:
- run_git returns GitResult: caller must check .success before using output.
- GitWorkspaceManager methods raise WorkspaceFailure (MergeConflict for
  squash merges) and return plain values on success.
"""

from agentfactory.git.runner import GitResult, run_git
from agentfactory.git.worktree import (
    GitWorkspaceManager,
    WorkspaceManager,
    branch_name,
    commit_message,
    slugify,
)

__all__ = [
    "GitResult",
    "run_git",
    "GitWorkspaceManager",
    "WorkspaceManager",
    "branch_name",
    "commit_message",
    "slugify",
]
