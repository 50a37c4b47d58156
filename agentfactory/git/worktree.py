"""
Git worktree management for ticket workspaces.

Each ticket in development gets its own worktree on its own branch. Finished
branches are squash-merged into main from the main repository checkout.
"""

import logging
import shutil
from pathlib import Path
from typing import Protocol

from agentfactory.git.runner import run_git
from agentfactory.lib.constants import MAX_SLUG_LEN, SLUG_INVALID, WORKTREE_ACTOR
from agentfactory.lib.errors import MergeConflict, WorkspaceFailure

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = 120
PUSH_TIMEOUT = 60

# Signoff stages that must all be present for a reviewed commit trailer
REVIEW_STAGES = ("qa", "ux", "security", "pm")


class WorkspaceManager(Protocol):
    """Source-control operations the orchestration core needs."""

    def create_workspace(self, ticket_id: str, branch: str) -> str: ...
    def squash_merge(self, branch: str, message: str) -> None: ...
    def push_main(self) -> None: ...
    def remove_workspace(self, path: str, force: bool = False) -> None: ...
    def cleanup_orphans(self) -> None: ...


def slugify(title: str) -> str:
    """Branch-safe slug: invalid characters become '-', max 40 chars."""
    slug = SLUG_INVALID.sub("-", title.strip())
    return slug[:MAX_SLUG_LEN].rstrip("-")


def branch_name(prefix: str, ticket_id: str, title: str) -> str:
    """
    Branch for a ticket.

    Examples:
        >>> branch_name("feat", "T-12", "Add login page!")
        'feat/T-12-Add-login-page'
    """
    slug = slugify(title)
    name = f"{ticket_id}-{slug}" if slug else ticket_id
    return f"{prefix}/{name}" if prefix else name


def commit_message(ticket, merged_by: str | None = None) -> str:
    """
    Squash commit message for a ticket.

    With all four review signoffs the trailer names the reviewers, otherwise
    it names ``merged_by`` (default WorktreeManager).
    """
    domain = ticket.domain or "general"
    header = f"feat({domain}): {ticket.title}\n\nTicket: {ticket.id}\n"
    if merged_by is None and all(stage in ticket.signoffs for stage in REVIEW_STAGES):
        return header + "Reviewed-by: QA, UX, Security, PM"
    return header + f"Merged-by: {merged_by or WORKTREE_ACTOR}"


class GitWorkspaceManager:
    """WorkspaceManager backed by ``git worktree`` in a local repository.

    Args:
        repo_root: Main repository checkout (merges happen here)
        worktree_dir: Directory under repo_root for ticket worktrees
        main_branch: Integration branch
        remote: Remote to fetch from and push to; None for local-only repos
    """

    def __init__(self, repo_root: Path, worktree_dir: str = ".worktrees",
                 main_branch: str = "main", remote: str | None = "origin"):
        self.repo_root = Path(repo_root)
        self.worktree_root = self.repo_root / worktree_dir
        self.main_branch = main_branch
        self.remote = remote

    def _path_for(self, branch: str) -> Path:
        # Drop the prefix so worktree dirs are named after the ticket
        leaf = branch.split("/", 1)[-1]
        return (self.worktree_root / SLUG_INVALID.sub("-", leaf)).resolve()

    def _branch_exists(self, branch: str) -> bool:
        return run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], self.repo_root).success

    def create_workspace(self, ticket_id: str, branch: str) -> str:
        path = self._path_for(branch)
        if path.exists():
            logger.info(f"[WORKTREE] Reusing {path} for {ticket_id}")
            return str(path)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceFailure("create worktree", str(e)) from e

        base = self.main_branch
        if self.remote:
            fetch = run_git(["fetch", self.remote, self.main_branch], self.repo_root, timeout=FETCH_TIMEOUT)
            if not fetch.success:
                raise WorkspaceFailure("fetch", fetch.error)
            base = f"{self.remote}/{self.main_branch}"

        if self._branch_exists(branch):
            args = ["worktree", "add", str(path), branch]
        else:
            args = ["worktree", "add", "-b", branch, str(path), base]
        result = run_git(args, self.repo_root)
        if not result.success:
            raise WorkspaceFailure("create worktree", result.error)

        logger.info(f"[WORKTREE] Created {path} on {branch} for {ticket_id}")
        return str(path)

    def squash_merge(self, branch: str, message: str) -> None:
        steps = [["checkout", self.main_branch]]
        if self.remote:
            steps.append(["pull", self.remote, self.main_branch])
        steps += [["merge", "--squash", branch], ["commit", "-m", message]]

        for args in steps:
            result = run_git(args, self.repo_root, timeout=FETCH_TIMEOUT)
            if not result.success:
                if args[0] == "merge":
                    # Leave main clean for the next attempt
                    run_git(["merge", "--abort"], self.repo_root)
                    run_git(["reset", "--hard", "HEAD"], self.repo_root)
                raise MergeConflict(branch, f"git {args[0]}: {result.error}")
        logger.info(f"[WORKTREE] Squash-merged {branch} into {self.main_branch}")

    def push_main(self) -> None:
        if not self.remote:
            return
        result = run_git(["push", self.remote, self.main_branch], self.repo_root, timeout=PUSH_TIMEOUT)
        if not result.success:
            raise WorkspaceFailure("push", result.error)

    def remove_workspace(self, path: str, force: bool = False) -> None:
        args = ["worktree", "remove"] + (["--force"] if force else []) + [path]
        result = run_git(args, self.repo_root)
        if result.success:
            logger.info(f"[WORKTREE] Removed {path}")
            return
        if not force:
            raise WorkspaceFailure("remove worktree", result.error)
        # Fall back to deleting the directory and pruning git's records
        try:
            shutil.rmtree(path, ignore_errors=False)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise WorkspaceFailure("remove worktree", str(e)) from e
        run_git(["worktree", "prune"], self.repo_root)
        logger.info(f"[WORKTREE] Removed {path} (manual cleanup)")

    def cleanup_orphans(self) -> None:
        result = run_git(["worktree", "prune"], self.repo_root)
        if not result.success:
            raise WorkspaceFailure("prune worktrees", result.error)
