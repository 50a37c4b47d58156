"""Shared constants for the factory."""

import re

# Expert panel for PRD rounds, in dispatch order
EXPERTS = ("dev", "qa", "ux", "security")

# Retries for a missing expert after its first attempt in a round
EXPERT_RETRY_LIMIT = 2

# Consecutive failed runs of one role on one ticket before escalation
MAX_CONSECUTIVE_FAILURES = 3

DOMAINS = ("frontend", "backend", "infra")

BUG_SEVERITIES = ("critical", "high", "medium", "low")
BLOCKING_SEVERITIES = ("critical", "high")

# Branch slug: anything outside [A-Za-z0-9_-] becomes "-"
SLUG_INVALID = re.compile(r"[^A-Za-z0-9_-]+")
MAX_SLUG_LEN = 40

SELF_HEAL_ACTOR = "self-heal"
SYSTEM_ACTOR = "system"
PM_ACTOR = "PM"
WORKTREE_ACTOR = "WorktreeManager"
