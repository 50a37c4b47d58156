"""Tests for agentfactory.kanban.conflict module."""

import pytest

from agentfactory.kanban.conflict import (
    can_run_in_parallel,
    conflict_matrix,
    conflicting_tickets,
    files_overlap,
    patterns_overlap,
    suggest_parallel_groups,
    validate_ticket_files,
)
from agentfactory.kanban.models import Ticket


def ticket(ticket_id, files, status="ready", deps=None):
    return Ticket(id=ticket_id, title=ticket_id, status=status, files=files, dependencies=deps or [])


class TestPatternsOverlap:
    """Tests for patterns_overlap()."""

    @pytest.mark.parametrize("a,b,expected", [
        ("cmd/init.go", "cmd/new.go", False),
        ("cmd/init.go", "cmd/*.go", True),
        ("internal/auth/", "internal/db/", False),
        ("internal/**", "internal/auth/user.go", True),
    ])
    def test_boundary_cases(self, a, b, expected):
        assert patterns_overlap(a, b) is expected

    def test_identical_paths_overlap(self):
        assert patterns_overlap("api/login.py", "api/login.py")

    def test_symmetric(self):
        assert patterns_overlap("cmd/*.go", "cmd/init.go")
        assert patterns_overlap("internal/auth/user.go", "internal/**")

    def test_disjoint_globs(self):
        assert not patterns_overlap("web/*.tsx", "api/*.py")

    def test_star_prefix_matches_everything(self):
        """A pattern with no literal prefix is conservatively treated as overlapping."""
        assert patterns_overlap("*.md", "api/login.py")


class TestCanRunInParallel:
    """Tests for can_run_in_parallel()."""

    def test_disjoint_files(self):
        assert can_run_in_parallel(ticket("A", ["api/a.py"]), ticket("B", ["web/b.tsx"]))

    def test_overlapping_files(self):
        assert not can_run_in_parallel(ticket("A", ["src/auth/*"]), ticket("B", ["src/auth/login.py"]))

    def test_dependency_either_direction(self):
        a = ticket("A", ["api/a.py"])
        b = ticket("B", ["web/b.tsx"], deps=["A"])
        assert not can_run_in_parallel(a, b)
        assert not can_run_in_parallel(b, a)

    def test_no_files_never_conflict(self):
        assert can_run_in_parallel(ticket("A", []), ticket("B", ["api/*"]))


class TestConflictHelpers:
    """Tests for the multi-ticket helpers."""

    def test_files_overlap_any_pair(self):
        assert files_overlap(["docs/a.md", "cmd/init.go"], ["cmd/*.go"])
        assert not files_overlap(["docs/a.md"], ["cmd/*.go"])

    def test_conflicting_tickets_only_in_dev(self):
        mine = ticket("A", ["cmd/init.go"])
        others = [
            ticket("B", ["cmd/*.go"], status="in_dev"),
            ticket("C", ["cmd/*.go"], status="ready"),
            ticket("D", ["docs/*"], status="in_dev"),
        ]
        assert [t.id for t in conflicting_tickets(mine, others)] == ["B"]

    def test_conflict_matrix_is_symmetric(self):
        tickets = [ticket("A", ["cmd/*"]), ticket("B", ["cmd/init.go"]), ticket("C", ["docs/x.md"])]
        matrix = conflict_matrix(tickets)
        assert matrix == {"A": ["B"], "B": ["A"], "C": []}

    def test_suggest_parallel_groups(self):
        tickets = [ticket("A", ["cmd/*"]), ticket("B", ["cmd/init.go"]), ticket("C", ["docs/x.md"])]
        groups = suggest_parallel_groups(tickets)
        assert [[t.id for t in g] for g in groups] == [["A", "C"], ["B"]]


class TestValidateTicketFiles:
    """Tests for validate_ticket_files()."""

    def test_clean_patterns(self):
        assert validate_ticket_files(["api/login.py", "web/*.tsx"]) == []

    @pytest.mark.parametrize("pattern,fragment", [
        ("**", "whole repository"),
        ("/etc/passwd", "absolute"),
        ("../other/file.py", "escapes"),
        ("*.py", "no literal prefix"),
    ])
    def test_warnings(self, pattern, fragment):
        warnings = validate_ticket_files([pattern])
        assert len(warnings) == 1
        assert fragment in warnings[0]
