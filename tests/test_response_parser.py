"""Tests for agentfactory.agents.response_parser module."""

import pytest

from agentfactory.agents.response_parser import (
    extract_json,
    parse_breakdown,
    parse_expert,
    parse_facilitator,
    parse_signoff,
    report_bugs,
)
from agentfactory.lib.errors import MalformedAgentOutput


class TestExtractJson:
    """Tests for extract_json()."""

    def test_fenced_block(self):
        text = 'Some thoughts.\n\n```json\n{"action": "FINALIZE_PRD"}\n```\n'
        assert extract_json(text) == {"action": "FINALIZE_PRD"}

    def test_last_fenced_block_wins(self):
        text = (
            'Previous reply was:\n```json\n{"action": "START_ROUND"}\n```\n'
            'My answer:\n```json\n{"action": "CONTINUE_ROUND"}\n```'
        )
        assert extract_json(text) == {"action": "CONTINUE_ROUND"}

    def test_last_bare_object_wins(self):
        assert extract_json('old: {"a": 1} new: {"a": 2}') == {"a": 2}

    def test_nested_braces_and_strings(self):
        text = 'Result: {"prompt": "use {braces} and \\"quotes\\"", "nested": {"x": [1, 2]}} done'
        assert extract_json(text) == {"prompt": 'use {braces} and "quotes"', "nested": {"x": [1, 2]}}

    def test_fenced_block_preferred_over_later_bare_object(self):
        text = '```json\n{"a": 1}\n```\nand inline {"b": 2}'
        assert extract_json(text) == {"a": 1}

    def test_invalid_fenced_block_falls_back_to_bare(self):
        text = '```json\n{not json}\n```\n{"ok": true}'
        assert extract_json(text) == {"ok": True}

    def test_no_json(self):
        assert extract_json("I could not decide.") is None

    def test_arrays_are_not_objects(self):
        assert extract_json("[1, 2, 3]") is None


class TestParseFacilitator:
    """Tests for parse_facilitator()."""

    def test_start_round(self):
        reply = parse_facilitator(
            '{"action": "START_ROUND", "prompt": "Discuss login", '
            '"focusAreas": {"security": "Sessions", "ux": ["Errors", "Copy"]}}'
        )
        assert reply.action == "START_ROUND"
        assert reply.prompt == "Discuss login"
        assert reply.focus_areas == {"security": ["Sessions"], "ux": ["Errors", "Copy"]}

    def test_action_is_case_insensitive(self):
        assert parse_facilitator('{"action": " finalize_prd "}').action == "FINALIZE_PRD"

    def test_questions_from_string(self):
        reply = parse_facilitator('{"action": "REQUEST_USER_INPUT", "questions": "Which SSO provider?"}')
        assert reply.questions == ["Which SSO provider?"]

    def test_consult_question_alias(self):
        reply = parse_facilitator('{"action": "REQUEST_EXPERT", "expertQuestion": "Is bcrypt enough?"}')
        assert reply.consult_question == "Is bcrypt enough?"

    def test_unresolved_alias(self):
        reply = parse_facilitator('{"action": "FINALIZE_PRD", "blockers": ["rate limits"]}')
        assert reply.unresolved == ["rate limits"]

    def test_unknown_action_rejected(self):
        with pytest.raises(MalformedAgentOutput) as exc_info:
            parse_facilitator('{"action": "GIVE_UP"}')
        assert exc_info.value.kind == "facilitator"

    def test_missing_action_rejected(self):
        with pytest.raises(MalformedAgentOutput):
            parse_facilitator('{"prompt": "hello"}')

    def test_no_json_rejected(self):
        with pytest.raises(MalformedAgentOutput, match="no JSON object"):
            parse_facilitator("Let's keep talking.")


class TestParseExpert:
    """Tests for parse_expert()."""

    def test_structured_reply(self):
        expert_input = parse_expert("security", (
            'My review:\n```json\n{"response": "Needs rate limiting", "keyPoints": ["lockout"], '
            '"concerns": ["brute force"], "approves": false, "questionsForOthers": ["dev: limits?"]}\n```'
        ))
        assert expert_input.expert == "security"
        assert expert_input.response == "Needs rate limiting"
        assert expert_input.key_points == ["lockout"]
        assert expert_input.concerns == ["brute force"]
        assert expert_input.approves is False
        assert expert_input.questions_for_others == ["dev: limits?"]

    def test_unstructured_reply_kept_as_response(self):
        expert_input = parse_expert("ux", "  The form needs inline validation.  ")
        assert expert_input.response == "The form needs inline validation."
        assert expert_input.approves is False
        assert expert_input.has_response

    def test_empty_reply_has_no_response(self):
        assert not parse_expert("qa", "   ").has_response

    def test_missing_response_uses_text(self):
        text = '{"approves": true}'
        expert_input = parse_expert("dev", text)
        assert expert_input.approves is True
        assert expert_input.response == text


class TestParseBreakdown:
    """Tests for parse_breakdown()."""

    def test_children(self):
        reply = parse_breakdown("""
        ```json
        {"tickets": [
            {"title": "Init", "domain": "Backend", "files": ["cmd/init.go"],
             "acceptanceCriteria": ["init creates config"], "deps": [], "technicalNotes": ["use cobra"]},
            {"title": "New", "domain": "mobile", "files": "cmd/new.go", "parallelGroup": 2}
        ],
         "parallelGroups": [{"group": 1, "tickets": ["Init"]}]}
        ```
        """)
        init, new = reply.tickets
        assert init.domain == "backend"
        assert init.acceptance_criteria == ["init creates config"]
        assert init.technical_notes == "use cobra"
        assert new.domain == ""
        assert new.files == ["cmd/new.go"]
        assert new.parallel_group == 2
        assert reply.parallel_groups[0].tickets == ["Init"]

    def test_child_without_title_rejected(self):
        with pytest.raises(MalformedAgentOutput):
            parse_breakdown('{"tickets": [{"description": "no title"}]}')

    def test_empty_breakdown_parses(self):
        assert parse_breakdown('{"tickets": []}').tickets == []


class TestSignoff:
    """Tests for parse_signoff() and report_bugs()."""

    def test_report_with_bugs(self):
        report = parse_signoff(
            '{"status": "failed", "summary": "Login broken", "findings": "500 on submit", '
            '"bugs": [{"severity": "CRITICAL", "title": "500 on login"}, {"severity": "weird", "title": "typo"}]}'
        )
        assert report.status == "failed"
        assert report.findings == ["500 on submit"]
        bugs = report_bugs(report, "qa", "BUG-T-1")
        assert [(b.id, b.severity, b.found_by) for b in bugs] == [
            ("BUG-T-1-1", "critical", "qa"),
            ("BUG-T-1-2", "medium", "qa"),
        ]

    def test_no_report(self):
        assert parse_signoff("Looks fine to me.") is None
        assert report_bugs(None, "qa", "BUG-T-1") == []
