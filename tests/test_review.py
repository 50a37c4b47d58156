"""Tests for the review pipeline."""

import json

import pytest
from fakes import make_ticket, reply, step

from agentfactory.agents.response_parser import parse_signoff
from agentfactory.agents.runner import AgentResult
from agentfactory.kanban.models import AgentRun, MergeQueueEntry, Signoff, Worktree
from agentfactory.workflow.review import REVIEW_STAGES, STAGE_FOR_STATUS, signoff_content, signoff_title


@pytest.fixture
def reviewing(store, tmp_path):
    """Create a dev-signed-off ticket in ``status`` with a real worktree directory."""
    def create(status="in_qa", ticket_id="T-1", **kwargs):
        path = tmp_path / "worktrees" / ticket_id
        path.mkdir(parents=True, exist_ok=True)
        ticket = make_ticket(ticket_id, status, title="Login form", domain="frontend",
                             worktree=Worktree(path=str(path), branch=f"feat/{ticket_id}-Login-form"),
                             signoffs={"dev": Signoff(agent="dev_frontend")}, **kwargs)
        store.create_ticket(ticket)
        return ticket
    return create


def review_failure(bugs, error="exit 1: review failed"):
    output = "Found problems.\n```json\n" + json.dumps({"status": "failed", "bugs": bugs}) + "\n```"
    return AgentResult(success=False, output=output, error=error)


class TestReviewSuccess:
    """A passing review signs off and advances the ticket."""

    def test_qa_pass(self, store, orch, runner, reviewing):
        """Should move to in_ux with a QA signoff and a resolved signoff thread."""
        reviewing("in_qa")
        step(orch, lambda: orch.review.process("in_qa"))

        ticket = store.get_ticket("T-1")
        assert ticket.status == "in_ux"
        assert ticket.signoffs["qa"].agent == "qa"
        assert ticket.history[-1].note == "QA review complete"
        assert ticket.history[-1].by == "qa"
        assert ticket.current_activity == ""

        [thread] = store.conversations_by_ticket("T-1")
        assert thread.type == "qa_signoff"
        assert thread.title == "QA Review - Approved"
        assert thread.status == "resolved"
        assert thread.messages[0].content == "All checks pass"

        role, data, path = runner.calls[0]
        assert path == ticket.worktree.path
        assert data.mode == "review"

    def test_full_pipeline(self, store, orch, reviewing):
        """Should walk QA, UX, security and PM review to done."""
        reviewing("in_qa")
        for stage in REVIEW_STAGES:
            step(orch, lambda s=stage.status: orch.review.process(s))

        ticket = store.get_ticket("T-1")
        assert ticket.status == "done"
        assert set(ticket.signoffs) == {"dev", "qa", "ux", "security", "pm"}
        assert [h.status for h in ticket.history[-4:]] == ["in_ux", "in_sec", "pm_review", "done"]
        assert orch.metrics()["tickets_completed"] == 1

    def test_token_usage_summed_in_metrics(self, store, orch, runner, reviewing):
        passed = reply({"status": "passed", "summary": "Looks good"})
        for role in ("qa", "ux"):
            runner.script[role] = AgentResult(success=True, output=passed.output,
                                              token_stats={"input_tokens": 1000, "output_tokens": 250})
        reviewing("in_qa")
        step(orch, lambda: orch.review.process("in_qa"))
        step(orch, lambda: orch.review.process("in_ux"))

        metrics = orch.metrics()
        assert store.get_ticket("T-1").status == "in_sec"
        assert metrics["agents_succeeded"] == 2
        assert metrics["tokens"] == {"input_tokens": 2000, "output_tokens": 500}

    def test_failed_report_still_advances(self, store, make_orch, runner, reviewing):
        """A successful run whose report says failed records issues but moves on."""
        runner.script["ux"] = reply({"status": "failed", "summary": "Contrast too low",
                                     "bugs": [{"severity": "low", "title": "Button contrast"}]})
        orch = make_orch()
        reviewing("in_ux")
        step(orch, lambda: orch.review.process("in_ux"))

        ticket = store.get_ticket("T-1")
        assert ticket.status == "in_sec"
        assert [b.title for b in ticket.bugs] == ["Button contrast"]
        [thread] = store.conversations_by_ticket("T-1")
        assert thread.title == "UX Review - Issues Found"
        assert "[low] Button contrast" in thread.messages[0].content

    def test_plain_text_review(self, store, make_orch, runner, reviewing):
        runner.script["security"] = AgentResult(success=True, output="No issues found.")
        orch = make_orch()
        reviewing("in_sec")
        step(orch, lambda: orch.review.process("in_sec"))

        assert store.get_ticket("T-1").status == "pm_review"
        [thread] = store.conversations_by_ticket("T-1")
        assert thread.title == "Security Review - Complete"
        assert thread.messages[0].content == "No issues found."

    def test_one_reviewer_per_ticket(self, store, orch, runner, reviewing):
        reviewing("in_qa")
        runner.hold("qa")

        orch.prepare_tick()
        assert orch.review.process("in_qa") == 1
        assert store.get_ticket("T-1").current_activity == "Testing"
        assert orch.review.process("in_qa") == 0

        runner.release()
        assert orch.wait_idle(10)
        assert runner.count("qa") == 1

    def test_rejected_start_leaves_activity(self, store, orch, runner, reviewing):
        """A reviewer that cannot be registered must not mark the ticket as being reviewed."""
        reviewing("in_qa")
        orch.prepare_tick()
        # Lands after the ledger refresh, as a completion from another tick would
        store.add_run(AgentRun(id="r-qa", agent="qa", ticket_id="T-1"))

        assert orch.review.process("in_qa") == 0
        ticket = store.get_ticket("T-1")
        assert ticket.current_activity == ""
        assert ticket.assigned_agent == ""
        assert runner.calls == []


class TestReviewFailure:
    """Failed reviews record bugs and block or retry."""

    def test_blocking_bug(self, store, make_orch, runner, reviewing):
        runner.script["qa"] = review_failure([{"severity": "critical", "title": "Login crashes on submit"}])
        orch = make_orch()
        reviewing("in_qa")

        step(orch, lambda: orch.review.process("in_qa"))

        ticket = store.get_ticket("T-1")
        assert ticket.status == "blocked"
        assert ticket.history[-1].note == "Bugs found during review"
        assert [(b.severity, b.found_by) for b in ticket.bugs] == [("critical", "qa")]
        blocker = store.conversations_by_ticket("T-1")[0]
        assert "[critical] Login crashes on submit" in blocker.messages[0].content

    def test_minor_bug_retried(self, store, make_orch, runner, reviewing, caplog):
        runner.script["qa"] = review_failure([{"severity": "medium", "title": "Typo in label"}])
        orch = make_orch()
        reviewing("in_qa")

        step(orch, lambda: orch.review.process("in_qa"))

        ticket = store.get_ticket("T-1")
        assert ticket.status == "in_qa"
        assert ticket.current_activity == ""
        assert len(ticket.bugs) == 1
        assert "retrying next tick" in caplog.text

    def test_three_failures_block(self, store, make_orch, runner, reviewing):
        runner.script["pm"] = AgentResult(success=False, error="timeout after 1800s")
        orch = make_orch()
        reviewing("pm_review")

        for _ in range(3):
            step(orch, lambda: orch.review.process("pm_review"))

        ticket = store.get_ticket("T-1")
        assert ticket.status == "blocked"
        assert ticket.history[-1].note == "Agent failed 3 consecutive times"
        assert runner.count("pm") == 3

    def test_missing_worktree_blocks(self, store, orch, runner):
        store.create_ticket(make_ticket("T-1", "in_qa", worktree=Worktree(path="/nonexistent/T-1", branch="b")))

        assert step(orch, lambda: orch.review.process("in_qa")) == 0

        ticket = store.get_ticket("T-1")
        assert ticket.status == "blocked"
        assert ticket.history[-1].note == "Worktree directory missing: /nonexistent/T-1"
        assert ticket.history[-1].by == "system"
        assert runner.calls == []


class TestPMGate:
    """Final review waits for an in-flight merge."""

    @pytest.mark.parametrize("merge_status", ["pending", "in_progress"])
    def test_waits_for_merge(self, store, orch, runner, reviewing, merge_status):
        reviewing("pm_review")
        store.queue_merge(MergeQueueEntry(id="m1", ticket_id="T-1", branch="feat/T-1", status=merge_status))

        assert step(orch, lambda: orch.review.process("pm_review")) == 0
        assert runner.calls == []

        store.update_merge("m1", "completed")
        step(orch, lambda: orch.review.process("pm_review"))
        assert store.get_ticket("T-1").status == "done"

    def test_failed_merge_does_not_hold_review(self, store, orch, reviewing):
        reviewing("pm_review")
        store.queue_merge(MergeQueueEntry(id="m1", ticket_id="T-1", branch="feat/T-1", status="failed"))

        step(orch, lambda: orch.review.process("pm_review"))
        assert store.get_ticket("T-1").status == "done"


class TestSignoffText:
    """Tests for signoff thread titles and content."""

    @pytest.mark.parametrize("status,suffix", [
        ("passed", "Approved"),
        ("APPROVED", "Approved"),
        ("rejected", "Issues Found"),
        ("partial", "Complete"),
    ])
    def test_title(self, status, suffix):
        report = parse_signoff(json.dumps({"status": status}))
        assert signoff_title(STAGE_FOR_STATUS["pm_review"], report) == f"PM final Review - {suffix}"

    def test_content_lists_findings(self):
        report = parse_signoff(json.dumps({"status": "passed", "findings": ["Uses prepared statements"]}))
        assert signoff_content(report, "") == "Status: passed\n\nFindings:\n- Uses prepared statements"

    def test_content_without_report(self):
        assert signoff_content(None, "  ") == "Review complete."
