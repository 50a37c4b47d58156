"""Tests for PRD breakdown into child tickets and parent aggregation."""

from fakes import make_ticket, reply, step

from agentfactory.kanban.models import Collaboration


def finished_prd(ticket_id="P", status="prd_complete", children=None):
    collab = Collaboration(status="consensus", final_prd={"title": "CLI", "requirements": ["init", "new", "list"]},
                           children=list(children or []))
    return make_ticket(ticket_id, status, title="CLI scaffolding", collaboration=collab, priority=2)


CLI_BREAKDOWN = reply({
    "tickets": [
        {"title": "init command", "domain": "backend", "files": ["cmd/init.go"],
         "acceptanceCriteria": ["init creates a config file"]},
        {"title": "new command", "domain": "backend", "files": ["cmd/new.go"],
         "acceptanceCriteria": ["new scaffolds a project"], "dependencies": ["init command"]},
        {"title": "list command", "domain": "backend", "files": ["cmd/list.go"],
         "acceptanceCriteria": ["list prints projects"], "technicalNotes": ["Use tabwriter"]},
    ],
    "parallelGroups": [{"group": 1, "tickets": ["init command", "list command"]}],
})


class TestBreakdown:
    """Tests for process_breakdowns()."""

    def test_children_created(self, store, make_orch, runner):
        runner.script["pm_breakdown"] = CLI_BREAKDOWN
        orch = make_orch()
        store.create_ticket(finished_prd())

        step(orch, orch.prd.process_breakdowns)

        parent = store.get_ticket("P")
        assert parent.status == "breaking_down"
        assert parent.collaboration.children == ["P-SUB-1", "P-SUB-2", "P-SUB-3"]

        children = store.tickets_by_parent("P")
        assert [c.files for c in children] == [["cmd/init.go"], ["cmd/new.go"], ["cmd/list.go"]]
        for child in children:
            assert child.status == "ready"
            assert child.parent_id == "P"
            assert child.priority == 2
            assert child.domain == "backend"
            assert len(child.acceptance_criteria) == 1

        new_cmd = store.get_ticket("P-SUB-2")
        assert new_cmd.dependencies == ["P-SUB-1"]
        assert store.get_ticket("P-SUB-1").parallel_group == 1
        assert store.get_ticket("P-SUB-3").notes == "Use tabwriter"

    def test_breakdown_sees_final_prd(self, store, orch, runner):
        store.create_ticket(finished_prd())
        step(orch, orch.prd.process_breakdowns)

        data = [d for role, d, _ in runner.calls if role == "pm_breakdown"][0]
        assert data.prd["requirements"] == ["init", "new", "list"]
        assert data.mode == "breakdown"

    def test_empty_breakdown_retried(self, store, make_orch, runner):
        runner.script["pm_breakdown"] = [reply({"tickets": []}), CLI_BREAKDOWN]
        orch = make_orch()
        store.create_ticket(finished_prd())

        step(orch, orch.prd.process_breakdowns)
        parent = store.get_ticket("P")
        assert parent.status == "breaking_down"
        assert parent.collaboration.children == []
        assert store.tickets_by_parent("P") == []

        step(orch, orch.prd.process_breakdowns)
        assert len(store.get_ticket("P").collaboration.children) == 3
        assert runner.count("pm_breakdown") == 2

    def test_unparseable_breakdown_retried(self, store, make_orch, runner, caplog):
        runner.script["pm_breakdown"] = [reply({"tickets": [{"files": ["a.go"]}]}), CLI_BREAKDOWN]
        orch = make_orch()
        store.create_ticket(finished_prd())

        step(orch, orch.prd.process_breakdowns)
        assert "breakdown unusable" in caplog.text
        step(orch, orch.prd.process_breakdowns)
        assert len(store.tickets_by_parent("P")) == 3

    def test_parent_with_children_not_broken_down_again(self, store, orch, runner):
        store.create_ticket(finished_prd(status="breaking_down", children=["P-SUB-1"]))
        store.create_ticket(make_ticket("P-SUB-1", "ready", parent_id="P"))

        step(orch, orch.prd.process_breakdowns)
        assert runner.count("pm_breakdown") == 0

    def test_broad_file_patterns_warned(self, store, make_orch, runner, caplog):
        runner.script["pm_breakdown"] = reply({"tickets": [{"title": "Everything", "files": ["**/*"]}]})
        orch = make_orch()
        store.create_ticket(finished_prd())

        step(orch, orch.prd.process_breakdowns)
        assert "P-SUB-1" in caplog.text
        assert store.get_ticket("P-SUB-1").files == ["**/*"]


class TestParentAggregation:
    """Tests for aggregate_parents()."""

    def test_parent_done_when_all_children_done(self, store, orch):
        store.create_ticket(finished_prd(status="breaking_down", children=["P-SUB-1", "P-SUB-2"]))
        store.create_ticket(make_ticket("P-SUB-1", "done", parent_id="P"))
        store.create_ticket(make_ticket("P-SUB-2", "pm_review", parent_id="P"))

        assert orch.prd.aggregate_parents() == 0
        assert store.get_ticket("P").status == "breaking_down"

        store.update_status("P-SUB-2", "done", "pm", "PM final review complete")
        assert orch.prd.aggregate_parents() == 1
        assert orch.metrics()["tickets_completed"] == 1
        assert orch.prd.aggregate_parents() == 0
        assert orch.metrics()["tickets_completed"] == 1

        parent = store.get_ticket("P")
        assert parent.status == "done"
        assert parent.history[-1].by == "system"
        assert parent.history[-1].note == "All sub-tickets completed"

    def test_missing_child_keeps_parent_open(self, store, orch):
        store.create_ticket(finished_prd(status="breaking_down", children=["P-SUB-1", "P-SUB-9"]))
        store.create_ticket(make_ticket("P-SUB-1", "done", parent_id="P"))

        assert orch.prd.aggregate_parents() == 0
        assert store.get_ticket("P").status == "breaking_down"

    def test_parent_without_children_untouched(self, store, orch):
        store.create_ticket(finished_prd(status="breaking_down"))
        assert orch.prd.aggregate_parents() == 0
