"""Tests for PRD collaboration: rounds, synthesis, user input and consultation."""

import pytest
from fakes import failure, make_ticket, reply, step, tick

from agentfactory.agents.response_parser import FacilitatorReply, parse_breakdown
from agentfactory.kanban.models import AgentRun, Collaboration, ExpertInput, Round
from agentfactory.lib.constants import EXPERTS
from agentfactory.workflow.lifecycle import InvalidTransition, unblock
from agentfactory.workflow.prd import build_children, forced_unresolved


def expert_runs(store, ticket_id):
    return [r for r in store.runs_for_ticket(ticket_id) if r.agent.startswith("prd-")]


def with_round(ticket_id, status="refining_round_1", approves=True, concerns=None):
    """Ticket sitting in round 1 with every expert's input recorded."""
    collab = Collaboration()
    collab.open_round(Round(number=1, prompt="Discuss login", expert_inputs={
        e: ExpertInput(expert=e, response=f"{e} input", approves=approves,
                       concerns=list(concerns or []) if e == "security" else [])
        for e in EXPERTS
    }))
    return make_ticket(ticket_id, status, title="Login", collaboration=collab)


def continue_from_concerns(data):
    """Facilitator that asks the next round to address open concerns."""
    concerns = [c for inp in data.final_inputs.values() for c in inp.get("concerns", [])]
    if concerns:
        return reply({
            "action": "CONTINUE_ROUND",
            "synthesis": "Security has open concerns.",
            "prompt": "Address the security concern: " + "; ".join(concerns),
            "focusAreas": {"security": concerns},
        })
    return reply({"action": "FINALIZE_PRD", "synthesis": "Agreed", "prd": {"requirements": ["SSO"]}})


class TestRoundStart:
    """Approved tickets enter round 1."""

    def test_approved_to_round_one(self, store, orch, runner):
        store.create_ticket(make_ticket("T-1", "approved", title="Login"))
        tick(orch)

        ticket = store.get_ticket("T-1")
        assert ticket.status == "refining_round_1"
        assert ticket.collaboration.current_round == 1
        assert ticket.collaboration.get_round(1).prompt == "Discuss requirements for Login"
        assert ticket.collaboration.get_round(1).focus_areas["security"] == ["Session handling"]
        assert ticket.history[-1].by == "PM"
        assert sorted(r.agent for r in expert_runs(store, "T-1")) == sorted(f"prd-{e}" for e in EXPERTS)
        assert runner.count("prd_expert") == 4

    def test_expert_prompt_carries_focus_areas(self, store, orch, runner):
        store.create_ticket(make_ticket("T-1", "approved", title="Login"))
        tick(orch)

        security = [data for role, data, _ in runner.calls if role == "prd_expert" and data.expert == "security"]
        assert security[0].focus_areas == ["Session handling"]
        assert security[0].current_round == 1

    def test_unusable_facilitator_reply_retried(self, store, make_orch, runner):
        runner.script["pm_facilitator:start"] = [
            reply({"thoughts": "no action"}),
            reply({"action": "START_ROUND", "prompt": "Second try"}),
        ]
        orch = make_orch()
        store.create_ticket(make_ticket("T-1", "approved"))

        tick(orch)
        assert store.get_ticket("T-1").status == "approved"
        tick(orch)
        assert store.get_ticket("T-1").collaboration.get_round(1).prompt == "Second try"

    def test_round_one_inputs_recorded(self, store, orch):
        store.create_ticket(make_ticket("T-1", "approved"))
        tick(orch)

        rnd = store.get_ticket("T-1").collaboration.get_round(1)
        assert sorted(rnd.responded()) == sorted(EXPERTS)
        assert rnd.expert_inputs["qa"].key_points == ["qa point"]


class TestSynthesis:
    """Facilitator decisions on complete rounds."""

    def test_consensus(self, store, orch):
        store.create_ticket(with_round("T-1"))
        step(orch, orch.prd.process_rounds)

        ticket = store.get_ticket("T-1")
        assert ticket.status == "prd_complete"
        assert ticket.collaboration.status == "consensus"
        assert ticket.collaboration.final_prd
        assert ticket.collaboration.completed_at
        assert ticket.collaboration.get_round(1).synthesis == "Experts agree on the approach."

    def test_continued_discussion(self, store, make_orch, runner):
        runner.script["pm_facilitator:synthesis"] = continue_from_concerns
        orch = make_orch()
        store.create_ticket(with_round("T-1", approves=False, concerns=["No rate limiting on login"]))

        step(orch, orch.prd.process_rounds)

        ticket = store.get_ticket("T-1")
        assert ticket.status == "refining_round_2"
        assert ticket.collaboration.current_round == 2
        assert "No rate limiting on login" in ticket.collaboration.get_round(2).prompt
        assert ticket.collaboration.get_round(1).synthesis == "Security has open concerns."
        # The new round was fanned out to every expert
        assert sorted(ticket.collaboration.get_round(2).responded()) == sorted(EXPERTS)

    def test_waits_for_missing_expert(self, store, orch, runner):
        ticket = with_round("T-1")
        del ticket.collaboration.get_round(1).expert_inputs["ux"]
        store.create_ticket(ticket)

        step(orch, orch.prd.process_rounds)

        assert runner.count("pm_facilitator") == 0
        assert [data.expert for role, data, _ in runner.calls] == ["ux"]
        assert store.get_ticket("T-1").collaboration.get_round(1).expert_inputs["ux"].has_response

    def test_no_synthesis_while_an_expert_is_running(self, store, orch, runner):
        store.create_ticket(with_round("T-1"))
        store.add_run(AgentRun(id="prd-T-1-ux-1-2", agent="prd-ux", ticket_id="T-1"))

        step(orch, orch.prd.process_rounds)

        assert runner.count("pm_facilitator") == 0
        assert store.get_ticket("T-1").status == "refining_round_1"

    def test_malformed_synthesis_leaves_round(self, store, make_orch, runner):
        runner.script["pm_facilitator:synthesis"] = reply({"action": "SHIP_IT"})
        orch = make_orch()
        store.create_ticket(with_round("T-1"))

        step(orch, orch.prd.process_rounds)

        assert store.get_ticket("T-1").status == "refining_round_1"
        synth = [r for r in store.runs_for_ticket("T-1") if r.agent == "pm_facilitator"]
        assert synth[0].status == "failed"


class TestRoundCap:
    """The round cap forces a PRD."""

    def test_forced_consensus(self, store, make_orch, runner):
        runner.script["pm_facilitator:synthesis"] = reply({
            "action": "CONTINUE_ROUND", "synthesis": "Still debating", "prompt": "Keep going",
        })
        runner.script["prd_expert:security"] = reply({
            "response": "Not yet", "concerns": ["Rate limiting undecided"], "approves": False,
        })
        orch = make_orch(max_prd_rounds=2)
        store.create_ticket(with_round("T-1"))

        step(orch, orch.prd.process_rounds)
        assert store.get_ticket("T-1").status == "refining_round_2"
        step(orch, orch.prd.process_rounds)

        ticket = store.get_ticket("T-1")
        assert ticket.status == "prd_complete"
        assert ticket.collaboration.status == "forced_consensus"
        assert ticket.collaboration.unresolved == ["security: Rate limiting undecided"]
        assert ticket.collaboration.final_prd["unresolved"] == ["security: Rate limiting undecided"]
        assert "Max rounds (2) reached" in ticket.history[-1].note

    def test_user_input_at_cap_is_forced(self, store, make_orch, runner):
        runner.script["pm_facilitator:synthesis"] = reply({
            "action": "REQUEST_USER_INPUT", "questions": ["Which SSO?"], "unresolved": ["SSO provider"],
        })
        orch = make_orch(max_prd_rounds=1)
        store.create_ticket(with_round("T-1"))

        step(orch, orch.prd.process_rounds)

        ticket = store.get_ticket("T-1")
        assert ticket.status == "prd_complete"
        assert ticket.collaboration.unresolved == ["SSO provider"]

    def test_forced_unresolved_skips_approving_experts(self):
        rnd = Round(number=3, expert_inputs={
            "dev": ExpertInput(expert="dev", response="ok", approves=True, concerns=["minor"]),
            "qa": ExpertInput(expert="qa", response="no", concerns=["flaky", "flaky"]),
        })
        assert forced_unresolved(rnd, FacilitatorReply(action="CONTINUE_ROUND")) == ["qa: flaky"]


class TestUserInput:
    """REQUEST_USER_INPUT and answering."""

    @pytest.fixture
    def asking(self, runner):
        runner.script["pm_facilitator:synthesis"] = reply({
            "action": "REQUEST_USER_INPUT",
            "synthesis": "We need a product decision.",
            "questions": ["Should login support SSO?", "Is remember-me required?"],
        })

    def test_awaiting_user(self, store, make_orch, asking):
        orch = make_orch()
        store.create_ticket(with_round("T-1"))
        step(orch, orch.prd.process_rounds)

        ticket = store.get_ticket("T-1")
        assert ticket.status == "awaiting_user"
        assert ticket.collaboration.status == "awaiting_user"
        assert ticket.collaboration.open_questions == ["Should login support SSO?", "Is remember-me required?"]
        threads = store.conversations_by_ticket("T-1")
        assert [(c.type, c.status) for c in threads] == [("user_question", "open")]
        assert "remember-me" in threads[0].messages[0].content

    def test_answer_opens_next_round(self, store, make_orch, runner, asking):
        orch = make_orch()
        store.create_ticket(with_round("T-1"))
        step(orch, orch.prd.process_rounds)

        orch.prd.answer_user("T-1", "Yes, Google SSO only.")
        assert orch.wait_idle(10)

        ticket = store.get_ticket("T-1")
        assert ticket.status == "refining_round_2"
        assert ticket.history[-1].by == "user"
        assert ticket.collaboration.status == "in_progress"
        assert ticket.collaboration.open_questions == []
        rnd = ticket.collaboration.get_round(2)
        assert "Google SSO only" in rnd.prompt
        assert "Should login support SSO?" in rnd.prompt
        assert sorted(rnd.responded()) == sorted(EXPERTS)

        thread = store.conversations_by_ticket("T-1")[0]
        assert thread.status == "resolved"
        assert thread.messages[-1].content == "Yes, Google SSO only."

    def test_answer_without_dispatch(self, store, make_orch, runner, asking):
        orch = make_orch()
        store.create_ticket(with_round("T-1"))
        step(orch, orch.prd.process_rounds)
        before = runner.count("prd_expert")

        orch.prd.answer_user("T-1", "No SSO.", dispatch=False)
        assert store.get_ticket("T-1").status == "refining_round_2"
        assert runner.count("prd_expert") == before

        # The next tick collects the new round's inputs
        step(orch, orch.prd.process_rounds)
        assert sorted(store.get_ticket("T-1").collaboration.get_round(2).responded()) == sorted(EXPERTS)

    def test_answer_requires_awaiting_user(self, store, orch):
        store.create_ticket(with_round("T-1"))
        with pytest.raises(InvalidTransition):
            orch.prd.answer_user("T-1", "too early")


class TestExpertRetries:
    """Missing experts are retried, then the ticket is blocked."""

    def test_expert_exhausted(self, store, make_orch, runner):
        runner.script["prd_expert:ux"] = failure("exit 1: rate limited")
        orch = make_orch()
        store.create_ticket(make_ticket("T-1", "approved"))

        step(orch, orch.prd.start_approved)
        step(orch, orch.prd.process_rounds)
        step(orch, orch.prd.process_rounds)
        assert store.get_ticket("T-1").status == "refining_round_1"
        step(orch, orch.prd.process_rounds)

        ticket = store.get_ticket("T-1")
        assert ticket.status == "blocked"
        assert ticket.history[-1].note == "expert exhausted"
        assert ticket.collaboration.status == "blocked"
        ux_runs = [r.id for r in store.runs_for_ticket("T-1") if r.agent == "prd-ux"]
        assert ux_runs == ["prd-T-1-ux-1-1", "prd-T-1-ux-1-2", "prd-T-1-ux-1-3"]
        assert store.conversations_by_ticket("T-1")[0].type == "blocker"

    def test_unblock_restarts_retry_budget(self, store, make_orch, runner):
        runner.script["prd_expert:ux"] = [failure(), failure(), failure(), reply({"response": "Now it works"})]
        orch = make_orch()
        store.create_ticket(make_ticket("T-1", "approved"))
        step(orch, orch.prd.start_approved)
        for _ in range(3):
            step(orch, orch.prd.process_rounds)
        assert store.get_ticket("T-1").status == "blocked"

        unblock(store, "T-1")
        step(orch, orch.prd.process_rounds)

        ticket = store.get_ticket("T-1")
        assert ticket.status == "refining_round_1"
        assert ticket.collaboration.get_round(1).expert_inputs["ux"].response == "Now it works"

    def test_empty_structured_response_keeps_raw_text(self, store, make_orch, runner):
        runner.script["prd_expert:qa"] = reply({"response": "", "approves": True}, prefix="")
        orch = make_orch()
        store.create_ticket(make_ticket("T-1", "approved"))
        step(orch, orch.prd.start_approved)

        rnd = store.get_ticket("T-1").collaboration.get_round(1)
        # The raw JSON text stands in as the response
        assert rnd.expert_inputs["qa"].has_response


class TestConsultation:
    """REQUEST_EXPERT and the consultation stage."""

    def test_consult_opens_next_round(self, store, make_orch, runner):
        runner.script["pm_facilitator:synthesis"] = reply({
            "action": "REQUEST_EXPERT", "synthesis": "Need a crypto opinion.",
            "consultQuestion": "Is bcrypt cost 12 enough?",
        })
        orch = make_orch()
        store.create_ticket(with_round("T-1"))

        step(orch, orch.prd.process_rounds)
        ticket = store.get_ticket("T-1")
        assert ticket.status == "needs_expert"
        assert ticket.collaboration.open_questions == ["Is bcrypt cost 12 enough?"]

        step(orch, orch.prd.process_consults)
        consult = [data for role, data, _ in runner.calls if role == "expert_consult"]
        assert consult[0].questions == ["Is bcrypt cost 12 enough?"]

        ticket = store.get_ticket("T-1")
        assert ticket.status == "refining_round_2"
        assert ticket.history[-1].by == "expert_consult"
        assert "Use the existing OAuth provider." in ticket.collaboration.get_round(2).prompt

    def test_consult_failures_block(self, store, make_orch, runner):
        runner.script["expert_consult"] = failure()
        orch = make_orch()
        ticket = with_round("T-1", status="needs_expert")
        ticket.collaboration.open_questions = ["Which cipher?"]
        store.create_ticket(ticket)

        for _ in range(3):
            step(orch, orch.prd.process_consults)

        ticket = store.get_ticket("T-1")
        assert ticket.status == "blocked"
        assert ticket.history[-1].note == "Agent failed 3 consecutive times"


class TestRecovery:
    """A refining ticket whose round was never recorded is restored."""

    def test_missing_round_restored(self, store, orch, runner):
        store.create_ticket(make_ticket("T-1", "refining_round_1", collaboration=Collaboration()))
        step(orch, orch.prd.process_rounds)

        ticket = store.get_ticket("T-1")
        assert ticket.status == "refining_round_1"
        assert ticket.collaboration.current_round == 1
        assert sorted(ticket.collaboration.get_round(1).responded()) == sorted(EXPERTS)


class TestBuildChildren:
    """Tests for build_children()."""

    def test_ids_dependencies_and_groups(self):
        parent = make_ticket("P", "breaking_down", priority=1)
        breakdown = parse_breakdown(
            '{"tickets": [{"title": "API", "files": ["api/*"]}, '
            '{"title": "UI", "dependencies": ["API", "EXT-9"]}], '
            '"parallelGroups": [{"group": 2, "tickets": ["UI"]}]}'
        )
        api, ui = build_children(parent, breakdown)
        assert (api.id, ui.id) == ("P-SUB-1", "P-SUB-2")
        assert ui.dependencies == ["P-SUB-1", "EXT-9"]
        assert ui.parallel_group == 2
        assert api.status == "ready"
        assert api.priority == 1
        assert api.parent_id == "P"
