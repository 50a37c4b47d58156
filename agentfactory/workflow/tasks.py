"""Prefect task wrappers for tick stages.

Wraps each lifecycle stage with @task decorators to get:
- Automatic retry when the board file is briefly unavailable
- Structured logging
- Observability (when connected to Prefect server)

The stages themselves are the orchestrator's own methods; ``run_cycle``
calls them directly, ``factory_cycle`` calls them through these tasks.
"""

from typing import TYPE_CHECKING

from prefect import task
from prefect.cache_policies import NONE

from agentfactory.kanban.status import TicketState

if TYPE_CHECKING:
    from agentfactory.workflow.engine import Orchestrator


@task(
    retries=1,
    retry_delay_seconds=5,
    name="round_start",
    description="Open PRD round 1 for approved tickets",
    cache_policy=NONE,
)
def task_round_start(orch: "Orchestrator") -> int:
    return orch.prd.start_approved()


@task(
    retries=1,
    retry_delay_seconds=5,
    name="prd_rounds",
    description="Collect expert inputs and synthesise complete rounds",
    cache_policy=NONE,
)
def task_prd_rounds(orch: "Orchestrator") -> None:
    """PRD rounds followed by expert consultations."""
    orch.prd.process_rounds()
    orch.prd.process_consults()


@task(
    retries=1,
    retry_delay_seconds=5,
    name="breakdown",
    description="Break finished PRDs into child tickets",
    cache_policy=NONE,
)
def task_breakdown(orch: "Orchestrator") -> None:
    orch.prd.process_breakdowns()


@task(
    retries=1,
    retry_delay_seconds=5,
    name="aggregation",
    description="Close parents whose children are all done",
    cache_policy=NONE,
)
def task_aggregation(orch: "Orchestrator") -> int:
    return orch.prd.aggregate_parents()


@task(
    retries=1,
    retry_delay_seconds=5,
    name="development",
    description="Admit ready tickets into development",
    cache_policy=NONE,
)
def task_development(orch: "Orchestrator") -> list[str]:
    """Development scheduling.

    Retried once: a worktree that could not be created has already blocked
    its ticket, so a retry only admits the remaining ones.
    """
    return orch.scheduler.schedule()


@task(
    retries=1,
    retry_delay_seconds=5,
    name="review",
    description="Dispatch reviewers for one review state",
    cache_policy=NONE,
)
def task_review(orch: "Orchestrator", status: str) -> int:
    return orch.review.process(status)


@task(
    retries=1,
    retry_delay_seconds=10,
    name="auto_merge",
    description="Merge done tickets into main and retire their worktrees",
    cache_policy=NONE,
)
def task_auto_merge(orch: "Orchestrator") -> int:
    return orch.merges.auto_merge()


REVIEW_ORDER = (
    TicketState.IN_QA.value,
    TicketState.IN_UX.value,
    TicketState.IN_SEC.value,
    TicketState.PM_REVIEW.value,
)
