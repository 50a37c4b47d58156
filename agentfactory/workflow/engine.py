"""Orchestrator driver.

Runs the factory tick on a timer alongside the background reconcilers.
A tick walks the lifecycle stages in a fixed order:

    collaboration → breakdown → parent aggregation → development
    → reviews (qa → ux → sec → pm) → auto-merge

Stages only start agents; agent results are applied from the dispatcher's
threads as they arrive. Ticks are serialised by one mutex and every run is
registered in the store before it is submitted, so a second tick over an
unchanged board starts nothing new.

Also wrapped as the Prefect flow ``factory_cycle`` for observability.
"""

import logging
import threading
from typing import Callable, Optional

from prefect import flow, get_run_logger

from agentfactory.agents.runner import AgentRunner
from agentfactory.background.advisory import GathererReconciler, SecurityReconciler
from agentfactory.background.manager import BackgroundManager
from agentfactory.background.product import ProductReconciler
from agentfactory.background.workspace import WorkspaceReconciler
from agentfactory.git.worktree import WorkspaceManager
from agentfactory.kanban.stats import format_stats
from agentfactory.lib.config import FactoryConfig, load_factory_config
from agentfactory.lib.errors import ConfigInvalid, StoreUnavailable, WorkspaceFailure
from agentfactory.runner.dispatch import DEFAULT_MAX_WORKERS, Dispatcher
from agentfactory.runner.ledger import ActiveRunLedger
from agentfactory.workflow.context import FactoryContext, Metrics
from agentfactory.workflow.merge_queue import MergeQueue
from agentfactory.workflow.prd import CollaborationEngine
from agentfactory.workflow.review import REVIEW_STAGES, ReviewPipeline
from agentfactory.workflow.scheduler import DevScheduler
from agentfactory.workflow.tasks import (
    REVIEW_ORDER,
    task_aggregation,
    task_auto_merge,
    task_breakdown,
    task_development,
    task_prd_rounds,
    task_review,
    task_round_start,
)

logger = logging.getLogger(__name__)

# How long shutdown waits for agents to unwind after cancellation
SHUTDOWN_TIMEOUT = 60.0


class Orchestrator:
    """Long-lived driver owning the store view, dispatcher and reconcilers.

    Args:
        store: Board store
        workspace: Worktree manager
        runner: Agent runner
        config: Fixed configuration; when omitted it is read from the store
            at initialize and re-read every tick
    """

    def __init__(self, store, workspace: WorkspaceManager, runner: AgentRunner,
                 config: Optional[FactoryConfig] = None, max_workers: int = DEFAULT_MAX_WORKERS):
        self.store = store
        self.workspace = workspace
        self.runner = runner
        self._fixed_config = config is not None
        self.cancel = threading.Event()
        self.tick_lock = threading.Lock()

        self.dispatcher = Dispatcher(max_workers, cancel=self.cancel)
        self.ledger = ActiveRunLedger(store)
        self.ctx = FactoryContext(
            store=store,
            runner=runner,
            workspace=workspace,
            ledger=self.ledger,
            dispatcher=self.dispatcher,
            config=config or FactoryConfig(),
            metrics=Metrics(),
        )
        self.prd = CollaborationEngine(self.ctx)
        self.scheduler = DevScheduler(self.ctx)
        self.review = ReviewPipeline(self.ctx)
        self.merges = MergeQueue(self.ctx)
        self.background = BackgroundManager()
        self._initialized = False

    @property
    def config(self) -> FactoryConfig:
        return self.ctx.config

    # --- Lifecycle ---

    def initialize(self) -> None:
        """
        Prepare for running.

        Raises:
            ConfigInvalid: If a configuration value is invalid
            StoreUnavailable: If the board cannot be read or written
        """
        if not self._fixed_config:
            self.ctx.config = load_factory_config(self.store)

        try:
            self.workspace.cleanup_orphans()
        except WorkspaceFailure as e:
            logger.warning(f"[CYCLE] Orphan worktree cleanup failed: {e}")

        orphaned = self.store.fail_running_runs("orphaned by restart")
        if orphaned:
            logger.warning(f"[CYCLE] Marked {len(orphaned)} run(s) left running by a previous process as failed")
        for entry in self.store.requeue_interrupted_merges("interrupted by restart"):
            logger.warning(f"[MERGE] {entry.ticket_id}: merge of {entry.branch} was interrupted, requeued")

        if not self.background.agents():
            self.background.register(ProductReconciler(self.ctx))
            self.background.register(WorkspaceReconciler(self.ctx, self.merges))
            self.background.register(SecurityReconciler(self.ctx))
            self.background.register(GathererReconciler(self.ctx))

        self._initialized = True
        logger.info(f"[CYCLE] Initialized: {format_stats(self.store.stats())}")

    def run(self, cancel: Optional[threading.Event] = None) -> None:
        """
        Tick every ``cycle_interval_seconds`` until cancelled.

        Args:
            cancel: Root cancellation event; ``stop()`` is used when omitted
        """
        if not self._initialized:
            self.initialize()
        if cancel is not None:
            self.cancel = cancel
            self.dispatcher.cancel = cancel

        self.background.start(self.cancel)
        logger.info(f"[CYCLE] Running every {self.config.cycle_interval_seconds}s")
        try:
            while not self.cancel.is_set():
                try:
                    self.run_cycle()
                except Exception:
                    logger.exception("[CYCLE] Tick failed")
                self.cancel.wait(self.config.cycle_interval_seconds)
        finally:
            logger.info("[CYCLE] Stopping")
            self.cancel.set()
            self.background.stop()
            self.dispatcher.shutdown(SHUTDOWN_TIMEOUT)
            logger.info(f"[CYCLE] Stopped after {self.ctx.metrics.snapshot()['cycles_run']} cycles")

    def stop(self) -> None:
        self.cancel.set()

    # --- Tick ---

    def _reload_config(self) -> None:
        if self._fixed_config:
            return
        try:
            self.ctx.config = load_factory_config(self.store)
        except ConfigInvalid as e:
            logger.warning(f"[CYCLE] Keeping previous config: {e}")

    def prepare_tick(self) -> None:
        """Reload the board, fail timed-out runs and rebuild the run ledger."""
        self.store.reload()
        self._reload_config()
        stale = self.store.fail_running_runs("timeout", older_than_seconds=self.config.agent_timeout_seconds)
        for run in stale:
            logger.warning(f"[CYCLE] {run.agent} on {run.ticket_id} exceeded "
                           f"{self.config.agent_timeout_minutes} min, marked as timed out")
        self.ledger.refresh()
        logger.info(f"[CYCLE] {format_stats(self.store.stats())}")

    def stages(self) -> list[tuple[str, Callable]]:
        """Tick stages in execution order."""
        return [
            ("round_start", self.prd.start_approved),
            ("prd_rounds", self.prd.process_rounds),
            ("expert_consult", self.prd.process_consults),
            ("breakdown", self.prd.process_breakdowns),
            ("aggregation", self.prd.aggregate_parents),
            ("development", self.scheduler.schedule),
        ] + [
            (f"review_{stage.stage}", lambda s=stage.status: self.review.process(s))
            for stage in REVIEW_STAGES
        ] + [
            ("auto_merge", self.merges.auto_merge),
        ]

    def run_cycle(self) -> bool:
        """One tick. Returns False if the store was unavailable."""
        with self.tick_lock:
            try:
                self.prepare_tick()
                for name, stage in self.stages():
                    logger.debug(f"[CYCLE] Stage {name}")
                    stage()
            except StoreUnavailable as e:
                logger.warning(f"[CYCLE] Store unavailable, skipping tick: {e}")
                return False
            self.ctx.metrics.inc("cycles_run")
            return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every dispatched agent (and anything it chained) has finished."""
        return self.dispatcher.wait_idle(timeout)

    # --- Introspection ---

    def metrics(self) -> dict:
        return self.ctx.metrics.snapshot()

    def background_statuses(self) -> list[dict]:
        return self.background.statuses()


@flow(name="factory_cycle", validate_parameters=False)
def factory_cycle(orch: Orchestrator) -> dict:
    """Run one tick with each stage as a Prefect task.

    Same stage order as ``Orchestrator.run_cycle``.
    """
    log = get_run_logger()
    with orch.tick_lock:
        orch.prepare_tick()
        task_round_start(orch)
        task_prd_rounds(orch)
        task_breakdown(orch)
        closed = task_aggregation(orch)
        started = task_development(orch)
        for status in REVIEW_ORDER:
            task_review(orch, status)
        task_auto_merge(orch)
        orch.ctx.metrics.inc("cycles_run")
    log.info(f"Cycle complete: {len(started)} started in development, {closed} parent(s) closed")
    return orch.metrics()
