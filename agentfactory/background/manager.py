"""
Background reconcilers.

Each reconciler runs once immediately and then every ``period`` seconds on
its own thread until the shared cancel event fires. A reconciler that raises
is marked ``error`` and tries again next period.
"""

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Optional

from agentfactory.kanban.models import utcnow
from agentfactory.lib.errors import StoreUnavailable

logger = logging.getLogger(__name__)


@dataclass
class AgentStatus:
    """Snapshot of one reconciler."""
    type: str
    status: str = "idle"            # running, idle, error, stopped
    current_activity: str = ""
    last_active_at: str = ""
    cycle_count: int = 0
    last_error: str = ""


class BackgroundAgent:
    """Base class for periodic reconcilers."""

    agent_type = ""
    period = 30.0

    def __init__(self, ctx):
        self.ctx = ctx
        self.store = ctx.store
        self._lock = threading.Lock()
        self._status = AgentStatus(type=self.agent_type)

    def run_once(self) -> None:
        raise NotImplementedError

    def set_activity(self, activity: str) -> None:
        with self._lock:
            self._status.current_activity = activity

    def _set(self, **changes) -> None:
        with self._lock:
            for key, value in changes.items():
                setattr(self._status, key, value)

    def tick(self) -> bool:
        """One pass. Returns False if it failed."""
        self._set(status="running", last_active_at=utcnow())
        try:
            self.run_once()
        except StoreUnavailable as e:
            logger.warning(f"[{self.agent_type.upper()}] Store unavailable: {e}")
            self._set(status="error", last_error=str(e))
            return False
        except Exception as e:
            logger.exception(f"[{self.agent_type.upper()}] Reconciler pass failed")
            self._set(status="error", last_error=str(e))
            return False
        finally:
            with self._lock:
                self._status.cycle_count += 1
                self._status.current_activity = ""
        self._set(status="idle", last_error="")
        return True

    def loop(self, cancel: threading.Event) -> None:
        while not cancel.is_set():
            self.tick()
            cancel.wait(self.period)
        self._set(status="stopped")
        logger.debug(f"[{self.agent_type.upper()}] Stopped")

    def status(self) -> dict:
        with self._lock:
            return asdict(self._status)


class BackgroundManager:
    """Owns the reconcilers and their threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._agents: list[BackgroundAgent] = []
        self._threads: list[threading.Thread] = []

    def register(self, agent: BackgroundAgent) -> None:
        with self._lock:
            self._agents.append(agent)

    def agents(self) -> list[BackgroundAgent]:
        with self._lock:
            return list(self._agents)

    def get(self, agent_type: str) -> Optional[BackgroundAgent]:
        return next((a for a in self.agents() if a.agent_type == agent_type), None)

    def start(self, cancel: threading.Event) -> None:
        """Start one thread per reconciler."""
        threads = []
        for agent in self.agents():
            thread = threading.Thread(target=agent.loop, args=(cancel,), name=f"bg-{agent.agent_type}", daemon=True)
            thread.start()
            threads.append(thread)
        with self._lock:
            self._threads = threads
        logger.info(f"[CYCLE] Started {len(threads)} background reconcilers")

    def stop(self, timeout: float = 10.0) -> None:
        """Wait for reconciler threads to finish. The caller sets the cancel event."""
        with self._lock:
            threads, self._threads = self._threads, []
        for thread in threads:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"[CYCLE] {thread.name} did not stop within {timeout}s")

    def run_all_once(self) -> None:
        for agent in self.agents():
            agent.tick()

    def statuses(self) -> list[dict]:
        return [agent.status() for agent in self.agents()]
