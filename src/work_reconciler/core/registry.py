"""Process registry: which agents have a live process in this runtime."""

import os
import threading
from typing import Iterable, Protocol

from work_reconciler.db.models import Agent


class ProcessRegistry(Protocol):
    def is_agent_running(self, agent_id: str) -> bool: ...


def is_pid_alive(pid: int | None) -> bool:
    """Check if a process is still running."""
    if pid is None:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it


class InMemoryProcessRegistry:
    """Agent id -> pid map filled in by the lifecycle layer.

    Only answers lookups; it never starts, signals, or stops a process.
    """

    def __init__(self):
        self._pids: dict[str, int | None] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_recorded_pids(cls, agents: Iterable[Agent]) -> "InMemoryProcessRegistry":
        """Snapshot of agents whose recorded pid is alive right now.

        Used when no lifecycle layer shares this process, e.g. a one-shot
        ``wr reconcile`` run.
        """
        registry = cls()
        for agent in agents:
            if is_pid_alive(agent.process_pid):
                registry.register(agent.id, agent.process_pid)
        return registry

    def register(self, agent_id: str, pid: int | None = None) -> None:
        with self._lock:
            self._pids[agent_id] = pid

    def unregister(self, agent_id: str) -> None:
        with self._lock:
            self._pids.pop(agent_id, None)

    def is_agent_running(self, agent_id: str) -> bool:
        with self._lock:
            return agent_id in self._pids

    def running_agent_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._pids)
