"""Crash detection across three signals.

Passes run in order of confidence: an explicit process-exit signal, then
absence from the process registry, then a stale heartbeat. Each pass gets the
ids already flagged this cycle and returns only the ids it flagged itself, so
no agent is marked crashed twice.
"""

import logging
from datetime import datetime, timedelta

from work_reconciler.core.agents import AgentAccessor
from work_reconciler.core.registry import ProcessRegistry
from work_reconciler.core.results import ReconcileError
from work_reconciler.db.engine import utc_now
from work_reconciler.db.models import Agent, ExecutionState, ProcessStatus

logger = logging.getLogger(__name__)

ORPHAN_GRACE_PERIOD = timedelta(minutes=2)

_EXIT_SIGNALS = (ProcessStatus.CRASHED, ProcessStatus.KILLED)
_ALIVE_SIGNALS = (ProcessStatus.RUNNING, ProcessStatus.IDLE)


def _mark_crashed(
    agents: AgentAccessor,
    agent: Agent,
    reason: str,
    errors: list[ReconcileError],
) -> None:
    try:
        agents.mark_as_crashed(agent.id)
        logger.warning("Agent %s marked crashed: %s", agent.id, reason)
    except Exception as e:
        logger.error("Failed to mark agent %s crashed: %s", agent.id, e)
        errors.append(
            ReconcileError(entity="agent", id=agent.id, error=str(e), action="mark_crashed")
        )


def detect_explicit_crashes(
    agents: AgentAccessor,
    active: list[Agent],
    flagged: set[str],
    errors: list[ReconcileError],
) -> set[str]:
    found = set()
    for agent in active:
        if agent.id in flagged or agent.process_status not in _EXIT_SIGNALS:
            continue
        _mark_crashed(agents, agent, f"process status {agent.process_status.value}", errors)
        found.add(agent.id)
    return found


def is_orphaned(agent: Agent, registry: ProcessRegistry, now: datetime | None = None) -> bool:
    """Alive in the database, unknown to the registry, and past the startup grace period."""
    if agent.process_status not in _ALIVE_SIGNALS:
        return False
    if registry.is_agent_running(agent.id):
        return False
    started = agent.process_started_at or agent.created_at
    if started is None:
        return False
    now = now or utc_now()
    return now - started > ORPHAN_GRACE_PERIOD


def detect_orphans(
    agents: AgentAccessor,
    active: list[Agent],
    registry: ProcessRegistry,
    flagged: set[str],
    errors: list[ReconcileError],
) -> set[str]:
    found = set()
    now = utc_now()
    for agent in active:
        if agent.id in flagged or not is_orphaned(agent, registry, now):
            continue
        _mark_crashed(agents, agent, "not in process registry", errors)
        found.add(agent.id)
    return found


def detect_stale_heartbeats(
    agents: AgentAccessor,
    registry: ProcessRegistry,
    threshold_minutes: int,
    flagged: set[str],
    errors: list[ReconcileError],
) -> set[str]:
    found = set()
    for agent in agents.find_potentially_crashed_agents(threshold_minutes):
        if agent.id in flagged:
            continue
        if registry.is_agent_running(agent.id):
            logger.warning(
                "Agent %s has a stale heartbeat but is still running; leaving it alone",
                agent.id,
            )
            continue
        _mark_crashed(agents, agent, f"no heartbeat for {threshold_minutes}m", errors)
        found.add(agent.id)
    return found


def detect_crashes(
    agents: AgentAccessor,
    registry: ProcessRegistry,
    threshold_minutes: int,
    errors: list[ReconcileError],
) -> list[str]:
    """Run all three passes and return the ids marked crashed this cycle.

    An agent whose marking failed still counts as flagged for the later
    passes, but is reported through ``errors`` rather than the return value.
    """
    active = agents.list(execution_state=ExecutionState.ACTIVE)
    flagged: set[str] = set()
    ordered: list[str] = []

    explicit = detect_explicit_crashes(agents, active, flagged, errors)
    ordered.extend(sorted(explicit))
    flagged |= explicit

    orphans = detect_orphans(agents, active, registry, flagged, errors)
    ordered.extend(sorted(orphans))
    flagged |= orphans

    stale = detect_stale_heartbeats(agents, registry, threshold_minutes, flagged, errors)
    ordered.extend(sorted(stale))
    flagged |= stale

    failed = {e.id for e in errors if e.action == "mark_crashed"}
    crashed = [agent_id for agent_id in ordered if agent_id not in failed]
    if crashed:
        logger.info("Crash detection flagged %d agent(s)", len(crashed))
    return crashed
