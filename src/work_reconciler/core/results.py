"""Result types returned by a reconciliation cycle."""

from dataclasses import asdict, dataclass, field


@dataclass
class ReconcileError:
    entity: str
    id: str
    error: str
    action: str


@dataclass
class ReconciliationResult:
    success: bool = True
    tasks_reconciled: int = 0
    agents_reconciled: int = 0
    supervisors_created: int = 0
    workers_created: int = 0
    infrastructure_created: int = 0
    crashes_detected: int = 0
    crashed_agent_ids: list[str] = field(default_factory=list)
    supervisors_skipped_due_to_limit: int = 0
    workers_skipped_due_to_limit: int = 0
    tasks_blocked: int = 0
    tasks_failed: int = 0
    errors: list[ReconcileError] = field(default_factory=list)

    def add_error(self, entity: str, id: str, error: Exception | str, action: str) -> None:
        self.errors.append(ReconcileError(entity=entity, id=id, error=str(error), action=action))

    def to_dict(self) -> dict:
        return asdict(self)
