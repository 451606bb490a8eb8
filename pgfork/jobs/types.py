from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pgfork.db.models import JobPhase
from pgfork.fork.types import TableTask, TransferPlan


@dataclass(slots=True)
class ForkJob:
    id: str
    spec: dict[str, Any]
    fingerprint: str
    plan: TransferPlan | None
    phase: JobPhase
    failed_phase: JobPhase | None
    tasks: list[TableTask]
    applied_ddl: set[str] = field(default_factory=set)
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    finished_at: datetime | None = None

    def task(self, name: str) -> TableTask:
        for task in self.tasks:
            if task.name == name:
                return task
        raise KeyError(name)
