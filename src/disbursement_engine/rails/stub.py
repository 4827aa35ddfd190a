"""Stub payment rail for local development and testing.

Replace with a bank API adapter for production.
"""

from __future__ import annotations

import threading
import time
from datetime import date
from typing import Callable
from uuid import UUID

from disbursement_engine.rails.base import JobInstruction, RailResult


class StubRail:
    """In-memory rail that accepts every instruction unless told otherwise.

    Args:
        fail_jobs: Job ids that should be reported as failed.
        delay_seconds: Artificial latency per execution, to exercise timeouts.
        decide: Optional callback overriding the outcome per instruction.
    """

    rail_name = "stub"

    def __init__(
        self,
        fail_jobs: set[UUID] | None = None,
        delay_seconds: float = 0.0,
        decide: Callable[[JobInstruction], RailResult] | None = None,
    ) -> None:
        self.fail_jobs = set(fail_jobs or ())
        self.delay_seconds = delay_seconds
        self.decide = decide
        self._lock = threading.Lock()
        # In-memory tracking for stub
        self.executed: dict[str, JobInstruction] = {}

    def execute(self, instruction: JobInstruction) -> RailResult:
        """Execute a job (stub implementation)."""
        if self.delay_seconds:
            time.sleep(self.delay_seconds)

        if self.decide is not None:
            return self.decide(instruction)
        if instruction.job_id in self.fail_jobs:
            return RailResult(success=False, message="Rejected by stub rail")

        key = instruction.idempotency_key or str(instruction.job_id)
        with self._lock:
            self.executed[key] = instruction
        reference = f"STUB{date.today().strftime('%Y%m%d')}{str(instruction.job_id)[:8].upper()}"
        return RailResult(success=True, reference=reference, message="Accepted")

    @property
    def execution_count(self) -> int:
        with self._lock:
            return len(self.executed)
