"""
Optimistic apply / persist / reconcile primitives.

A mutation is first computed in memory (ApplyResult), then each pending job
is written to the store on its own. Any failed write triggers a re-read so
the caller's view matches what was actually stored.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from .models import Job, JobStore


logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    """In-memory outcome of a mutation before it is persisted."""
    optimistic: List[Job]  # full job list after the change
    pending: List[Job]  # jobs whose stored copy must be updated


@dataclass
class PersistOutcome:
    """Per-job write results plus the job list the caller should display."""
    jobs: List[Job]
    succeeded: int = 0
    failed: int = 0
    failed_ids: List[str] = field(default_factory=list)
    reconciled: bool = False

    @property
    def ok(self) -> bool:
        return self.failed == 0


def persist_jobs(store: JobStore, jobs: List[Job]) -> PersistOutcome:
    """Write each job individually; every write is attempted."""
    outcome = PersistOutcome(jobs=[])
    for job in jobs:
        try:
            store.update_job(job)
            outcome.succeeded += 1
        except Exception as e:
            logger.error(f"Failed to persist job {job.id}: {e}")
            outcome.failed += 1
            outcome.failed_ids.append(job.id)
    return outcome


def persist_and_reconcile(store: JobStore, result: ApplyResult) -> PersistOutcome:
    """Persist pending jobs; on any failure, replace the optimistic view with the store's."""
    outcome = persist_jobs(store, result.pending)
    outcome.jobs = result.optimistic

    if outcome.failed:
        logger.warning(f"{outcome.failed} of {len(result.pending)} job writes failed, reloading from store")
        outcome.jobs = store.fetch_jobs()
        outcome.reconciled = True

    return outcome
