from __future__ import annotations

from dataclasses import dataclass
import logging

from framix_server.services.jobs.dispatcher import Dispatcher
from framix_server.services.jobs.queue import AdmissionQueue
from framix_server.services.jobs.state import validate_transition
from framix_server.services.jobs.store import JobRepository
from framix_server.services.jobs.types import JobStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecoveryReport:
    requeued: list[str]
    reset_from_rendering: list[str]

    @property
    def total(self) -> int:
        return len(self.requeued) + len(self.reset_from_rendering)


def recover_jobs(
    *,
    store: JobRepository,
    queue: AdmissionQueue,
    dispatcher: Dispatcher,
) -> RecoveryReport:
    """
    Rebuild the admission queue from persisted state after a restart.

    Jobs still ``queued`` go back in their original order. Jobs left
    ``rendering`` were interrupted mid-render and are reset to ``queued``
    behind them; their next render starts from scratch.
    """
    requeued: list[str] = []
    for job in store.list_by_status(JobStatus.QUEUED):
        queue.enqueue(job.id)
        requeued.append(job.id)

    reset: list[str] = []
    for job in store.list_by_status(JobStatus.RENDERING):
        validate_transition(job.status, JobStatus.QUEUED, recovering=True)
        store.update(job.id, status=JobStatus.QUEUED, progress=None)
        queue.enqueue(job.id)
        reset.append(job.id)

    report = RecoveryReport(requeued=requeued, reset_from_rendering=reset)
    logger.info(
        "recovery complete requeued=%s reset_from_rendering=%s",
        len(requeued),
        len(reset),
    )

    dispatcher.drain()
    dispatcher.maybe_arm_idle()
    return report
