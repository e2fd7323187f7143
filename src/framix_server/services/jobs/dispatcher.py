"""
Bounded-concurrency render dispatcher.

All queue and counter mutations happen on the event loop thread with no
suspension point between reading the queue and writing the outcome, so
admission, cancellation and dispatch never interleave. Only the render
collaborator call and the backoff between storage retries are awaited.

A failed ``rendering`` write puts the job back at the head of the queue and
schedules another drain. A failed terminal write keeps the job's slot and
is retried until it lands.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from framix_server.errors import (
    JobConflictError,
    JobNotFoundError,
    NotCancellableError,
    StorageError,
)
from framix_server.services.jobs.hub import (
    NotificationHub,
    cancelled_event,
    complete_event,
    error_event,
    progress_event,
    queued_event,
)
from framix_server.services.jobs.idle import IdleController
from framix_server.services.jobs.queue import AdmissionQueue
from framix_server.services.jobs.state import can_transition, is_terminal
from framix_server.services.jobs.store import JobRepository
from framix_server.services.jobs.types import Job, JobStatus
from framix_server.services.render.client import RenderCollaborator, RenderOutcome

logger = logging.getLogger(__name__)

_END_OF_PROGRESS = None
_MAX_RETRY_DELAY = 5.0


class Dispatcher:
    def __init__(
        self,
        *,
        store: JobRepository,
        hub: NotificationHub,
        queue: AdmissionQueue,
        renderer: RenderCollaborator,
        max_concurrent: int,
        idle: IdleController | None = None,
        retry_delay: float = 0.1,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if retry_delay <= 0:
            raise ValueError("retry_delay must be positive")
        self._store = store
        self._hub = hub
        self._queue = queue
        self._renderer = renderer
        self._max_concurrent = max_concurrent
        self._idle = idle
        self._active: dict[str, str] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._accepting = True
        self._retry_delay = retry_delay
        self._drain_backoff = retry_delay
        self._drain_retry: asyncio.TimerHandle | None = None

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    def active_job_ids(self) -> list[str]:
        return list(self._active)

    def admit(self, job_id: str) -> int:
        """Move a pending job into the queue and return its 0-based position."""
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if not can_transition(job.status, JobStatus.QUEUED):
            raise JobConflictError(
                job_id,
                status=job.status.value,
                reason="terminal" if is_terminal(job.status) else "not_pending",
                message=f"Job {job_id} cannot be queued from status {job.status.value}",
            )

        if self._idle is not None:
            self._idle.cancel()

        self._store.update(job_id, status=JobStatus.QUEUED)
        position = self._queue.enqueue(job_id)
        logger.info(
            "job queued job_id=%s template_id=%s position=%s",
            job_id,
            job.template_id,
            position,
        )
        self._hub.publish(job_id, queued_event(job_id, position))
        self.drain()
        return position

    def cancel(self, job_id: str) -> Job:
        job = self._store.get(job_id)
        if job is None:
            raise NotCancellableError(
                job_id, status=None, reason="not_found", message="Job not found"
            )
        if job.status == JobStatus.RENDERING:
            raise NotCancellableError(
                job_id,
                status=job.status.value,
                reason="rendering",
                message="Cannot cancel a job that is currently rendering",
            )
        if is_terminal(job.status):
            raise NotCancellableError(
                job_id,
                status=job.status.value,
                reason="terminal",
                message="Job already finished",
            )
        if job_id not in self._queue:
            raise NotCancellableError(
                job_id,
                status=job.status.value,
                reason="not_queued",
                message="Job is not waiting in the queue",
            )

        # Store first: a failed write must leave the job queued and dispatchable.
        cancelled = self._store.update(job_id, status=JobStatus.CANCELLED)
        self._queue.remove(job_id)
        logger.info("job cancelled job_id=%s", job_id)
        self._hub.publish(job_id, cancelled_event(job_id))
        self.maybe_arm_idle()
        return cancelled if cancelled is not None else job

    def drain(self) -> None:
        while self._accepting and len(self._active) < self._max_concurrent:
            job_id = self._queue.pop_next()
            if job_id is None:
                break

            try:
                job = self._store.get(job_id)
                if job is None or job.status != JobStatus.QUEUED:
                    logger.info(
                        "discarding stale queue entry job_id=%s status=%s",
                        job_id,
                        job.status.value if job is not None else "missing",
                    )
                    continue
                self._store.update(job_id, status=JobStatus.RENDERING)
            except StorageError:
                logger.exception(
                    "dispatch deferred by storage failure job_id=%s retry_in=%ss",
                    job_id,
                    self._drain_backoff,
                )
                self._queue.requeue_front(job_id)
                self._schedule_drain_retry()
                break

            self._drain_backoff = self._retry_delay
            self._start(job)

        self.maybe_arm_idle()

    def maybe_arm_idle(self) -> None:
        if self._idle is None:
            return
        self._idle.cancel()
        if self._accepting and not self._active and not len(self._queue):
            self._idle.arm()

    def queue_status(self) -> dict[str, Any]:
        active: list[dict[str, Any]] = []
        for job_id, template_id in self._active.items():
            job = self._store.get(job_id)
            active.append(
                {
                    "jobId": job_id,
                    "templateId": template_id,
                    "progress": job.progress if job is not None else None,
                }
            )

        queued: list[dict[str, Any]] = []
        for position, job_id in enumerate(self._queue.snapshot()):
            job = self._store.get(job_id)
            queued.append(
                {
                    "jobId": job_id,
                    "templateId": job.template_id if job is not None else None,
                    "status": job.status.value if job is not None else None,
                    "position": position,
                }
            )

        return {
            "active": active,
            "activeCount": len(self._active),
            "maxConcurrent": self._max_concurrent,
            "queued": queued,
            "queueLength": len(queued),
        }

    async def shutdown(self) -> None:
        """Stop dispatching and abandon in-flight renders; recovery re-queues them."""
        self._accepting = False
        if self._idle is not None:
            self._idle.cancel()
        if self._drain_retry is not None:
            self._drain_retry.cancel()
            self._drain_retry = None

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Block until no render task is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _schedule_drain_retry(self) -> None:
        if self._drain_retry is not None or not self._accepting:
            return
        self._drain_retry = asyncio.get_running_loop().call_later(
            self._drain_backoff, self._retry_drain
        )
        self._drain_backoff = min(self._drain_backoff * 2, _MAX_RETRY_DELAY)

    def _retry_drain(self) -> None:
        self._drain_retry = None
        self.drain()

    def _start(self, job: Job) -> None:
        self._active[job.id] = job.template_id
        logger.info(
            "job dispatched job_id=%s template_id=%s active=%s/%s",
            job.id,
            job.template_id,
            len(self._active),
            self._max_concurrent,
        )
        task = asyncio.get_running_loop().create_task(self._execute(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, job: Job) -> None:
        loop = asyncio.get_running_loop()
        channel: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

        def on_progress(info: dict[str, Any]) -> None:
            loop.call_soon_threadsafe(channel.put_nowait, dict(info))

        forwarder = loop.create_task(self._forward_progress(job.id, channel))
        try:
            try:
                outcome = await self._renderer.render(job.template_id, on_progress)
            except asyncio.CancelledError:
                forwarder.cancel()
                raise
            except Exception as exc:
                logger.exception("render raised job_id=%s template_id=%s", job.id, job.template_id)
                outcome = RenderOutcome.failed(str(exc) or exc.__class__.__name__)

            # Queued behind any progress callbacks already scheduled by the renderer.
            loop.call_soon_threadsafe(channel.put_nowait, _END_OF_PROGRESS)
            try:
                await forwarder
            except Exception:
                logger.exception("progress forwarding failed job_id=%s", job.id)
            # The slot stays held until the outcome is durably recorded.
            await self._finish(job, outcome)
        finally:
            self._active.pop(job.id, None)
            self.drain()

    async def _forward_progress(
        self, job_id: str, channel: asyncio.Queue[dict[str, Any] | None]
    ) -> None:
        while True:
            info = await channel.get()
            if info is _END_OF_PROGRESS:
                return
            try:
                self._store.update(job_id, progress=info)
            except StorageError:
                logger.exception("progress write failed job_id=%s", job_id)
                continue
            self._hub.publish(job_id, progress_event(job_id, info))

    async def _finish(self, job: Job, outcome: RenderOutcome) -> None:
        delay = self._retry_delay
        while True:
            try:
                self._record_outcome(job, outcome)
                return
            except StorageError:
                logger.exception(
                    "terminal write failed job_id=%s retry_in=%ss", job.id, delay
                )
            await asyncio.sleep(delay)
            delay = min(delay * 2, _MAX_RETRY_DELAY)

    def _record_outcome(self, job: Job, outcome: RenderOutcome) -> None:
        if outcome.success:
            result = outcome.result if outcome.result is not None else {}
            self._store.update(job.id, status=JobStatus.COMPLETED, result=result, error=None)
            logger.info("job completed job_id=%s template_id=%s", job.id, job.template_id)
            self._hub.publish(job.id, complete_event(job.id, result))
            return

        message = outcome.error or "Render failed"
        self._store.update(job.id, status=JobStatus.FAILED, result=None, error=message)
        logger.warning(
            "job failed job_id=%s template_id=%s error=%s",
            job.id,
            job.template_id,
            message,
        )
        self._hub.publish(job.id, error_event(job.id, message))
