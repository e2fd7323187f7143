"""
In-memory fan-out of job events to live observers.

Events are plain dicts of the form ``{"type": ..., "jobId": ..., **payload}``
and are handed to each observer immediately; nothing is buffered per
observer. A late subscriber is brought up to date by replaying the job's
stored state at subscribe time.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from framix_server.services.jobs.store import JobRepository
from framix_server.services.jobs.types import JobStatus

logger = logging.getLogger(__name__)

Event = dict[str, Any]


class Observer(Protocol):
    def deliver(self, event: Event) -> None: ...

    def close(self) -> None: ...


def subscribed_event(job_id: str) -> Event:
    return {"type": "subscribed", "jobId": job_id}


def queued_event(job_id: str, position: int) -> Event:
    return {"type": "queued", "jobId": job_id, "position": position}


def progress_event(job_id: str, progress: dict[str, Any]) -> Event:
    # The job id always wins over a stray "jobId"/"type" key in the payload.
    return {**progress, "type": "progress", "jobId": job_id}


def complete_event(job_id: str, result: dict[str, Any] | None) -> Event:
    return {"type": "complete", "jobId": job_id, "result": result}


def error_event(job_id: str, message: str) -> Event:
    return {"type": "error", "jobId": job_id, "error": message}


def cancelled_event(job_id: str) -> Event:
    return {"type": "cancelled", "jobId": job_id}


class NotificationHub:
    def __init__(self, store: JobRepository) -> None:
        self._store = store
        self._observers: dict[str, set[Observer]] = {}
        self._connections: set[Observer] = set()

    def connect(self, observer: Observer) -> None:
        self._connections.add(observer)

    def subscribe(self, job_id: str, observer: Observer) -> None:
        self._observers.setdefault(job_id, set()).add(observer)
        self._send(observer, subscribed_event(job_id))
        for event in self._replay(job_id):
            self._send(observer, event)

    def unsubscribe(self, job_id: str, observer: Observer) -> None:
        observers = self._observers.get(job_id)
        if observers is None:
            return
        observers.discard(observer)
        if not observers:
            del self._observers[job_id]

    def disconnect(self, observer: Observer) -> None:
        self._connections.discard(observer)
        for job_id in list(self._observers):
            self.unsubscribe(job_id, observer)

    def publish(self, job_id: str, event: Event) -> None:
        # Snapshot: delivery may trigger a disconnect that mutates the set.
        for observer in list(self._observers.get(job_id, ())):
            self._send(observer, event)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._observers.get(job_id, ()))

    def subscribed_job_ids(self) -> list[str]:
        return list(self._observers)

    def close_all(self) -> None:
        observers: set[Observer] = set(self._connections)
        self._connections.clear()
        for job_observers in self._observers.values():
            observers.update(job_observers)
        self._observers.clear()

        for observer in observers:
            try:
                observer.close()
            except Exception:
                logger.debug("observer close failed", exc_info=True)

    def _replay(self, job_id: str) -> list[Event]:
        job = self._store.get(job_id)
        if job is None:
            return []

        events: list[Event] = []
        if job.progress:
            events.append(progress_event(job_id, job.progress))
        if job.status == JobStatus.COMPLETED:
            events.append(complete_event(job_id, job.result))
        elif job.status == JobStatus.FAILED:
            events.append(error_event(job_id, job.error or "Render failed"))
        elif job.status == JobStatus.CANCELLED:
            events.append(cancelled_event(job_id))
        return events

    @staticmethod
    def _send(observer: Observer, event: Event) -> None:
        try:
            observer.deliver(event)
        except Exception:
            # Best-effort: the observer's own disconnect path removes it.
            logger.debug(
                "event delivery failed type=%s job_id=%s",
                event.get("type"),
                event.get("jobId"),
                exc_info=True,
            )
