from __future__ import annotations

import logging
from typing import Any, Callable, Sequence
import uuid

from framix_server.errors import JobNotFoundError
from framix_server.services.jobs.dispatcher import Dispatcher
from framix_server.services.jobs.hub import NotificationHub, Observer
from framix_server.services.jobs.idle import IdleController
from framix_server.services.jobs.queue import AdmissionQueue
from framix_server.services.jobs.recovery import RecoveryReport, recover_jobs
from framix_server.services.jobs.store import JobRepository
from framix_server.services.jobs.types import Job
from framix_server.services.render.client import RenderCollaborator
from framix_server.services.templates import (
    PermissiveTemplateCatalog,
    TemplateCatalog,
    TemplateInfo,
    TemplateSource,
    validate_template_ids,
)

logger = logging.getLogger(__name__)


def _new_job_id() -> str:
    return str(uuid.uuid4())


class RenderService:
    """
    Owns the job store, queue, dispatcher, hub and idle timer for one process.

    Construct once, call ``start`` before accepting submissions and
    ``shutdown`` on the way out. Every method must be called from the event
    loop thread.
    """

    def __init__(
        self,
        *,
        store: JobRepository,
        renderer: RenderCollaborator,
        max_concurrent: int = 1,
        idle_timeout_seconds: float = 0.0,
        catalog: TemplateCatalog | None = None,
        on_idle: Callable[[], None] | None = None,
        id_factory: Callable[[], str] = _new_job_id,
    ) -> None:
        self.store = store
        self.catalog = catalog or PermissiveTemplateCatalog()
        self.hub = NotificationHub(store)
        self.queue = AdmissionQueue()
        self.idle = IdleController(timeout_seconds=idle_timeout_seconds, on_idle=self._handle_idle)
        self.dispatcher = Dispatcher(
            store=store,
            hub=self.hub,
            queue=self.queue,
            renderer=renderer,
            max_concurrent=max_concurrent,
            idle=self.idle,
        )
        self._on_idle = on_idle
        self._id_factory = id_factory
        self._started = False

    def start(self) -> RecoveryReport:
        if self._started:
            raise RuntimeError("render service already started")
        self._started = True
        return recover_jobs(store=self.store, queue=self.queue, dispatcher=self.dispatcher)

    async def shutdown(self) -> None:
        self.idle.cancel()
        await self.dispatcher.shutdown()
        self.hub.close_all()

    def submit_render(self, template_id: str) -> dict[str, Any]:
        (template_id,) = validate_template_ids([template_id], self.catalog)
        return self._submit(template_id)

    def submit_batch(self, template_ids: Sequence[str]) -> list[dict[str, Any]]:
        validated = validate_template_ids(template_ids, self.catalog)
        return [self._submit(template_id) for template_id in validated]

    def get_job(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def cancel_job(self, job_id: str) -> Job:
        return self.dispatcher.cancel(job_id)

    def queue_status(self) -> dict[str, Any]:
        return self.dispatcher.queue_status()

    def list_recent(self, limit: int = 10) -> list[Job]:
        return list(self.store.list_recent(limit))

    def list_templates(self) -> list[TemplateInfo]:
        return self.catalog.list_templates()

    def get_template_source(self, template_id: str) -> TemplateSource | None:
        return self.catalog.find_source(template_id)

    def subscribe(self, job_id: str, observer: Observer) -> None:
        self.hub.subscribe(job_id, observer)

    def unsubscribe(self, job_id: str, observer: Observer) -> None:
        self.hub.unsubscribe(job_id, observer)

    def connect(self, observer: Observer) -> None:
        self.hub.connect(observer)

    def disconnect(self, observer: Observer) -> None:
        self.hub.disconnect(observer)

    def _submit(self, template_id: str) -> dict[str, Any]:
        job = self.store.create(self._id_factory(), template_id)
        position = self.dispatcher.admit(job.id)
        return {"jobId": job.id, "templateId": template_id, "position": position}

    def _handle_idle(self) -> None:
        self.hub.close_all()
        if self._on_idle is not None:
            self._on_idle()
