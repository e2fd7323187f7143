from framix_server.services.jobs.dispatcher import Dispatcher
from framix_server.services.jobs.hub import NotificationHub, Observer
from framix_server.services.jobs.idle import IdleController
from framix_server.services.jobs.queue import AdmissionQueue
from framix_server.services.jobs.recovery import RecoveryReport, recover_jobs
from framix_server.services.jobs.service import RenderService
from framix_server.services.jobs.store import JobRepository, SqlJobStore
from framix_server.services.jobs.types import Job, JobStatus, job_view

__all__ = [
    "AdmissionQueue",
    "Dispatcher",
    "IdleController",
    "Job",
    "JobRepository",
    "JobStatus",
    "NotificationHub",
    "Observer",
    "RecoveryReport",
    "RenderService",
    "SqlJobStore",
    "job_view",
    "recover_jobs",
]
