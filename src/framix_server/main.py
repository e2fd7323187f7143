from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import asyncio
import logging
import os
from pathlib import Path
import re
import signal
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from framix_server.config import Settings, get_settings
from framix_server.db import get_engine, init_schema
from framix_server.errors import (
    JobConflictError,
    JobNotFoundError,
    StorageError,
    TemplateValidationError,
)
from framix_server.logging_setup import configure_logging
from framix_server.services.jobs import RenderService, SqlJobStore, job_view
from framix_server.services.render import HttpRenderClient, RenderCollaborator, SubprocessRenderer
from framix_server.services.templates import DirectoryTemplateCatalog, PermissiveTemplateCatalog, TemplateCatalog
from framix_server.ws import WebSocketObserver, parse_client_message

logger = logging.getLogger(__name__)

_OUTPUT_FILENAME = re.compile(r"^[a-zA-Z0-9._-]+$")


class RenderRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    templateId: str = Field(min_length=1)


class BatchRenderRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    templateIds: list[str] = Field(min_length=1)


def get_renderer(settings: Settings) -> RenderCollaborator:
    if settings.render_backend == "http":
        return HttpRenderClient(
            base_url=settings.render_url,
            timeout_seconds=settings.render_timeout_seconds,
        )
    if settings.render_backend == "subprocess":
        return SubprocessRenderer(
            command=settings.render_command,
            cwd=Path(settings.render_workdir),
        )
    raise ValueError(f"Unsupported FRAMIX_RENDER_BACKEND: {settings.render_backend}")


def get_catalog(settings: Settings) -> TemplateCatalog:
    if not settings.templates_dir:
        return PermissiveTemplateCatalog()
    return DirectoryTemplateCatalog(Path(settings.templates_dir))


def _terminate_process() -> None:
    os.kill(os.getpid(), signal.SIGTERM)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_logging(settings.log_level)

    engine = get_engine()
    init_schema(engine)

    service = RenderService(
        store=SqlJobStore(engine),
        renderer=get_renderer(settings),
        max_concurrent=settings.max_concurrent_jobs,
        idle_timeout_seconds=settings.idle_timeout_seconds,
        catalog=get_catalog(settings),
        on_idle=_terminate_process,
    )
    report = service.start()
    logger.info(
        "render server ready max_concurrent=%s recovered=%s",
        settings.max_concurrent_jobs,
        report.total,
    )
    app.state.render_service = service
    try:
        yield
    finally:
        await service.shutdown()
        del app.state.render_service


app = FastAPI(title="Framix Render Server", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type"],
)


def get_render_service(request: Request) -> RenderService:
    return request.app.state.render_service


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("storage failure path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "job storage unavailable"})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/render")
async def submit_render(
    request: RenderRequest,
    service: Annotated[RenderService, Depends(get_render_service)],
) -> JSONResponse:
    try:
        submitted = service.submit_render(request.templateId)
    except TemplateValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return JSONResponse(
        status_code=202,
        content={
            "jobId": submitted["jobId"],
            "status": "queued",
            "position": submitted["position"],
        },
    )


@app.post("/api/render/batch")
async def submit_batch(
    request: BatchRenderRequest,
    service: Annotated[RenderService, Depends(get_render_service)],
) -> JSONResponse:
    try:
        submitted = service.submit_batch(request.templateIds)
    except TemplateValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return JSONResponse(
        status_code=202,
        content={"jobs": submitted, "total": len(submitted)},
    )


@app.get("/api/queue")
async def queue_status(
    service: Annotated[RenderService, Depends(get_render_service)],
) -> dict[str, Any]:
    return service.queue_status()


@app.get("/api/jobs")
async def list_recent_jobs(
    service: Annotated[RenderService, Depends(get_render_service)],
    limit: int = Query(default=10, ge=1, le=100),
) -> list[dict[str, Any]]:
    return [job_view(job) for job in service.list_recent(limit)]


@app.get("/api/jobs/{job_id}")
async def get_job(
    job_id: str,
    service: Annotated[RenderService, Depends(get_render_service)],
) -> dict[str, Any]:
    try:
        job = service.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    return job_view(job)


@app.delete("/api/jobs/{job_id}")
async def cancel_job(
    job_id: str,
    service: Annotated[RenderService, Depends(get_render_service)],
) -> JSONResponse:
    try:
        job = service.cancel_job(job_id)
    except JobConflictError as exc:
        if exc.reason == "not_found":
            raise HTTPException(status_code=404, detail="Job not found") from exc
        return JSONResponse(
            status_code=409,
            content={
                "detail": str(exc),
                "jobId": exc.job_id,
                "status": exc.status,
                "reason": exc.reason,
            },
        )

    return JSONResponse(content={"jobId": job.id, "status": job.status.value})


@app.get("/api/templates")
async def list_templates(
    service: Annotated[RenderService, Depends(get_render_service)],
) -> list[dict[str, str]]:
    return [
        {"id": template.id, "name": template.name, "file": template.file}
        for template in service.list_templates()
    ]


@app.get("/api/templates/{template_id}/source")
async def template_source(
    template_id: str,
    service: Annotated[RenderService, Depends(get_render_service)],
) -> dict[str, str]:
    source = service.get_template_source(template_id)
    if source is None:
        raise HTTPException(status_code=404, detail=f"Template not found: {template_id}")
    return {"templateId": template_id, "file": source.file, "content": source.content}


@app.get("/api/output/{filename}")
def output_file_info(filename: str, request: Request) -> dict[str, Any]:
    if not _OUTPUT_FILENAME.match(filename):
        raise HTTPException(status_code=400, detail="Invalid filename")

    path = Path(get_settings().output_dir) / filename
    exists = path.is_file()
    return {
        "path": str(path),
        "exists": exists,
        "size": path.stat().st_size if exists else 0,
        "url": str(request.url_for("output_file", filename=filename)) if exists else None,
    }


@app.get("/output/{filename}")
def output_file(filename: str) -> FileResponse:
    if not _OUTPUT_FILENAME.match(filename):
        raise HTTPException(status_code=400, detail="Invalid filename")

    path = Path(get_settings().output_dir) / filename
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Not Found")
    return FileResponse(path)


@app.websocket("/ws")
async def job_events(
    websocket: WebSocket,
    job_id: Annotated[str | None, Query(alias="jobId")] = None,
) -> None:
    service: RenderService = websocket.app.state.render_service
    await websocket.accept()

    observer = WebSocketObserver(websocket)
    writer = asyncio.create_task(observer.pump())
    service.connect(observer)
    try:
        if job_id:
            service.subscribe(job_id, observer)

        while True:
            message = parse_client_message(await websocket.receive_text())
            if message is None:
                continue
            if message.type == "subscribe":
                service.subscribe(message.jobId, observer)
            else:
                service.unsubscribe(message.jobId, observer)
    except WebSocketDisconnect:
        pass
    finally:
        service.disconnect(observer)
        observer.close()
        if not writer.done():
            writer.cancel()
        await asyncio.gather(writer, return_exceptions=True)


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("framix_server.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()
