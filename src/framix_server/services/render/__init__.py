from framix_server.services.render.client import (
    ProgressCallback,
    RenderCollaborator,
    RenderOutcome,
)
from framix_server.services.render.http_client import HttpRenderClient
from framix_server.services.render.subprocess_runner import SubprocessRenderer

__all__ = [
    "HttpRenderClient",
    "ProgressCallback",
    "RenderCollaborator",
    "RenderOutcome",
    "SubprocessRenderer",
]
