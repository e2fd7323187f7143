from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Protocol

ProgressCallback = Callable[[dict[str, Any]], None]


@dataclass(frozen=True)
class RenderOutcome:
    success: bool
    result: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def succeeded(cls, result: dict[str, Any] | None) -> RenderOutcome:
        return cls(success=True, result=result if result is not None else {})

    @classmethod
    def failed(cls, error: str | None) -> RenderOutcome:
        return cls(success=False, error=error or "Render failed")


class RenderCollaborator(Protocol):
    """
    External engine that turns a template id into a rendered video.

    ``on_progress`` may be called from any thread, any number of times,
    before ``render`` returns. Implementations must be safe to invoke again
    for a template whose previous render was interrupted.
    """

    async def render(self, template_id: str, on_progress: ProgressCallback) -> RenderOutcome: ...


def outcome_from_payload(payload: dict[str, Any]) -> RenderOutcome:
    """Interpret a renderer's final JSON object (``{"success": bool, ...}``)."""
    body = {key: value for key, value in payload.items() if key != "type"}
    success = body.pop("success", True)
    if success is True:
        body.pop("error", None)
        return RenderOutcome.succeeded(body)
    error = body.get("error")
    return RenderOutcome.failed(str(error) if error else None)
