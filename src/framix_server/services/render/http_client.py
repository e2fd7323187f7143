from __future__ import annotations

import json

import httpx

from framix_server.errors import CollaboratorFailure
from framix_server.services.render.client import (
    ProgressCallback,
    RenderOutcome,
    outcome_from_payload,
)


class HttpRenderClient:
    """
    Client for a render service that streams newline-delimited JSON.

    ``POST {base_url}/render`` with ``{"templateId": ...}`` answers with
    ``{"type": "progress", ...}`` lines followed by one ``{"type": "result", ...}``.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(10.0, read=timeout_seconds)
        self._transport = transport

    async def render(self, template_id: str, on_progress: ProgressCallback) -> RenderOutcome:
        final_payload: dict[str, object] | None = None
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url}/render",
                    json={"templateId": template_id},
                ) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            payload = json.loads(line)
                        except json.JSONDecodeError as exc:
                            raise CollaboratorFailure(
                                f"Invalid render stream line: {line[:200]}"
                            ) from exc
                        if not isinstance(payload, dict):
                            raise CollaboratorFailure("Invalid render stream line: expected object")
                        if payload.get("type") == "progress":
                            on_progress({key: value for key, value in payload.items() if key != "type"})
                        else:
                            final_payload = payload
        except httpx.HTTPError as exc:
            raise CollaboratorFailure(f"render request failed: {exc}") from exc

        if final_payload is None:
            raise CollaboratorFailure("render stream ended without a result")
        return outcome_from_payload(final_payload)
