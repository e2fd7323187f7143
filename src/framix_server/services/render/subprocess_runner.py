from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Sequence

from framix_server.errors import CollaboratorFailure
from framix_server.services.render.client import (
    ProgressCallback,
    RenderOutcome,
    outcome_from_payload,
)

logger = logging.getLogger(__name__)


def _parse_json_line(line: str) -> dict[str, Any] | None:
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


class SubprocessRenderer:
    """
    Runs ``command + [template_id]`` and reads JSON lines from its stdout.

    Lines with ``"type": "progress"`` are forwarded as progress. The last
    other JSON object printed is the render result. Anything that is not a
    JSON object is treated as log output.
    """

    def __init__(self, *, command: Sequence[str], cwd: Path | None = None) -> None:
        if not command:
            raise ValueError("render command must not be empty")
        self._command = list(command)
        self._cwd = cwd

    async def render(self, template_id: str, on_progress: ProgressCallback) -> RenderOutcome:
        argv = [*self._command, template_id]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
            )
        except OSError as exc:
            raise CollaboratorFailure(f"failed to start renderer {argv[0]!r}: {exc}") from exc

        assert process.stdout is not None
        assert process.stderr is not None
        stderr_task = asyncio.ensure_future(process.stderr.read())

        final_payload: dict[str, Any] | None = None
        try:
            async for raw_line in process.stdout:
                payload = _parse_json_line(raw_line.decode("utf-8", errors="replace"))
                if payload is None:
                    continue
                if payload.get("type") == "progress":
                    on_progress({key: value for key, value in payload.items() if key != "type"})
                else:
                    final_payload = payload
            returncode = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            stderr_task.cancel()
            raise

        if returncode != 0:
            stderr_first_line = stderr.splitlines()[0] if stderr else "<empty>"
            logger.warning(
                "render subprocess failed template_id=%s exit=%s stderr_first=%s",
                template_id,
                returncode,
                stderr_first_line,
            )
            return RenderOutcome.failed(
                f"render subprocess failed (exit={returncode}): {stderr_first_line}"
            )

        if final_payload is None:
            return RenderOutcome.failed("render subprocess produced no result")
        return outcome_from_payload(final_payload)
