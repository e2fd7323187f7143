from __future__ import annotations

from collections import deque


class AdmissionQueue:
    """FIFO of pending job ids. Holds ids only; job state lives in the store."""

    def __init__(self) -> None:
        self._ids: deque[str] = deque()

    def enqueue(self, job_id: str) -> int:
        if job_id in self._ids:
            return self._ids.index(job_id)
        self._ids.append(job_id)
        return len(self._ids) - 1

    def pop_next(self) -> str | None:
        if not self._ids:
            return None
        return self._ids.popleft()

    def requeue_front(self, job_id: str) -> None:
        if job_id not in self._ids:
            self._ids.appendleft(job_id)

    def position(self, job_id: str) -> int | None:
        try:
            return self._ids.index(job_id)
        except ValueError:
            return None

    def remove(self, job_id: str) -> bool:
        try:
            self._ids.remove(job_id)
        except ValueError:
            return False
        return True

    def snapshot(self) -> list[str]:
        return list(self._ids)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)
