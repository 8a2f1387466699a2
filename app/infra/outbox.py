from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

OutboxTask = Callable[[], object]


@dataclass(frozen=True)
class OutboxResult:
    name: str
    ok: bool
    attempts: int
    error: str | None = None


class PostCommitOutbox:
    """Side effects that run only once the owning transaction has committed.

    Tasks are best-effort: a failure is logged and reported in the drain
    result, never raised to the caller that produced the committed state.
    """

    def __init__(self, *, max_attempts: int | None = None) -> None:
        configured = (
            max_attempts
            if max_attempts is not None
            else int(os.getenv("BILLING_OUTBOX_MAX_ATTEMPTS", "1"))
        )
        self._max_attempts = max(configured, 1)
        self._tasks: list[tuple[str, OutboxTask]] = []

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def pending(self) -> list[str]:
        return [name for name, _ in self._tasks]

    def enqueue(self, name: str, task: OutboxTask) -> None:
        self._tasks.append((name, task))

    def discard(self) -> None:
        if self._tasks:
            logger.debug("discarding %d outbox task(s) after rollback", len(self._tasks))
        self._tasks = []

    def drain(self) -> list[OutboxResult]:
        tasks, self._tasks = self._tasks, []
        return [self._run(name, task) for name, task in tasks]

    def _run(self, name: str, task: OutboxTask) -> OutboxResult:
        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                task()
            except Exception as exc:
                last_error = exc
                logger.error(
                    "outbox task %s failed (attempt %d/%d)",
                    name,
                    attempt,
                    self._max_attempts,
                    exc_info=True,
                )
                continue
            return OutboxResult(name=name, ok=True, attempts=attempt)
        return OutboxResult(
            name=name,
            ok=False,
            attempts=self._max_attempts,
            error=str(last_error) if last_error is not None else None,
        )
