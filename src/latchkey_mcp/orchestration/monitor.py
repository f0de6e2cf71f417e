"""Drive a remote task to a terminal state by polling or streaming."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Literal

from ..remote import BrowserUseClient, TaskSnapshot, TaskStep

logger = logging.getLogger(__name__)

MonitorMode = Literal["poll", "stream"]
EventHandler = Callable[["TaskEvent"], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class TaskEvent:
    """One normalized progress event; ``new_steps`` holds only unseen steps."""

    task_id: str
    status: str
    new_steps: tuple[TaskStep, ...]
    snapshot: TaskSnapshot
    poll: int | None = None

    @property
    def output(self) -> str | None:
        return self.snapshot.output

    @property
    def error(self) -> str | None:
        return self.snapshot.error

    @property
    def terminal(self) -> bool:
        return self.snapshot.is_terminal


@dataclass(slots=True)
class TaskOutcome:
    """Terminal result of monitoring one task."""

    status: Literal["success", "failure", "timeout"]
    task_id: str
    output: str | None = None
    error: str | None = None
    reason: str | None = None
    steps: tuple[TaskStep, ...] = ()
    polls: int = 0
    duration_ms: int | None = None
    screenshots: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass(slots=True)
class _Progress:
    task_id: str
    started: float = field(default_factory=time.monotonic)
    polls: int = 0
    steps: list[TaskStep] = field(default_factory=list)
    last: TaskSnapshot | None = None

    def record(self, event: TaskEvent) -> None:
        if event.poll is not None:
            self.polls = event.poll
        self.steps.extend(event.new_steps)
        self.last = event.snapshot

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    def outcome(self, status: str, **fields) -> TaskOutcome:
        screenshots = self.last.screenshots if self.last is not None else ()
        duration = self.last.duration_ms if self.last is not None else None
        return TaskOutcome(
            status=status,  # type: ignore[arg-type]
            task_id=self.task_id,
            steps=tuple(self.steps),
            polls=self.polls,
            duration_ms=duration if duration is not None else self.elapsed_ms(),
            screenshots=screenshots,
            **fields,
        )


def poll_budget_seconds(poll_interval: float, max_polls: int, request_timeout: float) -> float:
    """Upper bound on how long ``max_polls`` polls can take when every fetch is bounded."""

    return max_polls * (poll_interval + request_timeout)


class TaskMonitor:
    """Turn poll responses or a stream of updates into one ordered event sequence.

    Polling sleeps ``poll_interval`` before each of at most ``max_polls``
    fetches. ``timeout`` is an overall wall-clock bound that applies in both
    modes, including while an event handler is waiting on a human; ``None``
    leaves only the poll budget. Keep it above :func:`poll_budget_seconds`
    so a slow task ends on its poll count rather than the clock.
    """

    def __init__(
        self,
        client: BrowserUseClient,
        *,
        poll_interval: float = 5.0,
        max_polls: int = 60,
        timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_polls < 1:
            raise ValueError("max_polls must be >= 1")
        self._client = client
        self._poll_interval = poll_interval
        self._max_polls = max_polls
        self._timeout = timeout
        self._sleep = sleep

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    @property
    def max_polls(self) -> int:
        return self._max_polls

    @property
    def timeout(self) -> float | None:
        return self._timeout

    async def poll(self, task_id: str, *, seen_steps: int = 0) -> AsyncIterator[TaskEvent]:
        """Yield one event per poll, stopping after a terminal one or ``max_polls`` polls."""

        seen = seen_steps
        for attempt in range(1, self._max_polls + 1):
            await self._sleep(self._poll_interval)
            snapshot = await self._client.get_task(task_id)
            new_steps = snapshot.steps[seen:]
            seen = max(seen, len(snapshot.steps))
            logger.debug(
                "Polled task",
                extra={"task_id": task_id, "poll": attempt, "status": snapshot.status},
            )
            yield TaskEvent(
                task_id=task_id,
                status=snapshot.status,
                new_steps=new_steps,
                snapshot=snapshot,
                poll=attempt,
            )
            if snapshot.is_terminal:
                return

    async def stream(self, task_id: str) -> AsyncIterator[TaskEvent]:
        """Map each streamed update 1:1 onto an event.

        When the stream closes before a terminal update, monitoring continues
        by polling from the last streamed step.
        """

        seen = 0
        async with aclosing(self._client.stream_task(task_id)) as snapshots:
            async for snapshot in snapshots:
                seen += len(snapshot.steps)
                yield TaskEvent(
                    task_id=task_id,
                    status=snapshot.status,
                    new_steps=snapshot.steps,
                    snapshot=snapshot,
                )
                if snapshot.is_terminal:
                    return

        logger.info("Task stream closed early; falling back to polling", extra={"task_id": task_id})
        async for event in self.poll(task_id, seen_steps=seen):
            yield event

    async def watch(
        self,
        task_id: str,
        handler: EventHandler | None = None,
        *,
        mode: MonitorMode = "poll",
    ) -> TaskOutcome:
        """Consume events until the task succeeds, fails or times out."""

        progress = _Progress(task_id=task_id)

        async def consume() -> TaskOutcome:
            events = self.stream(task_id) if mode == "stream" else self.poll(task_id)
            async with aclosing(events):
                async for event in events:
                    progress.record(event)
                    if handler is not None:
                        await handler(event)
                    if event.terminal:
                        if event.snapshot.error is not None:
                            return progress.outcome("failure", error=event.snapshot.error)
                        return progress.outcome("success", output=event.snapshot.output)
            return progress.outcome(
                "timeout",
                error=f"Task still running after {progress.polls} polls",
            )

        try:
            outcome = await asyncio.wait_for(consume(), timeout=self._timeout)
        except asyncio.TimeoutError:
            outcome = progress.outcome(
                "timeout",
                error=f"Task did not finish within {self._timeout} seconds",
            )

        logger.info(
            "Task monitoring finished",
            extra={"task_id": task_id, "status": outcome.status, "polls": outcome.polls},
        )
        return outcome


__all__ = [
    "EventHandler",
    "MonitorMode",
    "TaskEvent",
    "TaskMonitor",
    "TaskOutcome",
    "poll_budget_seconds",
]
