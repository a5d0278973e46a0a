"""Fixed-cadence task scheduling on the running event loop."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

from orgsync.keycloak.models import ScheduleConfig

logger = structlog.get_logger(__name__)

TaskFunction = Callable[[], Awaitable[None]]
TimeoutCallback = Callable[[float], None]


@dataclass
class _Task:
    fn: TaskFunction
    loop: asyncio.Task | None = None
    lock: asyncio.Lock | None = None
    on_timeout: TimeoutCallback | None = None


class ScheduledTaskRunner:
    """Runs registered tasks every `frequency` seconds, each bounded by `timeout`.

    A task never overlaps with itself: a manual trigger waits for a running
    invocation to finish.
    """

    def __init__(self, frequency: float, timeout: float, initial_delay: float = 0):
        self.frequency = frequency
        self.timeout = timeout
        self.initial_delay = initial_delay
        self._tasks: dict[str, _Task] = {}

    @classmethod
    def from_schedule(cls, schedule: ScheduleConfig) -> "ScheduledTaskRunner":
        return cls(
            frequency=schedule.frequency,
            timeout=schedule.timeout,
            initial_delay=schedule.initial_delay,
        )

    @property
    def task_ids(self) -> list[str]:
        return list(self._tasks)

    async def run(
        self, id: str, fn: TaskFunction, on_timeout: TimeoutCallback | None = None
    ) -> None:
        """Register a task and start its loop.

        `on_timeout` is called with the timeout whenever an invocation is
        abandoned for running too long.
        """
        if id in self._tasks:
            raise ValueError(f"Task '{id}' is already scheduled")
        task = _Task(fn=fn, lock=asyncio.Lock(), on_timeout=on_timeout)
        task.loop = asyncio.create_task(self._loop(id, task), name=id)
        self._tasks[id] = task
        logger.info(
            "Scheduled task",
            task_id=id,
            frequency=self.frequency,
            timeout=self.timeout,
        )

    async def trigger(self, id: str) -> None:
        """Run a registered task now, outside its cadence."""
        task = self._tasks.get(id)
        if task is None:
            raise KeyError(id)
        await self._invoke(id, task)

    async def stop(self) -> None:
        loops = [t.loop for t in self._tasks.values() if t.loop is not None]
        for loop in loops:
            loop.cancel()
        await asyncio.gather(*loops, return_exceptions=True)
        self._tasks.clear()

    async def _invoke(self, id: str, task: _Task) -> None:
        async with task.lock:
            try:
                await asyncio.wait_for(task.fn(), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.error("Task timed out", task_id=id, timeout=self.timeout)
                if task.on_timeout is not None:
                    task.on_timeout(self.timeout)
            except Exception:
                logger.exception("Task failed", task_id=id)

    async def _loop(self, id: str, task: _Task) -> None:
        if self.initial_delay:
            await asyncio.sleep(self.initial_delay)
        while True:
            await self._invoke(id, task)
            await asyncio.sleep(self.frequency)


class SchedulerService:
    """Creates task runners and stops them all on shutdown."""

    def __init__(self) -> None:
        self._runners: list[ScheduledTaskRunner] = []

    def create_scheduled_task_runner(self, schedule: ScheduleConfig) -> ScheduledTaskRunner:
        runner = ScheduledTaskRunner.from_schedule(schedule)
        self._runners.append(runner)
        return runner

    async def trigger(self, id: str) -> None:
        for runner in self._runners:
            if id in runner.task_ids:
                await runner.trigger(id)
                return
        raise KeyError(id)

    async def shutdown(self) -> None:
        await asyncio.gather(*(r.stop() for r in self._runners))
        self._runners.clear()
