"""Deferred background execution opportunities.

Stands in for the host OS facility that grants the process a bounded window
of background time. A handler registered for an identifier receives a
``BackgroundTask``; when the window's time limit elapses the task's
expiration handler is called and the handler is expected to wind down.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from apscheduler.jobstores.base import ConflictingIdError
from apscheduler.schedulers import SchedulerNotRunningError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


class BackgroundSchedulingError(Exception):
    """A background request could not be submitted."""


@dataclass
class BackgroundTaskRequest:
    identifier: str
    earliest_begin: float = 0.0  # seconds from now
    requires_network: bool = True


class BackgroundTask:
    """One granted background window."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        self.expiration_handler: Callable[[], None] | None = None
        self.expired = False
        self.completed = False
        self.success: bool | None = None

    def expire(self) -> None:
        if self.expired or self.completed:
            return
        self.expired = True
        logger.info("Background task %s expired", self.identifier)
        if self.expiration_handler is not None:
            self.expiration_handler()

    def set_task_completed(self, success: bool) -> None:
        self.completed = True
        self.success = success


BackgroundHandler = Callable[[BackgroundTask], Awaitable[None]]


class BackgroundTaskScheduler(ABC):
    @abstractmethod
    def register(self, identifier: str, handler: BackgroundHandler) -> None:
        ...

    @abstractmethod
    def submit(self, request: BackgroundTaskRequest) -> None:
        """Request a future window. Raises BackgroundSchedulingError."""
        ...


class AsyncioBackgroundScheduler(BackgroundTaskScheduler):
    """Runs background windows on the running event loop via APScheduler.

    Each request becomes a one-shot date job keyed by its identifier, so a new
    request replaces a pending one. Each window is expired after
    ``time_limit`` seconds.
    """

    def __init__(self, time_limit: float = 300.0):
        self._time_limit = time_limit
        self._handlers: dict[str, BackgroundHandler] = {}
        self._scheduler = AsyncIOScheduler()
        self._running: set[asyncio.Task] = set()

    def register(self, identifier: str, handler: BackgroundHandler) -> None:
        self._handlers[identifier] = handler

    def submit(self, request: BackgroundTaskRequest) -> None:
        if request.identifier not in self._handlers:
            raise BackgroundSchedulingError(f"No handler registered for {request.identifier!r}")
        self._ensure_started()

        run_date = datetime.now(timezone.utc) + timedelta(seconds=max(request.earliest_begin, 0.0))
        try:
            self._scheduler.add_job(
                self._launch,
                trigger="date",
                run_date=run_date,
                args=[request.identifier],
                id=request.identifier,
                name=f"background window {request.identifier}",
                replace_existing=True,
                misfire_grace_time=None,
            )
        except (ConflictingIdError, SchedulerNotRunningError) as e:
            raise BackgroundSchedulingError(f"Could not schedule {request.identifier!r}: {e}") from e

    def pending(self) -> list[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    def cancel_all(self) -> None:
        """Drop pending requests and cancel running windows."""
        self._scheduler.remove_all_jobs()
        for task in self._running:
            task.cancel()

    async def aclose(self, timeout: float = 30.0) -> None:
        """Drop pending requests, then let running windows finish within ``timeout``."""
        self._scheduler.remove_all_jobs()

        running = list(self._running)
        if running:
            _, still_running = await asyncio.wait(running, timeout=timeout)
            for task in still_running:
                logger.warning("Background task did not finish in %.0fs; cancelling", timeout)
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def _ensure_started(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise BackgroundSchedulingError("No running event loop") from e

        if not self._scheduler.running:
            self._scheduler.configure(event_loop=loop)
            self._scheduler.start()
            logger.info("Background scheduler started")

    async def _launch(self, identifier: str) -> None:
        """Open a window: run the handler in its own task with an expiry timer."""
        handler = self._handlers[identifier]
        loop = asyncio.get_running_loop()

        bg_task = BackgroundTask(identifier)
        expiry = loop.call_later(self._time_limit, bg_task.expire)

        task = loop.create_task(handler(bg_task))
        self._running.add(task)

        def _done(t: asyncio.Task) -> None:
            expiry.cancel()
            self._running.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("Background task %s failed: %s", identifier, t.exception())

        task.add_done_callback(_done)
