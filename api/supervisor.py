"""
api/supervisor.py -- Owner of the long-running background tasks.

Every background coroutine (today: the refresh-token expiry sweep) is started
through Supervisor.spawn() so that no task can die unobserved:

  StorageFailure   -> logged, restarted after an exponential backoff
                      (restart_delay doubling up to max_restart_delay).
                      A run that lasted reset_after seconds or more
                      starts the backoff over from restart_delay.
  anything else    -> logged with traceback, then on_fatal(name, exc) is
                      called. The default on_fatal sends SIGTERM to the
                      process so uvicorn shuts down gracefully and the
                      process manager restarts it.
  normal return    -> logged, not restarted.

install_loop_handler() additionally routes "Task exception was never
retrieved" style loop errors through the gatekeeper logger.

stop() cancels and awaits every task; call it from lifespan shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Awaitable, Callable

from core.errors import StorageFailure

logger = logging.getLogger("gatekeeper.supervisor")

TaskFactory = Callable[[], Awaitable[None]]
FatalHandler = Callable[[str, BaseException], None]


def request_shutdown(name: str, exc: BaseException) -> None:
    """Default fatal handler: ask the server to shut down gracefully."""
    logger.critical("Background task %s failed fatally; requesting shutdown", name)
    os.kill(os.getpid(), signal.SIGTERM)


class Supervisor:
    def __init__(
        self,
        *,
        on_fatal: FatalHandler = request_shutdown,
        restart_delay: float = 5.0,
        max_restart_delay: float = 300.0,
        reset_after: float = 600.0,
    ) -> None:
        self._on_fatal = on_fatal
        self._restart_delay = restart_delay
        self._max_restart_delay = max_restart_delay
        self._reset_after = reset_after
        self._tasks: dict[str, asyncio.Task] = {}
        self.failed: set[str] = set()

    def spawn(self, name: str, factory: TaskFactory) -> asyncio.Task:
        """Start ``factory()`` under supervision. ``factory`` is re-invoked on restart."""
        if name in self._tasks and not self._tasks[name].done():
            raise RuntimeError(f"task {name!r} is already running")
        task = asyncio.create_task(self._run(name, factory), name=f"gatekeeper:{name}")
        self._tasks[name] = task
        logger.info("Background task %s started", name)
        return task

    async def _run(self, name: str, factory: TaskFactory) -> None:
        delay = self._restart_delay
        while True:
            started = time.monotonic()
            try:
                await factory()
            except asyncio.CancelledError:
                raise
            except StorageFailure as exc:
                if time.monotonic() - started >= self._reset_after:
                    delay = self._restart_delay
                logger.warning("Task %s hit a storage failure (%s); restarting in %.1fs", name, exc.message, delay)
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._max_restart_delay)
                continue
            except Exception as exc:
                logger.exception("Task %s crashed", name)
                self.failed.add(name)
                self._on_fatal(name, exc)
                return
            logger.info("Task %s finished", name)
            return

    def install_loop_handler(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        (loop or asyncio.get_running_loop()).set_exception_handler(_log_loop_exception)

    @property
    def running(self) -> list[str]:
        return sorted(name for name, task in self._tasks.items() if not task.done())

    async def stop(self) -> None:
        """Cancel every task and wait for all of them to unwind."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        if tasks:
            logger.info("Stopped %d background task(s)", len(tasks))


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    exc = context.get("exception")
    message = context.get("message", "unhandled event loop error")
    if exc is not None:
        logger.error("Event loop error: %s", message, exc_info=exc)
    else:
        logger.error("Event loop error: %s", message)
