import asyncio
import logging
import signal
from typing import Any, Awaitable, Callable, Iterable

log = logging.getLogger("scheduler")

Runner = Callable[[asyncio.Event], Awaitable[Any]]


class PeriodicTask:
    """
    Runs an async action every ``interval`` seconds until ``stop`` is set.

    The first run happens one interval after start, like a ticker. A running
    action is never interrupted by ``stop``; the loop exits after it returns.
    Errors are logged and the next tick runs as scheduled.
    """

    def __init__(self, name: str, interval: float, action: Callable[[], Awaitable[Any]]):
        self.name = name
        self.interval = interval
        self.action = action

    async def tick(self) -> Any:
        try:
            return await self.action()
        except Exception:
            log.exception(f"Periodic task '{self.name}' failed")
            return None

    async def run(self, stop: asyncio.Event) -> None:
        log.info(f"Periodic task '{self.name}' started (every {self.interval}s)")
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                await self.tick()
        log.info(f"Periodic task '{self.name}' stopped")


async def run_until_stopped(
    runners: Iterable[Runner],
    stop: asyncio.Event = None,
    grace_period: float = 2.0,
    handle_signals: bool = True,
) -> None:
    """
    Runs every runner with a shared stop event. SIGINT/SIGTERM (or any runner
    returning) set the event; runners then get ``grace_period`` seconds to
    finish their in-flight work before being cancelled.
    """
    stop = stop or asyncio.Event()
    if handle_signals:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                log.warning(f"Signal handler for {sig.name} not supported on this platform")

    tasks = [asyncio.create_task(runner(stop)) for runner in runners]
    stopper = asyncio.create_task(stop.wait())
    await asyncio.wait([*tasks, stopper], return_when=asyncio.FIRST_COMPLETED)
    stop.set()
    log.info("Shutdown requested, waiting for in-flight work...")

    _, pending = await asyncio.wait(tasks, timeout=grace_period)
    for task in pending:
        task.cancel()
    await asyncio.gather(*tasks, stopper, return_exceptions=True)

    for task in tasks:
        if not task.cancelled() and task.exception() is not None:
            log.error(f"Worker task ended with error: {task.exception()!r}")
