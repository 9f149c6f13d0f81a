from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence


logger = logging.getLogger(__name__)


class RaceTimeout(asyncio.TimeoutError):
    """No strategy produced an accepted result before the deadline."""


async def race_first(
    strategies: Sequence[Callable[[], Awaitable[Any]]],
    *,
    accept: Callable[[Any], bool],
    timeout: float,
    watchdog: Optional[Callable[[], Awaitable[None]]] = None,
    watchdog_interval: float = 1.2,
    poll: Optional[Callable[[], Any]] = None,
) -> Any:
    """
    Run every strategy concurrently and return the first result for which `accept(result)` is true.

    A strategy that raises or returns an unaccepted result simply drops out of the race. When `poll` is
    given it is checked every `watchdog_interval` seconds until the deadline, even after every strategy
    has dropped out, so a result that becomes acceptable later (a page still redirecting) can still win.
    All other strategies and the optional watchdog are cancelled before returning. Raises `RaceTimeout`
    when the deadline passes, or when every strategy drops out and there is nothing to poll.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    pending = {asyncio.ensure_future(factory()) for factory in strategies}
    watchdog_task: Optional[asyncio.Task] = None

    async def _watch() -> None:
        while True:
            await asyncio.sleep(watchdog_interval)
            try:
                await watchdog()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.debug("Race watchdog tick failed (continuing).", exc_info=True)

    if watchdog is not None:
        watchdog_task = asyncio.ensure_future(_watch())

    try:
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            if pending:
                wait_for = remaining if poll is None else min(remaining, watchdog_interval)
                done, pending = await asyncio.wait(pending, timeout=wait_for, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task.cancelled():
                        continue
                    exc = task.exception()
                    if exc is not None:
                        logger.debug("Race strategy failed: %r", exc)
                        continue
                    result = task.result()
                    if accept(result):
                        return result
            elif poll is None:
                break
            else:
                await asyncio.sleep(min(remaining, watchdog_interval))
            if poll is not None:
                found = poll()
                if found is not None and accept(found):
                    return found
        raise RaceTimeout(f"No strategy succeeded within {timeout:.1f}s")
    finally:
        to_cancel = list(pending)
        if watchdog_task is not None:
            to_cancel.append(watchdog_task)
        for task in to_cancel:
            task.cancel()
        if to_cancel:
            await asyncio.gather(*to_cancel, return_exceptions=True)
