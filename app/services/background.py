from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from app.core import context

logger = logging.getLogger(__name__)

FollowUp = Callable[[], Awaitable[object]]


class BackgroundRunner:
    """Tracks follow-up work started after a response so shutdown can cancel it."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, follow_up: FollowUp, *, name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(self._guarded(follow_up, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, follow_up: FollowUp, name: str | None) -> None:
        try:
            await follow_up()
        except asyncio.CancelledError:
            logger.warning("Follow-up %s cancelled", name or "-")
            raise
        except Exception:
            logger.exception("Follow-up %s failed", name or "-")
        finally:
            context.set_application_number(None)

    async def drain(self) -> None:
        """Wait for pending follow-ups, including any they spawn themselves."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Cancelled %s pending follow-ups", len(tasks))
