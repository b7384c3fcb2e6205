from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Set

from .config import settings
from .session import Session

logger = logging.getLogger(__name__)

DeadlineHandler = Callable[[Session, int], Awaitable[None]]


class QuestionClock:
    """Fires ``on_deadline(session, question_index)`` once a question's time is up.

    Timers are never cancelled when a question closes early or a session goes
    away; the handler is expected to check that the session is still on the
    question the timer was set for and ignore it otherwise.
    """

    def __init__(self, on_deadline: DeadlineHandler, buffer_sec: float | None = None):
        self.on_deadline = on_deadline
        self.buffer_sec = settings.DEADLINE_BUFFER_SEC if buffer_sec is None else buffer_sec
        self._tasks: Set[asyncio.Task] = set()

    def delay_for(self, time_limit_seconds: float) -> float:
        return time_limit_seconds + self.buffer_sec

    def schedule(self, session: Session, question_index: int, time_limit_seconds: float) -> asyncio.Task:
        delay = self.delay_for(time_limit_seconds)
        task = asyncio.create_task(self._run(session, question_index, delay))
        # keep a strong reference until the task finishes
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("session=%s question %s deadline in %.1fs", session.code, question_index, delay)
        return task

    async def _run(self, session: Session, question_index: int, delay: float):
        await asyncio.sleep(delay)
        try:
            await self.on_deadline(session, question_index)
        except Exception:
            logger.exception("session=%s deadline handler failed for question %s", session.code, question_index)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def shutdown(self):
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
