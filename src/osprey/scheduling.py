# =============================================================================
# Worker Pool and Alarms
# =============================================================================
# The two ways work gets scheduled off the caller's path.
#
# Key responsibilities:
#   - WorkerPool: runs coroutines as tracked background tasks and logs their
#     failures (nobody awaits them)
#   - AlarmScheduler: delayed actions keyed by (action, mailbox id); setting
#     an alarm replaces the previous one with the same key
#
# Design notes:
#   - Alarms are loop.call_later() handles. When one fires, its coroutine is
#     handed to the worker pool.
#   - set_window() adds a random delay inside the window so reconnects of
#     many mailboxes do not all hit the server at the same moment
# =============================================================================

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Awaitable, Callable, Coroutine

logger = logging.getLogger(__name__)

# Key used for alarms that concern every mailbox
ALL_MAILBOXES = -1


class WorkerPool:
    """
    Runs fire-and-forget coroutines as named, tracked tasks.

    Usage:
        >>> pool = WorkerPool()
        >>> pool.spawn(orchestrator.sync_mailbox(mailbox_id), name="sync-12")
        >>> await pool.drain()
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task {task.get_name()} failed: {error}", exc_info=error)

    async def drain(self) -> None:
        """Wait until every task, including ones spawned meanwhile, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel everything still running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


class AlarmAction(Enum):
    KICK = auto()       # Restart a long-lived IDLE connection
    PING = auto()       # Retry a mailbox whose IDLE failed
    RESTART = auto()    # Re-establish IDLE after connectivity came back


@dataclass
class Alarm:
    """
    A scheduled action.

    Attributes:
        action: What fires.
        mailbox_id: Mailbox it concerns, ALL_MAILBOXES for global alarms.
        delay_ms: Delay it was scheduled with.
    """
    action: AlarmAction
    mailbox_id: int
    delay_ms: int
    handle: asyncio.TimerHandle | None = field(default=None, repr=False)


class AlarmScheduler:
    """
    Keyed delayed actions.

    Usage:
        >>> alarms = AlarmScheduler(pool)
        >>> alarms.set(AlarmAction.PING, mailbox.id, 500, lambda: ping(mailbox))
        >>> alarms.cancel(AlarmAction.PING, mailbox.id)
    """

    def __init__(self, pool: WorkerPool, rng: random.Random | None = None) -> None:
        self.pool = pool
        self.rng = rng or random.Random()
        self._alarms: dict[tuple[AlarmAction, int], Alarm] = {}

    def set(
        self,
        action: AlarmAction,
        mailbox_id: int,
        delay_ms: int,
        callback: Callable[[], Awaitable[None]],
    ) -> Alarm:
        """
        Schedule `callback` after `delay_ms`, replacing any alarm with the
        same key.
        """
        self.cancel(action, mailbox_id)
        key = (action, mailbox_id)
        alarm = Alarm(action=action, mailbox_id=mailbox_id, delay_ms=delay_ms)
        alarm.handle = asyncio.get_running_loop().call_later(
            delay_ms / 1000, self._fire, key, alarm, callback
        )
        self._alarms[key] = alarm
        logger.debug(f"Alarm {action.name} for mailbox {mailbox_id} in {delay_ms} ms")
        return alarm

    def set_window(
        self,
        action: AlarmAction,
        mailbox_id: int,
        delay_ms: int,
        window_ms: int,
        callback: Callable[[], Awaitable[None]],
    ) -> Alarm:
        """Schedule somewhere in [delay_ms, delay_ms + window_ms)."""
        jitter = int(self.rng.random() * window_ms)
        return self.set(action, mailbox_id, delay_ms + jitter, callback)

    def get(self, action: AlarmAction, mailbox_id: int) -> Alarm | None:
        return self._alarms.get((action, mailbox_id))

    def cancel(self, action: AlarmAction, mailbox_id: int) -> None:
        alarm = self._alarms.pop((action, mailbox_id), None)
        if alarm is not None and alarm.handle is not None:
            alarm.handle.cancel()

    def cancel_all(self) -> None:
        for alarm in self._alarms.values():
            if alarm.handle is not None:
                alarm.handle.cancel()
        self._alarms.clear()

    def _fire(
        self,
        key: tuple[AlarmAction, int],
        alarm: Alarm,
        callback: Callable[[], Awaitable[None]],
    ) -> None:
        if self._alarms.get(key) is alarm:
            del self._alarms[key]
        self.pool.spawn(callback(), name=f"alarm-{key[0].name.lower()}-{key[1]}")
