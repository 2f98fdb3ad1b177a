# logs.py
"""
Real-time log fan-out.

Every LogEvent produced by a step executor is published here and delivered
to subscribers of the event's job and to catch-all subscribers. Delivery is
best-effort: subscriber queues are bounded and drop their oldest event when
full, so a slow consumer can never stall a step's output drain loop.
A bounded ring buffer of recent events per job backs log retrieval.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, Dict, List, Optional, Set

from .model import LogEvent

logger = logging.getLogger(__name__)


class Subscription:
    """
    A bounded queue of LogEvents for one subscriber.

    Use as an async iterator, and as a context manager to unsubscribe:

        with broadcaster.subscribe("build") as sub:
            async for event in sub:
                ...
    """

    def __init__(self, broadcaster: "LogBroadcaster", job: Optional[str], maxsize: int):
        self._broadcaster = broadcaster
        self.job = job
        self.queue: asyncio.Queue[LogEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: LogEvent) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(event)

    async def get(self) -> LogEvent:
        return await self.queue.get()

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> LogEvent:
        return await self.queue.get()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class LogBroadcaster:
    def __init__(self, max_queue: int = 1000, history: int = 500):
        self.max_queue = max_queue
        self.history = history
        self._by_job: Dict[str, Set[Subscription]] = {}
        self._all: Set[Subscription] = set()
        self._recent: Dict[str, Deque[LogEvent]] = {}

    def publish(self, event: LogEvent) -> None:
        buf = self._recent.get(event.job)
        if buf is None:
            buf = self._recent[event.job] = deque(maxlen=self.history)
        buf.append(event)

        for sub in list(self._by_job.get(event.job, ())) + list(self._all):
            sub.offer(event)

    def subscribe(self, job: Optional[str] = None) -> Subscription:
        """Subscribe to one job's output, or to every job when `job` is None."""
        sub = Subscription(self, job, self.max_queue)
        if job is None:
            self._all.add(sub)
        else:
            self._by_job.setdefault(job, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub.job is None:
            self._all.discard(sub)
        else:
            subs = self._by_job.get(sub.job)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    del self._by_job[sub.job]
        if sub.dropped:
            logger.warning("log subscriber for %s dropped %d events", sub.job or "*", sub.dropped)

    def recent(self, job: str, limit: int = 100) -> List[LogEvent]:
        """Retained events for `job`, most recent first."""
        buf = self._recent.get(job)
        if not buf:
            return []
        return list(reversed(buf))[: max(0, limit)]

    def clear(self) -> None:
        self._recent.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._all) + sum(len(s) for s in self._by_job.values())
