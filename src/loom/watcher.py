# watcher.py
from __future__ import annotations

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import Callable, List, Optional, Protocol

from .config import load_file
from .errors import LoomError
from .model import Job
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class ChangeSource(Protocol):
    async def wait_for_change(self) -> None: ...


UNREADABLE = "unreadable"


def _digest(path: Path) -> Optional[str]:
    """Content hash of `path`; None when missing, UNREADABLE on other errors."""
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("cannot read workflow file %s: %s", path, e)
        return UNREADABLE


class PollingChangeSource:
    """
    Polls a file's content hash every `interval` seconds.

    Only content changes count: touching the file does not trigger a
    reload. A missing file is its own state, so creating the file after
    startup is a change.
    """

    def __init__(self, path: str | Path, interval: float = 1.0):
        self.path = Path(path)
        self.interval = interval
        self._last = _digest(self.path)

    def prime(self) -> None:
        self._last = _digest(self.path)

    async def wait_for_change(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            current = await asyncio.to_thread(_digest, self.path)
            if current != self._last:
                self._last = current
                if current is None:
                    logger.warning("workflow file %s disappeared", self.path)
                return


class Watcher:
    """
    Reloads the scheduler from the workflow file whenever it changes.

    A change results in exactly one load-and-start cycle. When loading fails
    the previous run is left alone and the error is kept in `last_error`.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        path: str | Path,
        source: Optional[ChangeSource] = None,
        loader: Callable[[str | Path], List[Job]] = load_file,
        poll_interval: float = 1.0,
    ):
        self.scheduler = scheduler
        self.path = Path(path)
        self.source = source if source is not None else PollingChangeSource(self.path, poll_interval)
        self.loader = loader
        self.last_error: Optional[Exception] = None
        self.reloads = 0

    async def reload(self, path: str | Path | None = None) -> bool:
        target = Path(path) if path is not None else self.path
        try:
            jobs = self.loader(target)
            await self.scheduler.load_run(jobs)
        except (LoomError, OSError) as e:
            self.last_error = e
            logger.error("failed to reload workflow from %s: %s", target, e)
            return False

        self.last_error = None
        self.reloads += 1
        logger.info("workflow reloaded from %s with %d jobs", target, len(jobs))
        await self.scheduler.start_run()
        return True

    async def _reload_logged(self) -> None:
        try:
            await self.reload()
        except Exception:
            logger.exception("reload of %s failed", self.path)

    async def run(self, initial: bool = True, retry_delay: float = 1.0) -> None:
        """Reload on every change until cancelled. No single failure ends the loop."""
        logger.info("watching %s", self.path)
        if initial:
            await self._reload_logged()
        while True:
            try:
                await self.source.wait_for_change()
            except Exception:
                logger.exception("watching %s failed, retrying in %ss", self.path, retry_delay)
                await asyncio.sleep(retry_delay)
                continue
            logger.info("workflow file %s changed", self.path)
            await self._reload_logged()
