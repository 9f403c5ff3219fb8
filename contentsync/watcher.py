from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Union

from contentsync.models import FetchReport
from contentsync.orchestrator import SyncOrchestrator


logger = logging.getLogger(__name__)

Confirm = Callable[[str], Union[bool, Awaitable[bool]]]


class RepositoryWatcher:
    """Polls the remote branch and applies safe updates when it moves.

    A tick that comes due while an update is still running is skipped, not
    queued. Without ``auto_apply`` and without ``confirm`` the watcher only
    announces new commits.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        *,
        interval: float | None = None,
        auto_apply: bool = False,
        confirm: Confirm | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.interval = interval if interval is not None else orchestrator.config.poll_interval_seconds
        self.auto_apply = auto_apply
        self.confirm = confirm
        self.is_updating = False
        self.ticks_skipped = 0
        self.updates_applied = 0
        self._announced: set[str] = set()
        self._stopping = asyncio.Event()
        self._current: asyncio.Task[FetchReport | None] | None = None

    @property
    def running(self) -> bool:
        return not self._stopping.is_set()

    async def _should_apply(self, commit: str) -> bool:
        if self.auto_apply:
            return True
        if self.confirm is None:
            return False
        answer = self.confirm(commit)
        if inspect.isawaitable(answer):
            answer = await answer
        return bool(answer)

    async def check_once(self) -> FetchReport | None:
        """One poll: compare live and cached revisions and maybe update."""
        if self.is_updating:
            self.ticks_skipped += 1
            logger.debug("Update in progress, skipping poll")
            return None

        self.is_updating = True
        try:
            live = await self.orchestrator.remote_revision()
            cached = await self.orchestrator.cached_revision()
            if cached is not None and cached.commit_hash == live:
                return None

            if live not in self._announced:
                self._announced.add(live)
                logger.info("New commit detected: %s", live[:8])

            if not await self._should_apply(live):
                return None

            report = await self.orchestrator.safe_update()
            self.updates_applied += 1
            logger.info("Content updated to %s", (report.revision or live)[:8])
            return report
        except Exception as exc:
            logger.warning("Watch check failed: %s", exc)
            return None
        finally:
            self.is_updating = False

    def _tick(self) -> None:
        if self._current is not None and not self._current.done():
            self.ticks_skipped += 1
            logger.debug("Previous poll still running, skipping tick")
            return
        self._current = asyncio.create_task(self.check_once())

    async def run(self) -> None:
        config = self.orchestrator.config
        logger.info("Watching %s (%s) every %.0fs", config.repo_url, config.branch, self.interval)
        while not self._stopping.is_set():
            self._tick()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

        if self._current is not None and not self._current.done():
            await self._current
        logger.info("Watch mode stopped")

    def stop(self) -> None:
        self._stopping.set()
