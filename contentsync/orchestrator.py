"""Fetch state machine.

``fetch`` moves through Idle -> CheckingStaleness -> Skip | SafeUpdate |
FullFetch -> Done, or Failed when cloning or installing raises. Failed always
removes the temporary clone and restores the backup taken during the same
run, if any, before the error propagates.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

from contentsync.backup import BackupManager
from contentsync.cache_store import FILE_DIGEST_NAMESPACE, REPOSITORY_NAMESPACE, CacheStore
from contentsync.classifier import ContentStateClassifier
from contentsync.config import SyncConfig
from contentsync.errors import (
    InstallationIncomplete,
    InvalidRepositoryUrl,
    OperationFailed,
    RepositoryError,
    SafetyCheckFailed,
)
from contentsync.events import EventBus, LifecycleEvent
from contentsync.executor import ConcurrencyExecutor
from contentsync.filters import build_file_filter
from contentsync.git_client import RepositoryClient
from contentsync.ignore_file import IgnoreFileManager
from contentsync.installer import ContentInstaller
from contentsync.layouts import resolve_transform
from contentsync.models import (
    ExistenceState,
    FetchReport,
    FetchStrategy,
    InstallReport,
    Metrics,
    RepositoryInfo,
)


logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class SyncOrchestrator:
    def __init__(
        self,
        config: SyncConfig,
        *,
        client: RepositoryClient | None = None,
        cache: CacheStore | None = None,
        executor: ConcurrencyExecutor | None = None,
        events: EventBus | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.client = client or RepositoryClient(
            timeout=config.git_timeout_seconds,
            query_timeout=config.remote_query_timeout_seconds,
            retries=config.max_retries,
            retry_delay=config.retry_delay_seconds,
            sleep=sleep,
        )
        self.cache = cache or CacheStore(
            config.cache_db_path, io_timeout=config.cache_io_timeout_seconds
        )
        self.executor = executor or ConcurrencyExecutor(
            cache_store=self.cache,
            concurrency=config.concurrent_operations,
            retry_attempts=config.max_retries,
            retry_delay=config.retry_delay_seconds,
            sleep=sleep,
        )
        self.events = events or EventBus()
        self.layout = config.resolved_layout()
        self.transform = resolve_transform(self.layout)
        self.project_root = config.project_root_path
        self.classifier = ContentStateClassifier(
            self.project_root, self.transform, self.client, self.cache
        )
        self.backup = BackupManager(self.project_root, config.backup_path)
        self.ignore_file = IgnoreFileManager(
            self.project_root,
            system_paths=(
                f"{config.temp_dir.strip('/')}/",
                f"{config.backup_dir.strip('/')}/",
                f"{config.cache_dir.strip('/')}/",
                ".cache/",
            ),
        )
        self.metrics = Metrics()
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        removed = await self.cache.initialize()
        if removed:
            logger.debug("Cache startup sweep removed %d entries", removed)
        logger.debug("Project layout: %s", self.layout.value)
        self._initialized = True

    @property
    def destinations(self) -> list[str]:
        return [self.transform.transform(mapping.destination) for mapping in self.config.mappings()]

    def destination_paths(self) -> list[Path]:
        return [self.project_root / destination for destination in self.destinations]

    async def cached_revision(self) -> RepositoryInfo | None:
        return await self.cache.get_cached_repository_info(self.config.repo_url)

    async def remote_revision(self) -> str:
        return await self.client.retry(
            lambda: self.client.remote_revision(self.config.repo_url, self.config.branch),
            "Remote revision check",
        )

    async def classify(self) -> ExistenceState:
        return await self.classifier.classify_existence(self.config.mappings())

    def _check_url(self) -> None:
        if not self.client.validate_url(self.config.repo_url):
            raise InvalidRepositoryUrl(self.config.repo_url)

    async def _choose_strategy(self, existence: ExistenceState, force: bool) -> FetchStrategy:
        if existence is ExistenceState.PARTIAL:
            logger.info("Detected partial content, using safe update to preserve existing files")
            return FetchStrategy.SAFE_UPDATE
        if force:
            return FetchStrategy.FULL_FETCH

        if existence is ExistenceState.COMPLETE:
            try:
                report = await self.client.retry(
                    lambda: self.classifier.assess(
                        self.config.repo_url, self.config.branch, self.config.mappings()
                    ),
                    "Staleness check",
                )
            except (OperationFailed, RepositoryError) as exc:
                raise SafetyCheckFailed(
                    f"Safety check failed: {exc} (use --force to override)"
                ) from exc

            if not report.stale:
                return FetchStrategy.SKIP
            logger.info(
                "Commits differ (cached=%s, current=%s), using safe update",
                (report.cached_revision or "none")[:8],
                (report.live_revision or "none")[:8],
            )
            return FetchStrategy.SAFE_UPDATE

        if await self.cached_revision() is not None:
            return FetchStrategy.SAFE_UPDATE
        return FetchStrategy.FULL_FETCH

    async def fetch(self, force: bool = False) -> FetchReport:
        started = time.perf_counter()
        self.metrics.start_time = time.time()
        self.metrics.operations_count += 1

        if self.config.is_local_only:
            logger.info("No content repository configured, running in local-only mode")
            return self._finish(FetchStrategy.LOCAL_ONLY, None, None, started)

        self._check_url()
        await self.initialize()
        await self.events.emit(
            LifecycleEvent.BEFORE_FETCH, {"force": force, "repo_url": self.config.repo_url}
        )

        if force:
            logger.info("Clearing cache due to force flag")
            await self.cache.clear()

        existence = await self.classify()
        try:
            strategy = await self._choose_strategy(existence, force)
        except SafetyCheckFailed as exc:
            await self.events.emit(LifecycleEvent.ON_ERROR, {"error": exc})
            raise

        if strategy is FetchStrategy.SKIP:
            logger.info("Content is up to date, skipping fetch")
            await self.ignore_file.reconcile(self.destinations)
            self.metrics.cache_hits += 1
            cached = await self.cached_revision()
            await self.events.emit(LifecycleEvent.ON_SKIP, {"existence": existence})
            return self._finish(
                strategy, existence, cached.commit_hash if cached else None, started
            )

        self.metrics.cache_misses += 1
        return await self._execute(strategy, existence, started)

    async def safe_update(self) -> FetchReport:
        """Incremental update that never deletes outside the mapped destinations."""
        started = time.perf_counter()
        self.metrics.start_time = time.time()
        self.metrics.operations_count += 1
        self._check_url()
        await self.initialize()
        await self.events.emit(
            LifecycleEvent.BEFORE_FETCH, {"force": False, "repo_url": self.config.repo_url, "safe_mode": True}
        )
        existence = await self.classify()
        self.metrics.cache_misses += 1
        return await self._execute(FetchStrategy.SAFE_UPDATE, existence, started)

    async def _execute(
        self, strategy: FetchStrategy, existence: ExistenceState, started: float
    ) -> FetchReport:
        config = self.config
        backup_taken = False

        try:
            if strategy is FetchStrategy.FULL_FETCH:
                logger.info("Proceeding with full content fetch")
                paths = self.destination_paths()
                await self.backup.backup(paths)
                backup_taken = True
                await self.backup.clean_old_content(paths)
            else:
                logger.info("Performing safe content update")
                await self.cache.clear(REPOSITORY_NAMESPACE)

            await self.client.retry(
                lambda: self.client.clone_sparse(
                    config.repo_url,
                    config.branch,
                    config.temp_path,
                    [mapping.source for mapping in config.mappings()],
                ),
                "Repository clone",
            )
            revision = await self.client.head_revision(config.temp_path)
            await self.events.emit(
                LifecycleEvent.AFTER_CLONE, {"revision": revision, "path": config.temp_path}
            )

            report = await self._install()
            await self.events.emit(LifecycleEvent.AFTER_INSTALL, {"report": report})

            failed = report.failed_keys
            if failed:
                if config.fail_on_partial_install:
                    raise InstallationIncomplete(failed)
                logger.warning(
                    "%d of %d mappings failed to install: %s",
                    len(failed),
                    len(config.content_mapping),
                    ", ".join(failed),
                )

            await self._cleanup_temp()
            await self.ignore_file.reconcile(self.destinations)

            if revision is not None:
                await self.cache.cache_repository_info(
                    config.repo_url,
                    RepositoryInfo(commit_hash=revision, branch=config.branch, timestamp=_now_ms()),
                )
            else:
                logger.warning("Installed revision unknown, next run will re-check content")
        except Exception as exc:
            logger.error("Content fetch failed: %s", exc)
            await self.events.emit(LifecycleEvent.ON_ERROR, {"error": exc, "strategy": strategy})
            await self._cleanup_temp()
            if backup_taken:
                await self.backup.restore()
                # Digests written during this run describe content that was just rolled back.
                await self.cache.clear(FILE_DIGEST_NAMESPACE)
            raise

        self.metrics.files_processed += report.files_written
        fetch_report = self._finish(
            strategy, existence, revision, started, install=report, backup_taken=backup_taken
        )
        await self.events.emit(LifecycleEvent.AFTER_FETCH, {"report": fetch_report})
        logger.info(
            "Content %s completed in %.2fs",
            "update" if strategy is FetchStrategy.SAFE_UPDATE else "fetch",
            fetch_report.duration,
        )
        return fetch_report

    async def _install(self) -> InstallReport:
        installer = ContentInstaller(
            source_root=self.config.temp_path,
            project_root=self.project_root,
            transform=self.transform,
            cache=self.cache,
            executor=self.executor,
            file_filter=build_file_filter(
                self.config.allowed_extensions, self.config.max_file_size_bytes
            ),
            concurrency=self.config.concurrent_operations,
        )
        return await installer.install_all(self.config.mappings())

    async def _cleanup_temp(self) -> None:
        temp_path = self.config.temp_path
        if not temp_path.exists():
            return
        try:
            await asyncio.to_thread(shutil.rmtree, temp_path)
        except OSError as exc:
            logger.warning("Failed to clean up temp directory %s: %s", temp_path, exc)

    def _finish(
        self,
        strategy: FetchStrategy,
        existence: ExistenceState | None,
        revision: str | None,
        started: float,
        *,
        install: InstallReport | None = None,
        backup_taken: bool = False,
    ) -> FetchReport:
        duration = time.perf_counter() - started
        self.metrics.last_fetch_duration = duration
        self.metrics.last_strategy = strategy
        return FetchReport(
            strategy=strategy,
            existence=existence,
            revision=revision,
            duration=duration,
            install=install,
            backup_taken=backup_taken,
        )
