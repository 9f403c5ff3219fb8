from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from contentsync.cache_store import CacheStore
from contentsync.config import normalize_mapping
from contentsync.errors import InstallItemFailed, UnknownMappingType
from contentsync.executor import ConcurrencyExecutor
from contentsync.filters import FileFilter
from contentsync.layouts import PathTransform
from contentsync.models import ContentMapping, InstallationResult, InstallReport, ItemError, MappingKind
from contentsync.scanner import digest_path, has_content, list_files


logger = logging.getLogger(__name__)

DEFAULT_INSTALL_CONCURRENCY = 5


def _local_file_path(root: Path, relative_path: str) -> Path:
    return root / Path(relative_path)


def _copy_file(source: Path, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, target)


def _copy_folder(source: Path, destination: Path, file_filter: FileFilter) -> int:
    written = 0
    destination.mkdir(parents=True, exist_ok=True)
    for file_path, relative_path in list_files(source):
        reason = file_filter.rejection_reason(file_path, relative_path)
        if reason is not None:
            logger.debug("Skipping %s: %s", relative_path, reason)
            continue
        _copy_file(file_path, _local_file_path(destination, relative_path))
        written += 1
    return written


def _copy_single(source: Path, destination: Path, file_filter: FileFilter) -> int:
    reason = file_filter.rejection_reason(source, source.name)
    if reason is not None:
        logger.warning("Skipping %s: %s", source.name, reason)
        return 0
    _copy_file(source, destination)
    return 1


def _copy_selected(
    source: Path, destination: Path, files: Sequence[str], file_filter: FileFilter
) -> int:
    written = 0
    destination.mkdir(parents=True, exist_ok=True)
    for name in files:
        file_path = _local_file_path(source, name)
        if not file_path.is_file():
            logger.warning("Selective file not found in source: %s", (Path(source.name) / name).as_posix())
            continue
        reason = file_filter.rejection_reason(file_path, name)
        if reason is not None:
            logger.debug("Skipping %s: %s", name, reason)
            continue
        _copy_file(file_path, _local_file_path(destination, name))
        written += 1
    return written


class ContentInstaller:
    """Copies mapped paths from a fresh clone into the project tree."""

    def __init__(
        self,
        *,
        source_root: Path,
        project_root: Path,
        transform: PathTransform,
        cache: CacheStore,
        executor: ConcurrencyExecutor,
        file_filter: FileFilter | None = None,
        concurrency: int = DEFAULT_INSTALL_CONCURRENCY,
    ) -> None:
        self.source_root = source_root
        self.project_root = project_root
        self.transform = transform
        self.cache = cache
        self.executor = executor
        self.file_filter = file_filter or FileFilter()
        self.concurrency = concurrency

    @staticmethod
    def normalize(key: str, declaration: str | dict[str, Any] | ContentMapping) -> ContentMapping:
        return normalize_mapping(key, declaration)

    @staticmethod
    def digest_cache_key(mapping: ContentMapping) -> str:
        return f"mapping:{mapping.key}:{mapping.source}"

    async def digest(self, source_path: Path) -> str | None:
        return await digest_path(source_path)

    def destination_path(self, mapping: ContentMapping) -> Path:
        return self.project_root / self.transform.transform(mapping.destination)

    async def install_one(self, key: str, mapping: ContentMapping) -> InstallationResult:
        source = _local_file_path(self.source_root, mapping.source)
        destination = self.destination_path(mapping)

        fresh_digest = await self.digest(source)
        if fresh_digest is None:
            logger.warning("Source %s for %r not found in repository", mapping.source, key)
            if mapping.kind is not MappingKind.FILE:
                destination.mkdir(parents=True, exist_ok=True)
            return InstallationResult(key=key, destination_path=destination, success=False)

        cache_key = self.digest_cache_key(mapping)
        cached_digest = await self.cache.get_cached_file_digest(cache_key)
        if (
            cached_digest is not None
            and cached_digest.hash == fresh_digest
            and has_content(destination)
        ):
            logger.info("%s unchanged, skipping install (cache hit)", key)
            return InstallationResult(key=key, destination_path=destination, success=True, cached=True)

        if mapping.kind is MappingKind.FOLDER:
            written = await asyncio.to_thread(_copy_folder, source, destination, self.file_filter)
        elif mapping.kind is MappingKind.SELECTIVE:
            written = await asyncio.to_thread(
                _copy_selected, source, destination, mapping.files, self.file_filter
            )
        elif mapping.kind is MappingKind.FILE:
            written = await asyncio.to_thread(
                _copy_single, source, destination, self.file_filter
            )
        else:
            raise UnknownMappingType(mapping.kind)

        await self.cache.cache_file_digest(cache_key, fresh_digest)
        logger.info("Installed %s -> %s (%d files)", key, destination, written)
        return InstallationResult(
            key=key, destination_path=destination, success=True, files_written=written
        )

    async def install_all(self, mappings: Sequence[ContentMapping]) -> InstallReport:
        async def _worker(mapping: ContentMapping, index: int) -> InstallationResult:
            return await self.install_one(mapping.key, mapping)

        batch = await self.executor.run(
            list(mappings),
            _worker,
            concurrency=self.concurrency,
            cache=False,
        )
        errors = [
            ItemError(
                index=error.index,
                item=error.item,
                error=InstallItemFailed(error.item.key, error.error),
            )
            for error in batch.errors
        ]
        for error in errors:
            logger.error("%s", error.message)

        return InstallReport(
            results=[result.value for result in batch.results],
            errors=errors,
            success_rate=batch.success_rate,
            duration=batch.duration,
        )
