"""Best-effort snapshot of mapped destinations before a destructive fetch."""

from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BackupInfo:
    path: Path
    file_count: int


def _copy_path(source: Path, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    if source.is_dir():
        shutil.copytree(source, target, dirs_exist_ok=True)
    else:
        shutil.copy2(source, target)


class BackupManager:
    def __init__(self, project_root: Path, backup_dir: Path) -> None:
        self.project_root = project_root
        self.backup_dir = backup_dir

    def _relative(self, path: Path) -> Path:
        try:
            return path.resolve().relative_to(self.project_root.resolve())
        except ValueError:
            return Path(path.name)

    def _backup(self, destination_paths: Sequence[Path]) -> int:
        if self.backup_dir.exists():
            shutil.rmtree(self.backup_dir, ignore_errors=True)
        self.backup_dir.mkdir(parents=True, exist_ok=True)

        copied = 0
        for path in destination_paths:
            if not path.exists():
                continue
            target = self.backup_dir / self._relative(path)
            try:
                _copy_path(path, target)
            except OSError as exc:
                logger.warning("Backup of %s failed: %s", path, exc)
                continue
            copied += 1
        return copied

    def _restore(self) -> int:
        if not self.backup_dir.is_dir():
            return 0

        restored = 0
        for entry in sorted(self.backup_dir.iterdir()):
            try:
                _copy_path(entry, self.project_root / entry.name)
            except OSError as exc:
                logger.warning("Restore of %s failed: %s", entry, exc)
                continue
            restored += 1
        return restored

    async def backup(self, destination_paths: Sequence[Path]) -> int:
        """Copy every existing destination into the backup directory.

        The backup directory is emptied first and paths keep their layout
        relative to the project root. Returns the number of paths copied.
        """
        copied = await asyncio.to_thread(self._backup, list(destination_paths))
        logger.info("Backed up %d destination(s) to %s", copied, self.backup_dir)
        return copied

    async def restore(self) -> int:
        restored = await asyncio.to_thread(self._restore)
        logger.info("Restored %d entries from %s", restored, self.backup_dir)
        return restored

    async def clean_old_content(self, destination_paths: Sequence[Path]) -> int:
        """Delete mapped destinations ahead of a full fetch."""

        def _clean() -> int:
            removed = 0
            for path in destination_paths:
                if path.is_dir():
                    shutil.rmtree(path)
                elif path.exists():
                    path.unlink()
                else:
                    continue
                removed += 1
            return removed

        removed = await asyncio.to_thread(_clean)
        logger.info("Removed %d old destination(s)", removed)
        return removed

    def info(self) -> BackupInfo | None:
        if not self.backup_dir.is_dir():
            return None
        file_count = sum(1 for path in self.backup_dir.rglob("*") if path.is_file())
        return BackupInfo(path=self.backup_dir, file_count=file_count)
