from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path


logger = logging.getLogger(__name__)

SECTION_MARKER = "# Auto-imported content (do not commit)"
DEFAULT_SYSTEM_PATHS = (".content-temp/", ".content-backup/", ".content-cache/", ".cache/")


@dataclass(slots=True)
class IgnoreUpdateResult:
    success: bool
    paths_added: int = 0
    changed: bool = False
    error: str | None = None
    entries: list[str] = field(default_factory=list)


def _section_bounds(lines: list[str]) -> tuple[int, int] | None:
    """Line range of the managed section: the marker up to the next blank line."""
    for start, line in enumerate(lines):
        if line.strip() == SECTION_MARKER:
            end = start + 1
            while end < len(lines) and lines[end].strip():
                end += 1
            return start, end
    return None


def _strip_section(content: str) -> str:
    lines = content.splitlines(keepends=True)
    bounds = _section_bounds(lines)
    if bounds is None:
        return content

    start, end = bounds
    before = "".join(lines[:start]).rstrip("\n")
    after = "".join(lines[end + 1 :])
    if before:
        before += "\n"
    return before + after


def render_section(system_paths: Iterable[str], destinations: Iterable[str]) -> str:
    entries = list(dict.fromkeys(system_paths))
    entries.extend(f"/{path.strip('/')}" for path in sorted(set(destinations)))
    return SECTION_MARKER + "\n" + "".join(f"{entry}\n" for entry in entries)


class IgnoreFileManager:
    """Keeps an auto-managed block of content paths in ``.gitignore``."""

    def __init__(self, project_root: Path, system_paths: Sequence[str] = DEFAULT_SYSTEM_PATHS) -> None:
        self.project_root = project_root
        self.path = project_root / ".gitignore"
        self.system_paths = tuple(system_paths)

    def _reconcile(self, destinations: Sequence[str]) -> IgnoreUpdateResult:
        current = self.path.read_text(encoding="utf-8") if self.path.exists() else ""
        remainder = _strip_section(current)
        section = render_section(self.system_paths, destinations)

        if remainder and not remainder.endswith("\n"):
            remainder += "\n"
        updated = remainder + ("\n" if remainder else "") + section

        entries = section.splitlines()[1:]
        content_count = sum(1 for entry in entries if entry.startswith("/"))
        if updated == current:
            return IgnoreUpdateResult(success=True, paths_added=content_count, entries=entries)

        self.path.write_text(updated, encoding="utf-8")
        logger.info("Updated .gitignore with %d content paths", content_count)
        return IgnoreUpdateResult(
            success=True, paths_added=content_count, changed=True, entries=entries
        )

    async def reconcile(self, destinations: Sequence[str]) -> IgnoreUpdateResult:
        try:
            return await asyncio.to_thread(self._reconcile, list(destinations))
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Failed to update .gitignore: %s", exc)
            return IgnoreUpdateResult(success=False, error=str(exc))

    def managed_paths(self) -> list[str]:
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError):
            return []

        bounds = _section_bounds(lines)
        if bounds is None:
            return []
        start, end = bounds
        return [
            line.strip()[1:]
            for line in lines[start + 1 : end]
            if line.strip().startswith("/")
        ]
