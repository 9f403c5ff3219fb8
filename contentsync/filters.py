from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath


def _normalize_extension(extension: str) -> str:
    normalized = extension.strip().lower()
    if normalized and not normalized.startswith("."):
        normalized = f".{normalized}"
    return normalized


@dataclass(slots=True)
class FileFilter:
    allowed_extensions: tuple[str, ...] = ()
    max_file_size_bytes: int | None = None

    def matches_name(self, path: str) -> bool:
        if not self.allowed_extensions:
            return True
        return PurePosixPath(path).suffix.lower() in self.allowed_extensions

    def rejection_reason(self, file_path: Path, relative_path: str) -> str | None:
        """Why ``file_path`` should not be copied, or ``None`` when it passes."""
        if not self.matches_name(relative_path):
            return "extension not allowed"
        if self.max_file_size_bytes is not None:
            size = file_path.stat().st_size
            if size > self.max_file_size_bytes:
                return f"{size} bytes exceeds limit of {self.max_file_size_bytes}"
        return None

    def matches(self, file_path: Path, relative_path: str) -> bool:
        return self.rejection_reason(file_path, relative_path) is None


def build_file_filter(
    allowed_extensions: list[str] | tuple[str, ...] | None = None,
    max_file_size_bytes: int | None = None,
) -> FileFilter:
    extensions = tuple(
        _normalize_extension(ext) for ext in (allowed_extensions or []) if ext and ext.strip()
    )
    return FileFilter(allowed_extensions=extensions, max_file_size_bytes=max_file_size_bytes)
