from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path


IGNORED_DIRECTORY_NAMES = {".git"}


def _sha256_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        while True:
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def list_files(root: Path) -> list[tuple[Path, str]]:
    """Every regular file under ``root`` as ``(absolute path, posix relative path)``, sorted."""
    if root.is_file():
        return [(root, root.name)]

    files: list[tuple[Path, str]] = []
    for file_path in sorted(root.rglob("*")):
        if not file_path.is_file():
            continue
        rel_parts = file_path.relative_to(root).parts
        if IGNORED_DIRECTORY_NAMES.intersection(rel_parts[:-1]):
            continue
        files.append((file_path, Path(*rel_parts).as_posix()))
    return files


def has_content(path: Path) -> bool:
    try:
        if path.is_file():
            return path.stat().st_size > 0
        if path.is_dir():
            return any(path.iterdir())
    except OSError:
        return False
    return False


def digest_tree(path: Path) -> str | None:
    """Combined hash over every file below ``path`` (or of ``path`` itself).

    Relative paths participate in the digest, so renames change it as well
    as content edits. Returns ``None`` when ``path`` does not exist.
    """
    if not path.exists():
        return None

    combined = hashlib.sha256()
    for file_path, relative_path in list_files(path):
        combined.update(relative_path.encode("utf-8"))
        combined.update(b"\0")
        combined.update(_sha256_file(file_path).encode("ascii"))
        combined.update(b"\n")
    return combined.hexdigest()


async def digest_path(path: Path) -> str | None:
    return await asyncio.to_thread(digest_tree, path)
