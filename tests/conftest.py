from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from contentsync.cache_store import CacheStore
from contentsync.config import SyncConfig, parse_mappings
from contentsync.errors import CloneFailed, RepositoryUnreachable
from contentsync.git_client import RepositoryClient
from contentsync.layouts import ProjectLayout


REPO_URL = "https://github.com/acme/site-content.git"
REVISION_A = "a" * 40
REVISION_B = "b" * 40


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeRepositoryClient(RepositoryClient):
    """Serves an in-memory file tree instead of talking to git."""

    def __init__(self, files: dict[str, str], revision: str = REVISION_A) -> None:
        super().__init__(retries=2, retry_delay=0.0, sleep=RecordingSleep())
        self.files = dict(files)
        self.revision = revision
        self.fail_clone = False
        self.fail_remote = False
        self.clone_calls = 0
        self.remote_calls = 0
        self.last_filters: list[str] = []

    async def remote_revision(self, url: str, branch: str) -> str:
        self.remote_calls += 1
        if self.fail_remote:
            raise RepositoryUnreachable("remote offline")
        return self.revision

    async def clone_sparse(self, url, branch, destination: Path, path_filters) -> None:
        self.clone_calls += 1
        self.last_filters = list(path_filters)
        if self.fail_clone:
            raise CloneFailed("network down")
        destination.mkdir(parents=True, exist_ok=True)
        (destination / ".git").mkdir(exist_ok=True)
        for relative_path, content in self.files.items():
            target = destination / relative_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

    async def head_revision(self, repo_dir: Path) -> str | None:
        return self.revision


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def make_config(project_root: Path) -> Callable[..., SyncConfig]:
    def _make(mapping: dict[str, Any] | None = None, **overrides: Any) -> SyncConfig:
        values: dict[str, Any] = {
            "repo_url": REPO_URL,
            "project_root": str(project_root),
            "content_mapping": parse_mappings(
                mapping or {"content": {"source": "content", "destination": "src/content"}}
            ),
            "layout": ProjectLayout.GENERIC,
            "retry_delay_ms": 0,
            "max_retries": 2,
        }
        values.update(overrides)
        return SyncConfig(**values)

    return _make


@pytest.fixture
def remote_files() -> dict[str, str]:
    return {
        "content/intro.md": "# Intro\n",
        "content/guide.mdx": "Guide body\n",
        "content/data/nav.json": '{"items": []}\n',
    }


@pytest.fixture
def fake_client(remote_files: dict[str, str]) -> FakeRepositoryClient:
    return FakeRepositoryClient(remote_files)


@pytest.fixture
def cache(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / "cache" / "cache.db")
