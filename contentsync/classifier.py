from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from contentsync.cache_store import CacheStore
from contentsync.errors import RepositoryError
from contentsync.git_client import RepositoryClient
from contentsync.layouts import PathTransform
from contentsync.models import ContentMapping, ExistenceState
from contentsync.scanner import has_content


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StalenessReport:
    existence: ExistenceState
    cached_revision: str | None
    live_revision: str | None
    stale: bool


class ContentStateClassifier:
    """Decides whether installed content is complete and current."""

    def __init__(
        self,
        project_root: Path,
        transform: PathTransform,
        client: RepositoryClient,
        cache: CacheStore,
    ) -> None:
        self.project_root = project_root
        self.transform = transform
        self.client = client
        self.cache = cache

    def destination_path(self, mapping: ContentMapping) -> Path:
        return self.project_root / self.transform.transform(mapping.destination)

    def mapping_state(self, mapping: ContentMapping) -> ExistenceState:
        path = self.destination_path(mapping)
        if not path.exists():
            return ExistenceState.ABSENT
        return ExistenceState.COMPLETE if has_content(path) else ExistenceState.PARTIAL

    def _classify(self, mappings: Sequence[ContentMapping]) -> ExistenceState:
        if not mappings:
            return ExistenceState.ABSENT

        states = [self.mapping_state(mapping) for mapping in mappings]
        if all(state is ExistenceState.COMPLETE for state in states):
            return ExistenceState.COMPLETE
        if all(state is ExistenceState.ABSENT for state in states):
            return ExistenceState.ABSENT
        return ExistenceState.PARTIAL

    async def classify_existence(self, mappings: Sequence[ContentMapping]) -> ExistenceState:
        return await asyncio.to_thread(self._classify, mappings)

    async def assess(
        self, repo_url: str, branch: str, mappings: Sequence[ContentMapping]
    ) -> StalenessReport:
        """Existence plus cached and live revisions.

        Raises ``RepositoryError`` when the live revision cannot be queried;
        the caller decides whether that is fatal.
        """
        existence = await self.classify_existence(mappings)
        cached = await self.cache.get_cached_repository_info(repo_url)
        cached_revision = cached.commit_hash if cached is not None else None
        live_revision = await self.client.remote_revision(repo_url, branch)

        stale = (
            cached_revision is None
            or cached_revision != live_revision
            or existence is not ExistenceState.COMPLETE
        )
        logger.debug(
            "Staleness: existence=%s cached=%s live=%s stale=%s",
            existence.value,
            cached_revision,
            live_revision,
            stale,
        )
        return StalenessReport(
            existence=existence,
            cached_revision=cached_revision,
            live_revision=live_revision,
            stale=stale,
        )

    async def is_stale(
        self, repo_url: str, branch: str, mappings: Sequence[ContentMapping]
    ) -> bool:
        try:
            report = await self.assess(repo_url, branch, mappings)
        except RepositoryError as exc:
            logger.warning("Could not determine remote revision, treating content as stale: %s", exc)
            return True
        return report.stale
