from __future__ import annotations

from dataclasses import dataclass, field

from contentsync.backup import BackupInfo
from contentsync.cache_store import CacheStats
from contentsync.models import ExistenceState, Metrics, RepositoryInfo
from contentsync.orchestrator import SyncOrchestrator


LOW_HIT_RATE_THRESHOLD = 0.5


@dataclass(slots=True)
class MappingStatus:
    key: str
    destination: str
    state: ExistenceState


@dataclass(slots=True)
class SyncStatus:
    existence: ExistenceState
    mappings: list[MappingStatus]
    cached_revision: RepositoryInfo | None
    cache: CacheStats
    metrics: Metrics
    backup: BackupInfo | None = None
    managed_paths: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def hit_rate(self) -> float | None:
        return self.metrics.hit_rate()

    @property
    def is_healthy(self) -> bool:
        return self.existence is ExistenceState.COMPLETE and self.cached_revision is not None


def build_recommendations(status: SyncStatus, expected_paths: list[str]) -> list[str]:
    recommendations: list[str] = []

    if status.existence is ExistenceState.ABSENT:
        recommendations.append("No content installed yet. Run `contentsync fetch`.")
    elif status.existence is ExistenceState.PARTIAL:
        missing = [m.key for m in status.mappings if m.state is not ExistenceState.COMPLETE]
        recommendations.append(
            f"Content is incomplete ({', '.join(missing)}). The next fetch will run a safe update."
        )

    if status.cached_revision is None and status.existence is not ExistenceState.ABSENT:
        recommendations.append("No cached revision; the next fetch will re-check the remote.")

    if not status.cache.enabled:
        recommendations.append("Cache is disabled or unavailable; every fetch will do full work.")
    elif status.cache.expired_entries:
        recommendations.append(
            f"{status.cache.expired_entries} expired cache entries; run `contentsync clear-cache`."
        )

    hit_rate = status.hit_rate
    if hit_rate is not None and hit_rate < LOW_HIT_RATE_THRESHOLD:
        recommendations.append(f"Low cache hit rate ({hit_rate:.0%}).")

    if sorted(status.managed_paths) != sorted(expected_paths):
        recommendations.append(".gitignore managed section is out of date; it is refreshed on fetch.")

    return recommendations


async def collect_status(orchestrator: SyncOrchestrator) -> SyncStatus:
    await orchestrator.initialize()
    classifier = orchestrator.classifier
    mappings = orchestrator.config.mappings()

    status = SyncStatus(
        existence=await classifier.classify_existence(mappings),
        mappings=[
            MappingStatus(
                key=mapping.key,
                destination=orchestrator.transform.transform(mapping.destination),
                state=classifier.mapping_state(mapping),
            )
            for mapping in mappings
        ],
        cached_revision=await orchestrator.cached_revision(),
        cache=await orchestrator.cache.stats(),
        metrics=orchestrator.metrics,
        backup=orchestrator.backup.info(),
        managed_paths=orchestrator.ignore_file.managed_paths(),
    )
    status.recommendations = build_recommendations(status, orchestrator.destinations)
    return status
