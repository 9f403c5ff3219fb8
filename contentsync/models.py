from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class MappingKind(str, Enum):
    FOLDER = "folder"
    SELECTIVE = "selective"
    FILE = "file"


class ExistenceState(Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    ABSENT = "absent"


class FetchStrategy(Enum):
    SKIP = "skip"
    SAFE_UPDATE = "safe-update"
    FULL_FETCH = "full-fetch"
    LOCAL_ONLY = "local-only"


@dataclass(slots=True, frozen=True)
class ContentMapping:
    key: str
    source: str
    destination: str
    kind: MappingKind = MappingKind.FOLDER
    files: tuple[str, ...] = ()


@dataclass(slots=True)
class CacheEntry:
    data: Any
    created_at: int
    ttl: int
    size: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_valid(self, now_ms: int) -> bool:
        return now_ms - self.created_at < self.ttl


@dataclass(slots=True)
class RepositoryInfo:
    commit_hash: str
    branch: str
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {"commitHash": self.commit_hash, "branch": self.branch, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RepositoryInfo":
        return cls(
            commit_hash=str(data["commitHash"]),
            branch=str(data.get("branch", "")),
            timestamp=int(data.get("timestamp", 0)),
        )


@dataclass(slots=True)
class FileDigest:
    hash: str
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {"hash": self.hash, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileDigest":
        return cls(hash=str(data["hash"]), timestamp=int(data.get("timestamp", 0)))


@dataclass(slots=True)
class InstallationResult:
    key: str
    destination_path: Path
    success: bool
    cached: bool = False
    files_written: int = 0


@dataclass(slots=True)
class ItemResult:
    index: int
    value: Any
    cached: bool = False


@dataclass(slots=True)
class ItemError:
    index: int
    item: Any
    error: BaseException

    @property
    def message(self) -> str:
        return str(self.error)


@dataclass(slots=True)
class ProgressEvent:
    processed: int
    total: int
    percentage: int
    errors: int


@dataclass(slots=True)
class BatchResult:
    results: list[ItemResult]
    errors: list[ItemError]
    total: int
    duration: float

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 1.0
        return len(self.results) / self.total

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass(slots=True)
class InstallReport:
    results: list[InstallationResult]
    errors: list[ItemError]
    success_rate: float
    duration: float

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def files_written(self) -> int:
        return sum(result.files_written for result in self.results)

    @property
    def failed_keys(self) -> list[str]:
        keys = [result.key for result in self.results if not result.success]
        for error in self.errors:
            key = getattr(error.item, "key", None)
            keys.append(str(key) if key is not None else f"#{error.index}")
        return keys


@dataclass(slots=True)
class Metrics:
    start_time: float | None = None
    last_fetch_duration: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0
    files_processed: int = 0
    operations_count: int = 0
    last_strategy: FetchStrategy | None = None

    def hit_rate(self) -> float | None:
        total = self.cache_hits + self.cache_misses
        if total == 0:
            return None
        return self.cache_hits / total


@dataclass(slots=True)
class FetchReport:
    strategy: FetchStrategy
    existence: ExistenceState | None
    revision: str | None
    duration: float
    install: InstallReport | None = None
    backup_taken: bool = False
