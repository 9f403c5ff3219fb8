from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import urlparse

from contentsync.errors import InvalidMappingConfig, UnknownMappingType
from contentsync.layouts import ProjectLayout, detect_layout, normalize_relative_path
from contentsync.models import ContentMapping, MappingKind


CONFIG_FILENAME = "content.config.json"
CACHE_DB_FILENAME = "cache.db"
DEFAULT_MAX_FILE_SIZE_BYTES = 5 * 1024 * 1024
PROTECTED_PATH_PARTS = frozenset({".git", "node_modules", ".env"})


@dataclass(slots=True)
class SyncConfig:
    repo_url: str
    project_root: str
    branch: str = "main"
    temp_dir: str = ".content-temp"
    backup_dir: str = ".content-backup"
    cache_dir: str = ".content-cache"
    content_mapping: dict[str, ContentMapping] = field(default_factory=dict)
    max_retries: int = 3
    retry_delay_ms: int = 2000
    concurrent_operations: int = 5
    allowed_extensions: tuple[str, ...] = ()
    max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE_BYTES
    layout: ProjectLayout | None = None
    git_timeout_seconds: float = 120.0
    remote_query_timeout_seconds: float = 10.0
    cache_io_timeout_seconds: float = 5.0
    poll_interval_seconds: float = 30.0
    fail_on_partial_install: bool = False

    @property
    def project_root_path(self) -> Path:
        return Path(self.project_root).resolve()

    @property
    def temp_path(self) -> Path:
        return self.project_root_path / self.temp_dir

    @property
    def backup_path(self) -> Path:
        return self.project_root_path / self.backup_dir

    @property
    def cache_db_path(self) -> Path:
        return self.project_root_path / self.cache_dir / CACHE_DB_FILENAME

    @property
    def retry_delay_seconds(self) -> float:
        return self.retry_delay_ms / 1000

    @property
    def is_local_only(self) -> bool:
        return not self.repo_url.strip()

    def resolved_layout(self) -> ProjectLayout:
        if self.layout is None:
            self.layout = detect_layout(self.project_root_path)
        return self.layout

    def mappings(self) -> list[ContentMapping]:
        return list(self.content_mapping.values())


def config_path(base_dir: Path | None = None) -> Path:
    return (base_dir or Path.cwd()).resolve() / CONFIG_FILENAME


def _check_relative(value: str, *, key: str, field_name: str) -> str:
    normalized = normalize_relative_path(value)
    if not normalized:
        raise InvalidMappingConfig(f"Mapping {key!r}: {field_name} is required")
    pure = PurePosixPath(normalized)
    if pure.is_absolute() or normalized.startswith("~") or ".." in pure.parts:
        raise InvalidMappingConfig(
            f"Mapping {key!r}: {field_name} must be a relative path inside the project ({value!r})"
        )
    return normalized


def _check_destination(value: str, *, key: str) -> str:
    # Destinations are deleted and restored wholesale during a full fetch.
    normalized = _check_relative(value, key=key, field_name="destination")
    parts = PurePosixPath(normalized).parts
    if not parts:
        raise InvalidMappingConfig(
            f"Mapping {key!r}: destination cannot be the project root ({value!r})"
        )
    protected = PROTECTED_PATH_PARTS.intersection(parts)
    if protected:
        raise InvalidMappingConfig(
            f"Mapping {key!r}: destination {value!r} contains protected path {sorted(protected)[0]!r}"
        )
    return normalized


def normalize_mapping(key: str, declaration: str | dict[str, Any] | ContentMapping) -> ContentMapping:
    """Expand a mapping declaration into a ``ContentMapping``.

    A bare string is shorthand for a folder synced to the same relative path.
    Object declarations default to ``folder`` and take ``source`` from
    ``destination`` when omitted.
    """
    if isinstance(declaration, ContentMapping):
        return declaration

    if isinstance(declaration, str):
        path = _check_destination(declaration, key=key)
        return ContentMapping(key=key, source=path, destination=path, kind=MappingKind.FOLDER)

    if not isinstance(declaration, dict):
        raise InvalidMappingConfig(
            f"Mapping {key!r} must be a string or an object, got {type(declaration).__name__}"
        )

    raw_destination = declaration.get("destination")
    if not raw_destination:
        raise InvalidMappingConfig(f"Mapping {key!r}: destination is required")
    destination = _check_destination(str(raw_destination), key=key)
    source = _check_relative(
        str(declaration.get("source") or raw_destination), key=key, field_name="source"
    )

    raw_kind = declaration.get("type") or MappingKind.FOLDER.value
    try:
        kind = MappingKind(str(raw_kind).lower())
    except ValueError:
        raise UnknownMappingType(raw_kind) from None

    files = tuple(str(name) for name in (declaration.get("files") or ()))
    if kind is MappingKind.SELECTIVE and not files:
        raise InvalidMappingConfig(f"Mapping {key!r}: selective mapping requires a non-empty files list")
    for name in files:
        _check_relative(name, key=key, field_name="files entry")

    return ContentMapping(key=key, source=source, destination=destination, kind=kind, files=files)


def parse_mappings(raw: dict[str, Any]) -> dict[str, ContentMapping]:
    if not isinstance(raw, dict):
        raise InvalidMappingConfig("contentMapping must be an object of key -> mapping")

    mappings: dict[str, ContentMapping] = {}
    seen_destinations: dict[str, str] = {}
    for key, declaration in raw.items():
        mapping = normalize_mapping(str(key), declaration)
        previous = seen_destinations.get(mapping.destination)
        if previous is not None:
            raise InvalidMappingConfig(
                f"Mappings {previous!r} and {key!r} share destination {mapping.destination!r}"
            )
        seen_destinations[mapping.destination] = str(key)
        mappings[str(key)] = mapping
    return mappings


def _mapping_to_payload(mapping: ContentMapping) -> str | dict[str, Any]:
    if (
        mapping.kind is MappingKind.FOLDER
        and mapping.source == mapping.destination
        and not mapping.files
    ):
        return mapping.destination
    payload: dict[str, Any] = {
        "source": mapping.source,
        "destination": mapping.destination,
        "type": mapping.kind.value,
    }
    if mapping.files:
        payload["files"] = list(mapping.files)
    return payload


def config_from_dict(data: dict[str, Any], project_root: Path) -> SyncConfig:
    if isinstance(data.get("CONFIG"), dict):
        data = data["CONFIG"]

    layout_value = data.get("layout")
    try:
        layout = ProjectLayout(layout_value) if layout_value else None
    except ValueError:
        raise InvalidMappingConfig(f"Unsupported layout: {layout_value!r}") from None

    config = SyncConfig(
        repo_url=normalize_repo_url(str(data.get("repoUrl") or "")),
        project_root=str(project_root),
        branch=str(data.get("branch") or "main"),
        temp_dir=str(data.get("tempDir") or ".content-temp"),
        backup_dir=str(data.get("backupDir") or ".content-backup"),
        cache_dir=str(data.get("cacheDir") or ".content-cache"),
        content_mapping=parse_mappings(data.get("contentMapping") or {}),
        max_retries=int(data.get("maxRetries", 3)),
        retry_delay_ms=int(data.get("retryDelayMs", 2000)),
        concurrent_operations=int(data.get("concurrentOperations", 5)),
        allowed_extensions=tuple(
            ext.lower() if ext.startswith(".") else f".{ext.lower()}"
            for ext in (data.get("allowedExtensions") or ())
        ),
        max_file_size_bytes=int(data.get("maxFileSizeBytes", DEFAULT_MAX_FILE_SIZE_BYTES)),
        layout=layout,
        git_timeout_seconds=float(data.get("gitTimeoutSeconds", 120.0)),
        remote_query_timeout_seconds=float(data.get("remoteQueryTimeoutSeconds", 10.0)),
        poll_interval_seconds=float(data.get("pollIntervalSeconds", 30.0)),
        fail_on_partial_install=bool(data.get("failOnPartialInstall", False)),
    )
    apply_env_overrides(config)
    validate_config(config)
    return config


def config_to_dict(config: SyncConfig) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "repoUrl": config.repo_url,
        "branch": config.branch,
        "tempDir": config.temp_dir,
        "backupDir": config.backup_dir,
        "cacheDir": config.cache_dir,
        "contentMapping": {
            key: _mapping_to_payload(mapping) for key, mapping in config.content_mapping.items()
        },
        "maxRetries": config.max_retries,
        "retryDelayMs": config.retry_delay_ms,
        "concurrentOperations": config.concurrent_operations,
        "allowedExtensions": list(config.allowed_extensions),
        "maxFileSizeBytes": config.max_file_size_bytes,
        "pollIntervalSeconds": config.poll_interval_seconds,
        "failOnPartialInstall": config.fail_on_partial_install,
    }
    if config.layout is not None:
        payload["layout"] = config.layout.value
    return payload


def apply_env_overrides(config: SyncConfig) -> None:
    repo_url = os.getenv("CONTENT_REPO_URL", "").strip()
    if repo_url:
        config.repo_url = normalize_repo_url(repo_url)
    branch = os.getenv("CONTENT_REPO_BRANCH", "").strip()
    if branch:
        config.branch = branch


def validate_config(config: SyncConfig) -> None:
    if config.max_retries < 1:
        raise InvalidMappingConfig("maxRetries must be at least 1")
    if config.concurrent_operations < 1:
        raise InvalidMappingConfig("concurrentOperations must be at least 1")
    if not config.is_local_only and not config.content_mapping:
        raise InvalidMappingConfig("At least one content mapping is required when repoUrl is set")


def load_config(base_dir: Path | None = None) -> SyncConfig:
    path = config_path(base_dir)
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found: {path}. Run `contentsync init <repo_url>` first."
        )

    with path.open("r", encoding="utf-8") as fh:
        data = json.load(fh)

    return config_from_dict(data, path.parent)


def save_config(config: SyncConfig, base_dir: Path | None = None) -> Path:
    path = config_path(base_dir or config.project_root_path)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(config_to_dict(config), fh, indent=2)
        fh.write("\n")
    return path


def normalize_repo_url(repo_url: str) -> str:
    value = (repo_url or "").strip()
    if not value:
        return value

    # SSH URL form (`ssh://git@github.com/org/repo.git`) -> scp-like form.
    if value.startswith("ssh://"):
        parsed = urlparse(value)
        if parsed.hostname and parsed.username:
            path = parsed.path.strip("/")
            if not path.endswith(".git"):
                path = f"{path}.git"
            return f"{parsed.username}@{parsed.hostname}:{path}"
        return value

    if value.startswith("https://"):
        value = value.rstrip("/")
        if not value.endswith(".git"):
            value = f"{value}.git"
        return value

    return value
