from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Protocol


logger = logging.getLogger(__name__)


class ProjectLayout(str, Enum):
    ASTRO = "astro"
    NEXTJS = "nextjs"
    REACT = "react"
    REACT_VITE = "react-vite"
    REACT_CRA = "react-cra"
    GENERIC = "generic"


class PathTransform(Protocol):
    def transform(self, destination: str) -> str: ...


def normalize_relative_path(path: str) -> str:
    normalized = path.strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    normalized = normalized.rstrip("/")
    return PurePosixPath(normalized).as_posix() if normalized else normalized


@dataclass(slots=True, frozen=True)
class IdentityTransform:
    """Keeps destinations where the mapping declares them."""

    def transform(self, destination: str) -> str:
        return normalize_relative_path(destination)


@dataclass(slots=True, frozen=True)
class AstroTransform:
    # Astro reads collections from src/content and static imports from src/data;
    # both are declared explicitly in mappings, so only normalisation applies.
    def transform(self, destination: str) -> str:
        return normalize_relative_path(destination)


LAYOUT_TRANSFORMS: dict[ProjectLayout, PathTransform] = {
    ProjectLayout.ASTRO: AstroTransform(),
    ProjectLayout.NEXTJS: IdentityTransform(),
    ProjectLayout.REACT: IdentityTransform(),
    ProjectLayout.REACT_VITE: IdentityTransform(),
    ProjectLayout.REACT_CRA: IdentityTransform(),
    ProjectLayout.GENERIC: IdentityTransform(),
}


def resolve_transform(layout: ProjectLayout) -> PathTransform:
    return LAYOUT_TRANSFORMS[layout]


def detect_layout(project_root: Path) -> ProjectLayout:
    package_json = project_root / "package.json"
    if not package_json.is_file():
        return ProjectLayout.GENERIC

    try:
        with package_json.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, ValueError) as exc:
        logger.warning("Could not read %s for layout detection: %s", package_json, exc)
        return ProjectLayout.GENERIC

    dependencies: dict[str, str] = {}
    for section in ("dependencies", "devDependencies"):
        value = data.get(section)
        if isinstance(value, dict):
            dependencies.update(value)

    if "astro" in dependencies:
        return ProjectLayout.ASTRO
    if "next" in dependencies:
        return ProjectLayout.NEXTJS
    if "react" in dependencies:
        if "vite" in dependencies or "@vitejs/plugin-react" in dependencies:
            return ProjectLayout.REACT_VITE
        if "react-scripts" in dependencies or "create-react-app" in dependencies:
            return ProjectLayout.REACT_CRA
        return ProjectLayout.REACT
    return ProjectLayout.GENERIC
