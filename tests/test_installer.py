from __future__ import annotations

from pathlib import Path

import pytest

from contentsync.config import parse_mappings
from contentsync.errors import InstallItemFailed, UnknownMappingType
from contentsync.executor import ConcurrencyExecutor
from contentsync.filters import build_file_filter
from contentsync.installer import ContentInstaller
from contentsync.layouts import IdentityTransform
from contentsync.models import ContentMapping, MappingKind


@pytest.fixture
def source_root(tmp_path: Path) -> Path:
    root = tmp_path / "clone"
    files = {
        "content/intro.md": "intro",
        "content/posts/first.md": "first",
        "content/image.png": "png-bytes",
        "data/a.json": "{}",
        "data/b.json": "[]",
        "config/site.json": '{"title": "Site"}',
    }
    for relative_path, body in files.items():
        target = root / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(body, encoding="utf-8")
    return root


@pytest.fixture
def make_installer(source_root: Path, project_root: Path, cache, recording_sleep):
    def _make(**kwargs) -> ContentInstaller:
        return ContentInstaller(
            source_root=source_root,
            project_root=project_root,
            transform=IdentityTransform(),
            cache=cache,
            executor=ConcurrencyExecutor(cache_store=cache, sleep=recording_sleep),
            **kwargs,
        )

    return _make


def _mapping(key: str, declaration) -> ContentMapping:
    return parse_mappings({key: declaration})[key]


class TestInstallOne:
    async def test_folder_preserves_relative_paths(self, make_installer, project_root) -> None:
        installer = make_installer()
        mapping = _mapping("content", {"source": "content", "destination": "src/content"})

        result = await installer.install_one("content", mapping)

        assert result.success and not result.cached
        assert result.files_written == 3
        assert (project_root / "src/content/posts/first.md").read_text() == "first"
        assert result.destination_path == project_root / "src/content"

    async def test_selective_skips_missing_files(self, make_installer, project_root) -> None:
        installer = make_installer()
        mapping = _mapping(
            "data",
            {"source": "data", "destination": "src/data", "type": "selective", "files": ["a.json", "missing.json"]},
        )

        result = await installer.install_one("data", mapping)

        assert result.success
        assert result.files_written == 1
        assert (project_root / "src/data/a.json").exists()
        assert not (project_root / "src/data/b.json").exists()

    async def test_file_mapping_copies_directly(self, make_installer, project_root) -> None:
        installer = make_installer()
        mapping = _mapping(
            "site", {"source": "config/site.json", "destination": "src/site.json", "type": "file"}
        )

        result = await installer.install_one("site", mapping)

        assert result.success
        assert (project_root / "src/site.json").read_text() == '{"title": "Site"}'

    async def test_unchanged_digest_skips_copy(self, make_installer, project_root) -> None:
        installer = make_installer()
        mapping = _mapping("content", {"source": "content", "destination": "src/content"})
        await installer.install_one("content", mapping)

        local_edit = project_root / "src/content/intro.md"
        local_edit.write_text("edited locally", encoding="utf-8")
        second = await installer.install_one("content", mapping)

        assert second.cached is True
        assert second.files_written == 0
        assert local_edit.read_text() == "edited locally"

    async def test_changed_source_reinstalls(self, make_installer, project_root, source_root) -> None:
        installer = make_installer()
        mapping = _mapping("content", {"source": "content", "destination": "src/content"})
        await installer.install_one("content", mapping)

        (source_root / "content/intro.md").write_text("intro v2", encoding="utf-8")
        second = await installer.install_one("content", mapping)

        assert second.cached is False
        assert (project_root / "src/content/intro.md").read_text() == "intro v2"

    async def test_emptied_destination_is_refilled_despite_cached_digest(
        self, make_installer, project_root
    ) -> None:
        installer = make_installer()
        mapping = _mapping("data", {"source": "data", "destination": "src/data"})
        await installer.install_one("data", mapping)
        for path in (project_root / "src/data").iterdir():
            path.unlink()

        second = await installer.install_one("data", mapping)

        assert second.cached is False
        assert (project_root / "src/data/a.json").exists()

    async def test_missing_source_is_unsuccessful(self, make_installer, project_root) -> None:
        installer = make_installer()
        mapping = _mapping("docs", {"source": "docs", "destination": "src/docs"})

        result = await installer.install_one("docs", mapping)

        assert result.success is False
        assert (project_root / "src/docs").is_dir()

    async def test_extension_filter_applies(self, make_installer, project_root) -> None:
        installer = make_installer(file_filter=build_file_filter([".md"]))
        mapping = _mapping("content", {"source": "content", "destination": "src/content"})

        result = await installer.install_one("content", mapping)

        assert result.files_written == 2
        assert not (project_root / "src/content/image.png").exists()

    async def test_file_mapping_respects_size_limit(self, make_installer, project_root) -> None:
        installer = make_installer(file_filter=build_file_filter(max_file_size_bytes=4))
        mapping = _mapping(
            "site", {"source": "config/site.json", "destination": "src/site.json", "type": "file"}
        )

        result = await installer.install_one("site", mapping)

        assert result.success
        assert result.files_written == 0
        assert not (project_root / "src/site.json").exists()

    async def test_file_mapping_respects_extension_filter(self, make_installer, project_root) -> None:
        installer = make_installer(file_filter=build_file_filter([".md"]))
        mapping = _mapping(
            "site", {"source": "config/site.json", "destination": "src/site.json", "type": "file"}
        )

        result = await installer.install_one("site", mapping)

        assert result.files_written == 0
        assert not (project_root / "src/site.json").exists()

    async def test_unknown_kind_raises(self, make_installer) -> None:
        installer = make_installer()
        mapping = ContentMapping(key="odd", source="content", destination="src/odd", kind="symlink")  # type: ignore[arg-type]
        with pytest.raises(UnknownMappingType):
            await installer.install_one("odd", mapping)


class TestInstallAll:
    async def test_installs_every_mapping(self, make_installer, project_root) -> None:
        installer = make_installer()
        mappings = list(
            parse_mappings(
                {
                    "content": {"source": "content", "destination": "src/content"},
                    "data": {"source": "data", "destination": "src/data"},
                }
            ).values()
        )

        report = await installer.install_all(mappings)

        assert report.success
        assert report.success_rate == 1.0
        assert {result.key for result in report.results} == {"content", "data"}
        assert report.files_written == 5

    async def test_item_failure_does_not_abort_siblings(self, make_installer, project_root) -> None:
        installer = make_installer()
        good = _mapping("data", {"source": "data", "destination": "src/data"})
        bad = ContentMapping(key="odd", source="content", destination="src/odd", kind="symlink")  # type: ignore[arg-type]

        report = await installer.install_all([good, bad])

        assert not report.success
        assert report.success_rate == pytest.approx(0.5)
        assert isinstance(report.errors[0].error, InstallItemFailed)
        assert report.errors[0].error.key == "odd"
        assert report.failed_keys == ["odd"]
        assert (project_root / "src/data/a.json").exists()

    async def test_missing_source_counts_as_failed_key(self, make_installer) -> None:
        installer = make_installer()
        report = await installer.install_all([_mapping("docs", {"source": "docs", "destination": "src/docs"})])
        assert report.success
        assert report.failed_keys == ["docs"]


def test_normalize_delegates_to_mapping_rules() -> None:
    mapping = ContentInstaller.normalize("blog", "src/content/blog")
    assert mapping.kind is MappingKind.FOLDER
    assert mapping.source == mapping.destination == "src/content/blog"
