from __future__ import annotations

from pathlib import Path

import pytest

from contentsync.errors import (
    InstallationIncomplete,
    InvalidRepositoryUrl,
    OperationFailed,
    SafetyCheckFailed,
)
from contentsync.events import LifecycleEvent
from contentsync.ignore_file import SECTION_MARKER
from contentsync.models import ExistenceState, FetchStrategy, RepositoryInfo
from contentsync.orchestrator import SyncOrchestrator

from conftest import REPO_URL, REVISION_A, REVISION_B


@pytest.fixture
def make_orchestrator(make_config, fake_client, recording_sleep):
    def _make(mapping=None, **overrides) -> SyncOrchestrator:
        config = make_config(mapping, **overrides)
        return SyncOrchestrator(config, client=fake_client, sleep=recording_sleep)

    return _make


def _snapshot(root: Path) -> dict[str, tuple[bytes, int]]:
    return {
        path.relative_to(root).as_posix(): (path.read_bytes(), path.stat().st_mtime_ns)
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


class TestFirstFetch:
    async def test_absent_content_triggers_full_fetch(self, make_orchestrator, project_root) -> None:
        orchestrator = make_orchestrator()

        report = await orchestrator.fetch()

        assert report.existence is ExistenceState.ABSENT
        assert report.strategy is FetchStrategy.FULL_FETCH
        assert report.backup_taken is True
        assert report.revision == REVISION_A
        for name in ("intro.md", "guide.mdx", "data/nav.json"):
            assert (project_root / "src/content" / name).is_file()
        assert not orchestrator.config.temp_path.exists()
        cached = await orchestrator.cached_revision()
        assert cached is not None and cached.commit_hash == REVISION_A
        assert orchestrator.metrics.cache_misses == 1
        assert orchestrator.metrics.files_processed == 3

    async def test_sparse_filters_are_mapping_sources(self, make_orchestrator, fake_client) -> None:
        orchestrator = make_orchestrator(
            {"blog": {"source": "content", "destination": "src/blog"}, "data": "data"}
        )
        await orchestrator.fetch()
        assert fake_client.last_filters == ["content", "data"]

    async def test_gitignore_lists_destinations(self, make_orchestrator, project_root) -> None:
        await make_orchestrator().fetch()
        text = (project_root / ".gitignore").read_text(encoding="utf-8")
        assert SECTION_MARKER in text
        assert "/src/content" in text


class TestSecondFetch:
    async def test_unchanged_upstream_skips_without_writes(
        self, make_orchestrator, project_root, fake_client
    ) -> None:
        orchestrator = make_orchestrator()
        await orchestrator.fetch()
        before = _snapshot(project_root / "src/content")

        report = await orchestrator.fetch()

        assert report.strategy is FetchStrategy.SKIP
        assert fake_client.clone_calls == 1
        assert orchestrator.metrics.cache_hits == 1
        assert _snapshot(project_root / "src/content") == before

    async def test_skip_still_reconciles_gitignore(self, make_orchestrator, project_root) -> None:
        orchestrator = make_orchestrator()
        await orchestrator.fetch()
        (project_root / ".gitignore").unlink()

        await orchestrator.fetch()

        assert orchestrator.ignore_file.managed_paths() == ["src/content"]

    async def test_repeated_safe_update_writes_nothing(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()
        await orchestrator.fetch()

        report = await orchestrator.safe_update()

        assert report.strategy is FetchStrategy.SAFE_UPDATE
        assert report.install is not None
        assert report.install.files_written == 0
        assert all(result.cached for result in report.install.results)


class TestSafeUpdate:
    async def _seed_installed(self, orchestrator: SyncOrchestrator, project_root: Path) -> None:
        content = project_root / "src/content"
        content.mkdir(parents=True)
        (content / "intro.md").write_text("# Old intro\n", encoding="utf-8")
        await orchestrator.initialize()
        await orchestrator.cache.cache_repository_info(
            REPO_URL, RepositoryInfo(commit_hash=REVISION_A, branch="main", timestamp=0)
        )

    async def test_new_upstream_commit_uses_safe_update(
        self, make_orchestrator, project_root, fake_client
    ) -> None:
        orchestrator = make_orchestrator()
        await self._seed_installed(orchestrator, project_root)
        fake_client.revision = REVISION_B

        report = await orchestrator.fetch()

        assert report.existence is ExistenceState.COMPLETE
        assert report.strategy is FetchStrategy.SAFE_UPDATE
        assert report.backup_taken is False
        assert not orchestrator.config.backup_path.exists()
        assert (project_root / "src/content/intro.md").read_text() == "# Intro\n"
        assert (await orchestrator.cached_revision()).commit_hash == REVISION_B

    async def test_files_outside_mappings_untouched(
        self, make_orchestrator, project_root, fake_client
    ) -> None:
        orchestrator = make_orchestrator()
        await self._seed_installed(orchestrator, project_root)
        (project_root / "src/pages").mkdir(parents=True)
        (project_root / "src/pages/index.astro").write_text("---\n---\n", encoding="utf-8")
        (project_root / "src/content/local-only.md").write_text("mine", encoding="utf-8")
        outside_before = _snapshot(project_root / "src/pages")
        fake_client.revision = REVISION_B

        await orchestrator.fetch()

        assert _snapshot(project_root / "src/pages") == outside_before
        assert (project_root / "src/content/local-only.md").read_text() == "mine"

    async def test_partial_content_uses_safe_update_even_when_forced(
        self, make_orchestrator, project_root
    ) -> None:
        orchestrator = make_orchestrator()
        (project_root / "src/content").mkdir(parents=True)

        report = await orchestrator.fetch(force=True)

        assert report.existence is ExistenceState.PARTIAL
        assert report.strategy is FetchStrategy.SAFE_UPDATE
        assert (project_root / "src/content/intro.md").exists()

    async def test_absent_with_cached_revision_uses_safe_update(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()
        await orchestrator.initialize()
        await orchestrator.cache.cache_repository_info(
            REPO_URL, RepositoryInfo(commit_hash=REVISION_A, branch="main", timestamp=0)
        )

        report = await orchestrator.fetch()

        assert report.existence is ExistenceState.ABSENT
        assert report.strategy is FetchStrategy.SAFE_UPDATE

    async def test_failed_safe_update_does_not_restore(
        self, make_orchestrator, project_root, fake_client
    ) -> None:
        orchestrator = make_orchestrator()
        await self._seed_installed(orchestrator, project_root)
        fake_client.revision = REVISION_B
        fake_client.fail_clone = True

        with pytest.raises(OperationFailed):
            await orchestrator.fetch()

        assert not orchestrator.config.backup_path.exists()
        assert (project_root / "src/content/intro.md").read_text() == "# Old intro\n"


class TestForcedAndFailures:
    async def test_force_on_complete_content_is_full_fetch(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()
        await orchestrator.fetch()

        report = await orchestrator.fetch(force=True)

        assert report.strategy is FetchStrategy.FULL_FETCH
        assert report.install is not None
        assert report.install.files_written == 3

    async def test_failed_full_fetch_restores_backup(
        self, make_orchestrator, project_root, fake_client, recording_sleep
    ) -> None:
        orchestrator = make_orchestrator()
        content = project_root / "src/content"
        content.mkdir(parents=True)
        (content / "precious.md").write_text("keep me", encoding="utf-8")
        fake_client.fail_clone = True

        with pytest.raises(OperationFailed) as excinfo:
            await orchestrator.fetch(force=True)

        assert excinfo.value.attempts == 2
        assert fake_client.clone_calls == 2
        assert (content / "precious.md").read_text() == "keep me"
        assert not orchestrator.config.temp_path.exists()

    async def test_invalid_url_fails_before_any_work(self, make_orchestrator, fake_client) -> None:
        orchestrator = make_orchestrator(repo_url="not-a-url")

        with pytest.raises(InvalidRepositoryUrl):
            await orchestrator.fetch()

        assert fake_client.remote_calls == 0
        assert fake_client.clone_calls == 0
        assert not orchestrator.config.temp_path.exists()

    async def test_safety_check_failure_aborts_without_force(
        self, make_orchestrator, project_root, fake_client
    ) -> None:
        orchestrator = make_orchestrator()
        await orchestrator.fetch()
        fake_client.fail_remote = True

        with pytest.raises(SafetyCheckFailed, match="--force"):
            await orchestrator.fetch()
        assert fake_client.clone_calls == 1

    async def test_local_only_mode(self, make_orchestrator, fake_client, project_root) -> None:
        orchestrator = make_orchestrator(repo_url="")

        report = await orchestrator.fetch()

        assert report.strategy is FetchStrategy.LOCAL_ONLY
        assert fake_client.clone_calls == 0
        assert list(project_root.iterdir()) == []


class TestPartialInstallPolicy:
    MAPPING = {
        "content": {"source": "content", "destination": "src/content"},
        "docs": {"source": "docs", "destination": "src/docs"},
    }

    async def test_default_reports_success_with_failed_keys(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator(self.MAPPING)

        report = await orchestrator.fetch()

        assert report.install is not None
        assert report.install.failed_keys == ["docs"]
        assert (await orchestrator.cached_revision()) is not None

    async def test_strict_policy_fails_and_restores(self, make_orchestrator, project_root) -> None:
        orchestrator = make_orchestrator(self.MAPPING, fail_on_partial_install=True)
        (project_root / "src/content").mkdir(parents=True)
        (project_root / "src/content/old.md").write_text("old", encoding="utf-8")
        (project_root / "src/docs").mkdir(parents=True)
        (project_root / "src/docs/old.md").write_text("old docs", encoding="utf-8")

        with pytest.raises(InstallationIncomplete) as excinfo:
            await orchestrator.fetch(force=True)

        assert excinfo.value.failed_keys == ["docs"]
        assert (project_root / "src/docs/old.md").read_text() == "old docs"
        assert (await orchestrator.cached_revision()) is None

    async def test_restored_content_is_reinstalled_on_next_fetch(
        self, make_orchestrator, project_root
    ) -> None:
        (project_root / "src/content").mkdir(parents=True)
        (project_root / "src/content/intro.md").write_text("# Old intro\n", encoding="utf-8")
        (project_root / "src/docs").mkdir(parents=True)
        (project_root / "src/docs/old.md").write_text("old docs", encoding="utf-8")
        strict = make_orchestrator(self.MAPPING, fail_on_partial_install=True)

        with pytest.raises(InstallationIncomplete):
            await strict.fetch(force=True)

        assert (project_root / "src/content/intro.md").read_text() == "# Old intro\n"
        assert await strict.cache.get_cached_file_digest("mapping:content:content") is None

        report = await make_orchestrator(self.MAPPING).fetch()

        assert report.install is not None
        content = next(result for result in report.install.results if result.key == "content")
        assert content.cached is False
        assert (project_root / "src/content/intro.md").read_text() == "# Intro\n"


class TestEvents:
    async def test_lifecycle_order(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()
        seen: list[LifecycleEvent] = []
        for event in LifecycleEvent:
            orchestrator.events.subscribe(event, lambda payload, event=event: seen.append(event))

        await orchestrator.fetch()
        await orchestrator.fetch()

        assert seen == [
            LifecycleEvent.BEFORE_FETCH,
            LifecycleEvent.AFTER_CLONE,
            LifecycleEvent.AFTER_INSTALL,
            LifecycleEvent.AFTER_FETCH,
            LifecycleEvent.BEFORE_FETCH,
            LifecycleEvent.ON_SKIP,
        ]

    async def test_error_event(self, make_orchestrator, fake_client) -> None:
        orchestrator = make_orchestrator()
        fake_client.fail_clone = True
        errors: list[dict] = []
        orchestrator.events.subscribe(LifecycleEvent.ON_ERROR, errors.append)

        with pytest.raises(OperationFailed):
            await orchestrator.fetch()

        assert len(errors) == 1
        assert isinstance(errors[0]["error"], OperationFailed)
