"""
Tests for version resolution and the automatic-upgrade policy.
"""

from unittest.mock import Mock

import pytest

from async_test_utils import FakeSource, build, failed_download
from gman.download.cache import ArtifactCache
from gman.download.interfaces import Origin, UpgradePolicy
from gman.download.resolver import ResolveRequest, VersionResolver
from gman.download.version import Version
from gman.exceptions import (
    CandidateNotFoundError,
    DownloadFailedError,
    OfflineError,
    RepositoryError,
    RepositoryUnavailableError,
)
from gman.products import Platform

pytestmark = [pytest.mark.unit, pytest.mark.core_downloads, pytest.mark.asyncio]


@pytest.fixture
def cache(client_config):
    return ArtifactCache(client_config.cache_directory)


@pytest.fixture
def make_resolver(client_config, cache):
    def _create(sources, host=Platform.WINDOWS, **kwargs):
        return VersionResolver(client_config, cache, sources, host, **kwargs)

    return _create


def _cache_hubkit(cache, flavor, version, **kwargs):
    return cache.store(
        "HubKit", flavor, version, b"cached-" + version.encode(), **kwargs
    )


class TestResolveWithoutCache:
    async def test_default_branch_is_fetched_and_cached(
        self, make_resolver, cache, client_config, windows_flavor
    ):
        source = FakeSource(builds=[build(100, "5.2.1-7059")])
        progress = Mock()
        resolver = make_resolver([source], progress_callback=progress)

        resolution = await resolver.resolve(ResolveRequest("HubKit"))

        candidate = resolution.candidate
        assert candidate.origin == Origin.REMOTE
        assert candidate.flavor == windows_flavor
        assert candidate.version == Version("5.2.1-7059")
        assert candidate.build_id == 100
        assert candidate.repository == "CI"
        assert candidate.artifact_path.read_bytes() == b"artifact-bytes"
        assert source.calls == ["resolve_branch:master", "download:100"]
        progress.assert_called()

        entry = cache.lookup("HubKit", windows_flavor, "5.2.1-7059")
        assert entry is not None
        assert entry.build_id == 100
        assert entry.branch == "master"
        assert list(client_config.temp_download_directory.iterdir()) == []

    async def test_explicit_branch(self, make_resolver):
        source = FakeSource(builds=[build(7, "6.0", branch="feature/x")])

        resolution = await make_resolver([source]).resolve(
            ResolveRequest("HubKit", "feature/x")
        )

        assert resolution.candidate.branch == "feature/x"
        assert source.calls[0] == "resolve_branch:feature/x"

    async def test_branch_without_successful_build(self, make_resolver):
        source = FakeSource(builds=[build(7, "6.0", branch="master")])

        with pytest.raises(CandidateNotFoundError):
            await make_resolver([source]).resolve(ResolveRequest("HubKit", "develop"))

    async def test_all_repositories_unreachable_is_offline(self, make_resolver):
        source = FakeSource(error=RepositoryUnavailableError("down", repository="CI"))

        with pytest.raises(OfflineError):
            await make_resolver([source]).resolve(ResolveRequest("HubKit"))

    async def test_offline_without_cache(self, make_resolver):
        source = FakeSource(builds=[build(100, "5.2")])

        with pytest.raises(OfflineError):
            await make_resolver([source], offline=True).resolve(
                ResolveRequest("HubKit")
            )

        assert source.network_calls == 0

    async def test_no_repository_serves_flavor(self, make_resolver):
        source = FakeSource(builds=[build(100, "5.2")], serves=False)

        with pytest.raises(CandidateNotFoundError, match="no repository"):
            await make_resolver([source]).resolve(ResolveRequest("HubKit"))

        assert source.network_calls == 0

    async def test_download_failure_without_cache_propagates(
        self, make_resolver, cache
    ):
        source = FakeSource(
            builds=[build(100, "5.2")], download_error=failed_download()
        )

        with pytest.raises(DownloadFailedError):
            await make_resolver([source]).resolve(ResolveRequest("HubKit"))

        assert cache.list_entries() == []


class TestResolveExplicitVersion:
    async def test_cached_version_needs_no_network(
        self, make_resolver, cache, windows_flavor
    ):
        _cache_hubkit(cache, windows_flavor, "5.2.4670")
        source = FakeSource(builds=[build(100, "5.2.4670")])

        resolution = await make_resolver([source]).resolve(
            ResolveRequest("HubKit", "5.2.4670")
        )

        assert resolution.candidate.origin == Origin.CACHED
        assert source.network_calls == 0

    async def test_padded_version_matches_cache(
        self, make_resolver, cache, windows_flavor
    ):
        _cache_hubkit(cache, windows_flavor, "5.2.4670")
        source = FakeSource()

        resolution = await make_resolver([source]).resolve(
            ResolveRequest("HubKit", "5.2.4670.0")
        )

        assert resolution.candidate.version.raw == "5.2.4670"
        assert source.network_calls == 0

    async def test_uncached_version_is_downloaded(self, make_resolver):
        source = FakeSource(builds=[build(101, "5.3"), build(100, "5.2")])

        resolution = await make_resolver([source]).resolve(
            ResolveRequest("HubKit", "5.2")
        )

        assert resolution.candidate.build_id == 100
        assert source.calls == ["find_version:5.2", "download:100"]

    async def test_unknown_version(self, make_resolver):
        source = FakeSource(builds=[build(100, "5.2")])

        with pytest.raises(CandidateNotFoundError) as exc_info:
            await make_resolver([source]).resolve(ResolveRequest("HubKit", "9.9"))

        assert exc_info.value.version_or_branch == "9.9"

    async def test_first_configured_repository_wins(self, make_resolver):
        first = FakeSource("First", builds=[build(1, "5.2", repository="First")])
        second = FakeSource("Second", builds=[build(2, "5.2", repository="Second")])

        resolution = await make_resolver([first, second]).resolve(
            ResolveRequest("HubKit", "5.2")
        )

        assert resolution.candidate.repository == "First"
        assert second.network_calls == 0

    async def test_failing_repository_is_skipped(self, make_resolver):
        first = FakeSource(
            "First", error=RepositoryError("HTTP error 500", "First", 500)
        )
        second = FakeSource("Second", builds=[build(2, "5.2", repository="Second")])

        resolution = await make_resolver([first, second]).resolve(
            ResolveRequest("HubKit", "5.2")
        )

        assert resolution.candidate.repository == "Second"
        assert any("First" in w for w in resolution.warnings)

    async def test_offline_uncached_version(self, make_resolver):
        with pytest.raises(OfflineError):
            await make_resolver([FakeSource()], offline=True).resolve(
                ResolveRequest("HubKit", "5.2")
            )


class TestUpgradePolicy:
    @pytest.fixture
    def cached(self, cache, windows_flavor):
        _cache_hubkit(cache, windows_flavor, "5.2", build_id=50)

    async def test_no_uses_cache_without_network(self, make_resolver, cached):
        source = FakeSource(builds=[build(100, "6.0")])

        resolution = await make_resolver([source]).resolve(
            ResolveRequest("HubKit", policy=UpgradePolicy.NO)
        )

        assert resolution.candidate.origin == Origin.CACHED
        assert resolution.candidate.version.raw == "5.2"
        assert source.network_calls == 0

    async def test_prompt_declined(self, make_resolver, cached):
        source = FakeSource(builds=[build(100, "6.0")])
        confirm = Mock(return_value=False)

        resolution = await make_resolver([source], confirm=confirm).resolve(
            ResolveRequest("HubKit", policy=UpgradePolicy.PROMPT)
        )

        confirm.assert_called_once()
        assert resolution.candidate.origin == Origin.CACHED
        assert source.network_calls == 0

    async def test_prompt_accepted_fetches_newer(self, make_resolver, cached):
        source = FakeSource(builds=[build(100, "6.0")])

        resolution = await make_resolver(
            [source], confirm=Mock(return_value=True)
        ).resolve(ResolveRequest("HubKit", policy=UpgradePolicy.PROMPT))

        assert resolution.candidate.origin == Origin.REMOTE
        assert resolution.candidate.version.raw == "6.0"

    async def test_yes_keeps_cache_when_remote_is_not_newer(
        self, make_resolver, cached
    ):
        source = FakeSource(builds=[build(100, "5.2.0")])

        resolution = await make_resolver([source]).resolve(
            ResolveRequest("HubKit", policy=UpgradePolicy.YES)
        )

        assert resolution.candidate.origin == Origin.CACHED
        assert resolution.candidate.version.raw == "5.2"
        assert "download:100" not in source.calls

    async def test_yes_keeps_cache_when_remote_is_older(self, make_resolver, cached):
        source = FakeSource(builds=[build(100, "5.1.9")])

        resolution = await make_resolver([source]).resolve(
            ResolveRequest("HubKit", policy=UpgradePolicy.YES)
        )

        assert resolution.candidate.version.raw == "5.2"

    async def test_unreachable_repository_degrades_to_cache(
        self, make_resolver, cached
    ):
        source = FakeSource(error=RepositoryUnavailableError("down", repository="CI"))

        resolution = await make_resolver([source]).resolve(
            ResolveRequest("HubKit", policy=UpgradePolicy.YES)
        )

        assert resolution.candidate.origin == Origin.CACHED
        assert resolution.warnings

    async def test_failed_download_degrades_to_cache(
        self, make_resolver, cache, windows_flavor, cached
    ):
        source = FakeSource(
            builds=[build(100, "6.0")], download_error=failed_download()
        )

        resolution = await make_resolver([source]).resolve(
            ResolveRequest("HubKit", policy=UpgradePolicy.YES)
        )

        assert resolution.candidate.version.raw == "5.2"
        assert any("6.0" in w for w in resolution.warnings)
        assert cache.lookup("HubKit", windows_flavor, "6.0") is None

    async def test_offline_with_cache_warns(self, make_resolver, cached):
        source = FakeSource(builds=[build(100, "6.0")])
        confirm = Mock(return_value=True)

        resolver = make_resolver([source], offline=True, confirm=confirm)
        resolution = await resolver.resolve(
            ResolveRequest("HubKit", policy=UpgradePolicy.PROMPT)
        )

        assert resolution.candidate.origin == Origin.CACHED
        assert resolution.warnings
        confirm.assert_not_called()
        assert source.network_calls == 0

    async def test_highest_cached_version_is_used(
        self, make_resolver, cache, windows_flavor, cached
    ):
        _cache_hubkit(cache, windows_flavor, "5.10")
        _cache_hubkit(cache, windows_flavor, "5.9")

        resolution = await make_resolver([FakeSource()]).resolve(
            ResolveRequest("HubKit", policy=UpgradePolicy.NO)
        )

        assert resolution.candidate.version.raw == "5.10"


class TestFlavorSelection:
    async def test_unknown_product(self, make_resolver):
        with pytest.raises(CandidateNotFoundError, match="Nope"):
            await make_resolver([FakeSource()]).resolve(ResolveRequest("Nope"))

    async def test_unknown_flavor(self, make_resolver):
        with pytest.raises(CandidateNotFoundError):
            await make_resolver([FakeSource()]).resolve(
                ResolveRequest("HubKit", flavor="LinuxHubkit")
            )

    async def test_no_flavor_for_host_platform(self, make_resolver):
        with pytest.raises(CandidateNotFoundError, match="Android"):
            await make_resolver([FakeSource()], host=Platform.ANDROID).resolve(
                ResolveRequest("HubKit")
            )

    async def test_explicit_flavor_for_other_platform(self, make_resolver, mac_flavor):
        source = FakeSource(builds=[build(9, "1.0")])

        resolution = await make_resolver([source]).resolve(
            ResolveRequest("HubKit", flavor="machubkit")
        )

        assert resolution.candidate.flavor == mac_flavor

    async def test_chooser_picks_among_host_flavors(self, make_resolver, client_config):
        studio = client_config.get_product("GravioStudio")
        chooser = Mock(side_effect=lambda flavors: flavors[1])
        source = FakeSource(builds=[build(9, "1.0")])

        resolution = await make_resolver([source], flavor_chooser=chooser).resolve(
            ResolveRequest("GravioStudio")
        )

        chooser.assert_called_once_with(studio.flavors_for(Platform.WINDOWS))
        assert resolution.candidate.flavor.id == "WindowsStudioMsi"
