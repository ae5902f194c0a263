"""
Tests for the command orchestrator: list, install, uninstall, installed and cache.
"""

from unittest.mock import Mock

import pytest

from async_test_utils import FakeSource, RecordingRunner, build, completed_process
from gman.config import parse_config
from gman.download.cache import ArtifactCache
from gman.download.interfaces import Origin, UpgradePolicy
from gman.download.orchestrator import CacheFilter, GManContext, Orchestrator
from gman.download.teamcity import TeamCitySource
from gman.exceptions import (
    AmbiguousTargetError,
    CandidateNotFoundError,
    GManError,
    InstallationFailedError,
    RepositoryUnavailableError,
    TargetNotFoundError,
    UninstallationFailedError,
)
from gman.install.base import InstallStatus
from gman.install.inspector import InstalledItemInspector, RawInstallRecord
from gman.install.registry import InstallerRegistry
from gman.products import PackageType, Platform

pytestmark = [pytest.mark.integration, pytest.mark.core_downloads, pytest.mark.asyncio]

ASTERIA = "CN=ASTERIA Corporation"
HUBKIT_PRODUCT_CODE = "{1B2C3D4E-0000-1111-2222-333344445555}"
OLD_PRODUCT_CODE = "{0A1B2C3D-0000-1111-2222-333344445555}"


def hubkit_record(version="5.2", identifier=HUBKIT_PRODUCT_CODE):
    return RawInstallRecord(
        platform=Platform.WINDOWS,
        name="Gravio HubKit",
        version=version,
        identifier=identifier,
        package_type=PackageType.MSI,
        display_name="Gravio HubKit",
        publisher=ASTERIA,
    )


@pytest.fixture
def runner():
    return RecordingRunner()


@pytest.fixture
def records():
    return []


@pytest.fixture
def make_context(client_config, runner, records):
    def _create(sources, config=None, spawner=None, **kwargs):
        config = config or client_config
        return GManContext(
            config=config,
            cache=ArtifactCache(config.cache_directory),
            sources=sources,
            installers=InstallerRegistry(
                runner=runner,
                temp_dir=config.temp_download_directory,
                spawner=spawner or Mock(),
            ),
            inspector=InstalledItemInspector(
                config,
                runner=runner,
                scanners={Platform.WINDOWS: lambda: list(records)},
            ),
            host_platform=Platform.WINDOWS,
            **kwargs,
        )

    return _create


class TestList:
    async def test_merges_cache_and_repository(self, make_context, windows_flavor):
        source = FakeSource(builds=[build(101, "5.3"), build(100, "5.2")])
        context = make_context([source])
        context.cache.store("HubKit", windows_flavor, "5.2", b"x", build_id=100)

        async with Orchestrator(context) as gman:
            result = await gman.list("HubKit", "WindowsHubkit")

        assert [(c.version.raw, c.origin) for c in result.candidates] == [
            ("5.3", Origin.REMOTE),
            ("5.2", Origin.CACHED),
        ]
        assert result.warnings == []
        assert source.closed

    async def test_all_products_sorted(self, make_context):
        source = FakeSource(builds=[build(100, "1.0")])

        async with Orchestrator(make_context([source])) as gman:
            result = await gman.list()

        keys = [(c.product, c.flavor.id) for c in result.candidates]
        assert keys == [
            ("GravioStudio", "WindowsAppStore"),
            ("GravioStudio", "WindowsStudioMsi"),
            ("HubKit", "MacHubkit"),
            ("HubKit", "WindowsHubkit"),
        ]

    async def test_failing_repository_becomes_warning(
        self, make_context, windows_flavor
    ):
        source = FakeSource(error=RepositoryUnavailableError("down", repository="CI"))
        context = make_context([source])
        context.cache.store("HubKit", windows_flavor, "5.2", b"x")

        async with Orchestrator(context) as gman:
            result = await gman.list("HubKit", "WindowsHubkit")

        assert [c.origin for c in result.candidates] == [Origin.CACHED]
        assert len(result.warnings) == 1
        assert "down" in result.warnings[0]

    async def test_offline_lists_cache_only(self, make_context, windows_flavor):
        source = FakeSource(builds=[build(101, "5.3")])
        context = make_context([source], offline=True)
        context.cache.store("HubKit", windows_flavor, "5.2", b"x")

        async with Orchestrator(context) as gman:
            result = await gman.list("HubKit")

        assert [c.version.raw for c in result.candidates] == ["5.2"]
        assert source.network_calls == 0
        assert result.warnings

    async def test_first_repository_wins_duplicates(self, make_context):
        first = FakeSource("First", builds=[build(1, "5.2", repository="First")])
        second = FakeSource("Second", builds=[build(2, "5.2", repository="Second")])

        async with Orchestrator(make_context([first, second])) as gman:
            result = await gman.list("HubKit", "WindowsHubkit")

        assert [c.repository for c in result.candidates] == ["First"]

    async def test_unknown_product_or_flavor(self, make_context):
        async with Orchestrator(make_context([FakeSource()])) as gman:
            with pytest.raises(CandidateNotFoundError):
                await gman.list("Nope")
            with pytest.raises(CandidateNotFoundError):
                await gman.list("HubKit", "Nope")

    async def test_show_installed(self, make_context, records):
        records.append(hubkit_record())

        async with Orchestrator(make_context([FakeSource()])) as gman:
            result = await gman.list("HubKit", show_installed=True)

        assert [i.product for i in result.installed] == ["HubKit"]

    async def test_installed_version_is_hidden(self, make_context, records):
        records.append(hubkit_record(version="5.2"))
        source = FakeSource(builds=[build(101, "5.3"), build(100, "5.2")])

        async with Orchestrator(make_context([source])) as gman:
            result = await gman.list("HubKit", "WindowsHubkit")

        assert [(c.version.raw, c.installed) for c in result.candidates] == [
            ("5.3", False)
        ]

    async def test_installed_version_is_flagged(self, make_context, records):
        records.append(hubkit_record(version="5.2"))
        source = FakeSource(builds=[build(101, "5.3"), build(100, "5.2")])

        async with Orchestrator(make_context([source])) as gman:
            result = await gman.list("HubKit", "WindowsHubkit", show_installed=True)

        assert [(c.version.raw, c.installed) for c in result.candidates] == [
            ("5.3", False),
            ("5.2", True),
        ]


class TestInstall:
    async def test_fresh_install(self, make_context, runner):
        source = FakeSource(builds=[build(101, "5.3")])

        async with Orchestrator(make_context([source])) as gman:
            outcome = await gman.install("HubKit", policy=UpgradePolicy.YES)

        assert outcome.status == InstallStatus.INSTALLED
        assert outcome.candidate.origin == Origin.REMOTE
        assert outcome.replaced == []
        assert runner.calls == [
            ["msiexec", "/i", str(outcome.candidate.artifact_path), "/passive"]
        ]

    async def test_same_version_is_not_reinstalled(self, make_context, runner, records):
        records.append(hubkit_record(version="5.3"))
        source = FakeSource(builds=[build(101, "5.3")])

        async with Orchestrator(make_context([source])) as gman:
            outcome = await gman.install("HubKit", "5.3")

        assert outcome.status == InstallStatus.ALREADY_INSTALLED
        assert runner.calls == []

    async def test_existing_version_is_replaced(self, make_context, runner, records):
        records.append(hubkit_record(version="5.2"))
        source = FakeSource(builds=[build(101, "5.3")])

        async with Orchestrator(make_context([source])) as gman:
            outcome = await gman.install("HubKit", "5.3", overwrite=True)

        assert [i.identifier for i in outcome.replaced] == [HUBKIT_PRODUCT_CODE]
        assert [c[:2] for c in runner.calls] == [["msiexec", "/x"], ["msiexec", "/i"]]

    async def test_replacing_asks_first(self, make_context, records):
        records.append(hubkit_record(version="5.2"))
        questions = []

        def _confirm(question):
            questions.append(question)
            return True

        source = FakeSource(builds=[build(101, "5.3")])
        context = make_context([source], confirm=_confirm)

        async with Orchestrator(context) as gman:
            outcome = await gman.install("HubKit", "5.3")

        assert outcome.status == InstallStatus.INSTALLED
        assert len(outcome.replaced) == 1
        assert len(questions) == 1
        assert "5.2" in questions[0]
        assert "Replace it with 5.3" in questions[0]

    async def test_declined_replace_keeps_existing(
        self, make_context, runner, records
    ):
        records.append(hubkit_record(version="5.2"))
        source = FakeSource(builds=[build(101, "5.3")])

        async with Orchestrator(make_context([source])) as gman:
            outcome = await gman.install("HubKit", "5.3")

        assert outcome.status == InstallStatus.CANCELLED
        assert outcome.replaced == []
        assert runner.calls == []

    async def test_overwrite_false_never_asks(self, make_context, runner, records):
        records.append(hubkit_record(version="5.2"))
        confirm = Mock(return_value=True)
        source = FakeSource(builds=[build(101, "5.3")])

        async with Orchestrator(make_context([source], confirm=confirm)) as gman:
            outcome = await gman.install("HubKit", "5.3", overwrite=False)

        assert outcome.status == InstallStatus.CANCELLED
        confirm.assert_not_called()
        assert runner.calls == []

    async def test_installer_failure_propagates(self, make_context, runner):
        runner.results.append(completed_process(1603, stderr="Fatal error"))
        source = FakeSource(builds=[build(101, "5.3")])

        async with Orchestrator(make_context([source])) as gman:
            with pytest.raises(InstallationFailedError):
                await gman.install("HubKit", "5.3")

    async def test_autorun_failure_is_a_warning(self, make_context, config_data):
        config_data["Products"][0]["Flavors"][0]["Autorun"] = True
        config = parse_config(config_data)
        source = FakeSource(builds=[build(101, "5.3")])

        async with Orchestrator(make_context([source], config=config)) as gman:
            outcome = await gman.install("HubKit", "5.3")

        assert outcome.status == InstallStatus.INSTALLED
        assert not outcome.launched
        assert any("launch" in w for w in outcome.warnings)

    async def test_autorun_launches_product(self, make_context, config_data):
        flavor_data = config_data["Products"][0]["Flavors"][0]
        flavor_data["Autorun"] = True
        flavor_data["Metadata"]["InstallPath"] = "C:\\Gravio\\HubKit.exe"
        config = parse_config(config_data)
        spawner = Mock()

        source = FakeSource(builds=[build(101, "5.3")])
        context = make_context([source], config=config, spawner=spawner)

        async with Orchestrator(context) as gman:
            outcome = await gman.install("HubKit", "5.3")

        assert outcome.launched
        spawner.assert_called_once_with(["C:\\Gravio\\HubKit.exe"])


class TestUninstallAndInstalled:
    async def test_uninstall_by_name(self, make_context, runner, records):
        records.append(hubkit_record())

        async with Orchestrator(make_context([])) as gman:
            outcome = gman.uninstall("hubkit")

        assert [i.identifier for i in outcome.items] == [HUBKIT_PRODUCT_CODE]
        assert runner.calls == [["msiexec", "/x", HUBKIT_PRODUCT_CODE, "/passive"]]

    async def test_uninstall_not_found(self, make_context):
        async with Orchestrator(make_context([])) as gman:
            with pytest.raises(TargetNotFoundError):
                gman.uninstall("HubKit")

    async def test_uninstall_ambiguous(self, make_context, records):
        records.append(hubkit_record())
        records.append(
            RawInstallRecord(
                platform=Platform.WINDOWS,
                name="HubKit Helper",
                version="1.0",
                identifier="HubKitHelper",
            )
        )

        async with Orchestrator(make_context([])) as gman:
            with pytest.raises(AmbiguousTargetError):
                gman.uninstall("hubkit")

    async def test_uninstall_blank_name(self, make_context, runner, records):
        records.append(hubkit_record())

        async with Orchestrator(make_context([])) as gman:
            with pytest.raises(TargetNotFoundError):
                gman.uninstall("  ")
        assert runner.calls == []

    async def test_uninstall_by_version(self, make_context, runner, records):
        records.append(hubkit_record("5.2", OLD_PRODUCT_CODE))
        records.append(hubkit_record("5.3"))
        confirm = Mock(return_value=False)

        async with Orchestrator(make_context([], confirm=confirm)) as gman:
            outcome = gman.uninstall("hubkit", "5.2")

        assert [i.identifier for i in outcome.items] == [OLD_PRODUCT_CODE]
        confirm.assert_not_called()
        assert runner.calls == [["msiexec", "/x", OLD_PRODUCT_CODE, "/passive"]]

    async def test_uninstall_unknown_version(self, make_context, records):
        records.append(hubkit_record("5.3"))

        async with Orchestrator(make_context([])) as gman:
            with pytest.raises(TargetNotFoundError):
                gman.uninstall("hubkit", "9.9")

    async def test_several_matches_are_confirmed_one_by_one(
        self, make_context, runner, records
    ):
        records.append(hubkit_record("5.2", OLD_PRODUCT_CODE))
        records.append(hubkit_record("5.3"))
        answers = iter([True, False])
        questions = []

        def _confirm(question):
            questions.append(question)
            return next(answers)

        async with Orchestrator(make_context([], confirm=_confirm)) as gman:
            outcome = gman.uninstall("hubkit")

        assert len(questions) == 2
        assert [i.identifier for i in outcome.items] == [OLD_PRODUCT_CODE]
        assert [i.identifier for i in outcome.skipped] == [HUBKIT_PRODUCT_CODE]
        assert runner.calls == [["msiexec", "/x", OLD_PRODUCT_CODE, "/passive"]]

    async def test_assume_yes_removes_every_match(self, make_context, runner, records):
        records.append(hubkit_record("5.2", OLD_PRODUCT_CODE))
        records.append(hubkit_record("5.3"))
        confirm = Mock(return_value=False)

        async with Orchestrator(make_context([], confirm=confirm)) as gman:
            outcome = gman.uninstall("hubkit", assume_yes=True)

        assert len(outcome.items) == 2
        assert outcome.skipped == []
        confirm.assert_not_called()
        assert len(runner.calls) == 2

    async def test_installed_on_attached_device(self, make_context):
        context = make_context([])
        context.inspector.scanners[Platform.ANDROID] = lambda: [
            RawInstallRecord(
                platform=Platform.ANDROID,
                name="com.asteria.hubkit",
                version="53",
                identifier="com.asteria.hubkit",
                package_type=PackageType.APK,
            )
        ]

        async with Orchestrator(context) as gman:
            items = gman.installed(Platform.ANDROID)

        assert [i.identifier for i in items] == ["com.asteria.hubkit"]

    async def test_other_desktop_platform_cannot_be_inspected(self, make_context):
        async with Orchestrator(make_context([])) as gman:
            with pytest.raises(GManError):
                gman.installed(Platform.MACOS)

    async def test_uninstall_unknown_package_type(self, make_context, records):
        records.append(
            RawInstallRecord(
                platform=Platform.WINDOWS,
                name="Gravio Updater",
                version="1.0",
                identifier="GravioUpdater",
            )
        )

        async with Orchestrator(make_context([])) as gman:
            with pytest.raises(UninstallationFailedError):
                gman.uninstall("updater")

    async def test_installed_lists_everything(self, make_context, records):
        records.append(hubkit_record())
        records.append(
            RawInstallRecord(
                platform=Platform.WINDOWS,
                name="Notepad++",
                version="8.6",
                identifier="Notepad++",
            )
        )

        async with Orchestrator(make_context([])) as gman:
            items = gman.installed()

        assert [(i.name, i.is_associated) for i in items] == [
            ("HubKit", True),
            ("Notepad++", False),
        ]


class TestStandaloneExe:
    @pytest.fixture
    def executable(self, tmp_path):
        return tmp_path / "bin" / "gravio-tool"

    @pytest.fixture
    def linux_context(self, make_context, config_data, executable):
        config_data["Products"].append(
            {
                "Name": "Tool",
                "Flavors": [
                    {
                        "Id": "LinuxTool",
                        "Platform": "Linux",
                        "PackageType": "StandaloneExe",
                        "Metadata": {"InstallPath": str(executable)},
                    }
                ],
            }
        )
        source = FakeSource(builds=[build(7, "1.0")], payload=b"\x7fELF")
        context = make_context([source], config=parse_config(config_data))
        context.host_platform = Platform.LINUX
        context.inspector.scanners[Platform.LINUX] = lambda: []
        return context

    async def test_reinstalling_same_version_is_skipped(
        self, linux_context, executable
    ):
        async with Orchestrator(linux_context) as gman:
            first = await gman.install("Tool", "1.0")
            second = await gman.install("Tool", "1.0")

        assert first.status == InstallStatus.INSTALLED
        assert executable.read_bytes() == b"\x7fELF"
        assert second.status == InstallStatus.ALREADY_INSTALLED

    async def test_uninstall_removes_executable(self, linux_context, executable):
        async with Orchestrator(linux_context) as gman:
            await gman.install("Tool", "1.0")
            assert [i.version for i in gman.installed()] == ["1.0"]
            outcome = gman.uninstall("tool")

        assert [i.path for i in outcome.items] == [executable]
        assert not executable.exists()
        assert list(executable.parent.iterdir()) == []


class TestCache:
    async def test_list_and_evict(self, make_context, windows_flavor, mac_flavor):
        context = make_context([])
        context.cache.store("HubKit", windows_flavor, "5.2", b"x")
        context.cache.store("HubKit", mac_flavor, "5.2", b"x")

        async with Orchestrator(context) as gman:
            assert len(gman.cache().entries) == 2
            result = gman.cache(CacheFilter(flavor="MacHubkit"))
            assert result.evicted == 1
            assert gman.cache(CacheFilter(product="Nope")).evicted == 0
            assert gman.cache(CacheFilter()).evicted == 1
            assert gman.cache().entries == []


class TestContextFromConfig:
    async def test_builds_teamcity_sources(self, client_config):
        context = GManContext.from_config(client_config, host_platform=Platform.MACOS)

        assert [type(s) for s in context.sources] == [TeamCitySource]
        assert context.sources[0].name == "CI"
        assert context.host_platform == Platform.MACOS
        assert context.cache.cache_dir == client_config.cache_directory
        await Orchestrator(context).close()
