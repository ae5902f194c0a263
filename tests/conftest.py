import time
from pathlib import Path

import platformdirs
import pytest

from async_test_utils import completed_process
from gman.config import parse_config

_ASYNC_NETWORK_BLOCK_MSG = (
    "Async network access is blocked during tests. Mock aiohttp.ClientSession."
)


async def _async_block_network(*_args, **_kwargs):
    """
    Prevent async network calls during tests by raising a RuntimeError.

    Raises:
        RuntimeError: `_ASYNC_NETWORK_BLOCK_MSG` explaining that async network access is blocked and suggesting mocking `aiohttp.ClientSession`.
    """
    raise RuntimeError(_ASYNC_NETWORK_BLOCK_MSG)


def pytest_configure(config):
    """
    Register the markers used to group gman tests.

    Parameters:
        config: pytest.Config
            The pytest configuration object.
    """
    for marker in (
        "asyncio: mark test as an asyncio test (auto-detected)",
        "unit: fast tests without filesystem-heavy setup",
        "core_downloads: version resolution, repository access and caching",
        "infrastructure: installers, inspection and logging",
        "configuration: configuration loading and validation",
        "integration: several components wired together",
    ):
        config.addinivalue_line("markers", marker)


@pytest.fixture(autouse=True)
def _isolate_test_environment(tmp_path_factory, monkeypatch):
    """
    Point every platformdirs location gman uses into a temporary directory.

    Also clears the GMAN_CONFIG and GMAN_LOG_LEVEL environment variables so a
    developer's own configuration never leaks into a test.
    """
    base = tmp_path_factory.mktemp("gman")
    cache_dir = base / "cache"
    config_dir = base / "config"
    log_dir = base / "log"

    for path in (cache_dir, config_dir, log_dir):
        path.mkdir(parents=True, exist_ok=True)

    monkeypatch.delenv("GMAN_CONFIG", raising=False)
    monkeypatch.delenv("GMAN_LOG_LEVEL", raising=False)

    monkeypatch.setattr(
        platformdirs, "user_cache_dir", lambda *_args, **_kwargs: str(cache_dir)
    )
    monkeypatch.setattr(
        platformdirs, "user_config_dir", lambda *_args, **_kwargs: str(config_dir)
    )
    monkeypatch.setattr(
        platformdirs, "user_log_dir", lambda *_args, **_kwargs: str(log_dir)
    )


def pytest_runtest_setup():
    """
    Prevent real network requests during tests by replacing aiohttp entry points with blocking callables.
    """
    import aiohttp

    aiohttp.request = _async_block_network
    aiohttp.ClientSession.request = _async_block_network  # type: ignore[assignment]
    aiohttp.ClientSession.get = _async_block_network  # type: ignore[assignment]
    aiohttp.ClientSession.post = _async_block_network  # type: ignore[assignment]


@pytest.fixture(autouse=True)
def _mock_time_sleep(monkeypatch):
    """Make time.sleep instant for all tests."""
    monkeypatch.setattr(time, "sleep", lambda *_args, **_kwargs: None)


# =============================================================================
# Configuration fixtures
# =============================================================================


@pytest.fixture
def config_data(tmp_path):
    """
    Provide a decoded configuration mapping with two products and one repository.

    HubKit has one Windows (Msi) and one macOS (App) flavor; GravioStudio has two
    Windows flavors so flavor selection has to choose.
    """
    return {
        "CacheDirectory": str(tmp_path / "cache"),
        "TempDownloadDirectory": str(tmp_path / "downloads"),
        "Repositories": [
            {
                "Name": "CI",
                "RepositoryType": "TeamCity",
                "RepositoryServer": "ci.example.com",
                "RepositoryCredentials": {"BearerToken": {"Token": "secret"}},
                "Platforms": ["Windows", "macOS"],
                "Products": ["HubKit", "GravioStudio"],
            }
        ],
        "PublisherIdentities": [
            {"Name": "Asteria", "Id": "CN=ASTERIA Corporation", "Platforms": ["Windows"]}
        ],
        "Products": [
            {
                "Name": "HubKit",
                "Flavors": [
                    {
                        "Id": "WindowsHubkit",
                        "Platform": "Windows",
                        "PackageType": "Msi",
                        "TeamCityMetadata": {
                            "TeamCityId": "Gravio_HubKit",
                            "TeamCityBinaryPath": "installer/GravioHubKit.msi",
                        },
                        "Metadata": {"DisplayNameRegex": "^Gravio HubKit"},
                    },
                    {
                        "Id": "MacHubkit",
                        "Platform": "macOS",
                        "PackageType": "App",
                        "Autorun": True,
                        "TeamCityMetadata": {
                            "TeamCityId": "Gravio_HubKitMac",
                            "TeamCityBinaryPath": "GravioHubKit.dmg",
                        },
                        "Metadata": {
                            "CFBundleId": "com.asteria.hubkit",
                            "CFBundleName": "Gravio HubKit",
                        },
                    },
                ],
            },
            {
                "Name": "GravioStudio",
                "Flavors": [
                    {
                        "Id": "WindowsAppStore",
                        "Platform": "Windows",
                        "PackageType": "AppX",
                        "TeamCityMetadata": {
                            "TeamCityId": "Gravio_Studio",
                            "TeamCityBinaryPath": "graviostudio.zip",
                        },
                        "Metadata": {"NameRegex": "^Asteria.GravioStudio"},
                    },
                    {
                        "Id": "WindowsStudioMsi",
                        "Platform": "Windows",
                        "PackageType": "Msi",
                        "TeamCityMetadata": {
                            "TeamCityId": "Gravio_StudioMsi",
                            "TeamCityBinaryPath": "GravioStudio.msi",
                        },
                        "Metadata": {"DisplayNameRegex": "^Gravio Studio"},
                    },
                ],
            },
        ],
    }


@pytest.fixture
def client_config(config_data):
    """Parsed ClientConfig built from `config_data`."""
    return parse_config(config_data)


@pytest.fixture
def hubkit(client_config):
    return client_config.get_product("HubKit")


@pytest.fixture
def windows_flavor(hubkit):
    return hubkit.get_flavor("WindowsHubkit")


@pytest.fixture
def mac_flavor(hubkit):
    return hubkit.get_flavor("MacHubkit")


@pytest.fixture
def config_file(tmp_path, config_data):
    """Write `config_data` as YAML and return its path."""
    import yaml

    path = Path(tmp_path) / "gman.yaml"
    path.write_text(yaml.safe_dump(config_data), encoding="utf-8")
    return path


# =============================================================================
# Runner fixtures
# =============================================================================


@pytest.fixture
def completed():
    """
    Provide a factory for subprocess.CompletedProcess results.

    Returns:
        factory (callable): `completed(returncode=0, stdout="", stderr="")`.
    """
    return completed_process
