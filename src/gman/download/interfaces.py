"""
Core Interfaces for the gman Download Subsystem

This module defines the data structures passed between the repository
sources, the artifact cache, the resolver and the command layer, plus the
abstract interface every repository type implements.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Union

from gman.exceptions import InvalidVersionError
from gman.products import Flavor, PackageType, Platform

from .version import Version

Pathish = Union[str, Path]

# progress_callback(downloaded_bytes, total_bytes or None, filename); may be a coroutine function
ProgressCallback = Callable[[int, Optional[int], str], Union[None, Awaitable[None]]]


class Origin(str, Enum):
    CACHED = "Cached"
    REMOTE = "Remote"


class UpgradePolicy(str, Enum):
    """Whether a version-unspecified install consults the repository when a cached build exists."""

    YES = "yes"
    NO = "no"
    PROMPT = "prompt"

    @classmethod
    def parse(cls, value: Optional[Union[str, bool]]) -> "UpgradePolicy":
        if value is None:
            return cls.PROMPT
        if isinstance(value, bool):
            return cls.YES if value else cls.NO
        key = value.strip().lower()
        if key in ("yes", "y", "true"):
            return cls.YES
        if key in ("no", "n", "false"):
            return cls.NO
        if key == "prompt":
            return cls.PROMPT
        raise ValueError(f"Unknown automatic upgrade policy: {value}")


@dataclass(frozen=True)
class BuildInfo:
    """A CI build server's reference to one successful build."""

    build_id: int
    """Server-internal build id; increases monotonically"""

    version: Version
    """The build number, parsed"""

    branch: Optional[str] = None
    """Branch or tag the build was made from"""

    finished_at: Optional[datetime] = None
    """When the build finished, if reported"""

    repository: Optional[str] = None
    """Name of the repository that reported the build"""


@dataclass(frozen=True)
class CacheEntry:
    """One cached artifact, keyed by (product, flavor, version)."""

    product: str
    flavor: str
    version: Version
    path: Path
    """Artifact file on disk"""

    fetched_at: datetime
    platform: Optional[Platform] = None
    branch: Optional[str] = None
    build_id: Optional[int] = None
    repository: Optional[str] = None


@dataclass(frozen=True)
class Candidate:
    """A resolved, installable unit."""

    product: str
    flavor: Flavor
    version: Version
    origin: Origin
    artifact_path: Optional[Path] = None
    """Local artifact; None for remote listings that were not downloaded"""

    branch: Optional[str] = None
    build_id: Optional[int] = None
    repository: Optional[str] = None
    installed: bool = False
    """Set by listings when this version of the flavor is installed"""

    @property
    def flavor_id(self) -> str:
        return self.flavor.id


@dataclass(frozen=True)
class InstalledItem:
    """An item installed on the host, normalized from a platform-native record."""

    name: str
    """Owning product name when matched, otherwise the native display name"""

    version: str
    """Version exactly as the platform reports it"""

    identifier: str
    """Platform-native id: package full name, bundle id, product code, ..."""

    platform: Platform
    package_type: Optional[PackageType] = None
    product: Optional[str] = None
    """Owning product, or None when the record is unassociated"""

    flavor: Optional[Flavor] = None
    path: Optional[Path] = None
    publisher: Optional[str] = None

    @property
    def is_associated(self) -> bool:
        return self.product is not None

    @property
    def parsed_version(self) -> Optional[Version]:
        try:
            return Version(self.version)
        except InvalidVersionError:
            return None


class RepositorySource(ABC):
    """
    Abstract interface for a CI build server holding product artifacts.

    Implementations must reject flavors on platforms the repository does not
    serve before making any network call.
    """

    name: str

    @abstractmethod
    def serves(self, product_name: str, flavor: Flavor) -> bool:
        """Return True if this repository hosts builds of the product's flavor."""

    @abstractmethod
    async def list_builds(self, flavor: Flavor) -> List[BuildInfo]:
        """
        List successful builds, most recent first.

        Returns an empty list when the server has no successful builds for the flavor.
        """

    @abstractmethod
    async def resolve_branch(self, flavor: Flavor, branch: str) -> BuildInfo:
        """
        Resolve a branch to its most recent successful build.

        Raises:
            NoSuccessfulBuildError: If the branch has no successful build.
        """

    @abstractmethod
    async def find_version(
        self, flavor: Flavor, version: Version
    ) -> Optional[BuildInfo]:
        """Return the successful build whose number equals `version`, or None."""

    @abstractmethod
    async def download(
        self,
        flavor: Flavor,
        build: BuildInfo,
        target_path: Path,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Path:
        """
        Download the flavor's artifact for `build` to `target_path`.

        Raises:
            DownloadFailedError: On a non-success status or a truncated stream.
        """

    async def close(self) -> None:
        """Release network resources."""

    async def __aenter__(self) -> "RepositorySource":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
