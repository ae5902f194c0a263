"""
gman Download Subsystem

Resolves install requests against the local artifact cache and the configured
CI build servers.

Core Components:
- interfaces: Data types and the repository source interface
- version: Version model
- async_client: Non-blocking HTTP transport
- teamcity: TeamCity repository source
- cache: Artifact cache
- resolver: Version resolution and upgrade policy
- orchestrator: Command entry points
"""

from .cache import ArtifactCache
from .interfaces import (
    BuildInfo,
    CacheEntry,
    Candidate,
    InstalledItem,
    Origin,
    RepositorySource,
    UpgradePolicy,
)
from .resolver import ResolveRequest, Resolution, VersionResolver
from .teamcity import TeamCitySource
from .version import Version, is_version_string, parse_version

__all__ = [
    # Interfaces
    "BuildInfo",
    "CacheEntry",
    "Candidate",
    "InstalledItem",
    "Origin",
    "RepositorySource",
    "UpgradePolicy",
    # Components
    "ArtifactCache",
    "ResolveRequest",
    "Resolution",
    "TeamCitySource",
    "VersionResolver",
    # Versions
    "Version",
    "is_version_string",
    "parse_version",
]
