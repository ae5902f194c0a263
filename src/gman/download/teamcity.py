"""
TeamCity repository source.

Talks to the TeamCity REST API to list successful builds of a flavor's build
configuration, resolve branches and build numbers to builds, and download the
flavor's artifact from a specific build.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from gman.config import Repository
from gman.constants import (
    DEFAULT_DOWNLOAD_CHUNK_SIZE,
    DEFAULT_REQUEST_TIMEOUT,
    TEAMCITY_BRANCH_BUILD_COUNT,
    TEAMCITY_BRANCH_LOCATOR,
    TEAMCITY_BRANCHES_ENDPOINT,
    TEAMCITY_BRANCHES_FIELDS,
    TEAMCITY_BRANCHES_LOCATOR,
    TEAMCITY_BUILD_FIELDS,
    TEAMCITY_BUILDS_ENDPOINT,
    TEAMCITY_DATE_FORMAT,
    TEAMCITY_DOWNLOAD_ENDPOINT,
    TEAMCITY_SUCCESS_STATUS,
    TEAMCITY_VERSION_LOCATOR,
)
from gman.exceptions import (
    NoSuccessfulBuildError,
    RepositoryError,
    RepositoryPlatformMismatchError,
)
from gman.log_utils import logger
from gman.products import Flavor, TeamCityMetadata

from .async_client import AsyncRepositoryClient
from .interfaces import BuildInfo, ProgressCallback, RepositorySource
from .version import Version, try_parse_version


def _parse_finish_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value, TEAMCITY_DATE_FORMAT)
    except ValueError:
        logger.debug(f"Unrecognized TeamCity date: {value}")
        return None


class TeamCitySource(RepositorySource):
    """
    Repository source backed by a TeamCity server.

    Every operation checks the flavor's platform against the repository's
    configured platforms first, so a mismatch never reaches the network.
    """

    def __init__(
        self,
        repository: Repository,
        client: Optional[AsyncRepositoryClient] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        chunk_size: int = DEFAULT_DOWNLOAD_CHUNK_SIZE,
    ) -> None:
        self.repository = repository
        self.name = repository.name
        self.client = client or AsyncRepositoryClient(
            repository.name,
            repository.server,
            repository.credentials,
            timeout=timeout,
            chunk_size=chunk_size,
        )

    def serves(self, product_name: str, flavor: Flavor) -> bool:
        return self.repository.serves_product(
            product_name
        ) and self.repository.serves_platform(flavor.platform)

    def _locator_for(self, flavor: Flavor) -> TeamCityMetadata:
        if not self.repository.serves_platform(flavor.platform):
            raise RepositoryPlatformMismatchError(self.name, flavor.platform.value)
        if flavor.teamcity is None:
            raise RepositoryError(
                f"Flavor '{flavor.id}' has no TeamCity metadata", repository=self.name
            )
        return flavor.teamcity

    def _build_from_json(
        self, raw: Dict[str, Any], branch: Optional[str] = None
    ) -> Optional[BuildInfo]:
        status = raw.get("status")
        if status and status != TEAMCITY_SUCCESS_STATUS:
            return None
        try:
            build_id = int(raw["id"])
        except (KeyError, TypeError, ValueError):
            logger.warning(f"{self.name}: skipping build without a usable id: {raw}")
            return None
        version = try_parse_version(raw.get("number"), f"{self.name} build {build_id}")
        if version is None:
            return None
        return BuildInfo(
            build_id=build_id,
            version=version,
            branch=raw.get("branchName") or branch,
            finished_at=_parse_finish_date(raw.get("finishDate")),
            repository=self.name,
        )

    def _builds_from_response(self, data: Any) -> List[BuildInfo]:
        if not isinstance(data, dict):
            raise RepositoryError("Unexpected response shape", repository=self.name)
        builds = []
        for raw in data.get("build") or []:
            info = self._build_from_json(raw)
            if info is not None:
                builds.append(info)
        return builds

    async def list_builds(self, flavor: Flavor) -> List[BuildInfo]:
        """
        List the latest successful build of every active branch, most recent first.

        Entries whose build number is not a valid version are skipped with a warning.
        """
        locator = self._locator_for(flavor)
        data = await self.client.get_json(
            TEAMCITY_BRANCHES_ENDPOINT.format(
                build_type=quote(locator.build_type_id, safe="")
            ),
            params={
                "locator": TEAMCITY_BRANCHES_LOCATOR,
                "fields": TEAMCITY_BRANCHES_FIELDS,
            },
        )
        if not isinstance(data, dict):
            raise RepositoryError("Unexpected response shape", repository=self.name)

        builds: List[BuildInfo] = []
        for branch in data.get("branch") or []:
            branch_name = branch.get("name")
            for raw in (branch.get("builds") or {}).get("build") or []:
                info = self._build_from_json(raw, branch=branch_name)
                if info is not None:
                    builds.append(info)

        builds.sort(key=lambda b: b.build_id, reverse=True)
        logger.debug(f"{self.name}: {len(builds)} build(s) for {flavor.id}")
        return builds

    async def resolve_branch(self, flavor: Flavor, branch: str) -> BuildInfo:
        locator = self._locator_for(flavor)
        data = await self.client.get_json(
            TEAMCITY_BUILDS_ENDPOINT,
            params={
                "locator": TEAMCITY_BRANCH_LOCATOR.format(
                    build_type=locator.build_type_id,
                    branch=branch,
                    count=TEAMCITY_BRANCH_BUILD_COUNT,
                ),
                "fields": TEAMCITY_BUILD_FIELDS,
            },
        )
        builds = self._builds_from_response(data)
        if not builds:
            raise NoSuccessfulBuildError(flavor.id, branch, self.name)
        build = builds[0]
        if build.branch is None:
            build = BuildInfo(
                build_id=build.build_id,
                version=build.version,
                branch=branch,
                finished_at=build.finished_at,
                repository=self.name,
            )
        logger.debug(f"{self.name}: branch {branch} of {flavor.id} is {build.version}")
        return build

    async def find_version(
        self, flavor: Flavor, version: Version
    ) -> Optional[BuildInfo]:
        locator = self._locator_for(flavor)
        data = await self.client.get_json(
            TEAMCITY_BUILDS_ENDPOINT,
            params={
                "locator": TEAMCITY_VERSION_LOCATOR.format(
                    build_type=locator.build_type_id, version=version.raw
                ),
                "fields": TEAMCITY_BUILD_FIELDS,
            },
        )
        for build in self._builds_from_response(data):
            if build.version == version:
                return build
        return None

    def download_url(self, flavor: Flavor, build: BuildInfo) -> str:
        locator = self._locator_for(flavor)
        return self.client.url_for(
            TEAMCITY_DOWNLOAD_ENDPOINT.format(
                build_type=quote(locator.build_type_id, safe=""),
                build_id=build.build_id,
                binary_path=quote(locator.binary_path, safe="/"),
            )
        )

    async def download(
        self,
        flavor: Flavor,
        build: BuildInfo,
        target_path: Path,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Path:
        url = self.download_url(flavor, build)
        logger.info(
            f"Downloading {flavor.binary_name} {build.version} from {self.name}"
        )
        await self.client.download_file(url, target_path, progress_callback)
        return Path(target_path)

    async def close(self) -> None:
        await self.client.close()
