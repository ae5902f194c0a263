"""
Version resolution for gman.

Turns an install request (product, optional flavor, optional version or
branch, automatic-upgrade policy) into one concrete Candidate, consulting the
artifact cache first and the configured repositories only when the request
and policy require it. Repositories are consulted one at a time in
configuration order, so the first configured repository wins ties.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from gman.config import ClientConfig
from gman.exceptions import (
    CandidateNotFoundError,
    DownloadFailedError,
    NoSuccessfulBuildError,
    OfflineError,
    RepositoryError,
    RepositoryUnavailableError,
)
from gman.log_utils import logger
from gman.products import Flavor, Platform, Product

from .cache import ArtifactCache
from .interfaces import (
    BuildInfo,
    CacheEntry,
    Candidate,
    Origin,
    ProgressCallback,
    RepositorySource,
    UpgradePolicy,
)
from .version import Version, is_version_string

ConfirmCallback = Callable[[str], bool]
FlavorChooser = Callable[[Sequence[Flavor]], Flavor]


def decline_all(message: str) -> bool:
    """Confirm capability for non-interactive use: always answers no."""
    return False


def first_flavor(flavors: Sequence[Flavor]) -> Flavor:
    return flavors[0]


def candidate_from_cache(
    product: Product, flavor: Flavor, entry: CacheEntry
) -> Candidate:
    return Candidate(
        product=product.name,
        flavor=flavor,
        version=entry.version,
        origin=Origin.CACHED,
        artifact_path=entry.path,
        branch=entry.branch,
        build_id=entry.build_id,
        repository=entry.repository,
    )


@dataclass
class ResolveRequest:
    product: str
    version_or_branch: Optional[str] = None
    flavor: Optional[str] = None
    policy: UpgradePolicy = UpgradePolicy.PROMPT


@dataclass
class Resolution:
    candidate: Candidate
    warnings: List[str] = field(default_factory=list)


class VersionResolver:
    """
    Resolves install requests against the artifact cache and repository sources.

    Parameters:
        config (ClientConfig): Loaded configuration.
        cache (ArtifactCache): Local artifact store.
        sources (Sequence[RepositorySource]): Repository sources in configuration order.
        host_platform (Platform): Platform used to pick a default flavor.
        confirm (ConfirmCallback): Asked whether to check the repository when the
            policy is Prompt and a cached build exists.
        offline (bool): Never touch the network; requests that need it fail with OfflineError.
        flavor_chooser (FlavorChooser): Picks among several flavors for the host platform.
        progress_callback (Optional[ProgressCallback]): Forwarded to downloads.
    """

    def __init__(
        self,
        config: ClientConfig,
        cache: ArtifactCache,
        sources: Sequence[RepositorySource],
        host_platform: Platform,
        confirm: ConfirmCallback = decline_all,
        offline: bool = False,
        flavor_chooser: FlavorChooser = first_flavor,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        self.config = config
        self.cache = cache
        self.sources = list(sources)
        self.host_platform = host_platform
        self.confirm = confirm
        self.offline = offline
        self.flavor_chooser = flavor_chooser
        self.progress_callback = progress_callback

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_product(self, name: str) -> Product:
        product = self.config.get_product(name)
        if product is None:
            raise CandidateNotFoundError(name, details="product is not configured")
        return product

    def select_flavor(self, product: Product, selector: Optional[str] = None) -> Flavor:
        """
        Pick the flavor named by `selector`, or the host platform's flavor when omitted.

        Raises:
            CandidateNotFoundError: If no flavor matches.
        """
        if selector:
            flavor = product.get_flavor(selector)
            if flavor is None:
                raise CandidateNotFoundError(
                    product.name, selector, details="flavor is not configured"
                )
            return flavor

        flavors = product.flavors_for(self.host_platform)
        if not flavors:
            raise CandidateNotFoundError(
                product.name,
                details=f"no flavor for platform {self.host_platform.value}",
            )
        if len(flavors) == 1:
            return flavors[0]
        return self.flavor_chooser(flavors)

    def sources_for(self, product: Product, flavor: Flavor) -> List[RepositorySource]:
        return [s for s in self.sources if s.serves(product.name, flavor)]

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, request: ResolveRequest) -> Resolution:
        """
        Resolve a request to a single Candidate.

        A concrete version is served from the cache when present, otherwise from the
        first repository that has it. A branch (or no target, meaning the default
        branch) uses a cached build when one exists, subject to the upgrade policy,
        and the branch's latest successful build otherwise.

        Raises:
            CandidateNotFoundError: Nothing satisfies the request.
            OfflineError: The network is needed, unavailable, and nothing is cached.
            DownloadFailedError: The selected remote artifact could not be fetched
                and there is no cached fallback.
        """
        product = self.select_product(request.product)
        flavor = self.select_flavor(product, request.flavor)
        warnings: List[str] = []

        target = request.version_or_branch
        if target and is_version_string(target):
            candidate = await self._resolve_version(
                product, flavor, Version(target), warnings
            )
            return Resolution(candidate, warnings)

        branch = target or self.config.default_branch
        cached = self.cache.lookup(product.name, flavor)
        if cached is None:
            build, source = await self._resolve_branch_remote(product, flavor, branch)
            candidate = await self._fetch(product, flavor, build, source)
            return Resolution(candidate, warnings)

        cached_candidate = candidate_from_cache(product, flavor, cached)
        policy = request.policy
        if policy == UpgradePolicy.NO:
            logger.debug(f"Using cached {product.name} {cached.version}")
            return Resolution(cached_candidate, warnings)

        if self.offline:
            self._warn(
                warnings, f"Offline; using cached {product.name} {cached.version}"
            )
            return Resolution(cached_candidate, warnings)

        if policy == UpgradePolicy.PROMPT:
            question = (
                f"{product.name} {cached.version} ({flavor.id}) is cached. "
                f"Check the repository for a newer build on '{branch}'?"
            )
            if not self.confirm(question):
                return Resolution(cached_candidate, warnings)

        candidate = await self._upgrade(
            product, flavor, branch, cached_candidate, warnings
        )
        return Resolution(candidate, warnings)

    def _warn(self, warnings: List[str], message: str) -> None:
        logger.warning(message)
        warnings.append(message)

    def _require_network(self, product: Product, flavor: Flavor) -> None:
        if self.offline:
            raise OfflineError(
                f"{product.name} ({flavor.id}) is not cached and gman is offline"
            )

    def _no_candidate(
        self,
        product: Product,
        flavor: Flavor,
        target: str,
        sources: Sequence[RepositorySource],
        errors: Sequence[RepositoryError],
    ) -> Exception:
        if not sources:
            return CandidateNotFoundError(
                product.name,
                flavor.id,
                target,
                details="no repository serves this flavor",
            )
        if len(errors) == len(sources) and all(
            isinstance(e, RepositoryUnavailableError) for e in errors
        ):
            return OfflineError(
                f"No repository reachable for {product.name} ({flavor.id})",
                "; ".join(str(e) for e in errors),
            )
        details = "; ".join(str(e) for e in errors) or None
        return CandidateNotFoundError(product.name, flavor.id, target, details=details)

    async def _resolve_version(
        self,
        product: Product,
        flavor: Flavor,
        version: Version,
        warnings: List[str],
    ) -> Candidate:
        cached = self.cache.lookup(product.name, flavor, version)
        if cached is not None:
            return candidate_from_cache(product, flavor, cached)

        self._require_network(product, flavor)
        sources = self.sources_for(product, flavor)
        errors: List[RepositoryError] = []
        for source in sources:
            try:
                build = await source.find_version(flavor, version)
            except RepositoryError as e:
                self._warn(warnings, f"{source.name}: {e}")
                errors.append(e)
                continue
            if build is not None:
                return await self._fetch(product, flavor, build, source)

        raise self._no_candidate(product, flavor, version.raw, sources, errors)

    async def _resolve_branch_remote(
        self, product: Product, flavor: Flavor, branch: str
    ) -> Tuple[BuildInfo, RepositorySource]:
        self._require_network(product, flavor)
        sources = self.sources_for(product, flavor)
        errors: List[RepositoryError] = []
        for source in sources:
            try:
                return await source.resolve_branch(flavor, branch), source
            except NoSuccessfulBuildError as e:
                logger.debug(str(e))
            except RepositoryError as e:
                logger.warning(f"{source.name}: {e}")
                errors.append(e)

        raise self._no_candidate(product, flavor, branch, sources, errors)

    async def _upgrade(
        self,
        product: Product,
        flavor: Flavor,
        branch: str,
        cached: Candidate,
        warnings: List[str],
    ) -> Candidate:
        try:
            build, source = await self._resolve_branch_remote(product, flavor, branch)
        except (CandidateNotFoundError, OfflineError) as e:
            self._warn(
                warnings,
                f"Could not check for updates ({e}); using cached {cached.version}",
            )
            return cached

        if not build.version > cached.version:
            logger.info(
                f"Cached {product.name} {cached.version} is up to date "
                f"(repository has {build.version})"
            )
            return cached

        try:
            return await self._fetch(product, flavor, build, source)
        except DownloadFailedError as e:
            self._warn(
                warnings,
                f"Download of {build.version} failed ({e}); using cached {cached.version}",
            )
            return cached

    async def _fetch(
        self,
        product: Product,
        flavor: Flavor,
        build: BuildInfo,
        source: RepositorySource,
    ) -> Candidate:
        temp_dir = Path(self.config.temp_download_directory)
        temp_dir.mkdir(parents=True, exist_ok=True)
        target = temp_dir / f"{build.build_id}-{flavor.binary_name}"
        try:
            await source.download(flavor, build, target, self.progress_callback)
            entry = self.cache.store_file(
                product.name,
                flavor,
                build.version,
                target,
                branch=build.branch,
                build_id=build.build_id,
                repository=source.name,
            )
        finally:
            if target.exists():
                target.unlink()

        return Candidate(
            product=product.name,
            flavor=flavor,
            version=build.version,
            origin=Origin.REMOTE,
            artifact_path=entry.path,
            branch=build.branch,
            build_id=build.build_id,
            repository=source.name,
        )
