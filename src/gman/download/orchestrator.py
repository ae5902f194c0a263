"""
Command Orchestrator

This module implements the command layer behind the CLI: one entry point per
command (list, install, uninstall, cache, installed), all driven from an
explicitly constructed GManContext so tests can substitute fake repositories,
runners and prompts.
"""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any, List, Optional, Sequence, Set, Tuple

from gman.config import ClientConfig
from gman.exceptions import (
    CandidateNotFoundError,
    GManError,
    UninstallationFailedError,
)
from gman.install.base import (
    CommandRunner,
    InstallResult,
    InstallStatus,
    run_command,
)
from gman.install.inspector import InstalledItemInspector, find_uninstall_target
from gman.install.registry import InstallerRegistry
from gman.log_utils import logger
from gman.products import Flavor, Platform, Product, detect_host_platform

from .cache import ArtifactCache
from .interfaces import (
    BuildInfo,
    CacheEntry,
    Candidate,
    InstalledItem,
    Origin,
    ProgressCallback,
    RepositorySource,
    UpgradePolicy,
)
from .resolver import (
    ConfirmCallback,
    FlavorChooser,
    ResolveRequest,
    VersionResolver,
    candidate_from_cache,
    decline_all,
    first_flavor,
)
from .teamcity import TeamCitySource

# Device platforms are inspected through attached-device tools from any host
DEVICE_PLATFORMS = frozenset({Platform.ANDROID, Platform.IOS})


def build_sources(config: ClientConfig) -> List[RepositorySource]:
    """Create one repository source per configured repository, in configuration order."""
    return [
        TeamCitySource(
            repo,
            timeout=config.request_timeout,
            chunk_size=config.download_chunk_size,
        )
        for repo in config.repositories
    ]


@dataclass
class GManContext:
    """Everything a command needs, constructed once per invocation."""

    config: ClientConfig
    cache: ArtifactCache
    sources: List[RepositorySource]
    installers: InstallerRegistry
    inspector: InstalledItemInspector
    host_platform: Platform
    confirm: ConfirmCallback = decline_all
    flavor_chooser: FlavorChooser = first_flavor
    offline: bool = False
    progress_callback: Optional[ProgressCallback] = None

    @classmethod
    def from_config(
        cls,
        config: ClientConfig,
        confirm: ConfirmCallback = decline_all,
        flavor_chooser: FlavorChooser = first_flavor,
        offline: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
        runner: CommandRunner = run_command,
        host_platform: Optional[Platform] = None,
    ) -> "GManContext":
        return cls(
            config=config,
            cache=ArtifactCache(config.cache_directory),
            sources=build_sources(config),
            installers=InstallerRegistry(
                runner=runner, temp_dir=config.temp_download_directory
            ),
            inspector=InstalledItemInspector(config, runner=runner),
            host_platform=host_platform or detect_host_platform(),
            confirm=confirm,
            flavor_chooser=flavor_chooser,
            offline=offline,
            progress_callback=progress_callback,
        )


@dataclass(frozen=True)
class CacheFilter:
    """Selects cache entries to evict; all fields None selects everything."""

    product: Optional[str] = None
    flavor: Optional[str] = None
    version: Optional[str] = None


@dataclass
class ListResult:
    candidates: List[Candidate] = field(default_factory=list)
    installed: List[InstalledItem] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class InstallOutcome:
    candidate: Candidate
    status: InstallStatus
    result: Optional[InstallResult] = None
    replaced: List[InstalledItem] = field(default_factory=list)
    launched: bool = False
    warnings: List[str] = field(default_factory=list)


@dataclass
class UninstallOutcome:
    items: List[InstalledItem] = field(default_factory=list)
    results: List[InstallResult] = field(default_factory=list)
    skipped: List[InstalledItem] = field(default_factory=list)


@dataclass
class CacheResult:
    entries: List[CacheEntry] = field(default_factory=list)
    evicted: Optional[int] = None


class Orchestrator:
    """
    Runs gman commands against a GManContext.

    Example:
        async with Orchestrator(GManContext.from_config(config)) as gman:
            outcome = await gman.install("HubKit", policy=UpgradePolicy.YES)
    """

    def __init__(self, context: GManContext) -> None:
        self.context = context
        self.resolver = VersionResolver(
            context.config,
            context.cache,
            context.sources,
            context.host_platform,
            confirm=context.confirm,
            offline=context.offline,
            flavor_chooser=context.flavor_chooser,
            progress_callback=context.progress_callback,
        )

    async def __aenter__(self) -> "Orchestrator":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        for source in self.context.sources:
            try:
                await source.close()
            except Exception as e:
                logger.debug(f"Error closing {source.name}: {e}")

    # ------------------------------------------------------------------
    # list
    # ------------------------------------------------------------------

    def _select_targets(
        self, product_name: Optional[str], flavor_id: Optional[str]
    ) -> List[Tuple[Product, Flavor]]:
        config = self.context.config
        if product_name:
            product = config.get_product(product_name)
            if product is None:
                raise CandidateNotFoundError(
                    product_name, details="product is not configured"
                )
            products: Sequence[Product] = [product]
        else:
            products = config.products

        targets = []
        for product in products:
            if flavor_id:
                flavor = product.get_flavor(flavor_id)
                if flavor is not None:
                    targets.append((product, flavor))
            else:
                targets.extend((product, f) for f in product.flavors)

        if flavor_id and not targets:
            raise CandidateNotFoundError(
                product_name or "*", flavor_id, details="flavor is not configured"
            )
        return targets

    async def list(
        self,
        product: Optional[str] = None,
        flavor: Optional[str] = None,
        show_installed: bool = False,
    ) -> ListResult:
        """
        List cached and remote candidates for the selected products and flavors.

        Repositories are queried concurrently. A failing repository contributes
        nothing and is reported as a warning; when two repositories report the
        same version, the first configured one is kept. Versions already installed
        on this machine are left out unless `show_installed` is set, in which case
        they are kept and flagged as installed.
        """
        targets = self._select_targets(product, flavor)
        result = ListResult()
        seen: Set[Tuple[str, str, Any]] = set()

        for prod, flav in targets:
            for entry in self.context.cache.list_entries(prod.name, flav):
                key = (prod.name.lower(), flav.id.lower(), entry.version)
                if key in seen:
                    continue
                seen.add(key)
                result.candidates.append(
                    candidate_from_cache(prod, flav, entry)
                )

        if self.context.offline:
            message = "Offline; listing cached candidates only"
            logger.warning(message)
            result.warnings.append(message)
        else:
            jobs: List[Tuple[Product, Flavor, RepositorySource]] = [
                (prod, flav, source)
                for prod, flav in targets
                for source in self.resolver.sources_for(prod, flav)
            ]
            outcomes = await asyncio.gather(
                *(source.list_builds(flav) for _, flav, source in jobs),
                return_exceptions=True,
            )
            for (prod, flav, source), outcome in zip(jobs, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    message = (
                        f"{source.name}: {prod.name} ({flav.id}) unavailable: {outcome}"
                    )
                    logger.warning(message)
                    result.warnings.append(message)
                    continue
                for build in outcome:
                    key = (prod.name.lower(), flav.id.lower(), build.version)
                    if key in seen:
                        continue
                    seen.add(key)
                    result.candidates.append(
                        self._remote_candidate(prod, flav, build)
                    )

        result.candidates.sort(key=lambda c: c.version, reverse=True)
        result.candidates.sort(key=lambda c: (c.product.lower(), c.flavor.id.lower()))
        result.candidates = self._mark_installed(
            result.candidates, targets, show_installed
        )

        if show_installed:
            names = {prod.name.lower() for prod, _ in targets}
            result.installed = [
                item
                for item in self.installed()
                if item.product is not None and item.product.lower() in names
            ]
        return result

    def _mark_installed(
        self,
        candidates: List[Candidate],
        targets: Sequence[Tuple[Product, Flavor]],
        show_installed: bool,
    ) -> List[Candidate]:
        # Only the host is inspected here; attached devices need an explicit command
        platforms = {
            flav.platform for _, flav in targets if self._is_host(flav.platform)
        }
        installed: List[InstalledItem] = []
        for platform in sorted(platforms, key=lambda p: p.value):
            installed.extend(self.context.inspector.scan(platform))

        marked = []
        for candidate in candidates:
            is_installed = any(
                item.flavor is not None
                and item.flavor.id == candidate.flavor.id
                and item.product is not None
                and item.product.lower() == candidate.product.lower()
                and item.parsed_version == candidate.version
                for item in installed
            )
            if is_installed:
                if not show_installed:
                    continue
                candidate = replace(candidate, installed=True)
            marked.append(candidate)
        return marked

    @staticmethod
    def _remote_candidate(
        product: Product, flavor: Flavor, build: BuildInfo
    ) -> Candidate:
        return Candidate(
            product=product.name,
            flavor=flavor,
            version=build.version,
            origin=Origin.REMOTE,
            branch=build.branch,
            build_id=build.build_id,
            repository=build.repository,
        )

    # ------------------------------------------------------------------
    # install
    # ------------------------------------------------------------------

    def _is_host(self, platform: Platform) -> bool:
        host = self.context.host_platform
        linux_like = {Platform.LINUX, Platform.RASPBERRY_PI}
        return platform == host or (platform in linux_like and host in linux_like)

    def _can_inspect(self, platform: Platform) -> bool:
        return self._is_host(platform) or platform in DEVICE_PLATFORMS

    async def install(
        self,
        product: str,
        version_or_branch: Optional[str] = None,
        flavor: Optional[str] = None,
        policy: UpgradePolicy = UpgradePolicy.PROMPT,
        overwrite: Optional[bool] = None,
    ) -> InstallOutcome:
        """
        Resolve and install a product.

        If the resolved version is already installed nothing is changed. Otherwise
        installed items of the same flavor are stopped and removed first, the
        artifact is installed, and the product is launched when the flavor asks
        for autorun. A failed launch is reported as a warning only.

        Parameters:
            overwrite (Optional[bool]): Whether other installed versions of the flavor
                may be replaced. None asks through the confirm capability; declining
                leaves everything in place and returns a CANCELLED outcome.

        Raises:
            GManError: Any resolution or installer error, unchanged.
        """
        resolution = await self.resolver.resolve(
            ResolveRequest(product, version_or_branch, flavor, policy)
        )
        candidate = resolution.candidate
        chosen = candidate.flavor
        outcome = InstallOutcome(
            candidate=candidate,
            status=InstallStatus.INSTALLED,
            warnings=list(resolution.warnings),
        )

        existing: List[InstalledItem] = []
        if self._can_inspect(chosen.platform):
            existing = self.context.inspector.installed_for(
                chosen.platform, candidate.product, chosen
            )
        for item in existing:
            if item.parsed_version == candidate.version:
                logger.info(
                    f"{candidate.product} {candidate.version} is already installed"
                )
                outcome.status = InstallStatus.ALREADY_INSTALLED
                return outcome

        if existing and not self._confirm_overwrite(candidate, existing, overwrite):
            logger.info(f"Kept the installed {candidate.product}; nothing changed")
            outcome.status = InstallStatus.CANCELLED
            return outcome

        handler = self.context.installers.for_type(chosen.package_type)
        for item in existing:
            logger.info(f"Removing {item.name} {item.version} before installing")
            self._uninstall_item(item)
            outcome.replaced.append(item)

        if candidate.artifact_path is None:
            raise CandidateNotFoundError(
                candidate.product,
                chosen.id,
                candidate.version.raw,
                details="candidate has no local artifact",
            )
        logger.info(f"Installing {candidate.product} {candidate.version} ({chosen.id})")
        outcome.result = handler.install(candidate.artifact_path, chosen)
        try:
            handler.record_install(chosen, candidate.version.raw)
        except OSError as e:
            message = f"Could not record installed version of {candidate.product}: {e}"
            logger.warning(message)
            outcome.warnings.append(message)

        if chosen.autorun:
            try:
                handler.launch(chosen)
                outcome.launched = True
            except (GManError, OSError) as e:
                message = f"Installed, but could not launch {candidate.product}: {e}"
                logger.warning(message)
                outcome.warnings.append(message)
        return outcome

    def _confirm_overwrite(
        self,
        candidate: Candidate,
        existing: Sequence[InstalledItem],
        overwrite: Optional[bool],
    ) -> bool:
        if overwrite is not None:
            return overwrite
        versions = ", ".join(item.version or "unknown version" for item in existing)
        return self.context.confirm(
            f"{candidate.product} {versions} ({candidate.flavor.id}) is installed. "
            f"Replace it with {candidate.version}?"
        )

    # ------------------------------------------------------------------
    # uninstall / installed
    # ------------------------------------------------------------------

    def _uninstall_item(self, item: InstalledItem) -> InstallResult:
        if item.package_type is None:
            raise UninstallationFailedError(
                item.identifier, "Package type of this item is unknown"
            )
        handler = self.context.installers.for_type(item.package_type)
        handler.stop(item, item.flavor)
        return handler.uninstall(item)

    def uninstall(
        self,
        name: str,
        version: Optional[str] = None,
        platform: Optional[Platform] = None,
        assume_yes: bool = False,
    ) -> UninstallOutcome:
        """
        Remove the installed items `name` (and `version`, when given) refers to.

        When more than one item matches, each one is confirmed separately unless
        `assume_yes` is set; declined items are reported as skipped.

        Raises:
            TargetNotFoundError: Nothing installed matches `name`.
            AmbiguousTargetError: `name` matches more than one product.
            UninstallationFailedError: The platform uninstaller failed.
        """
        targets = find_uninstall_target(name, self.installed(platform), version)
        outcome = UninstallOutcome()
        for item in targets:
            if len(targets) > 1 and not assume_yes:
                question = f"Uninstall {item.name} {item.version} ({item.identifier})?"
                if not self.context.confirm(question):
                    outcome.skipped.append(item)
                    continue
            logger.info(f"Uninstalling {item.name} {item.version}")
            outcome.results.append(self._uninstall_item(item))
            outcome.items.append(item)
        return outcome

    def installed(self, platform: Optional[Platform] = None) -> List[InstalledItem]:
        """
        List items installed on the host, or on an attached Android or iOS device.

        Raises:
            GManError: `platform` is another desktop platform, which cannot be inspected from here.
        """
        platform = platform or self.context.host_platform
        if not self._can_inspect(platform):
            raise GManError(
                f"Cannot inspect {platform.value} installs from "
                f"{self.context.host_platform.value}"
            )
        return self.context.inspector.scan(platform)

    # ------------------------------------------------------------------
    # cache
    # ------------------------------------------------------------------

    def cache(self, evict_filter: Optional[CacheFilter] = None) -> CacheResult:
        """
        List cache entries, or evict the entries matching `evict_filter`.

        An empty CacheFilter evicts everything; evicting nothing is not an error.
        """
        cache = self.context.cache
        if evict_filter is None:
            return CacheResult(entries=cache.list_entries())
        removed = cache.evict(
            product=evict_filter.product,
            flavor=evict_filter.flavor,
            version=evict_filter.version,
        )
        return CacheResult(evicted=removed)
