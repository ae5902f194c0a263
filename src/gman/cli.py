# src/gman/cli.py

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Type

from pick import pick
from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from gman import log_utils
from gman.config import ClientConfig, load_config, write_sample_config
from gman.constants import (
    EXIT_AMBIGUOUS_TARGET,
    EXIT_DOWNLOAD_FAILED,
    EXIT_FAILURE,
    EXIT_INSTALLER_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_INVALID_VERSION,
    EXIT_NOT_FOUND,
    EXIT_OFFLINE,
    EXIT_PLATFORM_MISMATCH,
    EXIT_SUCCESS,
)
from gman.download.interfaces import (
    CacheEntry,
    Candidate,
    InstalledItem,
    UpgradePolicy,
)
from gman.download.orchestrator import (
    CacheFilter,
    GManContext,
    InstallOutcome,
    Orchestrator,
)
from gman.exceptions import (
    AmbiguousTargetError,
    CandidateNotFoundError,
    DownloadFailedError,
    GManError,
    InstallerError,
    InvalidVersionError,
    NoSuccessfulBuildError,
    OfflineError,
    RepositoryPlatformMismatchError,
    TargetNotFoundError,
)
from gman.install.base import InstallStatus
from gman.log_utils import logger
from gman.products import Flavor, Platform

console = Console()

# Checked in order; the first matching class decides the exit code
EXIT_CODES: Tuple[Tuple[Type[GManError], int], ...] = (
    (CandidateNotFoundError, EXIT_NOT_FOUND),
    (TargetNotFoundError, EXIT_NOT_FOUND),
    (NoSuccessfulBuildError, EXIT_NOT_FOUND),
    (AmbiguousTargetError, EXIT_AMBIGUOUS_TARGET),
    (OfflineError, EXIT_OFFLINE),
    (InstallerError, EXIT_INSTALLER_FAILURE),
    (DownloadFailedError, EXIT_DOWNLOAD_FAILED),
    (InvalidVersionError, EXIT_INVALID_VERSION),
    (RepositoryPlatformMismatchError, EXIT_PLATFORM_MISMATCH),
)


def exit_code_for(error: GManError) -> int:
    for error_cls, code in EXIT_CODES:
        if isinstance(error, error_cls):
            return code
    return EXIT_FAILURE


def confirm_prompt(message: str) -> bool:
    """Ask a yes/no question on the console; only `y` or `yes` count as yes."""
    try:
        resp = input(f"{message} [y/N]: ")
    except EOFError:
        resp = ""
    return resp.strip().lower() in {"y", "yes"}


def choose_flavor(flavors: Sequence[Flavor]) -> Flavor:
    """Let the user pick a flavor when several match the host; the first one otherwise."""
    if not sys.stdin.isatty():
        return flavors[0]
    options = [f"{f.id} ({f.package_type.value})" for f in flavors]
    _option, index = pick(
        options, "Several flavors match this platform. Choose one:", indicator="*"
    )
    return flavors[index]


class DownloadProgress:
    """Progress callback rendering one rich progress bar per downloaded file."""

    def __init__(self, output: Console) -> None:
        self.progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=output,
            transient=True,
        )
        self._tasks: Dict[str, int] = {}
        self._started = False

    def __call__(self, downloaded: int, total: Optional[int], filename: str) -> None:
        if not self._started:
            self.progress.start()
            self._started = True
        task = self._tasks.get(filename)
        if task is None:
            task = self.progress.add_task(filename, total=total)
            self._tasks[filename] = task
        self.progress.update(task, completed=downloaded, total=total)

    def stop(self) -> None:
        if self._started:
            self.progress.stop()
            self._started = False


def _platform_arg(value: str) -> Platform:
    try:
        return Platform.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gman",
        description="gman - fetch, cache, install and remove CI-built products",
    )
    parser.add_argument("--config", help="Path to the configuration file")
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Never contact repositories; use cached artifacts only",
    )
    parser.add_argument(
        "--log-level",
        help="Override the log level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument("--log-dir", help="Also write a rotating log file here")
    subparsers = parser.add_subparsers(dest="command")

    list_parser = subparsers.add_parser("list", help="List available builds")
    list_parser.add_argument("product", nargs="?", help="Only list this product")
    list_parser.add_argument("--flavor", help="Only list this flavor")
    list_parser.add_argument(
        "--show-installed",
        action="store_true",
        help="Also show what is installed on this machine",
    )

    install_parser = subparsers.add_parser("install", help="Install a product")
    install_parser.add_argument("product", help="Product name")
    install_parser.add_argument(
        "version_or_branch",
        nargs="?",
        help="Build number (e.g. 5.2.1-7059) or branch name; default branch if omitted",
    )
    install_parser.add_argument("--flavor", help="Flavor id")
    install_parser.add_argument(
        "--automatic-upgrade",
        choices=[p.value for p in UpgradePolicy],
        default=UpgradePolicy.PROMPT.value,
        help="Check the repository for a newer build when one is cached",
    )
    install_parser.add_argument(
        "--overwrite",
        action="store_const",
        const=True,
        default=None,
        help="Replace another installed version without asking",
    )

    uninstall_parser = subparsers.add_parser(
        "uninstall", help="Remove an installed product"
    )
    uninstall_parser.add_argument("name", help="Product name or identifier (substring)")
    uninstall_parser.add_argument(
        "version", nargs="?", help="Only remove items installed at this version"
    )
    uninstall_parser.add_argument(
        "--platform",
        type=_platform_arg,
        help="Inspect an attached Android or iOS device instead of this machine",
    )
    uninstall_parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Remove every matching item without asking",
    )

    installed_parser = subparsers.add_parser("installed", help="List installed items")
    installed_parser.add_argument(
        "--platform",
        type=_platform_arg,
        help="Inspect an attached Android or iOS device instead of this machine",
    )

    cache_parser = subparsers.add_parser(
        "cache", help="Show or clear cached artifacts"
    )
    cache_parser.add_argument(
        "--list", action="store_true", help="List cached artifacts (default)"
    )
    cache_parser.add_argument(
        "--clear",
        action="store_true",
        help="Remove cached artifacts (all, or those matching the filters)",
    )
    cache_parser.add_argument("--product", help="Filter by product")
    cache_parser.add_argument("--flavor", help="Filter by flavor")
    cache_parser.add_argument("--version", help="Filter by version")

    config_parser = subparsers.add_parser("config", help="Configuration helpers")
    config_parser.add_argument(
        "--sample",
        action="store_true",
        help="Write a sample configuration (never overwrites)",
    )
    config_parser.add_argument("path", nargs="?", help="Where to write the sample")

    return parser


def _configure_logging(args: argparse.Namespace, config: ClientConfig) -> None:
    log_utils.apply_config_log_level(config.log_level)
    if args.log_level:
        log_utils.set_log_level(args.log_level)
    if args.log_dir:
        log_utils.add_file_logging(Path(args.log_dir), args.log_level or "INFO")


def _render_candidates(candidates: List[Candidate]) -> None:
    if not candidates:
        console.print("No builds found.")
        return
    table = Table(title="Available builds")
    columns = (
        "Product",
        "Flavor",
        "Platform",
        "Version",
        "Origin",
        "Branch",
        "Repository",
        "Installed",
    )
    for column in columns:
        table.add_column(column)
    for c in candidates:
        table.add_row(
            c.product,
            c.flavor.id,
            c.flavor.platform.value,
            str(c.version),
            c.origin.value,
            c.branch or "",
            c.repository or "",
            "yes" if c.installed else "",
        )
    console.print(table)


def _render_installed(items: List[InstalledItem]) -> None:
    if not items:
        console.print("Nothing installed.")
        return
    table = Table(title="Installed")
    for column in ("Name", "Version", "Identifier", "Flavor"):
        table.add_column(column)
    for item in items:
        table.add_row(
            item.name,
            item.version,
            item.identifier,
            item.flavor.id if item.flavor else "[dim]unassociated[/dim]",
        )
    console.print(table)


def _render_cache(entries: List[CacheEntry]) -> None:
    if not entries:
        console.print("Cache is empty.")
        return
    table = Table(title="Cached artifacts")
    for column in ("Product", "Flavor", "Version", "Branch", "Fetched", "Path"):
        table.add_column(column)
    for entry in entries:
        table.add_row(
            entry.product,
            entry.flavor,
            str(entry.version),
            entry.branch or "",
            entry.fetched_at.strftime("%Y-%m-%d %H:%M"),
            str(entry.path),
        )
    console.print(table)


def _render_install(outcome: InstallOutcome) -> None:
    c = outcome.candidate
    if outcome.status == InstallStatus.ALREADY_INSTALLED:
        console.print(f"{c.product} {c.version} ({c.flavor.id}) is already installed.")
        return
    if outcome.status == InstallStatus.CANCELLED:
        console.print(f"Kept the installed {c.product}; nothing changed.")
        return
    for item in outcome.replaced:
        console.print(f"Removed {item.name} {item.version}.")
    console.print(
        f"Installed {c.product} {c.version} ({c.flavor.id}) "
        f"from {c.origin.value.lower()} artifact."
    )
    if outcome.launched:
        console.print(f"Launched {c.product}.")


async def _dispatch(args: argparse.Namespace, config: ClientConfig) -> int:
    progress = DownloadProgress(console)
    context = GManContext.from_config(
        config,
        confirm=confirm_prompt,
        flavor_chooser=choose_flavor,
        offline=args.offline,
        progress_callback=progress,
    )
    try:
        async with Orchestrator(context) as gman:
            if args.command == "list":
                result = await gman.list(
                    args.product, args.flavor, args.show_installed
                )
                _render_candidates(result.candidates)
                if args.show_installed:
                    _render_installed(result.installed)
            elif args.command == "install":
                outcome = await gman.install(
                    args.product,
                    args.version_or_branch,
                    args.flavor,
                    UpgradePolicy.parse(args.automatic_upgrade),
                    overwrite=args.overwrite,
                )
                progress.stop()
                _render_install(outcome)
            elif args.command == "uninstall":
                removed = gman.uninstall(
                    args.name,
                    args.version,
                    platform=args.platform,
                    assume_yes=args.yes,
                )
                for item in removed.items:
                    console.print(f"Uninstalled {item.name} {item.version}.")
                for item in removed.skipped:
                    console.print(f"Skipped {item.name} {item.version}.")
            elif args.command == "installed":
                _render_installed(gman.installed(args.platform))
            elif args.command == "cache":
                return _handle_cache(gman, args)
    finally:
        progress.stop()
    return EXIT_SUCCESS


def _handle_cache(gman: Orchestrator, args: argparse.Namespace) -> int:
    if args.clear:
        result = gman.cache(CacheFilter(args.product, args.flavor, args.version))
        console.print(f"Removed {result.evicted} cached artifact(s).")
        return EXIT_SUCCESS

    entries = gman.cache().entries
    if args.product:
        entries = [e for e in entries if e.product.lower() == args.product.lower()]
    if args.flavor:
        entries = [e for e in entries if e.flavor.lower() == args.flavor.lower()]
    if args.version:
        entries = [e for e in entries if e.version.raw == args.version]
    _render_cache(entries)
    return EXIT_SUCCESS


def _handle_config(args: argparse.Namespace) -> int:
    if not args.sample:
        console.print(
            "Nothing to do. Use 'gman config --sample' to write a sample configuration."
        )
        return EXIT_FAILURE
    written = write_sample_config(args.path)
    console.print(f"Sample configuration written to {written}")
    return EXIT_SUCCESS


def run(argv: Optional[Sequence[str]] = None) -> int:
    """
    Parse arguments, run one command and return the process exit code.

    Each error kind maps to its own exit code (see EXIT_CODES) so scripts can
    tell not-found, ambiguous, offline and installer failures apart.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return EXIT_FAILURE

    try:
        if args.command == "config":
            return _handle_config(args)
        config = load_config(args.config)
        _configure_logging(args, config)
        return asyncio.run(_dispatch(args, config))
    except GManError as e:
        logger.error(str(e))
        return exit_code_for(e)
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED


def main() -> None:
    # Logging is initialized by importing log_utils
    sys.exit(run())


if __name__ == "__main__":
    main()
