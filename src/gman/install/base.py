"""
Base helpers for install handlers.
"""

import os
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, ClassVar, List, Optional, Sequence

import platformdirs

from gman.constants import (
    APP_NAME,
    STANDALONE_VERSION_SUFFIX,
    TEMP_DOWNLOAD_SUBDIR_NAME,
)
from gman.download.interfaces import InstalledItem
from gman.exceptions import (
    GManError,
    InstallationFailedError,
    UninstallationFailedError,
)
from gman.log_utils import logger
from gman.products import Flavor, PackageType

CommandRunner = Callable[[Sequence[str]], "subprocess.CompletedProcess[str]"]


def run_command(args: Sequence[str]) -> "subprocess.CompletedProcess[str]":
    """
    Run a platform tool and capture its output without raising on a non-zero exit.

    Raises:
        OSError: If the executable cannot be started.
    """
    logger.debug(f"Running: {' '.join(str(a) for a in args)}")
    return subprocess.run(
        [str(a) for a in args],
        capture_output=True,
        text=True,
        check=False,
    )


def spawn_detached(args: Sequence[str]) -> None:
    """Start a program without waiting for it."""
    logger.debug(f"Launching: {' '.join(str(a) for a in args)}")
    subprocess.Popen(
        [str(a) for a in args],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )


def native_error(result: "subprocess.CompletedProcess[str]") -> str:
    output = (result.stderr or "").strip() or (result.stdout or "").strip()
    return output or f"exit code {result.returncode}"


class InstallStatus(str, Enum):
    INSTALLED = "installed"
    UNINSTALLED = "uninstalled"
    ALREADY_INSTALLED = "already-installed"
    CANCELLED = "cancelled"


@dataclass
class InstallResult:
    status: InstallStatus
    target: str
    message: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


class InstallHandler(ABC):
    """
    Installs and removes artifacts of one package type.

    Platform tools are invoked through the injected `runner` and failures are
    raised as InstallationFailedError / UninstallationFailedError carrying the
    tool's own output. Nothing is retried.
    """

    package_type: ClassVar[PackageType]

    def __init__(
        self,
        runner: CommandRunner = run_command,
        temp_dir: Optional[Path] = None,
        spawner: Callable[[Sequence[str]], None] = spawn_detached,
    ) -> None:
        self.runner = runner
        self.spawner = spawner
        if temp_dir is None:
            temp_dir = (
                Path(platformdirs.user_cache_dir(APP_NAME)) / TEMP_DOWNLOAD_SUBDIR_NAME
            )
        self.temp_dir = Path(temp_dir)

    @abstractmethod
    def install(self, artifact_path: Path, flavor: Flavor) -> InstallResult:
        """Install the artifact."""

    @abstractmethod
    def uninstall(self, item: InstalledItem) -> InstallResult:
        """Remove an installed item."""

    def _run_install(
        self, args: Sequence[str], artifact_path: Path
    ) -> "subprocess.CompletedProcess[str]":
        try:
            result = self.runner(args)
        except OSError as e:
            raise InstallationFailedError(str(artifact_path), str(e)) from e
        if result.returncode != 0:
            raise InstallationFailedError(
                str(artifact_path), native_error(result), result.returncode
            )
        return result

    def _run_uninstall(
        self, args: Sequence[str], identifier: str
    ) -> "subprocess.CompletedProcess[str]":
        try:
            result = self.runner(args)
        except OSError as e:
            raise UninstallationFailedError(identifier, str(e)) from e
        if result.returncode != 0:
            raise UninstallationFailedError(
                identifier, native_error(result), result.returncode
            )
        return result

    def record_install(self, flavor: Flavor, version: str) -> None:
        """
        Remember the installed version where the platform keeps no record of it.

        Raises:
            OSError: If the record cannot be written.
        """

    def launch(self, flavor: Flavor) -> None:
        """
        Start the installed product with the flavor's launch arguments.

        Raises:
            GManError: If the flavor does not say how to launch it.
            OSError: If the program cannot be started.
        """
        install_path = flavor.metadata.install_path
        if not install_path:
            raise GManError(f"No InstallPath configured to launch {flavor.id}")
        self.spawner([install_path, *flavor.metadata.launch_args])

    def stop(self, item: InstalledItem, flavor: Optional[Flavor]) -> None:
        """Best-effort stop of a running product before it is removed."""
        if flavor is None or not flavor.metadata.stop_command:
            return
        args = shlex.split(flavor.metadata.stop_command, posix=os.name != "nt")
        try:
            result = self.runner(args)
        except OSError as e:
            logger.warning(f"Could not run stop command for {item.name}: {e}")
            return
        if result.returncode != 0:
            logger.warning(
                f"Stop command for {item.name} failed: {native_error(result)}"
            )


def standalone_version_path(install_path: str) -> Path:
    """Where the installed version of a standalone executable is recorded."""
    executable = Path(install_path).expanduser()
    return executable.with_name(executable.name + STANDALONE_VERSION_SUFFIX)
