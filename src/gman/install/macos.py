"""
macOS install handlers: application bundles delivered in disk images, and flat installer packages.
"""

import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

from gman.constants import MAC_APPLICATIONS_DIR
from gman.download.interfaces import InstalledItem
from gman.exceptions import (
    GManError,
    InstallationFailedError,
    UninstallationFailedError,
)
from gman.log_utils import logger
from gman.products import Flavor, PackageType

from .base import InstallHandler, InstallResult, InstallStatus, native_error


class AppHandler(InstallHandler):
    """
    `.app` bundles shipped inside a `.dmg`.

    The image is attached read-only to a private mount point, the bundle is
    copied into /Applications (a `.pkg` found instead is handed to `installer`)
    and the image is always detached afterwards.
    """

    package_type = PackageType.APP
    applications_dir = Path(MAC_APPLICATIONS_DIR)

    def install(self, artifact_path: Path, flavor: Flavor) -> InstallResult:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        mount_point = Path(tempfile.mkdtemp(prefix="dmg-", dir=self.temp_dir))
        self._run_install(
            [
                "hdiutil",
                "attach",
                "-nobrowse",
                "-readonly",
                "-noautoopen",
                "-mountpoint",
                str(mount_point),
                str(artifact_path),
            ],
            artifact_path,
        )
        try:
            bundles = sorted(mount_point.glob("*.app"))
            packages = sorted(mount_point.glob("*.pkg"))
            if bundles:
                destination = self.applications_dir / bundles[0].name
                self._run_install(
                    ["cp", "-R", "-f", str(bundles[0]), str(self.applications_dir)],
                    artifact_path,
                )
                target = str(destination)
            elif packages:
                self._run_install(
                    ["installer", "-pkg", str(packages[0]), "-target", "/"],
                    artifact_path,
                )
                target = str(packages[0].name)
            else:
                raise InstallationFailedError(
                    str(artifact_path), "Disk image contains no .app or .pkg"
                )
        finally:
            self._detach(mount_point)
        return InstallResult(InstallStatus.INSTALLED, target)

    def _detach(self, mount_point: Path) -> None:
        try:
            result = self.runner(["hdiutil", "detach", str(mount_point), "-force"])
            if result.returncode != 0:
                logger.warning(
                    f"Could not detach {mount_point}: {native_error(result)}"
                )
        except OSError as e:
            logger.warning(f"Could not detach {mount_point}: {e}")
        shutil.rmtree(mount_point, ignore_errors=True)

    def uninstall(self, item: InstalledItem) -> InstallResult:
        if item.path is None:
            raise UninstallationFailedError(
                item.identifier, "Installed bundle location is unknown"
            )
        try:
            shutil.rmtree(item.path)
        except OSError as e:
            raise UninstallationFailedError(item.identifier, str(e)) from e
        return InstallResult(InstallStatus.UNINSTALLED, str(item.path))

    def launch(self, flavor: Flavor) -> None:
        app_name = flavor.metadata.cf_bundle_name
        if not app_name:
            raise GManError(f"No CFBundleName configured to launch {flavor.id}")
        args: List[str] = ["open", "-a", app_name]
        if flavor.metadata.launch_args:
            args += ["--args", *flavor.metadata.launch_args]
        result = self.runner(args)
        if result.returncode != 0:
            raise GManError(f"Could not launch {app_name}", native_error(result))

    def stop(self, item: InstalledItem, flavor: Optional[Flavor]) -> None:
        if flavor is not None and flavor.metadata.stop_command:
            super().stop(item, flavor)
            return
        if flavor is None or not flavor.metadata.run_as_service:
            return
        label = flavor.metadata.cf_bundle_id or item.identifier
        try:
            result = self.runner(["launchctl", "stop", label])
        except OSError as e:
            logger.warning(f"Could not stop {label}: {e}")
            return
        if result.returncode != 0:
            logger.warning(f"launchctl stop {label} failed: {native_error(result)}")


class PkgHandler(AppHandler):
    """Flat `.pkg` installers run through the system `installer` tool."""

    package_type = PackageType.PKG

    def install(self, artifact_path: Path, flavor: Flavor) -> InstallResult:
        self._run_install(
            ["installer", "-pkg", str(artifact_path), "-target", "/"], artifact_path
        )
        return InstallResult(InstallStatus.INSTALLED, str(artifact_path))

    def uninstall(self, item: InstalledItem) -> InstallResult:
        result = super().uninstall(item)
        try:
            forget = self.runner(["pkgutil", "--forget", item.identifier])
            if forget.returncode != 0:
                logger.debug(
                    f"pkgutil --forget {item.identifier}: {native_error(forget)}"
                )
        except OSError as e:
            logger.debug(f"pkgutil unavailable: {e}")
        return result
