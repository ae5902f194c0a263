"""
Handlers that install onto a connected Android or iOS device.

Android goes through `adb`, iOS through libimobiledevice's `ideviceinstaller`.
"""

from pathlib import Path

from gman.download.interfaces import InstalledItem
from gman.exceptions import GManError, InstallationFailedError
from gman.log_utils import logger
from gman.products import Flavor, PackageType

from .base import InstallHandler, InstallResult, InstallStatus, native_error

ANDROID_LAUNCHER_CATEGORY = "android.intent.category.LAUNCHER"


class ApkHandler(InstallHandler):
    package_type = PackageType.APK

    def install(self, artifact_path: Path, flavor: Flavor) -> InstallResult:
        result = self._run_install(
            ["adb", "install", "-r", str(artifact_path)], artifact_path
        )
        # adb reports some failures with a zero exit code
        if "Failure" in (result.stdout or ""):
            raise InstallationFailedError(str(artifact_path), native_error(result))
        return InstallResult(InstallStatus.INSTALLED, str(artifact_path))

    def uninstall(self, item: InstalledItem) -> InstallResult:
        self._run_uninstall(["adb", "uninstall", item.identifier], item.identifier)
        return InstallResult(InstallStatus.UNINSTALLED, item.identifier)

    def launch(self, flavor: Flavor) -> None:
        package = flavor.metadata.cf_bundle_id
        if not package:
            raise GManError(f"No CFBundleId configured to launch {flavor.id}")
        result = self.runner(
            [
                "adb",
                "shell",
                "monkey",
                "-p",
                package,
                "-c",
                ANDROID_LAUNCHER_CATEGORY,
                "1",
            ]
        )
        if result.returncode != 0:
            raise GManError(f"Could not launch {package}", native_error(result))


class IpaHandler(InstallHandler):
    package_type = PackageType.IPA

    def install(self, artifact_path: Path, flavor: Flavor) -> InstallResult:
        self._run_install(["ideviceinstaller", "-i", str(artifact_path)], artifact_path)
        return InstallResult(InstallStatus.INSTALLED, str(artifact_path))

    def uninstall(self, item: InstalledItem) -> InstallResult:
        self._run_uninstall(
            ["ideviceinstaller", "-U", item.identifier], item.identifier
        )
        return InstallResult(InstallStatus.UNINSTALLED, item.identifier)

    def launch(self, flavor: Flavor) -> None:
        logger.info(
            f"Launching {flavor.id} on an iOS device is not supported; start it on the device"
        )
