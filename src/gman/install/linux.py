"""
Debian package handler for Linux and Raspberry Pi hosts.
"""

from pathlib import Path

from gman.download.interfaces import InstalledItem
from gman.products import Flavor, PackageType

from .base import InstallHandler, InstallResult, InstallStatus


class DebHandler(InstallHandler):
    package_type = PackageType.DEB

    def install(self, artifact_path: Path, flavor: Flavor) -> InstallResult:
        self._run_install(["dpkg", "-i", str(artifact_path)], artifact_path)
        return InstallResult(InstallStatus.INSTALLED, str(artifact_path))

    def uninstall(self, item: InstalledItem) -> InstallResult:
        self._run_uninstall(["dpkg", "-r", item.identifier], item.identifier)
        return InstallResult(InstallStatus.UNINSTALLED, item.identifier)
