"""
Windows install handlers: AppX bundles, MsiX packages, MSI installers and standalone executables.
"""

import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import List

from gman.constants import (
    APPX_INSTALL_SCRIPT,
    MSI_USER_CANCELLED_EXIT_CODE,
    MSIEXEC,
    POWERSHELL_COMMAND,
)
from gman.download.interfaces import InstalledItem
from gman.exceptions import (
    GManError,
    InstallationFailedError,
    UninstallationFailedError,
)
from gman.log_utils import logger
from gman.products import Flavor, PackageType

from .base import (
    InstallHandler,
    InstallResult,
    InstallStatus,
    native_error,
    standalone_version_path,
)

MSI_REBOOT_REQUIRED_EXIT_CODE = 3010


def ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string."""
    return "'" + str(value).replace("'", "''") + "'"


def powershell(script: str) -> List[str]:
    return [*POWERSHELL_COMMAND, script]


class AppXHandler(InstallHandler):
    """Sideloaded AppX bundles shipped as a zip containing an Install.ps1 script."""

    package_type = PackageType.APPX

    def install(self, artifact_path: Path, flavor: Flavor) -> InstallResult:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        extract_dir = Path(tempfile.mkdtemp(prefix="appx-", dir=self.temp_dir))
        try:
            try:
                with zipfile.ZipFile(artifact_path) as archive:
                    archive.extractall(extract_dir)
            except (zipfile.BadZipFile, OSError) as e:
                raise InstallationFailedError(str(artifact_path), str(e)) from e

            scripts = sorted(extract_dir.rglob(APPX_INSTALL_SCRIPT))
            if not scripts:
                raise InstallationFailedError(
                    str(artifact_path), f"{APPX_INSTALL_SCRIPT} not found in archive"
                )
            self._run_install(
                [
                    "powershell",
                    "-NoProfile",
                    "-ExecutionPolicy",
                    "Bypass",
                    "-File",
                    str(scripts[0]),
                    "-Force",
                ],
                artifact_path,
            )
        finally:
            shutil.rmtree(extract_dir, ignore_errors=True)
        return InstallResult(InstallStatus.INSTALLED, str(artifact_path))

    def uninstall(self, item: InstalledItem) -> InstallResult:
        self._run_uninstall(
            powershell(f"Remove-AppxPackage -Package {ps_quote(item.identifier)}"),
            item.identifier,
        )
        return InstallResult(InstallStatus.UNINSTALLED, item.identifier)

    def launch(self, flavor: Flavor) -> None:
        pattern = flavor.metadata.name_regex or flavor.metadata.display_name_regex
        if not pattern:
            raise GManError(f"No NameRegex configured to launch {flavor.id}")
        script = (
            f"$app = Get-StartApps | Where-Object {{ $_.AppID -match {ps_quote(pattern)} "
            f"-or $_.Name -match {ps_quote(pattern)} }} | Select-Object -First 1; "
            "if (-not $app) { exit 1 }; "
            'Start-Process ("shell:AppsFolder\\" + $app.AppID)'
        )
        result = self.runner(powershell(script))
        if result.returncode != 0:
            raise GManError(f"Could not launch {flavor.id}", native_error(result))


class MsiXHandler(AppXHandler):
    package_type = PackageType.MSIX

    def install(self, artifact_path: Path, flavor: Flavor) -> InstallResult:
        self._run_install(
            powershell(f"Add-AppxPackage -Path {ps_quote(artifact_path)}"),
            artifact_path,
        )
        return InstallResult(InstallStatus.INSTALLED, str(artifact_path))


class MsiHandler(InstallHandler):
    package_type = PackageType.MSI

    def install(self, artifact_path: Path, flavor: Flavor) -> InstallResult:
        try:
            result = self.runner([MSIEXEC, "/i", str(artifact_path), "/passive"])
        except OSError as e:
            raise InstallationFailedError(str(artifact_path), str(e)) from e

        if result.returncode == MSI_USER_CANCELLED_EXIT_CODE:
            raise InstallationFailedError(
                str(artifact_path), "Installation cancelled by user", result.returncode
            )
        if result.returncode == MSI_REBOOT_REQUIRED_EXIT_CODE:
            logger.warning(
                "Installation succeeded; a reboot is required to complete it"
            )
            return InstallResult(
                InstallStatus.INSTALLED, str(artifact_path), message="reboot required"
            )
        if result.returncode != 0:
            raise InstallationFailedError(
                str(artifact_path), native_error(result), result.returncode
            )
        return InstallResult(InstallStatus.INSTALLED, str(artifact_path))

    def uninstall(self, item: InstalledItem) -> InstallResult:
        self._run_uninstall(
            [MSIEXEC, "/x", item.identifier, "/passive"], item.identifier
        )
        return InstallResult(InstallStatus.UNINSTALLED, item.identifier)


class StandaloneExeHandler(InstallHandler):
    """
    Single-file executables copied to the flavor's InstallPath.

    No platform tool tracks these, so the installed version is written to a
    small file next to the executable and removed with it.
    """

    package_type = PackageType.STANDALONE_EXE

    def install(self, artifact_path: Path, flavor: Flavor) -> InstallResult:
        install_path = flavor.metadata.install_path
        if not install_path:
            raise InstallationFailedError(
                str(artifact_path), f"No InstallPath configured for {flavor.id}"
            )
        destination = Path(install_path).expanduser()
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(artifact_path, destination)
            destination.chmod(destination.stat().st_mode | 0o111)
        except OSError as e:
            raise InstallationFailedError(str(artifact_path), str(e)) from e
        return InstallResult(InstallStatus.INSTALLED, str(destination))

    def record_install(self, flavor: Flavor, version: str) -> None:
        if not flavor.metadata.install_path:
            return
        marker = standalone_version_path(flavor.metadata.install_path)
        marker.write_text(version + "\n", encoding="utf-8")

    def uninstall(self, item: InstalledItem) -> InstallResult:
        target = item.path or Path(item.identifier)
        try:
            target.unlink()
        except OSError as e:
            raise UninstallationFailedError(item.identifier, str(e)) from e
        standalone_version_path(str(target)).unlink(missing_ok=True)
        return InstallResult(InstallStatus.UNINSTALLED, str(target))
