"""
Installed-item inspection.

Enumerates native installation records for a platform, normalizes them into
InstalledItem values and attributes each one to a configured product where
possible. Records are attributed in order of: publisher identity (required
for AppX, Msi and MsiX records), then name / display-name / bundle id
metadata. Records that match nothing are still reported, unassociated.
Standalone executables have no native record; they are found at the
InstallPath of their configured flavor.
"""

import json
import plistlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from gman.config import ClientConfig
from gman.constants import (
    MAC_APPLICATIONS_DIR,
    MAC_INFO_PLIST,
    POWERSHELL_COMMAND,
    WINDOWS_UNINSTALL_REGISTRY_KEYS,
)
from gman.download.interfaces import InstalledItem
from gman.download.version import Version
from gman.exceptions import (
    AmbiguousTargetError,
    InvalidVersionError,
    TargetNotFoundError,
)
from gman.log_utils import logger
from gman.products import (
    IDENTITY_MATCHED_PACKAGE_TYPES,
    Flavor,
    PackageType,
    Platform,
    Product,
    PublisherIdentity,
)

from .base import (
    CommandRunner,
    native_error,
    run_command,
    standalone_version_path,
)

# Installed records of one kind can come from either package type
COMPATIBLE_PACKAGE_TYPES = {
    PackageType.APPX: frozenset({PackageType.APPX, PackageType.MSIX}),
    PackageType.MSIX: frozenset({PackageType.APPX, PackageType.MSIX}),
    PackageType.APP: frozenset({PackageType.APP, PackageType.PKG}),
    PackageType.PKG: frozenset({PackageType.APP, PackageType.PKG}),
}


@dataclass(frozen=True)
class RawInstallRecord:
    """One platform-native installation record before attribution."""

    platform: Platform
    name: str
    version: str
    identifier: str
    package_type: Optional[PackageType] = None
    display_name: Optional[str] = None
    publisher: Optional[str] = None
    path: Optional[Path] = None
    owner: Optional[Tuple[Product, Flavor]] = None
    """Set by scanners that only ever see configured flavors"""


Scanner = Callable[[], List[RawInstallRecord]]


def _compatible(record_type: Optional[PackageType], flavor_type: PackageType) -> bool:
    if record_type is None:
        return True
    compatible = COMPATIBLE_PACKAGE_TYPES.get(record_type, frozenset({record_type}))
    return flavor_type in compatible


def _same_platform(record: Platform, flavor: Platform) -> bool:
    linux_like = {Platform.LINUX, Platform.RASPBERRY_PI}
    return record == flavor or (record in linux_like and flavor in linux_like)


def _publisher_matches(
    record: RawInstallRecord,
    product: Product,
    identities: Sequence[PublisherIdentity],
) -> bool:
    if not record.publisher:
        return False
    publisher = record.publisher.lower()
    return any(
        identity.id.lower() in publisher
        for identity in identities
        if identity.applies_to(record.platform, product.name)
    )


def _metadata_matches(record: RawInstallRecord, flavor: Flavor) -> bool:
    meta = flavor.metadata
    if meta.cf_bundle_id and meta.cf_bundle_id == record.identifier:
        return True
    if meta.matches_name(record.name) or meta.matches_name(record.identifier):
        return True
    return meta.matches_display_name(record.display_name or record.name)


def match_record(
    record: RawInstallRecord,
    products: Sequence[Product],
    identities: Sequence[PublisherIdentity],
) -> Tuple[Optional[Product], Optional[Flavor]]:
    """
    Attribute a native record to a configured product flavor.

    Returns:
        Tuple[Optional[Product], Optional[Flavor]]: The owning product and flavor, or (None, None).
    """
    for product in products:
        for flavor in product.flavors:
            if not _same_platform(record.platform, flavor.platform):
                continue
            if not _compatible(record.package_type, flavor.package_type):
                continue
            if flavor.package_type in IDENTITY_MATCHED_PACKAGE_TYPES and not (
                _publisher_matches(record, product, identities)
            ):
                continue
            if _metadata_matches(record, flavor):
                return product, flavor
    return None, None


def normalize_record(
    record: RawInstallRecord,
    products: Sequence[Product],
    identities: Sequence[PublisherIdentity],
) -> InstalledItem:
    if record.owner is not None:
        product, flavor = record.owner
    else:
        product, flavor = match_record(record, products, identities)
    if product is not None and flavor is not None:
        return InstalledItem(
            name=product.name,
            version=record.version,
            identifier=record.identifier,
            platform=record.platform,
            package_type=flavor.package_type,
            product=product.name,
            flavor=flavor,
            path=record.path,
            publisher=record.publisher,
        )
    return InstalledItem(
        name=record.display_name or record.name,
        version=record.version,
        identifier=record.identifier,
        platform=record.platform,
        package_type=record.package_type,
        path=record.path,
        publisher=record.publisher,
    )


def _version_matches(item: InstalledItem, version: str) -> bool:
    if item.version == version:
        return True
    try:
        wanted = Version(version)
    except InvalidVersionError:
        return False
    return item.parsed_version == wanted


def find_uninstall_target(
    name: str, items: Iterable[InstalledItem], version: Optional[str] = None
) -> List[InstalledItem]:
    """
    Find the installed items an uninstall request refers to.

    The name is matched case-insensitively as a substring of each item's name; only
    when no name matches is the platform identifier tried instead. All matched items
    must belong to one product (or, for unassociated items, share one name). When
    `version` is given, only items installed at that version are considered.

    Raises:
        TargetNotFoundError: If nothing matches, or the name is blank.
        AmbiguousTargetError: If more than one distinct product matches.
    """
    needle = name.strip().lower()
    if not needle:
        raise TargetNotFoundError(name, version)
    items = list(items)
    if version is not None:
        items = [item for item in items if _version_matches(item, version)]
    matches = [item for item in items if needle in item.name.lower()]
    if not matches:
        matches = [item for item in items if needle in item.identifier.lower()]
    if not matches:
        raise TargetNotFoundError(name, version)

    owners: Dict[str, str] = {}
    for item in matches:
        owner = item.product or item.name
        owners.setdefault(owner.lower(), owner)
    if len(owners) > 1:
        raise AmbiguousTargetError(name, sorted(owners.values()))
    return matches


def _load_json_records(output: str) -> List[Dict[str, Any]]:
    output = output.strip()
    if not output:
        return []
    data = json.loads(output)
    if isinstance(data, dict):
        return [data]
    return [d for d in data if isinstance(d, dict)]


class InstalledItemInspector:
    """
    Scans the host (or a connected device) for installed items.

    Parameters:
        config (ClientConfig): Products and publisher identities used for attribution.
        runner (CommandRunner): Runs the platform query tools.
        scanners (Optional[Dict[Platform, Scanner]]): Replacement scanners, keyed by platform.
        applications_dir (Path): Where macOS application bundles are looked up.
    """

    def __init__(
        self,
        config: ClientConfig,
        runner: CommandRunner = run_command,
        scanners: Optional[Dict[Platform, Scanner]] = None,
        applications_dir: Path = Path(MAC_APPLICATIONS_DIR),
    ) -> None:
        self.config = config
        self.runner = runner
        self.applications_dir = applications_dir
        self.scanners: Dict[Platform, Scanner] = {
            Platform.WINDOWS: self._scan_windows,
            Platform.MACOS: self._scan_macos,
            Platform.LINUX: lambda: self._scan_dpkg(Platform.LINUX),
            Platform.RASPBERRY_PI: lambda: self._scan_dpkg(Platform.RASPBERRY_PI),
            Platform.ANDROID: self._scan_android,
            Platform.IOS: self._scan_ios,
        }
        if scanners:
            self.scanners.update(scanners)

    def scan(self, platform: Platform) -> List[InstalledItem]:
        """
        Return every item installed on `platform`, attributed where possible.
        """
        records = self.scanners[platform]() + self._scan_standalone(platform)
        items = [
            normalize_record(
                record, self.config.products, self.config.publisher_identities
            )
            for record in records
        ]
        items.sort(key=lambda i: (i.product is None, i.name.lower(), i.version))
        logger.debug(f"Found {len(items)} installed item(s) on {platform.value}")
        return items

    def installed_for(
        self, platform: Platform, product: str, flavor: Optional[Flavor] = None
    ) -> List[InstalledItem]:
        wanted = product.lower()
        return [
            item
            for item in self.scan(platform)
            if item.product is not None
            and item.product.lower() == wanted
            and (flavor is None or (item.flavor and item.flavor.id == flavor.id))
        ]

    # ------------------------------------------------------------------
    # Platform scanners
    # ------------------------------------------------------------------

    def _query(self, args: Sequence[str], what: str) -> Optional[str]:
        try:
            result = self.runner(args)
        except OSError as e:
            logger.warning(f"Could not list {what}: {e}")
            return None
        if result.returncode != 0:
            logger.warning(f"Could not list {what}: {native_error(result)}")
            return None
        return result.stdout or ""

    def _query_json(self, script: str, what: str) -> List[Dict[str, Any]]:
        output = self._query([*POWERSHELL_COMMAND, script], what)
        if output is None:
            return []
        try:
            return _load_json_records(output)
        except ValueError as e:
            logger.warning(f"Could not parse {what}: {e}")
            return []

    def _scan_windows(self) -> List[RawInstallRecord]:
        records: List[RawInstallRecord] = []
        appx = self._query_json(
            "Get-AppxPackage | Select-Object Name,PackageFullName,Version,Publisher,"
            "InstallLocation | ConvertTo-Json -Compress",
            "AppX packages",
        )
        for pkg in appx:
            if not pkg.get("PackageFullName"):
                continue
            records.append(
                RawInstallRecord(
                    platform=Platform.WINDOWS,
                    name=str(pkg.get("Name") or pkg["PackageFullName"]),
                    version=str(pkg.get("Version") or ""),
                    identifier=str(pkg["PackageFullName"]),
                    package_type=PackageType.APPX,
                    publisher=pkg.get("Publisher"),
                    path=_optional_path(pkg.get("InstallLocation")),
                )
            )

        keys = ",".join(f"'{k}'" for k in WINDOWS_UNINSTALL_REGISTRY_KEYS)
        uninstall_entries = self._query_json(
            f"Get-ItemProperty -Path {keys} -ErrorAction SilentlyContinue | "
            "Where-Object { $_.DisplayName } | Select-Object PSChildName,DisplayName,"
            "DisplayVersion,Publisher,InstallLocation | ConvertTo-Json -Compress",
            "installed programs",
        )
        for entry in uninstall_entries:
            key_name = str(entry.get("PSChildName") or "")
            display_name = str(entry.get("DisplayName") or key_name)
            records.append(
                RawInstallRecord(
                    platform=Platform.WINDOWS,
                    name=display_name,
                    version=str(entry.get("DisplayVersion") or ""),
                    identifier=key_name,
                    package_type=PackageType.MSI if key_name.startswith("{") else None,
                    display_name=display_name,
                    publisher=entry.get("Publisher"),
                    path=_optional_path(entry.get("InstallLocation")),
                )
            )
        return records

    def _scan_standalone(self, platform: Platform) -> List[RawInstallRecord]:
        records = []
        seen = set()
        for product in self.config.products:
            for flavor in product.flavors:
                install_path = flavor.metadata.install_path
                if (
                    flavor.package_type != PackageType.STANDALONE_EXE
                    or not install_path
                    or not _same_platform(platform, flavor.platform)
                ):
                    continue
                executable = Path(install_path).expanduser()
                if executable in seen or not executable.is_file():
                    continue
                try:
                    version = (
                        standalone_version_path(install_path)
                        .read_text(encoding="utf-8")
                        .strip()
                    )
                except OSError:
                    version = ""
                records.append(
                    RawInstallRecord(
                        platform=platform,
                        name=executable.name,
                        version=version,
                        identifier=str(executable),
                        package_type=PackageType.STANDALONE_EXE,
                        path=executable,
                        owner=(product, flavor),
                    )
                )
                seen.add(executable)
        return records

    def _scan_macos(self) -> List[RawInstallRecord]:
        records = []
        for bundle in sorted(self.applications_dir.glob("*.app")):
            plist_path = bundle / MAC_INFO_PLIST
            try:
                with open(plist_path, "rb") as f:
                    info = plistlib.load(f)
            except (OSError, plistlib.InvalidFileException, ValueError) as e:
                logger.debug(f"Skipping {bundle}: {e}")
                continue
            identifier = info.get("CFBundleIdentifier")
            if not identifier:
                continue
            records.append(
                RawInstallRecord(
                    platform=Platform.MACOS,
                    name=str(info.get("CFBundleName") or bundle.stem),
                    version=_bundle_version(info),
                    identifier=str(identifier),
                    package_type=PackageType.APP,
                    display_name=info.get("CFBundleDisplayName"),
                    path=bundle,
                )
            )
        return records

    def _scan_dpkg(self, platform: Platform) -> List[RawInstallRecord]:
        output = self._query(
            ["dpkg-query", "-W", "-f", "${Package}\t${Version}\t${Maintainer}\n"],
            "Debian packages",
        )
        records = []
        for line in (output or "").splitlines():
            fields = line.split("\t")
            if len(fields) < 2 or not fields[0]:
                continue
            records.append(
                RawInstallRecord(
                    platform=platform,
                    name=fields[0],
                    version=fields[1],
                    identifier=fields[0],
                    package_type=PackageType.DEB,
                    publisher=fields[2] if len(fields) > 2 else None,
                )
            )
        return records

    def _scan_android(self) -> List[RawInstallRecord]:
        output = self._query(
            ["adb", "shell", "pm", "list", "packages", "--show-versioncode"],
            "Android packages",
        )
        records = []
        for line in (output or "").splitlines():
            line = line.strip()
            if not line.startswith("package:"):
                continue
            package, _, rest = line[len("package:"):].partition(" ")
            _, _, version = rest.partition("versionCode:")
            version = version.strip()
            records.append(
                RawInstallRecord(
                    platform=Platform.ANDROID,
                    name=package,
                    version=version,
                    identifier=package,
                    package_type=PackageType.APK,
                )
            )
        return records

    def _scan_ios(self) -> List[RawInstallRecord]:
        output = self._query(["ideviceinstaller", "-l"], "iOS apps")
        records = []
        for line in (output or "").splitlines():
            fields = [f.strip().strip('"') for f in line.split(",")]
            if len(fields) < 2 or fields[0] == "CFBundleIdentifier" or not fields[0]:
                continue
            records.append(
                RawInstallRecord(
                    platform=Platform.IOS,
                    name=fields[2] if len(fields) > 2 and fields[2] else fields[0],
                    version=fields[1],
                    identifier=fields[0],
                    package_type=PackageType.IPA,
                    display_name=fields[2] if len(fields) > 2 else None,
                )
            )
        return records


def _bundle_version(info: Dict[str, Any]) -> str:
    """
    Combine CFBundleShortVersionString and CFBundleVersion.

    A purely numeric CFBundleVersion is a CI build number and is appended as a
    hyphenated suffix, matching how builds are numbered on the server.
    """
    short = str(info.get("CFBundleShortVersionString") or "")
    build = str(info.get("CFBundleVersion") or "")
    if short and build.isdigit() and build != short and not short.endswith(build):
        return f"{short}-{build}"
    return short or build


def _optional_path(value: Optional[str]) -> Optional[Path]:
    return Path(value) if value else None
