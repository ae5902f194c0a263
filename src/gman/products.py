"""
Product catalogue types.

Products, their flavors, and the publisher identities used to attribute
installed items are loaded once from configuration and never mutated. The
platform and package type enumerations are closed; PLATFORM_PACKAGE_TYPES
records which package types each platform accepts.
"""

import platform as _platform
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Optional, Tuple

RASPBERRY_PI_MODEL_FILE = Path("/proc/device-tree/model")


class Platform(str, Enum):
    WINDOWS = "Windows"
    MACOS = "macOS"
    LINUX = "Linux"
    RASPBERRY_PI = "RaspberryPi"
    ANDROID = "Android"
    IOS = "iOS"

    @classmethod
    def parse(cls, value: str) -> "Platform":
        """
        Parse a platform name case-insensitively, accepting the legacy spellings `Mac` and `IOS`.

        Raises:
            ValueError: If the name is not a known platform.
        """
        key = value.strip().lower()
        aliases = {"mac": cls.MACOS, "osx": cls.MACOS, "darwin": cls.MACOS}
        if key in aliases:
            return aliases[key]
        for member in cls:
            if member.value.lower() == key:
                return member
        raise ValueError(f"Unknown platform: {value}")


class PackageType(str, Enum):
    APPX = "AppX"
    MSI = "Msi"
    MSIX = "MsiX"
    STANDALONE_EXE = "StandaloneExe"
    APP = "App"
    PKG = "Pkg"
    DEB = "Deb"
    IPA = "Ipa"
    APK = "Apk"

    @classmethod
    def parse(cls, value: str) -> "PackageType":
        key = value.strip().lower()
        for member in cls:
            if member.value.lower() == key:
                return member
        raise ValueError(f"Unknown package type: {value}")


PLATFORM_PACKAGE_TYPES: Dict[Platform, FrozenSet[PackageType]] = {
    Platform.WINDOWS: frozenset(
        {
            PackageType.APPX,
            PackageType.MSI,
            PackageType.MSIX,
            PackageType.STANDALONE_EXE,
        }
    ),
    Platform.MACOS: frozenset({PackageType.APP, PackageType.PKG}),
    Platform.LINUX: frozenset({PackageType.DEB, PackageType.STANDALONE_EXE}),
    Platform.RASPBERRY_PI: frozenset({PackageType.DEB, PackageType.STANDALONE_EXE}),
    Platform.ANDROID: frozenset({PackageType.APK}),
    Platform.IOS: frozenset({PackageType.IPA}),
}

# Installed records of these types only name a product through a publisher id
IDENTITY_MATCHED_PACKAGE_TYPES: FrozenSet[PackageType] = frozenset(
    {PackageType.APPX, PackageType.MSI, PackageType.MSIX}
)


def is_valid_package_type(platform: Platform, package_type: PackageType) -> bool:
    return package_type in PLATFORM_PACKAGE_TYPES[platform]


@dataclass(frozen=True)
class TeamCityMetadata:
    """
    Locator for a flavor's artifacts on a TeamCity server.

    Attributes:
        build_type_id: TeamCity build configuration id.
        binary_path: Artifact path inside each build, e.g. `GravioHubKit.msi`.
    """

    build_type_id: str
    binary_path: str

    @property
    def binary_name(self) -> str:
        return self.binary_path.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class FlavorMetadata:
    """Matching and launch details for one flavor's installed form."""

    display_name_regex: Optional[str] = None
    name_regex: Optional[str] = None
    cf_bundle_id: Optional[str] = None
    cf_bundle_name: Optional[str] = None
    install_path: Optional[str] = None
    launch_args: Tuple[str, ...] = ()
    stop_command: Optional[str] = None
    run_as_service: bool = False

    def matches_name(self, name: Optional[str]) -> bool:
        return _search(self.name_regex, name)

    def matches_display_name(self, display_name: Optional[str]) -> bool:
        return _search(self.display_name_regex, display_name)


def _search(pattern: Optional[str], value: Optional[str]) -> bool:
    if not pattern or not value:
        return False
    return re.search(pattern, value) is not None


@dataclass(frozen=True)
class Flavor:
    """
    A packaging variant of a product for one platform and package type.

    Attributes:
        id: Identifier, unique within the owning product.
        platform: Target platform.
        package_type: Selects the install handler.
        autorun: Launch the product after a successful install.
        teamcity: TeamCity locator; None for flavors no TeamCity repository serves.
        metadata: Installed-item matching and launch details.
    """

    id: str
    platform: Platform
    package_type: PackageType
    autorun: bool = False
    teamcity: Optional[TeamCityMetadata] = None
    metadata: FlavorMetadata = field(default_factory=FlavorMetadata)

    @property
    def binary_name(self) -> str:
        if self.teamcity is None:
            return self.id
        return self.teamcity.binary_name


@dataclass(frozen=True)
class Product:
    name: str
    flavors: Tuple[Flavor, ...] = ()

    def get_flavor(self, flavor_id: str) -> Optional[Flavor]:
        wanted = flavor_id.lower()
        for flavor in self.flavors:
            if flavor.id.lower() == wanted:
                return flavor
        return None

    def flavors_for(self, platform: Platform) -> Tuple[Flavor, ...]:
        return tuple(f for f in self.flavors if f.platform == platform)


@dataclass(frozen=True)
class PublisherIdentity:
    """
    Publisher id used to attribute native install records to configured products.

    Attributes:
        name: Human readable publisher name.
        id: String matched against the record's publisher field.
        platforms: Platforms this identity applies to.
        products: Product names it applies to; empty means all products.
    """

    name: str
    id: str
    platforms: FrozenSet[Platform] = frozenset()
    products: FrozenSet[str] = frozenset()

    def applies_to(self, platform: Platform, product_name: str) -> bool:
        if self.platforms and platform not in self.platforms:
            return False
        if self.products and product_name.lower() not in {
            p.lower() for p in self.products
        }:
            return False
        return True


def detect_host_platform() -> Platform:
    """
    Return the platform gman is running on.

    Linux hosts whose device-tree model names a Raspberry Pi are reported as RaspberryPi.
    """
    system = _platform.system()
    if system == "Windows":
        return Platform.WINDOWS
    if system == "Darwin":
        return Platform.MACOS
    try:
        model = RASPBERRY_PI_MODEL_FILE.read_text(encoding="utf-8", errors="ignore")
    except OSError:
        model = ""
    if "raspberry pi" in model.lower():
        return Platform.RASPBERRY_PI
    return Platform.LINUX
