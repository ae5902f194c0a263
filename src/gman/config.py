"""
Configuration loading for gman.

The configuration file is YAML (JSON documents load unchanged) with PascalCase
keys. It is parsed once into frozen dataclasses and validated here, so the rest
of the package only ever sees an immutable, already-consistent ClientConfig.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import platformdirs
import yaml

from gman.constants import (
    APP_NAME,
    CACHE_SUBDIR_NAME,
    CONFIG_FILE_NAME,
    CONFIG_PATH_ENV_VAR,
    DEFAULT_BRANCH,
    DEFAULT_DOWNLOAD_CHUNK_SIZE,
    DEFAULT_REQUEST_TIMEOUT,
    HTTPS_SCHEME,
    SAMPLE_CONFIG_MAX_SUFFIX,
    TEAMCITY_REPOSITORY_TYPE,
    TEMP_DOWNLOAD_SUBDIR_NAME,
)
from gman.exceptions import ConfigurationError
from gman.log_utils import logger
from gman.products import (
    Flavor,
    FlavorMetadata,
    PackageType,
    Platform,
    Product,
    PublisherIdentity,
    TeamCityMetadata,
    is_valid_package_type,
)


@dataclass(frozen=True)
class BearerToken:
    token: str


@dataclass(frozen=True)
class BasicAuth:
    username: str
    password: str


Credentials = Union[BearerToken, BasicAuth]


@dataclass(frozen=True)
class Repository:
    """
    A CI build server that hosts product artifacts.

    Attributes:
        name: Repository name, used in messages and cache metadata.
        server: Base URL, always carrying a scheme.
        credentials: Bearer token or basic credentials, if any.
        platforms: Platforms this repository serves.
        products: Names of the products it serves.
        repository_type: Only TeamCity is supported.
    """

    name: str
    server: str
    credentials: Optional[Credentials] = None
    platforms: frozenset = frozenset()
    products: frozenset = frozenset()
    repository_type: str = TEAMCITY_REPOSITORY_TYPE

    def serves_product(self, product_name: str) -> bool:
        return product_name.lower() in {p.lower() for p in self.products}

    def serves_platform(self, platform: Platform) -> bool:
        return platform in self.platforms


@dataclass(frozen=True)
class ClientConfig:
    """Immutable, validated configuration for one gman invocation."""

    repositories: Tuple[Repository, ...] = ()
    products: Tuple[Product, ...] = ()
    publisher_identities: Tuple[PublisherIdentity, ...] = ()
    cache_directory: Path = field(default_factory=lambda: default_cache_dir())
    temp_download_directory: Path = field(
        default_factory=lambda: default_temp_download_dir()
    )
    log_level: Optional[str] = None
    default_branch: str = DEFAULT_BRANCH
    download_chunk_size: int = DEFAULT_DOWNLOAD_CHUNK_SIZE
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    source_path: Optional[Path] = None

    def get_product(self, name: str) -> Optional[Product]:
        wanted = name.lower()
        for product in self.products:
            if product.name.lower() == wanted:
                return product
        return None

    def repositories_for(
        self, product_name: str, platform: Platform
    ) -> List[Repository]:
        """Repositories serving the product on the platform, in configuration order."""
        return [
            repo
            for repo in self.repositories
            if repo.serves_product(product_name) and repo.serves_platform(platform)
        ]


def default_config_path() -> Path:
    return Path(platformdirs.user_config_dir(APP_NAME)) / CONFIG_FILE_NAME


def default_cache_dir() -> Path:
    return Path(platformdirs.user_cache_dir(APP_NAME)) / CACHE_SUBDIR_NAME


def default_temp_download_dir() -> Path:
    return Path(platformdirs.user_cache_dir(APP_NAME)) / TEMP_DOWNLOAD_SUBDIR_NAME


def get_config_file_path(explicit: Optional[str] = None) -> Path:
    """
    Pick the configuration file to use.

    Precedence is the explicit path, then the GMAN_CONFIG environment variable,
    then the platformdirs user config directory.
    """
    if explicit:
        return Path(explicit).expanduser()
    from_env = os.environ.get(CONFIG_PATH_ENV_VAR)
    if from_env:
        return Path(from_env).expanduser()
    return default_config_path()


def load_config(path: Optional[Union[str, Path]] = None) -> ClientConfig:
    """
    Load and validate the gman configuration file.

    Parameters:
        path (str | Path | None): Config file to read; resolved with get_config_file_path() when None.

    Returns:
        ClientConfig: The validated configuration.

    Raises:
        ConfigurationError: If the file is missing, unreadable, not valid YAML, or fails validation.
    """
    config_path = get_config_file_path(str(path) if path else None)
    if not config_path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}",
            path=str(config_path),
            details="Run 'gman config --sample' to create one",
        )
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            "Configuration file is not valid YAML",
            path=str(config_path),
            details=str(e),
        ) from e
    except OSError as e:
        raise ConfigurationError(
            "Could not read configuration file", path=str(config_path), details=str(e)
        ) from e

    logger.debug(f"Loaded configuration from {config_path}")
    return parse_config(data or {}, source_path=config_path)


def parse_config(
    data: Dict[str, Any], source_path: Optional[Path] = None
) -> ClientConfig:
    """
    Build a ClientConfig from an already-decoded configuration mapping.

    Raises:
        ConfigurationError: On any schema or consistency problem.
    """
    if not isinstance(data, dict):
        raise ConfigurationError(
            "Configuration root must be a mapping", path=_as_str(source_path)
        )

    products = tuple(_parse_product(p) for p in _as_list(data, "Products"))
    _check_unique_products(products)

    repositories = tuple(
        _parse_repository(r) for r in _as_list(data, "Repositories")
    )
    _check_repository_products(repositories, products)

    identities = tuple(
        _parse_publisher_identity(p) for p in _as_list(data, "PublisherIdentities")
    )

    kwargs: Dict[str, Any] = {}
    if data.get("CacheDirectory"):
        kwargs["cache_directory"] = _expand_path(data["CacheDirectory"])
    if data.get("TempDownloadDirectory"):
        kwargs["temp_download_directory"] = _expand_path(data["TempDownloadDirectory"])
    if data.get("DefaultBranch"):
        kwargs["default_branch"] = str(data["DefaultBranch"])
    if data.get("DownloadChunkSize") is not None:
        kwargs["download_chunk_size"] = _positive_number(
            data["DownloadChunkSize"], "DownloadChunkSize", int
        )
    if data.get("RequestTimeout") is not None:
        kwargs["request_timeout"] = _positive_number(
            data["RequestTimeout"], "RequestTimeout", float
        )

    return ClientConfig(
        repositories=repositories,
        products=products,
        publisher_identities=identities,
        log_level=data.get("LogLevel"),
        source_path=source_path,
        **kwargs,
    )


def _as_str(path: Optional[Path]) -> Optional[str]:
    return str(path) if path else None


def _as_list(data: Dict[str, Any], key: str) -> List[Any]:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise ConfigurationError(f"'{key}' must be a list", field=key)
    return value


def _require(data: Dict[str, Any], key: str, context: str) -> Any:
    value = data.get(key) if isinstance(data, dict) else None
    if value in (None, ""):
        raise ConfigurationError(f"Missing '{key}' in {context}", field=key)
    return value


def _positive_number(value: Any, key: str, kind: type) -> Any:
    try:
        number = kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"'{key}' must be a number", field=key) from e
    if number <= 0:
        raise ConfigurationError(f"'{key}' must be positive", field=key)
    return number


def _expand_path(value: str) -> Path:
    return Path(os.path.expandvars(str(value))).expanduser()


def _parse_platform(value: Any, context: str) -> Platform:
    try:
        return Platform.parse(str(value))
    except ValueError as e:
        raise ConfigurationError(str(e), field="Platform", details=context) from e


def _parse_regex(value: Optional[str], key: str, context: str) -> Optional[str]:
    if value is None:
        return None
    try:
        re.compile(value)
    except re.error as e:
        raise ConfigurationError(
            f"Invalid regular expression in '{key}'",
            field=key,
            details=f"{context}: {e}",
        ) from e
    return value


def _parse_flavor(data: Dict[str, Any], product_name: str) -> Flavor:
    flavor_id = str(_require(data, "Id", f"a flavor of {product_name}"))
    context = f"{product_name}/{flavor_id}"
    platform = _parse_platform(_require(data, "Platform", context), context)
    try:
        package_type = PackageType.parse(str(_require(data, "PackageType", context)))
    except ValueError as e:
        raise ConfigurationError(str(e), field="PackageType", details=context) from e
    if not is_valid_package_type(platform, package_type):
        raise ConfigurationError(
            f"Package type {package_type.value} is not valid for platform {platform.value}",
            field="PackageType",
            details=context,
        )

    teamcity = None
    tc_data = data.get("TeamCityMetadata")
    if tc_data:
        teamcity = TeamCityMetadata(
            build_type_id=str(_require(tc_data, "TeamCityId", context)),
            binary_path=str(_require(tc_data, "TeamCityBinaryPath", context)),
        )

    meta = data.get("Metadata") or {}
    metadata = FlavorMetadata(
        display_name_regex=_parse_regex(
            meta.get("DisplayNameRegex"), "DisplayNameRegex", context
        ),
        name_regex=_parse_regex(meta.get("NameRegex"), "NameRegex", context),
        cf_bundle_id=meta.get("CFBundleId"),
        cf_bundle_name=meta.get("CFBundleName"),
        install_path=meta.get("InstallPath"),
        launch_args=tuple(str(a) for a in meta.get("LaunchArgs") or ()),
        stop_command=meta.get("StopCommand"),
        run_as_service=bool(meta.get("RunAsService", False)),
    )

    return Flavor(
        id=flavor_id,
        platform=platform,
        package_type=package_type,
        autorun=bool(data.get("Autorun", False)),
        teamcity=teamcity,
        metadata=metadata,
    )


def _parse_product(data: Dict[str, Any]) -> Product:
    name = str(_require(data, "Name", "a product"))
    flavors = tuple(_parse_flavor(f, name) for f in data.get("Flavors") or [])
    seen = set()
    for flavor in flavors:
        key = flavor.id.lower()
        if key in seen:
            raise ConfigurationError(
                f"Duplicate flavor id '{flavor.id}' in product {name}", field="Id"
            )
        seen.add(key)
    return Product(name=name, flavors=flavors)


def _check_unique_products(products: Tuple[Product, ...]) -> None:
    seen = set()
    for product in products:
        key = product.name.lower()
        if key in seen:
            raise ConfigurationError(
                f"Duplicate product name '{product.name}'", field="Name"
            )
        seen.add(key)


def _parse_credentials(data: Any, context: str) -> Optional[Credentials]:
    if not data:
        return None
    if not isinstance(data, dict):
        raise ConfigurationError(
            "RepositoryCredentials must be a mapping", field="RepositoryCredentials"
        )
    if "BearerToken" in data:
        token = _require(data["BearerToken"], "Token", context)
        return BearerToken(token=os.path.expandvars(str(token)))
    if "BasicAuth" in data:
        basic = data["BasicAuth"]
        return BasicAuth(
            username=os.path.expandvars(str(_require(basic, "Username", context))),
            password=os.path.expandvars(str(basic.get("Password") or "")),
        )
    raise ConfigurationError(
        "RepositoryCredentials must be BearerToken or BasicAuth",
        field="RepositoryCredentials",
        details=context,
    )


def ensure_scheme(url: str) -> str:
    """Prefix `https://` when the server address has no scheme."""
    url = url.strip()
    if "://" in url:
        return url
    return f"{HTTPS_SCHEME}{url}"


def _parse_repository(data: Dict[str, Any]) -> Repository:
    name = str(_require(data, "Name", "a repository"))
    repo_type = str(data.get("RepositoryType") or TEAMCITY_REPOSITORY_TYPE)
    if repo_type.lower() != TEAMCITY_REPOSITORY_TYPE.lower():
        raise ConfigurationError(
            f"Unsupported repository type '{repo_type}'",
            field="RepositoryType",
            details=name,
        )
    return Repository(
        name=name,
        server=ensure_scheme(str(_require(data, "RepositoryServer", name))).rstrip("/"),
        credentials=_parse_credentials(data.get("RepositoryCredentials"), name),
        platforms=frozenset(
            _parse_platform(p, name) for p in data.get("Platforms") or []
        ),
        products=frozenset(str(p) for p in data.get("Products") or []),
        repository_type=TEAMCITY_REPOSITORY_TYPE,
    )


def _check_repository_products(
    repositories: Tuple[Repository, ...], products: Tuple[Product, ...]
) -> None:
    by_name = {p.name.lower(): p for p in products}
    for repo in repositories:
        for product_name in repo.products:
            product = by_name.get(product_name.lower())
            if product is None:
                raise ConfigurationError(
                    f"Repository '{repo.name}' references unknown product '{product_name}'",
                    field="Products",
                )
            for flavor in product.flavors:
                if repo.serves_platform(flavor.platform) and flavor.teamcity is None:
                    raise ConfigurationError(
                        f"Flavor '{product.name}/{flavor.id}' needs TeamCityMetadata "
                        f"to be served by '{repo.name}'",
                        field="TeamCityMetadata",
                    )


def _parse_publisher_identity(data: Dict[str, Any]) -> PublisherIdentity:
    name = str(_require(data, "Name", "a publisher identity"))
    return PublisherIdentity(
        name=name,
        id=str(_require(data, "Id", name)),
        platforms=frozenset(
            _parse_platform(p, name) for p in data.get("Platforms") or []
        ),
        products=frozenset(str(p) for p in data.get("Products") or []),
    )


SAMPLE_CONFIG = """\
# gman configuration
#
# LogLevel: Off | Error | Warn | Info | Debug | Trace
LogLevel: Info
# CacheDirectory: ~/.cache/gman/artifacts
# TempDownloadDirectory: ~/.cache/gman/downloads
DefaultBranch: master

Repositories:
  - Name: Gravio CI
    RepositoryType: TeamCity
    RepositoryServer: ci.example.com
    RepositoryCredentials:
      BearerToken:
        Token: ${GMAN_TEAMCITY_TOKEN}
    Platforms: [Windows, macOS, Android]
    Products: [HubKit, GravioStudio, HandbookX]

PublisherIdentities:
  - Name: Asteria
    Id: CN=ASTERIA Corporation
    Platforms: [Windows]
  - Name: Asteria (Store)
    Id: CN=17E3C8AF-E4A4-4B0B-9B26-DB6E6C5B5E12
    Platforms: [Windows]
    Products: [GravioStudio]

Products:
  - Name: HubKit
    Flavors:
      - Id: WindowsHubkit
        Platform: Windows
        PackageType: Msi
        TeamCityMetadata:
          TeamCityId: Gravio_GravioHubKit4
          TeamCityBinaryPath: GravioHubKit.msi
        Metadata:
          DisplayNameRegex: "^Gravio HubKit"
          StopCommand: net stop GravioHubKitService
          RunAsService: true
      - Id: MacHubkit
        Platform: macOS
        PackageType: App
        Autorun: true
        TeamCityMetadata:
          TeamCityId: Gravio_GravioHubKitMac
          TeamCityBinaryPath: GravioHubKit.dmg
        Metadata:
          CFBundleId: com.asteria.mac.gravio4
          CFBundleName: Gravio HubKit
  - Name: GravioStudio
    Flavors:
      - Id: WindowsAppStore
        Platform: Windows
        PackageType: AppX
        Autorun: true
        TeamCityMetadata:
          TeamCityId: Gravio_Designer4
          TeamCityBinaryPath: graviostudio.zip
        Metadata:
          NameRegex: "^Asteria.GravioStudio"
      - Id: DeveloperId
        Platform: macOS
        PackageType: App
        TeamCityMetadata:
          TeamCityId: Gravio_GravioStudioMac
          TeamCityBinaryPath: GravioStudio.dmg
        Metadata:
          CFBundleId: com.asteria.mac.graviostudio
          CFBundleName: Gravio Studio
      - Id: MacAppStore
        Platform: macOS
        PackageType: Pkg
        TeamCityMetadata:
          TeamCityId: Gravio_GravioStudioMacStore
          TeamCityBinaryPath: GravioStudio.pkg
        Metadata:
          CFBundleId: com.asteria.mac.graviostudio
  - Name: HandbookX
    Flavors:
      - Id: WindowsHandbookX
        Platform: Windows
        PackageType: MsiX
        TeamCityMetadata:
          TeamCityId: Gravio_HandbookX
          TeamCityBinaryPath: HandbookX.msix
        Metadata:
          NameRegex: "HandbookX"
      - Id: AndroidHandbookX
        Platform: Android
        PackageType: Apk
        TeamCityMetadata:
          TeamCityId: Gravio_HandbookXAndroid
          TeamCityBinaryPath: handbookx.apk
        Metadata:
          NameRegex: "^com.asteria.handbookx"
"""


def write_sample_config(path: Optional[Union[str, Path]] = None) -> Path:
    """
    Write the sample configuration without overwriting anything.

    When the target exists, `.1`, `.2`, ... suffixes are tried in turn.

    Returns:
        Path: The file that was written.

    Raises:
        ConfigurationError: If every candidate name up to the limit is taken.
    """
    target = Path(path).expanduser() if path else default_config_path()
    candidate = target
    suffix = 0
    while candidate.exists():
        suffix += 1
        if suffix > SAMPLE_CONFIG_MAX_SUFFIX:
            raise ConfigurationError(
                "Could not find a free file name for the sample configuration",
                path=str(target),
            )
        candidate = target.with_name(f"{target.name}.{suffix}")

    candidate.parent.mkdir(parents=True, exist_ok=True)
    candidate.write_text(SAMPLE_CONFIG, encoding="utf-8")
    logger.info(f"Sample configuration written to {candidate}")
    return candidate
