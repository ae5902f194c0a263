# Constants for gman

# Logging configuration
LOGGER_NAME = "gman"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
INFO_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
DEBUG_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s: %(message)s"
LOG_FILE_NAME = "gman.log"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_FILE_BACKUP_COUNT = 5

# Config LogLevel values mapped onto stdlib level names
CONFIG_LOG_LEVELS = {
    "off": "CRITICAL",
    "error": "ERROR",
    "warn": "WARNING",
    "warning": "WARNING",
    "info": "INFO",
    "debug": "DEBUG",
    "trace": "DEBUG",
}

# Environment variable names
LOG_LEVEL_ENV_VAR = "GMAN_LOG_LEVEL"
CONFIG_PATH_ENV_VAR = "GMAN_CONFIG"

# Application directories
APP_NAME = "gman"
CONFIG_FILE_NAME = "gman.yaml"
CACHE_SUBDIR_NAME = "artifacts"
TEMP_DOWNLOAD_SUBDIR_NAME = "downloads"
LOG_SUBDIR_NAME = "logs"

# Sample config writer
SAMPLE_CONFIG_MAX_SUFFIX = 200

# Resolution defaults
DEFAULT_BRANCH = "master"

# Network configuration
DEFAULT_DOWNLOAD_CHUNK_SIZE = 1024 * 1024  # 1 MiB
DEFAULT_REQUEST_TIMEOUT = 60  # seconds
DEFAULT_CONNECT_TIMEOUT = 10  # seconds
HTTP_CONNECTION_LIMIT = 10
HTTPS_SCHEME = "https://"
USER_AGENT = "gman"
JSON_CONTENT_TYPE = "application/json"

# TeamCity REST API
TEAMCITY_REPOSITORY_TYPE = "TeamCity"
TEAMCITY_BRANCHES_ENDPOINT = "app/rest/buildTypes/id:{build_type}/branches"
TEAMCITY_BUILDS_ENDPOINT = "app/rest/builds"
TEAMCITY_DOWNLOAD_ENDPOINT = "repository/download/{build_type}/{build_id}:id/{binary_path}"
TEAMCITY_BRANCHES_LOCATOR = "default:any,policy:ACTIVE_HISTORY_AND_ACTIVE_VCS_BRANCHES"
TEAMCITY_BRANCHES_FIELDS = (
    "branch(name,builds(build(id,number,status,finishDate,branchName),"
    "$locator(state:finished,status:SUCCESS,count:1)))"
)
TEAMCITY_BUILD_FIELDS = "count,build(id,number,status,finishDate,branchName,buildTypeId)"
TEAMCITY_BRANCH_LOCATOR = (
    "buildType:{build_type},branch:{branch},state:finished,status:SUCCESS,count:{count}"
)
TEAMCITY_VERSION_LOCATOR = (
    "buildType:{build_type},number:{version},"
    "branch:(default:any,policy:ALL_BRANCHES),state:finished,status:SUCCESS,count:1"
)
TEAMCITY_BRANCH_BUILD_COUNT = 10
TEAMCITY_SUCCESS_STATUS = "SUCCESS"
TEAMCITY_DATE_FORMAT = "%Y%m%dT%H%M%S%z"

# Cache layout
CACHE_KEY_SEPARATOR = "@"
CACHE_METADATA_SUFFIX = ".json"
CACHE_PARTIAL_SUFFIX = ".part"

# Windows installers
POWERSHELL_COMMAND = ["powershell", "-NoProfile", "-NonInteractive", "-Command"]
MSIEXEC = "msiexec"
MSI_USER_CANCELLED_EXIT_CODE = 1602
APPX_INSTALL_SCRIPT = "Install.ps1"
WINDOWS_UNINSTALL_REGISTRY_KEYS = (
    r"HKLM:\Software\Microsoft\Windows\CurrentVersion\Uninstall\*",
    r"HKLM:\Software\WOW6432Node\Microsoft\Windows\CurrentVersion\Uninstall\*",
    r"HKCU:\Software\Microsoft\Windows\CurrentVersion\Uninstall\*",
)

# Standalone executables keep their installed version next to the file
STANDALONE_VERSION_SUFFIX = ".gman-version"

# macOS installers
MAC_APPLICATIONS_DIR = "/Applications"
MAC_INFO_PLIST = "Contents/Info.plist"

# Exit codes surfaced by the CLI
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_NOT_FOUND = 2
EXIT_AMBIGUOUS_TARGET = 3
EXIT_OFFLINE = 4
EXIT_INSTALLER_FAILURE = 5
EXIT_DOWNLOAD_FAILED = 6
EXIT_INVALID_VERSION = 7
EXIT_PLATFORM_MISMATCH = 8
EXIT_INTERRUPTED = 130
