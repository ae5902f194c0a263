"""
Custom exceptions for gman.

Every failure the core can surface is a distinct class so that callers (the CLI
in particular) can tell the kinds apart and map each one to its own exit code.
None of these errors are retried automatically.
"""

from typing import Sequence


class GManError(Exception):
    """
    Base exception for all gman errors.

    All custom exceptions in gman inherit from this class so that
    application-specific errors can be caught in one place.
    """

    def __init__(self, message: str, details: str | None = None) -> None:
        """
        Initialize the exception.

        Args:
            message: The primary error message.
            details: Optional additional context about the error.
        """
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(GManError):
    """
    Exception raised when configuration is invalid or missing.

    This includes:
    - Configuration file parsing errors
    - Unknown platform or package type names
    - Package types that are not valid for their platform
    - Duplicate product names or flavor ids
    """

    def __init__(
        self,
        message: str,
        path: str | None = None,
        field: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.path = path
        self.field = field


# =============================================================================
# Version Errors
# =============================================================================


class InvalidVersionError(GManError):
    """
    Exception raised when a string cannot be parsed by the version model.

    Attributes:
        value: The rejected version string.
    """

    def __init__(self, value: str, details: str | None = None) -> None:
        super().__init__(f"Invalid version: {value!r}", details)
        self.value = value


# =============================================================================
# Repository Errors
# =============================================================================


class RepositoryError(GManError):
    """
    Exception raised when a single repository query fails.

    These are degradable: listing skips the failing repository and the
    resolver falls back to a cached candidate where policy allows.

    Attributes:
        repository: Name of the repository that failed.
        status_code: HTTP status code, when the server answered.
    """

    def __init__(
        self,
        message: str,
        repository: str | None = None,
        status_code: int | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.repository = repository
        self.status_code = status_code


class RepositoryUnavailableError(RepositoryError):
    """
    Exception raised when a repository cannot be reached at all.

    This includes:
    - Connection timeouts
    - DNS resolution failures
    - Connection refused errors
    """

    pass


class RepositoryPlatformMismatchError(GManError):
    """Exception raised when a repository is asked about a platform it does not serve."""

    def __init__(self, repository: str, platform: str) -> None:
        super().__init__(
            f"Repository '{repository}' does not serve platform {platform}"
        )
        self.repository = repository
        self.platform = platform


class NoSuccessfulBuildError(GManError):
    """Exception raised when a branch has no successful build to resolve to."""

    def __init__(
        self, flavor_id: str, branch: str, repository: str | None = None
    ) -> None:
        super().__init__(
            f"No successful build for flavor '{flavor_id}' on branch '{branch}'",
            f"repository: {repository}" if repository else None,
        )
        self.flavor_id = flavor_id
        self.branch = branch
        self.repository = repository


class DownloadFailedError(GManError):
    """
    Exception raised when an artifact download does not complete.

    Attributes:
        url: The URL that was being downloaded.
        status_code: HTTP status code for non-success responses.
        expected_bytes: Content length announced by the server, if any.
        received_bytes: Bytes actually received before the stream ended.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        status_code: int | None = None,
        expected_bytes: int | None = None,
        received_bytes: int | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.url = url
        self.status_code = status_code
        self.expected_bytes = expected_bytes
        self.received_bytes = received_bytes


# =============================================================================
# Resolution Errors
# =============================================================================


class CandidateNotFoundError(GManError):
    """Exception raised when no candidate satisfies an install request."""

    def __init__(
        self,
        product: str,
        flavor: str | None = None,
        version_or_branch: str | None = None,
        details: str | None = None,
    ) -> None:
        target = product
        if flavor:
            target = f"{target} ({flavor})"
        if version_or_branch:
            target = f"{target} {version_or_branch}"
        super().__init__(f"No candidate found for {target}", details)
        self.product = product
        self.flavor = flavor
        self.version_or_branch = version_or_branch


class OfflineError(GManError):
    """Exception raised when network access is required but unavailable and nothing is cached."""

    pass


# =============================================================================
# Installed Item Errors
# =============================================================================


class TargetNotFoundError(GManError):
    """Exception raised when an uninstall name matches no installed item."""

    def __init__(self, name: str, version: str | None = None) -> None:
        super().__init__(
            f"No installed item matches '{name}'",
            f"version {version}" if version else None,
        )
        self.name = name
        self.version = version


class AmbiguousTargetError(GManError):
    """
    Exception raised when an uninstall name matches more than one product.

    Attributes:
        name: The name supplied by the user.
        matches: Names of the distinct products that matched.
    """

    def __init__(self, name: str, matches: Sequence[str]) -> None:
        super().__init__(
            f"'{name}' matches more than one installed product",
            ", ".join(matches),
        )
        self.name = name
        self.matches = list(matches)


# =============================================================================
# Installer Errors
# =============================================================================


class InstallerError(GManError):
    """
    Base exception for failures of the platform installer tooling.

    Attributes:
        native_error: Output or message produced by the platform tool.
        exit_code: Exit code of the platform tool, when it ran.
    """

    def __init__(
        self,
        message: str,
        native_error: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message, native_error)
        self.native_error = native_error
        self.exit_code = exit_code


class InstallationFailedError(InstallerError):
    """Exception raised when installing an artifact fails."""

    def __init__(
        self,
        artifact: str,
        native_error: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(f"Installation of {artifact} failed", native_error, exit_code)
        self.artifact = artifact


class UninstallationFailedError(InstallerError):
    """Exception raised when removing an installed item fails."""

    def __init__(
        self,
        identifier: str,
        native_error: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(
            f"Uninstallation of {identifier} failed", native_error, exit_code
        )
        self.identifier = identifier
