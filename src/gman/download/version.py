"""
Version model for gman.

CI build numbers come in two shapes: dot-separated numeric tuples of any arity
(`5.2.4670.0`) and a numeric prefix with a hyphenated build suffix
(`5.2.1-7059`). Both map onto PEP 440 release and post-release segments, so
ordering is delegated to `packaging.version`: missing trailing components count
as zero and a hyphen suffix only breaks ties between equal prefixes. Anything
else, including branch names, is rejected with InvalidVersionError.
"""

import functools
import re
from typing import Optional, Tuple

from packaging.version import InvalidVersion
from packaging.version import Version as _PackagingVersion

from gman.exceptions import InvalidVersionError
from gman.log_utils import logger


@functools.total_ordering
class Version:
    """
    A comparable build version.

    The literal string is kept in `raw` so cache keys and messages show the
    version exactly as the server reported it, while comparisons and hashing
    use the padded numeric value.
    """

    VERSION_RX = re.compile(r"^\d+(?:\.\d+)*(?:-\d+)?$")

    __slots__ = ("raw", "_key")

    def __init__(self, value: str) -> None:
        if not isinstance(value, str):
            raise InvalidVersionError(repr(value), "version must be a string")
        text = value.strip()
        if not self.VERSION_RX.match(text):
            raise InvalidVersionError(value)
        try:
            self._key = _PackagingVersion(text)
        except InvalidVersion as e:
            raise InvalidVersionError(value, str(e)) from e
        self.raw = text

    @property
    def release(self) -> Tuple[int, ...]:
        return self._key.release

    @property
    def build(self) -> Optional[int]:
        """Hyphenated build suffix, if the version has one."""
        return self._key.post

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key == other._key

    def __lt__(self, other: "Version") -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key < other._key

    def __hash__(self) -> int:
        return hash(self._key)

    def __str__(self) -> str:
        return self.raw

    def __repr__(self) -> str:
        return f"Version({self.raw!r})"


def parse_version(value: str) -> Version:
    """
    Parse a version string.

    Raises:
        InvalidVersionError: If `value` is not a numeric dotted version, optionally with a hyphenated build suffix.
    """
    return Version(value)


def is_version_string(value: Optional[str]) -> bool:
    """Return True if `value` is a concrete version rather than a branch or tag name."""
    if not value:
        return False
    return Version.VERSION_RX.match(value.strip()) is not None


def try_parse_version(value: Optional[str], context: str = "") -> Optional[Version]:
    """
    Parse `value`, logging a warning and returning None when it is not a valid version.

    Used for individual remote entries, where one malformed build number should only
    exclude that entry.
    """
    try:
        return Version(value or "")
    except InvalidVersionError as e:
        suffix = f" ({context})" if context else ""
        logger.warning(f"Skipping entry with unparseable version{suffix}: {e}")
        return None
