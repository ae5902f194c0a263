"""
Artifact Cache for the gman Download Subsystem

Artifacts are stored one file per (product, flavor, version) key in a flat
directory. The key is encoded in the file name, so the directory listing is
the index. A JSON sidecar next to each artifact records where it came from.
New entries are written to a temporary file in the same directory and moved
into place with os.replace, so a lookup never observes a partial artifact.
"""

import errno
import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Callable, Iterable, List, Optional, Tuple, Union
from urllib.parse import quote, unquote

import platformdirs

from gman.constants import (
    APP_NAME,
    CACHE_KEY_SEPARATOR,
    CACHE_METADATA_SUFFIX,
    CACHE_PARTIAL_SUFFIX,
    CACHE_SUBDIR_NAME,
)
from gman.exceptions import InvalidVersionError
from gman.log_utils import logger
from gman.products import Flavor, Platform

from .interfaces import CacheEntry, Pathish
from .version import Version

TEMP_PREFIX = "tmp-"
COPY_BUFFER_SIZE = 1024 * 1024

ByteSource = Union[bytes, Iterable[bytes], IO[bytes]]
FlavorRef = Union[Flavor, str]


def _flavor_id(flavor: FlavorRef) -> str:
    return flavor.id if isinstance(flavor, Flavor) else str(flavor)


def _as_version(version: Union[Version, str]) -> Version:
    return version if isinstance(version, Version) else Version(version)


def _atomic_write(
    file_path: Path, writer_func: Callable[[IO[bytes]], None]
) -> None:
    """
    Write a file atomically by writing to a temporary sibling and replacing the target.

    The temporary file is removed on any failure, including cancellation.

    Raises:
        OSError: If the temporary file cannot be created, written or moved into place.
    """
    temp_fd, temp_path = tempfile.mkstemp(
        dir=file_path.parent, prefix=TEMP_PREFIX, suffix=CACHE_PARTIAL_SUFFIX
    )
    try:
        with os.fdopen(temp_fd, "wb") as temp_f:
            writer_func(temp_f)
            temp_f.flush()
            os.fsync(temp_f.fileno())
        os.replace(temp_path, file_path)
    finally:
        if os.path.exists(temp_path):
            try:
                os.remove(temp_path)
            except OSError:
                pass


def _stage_json(file_path: Path, data: dict) -> Path:
    """
    Write JSON to a temporary sibling of file_path and return its path.

    The caller moves it into place with os.replace once the matching artifact is
    committed, and removes it with _discard otherwise.
    """
    payload = json.dumps(data, indent=2).encode("utf-8")
    temp_fd, temp_path = tempfile.mkstemp(
        dir=file_path.parent, prefix=TEMP_PREFIX, suffix=CACHE_METADATA_SUFFIX
    )
    try:
        with os.fdopen(temp_fd, "wb") as temp_f:
            temp_f.write(payload)
    except BaseException:
        _discard(Path(temp_path))
        raise
    return Path(temp_path)


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.debug(f"Could not remove {path}: {e}")


def _move_into_place(source: Path, target: Path) -> None:
    try:
        os.replace(source, target)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        with open(source, "rb") as f:
            _atomic_write(target, lambda out: _copy_stream(f, out))
        source.unlink()


def _copy_stream(stream: ByteSource, out: IO[bytes]) -> None:
    if isinstance(stream, (bytes, bytearray)):
        out.write(stream)
    elif hasattr(stream, "read"):
        while True:
            chunk = stream.read(COPY_BUFFER_SIZE)  # type: ignore[union-attr]
            if not chunk:
                break
            out.write(chunk)
    else:
        for chunk in stream:
            out.write(chunk)


class ArtifactCache:
    """
    Content store for downloaded artifacts keyed by (product, flavor, version).

    Product and flavor names match case-insensitively. Versions are stored under
    their literal string; an exact lookup prefers that literal and falls back to
    any stored version that compares equal (e.g. `5.2.4670` for `5.2.4670.0`).
    """

    def __init__(self, cache_dir: Optional[Pathish] = None) -> None:
        """
        Initialize the cache.

        Parameters:
            cache_dir (Optional[Pathish]): Directory holding the artifacts. Defaults to the
                `artifacts` folder inside the platformdirs user cache directory.
        """
        self.cache_dir = Path(cache_dir) if cache_dir else self._get_default_cache_dir()
        self._ensure_cache_dir_exists()

    def _get_default_cache_dir(self) -> Path:
        return Path(platformdirs.user_cache_dir(APP_NAME)) / CACHE_SUBDIR_NAME

    def _ensure_cache_dir_exists(self) -> None:
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Could not create cache directory {self.cache_dir}: {e}")
            raise

    # ------------------------------------------------------------------
    # Key encoding
    # ------------------------------------------------------------------

    def entry_path(self, product: str, flavor: Flavor, version: Version) -> Path:
        parts = (
            product,
            flavor.platform.value,
            flavor.id,
            version.raw,
            flavor.binary_name,
        )
        name = CACHE_KEY_SEPARATOR.join(quote(p, safe="") for p in parts)
        return self.cache_dir / name

    @staticmethod
    def _metadata_path(artifact: Path) -> Path:
        return artifact.with_name(artifact.name + CACHE_METADATA_SUFFIX)

    def _read_entry(self, artifact: Path) -> Optional[CacheEntry]:
        parts = artifact.name.split(CACHE_KEY_SEPARATOR)
        if len(parts) != 5:
            return None
        product, platform_name, flavor_id, version_raw, _binary = (
            unquote(p) for p in parts
        )
        try:
            version = Version(version_raw)
        except InvalidVersionError:
            logger.debug(f"Ignoring cache file with invalid version: {artifact.name}")
            return None
        try:
            platform: Optional[Platform] = Platform.parse(platform_name)
        except ValueError:
            platform = None

        metadata = self._read_metadata(artifact)
        fetched_at = None
        if metadata.get("fetched_at"):
            try:
                fetched_at = datetime.fromisoformat(metadata["fetched_at"])
            except (TypeError, ValueError):
                fetched_at = None
        if fetched_at is None:
            try:
                fetched_at = datetime.fromtimestamp(
                    artifact.stat().st_mtime, tz=timezone.utc
                )
            except OSError:
                return None

        return CacheEntry(
            product=product,
            flavor=flavor_id,
            version=version,
            path=artifact,
            fetched_at=fetched_at,
            platform=platform,
            branch=metadata.get("branch"),
            build_id=metadata.get("build_id"),
            repository=metadata.get("repository"),
        )

    def _read_metadata(self, artifact: Path) -> dict:
        meta_path = self._metadata_path(artifact)
        try:
            with open(meta_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.debug(f"Unreadable cache metadata {meta_path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _iter_entries(self) -> Iterable[CacheEntry]:
        try:
            candidates = sorted(self.cache_dir.iterdir())
        except FileNotFoundError:
            return
        for path in candidates:
            name = path.name
            if (
                name.startswith(TEMP_PREFIX)
                or name.endswith(CACHE_PARTIAL_SUFFIX)
                or name.endswith(CACHE_METADATA_SUFFIX)
                or not path.is_file()
            ):
                continue
            entry = self._read_entry(path)
            if entry is not None:
                yield entry

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_entries(
        self,
        product: Optional[str] = None,
        flavor: Optional[FlavorRef] = None,
        version: Optional[Union[Version, str]] = None,
    ) -> List[CacheEntry]:
        """
        List cached entries matching the optional filter.

        Returns:
            List[CacheEntry]: Sorted by product, then flavor, then version descending.
        """
        wanted_version = _as_version(version) if version is not None else None
        product_key = product.lower() if product else None
        flavor_key = _flavor_id(flavor).lower() if flavor is not None else None

        matches = [
            entry
            for entry in self._iter_entries()
            if (product_key is None or entry.product.lower() == product_key)
            and (flavor_key is None or entry.flavor.lower() == flavor_key)
            and (wanted_version is None or entry.version == wanted_version)
        ]
        matches.sort(key=lambda e: e.version, reverse=True)
        matches.sort(key=lambda e: (e.product.lower(), e.flavor.lower()))
        return matches

    def lookup(
        self,
        product: str,
        flavor: FlavorRef,
        version: Optional[Union[Version, str]] = None,
    ) -> Optional[CacheEntry]:
        """
        Find a cached artifact.

        Parameters:
            product (str): Product name.
            flavor (Flavor | str): Flavor or flavor id.
            version (Version | str | None): Exact version wanted; None selects the highest cached version.

        Returns:
            Optional[CacheEntry]: The matching entry, or None.
        """
        entries = self.list_entries(product, flavor)
        if not entries:
            return None
        if version is None:
            return max(entries, key=lambda e: (e.version, e.fetched_at))

        wanted = _as_version(version)
        for entry in entries:
            if entry.version.raw == wanted.raw:
                return entry
        for entry in entries:
            if entry.version == wanted:
                return entry
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _stage_metadata(self, artifact: Path, **fields: Any) -> Tuple[Path, datetime]:
        fetched_at = datetime.now(timezone.utc)
        data = {k: v for k, v in fields.items() if v is not None}
        data["fetched_at"] = fetched_at.isoformat()
        return _stage_json(artifact, data), fetched_at

    def _commit(
        self, artifact: Path, staged_metadata: Path, write: Callable[[], None]
    ) -> None:
        # The sidecar only replaces the old one after the artifact itself is in place
        try:
            write()
            os.replace(staged_metadata, self._metadata_path(artifact))
        finally:
            _discard(staged_metadata)

    def _replace_same_key(
        self, product: str, flavor: Flavor, version: Version, keep: Path
    ) -> None:
        # Drop entries under the same literal key written with another platform or binary name
        for entry in self.list_entries(product, flavor):
            if entry.version.raw == version.raw and entry.path != keep:
                self._remove_entry(entry)

    def store(
        self,
        product: str,
        flavor: Flavor,
        version: Union[Version, str],
        stream: ByteSource,
        branch: Optional[str] = None,
        build_id: Optional[int] = None,
        repository: Optional[str] = None,
    ) -> CacheEntry:
        """
        Write an artifact into the cache atomically, replacing any entry with the same key.

        Parameters:
            stream (bytes | Iterable[bytes] | IO[bytes]): Artifact content.

        Returns:
            CacheEntry: The stored entry.

        Raises:
            OSError: If the artifact cannot be written.
        """
        version = _as_version(version)
        artifact = self.entry_path(product, flavor, version)
        staged, fetched_at = self._stage_metadata(
            artifact, branch=branch, build_id=build_id, repository=repository
        )
        self._commit(
            artifact,
            staged,
            lambda: _atomic_write(artifact, lambda f: _copy_stream(stream, f)),
        )
        self._replace_same_key(product, flavor, version, artifact)
        logger.debug(f"Cached {artifact.name}")
        return self._entry_for(
            product, flavor, version, artifact, fetched_at, branch, build_id, repository
        )

    def store_file(
        self,
        product: str,
        flavor: Flavor,
        version: Union[Version, str],
        source_path: Pathish,
        branch: Optional[str] = None,
        build_id: Optional[int] = None,
        repository: Optional[str] = None,
    ) -> CacheEntry:
        """
        Move a completed download into the cache.

        The file is renamed into place when it lives on the same filesystem as the
        cache, and copied through a temporary file otherwise. The source is gone afterwards.
        """
        version = _as_version(version)
        source = Path(source_path)
        artifact = self.entry_path(product, flavor, version)
        staged, fetched_at = self._stage_metadata(
            artifact, branch=branch, build_id=build_id, repository=repository
        )
        self._commit(artifact, staged, lambda: _move_into_place(source, artifact))
        self._replace_same_key(product, flavor, version, artifact)
        logger.debug(f"Cached {artifact.name}")
        return self._entry_for(
            product, flavor, version, artifact, fetched_at, branch, build_id, repository
        )

    @staticmethod
    def _entry_for(
        product: str,
        flavor: Flavor,
        version: Version,
        artifact: Path,
        fetched_at: datetime,
        branch: Optional[str],
        build_id: Optional[int],
        repository: Optional[str],
    ) -> CacheEntry:
        return CacheEntry(
            product=product,
            flavor=flavor.id,
            version=version,
            path=artifact,
            fetched_at=fetched_at,
            platform=flavor.platform,
            branch=branch,
            build_id=build_id,
            repository=repository,
        )

    def _remove_entry(self, entry: CacheEntry) -> bool:
        removed = False
        try:
            entry.path.unlink()
            removed = True
        except FileNotFoundError:
            pass
        try:
            self._metadata_path(entry.path).unlink()
        except FileNotFoundError:
            pass
        return removed

    def evict(
        self,
        product: Optional[str] = None,
        flavor: Optional[FlavorRef] = None,
        version: Optional[Union[Version, str]] = None,
    ) -> int:
        """
        Remove entries matching the filter; no filter removes everything.

        Returns:
            int: Number of entries removed. Zero when nothing matched.
        """
        removed = 0
        for entry in self.list_entries(product, flavor, version):
            if self._remove_entry(entry):
                removed += 1

        if product is None and flavor is None and version is None:
            self._remove_leftovers()

        logger.debug(f"Evicted {removed} cache entr{'y' if removed == 1 else 'ies'}")
        return removed

    def _remove_leftovers(self) -> None:
        for path in self.cache_dir.iterdir():
            if path.is_file() and (
                path.name.startswith(TEMP_PREFIX)
                or path.name.endswith(CACHE_METADATA_SUFFIX)
                or path.name.endswith(CACHE_PARTIAL_SUFFIX)
            ):
                try:
                    path.unlink()
                except OSError as e:
                    logger.debug(f"Could not remove {path}: {e}")
