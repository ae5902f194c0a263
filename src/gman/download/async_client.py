"""
Async HTTP Client for gman

This module provides the non-blocking HTTP transport used by repository
sources: JSON queries and streamed artifact downloads with progress reporting,
truncation detection and atomic placement of the finished file.
"""

import asyncio
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles  # type: ignore[import-untyped]
import aiohttp
from aiohttp import BasicAuth as AiohttpBasicAuth
from aiohttp import ClientSession, ClientTimeout, TCPConnector

from gman.config import BasicAuth, BearerToken, Credentials
from gman.constants import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_DOWNLOAD_CHUNK_SIZE,
    DEFAULT_REQUEST_TIMEOUT,
    HTTP_CONNECTION_LIMIT,
    JSON_CONTENT_TYPE,
    USER_AGENT,
)
from gman.exceptions import (
    DownloadFailedError,
    RepositoryError,
    RepositoryUnavailableError,
)
from gman.log_utils import logger

from .interfaces import Pathish, ProgressCallback

HTTP_STATUS_ERROR_THRESHOLD = 400
UNAUTHORIZED_STATUSES = (401, 403)
NOT_FOUND_STATUS = 404
BYTES_PER_MEGABYTE = 1024 * 1024


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.debug(f"Could not remove temporary file {path}: {e}")


class AsyncRepositoryClient:
    """
    Asynchronous HTTP client bound to one repository server.

    Credentials are attached to every request: a bearer token as an
    `Authorization` header, basic credentials through aiohttp's BasicAuth.

    Example:
        async with AsyncRepositoryClient("CI", "https://ci.example.com") as client:
            data = await client.get_json("app/rest/builds", {"locator": "..."})
    """

    def __init__(
        self,
        repository_name: str,
        base_url: str,
        credentials: Optional[Credentials] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        chunk_size: int = DEFAULT_DOWNLOAD_CHUNK_SIZE,
        connector_limit: int = HTTP_CONNECTION_LIMIT,
    ) -> None:
        self.repository_name = repository_name
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.timeout = ClientTimeout(total=timeout, connect=DEFAULT_CONNECT_TIMEOUT)
        self.chunk_size = max(1, int(chunk_size))
        self.connector_limit = max(1, int(connector_limit))
        self._session: Optional[ClientSession] = None

    async def __aenter__(self) -> "AsyncRepositoryClient":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _ensure_session(self) -> ClientSession:
        """
        Ensure a session exists, creating one if needed.

        Returns:
            ClientSession: The active aiohttp session.
        """
        if self._session is None or self._session.closed:
            connector = TCPConnector(
                limit=self.connector_limit,
                enable_cleanup_closed=True,
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers=self._get_default_headers(),
                auth=self._get_basic_auth(),
            )
        return self._session

    def _get_default_headers(self) -> Dict[str, str]:
        headers = {"Accept": JSON_CONTENT_TYPE, "User-Agent": USER_AGENT}
        if isinstance(self.credentials, BearerToken):
            headers["Authorization"] = f"Bearer {self.credentials.token}"
        return headers

    def _get_basic_auth(self) -> Optional[AiohttpBasicAuth]:
        if isinstance(self.credentials, BasicAuth):
            return AiohttpBasicAuth(
                self.credentials.username, self.credentials.password
            )
        return None

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def close(self) -> None:
        """Close the client session and release resources."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _status_error(self, status: int, url: str) -> RepositoryError:
        if status in UNAUTHORIZED_STATUSES:
            message = "Not authorized"
        elif status == NOT_FOUND_STATUS:
            message = "Not found"
        else:
            message = f"HTTP error {status}"
        return RepositoryError(
            message,
            repository=self.repository_name,
            status_code=status,
            details=url,
        )

    async def get_json(
        self, path: str, params: Optional[Dict[str, str]] = None
    ) -> Any:
        """
        GET a JSON document from the repository.

        Parameters:
            path (str): Path relative to the repository's base URL.
            params (Optional[Dict[str, str]]): Query parameters.

        Returns:
            Any: The decoded JSON body.

        Raises:
            RepositoryError: On an error status or an undecodable body.
            RepositoryUnavailableError: When the server cannot be reached.
        """
        session = await self._ensure_session()
        url = self.url_for(path)
        logger.debug(f"GET {url} params={params}")
        try:
            async with session.get(url, params=params) as response:
                if response.status >= HTTP_STATUS_ERROR_THRESHOLD:
                    raise self._status_error(response.status, url)
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise RepositoryError(
                        "Invalid JSON in response",
                        repository=self.repository_name,
                        status_code=response.status,
                        details=str(e),
                    ) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RepositoryUnavailableError(
                f"Could not reach repository: {e or type(e).__name__}",
                repository=self.repository_name,
                details=url,
            ) from e

    async def download_file(
        self,
        url: str,
        target_path: Pathish,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> int:
        """
        Stream `url` into `target_path`, replacing it atomically once complete.

        Parameters:
            url (str): Absolute artifact URL.
            target_path (Pathish): Destination file; parent directories are created.
            progress_callback (Optional[ProgressCallback]): Called with (downloaded, total or None, filename)
                after each chunk. May be a coroutine function; its errors are logged and ignored.

        Returns:
            int: Number of bytes written.

        Raises:
            DownloadFailedError: On a non-success status, a network error, a filesystem error,
                or when fewer bytes arrive than the server announced. The temporary file is
                removed in every failure case, including cancellation.
        """
        session = await self._ensure_session()
        target = Path(target_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp_path = target.with_name(
            f"{target.name}.tmp.{os.getpid()}.{int(time.time() * 1000)}"
        )

        try:
            start_time = time.time()
            async with session.get(url) as response:
                if response.status >= HTTP_STATUS_ERROR_THRESHOLD:
                    raise DownloadFailedError(
                        f"HTTP error {response.status}",
                        url=url,
                        status_code=response.status,
                    )

                # Content-Length counts encoded bytes when the body is compressed
                total_size = 0
                if not response.headers.get("Content-Encoding"):
                    raw_content_length = response.headers.get("Content-Length")
                    try:
                        total_size = (
                            int(raw_content_length) if raw_content_length else 0
                        )
                    except (TypeError, ValueError):
                        total_size = 0
                downloaded = 0

                async with aiofiles.open(temp_path, "wb") as f:
                    async for chunk in response.content.iter_chunked(self.chunk_size):
                        await f.write(chunk)
                        downloaded += len(chunk)

                        if progress_callback:
                            try:
                                result = progress_callback(
                                    downloaded, total_size or None, target.name
                                )
                                if asyncio.iscoroutine(result):
                                    await result
                            except Exception as cb_err:
                                logger.debug(f"Progress callback error: {cb_err}")

            if total_size and downloaded != total_size:
                raise DownloadFailedError(
                    "Download truncated",
                    url=url,
                    expected_bytes=total_size,
                    received_bytes=downloaded,
                    details=f"expected {total_size} bytes, received {downloaded}",
                )

            temp_path.replace(target)
            elapsed = time.time() - start_time
            logger.debug(
                f"Downloaded {url} in {elapsed:.2f}s "
                f"({downloaded / BYTES_PER_MEGABYTE:.2f} MB)"
            )
            return downloaded

        except DownloadFailedError:
            _remove_quietly(temp_path)
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            _remove_quietly(temp_path)
            logger.error(f"Download failed for {url}: {e}")
            raise DownloadFailedError(
                f"Download failed: {e or type(e).__name__}", url=url
            ) from e
        except OSError as e:
            _remove_quietly(temp_path)
            logger.error(f"Filesystem error saving {target}: {e}")
            raise DownloadFailedError(f"Filesystem error: {e}", url=url) from e
        except BaseException:
            # Cancellation and interrupts must not leave partial files behind
            _remove_quietly(temp_path)
            raise
