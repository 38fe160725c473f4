"""Streaming downloader for app packages"""

import logging
import time
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlparse

import httpx

from deskmarket.core.marketplace.exceptions import (
    DownloadError,
    MarketplaceError,
    SizeLimitExceeded,
)

logger = logging.getLogger(__name__)

# Download limits
DEFAULT_MAX_SIZE = 500 * 1024 * 1024  # 500MB
DEFAULT_TIMEOUT = 300  # 5 minutes
CHUNK_SIZE = 64 * 1024  # 64KB chunks

USER_AGENT = "deskmarket-downloader/1.0"

ProgressCallback = Callable[[float], None]


def validate_download_url(url: str) -> None:
    """
    Validate URL format and scheme

    Args:
        url: URL to validate

    Raises:
        DownloadError: If URL is not an absolute http(s) URL
    """
    if not url or not isinstance(url, str):
        raise DownloadError("Invalid URL: empty")
    try:
        parsed = urlparse(url)
    except ValueError as e:
        raise DownloadError(f"Invalid URL format: {e}")
    if parsed.scheme not in ('http', 'https'):
        raise DownloadError(f"Invalid URL scheme: {parsed.scheme or '(none)'}. Only http/https allowed.")
    if not parsed.netloc:
        raise DownloadError("Invalid URL: missing hostname")


def _mb(size: int) -> str:
    return f"{size / 1024 / 1024:.2f}MB"


def _content_length(headers: httpx.Headers) -> Optional[int]:
    raw = headers.get("content-length")
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value >= 0 else None


class DownloadManager:
    """
    Size-enforced async downloader

    The size limit is checked three times: against the HEAD probe, against
    the GET response's Content-Length, and against the running byte count
    while streaming. Bytes beyond the limit are never written, and the
    partial file is removed on any failure.
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize downloader

        Args:
            max_size: Maximum artifact size in bytes
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.max_size = max_size
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
            transport=self.transport,
        )

    def _too_large(self, size: int) -> SizeLimitExceeded:
        return SizeLimitExceeded(
            f"File too large: {_mb(size)} (max: {_mb(self.max_size)})",
            actual_size=size,
            limit=self.max_size,
        )

    async def probe_size(self, client: httpx.AsyncClient, url: str) -> Optional[int]:
        """
        Ask the server for the artifact size with a HEAD request

        Returns:
            Declared size in bytes, or None when the probe is inconclusive
        """
        try:
            response = await client.head(url)
        except httpx.HTTPError as e:
            logger.warning(f"Size probe failed for {url}: {e}")
            return None

        if response.status_code != 200:
            logger.debug(f"Size probe for {url} returned {response.status_code}")
            return None

        return _content_length(response.headers)

    async def download(
        self,
        url: str,
        destination: Path,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> int:
        """
        Download url to destination

        Args:
            url: http(s) URL to download from
            destination: Final file path
            progress_callback: Called with a 0..1 fraction per chunk and a final 1.0

        Returns:
            Size of the downloaded file in bytes

        Raises:
            DownloadError: If the URL is invalid or the transfer fails
            SizeLimitExceeded: If the artifact is larger than max_size
        """
        validate_download_url(url)

        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        part_path = destination.with_name(destination.name + ".part")

        logger.info(f"Starting download from: {url}")
        start_time = time.monotonic()

        try:
            async with self._client() as client:
                declared = await self.probe_size(client, url)
                if declared is not None and declared > self.max_size:
                    raise self._too_large(declared)

                async with client.stream("GET", url) as response:
                    if response.status_code != 200:
                        raise DownloadError(f"Download failed with status {response.status_code}")

                    length = _content_length(response.headers)
                    if length is not None:
                        if length > self.max_size:
                            raise self._too_large(length)
                        declared = length
                    else:
                        logger.debug("Content-Length header not present, enforcing limit while streaming")

                    total = declared or self.max_size
                    downloaded = 0

                    with open(part_path, 'wb') as f:
                        async for chunk in response.aiter_bytes(CHUNK_SIZE):
                            if not chunk:
                                continue
                            downloaded += len(chunk)
                            if downloaded > self.max_size:
                                raise SizeLimitExceeded(
                                    f"Download exceeded size limit: more than {_mb(self.max_size)}",
                                    actual_size=downloaded,
                                    limit=self.max_size,
                                )
                            f.write(chunk)
                            if progress_callback:
                                progress_callback(min(downloaded / total, 1.0))

            actual_size = part_path.stat().st_size
            if actual_size > self.max_size:
                raise self._too_large(actual_size)

            part_path.replace(destination)

        except MarketplaceError:
            raise

        except httpx.HTTPError as e:
            raise DownloadError(f"Download failed: {e}")

        except OSError as e:
            raise DownloadError(f"Failed to write download: {e}")

        finally:
            if part_path.exists():
                try:
                    part_path.unlink()
                except OSError as e:
                    logger.warning(f"Failed to clean up partial file {part_path}: {e}")

        if progress_callback:
            progress_callback(1.0)

        elapsed = time.monotonic() - start_time
        logger.info(f"Download complete: {actual_size / 1024:.2f}KB in {elapsed:.2f}s -> {destination}")
        return actual_size
