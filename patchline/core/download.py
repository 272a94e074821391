"""Resumable, retrying HTTP download engine.

Artifacts are streamed straight to disk in fixed-size chunks. An existing
partial file is resumed with a byte-range request when the server advertises
a larger total; a server that ignores the range causes a restart from zero.
Transport failures and HTTP 408/429/5xx are retried with linear backoff,
403 is surfaced immediately so the caller can fail over to another source.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from pathlib import Path

import httpx
import structlog

from patchline.core.cancel import CancellationToken, ensure_token
from patchline.core.config import DownloadConfig
from patchline.core.errors import (
    ArtifactNotFoundError,
    AuthorizationError,
    DownloadError,
    ForbiddenError,
    OperationCancelledError,
    TransientDownloadError,
    TruncatedDownloadError,
)

logger = structlog.get_logger()

# (percent, bytes_so_far, total_bytes); total is 0 when unknown
DownloadProgress = Callable[[int, int, int], None]

RETRYABLE_STATUSES = frozenset({408, 429})
_CONTENT_RANGE_RE = re.compile(r"bytes\s+\d+-\d+/(\d+)")


def raise_for_status(response: httpx.Response, url: str) -> None:
    """Map an HTTP error status onto the error taxonomy.

    Args:
        response: Response whose status to check
        url: Requested URL, for error context

    Raises:
        ForbiddenError: On 403
        AuthorizationError: On 401
        ArtifactNotFoundError: On 404/410
        TransientDownloadError: On 408, 429 and 5xx
        DownloadError: On any other 4xx
    """
    status = response.status_code
    if status < 400:
        return

    message = f"HTTP {status} from {url}"
    if status == 403:
        raise ForbiddenError(message, url=url, status_code=status)
    if status == 401:
        raise AuthorizationError(message, url=url, status_code=status)
    if status in (404, 410):
        raise ArtifactNotFoundError(message, url=url, status_code=status)
    if status in RETRYABLE_STATUSES or status >= 500:
        raise TransientDownloadError(message, url=url, status_code=status)
    raise DownloadError(message, url=url, status_code=status)


class DownloadEngine:
    """Resumable download primitive shared by every source.

    Args:
        config: Download configuration
        client: Optional pre-built async HTTP client (tests inject one
            backed by ``httpx.MockTransport``)
    """

    def __init__(
        self,
        config: DownloadConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config or DownloadConfig()
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout,
                verify=self.config.verify_ssl,
                follow_redirects=True,
                headers={"User-Agent": self.config.user_agent},
            )
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this engine created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> DownloadEngine:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def head_size(
        self, url: str, cancel: CancellationToken | None = None
    ) -> int | None:
        """Get the advertised size of a remote file.

        Args:
            url: File URL
            cancel: Cancellation token

        Returns:
            Size in bytes, or None when unknown or the request failed
        """
        token = ensure_token(cancel)
        try:
            response = await token.run(self.client.head(url))
        except httpx.HTTPError as e:
            logger.debug("head_failed", url=url, error=str(e))
            return None

        if response.status_code >= 400:
            logger.debug("head_status", url=url, status=response.status_code)
            return None

        length = response.headers.get("content-length", "")
        return int(length) if length.isdigit() else None

    async def exists(self, url: str, cancel: CancellationToken | None = None) -> bool:
        """Check whether a remote file exists.

        Args:
            url: File URL
            cancel: Cancellation token

        Returns:
            True if a HEAD request succeeds
        """
        token = ensure_token(cancel)
        try:
            response = await token.run(self.client.head(url))
        except httpx.HTTPError as e:
            logger.debug("exists_check_failed", url=url, error=str(e))
            return False
        return response.status_code < 400

    async def fetch(
        self,
        url: str,
        destination: Path,
        on_progress: DownloadProgress | None = None,
        cancel: CancellationToken | None = None,
        headers: dict[str, str] | None = None,
    ) -> int:
        """Download ``url`` to ``destination`` with resume and retry.

        Args:
            url: File URL
            destination: Target path; an existing file is treated as a partial
            on_progress: Called after every chunk with
                (percent, bytes_so_far, total_bytes)
            cancel: Cancellation token, checked between chunks
            headers: Extra request headers

        Returns:
            Final size of the file in bytes

        Raises:
            OperationCancelledError: On cancellation (never retried)
            ForbiddenError: On HTTP 403 (never retried)
            AuthorizationError: On HTTP 401
            ArtifactNotFoundError: On HTTP 404/410
            TransientDownloadError: When retries are exhausted
        """
        token = ensure_token(cancel)
        max_attempts = self.config.max_attempts
        last_error: TransientDownloadError | None = None

        for attempt in range(1, max_attempts + 1):
            token.raise_if_cancelled()
            try:
                size = await self._fetch_once(url, destination, on_progress, token, headers)
                logger.info(
                    "download_complete",
                    url=url,
                    path=str(destination),
                    size=size,
                    attempt=attempt,
                )
                return size
            except TransientDownloadError as e:
                last_error = e
            except httpx.TransportError as e:
                last_error = TransientDownloadError(
                    f"Transport error from {url}: {e}", url=url
                )

            if attempt < max_attempts:
                delay = self.config.backoff_step * attempt
                logger.debug(
                    "download_retry",
                    url=url,
                    attempt=attempt,
                    wait=delay,
                    error=str(last_error),
                )
                await token.sleep(delay)

        logger.warning("download_failed", url=url, attempts=max_attempts, error=str(last_error))
        assert last_error is not None
        raise last_error

    async def _fetch_once(
        self,
        url: str,
        destination: Path,
        on_progress: DownloadProgress | None,
        cancel: CancellationToken,
        headers: dict[str, str] | None,
    ) -> int:
        """Single download attempt."""
        existing = destination.stat().st_size if destination.exists() else 0
        total = await self.head_size(url, cancel)

        if existing > 0 and total is not None:
            if existing == total:
                logger.info("download_already_complete", path=str(destination), size=total)
                self._report(on_progress, total, total)
                return total
            if existing > total:
                logger.warning(
                    "partial_larger_than_remote",
                    path=str(destination),
                    existing=existing,
                    total=total,
                )
                destination.unlink()
                existing = 0

        resume = existing > 0 and total is not None
        request_headers = dict(headers or {})
        if resume:
            request_headers["Range"] = f"bytes={existing}-"
            logger.info("download_resume", url=url, offset=existing, total=total)
        else:
            existing = 0

        async with self.client.stream("GET", url, headers=request_headers) as response:
            raise_for_status(response, url)

            if resume and response.status_code != 206:
                logger.warning("range_not_honored", url=url, status=response.status_code)
                resume = False
                existing = 0

            if total is None:
                total = self._total_from_response(response, existing if resume else 0)

            destination.parent.mkdir(parents=True, exist_ok=True)
            received = existing
            with open(destination, "ab" if resume else "wb") as f:
                async for chunk in response.aiter_bytes(self.config.chunk_size):
                    f.write(chunk)
                    received += len(chunk)
                    self._report(on_progress, received, total)
                    cancel.raise_if_cancelled()

        if total is not None and received != total:
            if received > total:
                destination.unlink()
            raise TruncatedDownloadError(url, received, total)

        return received

    @staticmethod
    def _total_from_response(response: httpx.Response, offset: int) -> int | None:
        """Derive the full file size from response headers."""
        content_range = response.headers.get("content-range", "")
        match = _CONTENT_RANGE_RE.match(content_range)
        if match:
            return int(match.group(1))

        length = response.headers.get("content-length", "")
        if length.isdigit():
            return int(length) + offset
        return None

    @staticmethod
    def _report(on_progress: DownloadProgress | None, received: int, total: int | None) -> None:
        """Invoke the progress callback without letting it break the download."""
        if on_progress is None:
            return
        percent = (received * 100) // total if total else 0
        try:
            on_progress(percent, received, total or 0)
        except OperationCancelledError:
            raise
        except Exception as e:
            logger.debug("progress_callback_failed", error=str(e))
