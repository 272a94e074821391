"""Exception hierarchy for patchline.

Every failure category the update engine distinguishes has its own class so
callers can branch on type:

- transient: retried with backoff by the download engine
- authorization: never retried against the same source
- not found: the next source is tried immediately
- corruption: the step is aborted and the checkpoint is left untouched
- configuration: logged at startup, the offending source is excluded
"""

from __future__ import annotations


class PatchlineError(Exception):
    """Base class for all patchline errors."""


class OperationCancelledError(PatchlineError):
    """The caller requested cancellation."""


class DownloadError(PatchlineError):
    """HTTP download failed with a non-retryable status."""

    def __init__(self, message: str, url: str = "", status_code: int | None = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class TransientDownloadError(DownloadError):
    """Timeout, connection reset, 408/429/5xx after all retries."""


class AuthorizationError(DownloadError):
    """The source rejected the request (401/403 or expired token)."""


class ForbiddenError(AuthorizationError):
    """HTTP 403, typically an expired signed download URL."""


class ArtifactNotFoundError(DownloadError):
    """The source does not have the requested artifact."""


class CorruptionError(PatchlineError):
    """A downloaded or applied artifact is incomplete or invalid."""


class TruncatedDownloadError(TransientDownloadError, CorruptionError):
    """Stream ended before the advertised number of bytes arrived."""

    def __init__(self, url: str, received: int, expected: int):
        super().__init__(
            f"Short read from {url}: {received} of {expected} bytes",
            url=url,
        )
        self.received = received
        self.expected = expected


class PatchApplyError(CorruptionError):
    """The external patch applier failed."""


class PatchApplierMissingError(PatchlineError):
    """The external patch applier is not installed."""


class NoSourceAvailableError(PatchlineError):
    """No registered source can supply an artifact."""

    def __init__(self, branch: str, version: int | None, detail: str = ""):
        if version is None:
            message = f"No source available for {branch}"
        else:
            message = f"No source available for {branch} v{version}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.branch = branch
        self.version = version


class DescriptorError(PatchlineError):
    """A mirror descriptor is malformed or inconsistent."""


class UpdateInProgressError(PatchlineError):
    """An update is already running for this installation."""


class MirrorDiscoveryError(PatchlineError):
    """No known mirror layout was recognised at a URL."""
