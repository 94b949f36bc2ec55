"""Exception hierarchy for kubernetes-scanner.

ScannerError
├── ConfigurationError   -- fatal at startup, the process exits non-zero.
├── NotFoundInCluster    -- a declared group/version/resource is not served.
├── TransientFetchError  -- reading an object failed for a reason other than 404.
├── UploadError          -- the backend rejected or never received a batch.
│   ├── UploadTransportError
│   └── UploadStatusError
└── PipelineClosedError  -- an event was offered after shutdown began.
"""

from __future__ import annotations


class ScannerError(Exception):
    """Base class for all scanner errors."""


class ConfigurationError(ScannerError):
    """The configuration file or environment is malformed."""


class NotFoundInCluster(ScannerError):
    """A group, group/version or resource does not exist on this API server."""

    def __init__(self, group: str, version: str = "", resource: str = "") -> None:
        target = "/".join(part for part in (group or "core", version, resource) if part)
        super().__init__(f"{target} not found on the API server")
        self.group = group
        self.version = version
        self.resource = resource


class TransientFetchError(ScannerError):
    """An object could not be read from the API server."""

    def __init__(self, message: str, status: int = 0) -> None:
        super().__init__(message)
        self.status = status


class UploadError(ScannerError):
    """A batch could not be delivered to the backend.

    ``status_code`` is the HTTP status of the response, or 0 when no response
    was received at all.  ``request_id`` is the id of the failed batch, as
    sent in the request header.
    """

    status_code: int = 0

    def __init__(self, message: str, request_id: str = "") -> None:
        super().__init__(message)
        self.request_id = request_id


class UploadTransportError(UploadError):
    """The request never produced an HTTP response (connect error, timeout...)."""

    status_code = 0


class UploadStatusError(UploadError):
    """The backend answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str = "", request_id: str = "") -> None:
        super().__init__(f"got non-20x HTTP code {status_code} with body {body!r}", request_id)
        self.status_code = status_code
        self.body = body


class PipelineClosedError(ScannerError):
    """The batching pipeline no longer accepts events."""
