"""
Typed failures raised by the registry client.

Every error carries a human readable message; HTTP-originated errors also
keep the status code and response body so callers can surface diagnostics.
"""

from typing import Optional


class RegistryError(Exception):
    """Base class for every registry client failure."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        if self.status_code is not None:
            detail = f"{self.message} (status {self.status_code})"
        else:
            detail = self.message
        if self.body:
            detail = f"{detail}: {self.body}"
        return detail


class RegistryNotFound(RegistryError):
    """No stored registry record matches the requested id or name."""


class RegistryConflict(RegistryError):
    """A registry record with the same name already exists."""


class InvalidRegistryConfig(RegistryError):
    """The connection descriptor is missing a required field."""


class AuthenticationFailure(RegistryError):
    """The registry rejected the credentials or the token exchange failed."""


class RegistryUnreachable(RegistryError):
    """Every configured transport failed before a response was received."""


class OperationCancelled(RegistryError):
    """The caller cancelled the operation or its deadline passed."""


class RepositoryNotFound(RegistryError):
    pass


class ManifestNotFound(RegistryError):
    pass


class DigestResolutionFailure(RegistryError):
    """The registry did not report a Docker-Content-Digest for a manifest."""


class RetagFailure(RegistryError):
    pass


class ManifestPushFailure(RegistryError):
    pass


class BlobTransferFailure(RegistryError):
    """A blob could not be copied between registries.

    ``outcomes`` is filled when the failure summarises a whole image copy.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "",
                 digest: str = "", outcomes: Optional[list] = None):
        super().__init__(message, status_code=status_code, body=body)
        self.digest = digest
        self.outcomes = outcomes or []


class BlobFetchFailure(BlobTransferFailure):
    pass


class UploadInitiationFailure(BlobTransferFailure):
    pass


class UploadCompletionFailure(BlobTransferFailure):
    pass


class DigestMismatch(BlobTransferFailure):
    """Fetched blob bytes do not hash to the advertised digest."""


class PartialDeleteFailure(RegistryError):
    """Some tag or blob deletions failed while the rest went through."""

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


# Errors that abort a best-effort loop instead of being recorded per item
FATAL_ERRORS = (AuthenticationFailure, OperationCancelled)
