# transfer.py
# Registry-to-registry blob copy: existence check, then two-phase upload.

import logging
import tempfile
from typing import BinaryIO, Union

from pipeslicer.modules.auth.client import RegistryClient
from pipeslicer.modules.errors import (
    DigestMismatch,
    UploadCompletionFailure,
    UploadInitiationFailure,
)
from pipeslicer.modules.finders.manifests import stream_blob
from pipeslicer.modules.formatters import short_digest
from pipeslicer.modules.models import BlobRef, ItemOutcome

logger = logging.getLogger(__name__)


COPIED = "copied"
SKIPPED = "skipped"


def blob_exists(client: RegistryClient, repo: str, digest: str) -> bool:
    """HEAD the blob; registries deduplicate by digest so 200 means present."""
    resp = client.request_with_retry("HEAD", f"/v2/{repo}/blobs/{digest}")
    return resp.status_code == 200


def verify_digest(actual_sha256: str, digest: str) -> None:
    """
    Check the sha256 of downloaded bytes against the advertised digest.

    Digests using other algorithms are passed through.

    Raises:
        DigestMismatch
    """
    algorithm, _, expected = digest.partition(":")
    if algorithm != "sha256":
        return
    if actual_sha256 != expected:
        raise DigestMismatch(
            f"Blob {digest} hashed to sha256:{actual_sha256}",
            digest=digest,
        )


def _session_url_with_digest(location: str, digest: str) -> str:
    separator = "&" if "?" in location else "?"
    return f"{location}{separator}digest={digest}"


def upload_blob(client: RegistryClient, repo: str, digest: str, data: Union[bytes, BinaryIO]) -> None:
    """
    Monolithic two-phase upload.

    POST opens an upload session whose URL comes back in ``Location``; one
    PUT of the whole body with ``digest=`` closes it. ``data`` may be a
    file object, which requests streams from disk.

    Raises:
        UploadInitiationFailure: POST did not answer 202
        UploadCompletionFailure: PUT did not answer 201
    """
    start_path = f"/v2/{repo}/blobs/uploads/"
    resp = client.request_with_retry("POST", start_path)
    if resp.status_code != 202:
        raise UploadInitiationFailure(
            f"Failed to initiate upload of {digest} to {repo}",
            status_code=resp.status_code,
            body=resp.text,
            digest=digest,
        )

    location = resp.headers.get("Location")
    if not location:
        raise UploadInitiationFailure(
            f"Upload session for {digest} returned no Location header",
            status_code=resp.status_code,
            digest=digest,
        )

    session_url = client.absolute_url(location, start_path)
    resp = client.request_with_retry(
        "PUT",
        _session_url_with_digest(session_url, digest),
        data=data,
        headers={"Content-Type": "application/octet-stream"},
    )
    if resp.status_code != 201:
        raise UploadCompletionFailure(
            f"Failed to complete upload of {digest} to {repo}",
            status_code=resp.status_code,
            body=resp.text,
            digest=digest,
        )


def copy_blob(
    source: RegistryClient,
    source_repo: str,
    destination: RegistryClient,
    destination_repo: str,
    blob: BlobRef,
) -> ItemOutcome:
    """
    Copy one blob between registries.

    Args:
        source: Client for the source registry
        source_repo: Repository holding the blob at the source
        destination: Client for the destination registry
        destination_repo: Repository receiving the blob
        blob: Blob to copy

    Returns:
        ItemOutcome with status "skipped" when the destination already has
        the digest, "copied" otherwise

    Raises:
        BlobTransferFailure (BlobFetchFailure, UploadInitiationFailure,
        UploadCompletionFailure, DigestMismatch)
    """
    if blob_exists(destination, destination_repo, blob.digest):
        logger.info("Blob %s already exists in %s", short_digest(blob.digest), destination_repo)
        return ItemOutcome(item=blob.digest, status=SKIPPED)

    # Layers are spooled to disk so their size is bounded by disk, not memory
    with tempfile.TemporaryFile() as spool:
        actual = stream_blob(source, source_repo, blob.digest, spool)
        verify_digest(actual, blob.digest)
        size = spool.tell()
        upload_blob(destination, destination_repo, blob.digest, spool)

    logger.info("Copied blob %s (%d bytes) to %s", short_digest(blob.digest), size, destination_repo)
    return ItemOutcome(item=blob.digest, status=COPIED)
