# tagger.py
# Retag inside one registry and copy images across registries.

import logging
from dataclasses import dataclass, field
from typing import Optional

from pipeslicer.modules.auth.client import RegistryClient
from pipeslicer.modules.errors import (
    FATAL_ERRORS,
    BlobTransferFailure,
    ManifestPushFailure,
    RegistryError,
    RetagFailure,
)
from pipeslicer.modules.finders.manifests import DIGEST_HEADER, get_manifest
from pipeslicer.modules.keepers.transfer import COPIED, SKIPPED, copy_blob
from pipeslicer.modules.models import ItemOutcome, Manifest

logger = logging.getLogger(__name__)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class CopyResult:
    """Outcome of an image copy, one entry per blob."""
    source: str
    destination: str
    blobs: list[ItemOutcome] = field(default_factory=list)
    manifest_pushed: bool = False
    digest: Optional[str] = None

    @property
    def copied(self) -> int:
        return sum(1 for b in self.blobs if b.status == COPIED)

    @property
    def skipped(self) -> int:
        return sum(1 for b in self.blobs if b.status == SKIPPED)

    @property
    def failures(self) -> list[ItemOutcome]:
        return [b for b in self.blobs if b.failed]

    @property
    def ok(self) -> bool:
        return self.manifest_pushed and not self.failures

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "destination": self.destination,
            "digest": self.digest,
            "manifest_pushed": self.manifest_pushed,
            "blobs_copied": self.copied,
            "blobs_skipped": self.skipped,
            "blobs": [b.to_dict() for b in self.blobs],
        }


# =============================================================================
# Manifest push
# =============================================================================

def push_manifest(client: RegistryClient, repo: str, reference: str, manifest: Manifest) -> Optional[str]:
    """
    PUT the manifest's original bytes at ``reference``.

    Returns:
        Digest reported by the registry, if any

    Raises:
        ManifestPushFailure: anything but 201
    """
    resp = client.request_with_retry(
        "PUT",
        f"/v2/{repo}/manifests/{reference}",
        data=manifest.raw,
        headers={"Content-Type": manifest.content_type},
    )
    if resp.status_code != 201:
        raise ManifestPushFailure(
            f"Failed to put manifest {repo}:{reference}",
            status_code=resp.status_code,
            body=resp.text,
        )
    return resp.headers.get(DIGEST_HEADER) or manifest.digest


# =============================================================================
# Retag
# =============================================================================

def retag(
    client: RegistryClient,
    repo: str,
    source_tag: str,
    destination_tag: str,
    destination_repo: Optional[str] = None,
) -> Optional[str]:
    """
    Bind ``destination_tag`` to the manifest currently at ``source_tag``.

    The manifest bytes are pushed unchanged, so no blob is copied and both
    tags resolve to the same digest. ``destination_repo`` defaults to
    ``repo``; another repository of the same registry must already hold
    the blobs.

    Returns:
        Digest of the retagged manifest

    Raises:
        ManifestNotFound: source tag does not resolve
        RetagFailure: the registry refused the manifest PUT
    """
    destination_repo = destination_repo or repo
    manifest = get_manifest(client, repo, source_tag)
    logger.info("Retrieved manifest for %s:%s", repo, source_tag)

    try:
        digest = push_manifest(client, destination_repo, destination_tag, manifest)
    except ManifestPushFailure as e:
        raise RetagFailure(
            f"Failed to retag {repo}:{source_tag} as {destination_repo}:{destination_tag}",
            status_code=e.status_code,
            body=e.body,
        )

    logger.info("Retagged %s:%s -> %s:%s", repo, source_tag, destination_repo, destination_tag)
    return digest


# =============================================================================
# Cross-registry copy
# =============================================================================

def copy_image(
    source: RegistryClient,
    source_repo: str,
    source_tag: str,
    destination: RegistryClient,
    destination_repo: str,
    destination_tag: str,
) -> CopyResult:
    """
    Copy ``source_repo:source_tag`` into another registry.

    Every blob (config first, then layers) is attempted even after a failure.
    The manifest is pushed only when all blobs are present at the
    destination, so the destination never holds a manifest that references
    a missing blob.

    Returns:
        CopyResult

    Raises:
        AuthenticationFailure: either registry rejected its credentials
        ManifestNotFound: source tag does not resolve
        BlobTransferFailure: one or more blobs failed; ``outcomes`` lists all
        ManifestPushFailure: blobs are in place but the manifest PUT failed
    """
    # Credentials for both ends are checked before anything is transferred
    source.authenticate()
    destination.authenticate()

    manifest = get_manifest(source, source_repo, source_tag)
    result = CopyResult(
        source=f"{source_repo}:{source_tag}",
        destination=f"{destination_repo}:{destination_tag}",
    )

    for blob in manifest.blobs:
        try:
            outcome = copy_blob(source, source_repo, destination, destination_repo, blob)
        except FATAL_ERRORS:
            raise
        except RegistryError as e:
            logger.warning("Failed to copy blob %s: %s", blob.digest, e)
            outcome = ItemOutcome(item=blob.digest, status="failed", error=str(e))
        result.blobs.append(outcome)

    failures = result.failures
    if failures:
        raise BlobTransferFailure(
            f"{len(failures)} of {len(result.blobs)} blobs failed to copy; "
            f"manifest for {result.destination} not pushed",
            digest=failures[0].item,
            outcomes=result.blobs,
        )

    result.digest = push_manifest(destination, destination_repo, destination_tag, manifest)
    result.manifest_pushed = True
    logger.info(
        "Copied %s to %s (%d blobs copied, %d already present)",
        result.source, result.destination, result.copied, result.skipped,
    )
    return result
