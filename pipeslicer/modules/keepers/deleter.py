# deleter.py
# Cascading image deletion.
#
# Tags are many-to-one over manifest digests and registries delete manifests
# by digest, so removing "an image" means finding every tag that shares the
# digest, deleting the manifest reference, then the config and layer blobs.

import logging
from dataclasses import dataclass, field

from pipeslicer.modules.auth.client import RegistryClient
from pipeslicer.modules.errors import (
    FATAL_ERRORS,
    DigestResolutionFailure,
    ManifestNotFound,
    PartialDeleteFailure,
    RegistryError,
)
from pipeslicer.modules.finders.manifests import get_manifest, list_tags, resolve_digest
from pipeslicer.modules.models import ItemOutcome

logger = logging.getLogger(__name__)


DELETED = "deleted"
ALREADY_DELETED = "already_deleted"
FAILED = "failed"

# Registries answer 202 on delete; some proxies use 200 or 204
DELETE_OK = (200, 202, 204)


@dataclass
class DeleteResult:
    """Per-item record of a cascading delete."""
    repository: str
    tag: str
    digest: str
    tags: list[ItemOutcome] = field(default_factory=list)
    blobs: list[ItemOutcome] = field(default_factory=list)

    @property
    def failures(self) -> list[ItemOutcome]:
        return [o for o in self.tags + self.blobs if o.failed]

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def deleted_tags(self) -> list[str]:
        return [o.item for o in self.tags if not o.failed]

    def raise_for_status(self):
        """Raise PartialDeleteFailure when any tag or blob deletion failed."""
        if self.failures:
            raise PartialDeleteFailure(
                f"{len(self.failures)} deletions failed for {self.repository}:{self.tag}",
                result=self,
            )

    def to_dict(self) -> dict:
        return {
            "repository": self.repository,
            "tag": self.tag,
            "digest": self.digest,
            "ok": self.ok,
            "tags": [o.to_dict() for o in self.tags],
            "blobs": [o.to_dict() for o in self.blobs],
        }


def _delete(client: RegistryClient, path: str, item: str) -> ItemOutcome:
    resp = client.request_with_retry("DELETE", path)
    if resp.status_code in DELETE_OK:
        return ItemOutcome(item=item, status=DELETED)
    if resp.status_code == 404:
        return ItemOutcome(item=item, status=ALREADY_DELETED)
    return ItemOutcome(
        item=item,
        status=FAILED,
        error=f"DELETE {path} answered {resp.status_code}: {resp.text}",
    )


def find_tags_for_digest(client: RegistryClient, repo: str, digest: str) -> tuple[list[str], list[ItemOutcome]]:
    """
    Tags of ``repo`` whose manifest digest equals ``digest``.

    Returns:
        (matching tags, outcomes for tags that could not be resolved)
    """
    matches, unresolved = [], []
    for tag in list_tags(client, repo):
        try:
            tag_digest = resolve_digest(client, repo, tag)
        except FATAL_ERRORS:
            raise
        except RegistryError as e:
            logger.warning("Could not resolve tag %s: %s", tag, e)
            unresolved.append(ItemOutcome(item=tag, status=FAILED, error=str(e)))
            continue
        if tag_digest == digest:
            matches.append(tag)
    return matches, unresolved


def delete_image(client: RegistryClient, repo: str, tag: str) -> DeleteResult:
    """
    Delete ``repo:tag`` and every alias of its manifest.

    Steps:
        1. Resolve the tag's digest from Docker-Content-Digest
        2. Find every tag of the repository sharing that digest
        3. DELETE the manifest by digest once per matching tag
        4. DELETE the config blob, then each layer blob
        5. GET the catalog as a garbage collection hint

    Steps 3 and 4 are best effort: failures are recorded in the result and
    logged, the remaining steps still run.

    Returns:
        DeleteResult (call raise_for_status() to turn partial failure into
        PartialDeleteFailure)

    Raises:
        AuthenticationFailure
        ManifestNotFound: the tag does not resolve
        DigestResolutionFailure: the registry reported no digest
        RepositoryNotFound: the tag list could not be read
    """
    manifest = get_manifest(client, repo, tag)
    digest = manifest.digest
    if not digest:
        raise DigestResolutionFailure(f"No digest reported for {repo}:{tag}")
    logger.info("Deleting %s:%s (manifest %s)", repo, tag, digest)

    result = DeleteResult(repository=repo, tag=tag, digest=digest)

    matches, unresolved = find_tags_for_digest(client, repo, digest)
    if tag not in matches and tag not in {o.item for o in unresolved}:
        matches.insert(0, tag)
    result.tags.extend(unresolved)

    for match in matches:
        try:
            current = resolve_digest(client, repo, match)
        except ManifestNotFound:
            # An earlier delete by the same digest already removed it
            result.tags.append(ItemOutcome(item=match, status=ALREADY_DELETED))
            continue
        except FATAL_ERRORS:
            raise
        except RegistryError as e:
            logger.warning("Failed to resolve tag %s before delete: %s", match, e)
            result.tags.append(ItemOutcome(item=match, status=FAILED, error=str(e)))
            continue

        try:
            outcome = _delete(client, f"/v2/{repo}/manifests/{current}", match)
        except FATAL_ERRORS:
            raise
        except RegistryError as e:
            outcome = ItemOutcome(item=match, status=FAILED, error=str(e))
        if outcome.failed:
            logger.warning("Failed to delete tag %s: %s", match, outcome.error)
        else:
            logger.info("Deleted tag %s", match)
        result.tags.append(outcome)

    for blob in manifest.blobs:
        try:
            outcome = _delete(client, f"/v2/{repo}/blobs/{blob.digest}", blob.digest)
        except FATAL_ERRORS:
            raise
        except RegistryError as e:
            outcome = ItemOutcome(item=blob.digest, status=FAILED, error=str(e))
        if outcome.failed:
            logger.warning("Failed to delete blob %s: %s", blob.digest, outcome.error)
        result.blobs.append(outcome)

    trigger_garbage_collection(client)

    if result.ok:
        logger.info("Deleted image %s:%s", repo, tag)
    else:
        logger.warning("Deleted image %s:%s with %d failures", repo, tag, len(result.failures))
    return result


def trigger_garbage_collection(client: RegistryClient) -> None:
    """Best-effort GC hint; the registry's answer is not authoritative."""
    try:
        client.request_with_retry("GET", "/v2/_catalog")
    except RegistryError as e:
        logger.debug("Garbage collection hint failed: %s", e)
