"""
Catalog, tag, manifest and config blob reading.

Builds the human facing ImageDetail from a single-image manifest and its
config blob (architecture, os, Env, Labels, history).
"""

import hashlib
import json
import logging
from typing import BinaryIO, Optional

import requests

from pipeslicer.modules.auth.client import RegistryClient
from pipeslicer.modules.errors import (
    FATAL_ERRORS,
    BlobFetchFailure,
    DigestResolutionFailure,
    ManifestNotFound,
    RegistryError,
    RepositoryNotFound,
)
from pipeslicer.modules.models import (
    MANIFEST_V2,
    BlobRef,
    HistoryEntry,
    ImageConfig,
    ImageDetail,
    ImageSummary,
    Manifest,
)

logger = logging.getLogger(__name__)

DIGEST_HEADER = "Docker-Content-Digest"
LIST_MEDIA_TYPES = (
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.index.v1+json",
)
BLOB_CHUNK_SIZE = 8192


# =============================================================================
# Catalog and tags
# =============================================================================

def _paginate(client: RegistryClient, path: str, key: str, error_cls, what: str) -> list[str]:
    """Collect ``key`` across pages, following ``Link: <...>; rel="next"``."""
    items: list[str] = []
    next_path: Optional[str] = path
    while next_path:
        resp = client.request_with_retry("GET", next_path)
        if resp.status_code != 200:
            raise error_cls(f"Failed to list {what}", status_code=resp.status_code, body=resp.text)
        try:
            payload = resp.json()
        except ValueError:
            raise error_cls(f"Registry returned an undecodable {what} list", body=resp.text)
        items.extend(payload.get(key) or [])
        next_path = resp.links.get("next", {}).get("url")
    return items


def list_repositories(client: RegistryClient) -> list[str]:
    """
    Fetch the repository catalog.

    An empty catalog is a valid result.
    """
    return _paginate(client, "/v2/_catalog", "repositories", RegistryError, "repositories")


def list_tags(client: RegistryClient, repo: str) -> list[str]:
    """
    Fetch the tag list of ``repo``.

    Raises:
        RepositoryNotFound: the registry answered with anything but 200
    """
    return _paginate(client, f"/v2/{repo}/tags/list", "tags", RepositoryNotFound, f"tags for {repo}")


def list_images(client: RegistryClient) -> list[ImageSummary]:
    """
    Every repository with at least one tag.

    Repositories whose tag list cannot be read are skipped.
    """
    images = []
    for repo in list_repositories(client):
        try:
            tags = list_tags(client, repo)
        except FATAL_ERRORS:
            raise
        except RegistryError as e:
            logger.warning("Skipping repository %s: %s", repo, e)
            continue
        if tags:
            images.append(ImageSummary(name=repo, tags=tags))
    return images


# =============================================================================
# Manifests
# =============================================================================

def parse_manifest(raw: bytes, digest: Optional[str] = None,
                   content_type: Optional[str] = None) -> Manifest:
    """
    Decode single-image manifest bytes.

    Raises:
        ManifestNotFound: not JSON, a manifest list, or no config blob
    """
    try:
        data = json.loads(raw)
    except ValueError:
        raise ManifestNotFound("Manifest is not valid JSON")

    media_type = data.get("mediaType", "")
    if media_type in LIST_MEDIA_TYPES or "manifests" in data:
        raise ManifestNotFound(f"Manifest lists are not supported ({media_type or 'index'})")
    if "config" not in data:
        raise ManifestNotFound("Manifest does not contain 'config' key")

    return Manifest(
        schema_version=int(data.get("schemaVersion", 2)),
        media_type=media_type,
        config=BlobRef.from_dict(data["config"]),
        layers=[BlobRef.from_dict(layer) for layer in data.get("layers", [])],
        raw=raw,
        digest=digest,
        content_type=content_type or media_type or MANIFEST_V2,
    )


def get_manifest(client: RegistryClient, repo: str, reference: str) -> Manifest:
    """
    Fetch the manifest at ``reference`` (a tag or a digest).

    The returned Manifest keeps the exact bytes served and the digest from
    the Docker-Content-Digest header when present.

    Raises:
        ManifestNotFound
    """
    resp = client.request_with_retry("GET", f"/v2/{repo}/manifests/{reference}")
    if resp.status_code != 200:
        raise ManifestNotFound(
            f"Manifest {repo}:{reference} not found",
            status_code=resp.status_code,
            body=resp.text,
        )

    content_type = resp.headers.get("Content-Type", "").split(";", 1)[0].strip()
    return parse_manifest(resp.content, resp.headers.get(DIGEST_HEADER), content_type or None)


def resolve_digest(client: RegistryClient, repo: str, reference: str) -> str:
    """
    Registry-assigned digest of the manifest at ``reference``.

    Raises:
        ManifestNotFound: the reference does not resolve
        DigestResolutionFailure: the registry sent no Docker-Content-Digest
    """
    resp = client.request_with_retry("GET", f"/v2/{repo}/manifests/{reference}")
    if resp.status_code == 404:
        raise ManifestNotFound(f"Manifest {repo}:{reference} not found", status_code=404, body=resp.text)
    digest = resp.headers.get(DIGEST_HEADER)
    if not digest:
        raise DigestResolutionFailure(
            f"No digest reported for {repo}:{reference}",
            status_code=resp.status_code,
            body=resp.text,
        )
    return digest


# =============================================================================
# Blobs / image detail
# =============================================================================

def fetch_blob(client: RegistryClient, repo: str, digest: str) -> bytes:
    """
    Download a whole blob into memory.

    Raises:
        BlobFetchFailure
    """
    resp = client.request_with_retry("GET", f"/v2/{repo}/blobs/{digest}")
    if resp.status_code != 200:
        raise BlobFetchFailure(
            f"Failed to fetch blob {digest} from {repo}",
            status_code=resp.status_code,
            body=resp.text,
            digest=digest,
        )
    return resp.content


def stream_blob(client: RegistryClient, repo: str, digest: str, fileobj: BinaryIO,
                chunk_size: int = BLOB_CHUNK_SIZE) -> str:
    """
    Stream a blob into ``fileobj`` without holding it in memory.

    Returns:
        sha256 hex digest of the bytes written

    Raises:
        BlobFetchFailure
    """
    resp = client.request_with_retry("GET", f"/v2/{repo}/blobs/{digest}", stream=True)
    try:
        if resp.status_code != 200:
            raise BlobFetchFailure(
                f"Failed to fetch blob {digest} from {repo}",
                status_code=resp.status_code,
                body=resp.text,
                digest=digest,
            )
        hasher = hashlib.sha256()
        for chunk in resp.iter_content(chunk_size=chunk_size):
            if chunk:
                hasher.update(chunk)
                fileobj.write(chunk)
    except requests.RequestException as e:
        raise BlobFetchFailure(f"Blob {digest} download from {repo} broke off: {e}", digest=digest)
    finally:
        resp.close()
    return hasher.hexdigest()


def parse_image_config(config_json: dict) -> tuple[ImageConfig, list[HistoryEntry], str]:
    """Pull architecture/os/Env/Labels and history out of a config blob."""
    inner = config_json.get("config") or {}
    image_config = ImageConfig(
        architecture=config_json.get("architecture", ""),
        os=config_json.get("os", ""),
        env=list(inner.get("Env") or []),
        labels=dict(inner.get("Labels") or {}),
    )
    history = [
        HistoryEntry(
            created=entry.get("created", ""),
            created_by=entry.get("created_by", "").strip(),
            comment=entry.get("comment", ""),
            empty_layer=bool(entry.get("empty_layer", False)),
        )
        for entry in config_json.get("history") or []
    ]
    return image_config, history, config_json.get("created", "")


def get_image_detail(client: RegistryClient, repo: str, tag: str) -> ImageDetail:
    """
    Manifest plus decoded config blob for ``repo:tag``.

    Raises:
        ManifestNotFound: the manifest or its config blob could not be read
    """
    manifest = get_manifest(client, repo, tag)

    try:
        config_json = json.loads(fetch_blob(client, repo, manifest.config.digest))
    except BlobFetchFailure as e:
        raise ManifestNotFound(
            f"Config blob {manifest.config.digest} for {repo}:{tag} unavailable",
            status_code=e.status_code,
            body=e.body,
        )
    except ValueError:
        raise ManifestNotFound(f"Config blob {manifest.config.digest} is not valid JSON")

    image_config, history, created = parse_image_config(config_json)
    return ImageDetail(
        name=repo,
        tags=[tag],
        digest=manifest.digest,
        size=sum(blob.size for blob in manifest.blobs),
        created_at=created,
        layers=list(manifest.layers),
        history=history,
        config=image_config,
    )
