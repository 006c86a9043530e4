from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
OCI_MANIFEST_V1 = "application/vnd.oci.image.manifest.v1+json"


# =============================================================================
# Connections
# =============================================================================

class Flavor(str, Enum):
    """Registry vendor; decides authentication and the default host."""
    DOCKERHUB = "dockerhub"
    HARBOR = "harbor"
    GENERIC = "generic"


@dataclass(frozen=True)
class RegistryConnection:
    """Canonical connection descriptor, immutable for one operation.

    ``host`` is the registry authority plus any path prefix, without scheme.
    ``scheme`` is set only when the stored URL pinned one explicitly.
    """
    flavor: Flavor
    host: str
    username: str = ""
    password: str = ""
    insecure: bool = False
    scheme: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    def __repr__(self) -> str:
        # Keep the password out of logs and tracebacks
        return (f"RegistryConnection(flavor={self.flavor.value!r}, host={self.host!r}, "
                f"username={self.username!r}, insecure={self.insecure})")


@dataclass(frozen=True)
class AuthToken:
    """A credential ready for the Authorization header."""
    scheme: str  # "Bearer" or "Basic"
    value: str

    def __repr__(self) -> str:
        return f"AuthToken(scheme={self.scheme!r})"


# =============================================================================
# Manifests and blobs
# =============================================================================

@dataclass(frozen=True)
class BlobRef:
    digest: str
    size: int = 0
    media_type: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "BlobRef":
        return cls(
            digest=data.get("digest", ""),
            size=int(data.get("size", 0) or 0),
            media_type=data.get("mediaType", ""),
        )

    def to_dict(self) -> dict:
        return {"digest": self.digest, "size": self.size, "mediaType": self.media_type}


@dataclass
class Manifest:
    """A single-image manifest as served by the registry.

    ``raw`` keeps the exact bytes so they can be pushed again unchanged;
    ``digest`` is what the registry reported, never recomputed.
    """
    schema_version: int
    media_type: str
    config: BlobRef
    layers: list[BlobRef]
    raw: bytes = b""
    digest: Optional[str] = None
    content_type: str = MANIFEST_V2

    @property
    def blobs(self) -> list[BlobRef]:
        """Config blob first, then layers in order."""
        return [self.config, *self.layers]

    def to_dict(self) -> dict:
        return {
            "schemaVersion": self.schema_version,
            "mediaType": self.media_type,
            "digest": self.digest,
            "config": self.config.to_dict(),
            "layers": [layer.to_dict() for layer in self.layers],
        }


# =============================================================================
# Image views
# =============================================================================

@dataclass
class HistoryEntry:
    created: str = ""
    created_by: str = ""
    comment: str = ""
    empty_layer: bool = False

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "created_by": self.created_by,
            "comment": self.comment,
            "empty_layer": self.empty_layer,
        }


@dataclass
class ImageConfig:
    architecture: str = ""
    os: str = ""
    env: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "architecture": self.architecture,
            "os": self.os,
            "env": list(self.env),
            "labels": dict(self.labels),
        }


@dataclass
class ImageDetail:
    """Read-only aggregation of a manifest and its decoded config blob."""
    name: str
    tags: list[str]
    digest: Optional[str]
    size: int
    created_at: str
    layers: list[BlobRef]
    history: list[HistoryEntry]
    config: ImageConfig

    @property
    def labels(self) -> dict[str, str]:
        return self.config.labels

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "tags": list(self.tags),
            "digest": self.digest,
            "size": self.size,
            "created_at": self.created_at,
            "layers": [{"digest": l.digest, "size": l.size} for l in self.layers],
            "history": [h.to_dict() for h in self.history],
            "config": self.config.to_dict(),
            "labels": dict(self.labels),
        }


@dataclass
class ImageSummary:
    name: str
    tags: list[str]

    def to_dict(self) -> dict:
        return {"name": self.name, "tags": list(self.tags)}


# =============================================================================
# Best-effort outcomes
# =============================================================================

@dataclass
class ItemOutcome:
    """Result of one step inside a best-effort loop (a blob or a tag)."""
    item: str
    status: str  # copied | skipped | deleted | already_deleted | failed
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    def to_dict(self) -> dict:
        return {"item": self.item, "status": self.status, "error": self.error}


# =============================================================================
# Build provenance
# =============================================================================

@dataclass
class ImageMetadata:
    service: str
    tag: str
    commit: str
    branch: str
    build_time: str
    status: str  # "success", "failed", ...
    registry: str
    image_name: str
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "service": self.service,
            "tag": self.tag,
            "commit": self.commit,
            "branch": self.branch,
            "build_time": self.build_time,
            "status": self.status,
            "registry": self.registry,
            "image_name": self.image_name,
        }
