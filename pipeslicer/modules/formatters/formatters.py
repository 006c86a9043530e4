## Connection resolution and small display helpers

from typing import Optional, Union

from pipeslicer import config
from pipeslicer.modules.errors import InvalidRegistryConfig
from pipeslicer.modules.models import Flavor, RegistryConnection


DOCKERHUB_MARKERS = ("docker.io", "registry.hub.docker.com")


def infer_flavor(url: str) -> Flavor:
    """Guess the registry vendor from its URL."""
    lowered = (url or "").lower()
    if any(marker in lowered for marker in DOCKERHUB_MARKERS):
        return Flavor.DOCKERHUB
    if "harbor" in lowered:
        return Flavor.HARBOR
    return Flavor.GENERIC


def split_url(url: str) -> tuple[Optional[str], str]:
    """
    Split a stored registry URL into (scheme, host-and-path).

    The scheme is None unless the URL spelled one out. Trailing slashes and
    a trailing ``/v2`` are dropped so the API prefix is never doubled.
    """
    url = (url or "").strip()
    scheme = None
    if "://" in url:
        scheme, url = url.split("://", 1)
        scheme = scheme.lower()
    url = url.rstrip("/")
    if url.endswith("/v2"):
        url = url[: -len("/v2")]
    return scheme, url.rstrip("/")


def normalize_connection(
    url: str,
    username: str = "",
    password: str = "",
    flavor: Union[Flavor, str, None] = None,
    insecure: bool = False,
) -> RegistryConnection:
    """
    Build the canonical RegistryConnection for a stored registry.

    Args:
        url: Registry endpoint as entered by the user (scheme optional)
        username: Registry account
        password: Registry password or access token
        flavor: Declared vendor; inferred from the URL when omitted
        insecure: Skip TLS verification for this registry

    Returns:
        RegistryConnection

    Raises:
        InvalidRegistryConfig: unknown flavor, or no host for a non Docker Hub registry
    """
    if flavor is None or flavor == "":
        resolved = infer_flavor(url)
    else:
        try:
            resolved = Flavor(flavor)
        except ValueError:
            raise InvalidRegistryConfig(f"Unknown registry flavor: {flavor}")

    if resolved is Flavor.DOCKERHUB:
        # Docker Hub always lives on its well-known host
        if not (username and password):
            username, password = config.DOCKERHUB_IDENTIFIER, config.DOCKERHUB_SECRET
        return RegistryConnection(
            flavor=resolved,
            host=config.DOCKERHUB_REGISTRY_HOST,
            username=username or "",
            password=password or "",
            insecure=False,
            scheme="https",
        )

    scheme, host = split_url(url)
    if not host:
        raise InvalidRegistryConfig("registry URL is required")
    if scheme not in (None, "http", "https"):
        raise InvalidRegistryConfig(f"Unsupported URL scheme: {scheme}")
    return RegistryConnection(
        flavor=resolved,
        host=host,
        username=username or "",
        password=password or "",
        insecure=bool(insecure),
        scheme=scheme,
    )


def validate_registry_config(url: str, username: str, password: str,
                             flavor: Union[Flavor, str, None] = None) -> None:
    """Reject registry records that could never authenticate."""
    try:
        resolved = infer_flavor(url) if not flavor else Flavor(flavor)
    except ValueError:
        raise InvalidRegistryConfig(f"Unknown registry flavor: {flavor}")
    if resolved is Flavor.DOCKERHUB:
        return
    if not (url or "").strip():
        raise InvalidRegistryConfig("registry URL is required")
    if not username:
        raise InvalidRegistryConfig("registry username is required")
    if not password:
        raise InvalidRegistryConfig("registry password is required")


## Image references: "repo", "repo:tag", "ns/repo:tag", "repo@sha256:..."

def parse_image_ref(image_ref: str, default_namespace: Optional[str] = None) -> tuple[str, str]:
    """
    Split an image reference into (repository, reference).

    The reference defaults to ``latest``. A ``default_namespace`` (Docker
    Hub's ``library``) is prefixed to single-segment repository names.
    """
    image_ref = (image_ref or "").strip()
    if not image_ref:
        raise ValueError("Image reference must not be empty")

    if "@" in image_ref:
        repo, reference = image_ref.split("@", 1)
    else:
        slash = image_ref.rfind("/")
        colon = image_ref.rfind(":")
        if colon > slash:
            repo, reference = image_ref[:colon], image_ref[colon + 1:]
        else:
            repo, reference = image_ref, "latest"

    repo = repo.strip("/")
    if default_namespace and "/" not in repo:
        repo = f"{default_namespace}/{repo}"
    if not repo or not reference:
        raise ValueError(f"Invalid image reference: {image_ref}")
    return repo, reference


def human_readable_size(size):
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024.0:
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} TB"


def short_digest(digest: str, length: int = 12) -> str:
    """sha256:abcdef... -> abcdef012345"""
    if ":" in digest:
        digest = digest.split(":", 1)[1]
    return digest[:length]
