import pytest

from pipeslicer import config
from pipeslicer.modules.errors import InvalidRegistryConfig
from pipeslicer.modules.formatters import (
    human_readable_size,
    infer_flavor,
    normalize_connection,
    parse_image_ref,
    short_digest,
    split_url,
    validate_registry_config,
)
from pipeslicer.modules.models import Flavor


@pytest.mark.parametrize("url, flavor", [
    ("docker.io", Flavor.DOCKERHUB),
    ("https://registry.hub.docker.com", Flavor.DOCKERHUB),
    ("harbor.example.com", Flavor.HARBOR),
    ("https://HARBOR.corp/v2/", Flavor.HARBOR),
    ("localhost:5000", Flavor.GENERIC),
    ("", Flavor.GENERIC),
])
def test_infer_flavor(url, flavor):
    assert infer_flavor(url) is flavor


def test_split_url_strips_scheme_and_api_prefix():
    assert split_url("https://registry.test/v2/") == ("https", "registry.test")
    assert split_url("HTTP://localhost:5000") == ("http", "localhost:5000")
    assert split_url("registry.test/mirror/") == (None, "registry.test/mirror")


def test_dockerhub_connection_uses_well_known_host():
    conn = normalize_connection("docker.io", "user", "pass")
    assert conn.flavor is Flavor.DOCKERHUB
    assert conn.host == config.DOCKERHUB_REGISTRY_HOST
    assert conn.scheme == "https"
    assert conn.username == "user"


def test_dockerhub_connection_falls_back_to_configured_account(monkeypatch):
    monkeypatch.setattr(config, "DOCKERHUB_IDENTIFIER", "ci-bot")
    monkeypatch.setattr(config, "DOCKERHUB_SECRET", "ci-token")
    conn = normalize_connection("https://registry.hub.docker.com")
    assert (conn.username, conn.password) == ("ci-bot", "ci-token")


def test_generic_connection_keeps_explicit_scheme():
    conn = normalize_connection("http://localhost:5000/", "admin", "secret", insecure=True)
    assert conn.flavor is Flavor.GENERIC
    assert conn.host == "localhost:5000"
    assert conn.scheme == "http"
    assert conn.insecure


def test_connection_repr_hides_password():
    conn = normalize_connection("harbor.example.com", "admin", "hunter2")
    assert "hunter2" not in repr(conn)


@pytest.mark.parametrize("kwargs", [
    {"url": ""},
    {"url": "ftp://registry.test"},
    {"url": "registry.test", "flavor": "quay"},
])
def test_normalize_connection_rejects_bad_input(kwargs):
    with pytest.raises(InvalidRegistryConfig):
        normalize_connection(**kwargs)


def test_validate_registry_config():
    validate_registry_config("docker.io", "", "")
    validate_registry_config("harbor.example.com", "admin", "secret")

    with pytest.raises(InvalidRegistryConfig, match="URL"):
        validate_registry_config("", "admin", "secret", flavor="generic")
    with pytest.raises(InvalidRegistryConfig, match="username"):
        validate_registry_config("harbor.example.com", "", "secret")
    with pytest.raises(InvalidRegistryConfig, match="password"):
        validate_registry_config("localhost:5000", "admin", "")
    with pytest.raises(InvalidRegistryConfig):
        validate_registry_config("localhost:5000", "admin", "secret", flavor="nope")


@pytest.mark.parametrize("ref, expected", [
    ("app", ("app", "latest")),
    ("team/app:v1", ("team/app", "v1")),
    ("localhost:5000/app", ("localhost:5000/app", "latest")),
    ("app@sha256:abc", ("app", "sha256:abc")),
])
def test_parse_image_ref(ref, expected):
    assert parse_image_ref(ref) == expected


def test_parse_image_ref_default_namespace():
    assert parse_image_ref("nginx:1.25", default_namespace="library") == ("library/nginx", "1.25")
    assert parse_image_ref("moby/buildkit", default_namespace="library") == ("moby/buildkit", "latest")


def test_parse_image_ref_rejects_empty():
    with pytest.raises(ValueError):
        parse_image_ref("  ")


def test_display_helpers():
    assert human_readable_size(512) == "512.0 B"
    assert human_readable_size(2048) == "2.0 KB"
    assert short_digest("sha256:0123456789abcdef") == "0123456789ab"
