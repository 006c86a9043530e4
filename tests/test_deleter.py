import json

import pytest

from pipeslicer.modules.errors import DigestResolutionFailure, ManifestNotFound, PartialDeleteFailure
from pipeslicer.modules.finders import resolve_digest
from pipeslicer.modules.keepers import (
    ALREADY_DELETED,
    DELETED,
    FAILED,
    delete_image,
    deleter,
    find_tags_for_digest,
)


@pytest.fixture
def shared_digest(registry):
    """app:v1 and app:v2 point at one manifest, app:other at another."""
    digest, raw = registry.push_image("app", "v1")
    registry.repos["app"]["tags"]["v2"] = digest
    registry.push_image("app", "other", layers=[b"unrelated"])
    return digest, raw


def test_find_tags_for_digest(registry, client, shared_digest):
    digest, _ = shared_digest

    matches, unresolved = find_tags_for_digest(client, "app", digest)

    assert sorted(matches) == ["v1", "v2"]
    assert unresolved == []


def test_delete_removes_every_alias(registry, client, shared_digest):
    digest, raw = shared_digest
    blobs = [json.loads(raw)["config"]["digest"]] + [l["digest"] for l in json.loads(raw)["layers"]]

    result = delete_image(client, "app", "v1")
    calls = registry.calls()

    assert result.ok
    assert result.digest == digest
    assert sorted(result.deleted_tags) == ["v1", "v2"]
    for tag in ("v1", "v2"):
        with pytest.raises(ManifestNotFound):
            resolve_digest(client, "app", tag)
    assert resolve_digest(client, "app", "other")
    assert [o.item for o in result.blobs] == blobs
    assert all(o.status == DELETED for o in result.blobs)
    # manifests are deleted by digest, never by tag
    deletes = [p for m, p in calls if m == "DELETE" and "/manifests/" in p]
    assert deletes == [f"/v2/app/manifests/{digest}"]
    # garbage collection hint
    assert calls[-1] == ("GET", "/v2/_catalog")


def test_second_alias_reported_already_deleted(registry, client, shared_digest):
    result = delete_image(client, "app", "v1")

    statuses = {o.item: o.status for o in result.tags}
    assert statuses == {"v1": DELETED, "v2": ALREADY_DELETED}


def test_delete_missing_tag(registry, client):
    registry.push_image("app", "v1")

    with pytest.raises(ManifestNotFound):
        delete_image(client, "app", "gone")


def test_delete_without_digest_header(registry, client):
    registry.push_image("app", "v1")
    registry.send_digest_header = False

    with pytest.raises(DigestResolutionFailure):
        delete_image(client, "app", "v1")
    assert registry.calls("DELETE") == []


def test_failed_blob_delete_continues(registry, client, shared_digest):
    digest, raw = shared_digest
    config_digest = json.loads(raw)["config"]["digest"]
    registry.overrides[("DELETE", f"/v2/app/blobs/{config_digest}")] = 500

    result = delete_image(client, "app", "v1")

    assert not result.ok
    statuses = [o.status for o in result.blobs]
    assert statuses == [FAILED, DELETED, DELETED]
    assert [o.item for o in result.failures] == [config_digest]
    with pytest.raises(PartialDeleteFailure) as exc:
        result.raise_for_status()
    assert exc.value.result is result


def test_failed_manifest_delete_continues_with_blobs(registry, client, shared_digest):
    digest, _ = shared_digest
    registry.overrides[("DELETE", f"/v2/app/manifests/{digest}")] = 500

    result = delete_image(client, "app", "v1")

    statuses = {o.item: o.status for o in result.tags}
    assert statuses == {"v1": FAILED, "v2": FAILED}
    assert all(o.status == DELETED for o in result.blobs)
    with pytest.raises(PartialDeleteFailure):
        result.raise_for_status()


def test_unresolvable_target_tag_reported_once(registry, client, shared_digest, monkeypatch):
    original = deleter.resolve_digest

    def flaky_resolve(client, repo, reference):
        if reference == "v1":
            raise DigestResolutionFailure(f"No digest reported for {repo}:{reference}")
        return original(client, repo, reference)

    monkeypatch.setattr(deleter, "resolve_digest", flaky_resolve)

    result = delete_image(client, "app", "v1")

    items = [o.item for o in result.tags]
    assert items.count("v1") == 1
    statuses = {o.item: o.status for o in result.tags}
    assert statuses == {"v1": FAILED, "v2": DELETED}


def test_blob_already_gone_is_not_a_failure(registry, client):
    _, raw = registry.push_image("app", "v1")
    layer = json.loads(raw)["layers"][0]["digest"]
    del registry.repos["app"]["blobs"][layer]

    result = delete_image(client, "app", "v1")

    assert result.ok
    assert {o.item: o.status for o in result.blobs}[layer] == ALREADY_DELETED
