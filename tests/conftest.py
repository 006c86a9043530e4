import base64
import hashlib
import itertools
import json
import re
from urllib.parse import parse_qs, urlsplit

import pytest
import requests
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

from pipeslicer import config
from pipeslicer.modules.auth import RegistryClient
from pipeslicer.modules.formatters import normalize_connection
from pipeslicer.modules.models import MANIFEST_V2


def sha256_digest(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


def make_response(request, status, body=b"", headers=None):
    resp = requests.Response()
    resp.status_code = status
    if isinstance(body, (dict, list)):
        body = json.dumps(body).encode()
        headers = {"Content-Type": "application/json", **(headers or {})}
    resp._content = body
    resp.headers = CaseInsensitiveDict(headers or {})
    resp.url = request.url
    resp.request = request
    resp.encoding = "utf-8"
    # Body is already in memory, so iter_content() serves it in chunks
    resp._content_consumed = True
    return resp


def read_body(request):
    body = request.body or b""
    if hasattr(body, "read"):
        body = body.read()
    return body


# =============================================================================
# Fake registry
# =============================================================================

MANIFEST_RE = re.compile(r"^/v2/(?P<repo>.+)/manifests/(?P<ref>[^/]+)$")
UPLOAD_RE = re.compile(r"^/v2/(?P<repo>.+)/blobs/uploads/(?P<session>[^/]*)$")
BLOB_RE = re.compile(r"^/v2/(?P<repo>.+)/blobs/(?P<digest>[^/]+)$")
TAGS_RE = re.compile(r"^/v2/(?P<repo>.+)/tags/list$")


class FakeRegistry(BaseAdapter):
    """
    In-memory Docker Registry V2 mounted on a requests.Session.

    Only the calls the client makes are implemented. ``overrides`` maps
    (method, path) to a forced status code; ``unreachable`` holds URL
    schemes that raise ConnectionError.
    """

    def __init__(self, host, credentials=None, bearer=False):
        super().__init__()
        self.host = host
        self.credentials = credentials
        self.bearer = bearer
        self.valid_tokens = set()
        self.token_scopes = {}
        self.repos = {}
        self.uploads = {}
        self.requests = []
        self.overrides = {}
        self.unreachable = set()
        self.send_digest_header = True
        self.unauthorized_responses = 0
        self.page_size = None
        self._ids = itertools.count(1)

    # -------------------------------------------------------------------------
    # Setup helpers
    # -------------------------------------------------------------------------

    def repo(self, name):
        return self.repos.setdefault(name, {"tags": {}, "manifests": {}, "blobs": {}})

    def push_image(self, repo, tag, layers=(b"layer-one", b"layer-two"), config_doc=None):
        """Store config + layers + manifest; returns (manifest digest, manifest bytes)."""
        config_doc = config_doc or {
            "architecture": "amd64",
            "os": "linux",
            "created": "2024-05-01T10:00:00Z",
            "config": {"Env": ["PATH=/usr/bin"], "Labels": {"team": "core"}},
            "history": [{"created": "2024-05-01T10:00:00Z", "created_by": "/bin/sh -c #(nop) ADD file"}],
        }
        config_bytes = json.dumps(config_doc).encode()
        store = self.repo(repo)
        store["blobs"][sha256_digest(config_bytes)] = config_bytes
        layer_refs = []
        for data in layers:
            digest = sha256_digest(data)
            store["blobs"][digest] = data
            layer_refs.append({
                "mediaType": "application/vnd.docker.image.rootfs.diff.tar.gzip",
                "size": len(data),
                "digest": digest,
            })
        manifest = {
            "schemaVersion": 2,
            "mediaType": MANIFEST_V2,
            "config": {
                "mediaType": "application/vnd.docker.container.image.v1+json",
                "size": len(config_bytes),
                "digest": sha256_digest(config_bytes),
            },
            "layers": layer_refs,
        }
        raw = json.dumps(manifest, indent=3).encode()
        digest = sha256_digest(raw)
        store["manifests"][digest] = (raw, MANIFEST_V2)
        store["tags"][tag] = digest
        return digest, raw

    def calls(self, method=None):
        return [(m, p) for m, p in self.requests if method is None or m == method]

    # -------------------------------------------------------------------------
    # Adapter
    # -------------------------------------------------------------------------

    def close(self):
        pass

    def _repository_in(self, path):
        for pattern in (MANIFEST_RE, UPLOAD_RE, BLOB_RE, TAGS_RE):
            match = pattern.match(path)
            if match:
                return match["repo"]
        return None

    def _authorized(self, request, path):
        header = request.headers.get("Authorization", "")
        if self.unauthorized_responses > 0:
            self.unauthorized_responses -= 1
            return False
        if self.bearer:
            token = header[len("Bearer "):] if header.startswith("Bearer ") else None
            if token not in self.valid_tokens:
                return False
            repo = self._repository_in(path)
            if repo is None:
                return True
            return any(s.startswith(f"repository:{repo}:") for s in self.token_scopes.get(token, []))
        if self.credentials:
            expected = base64.b64encode(":".join(self.credentials).encode()).decode()
            return header == f"Basic {expected}"
        return True

    def send(self, request, **kwargs):
        parts = urlsplit(request.url)
        if parts.scheme in self.unreachable:
            raise requests.ConnectionError(f"connection refused: {request.url}")

        path = parts.path
        self.requests.append((request.method, path))

        forced = self.overrides.get((request.method, path))
        if forced is not None:
            return make_response(request, forced, b"forced failure")

        if not self._authorized(request, path):
            return make_response(request, 401, {"errors": [{"code": "UNAUTHORIZED"}]})

        return self._dispatch(request, request.method, path, parse_qs(parts.query))

    def _dispatch(self, request, method, path, query):
        if path == "/v2/" and method == "GET":
            return make_response(request, 200, {})

        if path == "/v2/_catalog" and method == "GET":
            return self._page(request, path, "repositories", sorted(self.repos), query)

        match = TAGS_RE.match(path)
        if match and method == "GET":
            repo = match["repo"]
            if repo not in self.repos:
                return make_response(request, 404, {"errors": [{"code": "NAME_UNKNOWN"}]})
            return self._page(request, path, "tags", sorted(self.repos[repo]["tags"]), query, name=repo)

        match = MANIFEST_RE.match(path)
        if match:
            return self._manifest(request, method, match["repo"], match["ref"])

        match = UPLOAD_RE.match(path)
        if match:
            return self._upload(request, method, match["repo"], match["session"], query)

        match = BLOB_RE.match(path)
        if match:
            return self._blob(request, method, match["repo"], match["digest"])

        return make_response(request, 404, b"not found")

    def _page(self, request, path, key, items, query, **extra):
        if not self.page_size:
            return make_response(request, 200, {key: items, **extra})
        start = int(query.get("last", ["0"])[0])
        chunk = items[start:start + self.page_size]
        headers = {}
        if start + self.page_size < len(items):
            headers["Link"] = f'<{path}?n={self.page_size}&last={start + self.page_size}>; rel="next"'
        return make_response(request, 200, {key: chunk, **extra}, headers)

    def _manifest(self, request, method, repo, ref):
        store = self.repos.get(repo)
        if method in ("GET", "HEAD"):
            digest = None
            if store:
                digest = ref if ref.startswith("sha256:") else store["tags"].get(ref)
            if not digest or digest not in store["manifests"]:
                return make_response(request, 404, {"errors": [{"code": "MANIFEST_UNKNOWN"}]})
            raw, content_type = store["manifests"][digest]
            headers = {"Content-Type": content_type}
            if self.send_digest_header:
                headers["Docker-Content-Digest"] = digest
            return make_response(request, 200, raw if method == "GET" else b"", headers)

        if method == "PUT":
            store = self.repo(repo)
            raw = read_body(request)
            manifest = json.loads(raw)
            for blob in [manifest["config"], *manifest.get("layers", [])]:
                if blob["digest"] not in store["blobs"]:
                    return make_response(request, 400, {"errors": [{"code": "MANIFEST_BLOB_UNKNOWN"}]})
            digest = sha256_digest(raw)
            store["manifests"][digest] = (raw, request.headers.get("Content-Type", MANIFEST_V2))
            if not ref.startswith("sha256:"):
                store["tags"][ref] = digest
            return make_response(request, 201, b"", {"Docker-Content-Digest": digest})

        if method == "DELETE":
            if not store or ref not in store["manifests"]:
                return make_response(request, 404, {"errors": [{"code": "MANIFEST_UNKNOWN"}]})
            del store["manifests"][ref]
            for tag in [t for t, d in store["tags"].items() if d == ref]:
                del store["tags"][tag]
            return make_response(request, 202)

        return make_response(request, 405)

    def _upload(self, request, method, repo, session_id, query):
        if method == "POST":
            session_id = f"session-{next(self._ids)}"
            self.uploads[session_id] = repo
            return make_response(request, 202, b"", {"Location": f"/v2/{repo}/blobs/uploads/{session_id}"})
        if method == "PUT":
            if self.uploads.pop(session_id, None) != repo:
                return make_response(request, 404, {"errors": [{"code": "BLOB_UPLOAD_UNKNOWN"}]})
            digest = query.get("digest", [""])[0]
            data = read_body(request)
            if sha256_digest(data) != digest:
                return make_response(request, 400, {"errors": [{"code": "DIGEST_INVALID"}]})
            self.repo(repo)["blobs"][digest] = data
            return make_response(request, 201, b"", {"Docker-Content-Digest": digest})
        return make_response(request, 405)

    def _blob(self, request, method, repo, digest):
        store = self.repos.get(repo)
        present = store is not None and digest in store["blobs"]
        if method in ("GET", "HEAD"):
            if not present:
                return make_response(request, 404, {"errors": [{"code": "BLOB_UNKNOWN"}]})
            data = store["blobs"][digest]
            return make_response(request, 200, data if method == "GET" else b"",
                                 {"Docker-Content-Digest": digest, "Content-Length": str(len(data))})
        if method == "DELETE":
            if not present:
                return make_response(request, 404, {"errors": [{"code": "BLOB_UNKNOWN"}]})
            del store["blobs"][digest]
            return make_response(request, 202)
        return make_response(request, 405)


class FakeTokenService(BaseAdapter):
    """Docker Hub style token endpoint issuing tokens the FakeRegistry accepts."""

    def __init__(self, registry, users=None, status=200):
        super().__init__()
        self.registry = registry
        self.users = users or {}
        self.status = status
        self.requests = []
        self._ids = itertools.count(1)

    def close(self):
        pass

    def send(self, request, **kwargs):
        parts = urlsplit(request.url)
        query = parse_qs(parts.query)
        header = request.headers.get("Authorization")
        self.requests.append({"query": query, "authorization": header})

        if self.status != 200:
            return make_response(request, self.status, b"token service failure")

        if header:
            user, _, password = base64.b64decode(header.split(" ", 1)[1]).decode().partition(":")
            if self.users.get(user) != password:
                return make_response(request, 401, {"details": "incorrect username or password"})

        token = f"token-{next(self._ids)}"
        self.registry.valid_tokens.add(token)
        self.registry.token_scopes[token] = query.get("scope", [])
        return make_response(request, 200, {"token": token, "expires_in": 300})


# =============================================================================
# Fixtures
# =============================================================================

def mount(session, adapter, host):
    session.mount(f"https://{host}", adapter)
    session.mount(f"http://{host}", adapter)


@pytest.fixture
def session():
    s = requests.Session()
    yield s
    s.close()


@pytest.fixture
def registry(session):
    fake = FakeRegistry("registry.test", credentials=("admin", "secret"))
    mount(session, fake, fake.host)
    return fake


@pytest.fixture
def second_registry(session):
    fake = FakeRegistry("mirror.test", credentials=("mirror", "pass"))
    mount(session, fake, fake.host)
    return fake


@pytest.fixture
def dockerhub(session):
    fake = FakeRegistry(config.DOCKERHUB_REGISTRY_HOST, bearer=True)
    mount(session, fake, fake.host)
    tokens = FakeTokenService(fake, users={"hubuser": "hubpass"})
    session.mount(config.DOCKERHUB_AUTH_URL, tokens)
    fake.token_service = tokens
    return fake


@pytest.fixture
def client_for(session):
    """Factory: client_for(url, username, password, repository=None, **kw)."""
    clients = []

    def factory(url, username="", password="", repository=None, flavor=None, **kwargs):
        conn = normalize_connection(url, username, password, flavor)
        client = RegistryClient(conn, repository=repository, session=session, **kwargs)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.invalidate()


@pytest.fixture
def client(registry, client_for):
    return client_for("https://registry.test", "admin", "secret")
