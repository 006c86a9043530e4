"""
Authenticated HTTP client for one registry and one logical operation.

Provides RegistryClient with:
- Lazy authentication through the flavor's strategy
- Token refresh and a single retry on 401
- HTTPS -> HTTP fallback on transport-level failures
- Deadline / cancellation checks at every call boundary
- Cleanup via invalidate()
"""

import logging
import threading
import time
from typing import Optional, Sequence, Union

import requests

from pipeslicer import config
from pipeslicer.modules.auth.auth import AuthStrategy, repository_scope, strategy_for
from pipeslicer.modules.errors import (
    AuthenticationFailure,
    OperationCancelled,
    RegistryUnreachable,
)
from pipeslicer.modules.models import (
    MANIFEST_V2,
    OCI_MANIFEST_V1,
    AuthToken,
    Flavor,
    RegistryConnection,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Cancellation
# =============================================================================

class OperationContext:
    """
    Caller-owned deadline and cancellation signal.

    Checked before every outbound call, so cancelling takes effect at the
    next call boundary rather than in the middle of a transfer.
    """

    def __init__(self, timeout: Optional[float] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.deadline = time.monotonic() + timeout if timeout is not None else None
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self):
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def check(self):
        if self.cancelled:
            raise OperationCancelled("Operation cancelled")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise OperationCancelled("Operation deadline exceeded")

    def request_timeout(self, default: float) -> float:
        remaining = self.remaining()
        if remaining is None:
            return default
        return max(0.001, min(default, remaining))


# =============================================================================
# Transports
# =============================================================================

class Transport:
    """One way of reaching a registry; currently just a URL scheme."""

    def __init__(self, scheme: str):
        self.scheme = scheme

    def url(self, conn: RegistryConnection, path: str) -> str:
        return f"{self.scheme}://{conn.host}{path}"

    def __repr__(self) -> str:
        return f"Transport({self.scheme!r})"


HTTPS = Transport("https")
HTTP = Transport("http")
DEFAULT_TRANSPORTS = (HTTPS, HTTP)


def transports_for(conn: RegistryConnection) -> tuple:
    """Ordered transports to try for ``conn``."""
    if conn.flavor is Flavor.DOCKERHUB:
        return (HTTPS,)
    if conn.scheme == "http":
        return (HTTP,)
    return DEFAULT_TRANSPORTS


# =============================================================================
# Client
# =============================================================================

class RegistryClient:
    """
    Registry API access for a single operation.

    Usage:
        client = RegistryClient(conn, repository="team/app")
        resp = client.request_with_retry("GET", "/v2/team/app/tags/list")
        # ... do work ...
        client.invalidate()  # cleanup when done
    """

    ACCEPT = f"{MANIFEST_V2}, {OCI_MANIFEST_V1}"

    def __init__(
        self,
        conn: RegistryConnection,
        repository: Union[str, Sequence[str], None] = None,
        session: Optional[requests.Session] = None,
        transports: Optional[Sequence[Transport]] = None,
        context: Optional[OperationContext] = None,
        strategy: Optional[AuthStrategy] = None,
        timeout: float = config.REQUEST_TIMEOUT,
    ):
        """
        Args:
            conn: Normalized registry connection
            repository: Repository (or repositories) the token is scoped to (Docker Hub only)
            session: Session to use; the client owns and closes one it creates
            transports: Ordered transports overriding the connection default
            context: Deadline / cancellation shared by the whole operation
            strategy: Authentication strategy overriding the flavor default
            timeout: Per-request timeout in seconds
        """
        self.conn = conn
        self.repository = repository
        self.transports = tuple(transports) if transports else transports_for(conn)
        self.context = context or OperationContext()
        self.strategy = strategy or strategy_for(conn)
        self.timeout = timeout
        self._token: Optional[AuthToken] = None
        self._session = session
        self._owns_session = session is None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.invalidate()

    # -------------------------------------------------------------------------
    # Token / session
    # -------------------------------------------------------------------------

    def _ensure_valid_token(self) -> AuthToken:
        """Get token, authenticating if not done yet."""
        if not self._token:
            self.context.check()
            self._token = self.strategy.authenticate(
                self.conn,
                self._raw_session(),
                repository_scope(self.repository),
                timeout=self.context.request_timeout(self.timeout),
            )
        return self._token

    def _raw_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def authenticate(self) -> AuthToken:
        """Authenticate eagerly so credential problems surface first."""
        return self._ensure_valid_token()

    def auth_headers(self) -> dict:
        """
        Headers for one request.

        Set per request rather than on the session, since a session may be
        shared by the source and destination clients of a copy.
        """
        token = self._ensure_valid_token()
        return {
            "Accept": self.ACCEPT,
            "Authorization": self.strategy.header_value(token),
        }

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        self.context.check()
        # A file body read by an earlier attempt (fallback, 401 retry) starts over
        body = kwargs.get("data")
        if hasattr(body, "seek"):
            body.seek(0)
        session = self._raw_session()
        headers = self.auth_headers()
        headers.update(kwargs.pop("headers", None) or {})
        kwargs["headers"] = headers
        kwargs.setdefault("timeout", self.context.request_timeout(self.timeout))
        kwargs.setdefault("verify", not self.conn.insecure)
        logger.debug("%s %s", method, url)
        return session.request(method, url, **kwargs)

    def _send_with_fallback(self, method: str, path: str, **kwargs) -> requests.Response:
        """
        Try each transport in order.

        Only a failure to obtain any response moves on to the next transport;
        a well-formed error response is returned to the caller as is.
        """
        if path.startswith(("http://", "https://")):
            try:
                return self._send(method, path, **kwargs)
            except requests.RequestException as e:
                raise RegistryUnreachable(f"{method} {path} failed: {e}")

        last_error: Optional[Exception] = None
        for transport in self.transports:
            url = transport.url(self.conn, path)
            try:
                return self._send(method, url, **kwargs)
            except requests.RequestException as e:
                last_error = e
                logger.info("%s %s failed over %s: %s", method, path, transport.scheme, e)
        raise RegistryUnreachable(
            f"{method} {path} failed on every transport "
            f"({', '.join(t.scheme for t in self.transports)}): {last_error}"
        )

    def request_with_retry(self, method: str, path: str, **kwargs) -> requests.Response:
        """
        Make a registry request with automatic 401 retry.

        Args:
            method: HTTP method ("GET", "HEAD", ...)
            path: API path starting with /v2, or an absolute URL (upload sessions)
            **kwargs: Passed to requests (headers=, data=, params=, ...)

        Returns:
            requests.Response

        Raises:
            AuthenticationFailure: still unauthorized after re-authenticating
            RegistryUnreachable: no transport produced a response
            OperationCancelled
        """
        resp = self._send_with_fallback(method, path, **kwargs)

        if resp.status_code == 401:
            # Token expired or invalid, authenticate again and retry once
            self._token = None
            resp = self._send_with_fallback(method, path, **kwargs)
            if resp.status_code == 401:
                raise AuthenticationFailure(
                    f"Unauthorized: {method} {path}",
                    status_code=resp.status_code,
                    body=resp.text,
                )

        return resp

    def absolute_url(self, location: str, base_path: str) -> str:
        """
        Resolve an upload ``Location`` header against the registry.

        Registries may answer with an absolute URL or a path.
        """
        if location.startswith(("http://", "https://")):
            return location
        if not location.startswith("/"):
            location = base_path.rsplit("/", 1)[0] + "/" + location
        return location

    def invalidate(self):
        """
        Drop the token and close an owned session.

        Call this at operation boundaries so a token scoped to one
        repository is never reused for another.
        """
        if self._session is not None and self._owns_session:
            self._session.close()
            self._session = None
        self._token = None
