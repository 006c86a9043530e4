"""
Registry authentication strategies.

One strategy is chosen per connection from its flavor:
- Docker Hub exchanges Basic credentials for a scoped bearer token
- Harbor and generic registries reuse base64(username:password) as a
  Basic credential on every call, with no round trip

Tokens are never cached here; each operation authenticates again.
"""

import base64
import logging
from typing import Optional, Sequence, Union

import requests

from pipeslicer import config
from pipeslicer.modules.errors import AuthenticationFailure
from pipeslicer.modules.models import AuthToken, Flavor, RegistryConnection

logger = logging.getLogger(__name__)


def repository_scope(repository: Union[str, Sequence[str], None]) -> list[str]:
    """
    Token scopes for one or more repositories, or the catalog when none is given.

    The token service accepts a repeated ``scope`` parameter, so one token
    can cover the source and target repository of a cross-repository retag.
    """
    if not repository:
        return ["registry:catalog:*"]
    if isinstance(repository, str):
        repository = [repository]
    scopes = []
    for name in repository:
        scope = f"repository:{name}:pull,push"
        if scope not in scopes:
            scopes.append(scope)
    return scopes


def basic_credential(username: str, password: str) -> str:
    return base64.b64encode(f"{username}:{password}".encode()).decode()


class AuthStrategy:
    """Interface shared by the flavor specific authenticators."""

    scheme = ""

    def authenticate(
        self,
        conn: RegistryConnection,
        session: requests.Session,
        scope: list[str],
        timeout: float = config.REQUEST_TIMEOUT,
    ) -> AuthToken:
        raise NotImplementedError

    def header_value(self, token: AuthToken) -> str:
        return f"{self.scheme} {token.value}"


class DockerHubTokenAuth(AuthStrategy):
    """Bearer token from the Docker Hub token service."""

    scheme = "Bearer"

    def __init__(self, auth_url: str = config.DOCKERHUB_AUTH_URL,
                 service: str = config.DOCKERHUB_SERVICE):
        self.auth_url = auth_url
        self.service = service

    def authenticate(self, conn, session, scope, timeout=config.REQUEST_TIMEOUT):
        """
        Fetch a bearer token for ``scope``.

        Credentials are sent as HTTP Basic when configured; without them the
        token service hands out an anonymous pull token.

        Raises:
            AuthenticationFailure: non-200 response, undecodable body, or no token
        """
        auth = None
        if conn.has_credentials:
            auth = (conn.username, conn.password)

        try:
            resp = session.get(
                self.auth_url,
                params={"service": self.service, "scope": scope},
                auth=auth,
                timeout=timeout,
            )
        except requests.RequestException as e:
            raise AuthenticationFailure(f"Token service unreachable: {e}")

        if resp.status_code != 200:
            raise AuthenticationFailure(
                "Failed to authenticate with Docker Hub",
                status_code=resp.status_code,
                body=resp.text,
            )

        try:
            payload = resp.json()
        except ValueError:
            raise AuthenticationFailure("Token service returned a non-JSON body", body=resp.text)

        # Use token or access_token, whichever is available
        token = payload.get("token") or payload.get("access_token")
        if not token:
            raise AuthenticationFailure("Token service returned no token")

        logger.debug("Obtained Docker Hub token for scope %s", scope)
        return AuthToken(scheme=self.scheme, value=token)


class BasicAuth(AuthStrategy):
    """Static Basic credential used by Harbor and plain distribution registries."""

    scheme = "Basic"

    def authenticate(self, conn, session, scope, timeout=config.REQUEST_TIMEOUT):
        return AuthToken(scheme=self.scheme, value=basic_credential(conn.username, conn.password))


def strategy_for(conn: RegistryConnection) -> AuthStrategy:
    if conn.flavor is Flavor.DOCKERHUB:
        return DockerHubTokenAuth()
    return BasicAuth()


def authenticate(
    conn: RegistryConnection,
    repository: Union[str, Sequence[str], None] = None,
    session: Optional[requests.Session] = None,
) -> AuthToken:
    """
    Obtain a usable token for ``conn``.

    Args:
        conn: Normalized registry connection
        repository: Repository or repositories the token is scoped to (Docker Hub only)
        session: Session to reuse; a throwaway one is created otherwise

    Returns:
        AuthToken

    Raises:
        AuthenticationFailure
    """
    owned = session is None
    session = session or requests.Session()
    try:
        return strategy_for(conn).authenticate(conn, session, repository_scope(repository))
    finally:
        if owned:
            session.close()
