"""
Registry operations keyed by stored registry id.

RegistryService is what the API and the CLI talk to: it loads the registry
record, normalizes it into a RegistryConnection, runs one operation with a
fresh RegistryClient and always invalidates the client afterwards.
"""

import logging
import sqlite3
from typing import Optional, Sequence, Union

import requests

from pipeslicer.modules.auth.client import OperationContext, RegistryClient, Transport
from pipeslicer.modules.errors import RegistryConflict, RegistryError, RegistryNotFound
from pipeslicer.modules.finders.manifests import get_image_detail, list_images
from pipeslicer.modules.formatters import (
    normalize_connection,
    parse_image_ref,
    validate_registry_config,
)
from pipeslicer.modules.keepers import deleter, storage, tagger
from pipeslicer.modules.models import Flavor, ImageDetail, ImageSummary, RegistryConnection

logger = logging.getLogger(__name__)


class RegistryService:
    """
    Usage:
        conn = storage.init_database()
        service = RegistryService(conn)
        registry = service.create_registry("local", "localhost:5000", "admin", "secret")
        service.list_images(registry["id"])
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        session: Optional[requests.Session] = None,
        transports: Optional[Sequence[Transport]] = None,
    ):
        """
        Args:
            conn: Open database connection holding the registries table
            session: Session shared by every client (tests mount a fake registry on it)
            transports: Transport order overriding each connection's default
        """
        self.conn = conn
        self.session = session
        self.transports = transports

    # -------------------------------------------------------------------------
    # Registry records
    # -------------------------------------------------------------------------

    def create_registry(
        self,
        name: str,
        url: str,
        username: str = "",
        password: str = "",
        flavor: Optional[str] = None,
        insecure: bool = False,
        description: str = "",
    ) -> dict:
        """
        Raises:
            InvalidRegistryConfig: missing URL/credentials or unknown flavor
            RegistryConflict: name already taken
        """
        validate_registry_config(url, username, password, flavor)
        normalize_connection(url, username, password, flavor, insecure)

        if storage.get_registry_by_name(self.conn, name) is not None:
            raise RegistryConflict("registry with this name already exists")

        record = storage.create_registry(
            self.conn,
            name=name,
            url=url,
            username=username,
            password=password,
            flavor=Flavor(flavor).value if flavor else None,
            insecure=insecure,
            description=description,
        )
        logger.info("Created registry %s (%s)", name, url)
        return record

    def get_registry(self, registry_id: int) -> dict:
        record = storage.get_registry(self.conn, registry_id)
        if record is None:
            raise RegistryNotFound(f"registry {registry_id} not found")
        return record

    def list_registries(self) -> list[dict]:
        return storage.list_registries(self.conn)

    def update_registry(self, registry_id: int, **fields) -> dict:
        """
        Update a registry record; the merged record must still be valid.

        Raises:
            RegistryNotFound
            RegistryConflict: renamed onto another registry's name
            InvalidRegistryConfig
        """
        current = self.get_registry(registry_id)

        name = fields.get("name")
        if name and name != current["name"]:
            other = storage.get_registry_by_name(self.conn, name)
            if other is not None and other["id"] != registry_id:
                raise RegistryConflict("registry with this name already exists")

        merged = {**current, **{k: v for k, v in fields.items() if v is not None}}
        validate_registry_config(merged["url"], merged["username"], merged["password"], merged["flavor"])
        normalize_connection(merged["url"], merged["username"], merged["password"],
                             merged["flavor"], merged["insecure"])
        if fields.get("flavor"):
            fields["flavor"] = Flavor(fields["flavor"]).value

        record = storage.update_registry(self.conn, registry_id, **fields)
        if record is None:
            raise RegistryNotFound(f"registry {registry_id} not found")
        return record

    def delete_registry(self, registry_id: int) -> None:
        if not storage.delete_registry(self.conn, registry_id):
            raise RegistryNotFound(f"registry {registry_id} not found")
        logger.info("Deleted registry %s", registry_id)

    # -------------------------------------------------------------------------
    # Clients
    # -------------------------------------------------------------------------

    def connection_for(self, registry_id: int) -> RegistryConnection:
        record = self.get_registry(registry_id)
        return normalize_connection(
            record["url"],
            record["username"],
            record["password"],
            record["flavor"],
            record["insecure"],
        )

    def _client(self, conn: RegistryConnection, repository: Union[str, Sequence[str], None] = None,
                context: Optional[OperationContext] = None) -> RegistryClient:
        return RegistryClient(
            conn,
            repository=repository,
            session=self.session,
            transports=self.transports,
            context=context,
        )

    @staticmethod
    def repository_name(conn: RegistryConnection, image: str) -> str:
        """Docker Hub official images live under ``library/``."""
        if conn.flavor is Flavor.DOCKERHUB:
            repo, _ = parse_image_ref(image, default_namespace="library")
            return repo
        return image.strip("/")

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def test_connection(self, registry_id: int, context: Optional[OperationContext] = None) -> dict:
        """
        Authenticate and GET /v2/.

        Returns:
            {"status": "success" | "failed", "message": ...}
        """
        conn = self.connection_for(registry_id)
        client = self._client(conn, context=context)
        try:
            client.authenticate()
            resp = client.request_with_retry("GET", "/v2/")
        except RegistryError as e:
            logger.warning("Connection test for registry %s failed: %s", registry_id, e)
            return {"status": "failed", "message": str(e)}
        finally:
            client.invalidate()

        if resp.status_code != 200:
            return {
                "status": "failed",
                "message": f"registry answered {resp.status_code} on /v2/",
            }
        return {"status": "success", "message": "Connection successful"}

    def list_images(self, registry_id: int, context: Optional[OperationContext] = None) -> list[ImageSummary]:
        conn = self.connection_for(registry_id)
        with self._client(conn, context=context) as client:
            return list_images(client)

    def get_image_detail(self, registry_id: int, image: str, tag: str,
                         context: Optional[OperationContext] = None) -> ImageDetail:
        conn = self.connection_for(registry_id)
        repo = self.repository_name(conn, image)
        with self._client(conn, repository=repo, context=context) as client:
            return get_image_detail(client, repo, tag)

    def retag_image(
        self,
        registry_id: int,
        image: str,
        source_tag: str,
        target_tag: str,
        target_image: Optional[str] = None,
        context: Optional[OperationContext] = None,
    ) -> Optional[str]:
        """Retag inside one registry; returns the manifest digest."""
        conn = self.connection_for(registry_id)
        repo = self.repository_name(conn, image)
        target_repo = self.repository_name(conn, target_image) if target_image else repo
        # The token must allow pushing to the target repository too
        with self._client(conn, repository=(repo, target_repo), context=context) as client:
            return tagger.retag(client, repo, source_tag, target_tag, destination_repo=target_repo)

    def delete_image(self, registry_id: int, image: str, tag: str,
                     context: Optional[OperationContext] = None) -> deleter.DeleteResult:
        conn = self.connection_for(registry_id)
        repo = self.repository_name(conn, image)
        with self._client(conn, repository=repo, context=context) as client:
            return deleter.delete_image(client, repo, tag)

    def copy_image(
        self,
        source_registry_id: int,
        source_image: str,
        source_tag: str,
        target_registry_id: int,
        target_image: str,
        target_tag: str,
        context: Optional[OperationContext] = None,
    ) -> tagger.CopyResult:
        source_conn = self.connection_for(source_registry_id)
        target_conn = self.connection_for(target_registry_id)
        source_repo = self.repository_name(source_conn, source_image)
        target_repo = self.repository_name(target_conn, target_image)

        # One context so cancelling stops both ends
        context = context or OperationContext()
        source = self._client(source_conn, repository=source_repo, context=context)
        target = self._client(target_conn, repository=target_repo, context=context)
        try:
            return tagger.copy_image(source, source_repo, source_tag, target, target_repo, target_tag)
        finally:
            source.invalidate()
            target.invalidate()
