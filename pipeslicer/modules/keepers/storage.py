# storage.py - Registry records and build provenance in SQLite
#
# Registries: connection details the registry client is driven from.
# Images: which commit/branch produced which pushed tag, written after builds.

import os
import sqlite3
from datetime import datetime
from typing import Optional

from pipeslicer import config
from pipeslicer.modules.errors import RegistryConflict
from pipeslicer.modules.models import ImageMetadata


REGISTRY_FIELDS = ("name", "url", "flavor", "username", "password", "insecure", "description")


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


# =============================================================================
# Database Initialization
# =============================================================================

def init_database(db_path: Optional[str] = None) -> sqlite3.Connection:
    """
    Initialize SQLite database with schema for registries and image metadata.

    Creates the database file and tables if they don't exist.

    Args:
        db_path: Path to SQLite database file (defaults to config.DB_PATH)

    Returns:
        sqlite3.Connection to the database
    """
    db_path = db_path or config.DB_PATH

    # Ensure directory exists
    db_dir = os.path.dirname(db_path)
    if db_dir and not os.path.exists(db_dir):
        os.makedirs(db_dir)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row  # Enable dict-like access to rows

    cursor = conn.cursor()

    # Registries the client can connect to
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS registries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            url TEXT NOT NULL,
            flavor TEXT,
            username TEXT DEFAULT '',
            password TEXT DEFAULT '',
            insecure BOOLEAN DEFAULT 0,
            description TEXT DEFAULT '',
            created_at DATETIME,
            updated_at DATETIME
        )
    """)

    # Build provenance: one row per (service, tag)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS images (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            service TEXT NOT NULL,
            tag TEXT NOT NULL,
            "commit" TEXT NOT NULL,
            branch TEXT NOT NULL,
            build_time TIMESTAMP NOT NULL,
            status TEXT NOT NULL,
            registry TEXT NOT NULL,
            image_name TEXT NOT NULL,
            UNIQUE(service, tag)
        )
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_images_service_branch
        ON images(service, branch)
    """)

    conn.commit()
    return conn


# =============================================================================
# Registries
# =============================================================================

def _registry_row(row: Optional[sqlite3.Row]) -> Optional[dict]:
    if row is None:
        return None
    record = dict(row)
    record["insecure"] = bool(record.get("insecure"))
    return record


def create_registry(
    conn: sqlite3.Connection,
    name: str,
    url: str,
    username: str = "",
    password: str = "",
    flavor: Optional[str] = None,
    insecure: bool = False,
    description: str = "",
) -> dict:
    """
    Insert a registry record.

    Raises:
        RegistryConflict: a registry with this name already exists
    """
    now = _now()
    try:
        cursor = conn.execute(
            """
            INSERT INTO registries
                (name, url, flavor, username, password, insecure, description, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (name, url, flavor, username, password, int(bool(insecure)), description, now, now),
        )
    except sqlite3.IntegrityError:
        raise RegistryConflict("registry with this name already exists")
    conn.commit()
    return get_registry(conn, cursor.lastrowid)


def get_registry(conn: sqlite3.Connection, registry_id: int) -> Optional[dict]:
    row = conn.execute("SELECT * FROM registries WHERE id = ?", (registry_id,)).fetchone()
    return _registry_row(row)


def get_registry_by_name(conn: sqlite3.Connection, name: str) -> Optional[dict]:
    row = conn.execute("SELECT * FROM registries WHERE name = ?", (name,)).fetchone()
    return _registry_row(row)


def list_registries(conn: sqlite3.Connection) -> list[dict]:
    rows = conn.execute("SELECT * FROM registries ORDER BY id").fetchall()
    return [_registry_row(row) for row in rows]


def update_registry(conn: sqlite3.Connection, registry_id: int, **fields) -> Optional[dict]:
    """
    Update the given columns of a registry record.

    Unknown keys are ignored; returns the updated record or None when the
    id does not exist.

    Raises:
        RegistryConflict: the new name belongs to another registry
    """
    updates = {k: v for k, v in fields.items() if k in REGISTRY_FIELDS and v is not None}
    if "insecure" in updates:
        updates["insecure"] = int(bool(updates["insecure"]))
    if not updates:
        return get_registry(conn, registry_id)

    updates["updated_at"] = _now()
    assignments = ", ".join(f"{column} = ?" for column in updates)
    try:
        cursor = conn.execute(
            f"UPDATE registries SET {assignments} WHERE id = ?",
            (*updates.values(), registry_id),
        )
    except sqlite3.IntegrityError:
        raise RegistryConflict("registry with this name already exists")
    conn.commit()
    if cursor.rowcount == 0:
        return None
    return get_registry(conn, registry_id)


def delete_registry(conn: sqlite3.Connection, registry_id: int) -> bool:
    cursor = conn.execute("DELETE FROM registries WHERE id = ?", (registry_id,))
    conn.commit()
    return cursor.rowcount > 0


# =============================================================================
# Image metadata (build provenance)
# =============================================================================

IMAGE_COLUMNS = 'id, service, tag, "commit", branch, build_time, status, registry, image_name'


def _image_row(row: Optional[sqlite3.Row]) -> Optional[ImageMetadata]:
    if row is None:
        return None
    return ImageMetadata(
        id=row["id"],
        service=row["service"],
        tag=row["tag"],
        commit=row["commit"],
        branch=row["branch"],
        build_time=str(row["build_time"]),
        status=row["status"],
        registry=row["registry"],
        image_name=row["image_name"],
    )


def record_image(conn: sqlite3.Connection, metadata: ImageMetadata) -> int:
    """
    Record metadata about a built image.

    A second build of the same (service, tag) replaces the first.

    Returns:
        Row id of the stored record
    """
    cursor = conn.execute(
        """
        INSERT OR REPLACE INTO images
            (service, tag, "commit", branch, build_time, status, registry, image_name)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            metadata.service,
            metadata.tag,
            metadata.commit,
            metadata.branch,
            metadata.build_time or _now(),
            metadata.status,
            metadata.registry,
            metadata.image_name,
        ),
    )
    conn.commit()
    return cursor.lastrowid


def get_latest_image(conn: sqlite3.Connection, service: str, branch: str) -> Optional[ImageMetadata]:
    """Latest successful image for a service on a branch."""
    row = conn.execute(
        f"""
        SELECT {IMAGE_COLUMNS} FROM images
        WHERE service = ? AND branch = ? AND status = 'success'
        ORDER BY build_time DESC
        LIMIT 1
        """,
        (service, branch),
    ).fetchone()
    return _image_row(row)


def get_image_by_tag(conn: sqlite3.Connection, service: str, tag: str) -> Optional[ImageMetadata]:
    row = conn.execute(
        f"SELECT {IMAGE_COLUMNS} FROM images WHERE service = ? AND tag = ? LIMIT 1",
        (service, tag),
    ).fetchone()
    return _image_row(row)


def get_image_by_commit(conn: sqlite3.Connection, service: str, commit: str) -> Optional[ImageMetadata]:
    """Latest successful image built from ``commit``."""
    row = conn.execute(
        f"""
        SELECT {IMAGE_COLUMNS} FROM images
        WHERE service = ? AND "commit" = ? AND status = 'success'
        ORDER BY build_time DESC
        LIMIT 1
        """,
        (service, commit),
    ).fetchone()
    return _image_row(row)


def get_image_history(conn: sqlite3.Connection, service: str, limit: int = 10) -> list[ImageMetadata]:
    if limit <= 0:
        limit = 10
    rows = conn.execute(
        f"""
        SELECT {IMAGE_COLUMNS} FROM images
        WHERE service = ?
        ORDER BY build_time DESC
        LIMIT ?
        """,
        (service, limit),
    ).fetchall()
    return [_image_row(row) for row in rows]


def delete_image_record(conn: sqlite3.Connection, image_id: int) -> bool:
    cursor = conn.execute("DELETE FROM images WHERE id = ?", (image_id,))
    conn.commit()
    return cursor.rowcount > 0


def tag_image_record(conn: sqlite3.Connection, service: str, source_tag: str, new_tag: str) -> ImageMetadata:
    """
    Record ``new_tag`` as another name for an existing build.

    Raises:
        ValueError: no record for (service, source_tag)
    """
    source = get_image_by_tag(conn, service, source_tag)
    if source is None:
        raise ValueError(f"No image found for service {service} with tag {source_tag}")

    tagged = ImageMetadata(
        service=source.service,
        tag=new_tag,
        commit=source.commit,
        branch=source.branch,
        build_time=_now(),
        status=source.status,
        registry=source.registry,
        image_name=source.image_name,
    )
    tagged.id = record_image(conn, tagged)
    return tagged


def get_service_list(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute("SELECT DISTINCT service FROM images ORDER BY service").fetchall()
    return [row["service"] for row in rows]


def get_tags_for_service(conn: sqlite3.Connection, service: str) -> list[str]:
    rows = conn.execute(
        "SELECT tag FROM images WHERE service = ? ORDER BY build_time DESC",
        (service,),
    ).fetchall()
    return [row["tag"] for row in rows]
