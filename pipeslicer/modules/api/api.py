from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import fastapi_swagger_dark as fsd

from pipeslicer import __version__
from pipeslicer.modules.errors import (
    AuthenticationFailure,
    BlobTransferFailure,
    InvalidRegistryConfig,
    ManifestNotFound,
    OperationCancelled,
    RegistryConflict,
    RegistryError,
    RegistryNotFound,
    RegistryUnreachable,
    RepositoryNotFound,
)
from pipeslicer.modules.keepers.storage import init_database
from pipeslicer.modules.service import RegistryService

app = FastAPI(
    title="Pipeslicer Registry API",
    docs_url=None,
    description="""
**Pipeslicer Registry API**
* Registry records and connection tests
* Image listing, detail, retag, cascading delete
* Cross-registry image copy
    """,
    version=__version__,
    )

# Create a router for the dark docs
router = APIRouter()

# Install dark theme on the router
fsd.install(router)

# Include the router in the app
app.include_router(router)


# =============================================================================
# Request bodies
# =============================================================================

class RegistryCreate(BaseModel):
    name: str
    url: str = ""
    username: str = ""
    password: str = ""
    flavor: Optional[str] = None
    insecure: bool = False
    description: str = ""


class RegistryUpdate(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    flavor: Optional[str] = None
    insecure: Optional[bool] = None
    description: Optional[str] = None


class RetagRequest(BaseModel):
    image: str
    source_tag: str
    target_tag: str
    target_image: Optional[str] = None


class CopyRequest(BaseModel):
    source_registry_id: int
    source_image: str
    source_tag: str
    target_registry_id: int
    target_image: str
    target_tag: str


# =============================================================================
# Dependencies / error mapping
# =============================================================================

def get_registry_service():
    """One database connection per request."""
    conn = init_database()
    try:
        yield RegistryService(conn)
    finally:
        conn.close()


ERROR_STATUS = (
    (RegistryNotFound, 404),
    (RepositoryNotFound, 404),
    (ManifestNotFound, 404),
    (RegistryConflict, 409),
    (InvalidRegistryConfig, 400),
    (AuthenticationFailure, 401),
    (OperationCancelled, 504),
    (RegistryUnreachable, 502),
)


def http_error(e: RegistryError) -> HTTPException:
    for error_cls, status in ERROR_STATUS:
        if isinstance(e, error_cls):
            return HTTPException(status_code=status, detail=str(e))
    return HTTPException(status_code=502, detail=str(e))


def public_registry(record: dict) -> dict:
    """Registry record without its password."""
    return {k: v for k, v in record.items() if k != "password"}


# =============================================================================
# Health
# =============================================================================

@app.get("/health")
def health():
    return {"status": "ok", "version": __version__}


# =============================================================================
# Registry records
# =============================================================================

@app.post("/registries", status_code=201)
def create_registry(body: RegistryCreate, service: RegistryService = Depends(get_registry_service)):
    """
    ## Create Registry

    - `flavor` is one of `dockerhub`, `harbor`, `generic`; inferred from the URL when omitted
    - Harbor and generic registries require URL, username and password
    """
    try:
        record = service.create_registry(**body.model_dump())
    except RegistryError as e:
        raise http_error(e)
    return JSONResponse(content=public_registry(record), status_code=201)


@app.get("/registries")
def list_registries(service: RegistryService = Depends(get_registry_service)):
    return [public_registry(r) for r in service.list_registries()]


@app.get("/registries/{registry_id}")
def get_registry(registry_id: int, service: RegistryService = Depends(get_registry_service)):
    try:
        return public_registry(service.get_registry(registry_id))
    except RegistryError as e:
        raise http_error(e)


@app.put("/registries/{registry_id}")
def update_registry(registry_id: int, body: RegistryUpdate,
                    service: RegistryService = Depends(get_registry_service)):
    try:
        record = service.update_registry(registry_id, **body.model_dump(exclude_none=True))
    except RegistryError as e:
        raise http_error(e)
    return public_registry(record)


@app.delete("/registries/{registry_id}")
def delete_registry(registry_id: int, service: RegistryService = Depends(get_registry_service)):
    try:
        service.delete_registry(registry_id)
    except RegistryError as e:
        raise http_error(e)
    return {"message": "registry deleted"}


@app.post("/registries/{registry_id}/test-connection")
def test_connection(registry_id: int, service: RegistryService = Depends(get_registry_service)):
    """
    ## Test Connection

    Authenticates and probes `/v2/`. Always answers 200 for a known registry;
    the body's `status` is `success` or `failed`.
    """
    try:
        return service.test_connection(registry_id)
    except RegistryError as e:
        raise http_error(e)


# =============================================================================
# Images
# =============================================================================

# Declared before the /registries/{registry_id}/... routes
@app.post("/registries/images/copy")
def copy_image(body: CopyRequest, service: RegistryService = Depends(get_registry_service)):
    """
    ## Copy Image

    Copies config and layer blobs the target does not already hold, then the
    manifest. If any blob fails the manifest is not pushed and the response
    is 502 with per-blob outcomes.
    """
    try:
        result = service.copy_image(**body.model_dump())
    except BlobTransferFailure as e:
        raise HTTPException(
            status_code=502,
            detail={
                "message": str(e),
                "blobs": [o.to_dict() for o in e.outcomes],
            },
        )
    except RegistryError as e:
        raise http_error(e)
    return {"message": "image copied", **result.to_dict()}


@app.get("/registries/{registry_id}/images")
def list_images(registry_id: int, service: RegistryService = Depends(get_registry_service)):
    try:
        images = service.list_images(registry_id)
    except RegistryError as e:
        raise http_error(e)
    return [image.to_dict() for image in images]


@app.post("/registries/{registry_id}/images/retag")
def retag_image(registry_id: int, body: RetagRequest,
                service: RegistryService = Depends(get_registry_service)):
    try:
        digest = service.retag_image(registry_id, **body.model_dump())
    except RegistryError as e:
        raise http_error(e)
    return {"message": "image retagged", "digest": digest}


@app.get("/registries/{registry_id}/images/{image:path}/{tag}")
def get_image_detail(registry_id: int, image: str, tag: str,
                     service: RegistryService = Depends(get_registry_service)):
    """
    ## Image Detail

    Manifest digest, total size, layers, history, Env and Labels from the
    config blob. `image` may contain slashes (`team/app`).
    """
    try:
        detail = service.get_image_detail(registry_id, image, tag)
    except RegistryError as e:
        raise http_error(e)
    return detail.to_dict()


@app.delete("/registries/{registry_id}/images/{image:path}/{tag}")
def delete_image(registry_id: int, image: str, tag: str,
                 service: RegistryService = Depends(get_registry_service)):
    """
    ## Delete Image

    Deletes every tag sharing the manifest digest, then the config and layer
    blobs. Partial failures answer 502 with the per-item record.
    """
    try:
        result = service.delete_image(registry_id, image, tag)
    except RegistryError as e:
        raise http_error(e)
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.to_dict())
    return {"message": "image deleted", **result.to_dict()}
