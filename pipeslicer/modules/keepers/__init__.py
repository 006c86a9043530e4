from .transfer import blob_exists, verify_digest, upload_blob, copy_blob, COPIED, SKIPPED
from .tagger import push_manifest, retag, copy_image, CopyResult
from .deleter import (
    delete_image,
    find_tags_for_digest,
    trigger_garbage_collection,
    DeleteResult,
    DELETED,
    ALREADY_DELETED,
    FAILED,
)
from . import storage
from .storage import (
    init_database,
    # Registry records
    create_registry,
    get_registry,
    get_registry_by_name,
    list_registries,
    update_registry,
    delete_registry,
    # Build provenance
    record_image,
    get_latest_image,
    get_image_by_tag,
    get_image_by_commit,
    get_image_history,
    delete_image_record,
    tag_image_record,
    get_service_list,
    get_tags_for_service,
)
