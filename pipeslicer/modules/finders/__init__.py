from .manifests import (
    DIGEST_HEADER,
    list_repositories,
    list_tags,
    list_images,
    parse_manifest,
    get_manifest,
    resolve_digest,
    fetch_blob,
    stream_blob,
    parse_image_config,
    get_image_detail,
)
