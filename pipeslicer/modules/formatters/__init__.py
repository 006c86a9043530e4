from .formatters import (
    infer_flavor,
    split_url,
    normalize_connection,
    validate_registry_config,
    parse_image_ref,
    human_readable_size,
    short_digest,
)
