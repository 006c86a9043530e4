# CLI argument parsing for Pipeslicer
# One subcommand per registry operation; main.py dispatches on args.command

import argparse
import sys

from pipeslicer import config


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="pipeslicer",
        description="Manage images across Docker Hub, Harbor and plain distribution registries.",
    )
    p.add_argument(
        "--db",
        dest="db_path",
        default=config.DB_PATH,
        help=f"SQLite database holding registry records (default: {config.DB_PATH})",
    )
    p.add_argument(
        "--log-file", "-l",
        dest="log_file",
        help="Path to save a complete log of output",
    )
    p.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log every registry request",
    )
    p.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Give up on the whole operation after this many seconds",
    )

    sub = p.add_subparsers(dest="command", metavar="COMMAND")

    # --- API server ---
    api = sub.add_parser("api", help="Start the API server (uvicorn)")
    api.add_argument("--host", default=config.API_HOST)
    api.add_argument("--port", type=int, default=config.API_PORT)
    api.add_argument("--reload", action="store_true", default=config.API_RELOAD)

    # --- Registry records ---
    sub.add_parser("registries", help="List stored registries")

    add = sub.add_parser("add-registry", help="Store a registry")
    add.add_argument("--name", "-n", required=True)
    add.add_argument("--url", "-u", default="", help="Registry URL, e.g. harbor.example.com or http://localhost:5000")
    add.add_argument("--username", default="")
    add.add_argument("--password", default="")
    add.add_argument(
        "--flavor",
        choices=["dockerhub", "harbor", "generic"],
        default=None,
        help="Registry vendor (inferred from the URL when omitted)",
    )
    add.add_argument("--insecure", action="store_true", help="Skip TLS certificate verification")
    add.add_argument("--description", default="")

    remove = sub.add_parser("remove-registry", help="Delete a stored registry")
    remove.add_argument("registry_id", type=int)

    test = sub.add_parser("test", help="Test the connection to a registry")
    test.add_argument("registry_id", type=int)

    # --- Images ---
    images = sub.add_parser("images", help="List repositories and their tags")
    images.add_argument("registry_id", type=int)

    detail = sub.add_parser("detail", help="Show manifest and config of an image")
    detail.add_argument("registry_id", type=int)
    detail.add_argument("image_ref", help="repo:tag (tag defaults to latest)")

    retag = sub.add_parser("retag", help="Point a new tag at an existing manifest")
    retag.add_argument("registry_id", type=int)
    retag.add_argument("image_ref", help="repo:source_tag")
    retag.add_argument("target_tag")
    retag.add_argument("--target-image", dest="target_image", default=None,
                       help="Repository receiving the tag (default: same repository)")

    delete = sub.add_parser("delete", help="Delete an image, every tag sharing its digest and its blobs")
    delete.add_argument("registry_id", type=int)
    delete.add_argument("image_ref", help="repo:tag")

    copy = sub.add_parser("copy", help="Copy an image between registries")
    copy.add_argument("source_registry_id", type=int)
    copy.add_argument("source_ref", help="repo:tag at the source")
    copy.add_argument("target_registry_id", type=int)
    copy.add_argument("target_ref", help="repo:tag at the target")

    # --- Build provenance ---
    record = sub.add_parser("record-build", help="Record which commit produced an image tag")
    record.add_argument("--service", required=True)
    record.add_argument("--tag", required=True)
    record.add_argument("--commit", required=True)
    record.add_argument("--branch", required=True)
    record.add_argument("--status", default="success")
    record.add_argument("--registry", default="")
    record.add_argument("--image-name", dest="image_name", default="")

    history = sub.add_parser("history", help="Show recorded builds of a service")
    history.add_argument("service")
    history.add_argument("--limit", type=int, default=10)

    return p


def parse_args(argv=None):
    p = build_parser()
    args = p.parse_args(argv)
    # Show help if no mode selected
    if not args.command:
        p.print_help()
        sys.exit(0)
    return args
