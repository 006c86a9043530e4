#  Pipeslicer main CLI: registry records, image operations, build provenance
#  Dispatches on the subcommand parsed by pipeslicer.modules.cli

import logging
import os
import sys

from pipeslicer import config
from pipeslicer.modules.auth import OperationContext
from pipeslicer.modules.cli import parse_args
from pipeslicer.modules.errors import BlobTransferFailure, PartialDeleteFailure, RegistryError
from pipeslicer.modules.formatters import human_readable_size, parse_image_ref, short_digest
from pipeslicer.modules.keepers import storage
from pipeslicer.modules.models import ImageMetadata
from pipeslicer.modules.service import RegistryService


def setup_logging(log_file=None, verbose=False):
    level = logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL, logging.INFO)
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )
    # requests/urllib3 connection chatter only when asked for
    if not verbose:
        logging.getLogger("urllib3").setLevel(logging.WARNING)


# =============================================================================
# Output helpers
# =============================================================================

def print_registry(record):
    secure = "insecure" if record["insecure"] else "tls"
    flavor = record["flavor"] or "auto"
    print(f"  [{record['id']}] {record['name']:<20} {record['url']:<40} {flavor:<10} {secure}")


def print_detail(detail):
    print(f"\n[+] {detail.name}:{detail.tags[0]}")
    print(f"    Digest:       {detail.digest or '-'}")
    print(f"    Size:         {human_readable_size(detail.size)}")
    print(f"    Created:      {detail.created_at or '-'}")
    print(f"    Platform:     {detail.config.os}/{detail.config.architecture}")

    print(f"\n    Layers ({len(detail.layers)}):")
    for idx, layer in enumerate(detail.layers):
        print(f"      [{idx}] {short_digest(layer.digest)}  {human_readable_size(layer.size)}")

    if detail.config.env:
        print("\n    Env:")
        for item in detail.config.env:
            print(f"      {item}")

    if detail.labels:
        print("\n    Labels:")
        for key, value in sorted(detail.labels.items()):
            print(f"      {key}={value}")

    if detail.history:
        print("\n    History:")
        for entry in detail.history:
            marker = " " if entry.empty_layer else "*"
            print(f"      {marker} {entry.created_by}")


def print_outcomes(outcomes):
    for outcome in outcomes:
        line = f"      {outcome.status:<16} {outcome.item}"
        if outcome.error:
            line += f"  ({outcome.error})"
        print(line)


# =============================================================================
# Commands
# =============================================================================

def run_command(args, service, db):
    context = OperationContext(timeout=args.timeout)

    if args.command == "registries":
        records = service.list_registries()
        if not records:
            print("[*] No registries stored")
            return 0
        print(f"[*] {len(records)} registries:")
        for record in records:
            print_registry(record)
        return 0

    if args.command == "add-registry":
        record = service.create_registry(
            name=args.name,
            url=args.url,
            username=args.username,
            password=args.password,
            flavor=args.flavor,
            insecure=args.insecure,
            description=args.description,
        )
        print(f"[+] Stored registry {record['name']} with id {record['id']}")
        return 0

    if args.command == "remove-registry":
        service.delete_registry(args.registry_id)
        print(f"[+] Removed registry {args.registry_id}")
        return 0

    if args.command == "test":
        result = service.test_connection(args.registry_id, context=context)
        if result["status"] == "success":
            print(f"[+] {result['message']}")
            return 0
        print(f"[!] Connection failed: {result['message']}")
        return 1

    if args.command == "images":
        images = service.list_images(args.registry_id, context=context)
        if not images:
            print("[*] No tagged images found")
        for image in images:
            print(f"  {image.name}")
            for tag in image.tags:
                print(f"    - {tag}")
        return 0

    if args.command == "detail":
        image, tag = parse_image_ref(args.image_ref)
        print_detail(service.get_image_detail(args.registry_id, image, tag, context=context))
        return 0

    if args.command == "retag":
        image, source_tag = parse_image_ref(args.image_ref)
        print(f"[*] Retagging {image}:{source_tag} as {args.target_image or image}:{args.target_tag}")
        digest = service.retag_image(
            args.registry_id, image, source_tag, args.target_tag,
            target_image=args.target_image, context=context,
        )
        print(f"[+] Retagged ({digest or 'digest not reported'})")
        return 0

    if args.command == "delete":
        image, tag = parse_image_ref(args.image_ref)
        print(f"[*] Deleting {image}:{tag} and every tag sharing its digest")
        result = service.delete_image(args.registry_id, image, tag, context=context)
        print(f"    Manifest {result.digest}")
        print("    Tags:")
        print_outcomes(result.tags)
        print("    Blobs:")
        print_outcomes(result.blobs)
        result.raise_for_status()
        print(f"[+] Deleted {len(result.deleted_tags)} tags and {len(result.blobs)} blobs")
        return 0

    if args.command == "copy":
        source_image, source_tag = parse_image_ref(args.source_ref)
        target_image, target_tag = parse_image_ref(args.target_ref)
        print(f"[*] Copying {source_image}:{source_tag} -> {target_image}:{target_tag}")
        result = service.copy_image(
            args.source_registry_id, source_image, source_tag,
            args.target_registry_id, target_image, target_tag,
            context=context,
        )
        print_outcomes(result.blobs)
        print(f"[+] Copied {result.copied} blobs, {result.skipped} already present, manifest {result.digest or 'pushed'}")
        return 0

    if args.command == "record-build":
        metadata = ImageMetadata(
            service=args.service,
            tag=args.tag,
            commit=args.commit,
            branch=args.branch,
            build_time="",
            status=args.status,
            registry=args.registry,
            image_name=args.image_name or args.service,
        )
        row_id = storage.record_image(db, metadata)
        print(f"[+] Recorded {args.service}:{args.tag} from {args.commit[:12]} ({row_id})")
        return 0

    if args.command == "history":
        records = storage.get_image_history(db, args.service, args.limit)
        if not records:
            print(f"[*] No builds recorded for {args.service}")
        for record in records:
            print(f"  {record.build_time}  {record.tag:<24} {record.commit[:12]}  {record.branch:<16} {record.status}")
        return 0

    print(f"[!] Unknown command: {args.command}")
    return 2


def main(argv=None):
    args = parse_args(argv)

    # --- API server mode ---
    if args.command == "api":
        import uvicorn
        # Reloader subprocesses re-read the environment
        os.environ["PIPESLICER_DB_PATH"] = config.DB_PATH = args.db_path
        print(f"[*] Starting API server on http://{args.host}:{args.port}/docs")
        uvicorn.run("pipeslicer.modules.api.api:app", host=args.host, port=args.port, reload=args.reload)
        return 0

    setup_logging(args.log_file, args.verbose)

    db = storage.init_database(args.db_path)
    service = RegistryService(db)
    try:
        return run_command(args, service, db)
    except BlobTransferFailure as e:
        print(f"[!] {e}")
        print_outcomes(e.outcomes)
        return 1
    except PartialDeleteFailure as e:
        print(f"[!] {e}")
        return 1
    except (RegistryError, ValueError) as e:
        print(f"[!] Error: {e}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
