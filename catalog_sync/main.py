"""CLI entrypoint for extraction run -> catalog transfers."""

from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError

from .config import load_config
from .errors import MappingError, TransferError
from .logging_setup import setup_logging
from .mapping_loader import load_mapping_file
from .mapping_store import MappingStore
from .sync_engine import MODES, SyncEngine, TransferOptions


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Extraction run -> PrestaShop catalog transfer")
    subparsers = parser.add_subparsers(dest="command", required=True)

    transfer_parser = subparsers.add_parser("transfer", help="Transfer one extraction run")
    transfer_parser.add_argument("--run-id", type=int, required=True, help="Extraction run id")
    transfer_parser.add_argument("--profile-id", type=int, help="Connection profile override")
    transfer_parser.add_argument("--mapping", help="Explicit mapping file (skips stored versions)")
    transfer_parser.add_argument("--mapping-version", type=int, help="Pin a stored mapping version")
    transfer_parser.add_argument("--page-type", help="Override the run's page type")
    transfer_parser.add_argument("--mode", choices=MODES, default="upsert")
    transfer_parser.add_argument("--product-id", type=int, help="Force writes onto this product id")
    transfer_parser.add_argument("--dry-run", action="store_true", help="Resolve and preview without writes")

    publish_parser = subparsers.add_parser("publish-mapping", help="Store a mapping file as a new version")
    publish_parser.add_argument("--domain", required=True)
    publish_parser.add_argument("--page-type", default="product")
    publish_parser.add_argument("--mapping", required=True, help="Mapping file path")

    validate_parser = subparsers.add_parser("validate-mapping", help="Validate mapping file")
    validate_parser.add_argument("--mapping", help="Override mapping file path")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config = load_config()
    logger = setup_logging(config.log_file, config.log_level)

    mapping = None
    mapping_path = getattr(args, "mapping", None)
    if args.command == "validate-mapping":
        mapping_path = mapping_path or config.mapping_file
    if mapping_path:
        try:
            mapping = load_mapping_file(mapping_path)
        except (MappingError, OSError) as exc:
            logger.error("mapping_invalid", extra={"event": "mapping_invalid", "detail": str(exc)})
            print(f"Mapping validation failed: {exc}")
            return 2

    if args.command == "validate-mapping":
        print("Mapping validation: OK")
        return 0

    store = MappingStore(sa.create_engine(config.app_database_url))

    if args.command == "publish-mapping":
        try:
            version = store.publish_mapping(args.domain, args.page_type, mapping.raw)
        except SQLAlchemyError as exc:
            logger.error("mapping_publish_failed", extra={"event": "mapping_publish_failed", "detail": str(exc)})
            print(f"Mapping publish failed: {exc}")
            return 1
        logger.info(
            "mapping_published",
            extra={"event": "mapping_published", "domain": args.domain, "pageType": args.page_type, "version": version},
        )
        print(f"Mapping published as version {version}.")
        return 0

    if args.command == "transfer":
        logger = logger.bind(runId=args.run_id)
        engine = SyncEngine(store, logger, TransferOptions.from_config(config))
        try:
            summary = engine.transfer(
                args.run_id,
                profile_id=args.profile_id,
                mapping=mapping,
                mapping_version=args.mapping_version,
                page_type=args.page_type,
                mode=args.mode,
                product_id=args.product_id,
                dry_run=args.dry_run,
            )
        except MappingError as exc:
            print(f"Mapping validation failed: {exc}")
            return 2
        except TransferError as exc:
            print(f"Transfer failed ({exc.code}): {exc}")
            return 2
        finally:
            engine.close()
        print(json.dumps(summary, indent=2, default=str))
        return 0 if summary.get("ok") else 1

    return 1


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
