"""Operator commands for a configured vector store.

Usage:
    fragment-store --config sqlite stats
    fragment-store verify
    fragment-store export backup.json
    fragment-store --config default migrate --to sqlite --clear-target
"""

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger

from fragment_store.base import VectorStore
from fragment_store.config import load_config
from fragment_store.exceptions import StoreError
from fragment_store.factory import create_vector_store
from fragment_store.migration import MigrationProgress, StoreMigration


def configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else "INFO",
        format="<green>{time:HH:mm:ss}</green> | <level>{message}</level>",
    )


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect and maintain a fragment vector store")
    parser.add_argument(
        "--config", default="default", help="Config name in the config directory (no .yaml)"
    )
    parser.add_argument("--config-dir", default=None, help="Directory holding the YAML configs")
    parser.add_argument(
        "--override", action="append", default=[], help="Hydra override, e.g. dimension=768"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("stats", help="Print store statistics as JSON")
    subparsers.add_parser("verify", help="Run the integrity scan")
    subparsers.add_parser("optimize", help="Run backend housekeeping")

    export_parser = subparsers.add_parser("export", help="Write the interchange document")
    export_parser.add_argument("path", type=Path)

    import_parser = subparsers.add_parser("import", help="Load an interchange document")
    import_parser.add_argument("path", type=Path)

    migrate_parser = subparsers.add_parser("migrate", help="Copy every entry to another store")
    migrate_parser.add_argument("--to", required=True, dest="target", help="Target config name")
    migrate_parser.add_argument("--clear-target", action="store_true")

    return parser.parse_args(argv)


def _open_store(args: argparse.Namespace, config_name: str) -> VectorStore:
    config = load_config(config_name, config_path=args.config_dir, overrides=args.override)
    return create_vector_store(config)


def _print_progress(progress: MigrationProgress) -> None:
    logger.info(
        f"{progress.phase.value}: {progress.migrated_chunks}/{progress.total_chunks} "
        f"({progress.percentage}%)"
    )


async def run(args: argparse.Namespace) -> int:
    async with _open_store(args, args.config) as store:
        if args.command == "stats":
            stats = await store.get_stats()
            print(stats.model_dump_json(indent=2))
            return 0

        if args.command == "verify":
            report = await store.verify()
            for error in report.errors:
                print(error)
            print("valid" if report.valid else "invalid")
            return 0 if report.valid else 1

        if args.command == "optimize":
            await store.optimize()
            return 0

        if args.command == "export":
            args.path.write_text(await store.export_data(), encoding="utf-8")
            logger.info(f"Exported to {args.path}")
            return 0

        if args.command == "import":
            await store.import_data(args.path.read_text(encoding="utf-8"))
            await store.save()
            return 0

        if args.command == "migrate":
            target = _open_store(args, args.target)
            await target.initialize()
            try:
                migration = StoreMigration(store, target, on_progress=_print_progress)
                result = await migration.migrate(clear_target=args.clear_target)
            finally:
                await target.close()

            print(
                f"Migrated {result.migrated_chunks}/{result.total_chunks} chunks "
                f"in {result.duration:.2f}s"
            )
            for failure in result.errors:
                print(f"failed: {failure.id}: {failure.error}")
            for discrepancy in result.discrepancies:
                print(f"discrepancy: {discrepancy}")
            return 0 if result.success else 1

    raise ValueError(f"Unhandled command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    configure_logging(args.verbose)
    try:
        return asyncio.run(run(args))
    except (StoreError, FileNotFoundError) as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
