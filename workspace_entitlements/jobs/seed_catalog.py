"""
Entitlement catalog seed script.

Syncs config/catalog.yml (or --path) into the database: creates missing
features, packages and grants, updates display fields, reports conflicts.

Usage:
    python -m workspace_entitlements.jobs.seed_catalog
    python -m workspace_entitlements.jobs.seed_catalog --dry-run
    python -m workspace_entitlements.jobs.seed_catalog --path ./catalog.yml --init-schema

Environment variables:
    DATABASE_URL: store of record (required)
    ENTITLEMENT_CATALOG_PATH: catalog file (optional, --path wins)
"""

import sys
import logging

from workspace_entitlements.database.session import init_schema, session_scope
from workspace_entitlements.entitlements.loader import CatalogLoader

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def print_summary(result) -> None:
    prefix = "[DRY RUN] " if result.dry_run else ""
    print(f"\n{prefix}Catalog sync")
    print(f"  Features created:  {', '.join(result.features_created) or '-'}")
    print(f"  Features updated:  {', '.join(result.features_updated) or '-'}")
    print(f"  Packages created:  {', '.join(result.packages_created) or '-'}")
    print(f"  Packages updated:  {', '.join(result.packages_updated) or '-'}")
    print(f"  Grants upserted:   {result.grants_upserted}")
    print(f"  Grants removed:    {result.grants_removed}")
    for conflict in result.conflicts:
        print(f"  CONFLICT: {conflict}")


def main(argv=None):
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Seed the entitlement catalog into the database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m workspace_entitlements.jobs.seed_catalog             # Sync catalog
  python -m workspace_entitlements.jobs.seed_catalog --dry-run   # Preview changes
        """,
    )
    parser.add_argument(
        "--path",
        type=str,
        help="Catalog YAML file (overrides ENTITLEMENT_CATALOG_PATH)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview changes without saving to database",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create missing entitlement tables first",
    )
    args = parser.parse_args(argv)

    try:
        if args.init_schema:
            init_schema()
        loader = CatalogLoader(args.path)
        with session_scope() as session:
            result = loader.sync(session, dry_run=args.dry_run)
    except Exception as e:
        logger.error("Catalog seed failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)

    print_summary(result)
    if result.conflicts:
        sys.exit(2)


if __name__ == "__main__":
    main()
