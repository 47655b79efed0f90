"""
Create the promptdesk database and bring its tables up to date.

    promptdesk-setup-db                      # everything in TABLES_DIR
    promptdesk-setup-db --table prompts      # one table
    promptdesk-setup-db --no-seed            # skip the default profile

Safe to re-run: databases, tables, columns, constraints and indexes are
only ever added.
"""
from __future__ import annotations

import argparse
import logging
from pathlib import Path

from promptdesk.config import Settings, get_settings
from promptdesk.psql_client import PSQLClient
from promptdesk.resource_engine import ResourceEngine
from promptdesk.table_enforcer import enforce_tables

logger = logging.getLogger(__name__)

MAINTENANCE_DB = "postgres"
LOCAL_USER_EMAIL = "local@user.com"


def ensure_database(settings: Settings) -> bool:
    """Create settings.db_name through the maintenance database if it is missing."""
    admin = PSQLClient(
        database=MAINTENANCE_DB,
        user=settings.db_user,
        password=settings.db_password,
        host=settings.db_host,
        port=settings.db_port,
        maxconn=1,
    )
    try:
        created = admin.create_database(settings.db_name)
    finally:
        admin.close()
    if created:
        logger.info("Created database %s", settings.db_name)
    else:
        logger.info("Database %s already exists", settings.db_name)
    return created


def seed_default_profile(client: PSQLClient, settings: Settings) -> dict | None:
    """
    Insert the local single-user profile unless one with its email exists.

    Only the primary key and the conflict column are sent, so the upsert has
    nothing to update and an existing profile is left untouched.
    """
    if not settings.default_owner_id:
        return None
    table = "user_profiles" if settings.db_schema == "public" else f"{settings.db_schema}.user_profiles"
    engine = ResourceEngine(client, table)
    row = engine.create({"id": settings.default_owner_id, "email": LOCAL_USER_EMAIL}, on_conflict=["email"])
    if row is None:
        logger.info("Default profile already present")
    else:
        logger.info("Seeded default profile %s", row.get("id"))
    return row


def run(settings: Settings, *, table: str | None = None, tables_dir: Path | None = None, seed: bool = True) -> set:
    ensure_database(settings)
    client = PSQLClient.get(
        database=settings.db_name,
        user=settings.db_user,
        password=settings.db_password,
        host=settings.db_host,
        port=settings.db_port,
        minconn=settings.db_minconn,
        maxconn=settings.db_maxconn,
    )
    try:
        # gen_random_uuid() is built in from PostgreSQL 13; older servers need pgcrypto.
        client.execute_query('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')
        enforced = enforce_tables(client, table=table, config_dir=tables_dir or settings.tables_dir)
        logger.info("Enforced %s tables", len(enforced))
        if seed and (table is None or table.split(".")[-1] == "user_profiles"):
            seed_default_profile(client, settings)
        return enforced
    finally:
        client.close()


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()
    ap = argparse.ArgumentParser(prog="promptdesk-setup-db", description=__doc__.strip().splitlines()[0])
    ap.add_argument("--table", help="only enforce this table (name or schema.name)")
    ap.add_argument("--tables-dir", type=Path, help=f"JSON table configs (default: {settings.tables_dir})")
    ap.add_argument("--no-seed", action="store_true", help="do not insert the default user profile")
    ap.add_argument("--log-level", default=settings.log_level)
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        run(settings, table=args.table, tables_dir=args.tables_dir, seed=not args.no_seed)
    except Exception:
        logger.exception("Schema setup failed")
        return 1
    logger.info("Schema setup complete")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
