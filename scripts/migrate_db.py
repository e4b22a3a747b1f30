#!/usr/bin/env python3
"""
Database Migration — Create missing gateway tables from SQLAlchemy models.

The web app normally owns the schema; this is for local SQLite runs and
fresh environments.

Usage:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(conn, dialect: str) -> list[str]:
    from sqlalchemy import text

    if dialect == "postgresql":
        sql = "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
    elif dialect == "mysql":
        sql = "SHOW TABLES"
    else:  # sqlite
        sql = "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
    result = await conn.execute(text(sql))
    return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False, url: str = None):
    from config.settings import load_settings
    from database.models import Base
    from database.session import Database

    settings = load_settings()
    db = Database(url or settings.database.url)

    try:
        print(f"Database: {db.dialect}")
        print(f"Tables defined: {', '.join(Base.metadata.tables.keys())}")

        if check_only:
            async with db.engine.connect() as conn:
                existing = await _existing_tables(conn, db.dialect)
            print(f"Tables existing: {', '.join(existing) or '(none)'}")
            missing = set(Base.metadata.tables.keys()) - set(existing)
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
            else:
                print("All tables exist.")
            return

        print("Running database migration...")
        await db.create_all()
        async with db.engine.connect() as conn:
            tables = await _existing_tables(conn, db.dialect)
        print(f"Tables created/verified: {', '.join(tables)}")
        print("Migration complete.")
    finally:
        await db.dispose()


def main():
    parser = argparse.ArgumentParser(description="Gateway database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--url", default=None, help="Override DATABASE_URL")
    args = parser.parse_args()
    asyncio.run(run_migration(check_only=args.check, url=args.url))


if __name__ == "__main__":
    main()
