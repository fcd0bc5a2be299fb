#!/usr/bin/env python
"""Check database connectivity and the fact store layout.

Usage:
    uv run python scripts/check_db.py
    uv run python scripts/check_db.py acme   # also check tenant 'acme'
"""

import asyncio
import sys

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from app.core.config import get_settings
from app.core.exceptions import BadRequestError
from app.core.health import SHARED_RELATIONS, missing_relations
from app.features.reports.models import SHARED_SCHEMA, TENANT_SCHEMA, schema_translate_map
from app.features.reports.tenants import validate_tenant_key

TENANT_RELATIONS = ("visit", "action")


async def check_database(tenant: str | None = None) -> int:
    """Verify database connection and the report relations."""
    settings = get_settings()

    print("TrafficReports - Database Check")
    print("=" * 45)
    print(f"Database URL: {settings.database_url.split('@')[-1]}")  # Hide credentials
    print()

    if tenant is not None:
        try:
            tenant = validate_tenant_key(tenant)
        except BadRequestError as e:
            print(f"[FAIL] {e.message}")
            return 1

    schemas = schema_translate_map(tenant)
    engine = create_async_engine(settings.database_url)

    try:
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            assert result.scalar() == 1
            print("[OK] Basic connectivity")

            result = await conn.execute(text("SELECT version()"))
            version = result.scalar()
            print(f"[OK] PostgreSQL version: {version[:50]}...")

            failures = 0
            checks = [(schemas[SHARED_SCHEMA], SHARED_RELATIONS)]
            if tenant is not None:
                checks.append((schemas[TENANT_SCHEMA], TENANT_RELATIONS))

            for schema, tables in checks:
                missing = await missing_relations(conn, schema, tables)
                if missing:
                    failures += 1
                    print(f"[FAIL] Missing in '{schema}': {', '.join(missing)}")
                else:
                    print(f"[OK] Schema '{schema}': {', '.join(tables)}")

        print()
        if failures:
            print("Database check found missing relations.")
            return 1
        print("Database check completed successfully!")
        return 0

    except SQLAlchemyError as e:
        print(f"[FAIL] Connection failed: {e}")
        print()
        print("Troubleshooting:")
        print("  1. Check DATABASE_URL in .env file")
        print("  2. Check FACT_SHARED_SCHEMA and TENANT_SCHEMA_PREFIX")
        print("  3. Verify PostgreSQL is reachable from this host")
        return 1

    finally:
        await engine.dispose()


def main():
    tenant = sys.argv[1] if len(sys.argv) > 1 else None
    sys.exit(asyncio.run(check_database(tenant)))


if __name__ == "__main__":
    main()
