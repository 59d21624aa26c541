"""Management CLI.

Usage:
    python -m gelatin_erp.cli create-tables                    # Create tables (dev / SQLite)
    python -m gelatin_erp.cli counters [FISCAL_YEAR]           # Show numbering counters
    python -m gelatin_erp.cli archive-fiscal-year OLD [NEW]    # Year-end archival
"""

import asyncio
import sys

from gelatin_erp.database import Base, async_session, engine
from gelatin_erp.models import *  # noqa: F401,F403
from gelatin_erp.services import batch_registry
from gelatin_erp.services import fiscal_year as counters
from gelatin_erp.utils.fiscal_year import next_fiscal_year
from gelatin_erp.utils.transactions import retry_on_conflict


async def create_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("Tables created.")


async def show_counters(fiscal_year: str | None = None):
    async with async_session() as db:
        rows = await counters.list_counters(db, fiscal_year)
    for c in rows:
        frozen = "  (frozen)" if c.is_frozen else ""
        print(f"  {c.fiscal_year}  {c.sequence:<11} next {c.next_number}{frozen}")
    print(f"\n{len(rows)} counter(s)")


async def archive_fiscal_year(old: str, new: str | None = None):
    new = new or next_fiscal_year(old)

    async def unit_of_work():
        async with async_session() as db:
            result = await batch_registry.archive_fiscal_year(db, old, new, actor="cli")
            await db.commit()
            return result

    # Archival is idempotent, so a run that lost a write race is safe to repeat
    result = await retry_on_conflict(unit_of_work)

    if result["already_archived"]:
        print(f"  {old} was already archived into {new}; nothing changed.")
    for record in result["records"]:
        print(
            f"  {record.batch_type:<11} max #{record.max_batch_number}, "
            f"{record.archived_count} archived"
        )
    print(f"\nNumbering continues in {new} from 1.")


if __name__ == "__main__":
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    args = sys.argv[2:]
    if cmd == "create-tables":
        asyncio.run(create_tables())
    elif cmd == "counters":
        asyncio.run(show_counters(args[0] if args else None))
    elif cmd == "archive-fiscal-year" and args:
        asyncio.run(archive_fiscal_year(args[0], args[1] if len(args) > 1 else None))
    else:
        print("Usage: python -m gelatin_erp.cli [create-tables|counters|archive-fiscal-year OLD [NEW]]")
