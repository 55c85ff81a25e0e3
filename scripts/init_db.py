"""
Apply the SQL migrations in migrations/ to the database.
Run: python -m scripts.init_db
"""

import asyncio
import os
import sys
from pathlib import Path

import asyncpg
from dotenv import load_dotenv

load_dotenv()

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"


async def init_db():
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        print("ERROR: DATABASE_URL not set in .env")
        sys.exit(1)

    conn = await asyncpg.connect(database_url)

    try:
        for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
            await conn.execute(path.read_text())
            print(f"Applied {path.name}")
        print("\nDatabase ready!")
    finally:
        await conn.close()


if __name__ == "__main__":
    asyncio.run(init_db())
