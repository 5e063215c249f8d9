import argparse
import asyncio
import os
import sys

# Add the project root to the Python path
sys.path.append(
    os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
)

from src.database.base import Base
from src.database.connection import engine

# Import all models so they are registered with Base.metadata
from src.database.models import GatewayLog, Invoice, Refund, SystemSetting, Transaction

# Avoid unused import issues
_ = (GatewayLog, Invoice, Refund, SystemSetting, Transaction)


async def init_db(drop_tables: bool = False):
    async with engine.begin() as conn:
        if drop_tables:
            print("Dropping all tables...")
            await conn.run_sync(Base.metadata.drop_all)
            print("Tables dropped.")
        print("Creating tables...")
        await conn.run_sync(Base.metadata.create_all)
        print("Tables created.")
    await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Initialize the database.")
    parser.add_argument(
        "--drop",
        action="store_true",
        help="Drop all existing tables before creating new ones.",
    )
    args = parser.parse_args()

    asyncio.run(init_db(drop_tables=args.drop))
    print("Database initialization complete.")
