#!/usr/bin/env python3
"""Initialize the database: create the signals table and the change trigger."""

import asyncio

from signal_engine.config import get_settings
from signal_engine.storage.database import init_database


async def main():
    settings = get_settings()
    print("Initializing database...")
    db = await init_database()
    print("Database initialized successfully!")
    print("Tables created: signals")
    print(f"Change notifications published on channel: {settings.change_feed_channel}")
    await db.close()


if __name__ == "__main__":
    asyncio.run(main())
