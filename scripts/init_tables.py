from __future__ import annotations

import argparse
import asyncio
import logging

from lrsstore.core.config import get_settings
from lrsstore.persistence.registry import TableRegistry


async def _init_tables() -> None:
    # Create every configured table; existing tables are left as they are.
    async with TableRegistry.from_settings() as registry:
        created = await registry.ensure_tables()
        settings = get_settings()
        for key in registry.keys():
            status = "created" if key in created else "exists"
            print(f"table={settings.table_name(key)} status={status}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Create the configured storage tables")
    parser.parse_args()
    logging.basicConfig(level=get_settings().log_level)
    asyncio.run(_init_tables())


if __name__ == "__main__":
    main()
