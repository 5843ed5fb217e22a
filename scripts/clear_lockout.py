from __future__ import annotations

import argparse
import asyncio
import logging

from lrsstore.core.config import get_settings
from lrsstore.persistence.keys import normalize_email
from lrsstore.persistence.registry import TableRegistry
from lrsstore.persistence.repos.auth_lockouts import AuthLockoutRepository


async def _clear(email: str) -> None:
    # Administrative unlock for a user who is stuck behind a lockout window.
    async with TableRegistry.from_settings() as registry:
        repo = AuthLockoutRepository(registry)
        existing = await repo.get_lockout(email)
        await repo.clear_lockout(email)
        failed = existing.failed_attempts if existing else 0
        print(f"email={normalize_email(email)} cleared=true failed_attempts={failed}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Clear a login lockout")
    parser.add_argument("--email", required=True)
    args = parser.parse_args()
    logging.basicConfig(level=get_settings().log_level)
    asyncio.run(_clear(args.email))


if __name__ == "__main__":
    main()
