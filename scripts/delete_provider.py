from __future__ import annotations

import argparse
import asyncio
import logging

from lrsstore.core.config import get_settings
from lrsstore.persistence.registry import TableRegistry
from lrsstore.persistence.repos.provider_courses import ProviderCourseRepository
from lrsstore.persistence.repos.providers import ProviderRepository
from lrsstore.persistence.repos.user_assignments import UserAssignmentRepository


async def delete_provider_cascade(registry: TableRegistry, provider_id: str) -> dict[str, int | bool]:
    # Edges go first so a partial run never leaves assignments pointing at nothing.
    assignments = await UserAssignmentRepository(registry).delete_assignments_by_provider(provider_id)
    courses = await ProviderCourseRepository(registry).delete_courses_for_provider(provider_id)
    provider = await ProviderRepository(registry).delete_provider(provider_id)
    return {"assignments": assignments, "courses": courses, "provider": provider}


async def _run(provider_id: str) -> None:
    async with TableRegistry.from_settings() as registry:
        result = await delete_provider_cascade(registry, provider_id)
    print(f"provider={provider_id} deleted={str(result['provider']).lower()}")
    print(f"course_assignments_deleted={result['courses']}")
    print(f"user_assignments_deleted={result['assignments']}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Delete a provider and its assignments")
    parser.add_argument("--provider", required=True)
    args = parser.parse_args()
    logging.basicConfig(level=get_settings().log_level)
    asyncio.run(_run(args.provider))


if __name__ == "__main__":
    main()
