#!/usr/bin/env python3
"""Create a console user.

The first user created becomes the protected superadmin; create it
with ``--role admin``.

Usage:
    python scripts/create_user.py admin --role admin
    python scripts/create_user.py alice --page 1234567890 --page 2345678901

Environment variables required:
    - DATABASE_URL: Database connection string
"""

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from inbox.db.session import async_session_maker
from inbox.models.user import UserRole
from inbox.services.pages import PageNotFound, PageRegistry, UsernameTaken

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main(username: str, password: str, role: UserRole, page_ids: list[str]) -> int:
    """Create the user and optionally assign pages."""
    async with async_session_maker() as db:
        registry = PageRegistry(db)
        try:
            user = await registry.create_user(username, password, role)
            if page_ids:
                await registry.assign_pages(user.id, page_ids)
        except (UsernameTaken, PageNotFound) as e:
            logger.error(str(e))
            return 1
        await db.commit()

    logger.info(f"Created {role.value} {username}")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create a console user")
    parser.add_argument("username")
    parser.add_argument(
        "--role",
        choices=[r.value for r in UserRole],
        default=UserRole.AGENT.value,
        help="Console role (default: agent)",
    )
    parser.add_argument(
        "--page",
        action="append",
        default=[],
        dest="pages",
        help="Page ID to assign; repeat for several pages",
    )

    args = parser.parse_args()
    password = getpass.getpass("Password: ")
    if len(password) < 6:
        parser.error("password must be at least 6 characters")

    sys.exit(asyncio.run(main(args.username, password, UserRole(args.role), args.pages)))
