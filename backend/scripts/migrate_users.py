"""Migrate a list of users from the legacy record to normalized documents.

    python -m scripts.migrate_users --user u1 --user u2 --verify
    python -m scripts.migrate_users --users-file pending.txt --timeout 120
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from quizforge.config import get_settings
from quizforge.db.session import dispose_engine
from quizforge.logging_config import configure_logging
from quizforge.migration import MigrationEngine, MigrationResult
from quizforge.store import get_document_store

logger = logging.getLogger("quizforge.migrate_users")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Migrate legacy user data to the normalized layout.")
    parser.add_argument("--user", dest="users", action="append", default=[], help="User id to migrate (repeatable).")
    parser.add_argument("--users-file", type=Path, help="File with one user id per line; '#' starts a comment.")
    parser.add_argument("--verify", action="store_true", help="Run verification after each successful migration.")
    parser.add_argument(
        "--delay",
        type=float,
        default=None,
        help="Seconds to pause between users (default: QUIZFORGE_MIGRATION_USER_DELAY).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Give up on a single user after this many seconds.",
    )
    return parser.parse_args(argv)


def load_user_ids(users: List[str], users_file: Optional[Path]) -> List[str]:
    collected = [user.strip() for user in users if user.strip()]
    if users_file is not None:
        with users_file.open(encoding="utf-8") as handle:
            for line in handle:
                entry = line.split("#", 1)[0].strip()
                if entry:
                    collected.append(entry)
    # Preserve order, drop repeats.
    return list(dict.fromkeys(collected))


async def migrate_all(
    engine: MigrationEngine,
    user_ids: List[str],
    *,
    delay: float,
    timeout: Optional[float] = None,
    verify: bool = False,
) -> List[MigrationResult]:
    results: List[MigrationResult] = []
    for index, user_id in enumerate(user_ids):
        if index and delay > 0:
            await asyncio.sleep(delay)
        try:
            result = await asyncio.wait_for(engine.migrate(user_id), timeout=timeout)
        except asyncio.TimeoutError:
            result = MigrationResult(success=False, user_id=user_id, error=f"Timed out after {timeout}s")
        results.append(result)

        if not result.success:
            logger.warning("User %s failed: %s", user_id, result.error)
            continue
        if verify and not result.already_migrated:
            verification = await engine.verify(user_id)
            if not verification.valid:
                logger.warning("User %s failed verification: %s", user_id, "; ".join(verification.mismatches))
                results[-1] = result.model_copy(
                    update={"success": False, "error": "; ".join(verification.mismatches)}
                )
                continue
        logger.info("User %s migrated (%d quizzes)", user_id, result.quizzes_migrated)
    return results


async def _run(args: argparse.Namespace, user_ids: List[str]) -> List[MigrationResult]:
    settings = get_settings()
    engine = MigrationEngine(get_document_store(), batch_size=settings.migration_batch_size)
    delay = settings.migration_user_delay if args.delay is None else args.delay
    try:
        return await migrate_all(engine, user_ids, delay=delay, timeout=args.timeout, verify=args.verify)
    finally:
        await dispose_engine()


def main(argv: Optional[list[str]] = None) -> int:
    configure_logging()
    args = parse_args(argv)
    try:
        user_ids = load_user_ids(args.users, args.users_file)
    except OSError as exc:
        logger.error("Could not read user list: %s", exc)
        return 2
    if not user_ids:
        logger.error("No users given; pass --user or --users-file.")
        return 2

    results = asyncio.run(_run(args, user_ids))
    for result in results:
        print(json.dumps(result.model_dump()))
    failed = [result.user_id for result in results if not result.success]
    logger.info("Migration run finished: %d users, %d failed", len(results), len(failed))
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
