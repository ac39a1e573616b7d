#!/usr/bin/env python
"""
Premium Expiry Script
Reverts premium users whose subscription end date has passed back to the free tier

Usage:
    python scripts/expire_premium.py [--dry-run]

Schedule:
    Run hourly via cron/scheduler:
    0 * * * * cd /app && python scripts/expire_premium.py >> /var/log/expire_premium.log 2>&1
"""
import sys
import logging
from datetime import datetime
from pathlib import Path

# Add src to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from brainai_bot.config import config
from brainai_bot.db.engine import get_engine, get_session_factory, init_db
from brainai_bot.logging_config import setup_logging
from brainai_bot.services.user_service import UserService

logger = logging.getLogger(__name__)


def expire_premium_users(dry_run: bool = False) -> dict:
    """
    Find and expire premium subscriptions past their end date

    Args:
        dry_run: If True, only report what would be expired

    Returns:
        Dictionary with expiry statistics
    """
    stats = {
        "start_time": datetime.utcnow().isoformat(),
        "users_found": 0,
        "users_expired": 0,
        "users_failed": 0,
    }

    init_db(get_engine())
    service = UserService(get_session_factory(), premium_duration_days=config.PREMIUM_DURATION_DAYS)

    logger.info(f"Mode: {'DRY RUN' if dry_run else 'LIVE'}")

    if dry_run:
        expired_ids = service.find_expired_premium()
        stats["users_found"] = len(expired_ids)
        for telegram_id in expired_ids:
            logger.info(f"[DRY RUN] Would expire premium for user {telegram_id}")
    else:
        result = service.check_and_expire_all_premium()
        stats["users_found"] = result["expired"] + result["errors"]
        stats["users_expired"] = result["expired"]
        stats["users_failed"] = result["errors"]

    stats["end_time"] = datetime.utcnow().isoformat()
    return stats


def main():
    """Main entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Expire premium subscriptions past their end date")
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Dry run mode (report only, no changes)'
    )
    args = parser.parse_args()

    setup_logging(env=config.ENV, log_level=config.LOG_LEVEL)

    logger.info("=" * 60)
    logger.info("PREMIUM EXPIRY SCRIPT")
    logger.info("=" * 60)

    stats = expire_premium_users(dry_run=args.dry_run)

    logger.info("=" * 60)
    logger.info("EXPIRY SUMMARY")
    logger.info("=" * 60)
    logger.info(f"Users found: {stats['users_found']}")
    logger.info(f"Users expired: {stats['users_expired']}")
    logger.info(f"Users failed: {stats['users_failed']}")
    logger.info("=" * 60)

    sys.exit(1 if stats["users_failed"] > 0 else 0)


if __name__ == "__main__":
    main()
