"""Entry point for scheduled post pruning.

Usage:
    python scripts/prune_posts.py --tag news --older-than-hours 48
    python scripts/prune_posts.py --squeaky-clean
    python scripts/prune_posts.py --gc
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.adapters.post_repository_base import epoch_millis
from src.adapters.repository_factory import create_repository
from src.config.logging_config import (
    bind_context,
    clear_context,
    get_logger,
    setup_logging,
)
from src.config.settings import get_settings
from src.domain.exceptions import FeedStoreError

logger = get_logger(__name__)

MS_PER_HOUR = 3_600_000


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Prune tags and stale posts")
    parser.add_argument(
        "--tag",
        help="Tag to strip from old posts (requires --older-than-hours)",
    )
    parser.add_argument(
        "--older-than-hours",
        type=float,
        help="Strip --tag from posts indexed more than this many hours ago",
    )
    parser.add_argument(
        "--squeaky-clean",
        action="store_true",
        help="Delete stale squeaky-clean posts",
    )
    parser.add_argument(
        "--gc",
        action="store_true",
        help="Delete posts that no longer carry any tag",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs in JSON format",
    )
    args = parser.parse_args(argv)
    if (args.tag is None) != (args.older_than_hours is None):
        parser.error("--tag and --older-than-hours must be given together")
    if args.tag is None and not args.squeaky_clean and not args.gc:
        parser.error("nothing to do")
    return args


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level, json_logs=args.json_logs or settings.json_logs)
    bind_context(job="prune_posts")

    repository = create_repository(settings)
    try:
        if args.tag is not None:
            threshold = epoch_millis() - int(args.older_than_hours * MS_PER_HOUR)
            removed = repository.remove_tag_from_old_posts(args.tag, threshold)
            logger.info("prune_tag_complete", tag=args.tag, removed=removed)
        if args.squeaky_clean:
            removed = repository.delete_squeaky_clean_posts()
            logger.info("prune_squeaky_clean_complete", removed=removed)
        if args.gc:
            removed = repository.delete_untagged_posts()
            logger.info("prune_gc_complete", removed=removed)
    except FeedStoreError as exc:
        logger.error("prune_failed", error=str(exc))
        return 1
    finally:
        repository.close()
        clear_context()

    return 0


if __name__ == "__main__":
    sys.exit(main())
