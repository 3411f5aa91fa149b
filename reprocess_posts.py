# reprocess_posts.py
import argparse
import asyncio
import os
import time
# Ensure we can import from the eatsome module
import sys
sys.path.append(os.getcwd())

import structlog

from eatsome.config import Settings
from eatsome.logging_config import configure_logging
from eatsome.main import build_services
from eatsome.models import EnrichmentStatus

logger = structlog.get_logger()


async def main(post_ids, force):
    settings = Settings.from_env()
    configure_logging(settings.log_level, "console")
    services = build_services(settings)
    storage = services.storage

    if post_ids:
        targets = [(post.id, post.user_id) for post in map(storage.get_post, post_ids)]
    else:
        targets = storage.list_posts_by_status([EnrichmentStatus.PENDING, EnrichmentStatus.FAILED])
        targets += storage.list_stale_claims()

    if not targets:
        logger.info("⚠️ Nothing to reprocess")
        return

    logger.info("🔎 Reprocessing posts", count=len(targets))
    failed = 0
    for i, (post_id, user_id) in enumerate(targets, 1):
        start_time = time.time()
        language = storage.get_user(user_id).language
        task = services.runner.submit(post_id, user_id, language, force=force)
        try:
            post = await task
        except Exception as e:
            failed += 1
            logger.error("❌ Failed", post_id=post_id, progress=f"{i}/{len(targets)}", error=str(e))
            continue
        logger.info(
            "✅ Finished",
            post_id=post_id,
            progress=f"{i}/{len(targets)}",
            status=post.enrichment_status if post else "skipped",
            elapsed=round(time.time() - start_time, 2),
        )

    await services.supervisor.shutdown()
    await services.recognizer.aclose()
    if services.bot:
        await services.bot.session.close()
    logger.info("🏁 Done", total=len(targets), failed=failed)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Re-run AI enrichment for posts.")
    parser.add_argument("post_ids", nargs="*", type=int, help="post ids; defaults to every pending, failed or stale processing post")
    parser.add_argument("--force", action="store_true", help="re-run posts that are already enriched")
    args = parser.parse_args()
    asyncio.run(main(args.post_ids, args.force))
