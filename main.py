import asyncio
import os
import signal
import logging

from auth import AuthorizationPolicy, StaticIdentityProvider, TokenIdentityProvider
from config import settings_conf
from database import init_db, get_pool, close as db_close
from feed import FeedRepository
from marketplace import MarketplaceRepository
from storage import LocalBlobStore
from store.postgres import PostgresStore
from viewstate.feed import FeedViewState
from viewstate.marketplace import MarketplaceViewState

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

def build_identity():
    """Sign in from PETTER_TOKEN (JWT) or PETTER_USER_ID, anonymous otherwise."""
    token = os.environ.get('PETTER_TOKEN')
    if token:
        return TokenIdentityProvider(token)
    return StaticIdentityProvider(os.environ.get('PETTER_USER_ID'))

async def log_feed(feed: FeedViewState) -> None:
    async for state in feed.feed.watch():
        if state.error:
            logger.error(f"Feed error: {state.error}")
        elif not state.is_loading:
            logger.info(f"Feed: {len(state.posts)} posts")
            for post in state.posts[:5]:
                logger.info(f"  {post.user_name}: {post.content[:60]!r} ({post.likes} likes)")

async def log_marketplace(market: MarketplaceViewState) -> None:
    async for state in market.state.watch():
        if state.error:
            logger.error(f"Marketplace error: {state.error}")
        elif not state.is_loading:
            logger.info(
                f"Marketplace: {len(state.products)} products, "
                f"{len(state.pending_products)} pending, {len(state.my_products)} mine"
            )

async def main():
    """Wire the configured stores and log live feed and marketplace state."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    logger.info("Initializing database...")
    await init_db()
    store = PostgresStore(await get_pool())
    blobs = LocalBlobStore()
    identity = build_identity()
    policy = AuthorizationPolicy(settings_conf['admin_ids'])

    feed = FeedViewState(FeedRepository(store, blobs, identity, policy))
    market = MarketplaceViewState(MarketplaceRepository(store, blobs, identity, policy))

    try:
        await feed.start()
        await market.start()
        watchers = [
            asyncio.create_task(log_feed(feed)),
            asyncio.create_task(log_marketplace(market))
        ]
        await stop.wait()
        logger.info("Shutdown signal received. Cleaning up...")
        for task in watchers:
            task.cancel()
        await asyncio.gather(*watchers, return_exceptions=True)

    finally:
        await feed.close()
        await market.close()
        await store.close()
        await db_close()

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
