"""Standalone generation worker process.

Polls the job queue like the in-process worker and also wakes up on the
Redis trigger channel that the API publishes to after each submission.
"""

import asyncio
import logging

import redis.asyncio as redis

from config import settings
from services.worker_loop import get_worker

logger = logging.getLogger(__name__)


async def _listen_for_triggers(worker) -> None:
    while True:
        try:
            client = redis.from_url(settings.REDIS_URL, decode_responses=True)
            pubsub = client.pubsub()
            await pubsub.subscribe(settings.WORKER_TRIGGER_CHANNEL)
            try:
                async for message in pubsub.listen():
                    if message.get("type") == "message":
                        worker.trigger()
            finally:
                await pubsub.aclose()
                await client.aclose()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Worker trigger subscription lost (%s); relying on polling", exc)
            await asyncio.sleep(max(settings.WORKER_POLL_INTERVAL_SECONDS, 1.0))


async def run() -> None:
    worker = get_worker()
    listener = asyncio.create_task(_listen_for_triggers(worker))
    try:
        await worker.run()
    finally:
        listener.cancel()
        try:
            await listener
        except asyncio.CancelledError:
            pass


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(run())


if __name__ == "__main__":
    main()
