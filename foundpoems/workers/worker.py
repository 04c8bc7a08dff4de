# Run this with: rq worker -u redis://localhost:6379 invites
# or: python -m foundpoems.workers.worker (which will spin a small worker loop for dev)
import logging

from redis import Redis
from rq import Queue, Worker

from foundpoems.core.config import settings
from foundpoems.core.logging import configure_logging
from foundpoems.features.invites.delivery import INVITE_QUEUE_NAME

logger = logging.getLogger("foundpoems")

listen = [INVITE_QUEUE_NAME]


def main() -> None:
    configure_logging(settings.ENV)
    conn = Redis.from_url(settings.REDIS_URL)
    worker = Worker([Queue(name, connection=conn) for name in listen], connection=conn)
    logger.info("Starting RQ worker (interactive).")
    worker.work()


if __name__ == '__main__':
    main()
