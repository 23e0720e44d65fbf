"""RQ worker process entrypoint for match report generation jobs."""

import logging

from rq import Worker

from config import is_production
from services.report_queue import REPORT_QUEUE_NAME, get_redis_connection

logger = logging.getLogger(__name__)


def main():
    logging.basicConfig(
        level=logging.INFO if is_production() else logging.DEBUG,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    redis_conn = get_redis_connection()
    print(f"👷 Report worker listening on '{REPORT_QUEUE_NAME}'")
    logger.info("Starting report worker for queue %s", REPORT_QUEUE_NAME)
    worker = Worker([REPORT_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
