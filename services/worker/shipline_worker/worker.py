import logging

from redis import Redis
from rq import Worker, Queue

from shipline_common.settings import QUEUE_NAME, REDIS_URL


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    r = Redis.from_url(REDIS_URL)
    w = Worker([Queue(QUEUE_NAME, connection=r)], connection=r)
    w.work(with_scheduler=False)

if __name__ == "__main__":
    main()
