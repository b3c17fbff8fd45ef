"""RQ worker process entrypoint for module expiration sweeps."""

from rq import Worker

from services.sweep_queue import SWEEP_QUEUE_NAME, get_redis_connection


def main():
    redis_conn = get_redis_connection()
    worker = Worker([SWEEP_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
