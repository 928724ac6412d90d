#!/usr/bin/env python3
"""
Long-running job worker.

Claims jobs from the durable queues (`background_jobs`) and runs them on a
bounded thread pool. Run with:

    python -m backend.workers.worker_service --concurrency 5
"""

import argparse
import signal
import threading

from backend.app.config import settings
from backend.app.jobs import WorkerPool
from backend.app.logs import json_log
from backend.app.services import build_services

from .job_handlers import build_handlers


def _install_signal_handlers(stop: threading.Event) -> None:
    def _stop(signum, _frame):
        json_log("info", "worker.stopping", signal=signum)
        stop.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)


def main(argv=None):
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=settings.db_url)
    parser.add_argument("--concurrency", type=int, default=settings.worker_concurrency)
    parser.add_argument("--sleep", type=float, default=1.0)
    parser.add_argument("--queues", nargs="*", help="Optional subset of queue names to serve")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args(argv)

    settings.db_url = args.db
    services = build_services(settings)
    handlers = build_handlers(services)
    if args.queues:
        unknown = sorted(set(args.queues) - set(handlers))
        if unknown:
            parser.error(f"unknown queues: {', '.join(unknown)}")
        handlers = {q: h for q, h in handlers.items() if q in args.queues}

    pool = WorkerPool(services.jobs, handlers, concurrency=args.concurrency, name="payments-worker")
    json_log("info", "worker.started", concurrency=args.concurrency, queues=sorted(handlers))
    try:
        if args.once:
            ran = pool.run_once()
            json_log("info", "worker.pass.done", jobs=ran)
            return
        stop = threading.Event()
        _install_signal_handlers(stop)
        pool.run_forever(stop, sleep=args.sleep)
    finally:
        pool.shutdown()
        services.close()
        json_log("info", "worker.stopped")


if __name__ == "__main__":
    main()
