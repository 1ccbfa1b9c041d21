"""``vidpipe-worker`` command.

Runs one or more worker processes. Each process has its own event loop and
WorkerPool; the processes share work only through the consumer group.
"""

import argparse
import asyncio
import logging
import multiprocessing
import signal
import sys
from typing import Optional

from vidpipe.core.config import settings
from vidpipe.core.logging import setup_logging
from vidpipe.core.metrics import set_app_info, start_metrics_server
from vidpipe.core.tracing import setup_tracing, shutdown_tracing
from vidpipe.modules.queue import consumer_config_from_settings, create_queue
from vidpipe.modules.transcoding.ffmpeg import FFmpegHLSTranscoder
from vidpipe.modules.worker.notifier import CompletionNotifier
from vidpipe.modules.worker.pool import WorkerPool
from vidpipe.modules.worker.processor import JobProcessor

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vidpipe-worker", description="Run video transcoding workers")
    parser.add_argument(
        "--concurrency", type=int, default=settings.MAX_CONCURRENT_TRANSCODES,
        help="Jobs (and engine invocations) in flight per process",
    )
    parser.add_argument("--processes", type=int, default=1, help="Worker processes to start")
    parser.add_argument("--consumer", default=settings.CONSUMER_NAME, help="Durable consumer group name")
    parser.add_argument(
        "--metrics-port", type=int, default=settings.METRICS_PORT,
        help="Expose Prometheus metrics; process N listens on port+N",
    )
    parser.add_argument("--log-level", default=settings.LOG_LEVEL, help="Log level")
    return parser


async def run_worker(concurrency: int, consumer: str) -> None:
    """Run one WorkerPool until SIGINT/SIGTERM, then drain.

    The pool declares the stream and the consumer itself and keeps retrying
    while the broker is unreachable, so the process can start before Redis.
    """
    queue = create_queue()
    notifier = CompletionNotifier(queue)
    try:
        processor = JobProcessor(
            engine=FFmpegHLSTranscoder(),
            notifier=notifier,
            engine_slots=concurrency,
            rendition_parallelism=settings.RENDITION_PARALLELISM,
            heartbeat_interval=consumer_config_from_settings(consumer).ack_wait / 3,
        )
        pool = WorkerPool(queue, processor, consumer=consumer, concurrency=concurrency)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, pool.stop)
        try:
            await pool.run()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        logger.info(f"Worker stopped: {pool.stats}")
    finally:
        await notifier.close()
        await queue.close()


def _worker_main(index: int, concurrency: int, consumer: str, metrics_port: Optional[int], log_level: str) -> None:
    setup_logging(level=log_level, json_format=settings.LOG_JSON)
    setup_tracing(
        service_name=f"{settings.PROJECT_NAME}-worker",
        service_version=settings.VERSION,
        environment=settings.ENVIRONMENT,
        otlp_endpoint=settings.OTLP_ENDPOINT,
    )
    set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)
    if metrics_port:
        start_metrics_server(metrics_port + index)

    try:
        asyncio.run(run_worker(concurrency, consumer))
    finally:
        shutdown_tracing()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.concurrency < 1 or args.processes < 1:
        print("--concurrency and --processes must be at least 1", file=sys.stderr)
        return 2

    worker_args = (args.concurrency, args.consumer, args.metrics_port, args.log_level)
    if args.processes == 1:
        _worker_main(0, *worker_args)
        return 0

    context = multiprocessing.get_context("spawn")
    processes = [
        context.Process(target=_worker_main, args=(i, *worker_args), name=f"vidpipe-worker-{i}")
        for i in range(args.processes)
    ]
    for process in processes:
        process.start()

    # Children get the terminal's SIGINT directly; SIGTERM is forwarded
    signal.signal(signal.SIGTERM, lambda *_: [p.terminate() for p in processes if p.is_alive()])
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    for process in processes:
        process.join()
    return max((p.exitcode or 0) for p in processes)


if __name__ == "__main__":
    sys.exit(main())
