"""Entry point for the error pipeline."""

import argparse
import json
import logging
import random
import signal
import sys
import threading

from error_pipeline.capture import registry
from error_pipeline.config import config_to_dict, load_config
from error_pipeline.durable_queue import DurableQueue
from error_pipeline.models import Severity, Source
from error_pipeline.pipeline import ErrorPipeline

logger = logging.getLogger(__name__)

SAMPLE_FAILURES = [
    (Source.SCRIPT_GLOBAL, "TypeError: undefined is not an object (evaluating 'user.profile')",
     ["at renderProfile (main.bundle:1042:17)", "at App (main.bundle:88:3)"]),
    (Source.REJECTED_ASYNC, "Network request failed for request 4711",
     ["at fetchFeed (main.bundle:2211:9)"]),
    (Source.BRIDGE_CALL, "CameraModule.capture failed: permission denied",
     ["at CameraModule.capture (native)", "at takePhoto (main.bundle:3120:5)"]),
    (Source.SCRIPT_BOUNDARY, "Invariant Violation: Text strings must be rendered within <Text>",
     ["at FeedItem (main.bundle:512:11)"]),
]


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Error capture and reporting pipeline")
    parser.add_argument("--config", default=None, help="path to YAML config")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="run with capture hooks installed until interrupted")
    run.add_argument("--crash-dir", default=None, help="import native crash reports from here")

    simulate = sub.add_parser("simulate", help="feed synthetic failures through the pipeline")
    simulate.add_argument("--count", type=int, default=100)
    simulate.add_argument("--fatal", type=int, default=0, help="number of fatal events to add")

    dead = sub.add_parser("dead-letter", help="list or requeue dead-lettered entries")
    dead.add_argument("--requeue", nargs="*", default=None, metavar="ID")

    sub.add_parser("stats", help="show queue depth and effective config")
    return parser.parse_args(argv)


def _run(pipeline: ErrorPipeline, crash_dir: str | None):
    shutdown_event = threading.Event()

    def signal_handler(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    pipeline.attach(registry)
    registry.install(signals=(signal.SIGABRT,))
    pipeline.start()
    if crash_dir:
        pipeline.import_crash_reports(crash_dir)
    try:
        shutdown_event.wait()
    finally:
        registry.uninstall()
        pipeline.stop()


def _simulate(pipeline: ErrorPipeline, count: int, fatal: int):
    pipeline.start()
    try:
        for _ in range(count):
            source, message, stack = random.choice(SAMPLE_FAILURES)
            pipeline.capture({
                "source": source,
                "message": message,
                "stack": stack,
                "context": {"platform": "android", "app_version": "4.2.0"},
            })
        for _ in range(fatal):
            pipeline.capture({
                "source": Source.NATIVE_SIGNAL,
                "severity": Severity.FATAL,
                "message": "Received signal SIGSEGV",
                "stack": ["libapp.so 0x7f3a2c10 render_frame", "libapp.so 0x7f3a2a04 main_loop"],
            })
    finally:
        pipeline.stop()
    print(json.dumps(pipeline.metrics.snapshot(), indent=2))


def _dead_letter(config, requeue):
    queue = DurableQueue.from_config(config)
    if requeue is not None:
        ids = requeue or [entry.id for entry in queue.dead_letter()]
        print(f"Requeued {queue.requeue_dead(ids)} entries")
        return
    for entry in queue.dead_letter():
        report = entry.report
        print(
            f"{entry.id}  attempts={entry.attempts}  fp={report.fingerprint[:12]}  "
            f"count={report.count}  error={entry.last_error!r}  {report.sample_event.message}"
        )


def _stats(config):
    queue = DurableQueue.from_config(config)
    print(json.dumps({
        "pending": len(queue),
        "dead_letter": len(queue.dead_letter()),
        "config": config_to_dict(config),
    }, indent=2, default=str))


def main(argv=None):
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        stream=sys.stderr,
    )
    config = load_config(args.config)

    if args.command == "dead-letter":
        _dead_letter(config, args.requeue)
    elif args.command == "stats":
        _stats(config)
    elif args.command == "simulate":
        _simulate(ErrorPipeline(config), args.count, args.fatal)
    else:
        _run(ErrorPipeline(config), args.crash_dir)


if __name__ == "__main__":
    main()
