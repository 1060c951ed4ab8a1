"""Index queue worker and operator commands.

Usage:
    index-queue process            # process until stopped
    index-queue process --once     # process what is ready, then exit
    index-queue status
    index-queue errors --limit 20
    index-queue reset
"""

import argparse
import logging
import sys
import time
from collections.abc import Sequence

from .config import Config
from .database import create_db_engine, create_session_factory, create_tables
from .elasticsearch_client import ElasticsearchIndexClient
from .entry_store import create_entry_store
from .errors import EngineUnavailableError, IndexQueueError
from .index_queue import IndexQueue
from .mqtt import get_broadcaster, shutdown_broadcaster
from .records import LoaderRegistry

logger = logging.getLogger("index-queue-worker")


def build_queue() -> IndexQueue:
    """Build the queue described by Config."""
    session_factory = None
    if Config.INDEX_QUEUE_BACKEND == "sqlalchemy":
        engine = create_db_engine(Config.INDEX_QUEUE_DATABASE_URL)
        create_tables(engine)
        session_factory = create_session_factory(engine)

    store = create_entry_store(Config.INDEX_QUEUE_BACKEND, session_factory)
    client = ElasticsearchIndexClient(
        url=Config.ELASTICSEARCH_URL,
        index_prefix=Config.ELASTICSEARCH_INDEX_PREFIX,
    )
    broadcaster = get_broadcaster(
        broadcast_type=Config.BROADCAST_TYPE,
        broker=Config.MQTT_BROKER,
        port=Config.MQTT_PORT,
        topic=Config.MQTT_TOPIC,
    )
    return IndexQueue(
        store,
        client,
        LoaderRegistry.from_string(Config.INDEX_QUEUE_LOADERS),
        retry_interval=Config.INDEX_QUEUE_RETRY_INTERVAL,
        batch_size=Config.INDEX_QUEUE_BATCH_SIZE,
        class_names=Config.INDEX_QUEUE_CLASS_NAMES,
        broadcaster=broadcaster,
    )


def run_process(queue: IndexQueue, once: bool = False, poll_interval: float | None = None) -> int:
    """Process the queue; without ``once`` keep polling until interrupted.

    When the search engine is unavailable the worker waits one poll interval
    and tries again, since the entries were released for immediate retry.
    """
    if poll_interval is None:
        poll_interval = Config.WORKER_POLL_INTERVAL

    total = 0
    while True:
        try:
            processed = queue.process()
            total += processed
            if processed:
                logger.info(f"Processed {processed} entries")
        except EngineUnavailableError as e:
            if once:
                raise
            logger.warning(f"Search engine unavailable, retrying in {poll_interval}s: {e}")
        if once:
            return total
        time.sleep(poll_interval)


def print_status(queue: IndexQueue) -> None:
    print(f"total:  {queue.total_count()}")
    print(f"ready:  {queue.ready_count()}")
    print(f"errors: {queue.error_count()}")


def print_errors(queue: IndexQueue, limit: int, offset: int) -> None:
    for entry in queue.errors(limit=limit, offset=offset):
        first_line = entry.error.splitlines()[0] if entry.error else ""
        print(
            f"{entry.id}\t{entry.record_class_name}\t{entry.record_id}\t"
            f"{entry.operation.value}\tattempts={entry.attempts}\t{first_line}"
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="index-queue", description="Search index queue worker")
    subparsers = parser.add_subparsers(dest="command", required=True)

    process_parser = subparsers.add_parser("process", help="Process queued entries")
    process_parser.add_argument(
        "--once", action="store_true", help="Exit when no entries are ready"
    )

    _ = subparsers.add_parser("status", help="Show queue counts")

    errors_parser = subparsers.add_parser("errors", help="List entries with errors")
    errors_parser.add_argument("--limit", type=int, default=50)
    errors_parser.add_argument("--offset", type=int, default=0)

    _ = subparsers.add_parser("reset", help="Clear errors and retry every entry now")
    return parser


def main(argv: Sequence[str] | None = None, queue: IndexQueue | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=Config.LOG_LEVEL)

    try:
        if queue is None:
            queue = build_queue()

        match args.command:
            case "process":
                logger.info("Worker started")
                _ = run_process(queue, once=args.once)
            case "status":
                print_status(queue)
            case "errors":
                print_errors(queue, args.limit, args.offset)
            case "reset":
                print(f"Reset {queue.reset()} entries")
    except KeyboardInterrupt:
        logger.info("Worker stopped")
    except EngineUnavailableError as e:
        logger.error(f"Search engine unavailable: {e}")
        return 2
    except IndexQueueError as e:
        logger.error(str(e))
        return 1
    finally:
        shutdown_broadcaster()
    return 0


if __name__ == "__main__":
    sys.exit(main())
