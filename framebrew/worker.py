"""Worker process entry point for the durable generation pipeline.

Each worker process claims stage payloads from PgQueuer and runs the four
stage handlers. Run as many processes as needed; every stage's
``concurrency_limit`` applies per process.

Architecture Pattern:
    - Separate Process: independent of the API service, sharing PostgreSQL
    - Short Transactions: read → close DB → provider call → reopen DB → update
    - Events: status changes are relayed to the API process with pg_notify
    - Graceful Shutdown: SIGTERM/SIGINT stop claiming, in-flight handlers are
      cancelled and their payloads are re-claimed after restart

Usage:
    QUEUE_BACKEND=durable DATABASE_URL=postgresql://... python -m framebrew.worker
"""

import asyncio
import os
import signal
import sys
from dataclasses import dataclass

from framebrew.config import (
    QUEUE_BACKEND_DURABLE,
    get_asyncpg_dsn,
    get_database_url,
    get_queue_backend,
)
from framebrew.pipeline import ROLE_WORKER, Pipeline, build_pipeline
from framebrew.queue import PgQueuerStageQueue, initialize_pgqueuer
from framebrew.utils.logging import get_logger

log = get_logger(__name__)

# Set by the signal handler
shutdown_requested = False

SHUTDOWN_CHECK_INTERVAL = 1.0


def signal_handler(signum: int, frame: object) -> None:
    """Handle SIGTERM/SIGINT for graceful shutdown.

    Args:
        signum: Signal number
        frame: Current stack frame (unused)
    """
    global shutdown_requested
    log.info(
        "shutdown_signal_received",
        signal=signum,
        signal_name=signal.Signals(signum).name,
    )
    shutdown_requested = True


async def shutdown_worker(pipeline: Pipeline | None) -> None:
    """Close clients, the asyncpg pool and the SQLAlchemy engine."""
    log.info("closing_database_connections")
    if pipeline is not None:
        await pipeline.stop()
    log.info("database_connections_closed")


async def worker_main_loop() -> None:
    """Build the worker pipeline and run PgQueuer until shutdown is requested.

    Behavior:
        - Initialize PgQueuer with its asyncpg pool
        - Build the pipeline on that pool and register the stage entrypoints
        - Run the PgQueuer loop, stopping when a shutdown signal arrives

    Raises:
        Exception: Startup failures (database unreachable, bad configuration)
    """
    worker_id = os.getenv("WORKER_ID", "worker-local")
    log.info("worker_started_with_pgqueuer", worker_id=worker_id)

    pipeline: Pipeline | None = None
    try:
        pgq, pool = await initialize_pgqueuer(get_asyncpg_dsn())
        pipeline = await build_pipeline(role=ROLE_WORKER, pg_pool=pool, owns_pool=True)
        assert isinstance(pipeline.queue, PgQueuerStageQueue)
        pipeline.queue.bind(pgq)
        await pipeline.start()

        run_task = asyncio.create_task(pgq.run())
        while not shutdown_requested and not run_task.done():
            await asyncio.sleep(SHUTDOWN_CHECK_INTERVAL)

        if not run_task.done():
            run_task.cancel()
        try:
            await run_task
        except asyncio.CancelledError:
            log.info("pgqueuer_loop_cancelled", worker_id=worker_id)

    except asyncio.CancelledError:
        log.info("worker_cancelled", worker_id=worker_id)
        raise
    except Exception as e:
        log.error(
            "worker_fatal_error",
            worker_id=worker_id,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        raise
    finally:
        await shutdown_worker(pipeline)
        log.info("worker_shutdown", worker_id=worker_id)


@dataclass
class WorkerConfig:
    """Worker configuration loaded from environment variables."""

    database_url: str
    queue_backend: str


def get_config() -> WorkerConfig:
    """Load and validate worker configuration.

    Raises:
        ValueError: If DATABASE_URL is not set or the queue is not durable.
    """
    config = WorkerConfig(database_url=get_database_url(), queue_backend=get_queue_backend())
    if config.queue_backend != QUEUE_BACKEND_DURABLE:
        raise ValueError("Worker processes require QUEUE_BACKEND=durable and a PostgreSQL DATABASE_URL")
    return config


def main() -> None:
    """Worker process entry point.

    Exit Codes:
        0: Successful shutdown (signal received)
        1: Fatal error (configuration invalid, database unreachable)
    """
    try:
        config = get_config()
        # Redact credentials when logging
        database_host = (
            config.database_url.split("@")[-1].split("/")[0]
            if "@" in config.database_url
            else "local"
        )
        log.info("worker_configuration_loaded", database_url_host=database_host)
    except Exception as e:
        log.error("configuration_load_failed", error=str(e), exc_info=True)
        sys.exit(1)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        asyncio.run(worker_main_loop())
    except KeyboardInterrupt:
        log.info("worker_interrupted_by_user")
    except Exception as e:
        log.error("worker_fatal_error", error=str(e), exc_info=True)
        sys.exit(1)

    log.info("worker_exited_successfully")
    sys.exit(0)


if __name__ == "__main__":
    main()
