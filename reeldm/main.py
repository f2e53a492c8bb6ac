"""Main entry point for the reel DM dispatcher."""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass

from .config import Config, load_config
from .services import (
    ConfigCredentialsProvider,
    DatabaseService,
    DispatchWorker,
    InstagramDeliveryClient,
    IntakeGate,
    JobStore,
    RateLimitService,
    SectionMessageComposer,
    WebhookHandler,
    init_db_service,
)
from .webhook_server import create_webhook_app


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


@dataclass
class Services:
    """Everything wired together for one database."""

    job_store: JobStore
    rate_limit_service: RateLimitService
    worker: DispatchWorker
    intake_gate: IntakeGate
    webhook_handler: WebhookHandler


def build_services(config: Config, db_service: DatabaseService) -> Services:
    """Wire the queue services against ``db_service``."""
    job_store = JobStore(db_service)
    rate_limit_service = RateLimitService(
        db_service,
        max_per_hour=config.queue.max_dms_per_hour,
        min_spacing_ms=config.queue.min_send_spacing_ms,
    )
    worker = DispatchWorker(
        job_store=job_store,
        rate_limit_service=rate_limit_service,
        composer=SectionMessageComposer(db_service, config.server.site_url),
        delivery_client=InstagramDeliveryClient.from_config(config.instagram),
        credentials_provider=ConfigCredentialsProvider(config.instagram),
        queue_config=config.queue,
    )
    intake_gate = IntakeGate(job_store, worker)
    webhook_handler = WebhookHandler(db_service, intake_gate)
    return Services(
        job_store=job_store,
        rate_limit_service=rate_limit_service,
        worker=worker,
        intake_gate=intake_gate,
        webhook_handler=webhook_handler,
    )


async def run_server(args, logger, config: Config) -> int:
    """Run the webhook server with the dispatch worker in the same loop."""
    import uvicorn

    db_service = await init_db_service(config.server.database_path)
    services = build_services(config, db_service)

    try:
        await services.worker.recover()
        if await services.worker.start_if_pending():
            logger.info("Resumed draining queued DMs")

        app = create_webhook_app(
            config,
            services.webhook_handler,
            services.worker,
            services.job_store,
        )

        port = args.port or config.server.port
        logger.info("Starting webhook server on %s:%d...", config.server.host, port)
        uvicorn_config = uvicorn.Config(
            app,
            host=config.server.host,
            port=port,
            log_level="info" if args.verbose else "warning",
        )
        server = uvicorn.Server(uvicorn_config)
        await server.serve()
        return 0
    finally:
        await services.worker.stop()
        await db_service.close()
        logger.info("Database connection closed")


async def run_drain(args, logger, config: Config) -> int:
    """Run the worker in the foreground until the queue is empty."""
    db_service = await init_db_service(config.server.database_path)
    services = build_services(config, db_service)

    try:
        await services.worker.recover()
        if not await services.worker.ensure_running():
            logger.info("Worker did not start")
            return 1
        await services.worker.wait_until_idle()

        stats = await services.worker.get_stats()
        logger.info(
            "Queue drained: %d sent, %d failed, %d sent in the last hour",
            stats.sent,
            stats.failed,
            stats.dms_sent_last_hour,
        )
        return 0
    finally:
        await db_service.close()


async def run_stats(args, logger, config: Config) -> int:
    """Print queue statistics as JSON."""
    db_service = await init_db_service(config.server.database_path)
    services = build_services(config, db_service)

    try:
        stats = await services.worker.get_stats()
        print(json.dumps(stats.to_dict(), indent=2))
        return 0
    finally:
        await db_service.close()


MODES = {
    "server": run_server,
    "drain": run_drain,
    "stats": run_stats,
}


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Instagram reel comment-to-DM dispatcher",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                              # Run webhook server + worker with config.yaml
  %(prog)s -c myconfig.yaml             # Run with custom config
  %(prog)s -v                           # Run with verbose logging
  %(prog)s --mode drain                 # Send everything queued, then exit
  %(prog)s --mode stats                 # Print queue statistics
  %(prog)s --port 9000                  # Override the server port
        """,
    )

    parser.add_argument(
        "-c",
        "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    parser.add_argument(
        "--mode",
        choices=sorted(MODES),
        default="server",
        help="Run mode: server (default), drain, or stats",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for webhook server (default: from config)",
    )

    args = parser.parse_args()

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        logger.info("Loading configuration from %s", args.config)
        config = load_config(args.config)
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.exception("Invalid configuration: %s", e)
        return 1

    try:
        return asyncio.run(MODES[args.mode](args, logger, config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
