"""Command-line interface for the webhook delivery core.

Commands:
    worker          Run the dispatcher loop until interrupted
    dispatch-once   Run a single dispatch cycle
    event-type      Register or update an event type in the catalog
    retry           Requeue a FAILED or ABANDONED delivery
"""

import argparse
import asyncio
import signal
import sys

import structlog

from src.config import settings
from src.logging_config import setup_logging
from src.webhooks.errors import WebhookError
from src.webhooks.service import WebhookService

logger = structlog.get_logger(__name__)


async def run_worker_command(args: argparse.Namespace) -> int:
    """Execute the 'worker' command.

    Args:
        args: Parsed command-line arguments.

    Returns:
        Exit code.
    """
    service = await WebhookService.create(args.db)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms
            pass

    service.dispatcher.start()
    logger.info("worker_started", instance_id=service.dispatcher.instance_id)
    try:
        await stop.wait()
    finally:
        await service.close()

    logger.info("worker_stopped")
    return 0


async def run_dispatch_once_command(args: argparse.Namespace) -> int:
    """Execute the 'dispatch-once' command."""
    service = await WebhookService.create(args.db)
    try:
        processed = await service.dispatcher.run_cycle()
    finally:
        await service.close()

    print(f"Processed {processed} deliveries")
    return 0


async def run_event_type_command(args: argparse.Namespace) -> int:
    """Execute the 'event-type' command."""
    service = await WebhookService.create(args.db)
    try:
        event_type = await service.registry.register_event_type(
            args.name,
            description=args.description,
            enabled=not args.disabled,
        )
    except WebhookError as e:
        logger.error("event_type_registration_failed", **e.to_dict())
        return 1
    finally:
        await service.close()

    state = "enabled" if event_type.is_enabled else "disabled"
    print(f"Event type {event_type.name} ({state})")
    return 0


async def run_retry_command(args: argparse.Namespace) -> int:
    """Execute the 'retry' command."""
    service = await WebhookService.create(args.db)
    try:
        delivery = await service.dispatcher.retry_delivery(args.delivery_id, args.tenant)
    except WebhookError as e:
        logger.error("delivery_retry_failed", delivery_id=args.delivery_id, **e.to_dict())
        return 1
    finally:
        await service.close()

    print(f"Delivery {delivery.id} is {delivery.status.value}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        description="Webhook delivery CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--db",
        default=settings.WEBHOOK_DB_PATH,
        help="Path to the webhook SQLite database",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("worker", help="Run the dispatcher loop")
    subparsers.add_parser("dispatch-once", help="Run one dispatch cycle")

    type_parser = subparsers.add_parser("event-type", help="Register an event type")
    type_parser.add_argument("name", help="Event type name, e.g. invoice.created")
    type_parser.add_argument("--description", default="", help="Human-readable description")
    type_parser.add_argument(
        "--disabled",
        action="store_true",
        help="Register the event type as disabled",
    )

    retry_parser = subparsers.add_parser("retry", help="Requeue a failed delivery")
    retry_parser.add_argument("delivery_id", help="Delivery to requeue")
    retry_parser.add_argument("--tenant", required=True, help="Owning tenant id")

    return parser


_COMMANDS = {
    "worker": run_worker_command,
    "dispatch-once": run_dispatch_once_command,
    "event-type": run_event_type_command,
    "retry": run_retry_command,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI.

    Returns:
        Exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging()
    return asyncio.run(_COMMANDS[args.command](args))


if __name__ == "__main__":
    sys.exit(main())
