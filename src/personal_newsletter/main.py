import argparse
import logging
import os
import sys

from .config import ConfigurationError, settings
from .db import get_preferences, init_db
from .dispatcher import build_dispatcher, run_scheduler
from .events import SqliteEventBus, schedule_request
from .models import SCHEDULE_DELETED_EVENT, NewsletterRequest

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def enqueue_user(user_id: str) -> bool:
    """Schedule an immediate newsletter for a user from their saved preferences."""
    prefs = get_preferences(settings.database_path, user_id)
    if prefs is None:
        logger.error(f"No preferences stored for user {user_id}")
        return False
    request = NewsletterRequest(
        user_id=user_id,
        email=prefs.email,
        categories=prefs.categories,
        frequency=prefs.frequency,
    )
    schedule_request(SqliteEventBus(settings.database_path), request)
    return True


def cancel_user(user_id: str) -> None:
    SqliteEventBus(settings.database_path).send(SCHEDULE_DELETED_EVENT, {"userId": user_id})


def cli() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="personal-newsletter",
        description="Personal newsletter service - fetch, summarize and email news by category",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Start web server with dashboard + scheduler",
    )
    parser.add_argument(
        "--schedule",
        action="store_true",
        help="Run the scheduler loop without the web server",
    )
    parser.add_argument(
        "--run-due",
        action="store_true",
        help="Run all due newsletters once and exit",
    )
    parser.add_argument(
        "--enqueue",
        metavar="USER_ID",
        help="Schedule an immediate newsletter for a user",
    )
    parser.add_argument(
        "--cancel",
        metavar="USER_ID",
        help="Cancel every scheduled newsletter of a user",
    )

    args = parser.parse_args()
    init_db(settings.database_path)

    if args.enqueue:
        sys.exit(0 if enqueue_user(args.enqueue) else 1)
    if args.cancel:
        cancel_user(args.cancel)
        return

    try:
        settings.validate_startup()
    except ConfigurationError as exc:
        logger.error(str(exc))
        sys.exit(1)

    if args.serve:
        import uvicorn
        from .web import app

        port = int(os.environ.get("PORT", "8080"))
        logger.info(f"Starting web server on port {port}")
        uvicorn.run(app, host="0.0.0.0", port=port)
    elif args.schedule:
        run_scheduler()
    elif args.run_due:
        results = build_dispatcher().run_due()
        logger.info(f"Processed {len(results)} due newsletter(s)")
    else:
        parser.print_help()


if __name__ == "__main__":
    cli()
