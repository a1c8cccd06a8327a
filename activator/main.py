"""Command-line entry point: process every unseen activation email, then exit."""

import argparse
import asyncio
import logging
import signal
import sys
import time

from activator.config import Settings
from activator.context import AppContext
from activator.errors import MailboxError, StoreError, TransportFatal

logger = logging.getLogger("activator")

LOG_FORMAT = "[%(asctime)s][%(levelname)s] %(message)s"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Activate accounts from the activation emails waiting in an IMAP inbox.",
    )
    parser.add_argument("--start", type=int, help="First UID to search (default: IMAP_START)")
    parser.add_argument("--batch-size", type=int, help="UIDs per search window (default: IMAP_BATCH)")
    parser.add_argument("--transport", choices=("http", "browser"), help="Verification transport")
    parser.add_argument("--verbosity", help="Log level: debug, info, warning, error")
    parser.add_argument(
        "--halt-on-fatal",
        action="store_true",
        default=None,
        help="Stop the run on the first unrecoverable verification error",
    )
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> Settings:
    overrides = {
        "imap_start": args.start,
        "imap_batch": args.batch_size,
        "transport": args.transport,
        "verbosity": args.verbosity,
        "halt_on_fatal": args.halt_on_fatal,
    }
    return Settings(**{key: value for key, value in overrides.items() if value is not None})


def configure_logging(settings: Settings) -> None:
    formatter = logging.Formatter(LOG_FORMAT)
    formatter.converter = time.gmtime
    formatter.default_msec_format = "%s.%03dZ"
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(settings.log_level)
    # SQL echo stays at INFO on its own logger; keep it out unless debugging
    if settings.log_level != "DEBUG":
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass  # not supported on this platform


async def run(settings: Settings) -> int:
    ctx = AppContext.create(settings)
    _install_signal_handlers(ctx.stop_event)
    try:
        await ctx.mailbox.connect()
        summary = await ctx.build_processor().run(settings.imap_start)
    except (StoreError, MailboxError) as e:
        logger.error("Aborting run: %s", e)
        return 1
    except TransportFatal as e:
        logger.error("Halting on unrecoverable verification error: %s", e)
        return 1
    finally:
        await ctx.aclose()

    if ctx.stop_event.is_set():
        logger.info("Run interrupted; %d messages left unseen for the next run", summary.aborted)
    return 0


def main(argv: list[str] | None = None) -> None:
    settings = load_settings(parse_args(argv))
    configure_logging(settings)
    sys.exit(asyncio.run(run(settings)))


if __name__ == "__main__":
    main()
