from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path

from shared.config import ClientConfig
from shared.protocol import (
    DEFAULT_API_URL,
    DEFAULT_BROKER_HOST,
    DEFAULT_BROKER_KEY,
    DEFAULT_BROKER_PATH,
    DEFAULT_BROKER_PORT,
    DEFAULT_CALL_TIMEOUT_SECONDS,
)

from .app import ClientApp

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Video-chat matchmaking client")
    parser.add_argument("--user-id", required=True, help="Authenticated user identifier")
    parser.add_argument("--api-url", default=DEFAULT_API_URL, help="Base URL of the matchmaking API")
    parser.add_argument(
        "--auth-token",
        default=os.environ.get("CALLMAYBE_AUTH_TOKEN"),
        help="Bearer token for the matchmaking API (default: $CALLMAYBE_AUTH_TOKEN)",
    )
    parser.add_argument("--broker-host", default=DEFAULT_BROKER_HOST, help="Signaling broker host")
    parser.add_argument("--broker-port", type=int, default=DEFAULT_BROKER_PORT, help="Signaling broker port")
    parser.add_argument("--broker-path", default=DEFAULT_BROKER_PATH, help="Signaling broker path prefix")
    parser.add_argument("--broker-key", default=DEFAULT_BROKER_KEY, help="Signaling broker API key")
    parser.add_argument("--insecure-broker", action="store_true", help="Use ws:// instead of wss:// for the broker")
    parser.add_argument(
        "--stun",
        action="append",
        default=None,
        help="STUN server URL; repeat for several (default: public Google and Twilio servers)",
    )
    parser.add_argument("--camera-index", type=int, default=0, help="OpenCV camera index")
    parser.add_argument(
        "--call-timeout",
        type=float,
        default=DEFAULT_CALL_TIMEOUT_SECONDS,
        help="Seconds before an unanswered outbound call is abandoned (0 disables)",
    )
    parser.add_argument("--ui-host", default="127.0.0.1", help="Host to bind the local UI web server")
    parser.add_argument("--ui-port", type=int, default=8100, help="Port for the local UI web server")
    parser.add_argument("--no-browser", action="store_true", help="Do not open the UI in a browser")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    return parser


def configure_logging(args: argparse.Namespace) -> None:
    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format=LOG_FORMAT,
        handlers=log_handlers,
        force=True,
    )


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(args)

    config = ClientConfig.from_args(args)
    app = ClientApp(config)

    try:
        asyncio.run(app.run(host=args.ui_host, port=args.ui_port, open_browser=not args.no_browser))
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Client stopped")


if __name__ == "__main__":
    main()
