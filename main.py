"""Per-user web site server: serves ``/<username>/...`` from each user's ``www``."""

import signal
import sys

from user_sites.bootstrap.config import ServerConfig, parse_cli_args
from user_sites.bootstrap.logging_setup import configure_logging
from user_sites.domain.correlation_id import get_logger
from user_sites.lifecycle.state import ServerLifecycle
from user_sites.transport.accept_loop import run_server

SERVER_LOGGER = get_logger("server")


def main() -> None:
    """Start the server and spawn worker threads per connection."""
    args = parse_cli_args(sys.argv[1:])
    configure_logging(
        args.log_level, args.log_destination, use_json=args.log_format == "json"
    )

    config = ServerConfig(
        socket_timeout=args.socket_timeout,
        shutdown_grace_seconds=args.shutdown_grace_seconds,
        handler_timeout=args.handler_timeout,
    )
    lifecycle = ServerLifecycle()

    def shutdown_handler(signum: int, _frame) -> None:
        SERVER_LOGGER.info(
            "Received shutdown signal",
            extra={"event": "signal", "signal": signal.Signals(signum).name},
        )
        lifecycle.begin_draining()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)

    SERVER_LOGGER.info(
        "Starting user sites server",
        extra={
            "event": "server_starting",
            "host": args.host,
            "port": args.port,
            "home_root": args.home_root or "passwd",
            "log_destination": args.log_destination,
            "log_level": args.log_level,
            "log_format": args.log_format,
            "socket_timeout": config.socket_timeout,
            "shutdown_grace_seconds": config.shutdown_grace_seconds,
            "handler_timeout": config.handler_timeout,
        },
    )
    run_server(args, config, lifecycle)


if __name__ == "__main__":
    main()
