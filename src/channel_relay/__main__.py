from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .app import run_relay
from .config import RelayConfig
from .structured_logging import configure_relay_logging, log_event


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Relay Telegram channel messages for every tenant with active services",
    )
    parser.add_argument(
        "--config",
        required=True,
        help="Path to the YAML configuration file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    configure_relay_logging(log_level)

    config_path = Path(args.config)
    try:
        config = RelayConfig.from_file(config_path)
        asyncio.run(run_relay(config))
    except (FileNotFoundError, ValueError, OSError) as exc:
        logging.getLogger(__name__).error("Failed to start relay: %s", exc)
        log_event(
            "startup_failed",
            level=logging.ERROR,
            tenant_id=None,
            service_id=None,
            channel=None,
            message_id=None,
            outcome="failure",
            latency_ms=None,
            extra={"reason": str(exc)},
        )
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
