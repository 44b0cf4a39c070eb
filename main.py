#!/usr/bin/env python3
"""Game Log Relay entry point."""

import logging
import os
import signal
import sys
import threading

from logrelay.config import load_config, load_env_file
from logrelay.errors import ConfigError
from logrelay.relay import LogRelay

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [RELAY] %(levelname)s %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)


def main():
    shutdown_event = threading.Event()

    def _signal_handler(sig, frame):
        logger.info("Shutdown signal received, stopping...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    load_env_file(os.environ.get("RELAY_ENV_FILE", ".env"))
    try:
        config = load_config()
        logging.getLogger().setLevel(config.log_level)
        relay = LogRelay(config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    logger.info("Config: game=%s, sink=%s, debounce=%dms, rescan=%.1fs",
                config.game_name, config.sink, config.debounce_ms, config.rescan_interval)
    relay.run(shutdown_event)


if __name__ == "__main__":
    main()
