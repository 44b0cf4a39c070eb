"""LogRelay: wires the watcher, pipeline, dispatcher and sink together."""

import logging
import os

from watchdog.observers import Observer

from logrelay.config import Config
from logrelay.dispatcher import Dispatcher
from logrelay.errors import ConfigError
from logrelay.mappings import mask_identifier, parse_user_mappings
from logrelay.models import DeliveryState, DeliveryStatus
from logrelay.parsers import get_parser
from logrelay.pipeline import EventPipeline
from logrelay.registry import OffsetRegistry
from logrelay.sinks import build_sink
from logrelay.watcher import DirectoryWatcher

logger = logging.getLogger(__name__)


class LogRelay:
    """Builds every component from a Config. Raises ConfigError on bad setup."""

    def __init__(self, config: Config, sink=None, observer_factory=Observer):
        self.config = config
        directory = config.watch_directory
        if not os.path.isdir(directory):
            raise ConfigError(f"Watch directory {directory} does not exist or is not a directory")

        self.mapping = parse_user_mappings(config.user_mappings_raw)
        logger.info("Loaded %d user mapping(s)", len(self.mapping))
        for identifier, name in sorted(self.mapping.entries.items()):
            logger.debug("  %s -> %s", mask_identifier(identifier), name)

        parser = get_parser(config.game_name)
        logger.info("Using %s log format", config.game_name)

        self.sink = sink if sink is not None else build_sink(config)
        self.registry = OffsetRegistry(config.registry_file or None)
        self.pipeline = EventPipeline(self.mapping, parser, dedup_window=config.dedup_window)
        self.dispatcher = Dispatcher(
            self.sink,
            capacity=config.queue_capacity,
            max_queue_size=config.max_queue_size,
            max_queue_age=config.max_queue_age,
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            on_settled=self._commit,
        )
        self.watcher = DirectoryWatcher(
            directory,
            self.pipeline,
            self.dispatcher,
            registry=self.registry,
            allowed_extensions=config.allowed_extensions,
            ignore_patterns=config.ignore_patterns,
            debounce=config.debounce_ms / 1000.0,
            rescan_interval=config.rescan_interval,
            skip_existing=config.skip_existing,
            replay_from_start=config.replay_from_start,
            drain_timeout=config.shutdown_timeout,
        )
        self._observer_factory = observer_factory

    def _commit(self, state: DeliveryState):
        """Settled events (delivered, failed or dropped) advance the registry."""
        line = state.event.raw_line
        if line is None or state.status not in (DeliveryStatus.DELIVERED, DeliveryStatus.FAILED):
            return
        self.registry.commit(line.source_file, line.identity, line.segment, line.offset_range[1])

    def run(self, shutdown_event):
        """Run until shutdown_event is set, then shut down in order."""
        observer = self._observer_factory()
        observer.schedule(self.watcher.handler, self.watcher.directory, recursive=False)
        observer.start()
        self.dispatcher.start()
        logger.info("Watching directory: %s (extensions: %s)",
                    self.watcher.directory, ", ".join(self.config.allowed_extensions) or "any")

        try:
            self.watcher.run(shutdown_event)
        finally:
            logger.info("Shutting down...")
            self.watcher.stop()
            observer.stop()
            observer.join(timeout=5)
            self.dispatcher.close(self.config.shutdown_timeout)
            self.registry.save()
            self.sink.close()
            logger.info("Stats: %d parsed, %d unparsed, %d duplicate line(s) skipped",
                        self.pipeline.parsed, self.pipeline.unparsed, self.pipeline.duplicates)
            logger.info("Log relay stopped.")
