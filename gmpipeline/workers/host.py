"""
GM Pipeline Worker Host
Owns the broker connection factory, publisher and consumer runtimes of a
worker process, and supervises them until shutdown.
"""

import argparse
import importlib
import signal
import threading
from typing import Callable, List, Optional

from prometheus_client import start_http_server

from ..messaging.backfill import BulkPublisher
from ..messaging.connection import BrokerConnectionFactory
from ..messaging.consumer import ConsumerState, MessageConsumerService, RetryPolicy
from ..messaging.publisher import MessagePublisher
from ..messaging.registry import HandlerRegistry
from ..pipeline.correlation import CorrelationCache
from ..pipeline.tracker import PipelineStageTracker, build_status_sink
from ..utils.config import Settings, get_settings
from ..utils.logger import get_logger
from ..utils.logging_config import setup_logging

logger = get_logger(__name__)


class WorkerHost:
    """
    Lifecycle owner for one worker process.

    Handlers are registered on ``host.registry`` before ``start()``; the
    shared publisher, tracker, correlation cache and bulk publisher are
    available to wiring code as attributes. ``stop()`` tears everything
    down in reverse order.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        connection_factory: Optional[BrokerConnectionFactory] = None,
        tracker: Optional[PipelineStageTracker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        restart_delay: float = 5.0,
    ):
        self.settings = settings or get_settings()
        self.connection_factory = connection_factory or BrokerConnectionFactory(
            self.settings.rabbitmq_url, self.settings.rabbitmq_heartbeat_seconds
        )
        self.registry = HandlerRegistry()
        self.publisher = MessagePublisher(self.connection_factory)
        self.bulk_publisher = BulkPublisher(
            self.publisher, self.settings.publisher_max_concurrency
        )
        self.tracker = tracker or PipelineStageTracker(build_status_sink())
        self.correlation_cache = CorrelationCache(
            self.settings.correlation_ttl_seconds,
            self.settings.correlation_max_entries,
        )
        self.retry_policy = retry_policy or RetryPolicy(
            self.settings.consumer_max_attempts, self.settings.consumer_retry_base_seconds
        )
        self.restart_delay = restart_delay

        self.stop_event = threading.Event()
        self.consumers: List[MessageConsumerService] = []
        self._services: List[object] = []
        self._started = False

    def add_service(self, service) -> None:
        """Attach a background service with start()/stop() (e.g. diagnostics drain)"""
        self._services.append(service)
        if self._started:
            service.start()

    def start(self) -> None:
        if self._started:
            return

        if len(self.registry) == 0:
            logger.warning("Worker host starting with no registered handlers")

        self.stop_event.clear()
        self.bulk_publisher.start()
        for service in self._services:
            service.start()

        self.consumers = self.registry.build_consumers(
            self.connection_factory,
            tracker=self.tracker,
            retry_policy=self.retry_policy,
            stop_event=self.stop_event,
            prefetch_count=self.settings.consumer_prefetch_count,
            queue_status_interval=self.settings.queue_status_interval_seconds,
        )
        for consumer in self.consumers:
            consumer.start()

        self._started = True
        logger.info(f"Worker host started with {len(self.consumers)} consumers")

    def faulted_consumers(self) -> List[MessageConsumerService]:
        return [c for c in self.consumers if c.state == ConsumerState.FAULTED]

    def supervise_once(self) -> int:
        """Restart consumers whose runtime faulted; returns how many restarted"""
        restarted = 0
        for consumer in self.faulted_consumers():
            if consumer.is_alive() or self.stop_event.is_set():
                continue
            logger.error(
                f"Consumer {consumer.name} faulted ({consumer.last_error}), restarting"
            )
            consumer.start()
            restarted += 1
        return restarted

    def run_forever(self) -> None:
        """Start, then supervise consumers until SIGINT/SIGTERM"""
        self._install_signal_handlers()
        self.start()
        try:
            while not self.stop_event.wait(self.restart_delay):
                self.supervise_once()
        finally:
            self.stop()

    def stop(self, timeout: float = 30.0) -> None:
        if not self._started:
            return

        logger.info("Worker host stopping")
        self.stop_event.set()
        for consumer in self.consumers:
            consumer.stop(timeout)

        for service in reversed(self._services):
            service.stop()
        self.bulk_publisher.shutdown(wait=True)
        self.publisher.close()
        close = getattr(self.tracker.sink, "close", None)
        if close is not None:
            close()

        self._started = False
        logger.info("Worker host stopped")

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def _handle(signum, frame):
            logger.info(f"Received signal {signum}, shutting down")
            self.stop_event.set()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)


def load_wiring(target: str) -> Callable[[WorkerHost], None]:
    """Resolve ``package.module:function`` to a wiring function"""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Wiring target must look like 'package.module:function', got {target!r}")

    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError:
        raise ValueError(f"Module {module_name} has no attribute {attr}") from None


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run a GM pipeline worker")
    parser.add_argument(
        "wiring",
        help="Wiring function that registers handlers, as package.module:function",
    )
    parser.add_argument("--service-name", help="Service name used in logs")
    parser.add_argument("--log-level", help="Log level (defaults to settings)")
    args = parser.parse_args(argv)

    settings = get_settings()
    service_name = args.service_name or settings.service_name
    setup_logging(
        service_name,
        log_level=args.log_level or settings.log_level,
        json_logs=settings.json_logs,
    )

    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info(f"Metrics exposed on port {settings.metrics_port}")

    host = WorkerHost(settings=settings)
    wire = load_wiring(args.wiring)
    wire(host)

    logger.info(f"Starting {service_name} with {len(host.registry)} handlers")
    host.run_forever()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
