"""
GM Pipeline Consumer Runtime
Long-lived queue consumers with local retry and ack/nack resolution
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, Type

from pika.exceptions import AMQPError

from ..utils.config import get_settings
from ..utils.errors import (
    BrokerConnectionError,
    MessageDecodeError,
    ShutdownRequested,
)
from ..utils.logger import get_logger
from ..utils.logging_config import log_error_with_context
from ..utils.metrics import record_delivery, track_handler_attempt
from .connection import BrokerConnectionFactory, close_quietly, declare_exchange
from .envelope import Delivery, decode_message, new_message_id
from .messages import PipelineMessage

logger = get_logger(__name__)


class ConsumerState(str, Enum):
    """Lifecycle of a consumer runtime"""

    STOPPED = "Stopped"
    CONNECTING = "Connecting"
    DECLARING = "Declaring"
    CONSUMING = "Consuming"
    FAULTED = "Faulted"


class DeliveryOutcome(str, Enum):
    """How a delivery was resolved with the broker"""

    ACKED = "acked"
    POISON = "poison"
    EXHAUSTED = "exhausted"
    REQUEUED = "requeued"


@dataclass(frozen=True)
class RetryPolicy:
    """Local retry budget for one delivery"""

    max_attempts: int = 5
    base_delay: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Backoff after the given failed attempt (1-based)"""
        return self.base_delay * (2 ** attempt)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            max_attempts=settings.consumer_max_attempts,
            base_delay=settings.consumer_retry_base_seconds,
        )


class MessageHandler(Protocol):
    """Processes one message type; raising signals a failed attempt"""

    def handle(self, message: Any, stop_event: threading.Event) -> None:
        ...


class MessageConsumerService:
    """
    Consumer runtime for one message type.

    Declares the topic exchange named after the message type, a durable
    queue and its binding, then consumes with a prefetch of one so the
    handler never sees a second delivery before the first is resolved.
    Each delivery is retried locally with exponential backoff; the broker
    is never asked to redeliver except when shutdown interrupts retries.

    The runtime runs on its own thread with its own broker connection.
    Broker failures move it to ``Faulted`` and end the thread; restarting
    is left to the worker host.
    """

    def __init__(
        self,
        message_cls: Type[PipelineMessage],
        handler: MessageHandler,
        connection_factory: BrokerConnectionFactory,
        tracker=None,
        stage: Optional[Any] = None,
        retry_policy: Optional[RetryPolicy] = None,
        prefetch_count: Optional[int] = None,
        queue_status_interval: Optional[float] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        """
        Initialize consumer runtime

        Args:
            message_cls: Message type consumed by this runtime
            handler: Handler invoked for every decoded message
            connection_factory: Opens the runtime's broker connection
            tracker: Stage tracker receiving queue depth reports
            stage: Pipeline stage the queue depth is reported for
            retry_policy: Local retry budget (defaults to settings)
            prefetch_count: Broker QoS (defaults to settings, normally 1)
            queue_status_interval: Seconds between queue depth reports
            stop_event: Runtime-wide cancellation signal
        """
        settings = get_settings()
        self.message_cls = message_cls
        self.handler = handler
        self.connection_factory = connection_factory
        self.tracker = tracker
        self.stage = stage
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.prefetch_count = prefetch_count or settings.consumer_prefetch_count
        self.queue_status_interval = (
            queue_status_interval
            if queue_status_interval is not None
            else settings.queue_status_interval_seconds
        )

        self._stop_event = stop_event or threading.Event()
        self._state = ConsumerState.STOPPED
        self._state_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._connection = None
        self._consumer_tag: Optional[str] = None
        self.last_error: Optional[BaseException] = None

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    @property
    def message_type(self) -> str:
        return self.message_cls.type_name()

    @property
    def exchange_name(self) -> str:
        return self.message_type

    @property
    def queue_name(self) -> str:
        return self.message_type

    @property
    def binding_key(self) -> str:
        return self.message_type

    @property
    def name(self) -> str:
        return self.queue_name

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConsumerState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: ConsumerState) -> None:
        with self._state_lock:
            self._state = state
        logger.debug(f"Consumer {self.name} is {state.value}")

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Run the consumer loop on a dedicated daemon thread"""
        if self.is_alive():
            return

        self.last_error = None
        self._thread = threading.Thread(
            target=self.run, name=f"consumer-{self.name}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Signal shutdown and wait for the consumer thread to exit

        The current handler attempt is allowed to finish; a delivery whose
        retries were interrupted is requeued.
        """
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def run(self) -> None:
        """Blocking consumer loop"""
        self._set_state(ConsumerState.CONNECTING)
        try:
            self._connection = self.connection_factory.connect()
            channel = self._connection.channel()

            self._set_state(ConsumerState.DECLARING)
            self._declare(channel)

            self._consumer_tag = channel.basic_consume(
                queue=self.queue_name,
                on_message_callback=self._on_message,
                auto_ack=False,
            )
            self._set_state(ConsumerState.CONSUMING)
            logger.info(
                f"Started consuming {self.message_type} from queue {self.queue_name} "
                f"with routing key {self.binding_key}"
            )

            last_report = None
            while not self._stop_event.is_set():
                self._connection.process_data_events(time_limit=1)

                now = time.monotonic()
                if last_report is None or now - last_report >= self.queue_status_interval:
                    self._report_queue_depth()
                    last_report = now

            if channel.is_open and self._consumer_tag:
                channel.basic_cancel(self._consumer_tag)
            self._set_state(ConsumerState.STOPPED)
            logger.info(f"Consumer {self.name} stopped")

        except (BrokerConnectionError, AMQPError) as e:
            self.last_error = e
            self._set_state(ConsumerState.FAULTED)
            log_error_with_context(
                logger,
                e,
                {"message_type": self.message_type, "queue": self.queue_name},
            )
        finally:
            close_quietly(self._connection)
            self._connection = None
            self._consumer_tag = None

    def _declare(self, channel) -> None:
        declare_exchange(channel, self.exchange_name)
        channel.queue_declare(queue=self.queue_name, durable=True)
        channel.queue_bind(
            queue=self.queue_name,
            exchange=self.exchange_name,
            routing_key=self.binding_key,
        )
        channel.basic_qos(prefetch_count=self.prefetch_count)
        logger.info(
            f"Queue {self.queue_name} bound to exchange {self.exchange_name} "
            f"with routing key {self.binding_key}"
        )

    def _report_queue_depth(self) -> None:
        if self.tracker is None or self.stage is None or self._connection is None:
            return

        # Passive declare of a missing queue closes the channel it runs on
        status_channel = None
        try:
            status_channel = self._connection.channel()
            result = status_channel.queue_declare(queue=self.queue_name, passive=True)
            depth = result.method.message_count
        except AMQPError as e:
            logger.debug(f"Failed to read queue status for {self.queue_name}: {e}")
            return
        finally:
            if status_channel is not None and status_channel.is_open:
                status_channel.close()

        self.tracker.report_queue_depth(self.stage, depth)

    # ------------------------------------------------------------------
    # Delivery handling
    # ------------------------------------------------------------------

    def _on_message(self, channel, method, properties, body) -> None:
        message_id = getattr(properties, "message_id", None) or new_message_id()
        context = {
            "message_type": self.message_type,
            "message_id": message_id,
            "delivery_tag": method.delivery_tag,
            "routing_key": method.routing_key,
        }
        logger.info(
            f"Received {self.message_type} delivery {method.delivery_tag} "
            f"({method.routing_key})",
            extra=context,
        )

        try:
            message = decode_message(self.message_cls, body)
        except MessageDecodeError as e:
            log_error_with_context(logger, e, context)
            channel.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
            record_delivery(self.message_type, DeliveryOutcome.POISON.value)
            return

        delivery = Delivery(
            delivery_tag=method.delivery_tag,
            message=message,
            message_id=message_id,
            redelivered=bool(method.redelivered),
            exchange=method.exchange,
            routing_key=method.routing_key,
        )
        outcome = self.dispatch(delivery)

        if outcome == DeliveryOutcome.ACKED:
            channel.basic_ack(delivery_tag=method.delivery_tag)
        else:
            channel.basic_nack(
                delivery_tag=method.delivery_tag,
                requeue=outcome == DeliveryOutcome.REQUEUED,
            )
        record_delivery(self.message_type, outcome.value)

    def dispatch(self, delivery: Delivery) -> DeliveryOutcome:
        """
        Run the handler for one decoded delivery under the retry policy

        Returns:
            ACKED on success, EXHAUSTED once every attempt failed, REQUEUED
            when shutdown interrupted the retry loop
        """
        policy = self.retry_policy
        context = {
            "message_type": self.message_type,
            "message_id": delivery.message_id,
            "delivery_tag": delivery.delivery_tag,
        }
        last_error: Optional[BaseException] = None
        attempt = 0

        while attempt < policy.max_attempts:
            if self._stop_event.is_set():
                logger.warning(
                    f"Shutdown interrupted retries for {self.message_type}, requeueing",
                    extra=context,
                )
                return DeliveryOutcome.REQUEUED

            attempt += 1
            try:
                with track_handler_attempt(self.message_type):
                    self.handler.handle(delivery.message, self._stop_event)
                logger.debug(
                    f"Processed {self.message_type} on attempt {attempt}", extra=context
                )
                return DeliveryOutcome.ACKED
            except ShutdownRequested:
                logger.warning(
                    f"Handler for {self.message_type} stopped for shutdown, requeueing",
                    extra=context,
                )
                return DeliveryOutcome.REQUEUED
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Error processing {self.message_type}. "
                    f"Retry {attempt}/{policy.max_attempts}: {e}",
                    extra={**context, "attempt": attempt},
                )

            if attempt < policy.max_attempts:
                if self._stop_event.wait(policy.delay_for(attempt)):
                    logger.warning(
                        f"Shutdown during backoff for {self.message_type}, requeueing",
                        extra=context,
                    )
                    return DeliveryOutcome.REQUEUED

        log_error_with_context(
            logger,
            last_error,
            {**context, "attempt": attempt, "outcome": "retries exhausted"},
        )
        return DeliveryOutcome.EXHAUSTED


class RoleBasedMessageConsumerService(MessageConsumerService):
    """
    Consumer bound to one role of a role-routed message type.

    Queue and binding are both ``{type}.{role}``, so user and assistant
    messages of the same type land in separate queues.
    """

    def __init__(self, message_cls: Type[PipelineMessage], handler, connection_factory, role, **kwargs):
        super().__init__(message_cls, handler, connection_factory, **kwargs)
        self.role = getattr(role, "value", role)
        self.routing_suffix = str(self.role).lower()

    @property
    def queue_name(self) -> str:
        return f"{self.message_type}.{self.routing_suffix}"

    @property
    def binding_key(self) -> str:
        return f"{self.message_type}.{self.routing_suffix}"
