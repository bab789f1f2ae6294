"""
GM Pipeline Publisher
Publishes typed messages to per-type topic exchanges
"""

import threading
from typing import Optional, Set

from pika.exceptions import AMQPError

from ..utils.errors import BrokerConnectionError, PublishError
from ..utils.logger import get_logger
from ..utils.metrics import record_publish
from .connection import BrokerConnectionFactory, close_quietly, declare_exchange
from .envelope import build_properties, encode_message, new_message_id
from .messages import PipelineMessage

logger = get_logger(__name__)


class MessagePublisher:
    """Publisher with lazy exchange declaration and a long-lived connection"""

    def __init__(self, connection_factory: BrokerConnectionFactory):
        """
        Initialize publisher

        Args:
            connection_factory: Factory used to (re)open the broker connection
        """
        self.connection_factory = connection_factory
        self._connection = None
        self._channel = None
        self._declared: Set[str] = set()
        # Blocking channels are not thread safe
        self._lock = threading.Lock()

    def publish(
        self, message: PipelineMessage, message_id: Optional[str] = None
    ) -> str:
        """
        Publish a message to the exchange named after its type

        Args:
            message: Message to publish
            message_id: Caller-assigned message id (generated when omitted)

        Returns:
            The message id that was published

        Raises:
            BrokerConnectionError: broker could not be reached
            PublishError: the broker rejected the publish
        """
        if message is None:
            raise PublishError("Cannot publish an empty message")

        exchange = message.type_name()
        routing_key = message.routing_key()
        message_id = message_id or new_message_id()
        body = encode_message(message)

        with self._lock:
            try:
                channel = self._ensure_channel()
                if exchange not in self._declared:
                    declare_exchange(channel, exchange)
                    self._declared.add(exchange)

                channel.basic_publish(
                    exchange=exchange,
                    routing_key=routing_key,
                    body=body,
                    properties=build_properties(message, message_id),
                )
            except BrokerConnectionError:
                record_publish(exchange, success=False)
                raise
            except AMQPError as e:
                self._reset()
                record_publish(exchange, success=False)
                logger.error(f"Failed to publish {exchange} ({routing_key}): {e}")
                raise PublishError(
                    f"Failed to publish {exchange}: {e}",
                    details={"message_type": exchange, "routing_key": routing_key},
                ) from e

        record_publish(exchange, success=True)
        logger.debug(
            f"Published {exchange} with routing key {routing_key}",
            extra={"message_type": exchange, "message_id": message_id},
        )
        return message_id

    def _ensure_channel(self):
        if self._connection is not None and self._connection.is_open:
            try:
                # BlockingConnection only answers heartbeats while servicing I/O
                self._connection.process_data_events(time_limit=0)
            except AMQPError as e:
                logger.warning(f"Publisher connection lost, reconnecting: {e}")
                self._reset()
        if self._connection is None or not self._connection.is_open:
            self._reset()
            self._connection = self.connection_factory.connect()
        if self._channel is None or not self._channel.is_open:
            self._channel = self._connection.channel()
            # Redeclare exchanges on every new channel
            self._declared.clear()
        return self._channel

    def _reset(self) -> None:
        close_quietly(self._connection)
        self._connection = None
        self._channel = None
        self._declared.clear()

    def close(self) -> None:
        """Close the publisher connection"""
        with self._lock:
            self._reset()
        logger.info("Message publisher closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
