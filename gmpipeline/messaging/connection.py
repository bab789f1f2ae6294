"""
GM Pipeline Broker Connection
Opens blocking RabbitMQ connections for publishers and consumers
"""

from typing import Optional

import pika
from pika.exceptions import AMQPError

from ..utils.config import get_settings
from ..utils.errors import BrokerConnectionError
from ..utils.logger import get_logger

logger = get_logger(__name__)

EXCHANGE_TYPE = "topic"


class BrokerConnectionFactory:
    """
    Creates broker connections from a single AMQP URL.

    The factory holds no connection itself. Each consumer runtime opens
    its own connection and the publisher keeps one long-lived connection,
    so nothing is shared between workers.
    """

    def __init__(self, url: Optional[str] = None, heartbeat: Optional[int] = None):
        settings = get_settings()
        self.url = url or settings.rabbitmq_url
        self.heartbeat = (
            heartbeat if heartbeat is not None else settings.rabbitmq_heartbeat_seconds
        )

    def parameters(self) -> pika.URLParameters:
        params = pika.URLParameters(self.url)
        params.heartbeat = self.heartbeat
        return params

    def connect(self) -> pika.BlockingConnection:
        """
        Open a new blocking connection

        Raises:
            BrokerConnectionError: broker unreachable or handshake failed
        """
        try:
            connection = pika.BlockingConnection(self.parameters())
        except AMQPError as e:
            logger.error(f"Failed to connect to broker: {e}")
            raise BrokerConnectionError(
                f"Failed to connect to broker: {e}", details={"error": str(e)}
            ) from e

        logger.debug("Broker connection opened")
        return connection


def declare_exchange(channel, exchange: str) -> None:
    """Declare the durable topic exchange for a message type"""
    channel.exchange_declare(
        exchange=exchange, exchange_type=EXCHANGE_TYPE, durable=True
    )


def close_quietly(connection) -> None:
    """Close a connection during teardown, logging instead of raising"""
    if connection is None:
        return
    try:
        if connection.is_open:
            connection.close()
    except AMQPError as e:
        logger.warning(f"Error closing broker connection: {e}")
