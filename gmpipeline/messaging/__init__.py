"""
GM Pipeline Messaging
Broker publisher, consumer runtimes and the handler registry
"""

from .backfill import BackfillJob, BulkPublisher
from .connection import BrokerConnectionFactory
from .consumer import (
    ConsumerState,
    DeliveryOutcome,
    MessageConsumerService,
    RetryPolicy,
    RoleBasedMessageConsumerService,
)
from .envelope import Delivery, decode_message, encode_message
from .messages import (
    ChatRole,
    ChunkReadyForEmbeddingMessage,
    ConversationMessageQueuedMessage,
    ConversationMessageReadyForEmbeddingMessage,
    CrackDocumentMessage,
    DocumentCrackedMessage,
    DocumentReadyForChunkingMessage,
    EarlySentimentClassificationMessage,
    PipelineMessage,
    Sentiment,
    TrainClassifierMessage,
    message_catalog,
    resolve_message_type,
)
from .publisher import MessagePublisher
from .registry import HandlerRegistry

__all__ = [
    # Messages
    "PipelineMessage",
    "ChatRole",
    "Sentiment",
    "CrackDocumentMessage",
    "DocumentReadyForChunkingMessage",
    "DocumentCrackedMessage",
    "ChunkReadyForEmbeddingMessage",
    "ConversationMessageQueuedMessage",
    "EarlySentimentClassificationMessage",
    "ConversationMessageReadyForEmbeddingMessage",
    "TrainClassifierMessage",
    "message_catalog",
    "resolve_message_type",
    # Envelope
    "Delivery",
    "encode_message",
    "decode_message",
    # Broker
    "BrokerConnectionFactory",
    "MessagePublisher",
    "BulkPublisher",
    "BackfillJob",
    "ConsumerState",
    "DeliveryOutcome",
    "RetryPolicy",
    "MessageConsumerService",
    "RoleBasedMessageConsumerService",
    "HandlerRegistry",
]
