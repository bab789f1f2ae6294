"""
GM Pipeline Errors
Custom exception classes
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base exception for the event pipeline"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class BrokerConnectionError(PipelineError):
    """Broker unreachable or connection lost (fatal to the worker instance)"""


class PublishError(PipelineError):
    """A message could not be handed to the broker"""


class MessageDecodeError(PipelineError):
    """Delivery body can never be parsed into its message type (poison message)"""


class UnknownMessageTypeError(PipelineError):
    """Message type name is not part of the catalog"""

    def __init__(self, type_name: str):
        super().__init__(
            f"Unknown message type: {type_name}", details={"message_type": type_name}
        )


class HandlerRegistrationError(PipelineError):
    """Invalid or duplicate handler registration"""


class ShutdownRequested(PipelineError):
    """Retry loop abandoned because the runtime is stopping"""

    def __init__(self, message: str = "Shutdown requested"):
        super().__init__(message)


class DocumentNotFoundError(PipelineError):
    """Document referenced by a message does not exist in the document store"""

    def __init__(self, document_id: str):
        super().__init__(
            f"Document {document_id} not found", details={"document_id": document_id}
        )


class ChunkingError(PipelineError):
    """Document produced no usable chunks"""


class EmbeddingError(PipelineError):
    """Embedding generator returned an unusable result"""


class VectorStoreError(PipelineError):
    """Vector store gateway call failed"""

    def __init__(self, message: str, kind: Any, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.kind = kind


class ContentDirectoryError(PipelineError):
    """Document scan root is unset or does not exist"""
