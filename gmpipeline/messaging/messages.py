"""
GM Pipeline Messages
Typed message catalog for the event pipeline

Every message type is an immutable pydantic model. The class name is the
message type name and also the name of the topic exchange it is published to.
"""

from datetime import datetime
from enum import Enum, IntEnum
from typing import ClassVar, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..utils.errors import UnknownMessageTypeError


class ChatRole(str, Enum):
    """Author of a conversation message"""

    USER = "User"
    ASSISTANT = "Assistant"


class Sentiment(IntEnum):
    """Sentiment classification result"""

    NEGATIVE = -1
    NEUTRAL = 0
    POSITIVE = 1


class PipelineMessage(BaseModel):
    """Base class for all pipeline messages"""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    # Role-routed messages publish with "{type}.{role}" routing keys
    role_routed: ClassVar[bool] = False

    @classmethod
    def type_name(cls) -> str:
        return cls.__name__

    @property
    def message_role(self) -> Optional[str]:
        """Role used for routing, None for messages without one"""
        return None

    def routing_key(self) -> str:
        """Routing key derived from the message type and its role"""
        role = self.message_role if self.role_routed else None
        if role:
            return f"{self.type_name()}.{role.lower()}"
        return self.type_name()


# ============================================================================
# DOCUMENT PIPELINE
# ============================================================================


class CrackDocumentMessage(PipelineMessage):
    """Request to extract text from a source document"""

    file_path: str = Field(..., min_length=1)
    relative_directory: Optional[str] = None
    ruleset_id: Optional[str] = None
    document_kind: str = "Sourcebook"


class DocumentReadyForChunkingMessage(PipelineMessage):
    """A cracked document whose text is ready to be split into chunks"""

    document_id: str = Field(..., min_length=1)
    file_path: str = Field(..., min_length=1)
    file_name: Optional[str] = None
    relative_directory: Optional[str] = None
    file_size: int = 0
    page_count: int = 0
    cracked_at: Optional[datetime] = None
    document_kind: str = "Sourcebook"
    ruleset_id: Optional[str] = None


class DocumentCrackedMessage(DocumentReadyForChunkingMessage):
    """Re-chunk request for an already cracked document (backfill path)"""


class ChunkReadyForEmbeddingMessage(PipelineMessage):
    """A stored chunk that still needs an embedding"""

    chunk_id: str = Field(..., min_length=1)
    chunk_text: str
    chunk_index: int = Field(0, ge=0)
    document_id: str = Field(..., min_length=1)
    file_name: Optional[str] = None
    file_path: Optional[str] = None
    page_number: Optional[int] = None
    total_chunks: int = 0
    document_kind: str = "Sourcebook"
    ruleset_id: Optional[str] = None


# ============================================================================
# CONVERSATION PIPELINE
# ============================================================================


class ConversationMessageQueuedMessage(PipelineMessage):
    """A persisted chat message waiting for post-processing"""

    role_routed: ClassVar[bool] = True

    message_id: int
    game_id: str = Field(..., min_length=1)
    role: ChatRole
    correlation_token: Optional[str] = None
    evaluate_missing_only: bool = False
    evaluators_to_run: Optional[List[str]] = None

    @property
    def message_role(self) -> Optional[str]:
        return self.role.value


class EarlySentimentClassificationMessage(PipelineMessage):
    """Raw user text to classify before the message row exists"""

    correlation_token: str = Field(..., min_length=1)
    game_id: str = Field(..., min_length=1)
    message_text: str


class ConversationMessageReadyForEmbeddingMessage(PipelineMessage):
    """A chat message whose text should be embedded and indexed"""

    message_id: int
    game_id: str = Field(..., min_length=1)
    text: str
    role: ChatRole
    created_at: Optional[datetime] = None


class TrainClassifierMessage(PipelineMessage):
    """Request to retrain the sentiment classifier"""

    training_job_id: int
    min_confidence: float = Field(0.8, ge=0.0, le=1.0)
    train_test_split: float = Field(0.2, gt=0.0, lt=1.0)
    training_time_seconds: int = Field(60, gt=0)
    optimizing_metric: str = "MacroAccuracy"
    requested_by: Optional[str] = None


# ============================================================================
# CATALOG
# ============================================================================

_CATALOG: Dict[str, Type[PipelineMessage]] = {
    cls.type_name(): cls
    for cls in (
        CrackDocumentMessage,
        DocumentReadyForChunkingMessage,
        DocumentCrackedMessage,
        ChunkReadyForEmbeddingMessage,
        ConversationMessageQueuedMessage,
        EarlySentimentClassificationMessage,
        ConversationMessageReadyForEmbeddingMessage,
        TrainClassifierMessage,
    )
}


def message_catalog() -> List[Type[PipelineMessage]]:
    """All message types known to the pipeline"""
    return list(_CATALOG.values())


def resolve_message_type(type_name: str) -> Type[PipelineMessage]:
    """Map a message type name back to its class"""
    try:
        return _CATALOG[type_name]
    except KeyError:
        raise UnknownMessageTypeError(type_name) from None
