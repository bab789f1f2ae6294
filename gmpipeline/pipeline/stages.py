"""
GM Pipeline Stages
Pipeline types, stages and the message type to stage mapping
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class PipelineType(str, Enum):
    DOCUMENT = "Document"
    CONVERSATION = "Conversation"


class PipelineStage(str, Enum):
    CRACKING = "Cracking"
    CHUNKING = "Chunking"
    EMBEDDING = "Embedding"
    INDEXING = "Indexing"
    SENTIMENT_CLASSIFICATION = "SentimentClassification"
    TOOL_CALL_TRACKING = "ToolCallTracking"
    EVALUATION = "Evaluation"


class StageStatus(str, Enum):
    STARTED = "Started"
    COMPLETED = "Completed"
    FAILED = "Failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StageTransition:
    """One stage notification as sent to the status sink"""

    message_id: str
    game_id: Optional[str]
    pipeline_type: PipelineType
    stage: PipelineStage
    status: StageStatus
    preview: Optional[str] = None
    evaluator_name: Optional[str] = None
    evaluator_index: Optional[int] = None
    total_evaluators: Optional[int] = None
    worker_source: Optional[str] = None
    started_at: datetime = field(default_factory=_utcnow)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_payload(self) -> Dict[str, Any]:
        """camelCase JSON payload for the status endpoint"""
        return {
            "messageId": self.message_id,
            "gameId": self.game_id,
            "pipelineType": self.pipeline_type.value,
            "stage": self.stage.value,
            "stageStatus": self.status.value,
            "messagePreview": self.preview,
            "evaluatorName": self.evaluator_name,
            "evaluatorIndex": self.evaluator_index,
            "totalEvaluators": self.total_evaluators,
            "workerSource": self.worker_source,
            "startedAt": self.started_at.isoformat(),
            "timestamp": self.timestamp.isoformat(),
        }


# Message type name -> (pipeline, stage); role-routed types key on role too
_STAGE_MAP: Dict[Tuple[str, Optional[str]], Tuple[PipelineType, PipelineStage]] = {
    ("CrackDocumentMessage", None): (PipelineType.DOCUMENT, PipelineStage.CRACKING),
    ("DocumentReadyForChunkingMessage", None): (
        PipelineType.DOCUMENT,
        PipelineStage.CHUNKING,
    ),
    ("DocumentCrackedMessage", None): (PipelineType.DOCUMENT, PipelineStage.CHUNKING),
    ("ChunkReadyForEmbeddingMessage", None): (
        PipelineType.DOCUMENT,
        PipelineStage.EMBEDDING,
    ),
    ("ConversationMessageQueuedMessage", "user"): (
        PipelineType.CONVERSATION,
        PipelineStage.SENTIMENT_CLASSIFICATION,
    ),
    ("ConversationMessageQueuedMessage", "assistant"): (
        PipelineType.CONVERSATION,
        PipelineStage.EVALUATION,
    ),
    ("EarlySentimentClassificationMessage", None): (
        PipelineType.CONVERSATION,
        PipelineStage.SENTIMENT_CLASSIFICATION,
    ),
    ("ConversationMessageReadyForEmbeddingMessage", None): (
        PipelineType.CONVERSATION,
        PipelineStage.EMBEDDING,
    ),
}


def stage_for_message_type(
    type_name: str, role: Optional[str] = None
) -> Optional[Tuple[PipelineType, PipelineStage]]:
    """
    Pipeline and stage a message type's consumer works on

    Returns None for messages that are not part of a tracked pipeline
    (e.g. classifier training requests).
    """
    role_key = str(getattr(role, "value", role)).lower() if role else None
    return _STAGE_MAP.get((type_name, role_key))
