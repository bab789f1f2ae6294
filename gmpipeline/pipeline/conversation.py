"""
GM Pipeline Conversation Handlers
Post-processing for chat messages produced during a game
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set, Tuple

from ..messaging.messages import (
    ChatRole,
    ConversationMessageQueuedMessage,
    ConversationMessageReadyForEmbeddingMessage,
    EarlySentimentClassificationMessage,
)
from ..messaging.publisher import MessagePublisher
from ..utils.config import get_settings
from ..utils.errors import ShutdownRequested
from ..utils.logger import get_logger
from ..vectors.gateway import VectorConfig, VectorPoint, VectorStoreGateway
from .correlation import CorrelationCache
from .documents import EmbeddingGenerator, embed_texts
from .stages import PipelineStage, PipelineType
from .tracker import PipelineStageTracker

logger = get_logger(__name__)


@dataclass
class ChatMessageRecord:
    message_id: int
    game_id: str
    text: str
    role: ChatRole
    created_at: Optional[datetime] = None
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)


class ConversationStore(Protocol):
    def get_message(self, message_id: int) -> Optional[ChatMessageRecord]:
        ...

    def save_sentiment(
        self, message_id: int, sentiment: int, confidence: Optional[float], source: str
    ) -> None:
        ...

    def mark_tool_calls_processed(self, message_id: int, tool_call_count: int) -> None:
        ...

    def completed_evaluators(self, message_id: int) -> Set[str]:
        ...

    def save_evaluation(self, message_id: int, evaluator_name: str, scores: Dict[str, float]) -> None:
        ...

    def tag_message_point(self, message_id: int, point_id: str) -> None:
        ...


class SentimentClassifier(Protocol):
    def classify(self, text: str) -> Tuple[int, float]:
        ...


class Evaluator(Protocol):
    name: str

    def evaluate(self, message: ChatMessageRecord) -> Dict[str, float]:
        ...


def message_point_key(message_id: int) -> str:
    return f"message-{message_id}"


class EarlySentimentHandler:
    """
    Classifies raw user text before its message row is written.

    The stage is tracked under the correlation token, since no message id
    exists yet, and the result is pushed to live listeners.
    """

    def __init__(
        self,
        classifier: SentimentClassifier,
        cache: CorrelationCache,
        tracker: PipelineStageTracker,
    ):
        self.classifier = classifier
        self.cache = cache
        self.tracker = tracker

    def handle(self, message: EarlySentimentClassificationMessage, stop_event: threading.Event) -> None:
        with self.tracker.track_stage(
            message.correlation_token,
            message.game_id,
            PipelineType.CONVERSATION,
            PipelineStage.SENTIMENT_CLASSIFICATION,
            preview=message.message_text,
        ):
            sentiment, confidence = self.classifier.classify(message.message_text)
            self.cache.store(message.correlation_token, sentiment, confidence)

        self.tracker.notify_early_sentiment(
            message.correlation_token, message.game_id, sentiment, confidence
        )
        logger.info(
            f"Early sentiment {sentiment} ({confidence}) for game {message.game_id}",
            extra={"correlation_token": message.correlation_token},
        )


class UserMessageHandler:
    """
    Attaches sentiment to a persisted user message.

    An early classification stored under the message's correlation token
    is used when present; otherwise the text is classified again.
    """

    def __init__(
        self,
        store: ConversationStore,
        classifier: SentimentClassifier,
        cache: CorrelationCache,
        publisher: MessagePublisher,
        tracker: PipelineStageTracker,
    ):
        self.store = store
        self.classifier = classifier
        self.cache = cache
        self.publisher = publisher
        self.tracker = tracker

    def handle(self, message: ConversationMessageQueuedMessage, stop_event: threading.Event) -> None:
        record = self.store.get_message(message.message_id)
        if record is None:
            # The correlation entry can never be joined now
            self.cache.remove(message.correlation_token or "")
            logger.warning(
                f"Message {message.message_id} not found. It may have been deleted."
            )
            return

        with self.tracker.track_stage(
            message.message_id,
            message.game_id,
            PipelineType.CONVERSATION,
            PipelineStage.SENTIMENT_CLASSIFICATION,
            preview=record.text,
        ):
            cached = self.cache.claim(message.correlation_token)
            if cached is not None:
                sentiment, confidence, source = cached.sentiment, cached.confidence, "early"
            else:
                sentiment, confidence = self.classifier.classify(record.text)
                source = "classifier"
            self.store.save_sentiment(message.message_id, sentiment, confidence, source)

        logger.info(
            f"Sentiment {sentiment} ({source}) saved for message {message.message_id}",
            extra={"message_id": message.message_id},
        )
        publish_for_embedding(self.publisher, record)


class AssistantMessageHandler:
    """Tracks tool calls and runs evaluators over an assistant reply"""

    def __init__(
        self,
        store: ConversationStore,
        evaluators: Sequence[Evaluator],
        publisher: MessagePublisher,
        tracker: PipelineStageTracker,
    ):
        self.store = store
        self.evaluators = list(evaluators)
        self.publisher = publisher
        self.tracker = tracker

    def handle(self, message: ConversationMessageQueuedMessage, stop_event: threading.Event) -> None:
        record = self.store.get_message(message.message_id)
        if record is None:
            logger.warning(
                f"Message {message.message_id} not found. It may have been deleted."
            )
            return

        with self.tracker.track_stage(
            message.message_id,
            message.game_id,
            PipelineType.CONVERSATION,
            PipelineStage.TOOL_CALL_TRACKING,
            preview=record.text,
        ):
            self.store.mark_tool_calls_processed(message.message_id, len(record.tool_calls))

        selected = self.select_evaluators(message)
        if selected:
            with self.tracker.track_stage(
                message.message_id,
                message.game_id,
                PipelineType.CONVERSATION,
                PipelineStage.EVALUATION,
            ):
                self._run_evaluators(message, record, selected, stop_event)
        else:
            logger.info(f"No evaluators to run for message {message.message_id}")

        publish_for_embedding(self.publisher, record)

    def select_evaluators(self, message: ConversationMessageQueuedMessage) -> List[Evaluator]:
        selected = self.evaluators

        if message.evaluators_to_run:
            wanted = {name.lower() for name in message.evaluators_to_run}
            selected = [e for e in selected if e.name.lower() in wanted]
            unknown = wanted - {e.name.lower() for e in selected}
            if unknown:
                logger.warning(f"Unknown evaluators requested: {sorted(unknown)}")

        if message.evaluate_missing_only:
            done = {name.lower() for name in self.store.completed_evaluators(message.message_id)}
            selected = [e for e in selected if e.name.lower() not in done]

        return list(selected)

    def _run_evaluators(self, message, record, selected, stop_event) -> None:
        total = len(selected)
        for index, evaluator in enumerate(selected, start=1):
            if stop_event.is_set():
                raise ShutdownRequested(
                    f"Stopped before evaluator {evaluator.name} for message {message.message_id}"
                )

            self.tracker.notify_evaluator_started(
                message.message_id, message.game_id, evaluator.name, index, total
            )
            scores = evaluator.evaluate(record)
            self.store.save_evaluation(message.message_id, evaluator.name, scores)
            self.tracker.notify_evaluator_completed(
                message.message_id, message.game_id, evaluator.name, index, total
            )
            logger.info(
                f"Evaluator {evaluator.name} ({index}/{total}) completed for message {message.message_id}"
            )


def publish_for_embedding(publisher: MessagePublisher, record: ChatMessageRecord) -> None:
    publisher.publish(
        ConversationMessageReadyForEmbeddingMessage(
            message_id=record.message_id,
            game_id=record.game_id,
            text=record.text or "",
            role=record.role,
            created_at=record.created_at,
        )
    )
    logger.debug(f"Queued message {record.message_id} for embedding")


class ConversationEmbeddingHandler:
    """Embeds a chat message into the conversation collection"""

    def __init__(
        self,
        embedder: EmbeddingGenerator,
        gateway: VectorStoreGateway,
        store: ConversationStore,
        tracker: PipelineStageTracker,
        collection: Optional[str] = None,
        dimensions: Optional[int] = None,
    ):
        settings = get_settings()
        self.embedder = embedder
        self.gateway = gateway
        self.store = store
        self.tracker = tracker
        self.collection = collection or settings.conversation_collection
        self.dimensions = dimensions or settings.embedding_dimensions

    def handle(
        self, message: ConversationMessageReadyForEmbeddingMessage, stop_event: threading.Event
    ) -> None:
        if not message.text.strip():
            logger.warning(f"Message {message.message_id} has no text, skipping embedding")
            return

        with self.tracker.track_stage(
            message.message_id,
            message.game_id,
            PipelineType.CONVERSATION,
            PipelineStage.EMBEDDING,
            preview=message.text,
        ):
            vector = embed_texts(self.embedder, [message.text], self.dimensions)[0]

        with self.tracker.track_stage(
            message.message_id,
            message.game_id,
            PipelineType.CONVERSATION,
            PipelineStage.INDEXING,
        ):
            self.gateway.ensure_collection(
                self.collection, VectorConfig(size=self.dimensions)
            ).raise_for_error()

            point = VectorPoint(
                key=message_point_key(message.message_id),
                vector=vector,
                payload={
                    "messageId": message.message_id,
                    "gameId": message.game_id,
                    "text": message.text,
                    "role": message.role.value,
                    "createdAt": message.created_at.isoformat() if message.created_at else None,
                },
            )
            self.gateway.upsert(self.collection, [point]).raise_for_error()
            self.store.tag_message_point(message.message_id, point.point_id)

        logger.info(f"Indexed message {message.message_id} in {self.collection}")
