"""
GM Pipeline Classifier Training
Retrains the sentiment classifier from labelled conversation messages
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from ..messaging.messages import TrainClassifierMessage
from ..utils.config import get_settings
from ..utils.errors import ShutdownRequested
from ..utils.logger import get_logger
from ..utils.metrics import record_training_job
from .tracker import PipelineStageTracker

logger = get_logger(__name__)

STATUS_TRAINING = "Training"
STATUS_COMPLETED = "Completed"
STATUS_FAILED = "Failed"


@dataclass
class LabeledMessage:
    """A stored message sentiment usable as a training row"""

    text: str
    sentiment: int
    confidence: Optional[float] = None
    player_labeled: bool = False


@dataclass(frozen=True)
class TrainingExample:
    text: str
    label: str


@dataclass
class TrainingResult:
    trainer_name: str
    model_bytes: bytes
    training_rows: int = 0
    test_rows: int = 0
    metrics: Dict[str, float] = field(default_factory=dict)


class TrainingJobStore(Protocol):
    def update_job(
        self,
        job_id: int,
        status: str,
        total_rows: Optional[int] = None,
        result: Optional[TrainingResult] = None,
        model_id: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        ...

    def labeled_messages(self) -> Iterable[LabeledMessage]:
        ...

    def upload_model(
        self, name: str, model_bytes: bytes, description: str, job_id: int
    ) -> int:
        """Store a trained model and return its id"""
        ...


class ClassifierTrainer(Protocol):
    def train(
        self,
        examples: Sequence[TrainingExample],
        train_test_split: float,
        training_time_seconds: int,
        optimizing_metric: str,
    ) -> TrainingResult:
        ...


def sentiment_label(sentiment: int) -> str:
    if sentiment == 1:
        return "positive"
    if sentiment == -1:
        return "negative"
    return "neutral"


def select_training_examples(
    messages: Iterable[LabeledMessage], min_confidence: float
) -> List[TrainingExample]:
    """
    Keep rows a player labelled, plus model rows at or above ``min_confidence``

    Messages with blank text are never used.
    """
    examples = []
    for message in messages:
        if not message.text or not message.text.strip():
            continue
        confident = message.confidence is not None and message.confidence >= min_confidence
        if message.player_labeled or confident:
            examples.append(TrainingExample(message.text, sentiment_label(message.sentiment)))
    return examples


class ClassifierTrainingHandler:
    """
    Runs one classifier training job.

    Too little data finishes the job as failed without raising, so the
    delivery is acked. Any other failure marks the job failed and is
    re-raised for the consumer's retry policy.
    """

    def __init__(
        self,
        store: TrainingJobStore,
        trainer: ClassifierTrainer,
        tracker: PipelineStageTracker,
        min_examples: Optional[int] = None,
    ):
        self.store = store
        self.trainer = trainer
        self.tracker = tracker
        self.min_examples = min_examples or get_settings().training_min_examples

    def handle(self, message: TrainClassifierMessage, stop_event: threading.Event) -> None:
        job_id = message.training_job_id
        logger.info(
            f"Starting classifier training job {job_id} (confidence {message.min_confidence}, "
            f"split {message.train_test_split}, time {message.training_time_seconds}s, "
            f"metric {message.optimizing_metric})"
        )
        self.store.update_job(job_id, STATUS_TRAINING)
        self.tracker.notify_training_status(job_id, STATUS_TRAINING)

        try:
            examples = select_training_examples(
                self.store.labeled_messages(), message.min_confidence
            )
            if len(examples) < self.min_examples:
                self._fail_for_insufficient_data(job_id, len(examples))
                return

            if stop_event.is_set():
                raise ShutdownRequested()

            result = self.trainer.train(
                examples,
                message.train_test_split,
                message.training_time_seconds,
                message.optimizing_metric,
            )
            model_id = self.store.upload_model(
                f"Custom Classifier {datetime.now(timezone.utc):%Y-%m-%d %H:%M}",
                result.model_bytes,
                f"Trained from {len(examples)} messages with "
                f"{message.min_confidence:.0%} confidence threshold",
                job_id,
            )
            self.store.update_job(
                job_id,
                STATUS_COMPLETED,
                total_rows=len(examples),
                result=result,
                model_id=model_id,
            )
        except ShutdownRequested:
            raise
        except Exception as e:
            logger.error(f"Training job {job_id} failed: {e}", exc_info=e)
            self.store.update_job(job_id, STATUS_FAILED, error_message=str(e))
            self.tracker.notify_training_completed(job_id, None, False, str(e))
            record_training_job("failed")
            raise

        self.tracker.notify_training_completed(job_id, model_id, True)
        record_training_job("completed")
        logger.info(
            f"Training job {job_id} completed with model {model_id} ({result.trainer_name})",
            extra={"training_job_id": job_id},
        )

    def _fail_for_insufficient_data(self, job_id: int, count: int) -> None:
        error = (
            f"Insufficient training data: only {count} rows found "
            f"(minimum {self.min_examples} required)"
        )
        logger.error(f"Training job {job_id} failed: {error}")
        self.store.update_job(job_id, STATUS_FAILED, total_rows=count, error_message=error)
        self.tracker.notify_training_completed(job_id, None, False, error)
        record_training_job("insufficient_data")
