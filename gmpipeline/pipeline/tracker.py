"""
GM Pipeline Stage Tracker
Stage transition notifications and the sinks that deliver them
"""

import json
import socket
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import httpx

from ..utils.config import get_settings
from ..utils.logger import get_logger
from ..utils.metrics import record_stage_transition, set_queue_depth
from .stages import PipelineStage, PipelineType, StageStatus, StageTransition

logger = get_logger(__name__)

PIPELINE_UPDATES_PATH = "/internal/message-pipeline-updates"
PIPELINE_STATUS_PATH = "/internal/pipeline-status"
MESSAGE_UPDATES_PATH = "/internal/message-updates"
TRAINING_STATUS_PATH = "/internal/classifier-training-status"
TRAINING_COMPLETED_PATH = "/internal/classifier-training-completed"

SENTIMENT_ANALYZED = "SentimentAnalyzed"
# Early results come from the model, never from a player correction
SENTIMENT_SOURCE_MODEL = 0


class StatusSink(Protocol):
    """Destination for stage transitions, queue depth and live updates"""

    def send_transition(self, transition: StageTransition) -> None:
        ...

    def send_queue_depth(self, stage: str, depth: int, worker_source: str) -> None:
        ...

    def send_message_update(self, update: Dict[str, Any]) -> None:
        ...

    def send_training_status(self, job_id: int, status: str) -> None:
        ...

    def send_training_completed(
        self, job_id: int, model_id: Optional[int], success: bool, error_message: Optional[str]
    ) -> None:
        ...


class HttpStatusSink:
    """Posts stage events to the API service's internal endpoints"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        settings = get_settings()
        self.base_url = base_url or settings.status_sink_url
        self.client = client or httpx.Client(
            base_url=self.base_url,
            timeout=timeout or settings.status_sink_timeout_seconds,
        )

    def _post(self, path: str, payload: Dict[str, Any]) -> None:
        response = self.client.post(path, json=payload)
        response.raise_for_status()

    def send_transition(self, transition: StageTransition) -> None:
        self._post(PIPELINE_UPDATES_PATH, transition.to_payload())

    def send_queue_depth(self, stage: str, depth: int, worker_source: str) -> None:
        self._post(
            PIPELINE_STATUS_PATH,
            {"stage": stage, "queueSize": depth, "workerSource": worker_source},
        )

    def send_message_update(self, update: Dict[str, Any]) -> None:
        self._post(MESSAGE_UPDATES_PATH, update)

    def send_training_status(self, job_id: int, status: str) -> None:
        self._post(TRAINING_STATUS_PATH, {"trainingJobId": job_id, "status": status})

    def send_training_completed(
        self, job_id: int, model_id: Optional[int], success: bool, error_message: Optional[str]
    ) -> None:
        self._post(
            TRAINING_COMPLETED_PATH,
            {
                "trainingJobId": job_id,
                "modelId": model_id,
                "success": success,
                "errorMessage": error_message,
            },
        )

    def close(self) -> None:
        self.client.close()


class LoggingStatusSink:
    """Writes stage events to the log when no status endpoint is configured"""

    def send_transition(self, transition: StageTransition) -> None:
        logger.info(
            f"Pipeline stage {transition.stage.value} {transition.status.value}: "
            f"{json.dumps(transition.to_payload())}",
            extra={"message_id": transition.message_id, "stage": transition.stage.value},
        )

    def send_queue_depth(self, stage: str, depth: int, worker_source: str) -> None:
        logger.info(f"Queue depth for {stage} on {worker_source}: {depth}")

    def send_message_update(self, update: Dict[str, Any]) -> None:
        logger.info(f"Message update {update.get('updateType')}: {json.dumps(update)}")

    def send_training_status(self, job_id: int, status: str) -> None:
        logger.info(f"Training job {job_id} status {status}")

    def send_training_completed(
        self, job_id: int, model_id: Optional[int], success: bool, error_message: Optional[str]
    ) -> None:
        if success:
            logger.info(f"Training job {job_id} completed with model {model_id}")
        else:
            logger.info(f"Training job {job_id} failed: {error_message}")

    def close(self) -> None:
        pass


def build_status_sink():
    """HTTP sink when a status URL is configured, logging sink otherwise"""
    settings = get_settings()
    if settings.status_sink_url:
        return HttpStatusSink(settings.status_sink_url)
    return LoggingStatusSink()


class PipelineStageTracker:
    """
    Reports pipeline stage transitions to a status sink.

    The tracker is write-only telemetry. Sink failures are logged and
    never propagate to the stage being reported.
    """

    def __init__(
        self,
        sink: StatusSink,
        worker_source: Optional[str] = None,
        preview_chars: Optional[int] = None,
    ):
        settings = get_settings()
        self.sink = sink
        self.worker_source = worker_source or socket.gethostname()
        self.preview_chars = preview_chars or settings.stage_preview_chars

    def truncate_preview(self, text: Optional[str]) -> Optional[str]:
        if text is None or len(text) <= self.preview_chars:
            return text
        return text[: self.preview_chars] + "..."

    def notify_stage_started(
        self,
        message_id,
        game_id,
        pipeline_type: PipelineType,
        stage: PipelineStage,
        preview: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> None:
        self._send(
            self._transition(
                message_id, game_id, pipeline_type, stage, StageStatus.STARTED, started_at,
                preview=self.truncate_preview(preview),
            )
        )

    def notify_stage_completed(
        self,
        message_id,
        game_id,
        pipeline_type: PipelineType,
        stage: PipelineStage,
        started_at: Optional[datetime] = None,
    ) -> None:
        self._send(
            self._transition(
                message_id, game_id, pipeline_type, stage, StageStatus.COMPLETED, started_at
            )
        )

    def notify_stage_failed(
        self,
        message_id,
        game_id,
        pipeline_type: PipelineType,
        stage: PipelineStage,
        started_at: Optional[datetime] = None,
    ) -> None:
        self._send(
            self._transition(
                message_id, game_id, pipeline_type, stage, StageStatus.FAILED, started_at
            )
        )

    def _transition(
        self, message_id, game_id, pipeline_type, stage, status, started_at, **extra
    ) -> StageTransition:
        transition = StageTransition(
            message_id=str(message_id),
            game_id=game_id,
            pipeline_type=pipeline_type,
            stage=stage,
            status=status,
            worker_source=self.worker_source,
            **extra,
        )
        if started_at is not None:
            transition.started_at = started_at
        return transition

    def notify_evaluator_started(
        self, message_id, game_id, evaluator_name: str, index: int, total: int
    ) -> None:
        self._send_evaluator(message_id, game_id, evaluator_name, index, total, StageStatus.STARTED)

    def notify_evaluator_completed(
        self, message_id, game_id, evaluator_name: str, index: int, total: int
    ) -> None:
        self._send_evaluator(message_id, game_id, evaluator_name, index, total, StageStatus.COMPLETED)

    def _send_evaluator(self, message_id, game_id, evaluator_name, index, total, status):
        self._send(
            self._transition(
                message_id,
                game_id,
                PipelineType.CONVERSATION,
                PipelineStage.EVALUATION,
                status,
                None,
                evaluator_name=evaluator_name,
                evaluator_index=index,
                total_evaluators=total,
            )
        )

    @contextmanager
    def track_stage(
        self,
        message_id,
        game_id,
        pipeline_type: PipelineType,
        stage: PipelineStage,
        preview: Optional[str] = None,
    ):
        """
        Wrap a unit of stage work

        Emits Started on entry, then Completed on normal exit or Failed
        when the block raises (the exception is re-raised). All three
        transitions carry the same start time.
        """
        started_at = datetime.now(timezone.utc)
        self.notify_stage_started(message_id, game_id, pipeline_type, stage, preview, started_at)
        try:
            yield
        except BaseException:
            self.notify_stage_failed(message_id, game_id, pipeline_type, stage, started_at)
            raise
        self.notify_stage_completed(message_id, game_id, pipeline_type, stage, started_at)

    def notify_early_sentiment(
        self, correlation_token: str, game_id, sentiment: int, confidence: Optional[float]
    ) -> None:
        """Live update for a sentiment computed before its message row exists"""
        update = {
            "messageId": None,
            "correlationToken": correlation_token,
            "gameId": game_id,
            "updateType": SENTIMENT_ANALYZED,
            "sentiment": sentiment,
            "sentimentConfidence": confidence,
            "sentimentSource": SENTIMENT_SOURCE_MODEL,
        }
        self._deliver(
            f"early sentiment for correlation token {correlation_token}",
            self.sink.send_message_update,
            update,
        )

    def notify_training_status(self, job_id: int, status: str) -> None:
        self._deliver(
            f"status {status} for training job {job_id}",
            self.sink.send_training_status,
            job_id,
            status,
        )

    def notify_training_completed(
        self,
        job_id: int,
        model_id: Optional[int],
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        self._deliver(
            f"completion for training job {job_id}",
            self.sink.send_training_completed,
            job_id,
            model_id,
            success,
            error_message,
        )

    def report_queue_depth(self, stage: PipelineStage, depth: int) -> None:
        stage_name = getattr(stage, "value", stage).lower()
        set_queue_depth(stage_name, depth)
        try:
            self.sink.send_queue_depth(stage_name, depth, self.worker_source)
        except Exception as e:
            logger.debug(f"Failed to report queue depth for {stage_name}: {e}")

    def _deliver(self, description: str, send, *args) -> None:
        try:
            send(*args)
        except Exception as e:
            logger.warning(f"Failed to send {description}: {e}")

    def _send(self, transition: StageTransition) -> None:
        record_stage_transition(
            transition.pipeline_type.value, transition.stage.value, transition.status.value
        )
        try:
            self.sink.send_transition(transition)
        except Exception as e:
            logger.warning(
                f"Failed to send {transition.stage.value} {transition.status.value} "
                f"for message {transition.message_id}: {e}",
                extra={"message_id": transition.message_id},
            )
