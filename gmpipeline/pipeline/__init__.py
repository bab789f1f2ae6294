"""
GM Pipeline Stages and Side Channels
Stage tracking, correlation cache and retrieval diagnostics

Handlers live in ``gmpipeline.pipeline.documents``,
``gmpipeline.pipeline.conversation`` and ``gmpipeline.pipeline.training``;
content directory scanning lives in ``gmpipeline.pipeline.scanning``.
"""

from .correlation import CorrelationCache, SentimentResult, new_correlation_token
from .diagnostics import (
    RedisDiagnosticsStore,
    RetrievalDiagnosticsQueue,
    SearchDiagnostics,
    SearchResult,
)
from .stages import (
    PipelineStage,
    PipelineType,
    StageStatus,
    StageTransition,
    stage_for_message_type,
)
from .tracker import (
    HttpStatusSink,
    LoggingStatusSink,
    PipelineStageTracker,
    build_status_sink,
)

__all__ = [
    "PipelineType",
    "PipelineStage",
    "StageStatus",
    "StageTransition",
    "stage_for_message_type",
    "PipelineStageTracker",
    "HttpStatusSink",
    "LoggingStatusSink",
    "build_status_sink",
    "CorrelationCache",
    "SentimentResult",
    "new_correlation_token",
    "RetrievalDiagnosticsQueue",
    "RedisDiagnosticsStore",
    "SearchDiagnostics",
    "SearchResult",
]
