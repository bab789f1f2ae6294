"""
GM Pipeline - Observability Metrics
Prometheus metrics for the broker runtime and pipeline stages.
"""

import time
from contextlib import contextmanager

from prometheus_client import Counter, Gauge, Histogram

# ============================================================================
# METRIC DEFINITIONS
# ============================================================================

MESSAGES_PUBLISHED = Counter(
    "gm_messages_published_total",
    "Messages handed to the broker",
    ["message_type", "status"],  # success, failure
)

DELIVERIES = Counter(
    "gm_deliveries_total",
    "Deliveries resolved by consumers",
    ["message_type", "outcome"],  # acked, poison, exhausted, requeued
)

HANDLER_ATTEMPTS = Counter(
    "gm_handler_attempts_total",
    "Handler invocations including retries",
    ["message_type", "status"],  # success, failure
)

HANDLER_DURATION = Histogram(
    "gm_handler_duration_seconds",
    "Time spent inside a single handler attempt",
    ["message_type"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

QUEUE_DEPTH = Gauge(
    "gm_queue_depth",
    "Ready messages per pipeline stage queue",
    ["stage"],
)

STAGE_TRANSITIONS = Counter(
    "gm_stage_transitions_total",
    "Pipeline stage notifications",
    ["pipeline", "stage", "status"],
)

DIAGNOSTICS_EVENTS = Counter(
    "gm_search_diagnostics_total",
    "Retrieval diagnostics queue events",
    ["event"],  # enqueued, dropped, stored, failed
)

CORRELATION_LOOKUPS = Counter(
    "gm_correlation_lookups_total",
    "Correlation cache lookups",
    ["result"],  # hit, miss
)

DOCUMENT_SCANS = Counter(
    "gm_document_scan_files_total",
    "Files visited by the content directory scan",
    ["result"],  # enqueued, unchanged, error
)

TRAINING_JOBS = Counter(
    "gm_classifier_training_jobs_total",
    "Classifier training jobs by final status",
    ["status"],  # completed, insufficient_data, failed
)

VECTOR_UPSERTS = Counter(
    "gm_vector_upserts_total",
    "Vector store upsert batches",
    ["collection", "status"],
)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


@contextmanager
def track_handler_attempt(message_type: str):
    """Context manager to time one handler attempt and count its outcome"""
    start_time = time.time()
    status = "success"
    try:
        yield
    except Exception:
        status = "failure"
        raise
    finally:
        duration = time.time() - start_time
        HANDLER_ATTEMPTS.labels(message_type=message_type, status=status).inc()
        HANDLER_DURATION.labels(message_type=message_type).observe(duration)


def record_delivery(message_type: str, outcome: str):
    """Record how a delivery was resolved"""
    DELIVERIES.labels(message_type=message_type, outcome=outcome).inc()


def record_publish(message_type: str, success: bool):
    """Record a publish attempt"""
    MESSAGES_PUBLISHED.labels(
        message_type=message_type, status="success" if success else "failure"
    ).inc()


def record_stage_transition(pipeline: str, stage: str, status: str):
    """Record a stage notification"""
    STAGE_TRANSITIONS.labels(pipeline=pipeline, stage=stage, status=status).inc()


def set_queue_depth(stage: str, depth: int):
    """Record the latest queue depth for a stage"""
    QUEUE_DEPTH.labels(stage=stage).set(depth)


def record_diagnostics_event(event: str, count: int = 1):
    """Record a diagnostics queue event"""
    DIAGNOSTICS_EVENTS.labels(event=event).inc(count)


def record_correlation_lookup(result: str):
    """Record a correlation cache lookup"""
    CORRELATION_LOOKUPS.labels(result=result).inc()


def record_document_scan(result: str):
    """Record the outcome for one scanned file"""
    DOCUMENT_SCANS.labels(result=result).inc()


def record_training_job(status: str):
    """Record a finished classifier training job"""
    TRAINING_JOBS.labels(status=status).inc()


def record_vector_upsert(collection: str, success: bool):
    """Record an upsert batch"""
    VECTOR_UPSERTS.labels(
        collection=collection, status="success" if success else "failure"
    ).inc()
