"""
GM Pipeline Bulk Publishing
Bounded background publishing for large republish batches
"""

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional

from ..utils.config import get_settings
from ..utils.logger import get_logger
from .messages import PipelineMessage
from .publisher import MessagePublisher

logger = get_logger(__name__)


class BackfillJob:
    """Live progress of one bulk publish batch"""

    def __init__(
        self,
        total: int,
        description: str = "",
        on_complete: Optional[Callable[["BackfillJob"], None]] = None,
    ):
        self.job_id = str(uuid.uuid4())
        self.total = total
        self.description = description
        self.succeeded = 0
        self.failed = 0
        self.published_ids: List[str] = []
        self.errors: List[str] = []
        self._on_complete = on_complete
        self._lock = threading.Lock()
        self._done = threading.Event()
        if total == 0:
            self._finish()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every publish in the batch resolved"""
        return self._done.wait(timeout)

    def record(self, message_id: Optional[str] = None, error: Optional[str] = None) -> None:
        with self._lock:
            if error is None:
                self.succeeded += 1
                if message_id:
                    self.published_ids.append(message_id)
            else:
                self.failed += 1
                self.errors.append(error)
            finished = self.succeeded + self.failed >= self.total

        if finished:
            self._finish()

    def _finish(self) -> None:
        self._done.set()
        logger.info(
            f"Bulk publish {self.job_id} {self.description} finished: "
            f"{self.succeeded} of {self.total} published, {self.failed} failed"
        )
        if self._on_complete is not None:
            try:
                self._on_complete(self)
            except Exception as e:
                logger.error(f"Bulk publish completion callback failed: {e}", exc_info=e)

    def summary(self) -> dict:
        with self._lock:
            return {
                "jobId": self.job_id,
                "total": self.total,
                "succeeded": self.succeeded,
                "failed": self.failed,
                "done": self.done,
            }


class BulkPublisher:
    """
    Publishes batches on a bounded worker pool.

    The pool belongs to the process lifecycle rather than to the request
    that submitted the batch, so a caller can return as soon as the batch
    is accepted and read the outcome from the job later. ``shutdown()``
    releases the pool; ``start()`` or the next ``submit()`` opens a new one.
    """

    def __init__(self, publisher: MessagePublisher, max_concurrency: Optional[int] = None):
        settings = get_settings()
        self.publisher = publisher
        self.max_concurrency = max_concurrency or settings.publisher_max_concurrency
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._executor is not None

    def start(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_concurrency, thread_name_prefix="bulk-publish"
                )
                logger.info(f"Bulk publisher started with {self.max_concurrency} workers")
            return self._executor

    def submit(
        self,
        messages: Iterable[PipelineMessage],
        description: str = "",
        on_complete: Optional[Callable[[BackfillJob], None]] = None,
    ) -> BackfillJob:
        """Queue a batch and return its job without waiting for the publishes"""
        batch = list(messages)
        executor = self.start()
        job = BackfillJob(len(batch), description=description, on_complete=on_complete)
        logger.info(f"Accepted bulk publish {job.job_id} {description} with {len(batch)} messages")

        for message in batch:
            executor.submit(self._publish_one, job, message)
        return job

    def _publish_one(self, job: BackfillJob, message: PipelineMessage) -> None:
        try:
            message_id = self.publisher.publish(message)
        except Exception as e:
            logger.error(f"Failed to publish {message.type_name()} in bulk job {job.job_id}: {e}")
            job.record(error=str(e))
            return
        job.record(message_id=message_id)

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is None:
            return
        executor.shutdown(wait=wait, cancel_futures=cancel_pending)
        logger.info("Bulk publisher stopped")
