"""In-memory broker and collaborators shared by the test suite."""

import threading
from collections import deque
from types import SimpleNamespace
from typing import Dict, List, Optional, Set

from pika.exceptions import ChannelClosedByBroker, StreamLostError

from gmpipeline.pipeline.chunking import TextChunk
from gmpipeline.pipeline.conversation import ChatMessageRecord
from gmpipeline.pipeline.documents import DocumentRecord, ExtractedText
from gmpipeline.pipeline.scanning import DocumentMetadata
from gmpipeline.pipeline.training import LabeledMessage, TrainingResult
from gmpipeline.utils.errors import BrokerConnectionError


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic matching: '*' is one word, '#' is zero or more"""
    words = routing_key.split(".") if routing_key else []
    parts = pattern.split(".") if pattern else []

    def match(pi: int, wi: int) -> bool:
        if pi == len(parts):
            return wi == len(words)
        if parts[pi] == "#":
            return any(match(pi + 1, k) for k in range(wi, len(words) + 1))
        if wi == len(words):
            return False
        if parts[pi] == "*" or parts[pi] == words[wi]:
            return match(pi + 1, wi + 1)
        return False

    return match(0, 0)


class FakeBroker:
    """Topic exchanges, durable queues, prefetch and ack/nack in memory"""

    def __init__(self):
        self.exchanges: Dict[str, str] = {}
        self.exchange_declarations: List[str] = []
        self.queues: Dict[str, deque] = {}
        self.bindings: List[tuple] = []
        self.published: List[SimpleNamespace] = []
        self.acks: List[int] = []
        self.nacks: List[tuple] = []
        self.events: List[tuple] = []
        self.max_in_flight = 0
        self.unreachable = False
        self.idle_event: Optional[threading.Event] = None
        self._next_tag = 0
        self.lock = threading.RLock()

    def stop_when_idle(self, event: threading.Event) -> None:
        """Set ``event`` the first time a connection finds nothing to dispatch"""
        self.idle_event = event

    def declare_exchange(self, name: str, exchange_type: str) -> None:
        with self.lock:
            self.exchanges[name] = exchange_type
            self.exchange_declarations.append(name)

    def declare_queue(self, name: str) -> None:
        with self.lock:
            self.queues.setdefault(name, deque())

    def bind(self, queue: str, exchange: str, routing_key: str) -> None:
        with self.lock:
            self.bindings.append((queue, exchange, routing_key))

    def route(self, exchange: str, routing_key: str, body: bytes, properties=None) -> None:
        with self.lock:
            if exchange not in self.exchanges:
                raise ChannelClosedByBroker(404, f"NOT_FOUND - no exchange '{exchange}'")
            self.published.append(
                SimpleNamespace(
                    exchange=exchange,
                    routing_key=routing_key,
                    body=body,
                    properties=properties,
                )
            )
            for queue, bound_exchange, key in self.bindings:
                if bound_exchange == exchange and topic_matches(key, routing_key):
                    self.queues[queue].append(
                        SimpleNamespace(
                            exchange=exchange,
                            routing_key=routing_key,
                            body=body,
                            properties=properties or SimpleNamespace(message_id=None),
                            redelivered=False,
                        )
                    )

    def inject(self, queue: str, body: bytes, routing_key: str = "", message_id: str = None):
        """Place a raw body straight into a queue"""
        self.declare_queue(queue)
        with self.lock:
            self.queues[queue].append(
                SimpleNamespace(
                    exchange="",
                    routing_key=routing_key or queue,
                    body=body,
                    properties=SimpleNamespace(message_id=message_id),
                    redelivered=False,
                )
            )

    def ready(self, queue: str) -> int:
        with self.lock:
            return len(self.queues.get(queue, ()))

    def next_tag(self) -> int:
        with self.lock:
            self._next_tag += 1
            return self._next_tag


class FakeChannel:
    def __init__(self, broker: FakeBroker, connection: "FakeConnection"):
        self.broker = broker
        self.connection = connection
        self.is_open = True
        self.prefetch_count = 0
        self.consumers: Dict[str, tuple] = {}
        self.unacked: Dict[int, SimpleNamespace] = {}

    def exchange_declare(self, exchange, exchange_type="direct", durable=False):
        self.broker.declare_exchange(exchange, exchange_type)

    def queue_declare(self, queue, durable=False, passive=False):
        if passive and queue not in self.broker.queues:
            self.is_open = False
            raise ChannelClosedByBroker(404, f"NOT_FOUND - no queue '{queue}'")
        self.broker.declare_queue(queue)
        return SimpleNamespace(
            method=SimpleNamespace(queue=queue, message_count=self.broker.ready(queue))
        )

    def queue_bind(self, queue, exchange, routing_key=None):
        self.broker.bind(queue, exchange, routing_key or "")

    def basic_qos(self, prefetch_count=0):
        self.prefetch_count = prefetch_count

    def basic_consume(self, queue, on_message_callback, auto_ack=False):
        tag = f"ctag-{len(self.consumers) + 1}-{queue}"
        self.consumers[tag] = (queue, on_message_callback)
        return tag

    def basic_cancel(self, consumer_tag):
        self.consumers.pop(consumer_tag, None)

    def basic_publish(self, exchange, routing_key, body, properties=None):
        self.broker.route(exchange, routing_key, body, properties)

    def basic_ack(self, delivery_tag):
        self.unacked.pop(delivery_tag)
        self.broker.acks.append(delivery_tag)
        self.broker.events.append(("ack", delivery_tag))

    def basic_nack(self, delivery_tag, requeue=True):
        item, queue = self.unacked.pop(delivery_tag)
        self.broker.nacks.append((delivery_tag, requeue))
        self.broker.events.append(("nack", delivery_tag, requeue))
        if requeue:
            item.redelivered = True
            self.broker.queues[queue].appendleft(item)

    def dispatch(self) -> int:
        dispatched = 0
        for tag, (queue, callback) in list(self.consumers.items()):
            # One delivery per consumer per pass
            if not self.broker.ready(queue):
                continue
            if self.prefetch_count and len(self.unacked) >= self.prefetch_count:
                continue
            with self.broker.lock:
                item = self.broker.queues[queue].popleft()
            delivery_tag = self.broker.next_tag()
            self.unacked[delivery_tag] = (item, queue)
            self.broker.max_in_flight = max(self.broker.max_in_flight, len(self.unacked))
            self.broker.events.append(("deliver", delivery_tag))
            method = SimpleNamespace(
                delivery_tag=delivery_tag,
                consumer_tag=tag,
                exchange=item.exchange,
                routing_key=item.routing_key,
                redelivered=item.redelivered,
            )
            callback(self, method, item.properties, item.body)
            dispatched += 1
        return dispatched

    def close(self):
        self.is_open = False


class FakeConnection:
    def __init__(self, broker: FakeBroker):
        self.broker = broker
        self.is_open = True
        self.channels: List[FakeChannel] = []

    def channel(self) -> FakeChannel:
        channel = FakeChannel(self.broker, self)
        self.channels.append(channel)
        return channel

    def process_data_events(self, time_limit=0):
        if self.broker.unreachable:
            raise StreamLostError("Stream connection lost")
        dispatched = sum(ch.dispatch() for ch in self.channels if ch.is_open)
        consuming = any(ch.consumers for ch in self.channels if ch.is_open)
        if not dispatched and consuming and self.broker.idle_event is not None:
            self.broker.idle_event.set()

    def close(self):
        self.is_open = False
        for channel in self.channels:
            channel.is_open = False


class FakeConnectionFactory:
    def __init__(self, broker: FakeBroker):
        self.broker = broker
        self.connections: List[FakeConnection] = []

    def connect(self) -> FakeConnection:
        if self.broker.unreachable:
            raise BrokerConnectionError("Failed to connect to broker: unreachable")
        connection = FakeConnection(self.broker)
        self.connections.append(connection)
        return connection


def declare_topology(consumer) -> None:
    """Run the consumer once with shutdown already requested so it only declares"""
    consumer.stop_event.set()
    consumer.run()
    consumer.stop_event.clear()


def drain(consumer, broker: FakeBroker) -> None:
    """Run the consumer on the calling thread until its queue is empty"""
    broker.stop_when_idle(consumer.stop_event)
    consumer.run()


class RecordingEvent(threading.Event):
    """Stop signal whose wait() records the timeout instead of sleeping"""

    def __init__(self):
        super().__init__()
        self.waits: List[float] = []

    def wait(self, timeout=None):
        self.waits.append(timeout)
        return self.is_set()


# ============================================================================
# PIPELINE COLLABORATORS
# ============================================================================


class RecordingSink:
    def __init__(self, fail: bool = False):
        self.transitions = []
        self.queue_depths = []
        self.message_updates = []
        self.training_statuses = []
        self.training_completions = []
        self.fail = fail

    def _check(self):
        if self.fail:
            raise RuntimeError("status sink down")

    def send_transition(self, transition):
        self._check()
        self.transitions.append(transition)

    def send_queue_depth(self, stage, depth, worker_source):
        self._check()
        self.queue_depths.append((stage, depth))

    def send_message_update(self, update):
        self._check()
        self.message_updates.append(update)

    def send_training_status(self, job_id, status):
        self._check()
        self.training_statuses.append((job_id, status))

    def send_training_completed(self, job_id, model_id, success, error_message):
        self._check()
        self.training_completions.append((job_id, model_id, success, error_message))

    def statuses(self, stage=None):
        return [
            (t.stage.value, t.status.value)
            for t in self.transitions
            if stage is None or t.stage == stage
        ]


class InMemoryDocumentStore:
    def __init__(self):
        self.documents: Dict[str, DocumentRecord] = {}
        self.chunks: Dict[str, List[TextChunk]] = {}
        self.chunk_points: Dict[str, str] = {}
        self._counter = 0

    def save_cracked(self, document: DocumentRecord) -> str:
        if not document.document_id:
            self._counter += 1
            document.document_id = f"doc-{self._counter}"
        self.documents[document.document_id] = document
        return document.document_id

    def add(self, document: DocumentRecord) -> DocumentRecord:
        self.documents[document.document_id] = document
        return document

    def get_document(self, document_id):
        return self.documents.get(document_id)

    def save_chunks(self, document_id, chunks):
        self.chunks[document_id] = list(chunks)

    def set_total_chunks(self, document_id, total_chunks):
        self.documents[document_id].total_chunks = total_chunks

    def tag_chunk_point(self, chunk_id, point_id):
        self.chunk_points[chunk_id] = point_id

    def mark_processed(self, document_id):
        self.documents[document_id].is_processed = True

    def list_unprocessed(self):
        return [d for d in self.documents.values() if not d.is_processed]


class StaticExtractor:
    def __init__(self, text: str, page_count: int = 1):
        self.text = text
        self.page_count = page_count
        self.calls: List[str] = []

    def extract(self, file_path):
        self.calls.append(file_path)
        return ExtractedText(text=self.text, page_count=self.page_count)


class FixedEmbedder:
    def __init__(self, dimensions: int = 4, fail: bool = False):
        self.dimensions = dimensions
        self.fail = fail
        self.calls: List[List[str]] = []

    def embed(self, texts):
        self.calls.append(list(texts))
        if self.fail:
            raise RuntimeError("embedding service unavailable")
        return [[float(len(t) % 7) + 1.0] + [0.5] * (self.dimensions - 1) for t in texts]


class KeywordClassifier:
    def __init__(self):
        self.calls: List[str] = []

    def classify(self, text):
        self.calls.append(text)
        lowered = text.lower()
        if "love" in lowered or "great" in lowered:
            return 1, 0.9
        if "hate" in lowered or "awful" in lowered:
            return -1, 0.8
        return 0, 0.6


class InMemoryConversationStore:
    def __init__(self):
        self.messages: Dict[int, ChatMessageRecord] = {}
        self.sentiments: Dict[int, tuple] = {}
        self.tool_calls_processed: Dict[int, int] = {}
        self.evaluations: Dict[int, Dict[str, dict]] = {}
        self.points: Dict[int, str] = {}

    def add(self, record: ChatMessageRecord) -> ChatMessageRecord:
        self.messages[record.message_id] = record
        return record

    def get_message(self, message_id):
        return self.messages.get(message_id)

    def save_sentiment(self, message_id, sentiment, confidence, source):
        self.sentiments[message_id] = (sentiment, confidence, source)

    def mark_tool_calls_processed(self, message_id, tool_call_count):
        self.tool_calls_processed[message_id] = tool_call_count

    def completed_evaluators(self, message_id) -> Set[str]:
        return set(self.evaluations.get(message_id, {}))

    def save_evaluation(self, message_id, evaluator_name, scores):
        self.evaluations.setdefault(message_id, {})[evaluator_name] = scores

    def tag_message_point(self, message_id, point_id):
        self.points[message_id] = point_id


class StubEvaluator:
    def __init__(self, name: str, score: float = 4.0):
        self.name = name
        self.score = score
        self.calls: List[int] = []

    def evaluate(self, message):
        self.calls.append(message.message_id)
        return {self.name: self.score}


class RecordingPublisher:
    """Publisher double that keeps messages instead of sending them"""

    def __init__(self, fail_on: Optional[Set[str]] = None):
        self.messages = []
        self.fail_on = fail_on or set()
        self.lock = threading.Lock()

    def publish(self, message, message_id=None):
        if getattr(message, "document_id", None) in self.fail_on:
            raise RuntimeError(f"broker rejected {message.document_id}")
        with self.lock:
            self.messages.append(message)
            return f"id-{len(self.messages)}"

    def of_type(self, message_cls):
        return [m for m in self.messages if type(m) is message_cls]


class InMemoryMetadataStore:
    """Scan metadata keyed by case-folded path"""

    def __init__(self):
        self.metadata: Dict[str, DocumentMetadata] = {}
        self.cracked: Set[str] = set()

    def get_metadata(self, file_path):
        return self.metadata.get(file_path.casefold())

    def save_metadata(self, metadata):
        self.metadata[metadata.file_path.casefold()] = metadata

    def is_cracked(self, file_path):
        return file_path.casefold() in self.cracked

    def mark_cracked(self, file_path):
        self.cracked.add(str(file_path).casefold())


class InMemoryTrainingStore:
    def __init__(self, messages=None):
        self.messages: List[LabeledMessage] = list(messages or [])
        self.updates: List[dict] = []
        self.models: List[tuple] = []

    def update_job(self, job_id, status, total_rows=None, result=None, model_id=None, error_message=None):
        self.updates.append(
            {
                "job_id": job_id,
                "status": status,
                "total_rows": total_rows,
                "result": result,
                "model_id": model_id,
                "error_message": error_message,
            }
        )

    def labeled_messages(self):
        return list(self.messages)

    def upload_model(self, name, model_bytes, description, job_id):
        self.models.append((name, model_bytes, description, job_id))
        return 100 + len(self.models)

    def statuses(self):
        return [u["status"] for u in self.updates]


class StubTrainer:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    def train(self, examples, train_test_split, training_time_seconds, optimizing_metric):
        self.calls.append((list(examples), train_test_split, training_time_seconds, optimizing_metric))
        if self.fail:
            raise RuntimeError("trainer crashed")
        test_rows = int(len(examples) * train_test_split)
        return TrainingResult(
            trainer_name="stub",
            model_bytes=b"model",
            training_rows=len(examples) - test_rows,
            test_rows=test_rows,
            metrics={"macroAccuracy": 0.9},
        )
