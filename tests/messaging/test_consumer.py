import threading
from unittest.mock import MagicMock

import pytest

from gmpipeline.messaging.consumer import (
    ConsumerState,
    DeliveryOutcome,
    MessageConsumerService,
    RetryPolicy,
)
from gmpipeline.messaging.envelope import Delivery
from gmpipeline.messaging.messages import CrackDocumentMessage
from gmpipeline.messaging.publisher import MessagePublisher
from gmpipeline.pipeline.stages import PipelineStage
from gmpipeline.utils.errors import ShutdownRequested
from tests.support import (
    FakeBroker,
    FakeConnectionFactory,
    RecordingEvent,
    declare_topology,
    drain,
)


class CountingHandler:
    def __init__(self, failures=0, error=RuntimeError("handler failed")):
        self.failures = failures
        self.error = error
        self.calls = []

    def handle(self, message, stop_event):
        self.calls.append(message)
        if len(self.calls) <= self.failures:
            raise self.error


def _consumer(handler, broker=None, stop_event=None, **kwargs):
    broker = broker or FakeBroker()
    factory = FakeConnectionFactory(broker)
    consumer = MessageConsumerService(
        CrackDocumentMessage,
        handler,
        factory,
        retry_policy=kwargs.pop("retry_policy", RetryPolicy(max_attempts=5, base_delay=1.0)),
        stop_event=stop_event or RecordingEvent(),
        **kwargs,
    )
    return broker, factory, consumer


def _publish(broker, *messages):
    publisher = MessagePublisher(FakeConnectionFactory(broker))
    for message in messages:
        publisher.publish(message)


@pytest.mark.unit
def test_retry_policy_delays_double_per_attempt() -> None:
    policy = RetryPolicy(max_attempts=5, base_delay=1.0)

    assert [policy.delay_for(k) for k in range(1, 5)] == [2.0, 4.0, 8.0, 16.0]
    assert RetryPolicy(base_delay=0.5).delay_for(3) == 4.0


@pytest.mark.unit
def test_declares_durable_queue_bound_to_type_exchange() -> None:
    broker, _, consumer = _consumer(CountingHandler())

    declare_topology(consumer)

    assert broker.exchanges["CrackDocumentMessage"] == "topic"
    assert "CrackDocumentMessage" in broker.queues
    assert ("CrackDocumentMessage", "CrackDocumentMessage", "CrackDocumentMessage") in broker.bindings
    assert consumer.state == ConsumerState.STOPPED


@pytest.mark.unit
def test_successful_delivery_is_acked() -> None:
    handler = CountingHandler()
    broker, _, consumer = _consumer(handler)
    declare_topology(consumer)
    _publish(broker, CrackDocumentMessage(file_path="/docs/rules.pdf"))

    drain(consumer, broker)

    assert [m.file_path for m in handler.calls] == ["/docs/rules.pdf"]
    assert broker.acks == [1]
    assert broker.nacks == []


@pytest.mark.unit
def test_always_failing_handler_gets_five_attempts_then_terminal_nack() -> None:
    handler = CountingHandler(failures=100)
    stop_event = RecordingEvent()
    broker, _, consumer = _consumer(handler, stop_event=stop_event)
    declare_topology(consumer)
    _publish(broker, CrackDocumentMessage(file_path="/docs/rules.pdf"))

    drain(consumer, broker)

    assert len(handler.calls) == 5
    assert stop_event.waits == [2.0, 4.0, 8.0, 16.0]
    assert broker.nacks == [(1, False)]
    assert broker.acks == []
    assert broker.ready("CrackDocumentMessage") == 0


@pytest.mark.unit
def test_transient_failure_recovers_within_budget() -> None:
    handler = CountingHandler(failures=2)
    stop_event = RecordingEvent()
    broker, _, consumer = _consumer(handler, stop_event=stop_event)
    declare_topology(consumer)
    _publish(broker, CrackDocumentMessage(file_path="/docs/rules.pdf"))

    drain(consumer, broker)

    assert len(handler.calls) == 3
    assert stop_event.waits == [2.0, 4.0]
    assert broker.acks == [1]


@pytest.mark.unit
@pytest.mark.parametrize(
    "body",
    [b"{not json", b"", b'{"relativeDirectory": "x"}', b"[1, 2, 3]"],
)
def test_poison_message_is_nacked_without_handler_invocation(body) -> None:
    handler = CountingHandler()
    broker, _, consumer = _consumer(handler)
    declare_topology(consumer)
    broker.inject("CrackDocumentMessage", body)

    drain(consumer, broker)

    assert handler.calls == []
    assert broker.nacks == [(1, False)]


@pytest.mark.unit
def test_prefetch_one_keeps_single_delivery_in_flight() -> None:
    handler = CountingHandler()
    broker, _, consumer = _consumer(handler)
    declare_topology(consumer)
    _publish(broker, *[CrackDocumentMessage(file_path=f"/docs/{i}.pdf") for i in range(4)])

    drain(consumer, broker)

    assert broker.max_in_flight == 1
    kinds = [event[0] for event in broker.events]
    assert kinds == ["deliver", "ack"] * 4
    assert [m.file_path for m in handler.calls] == [f"/docs/{i}.pdf" for i in range(4)]


@pytest.mark.unit
def test_shutdown_during_backoff_requeues_delivery() -> None:
    stop_event = threading.Event()
    handler = CountingHandler(failures=100)
    _, _, consumer = _consumer(handler, stop_event=stop_event)

    def fail_and_stop(message, event):
        handler.calls.append(message)
        event.set()
        raise RuntimeError("boom")

    handler.handle = fail_and_stop
    delivery = Delivery(delivery_tag=1, message=CrackDocumentMessage(file_path="/a.pdf"))

    assert consumer.dispatch(delivery) == DeliveryOutcome.REQUEUED
    assert len(handler.calls) == 1


@pytest.mark.unit
def test_handler_shutdown_request_requeues_delivery() -> None:
    handler = CountingHandler(failures=1, error=ShutdownRequested())
    _, _, consumer = _consumer(handler)
    delivery = Delivery(delivery_tag=1, message=CrackDocumentMessage(file_path="/a.pdf"))

    assert consumer.dispatch(delivery) == DeliveryOutcome.REQUEUED
    assert len(handler.calls) == 1


@pytest.mark.unit
def test_shutdown_before_first_attempt_requeues_without_calling_handler() -> None:
    handler = CountingHandler()
    stop_event = RecordingEvent()
    stop_event.set()
    _, _, consumer = _consumer(handler, stop_event=stop_event)
    delivery = Delivery(delivery_tag=1, message=CrackDocumentMessage(file_path="/a.pdf"))

    assert consumer.dispatch(delivery) == DeliveryOutcome.REQUEUED
    assert handler.calls == []


@pytest.mark.unit
def test_unreachable_broker_faults_runtime() -> None:
    broker, _, consumer = _consumer(CountingHandler())
    broker.unreachable = True

    consumer.run()

    assert consumer.state == ConsumerState.FAULTED
    assert consumer.last_error is not None


@pytest.mark.unit
def test_connection_lost_while_consuming_faults_runtime() -> None:
    broker = FakeBroker()

    class DroppingHandler(CountingHandler):
        def handle(self, message, stop_event):
            super().handle(message, stop_event)
            broker.unreachable = True

    _, factory, consumer = _consumer(DroppingHandler(), broker=broker)
    declare_topology(consumer)
    _publish(broker, CrackDocumentMessage(file_path="/docs/rules.pdf"))

    consumer.run()

    assert consumer.state == ConsumerState.FAULTED
    assert all(not c.is_open for c in factory.connections)


@pytest.mark.unit
def test_queue_depth_is_reported_for_stage() -> None:
    tracker = MagicMock()
    broker, _, consumer = _consumer(
        CountingHandler(), tracker=tracker, stage=PipelineStage.CRACKING
    )
    declare_topology(consumer)

    drain(consumer, broker)

    tracker.report_queue_depth.assert_called_with(PipelineStage.CRACKING, 0)


@pytest.mark.unit
def test_threaded_consumer_processes_and_stops() -> None:
    handler = CountingHandler()
    processed = threading.Event()
    inner = handler.handle

    def handle(message, stop_event):
        inner(message, stop_event)
        processed.set()

    handler.handle = handle
    broker, _, consumer = _consumer(handler, stop_event=threading.Event())
    declare_topology(consumer)
    _publish(broker, CrackDocumentMessage(file_path="/docs/rules.pdf"))

    consumer.start()
    assert processed.wait(5)
    consumer.stop(timeout=5)

    assert not consumer.is_alive()
    assert consumer.state == ConsumerState.STOPPED
    assert broker.acks == [1]
