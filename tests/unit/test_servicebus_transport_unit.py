import asyncio

import pytest
from azure.servicebus import TransportType as ServiceBusTransportType
from azure.servicebus.exceptions import MessageSizeExceededError, ServiceBusConnectionError, ServiceBusError

import shared.messaging.servicebus as mod
from shared.messaging.batch import MessageBatch
from shared.messaging.constants import TransportType
from shared.messaging.exceptions import MessageTooLargeError, PublishTransportError
from shared.messaging.message import OutgoingMessage
from shared.messaging.ports import ErrorSource
from shared.messaging.propagation import MessagePropertiesPropagator
from shared.messaging.servicebus import ServiceBusQueueClient, ServiceBusQueueReceivedMessage

QUEUE = "fila-contagem"
CONNECTION_STRING = "Endpoint=sb://contagem.servicebus.windows.net/;SharedAccessKeyName=k;SharedAccessKey=s"
TRACEPARENT = "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"


def _body_bytes(body) -> bytes:
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    return b"".join(body)


class _FakeSbBatch:
    max_size_in_bytes = 64

    def __init__(self) -> None:
        self.messages: list = []

    def add_message(self, message) -> None:
        if len(_body_bytes(message.body)) > self.max_size_in_bytes:
            raise MessageSizeExceededError(message="message too large")
        self.messages.append(message)


class _FakeSbSender:
    def __init__(self, send_raises: Exception | None = None) -> None:
        self._send_raises = send_raises
        self.sent: list[_FakeSbBatch] = []
        self.closed = False

    async def create_message_batch(self):
        return _FakeSbBatch()

    async def send_messages(self, batch) -> None:
        if self._send_raises is not None:
            raise self._send_raises
        self.sent.append(batch)

    async def close(self) -> None:
        self.closed = True


class _FakeSbMessage:
    def __init__(self, body, properties: dict | None = None, *, delivery_count: int = 0) -> None:
        self.body = body
        self.application_properties = properties or {}
        self.message_id = "m-1"
        self.delivery_count = delivery_count


class _FakeSbReceiver:
    def __init__(self, messages: list[_FakeSbMessage], receive_raises: list[Exception] | None = None) -> None:
        self._messages = list(messages)
        self._receive_raises = list(receive_raises or [])
        self.completed: list[_FakeSbMessage] = []
        self.abandoned: list[_FakeSbMessage] = []
        self.closed = False

    async def receive_messages(self, max_message_count: int = 1, max_wait_time: float | None = None):
        if self._receive_raises:
            raise self._receive_raises.pop(0)
        if not self._messages:
            await asyncio.sleep(0.01)
            return []
        return [self._messages.pop(0)]

    async def complete_message(self, message) -> None:
        self.completed.append(message)

    async def abandon_message(self, message) -> None:
        self.abandoned.append(message)

    async def close(self) -> None:
        self.closed = True


class _FakeServiceBusClient:
    instances: list["_FakeServiceBusClient"] = []

    def __init__(self, connection_string: str, transport_type) -> None:
        self.connection_string = connection_string
        self.transport_type = transport_type
        self.sender = _FakeSbSender()
        self.receiver = _FakeSbReceiver([])
        self.receiver_kwargs: dict = {}
        self.closed = False

    @classmethod
    def from_connection_string(cls, conn_str: str, **kwargs):
        client = cls(conn_str, kwargs.get("transport_type"))
        cls.instances.append(client)
        return client

    def get_queue_sender(self, queue_name: str):
        return self.sender

    def get_queue_receiver(self, queue_name: str, **kwargs):
        self.receiver_kwargs = dict(kwargs, queue_name=queue_name)
        return self.receiver

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_sb(monkeypatch):
    _FakeServiceBusClient.instances = []
    monkeypatch.setattr(mod, "ServiceBusClient", _FakeServiceBusClient)
    return _FakeServiceBusClient


def _batch(*bodies: bytes) -> MessageBatch:
    batch = MessageBatch()
    for body in bodies:
        batch.try_add_message(OutgoingMessage(body=body, application_properties={"traceparent": TRACEPARENT}))
    return batch


async def _until(predicate, timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


def test_websocket_transport_is_the_default(fake_sb):
    client = ServiceBusQueueClient(CONNECTION_STRING)

    (sb_client,) = fake_sb.instances
    assert sb_client.transport_type is ServiceBusTransportType.AmqpOverWebsocket
    assert sb_client.connection_string == CONNECTION_STRING
    assert client.messaging_system == "servicebus"


def test_plain_amqp_transport_can_be_selected(fake_sb):
    ServiceBusQueueClient(CONNECTION_STRING, transport_type=TransportType.AMQP)

    assert fake_sb.instances[0].transport_type is ServiceBusTransportType.Amqp


@pytest.mark.asyncio
async def test_send_batch_forwards_body_id_and_properties(fake_sb):
    client = ServiceBusQueueClient(CONNECTION_STRING)
    sender = client.create_sender(QUEUE)
    batch = _batch(b'{"valor_atual":1}')

    await sender.send_batch(batch)
    await sender.close()

    sb_sender = fake_sb.instances[0].sender
    (sb_batch,) = sb_sender.sent
    (sent,) = sb_batch.messages
    (original,) = list(batch)
    assert _body_bytes(sent.body) == b'{"valor_atual":1}'
    assert sent.message_id == original.message_id
    assert sent.application_properties == {"traceparent": TRACEPARENT}
    assert sent.content_type == "application/json"
    assert sb_sender.closed is True


@pytest.mark.asyncio
async def test_send_batch_maps_broker_size_limit_to_too_large(fake_sb):
    sender = ServiceBusQueueClient(CONNECTION_STRING).create_sender(QUEUE)

    with pytest.raises(MessageTooLargeError) as exc_info:
        await sender.send_batch(_batch(b"x" * 100))

    assert exc_info.value.max_size == 64
    assert fake_sb.instances[0].sender.sent == []


@pytest.mark.asyncio
async def test_send_batch_wraps_broker_failure(fake_sb):
    client = ServiceBusQueueClient(CONNECTION_STRING)
    fake_sb.instances[0].sender = _FakeSbSender(send_raises=ServiceBusConnectionError(message="socket closed"))

    with pytest.raises(PublishTransportError) as exc_info:
        await client.create_sender(QUEUE).send_batch(_batch(b"{}"))

    assert isinstance(exc_info.value.__cause__, ServiceBusConnectionError)


@pytest.mark.asyncio
async def test_closed_sender_refuses_to_send(fake_sb):
    sender = ServiceBusQueueClient(CONNECTION_STRING).create_sender(QUEUE)
    await sender.close()

    with pytest.raises(RuntimeError):
        await sender.create_batch()


def test_received_message_normalizes_binary_properties_and_body():
    receiver = _FakeSbReceiver([])
    raw = _FakeSbMessage(iter([b'{"a":', b"1}"]), {b"traceparent": TRACEPARENT.encode("utf-8")}, delivery_count=2)

    message = ServiceBusQueueReceivedMessage(receiver, raw)

    assert message.body == b'{"a":1}'
    assert message.delivery_count == 3
    extracted = MessagePropertiesPropagator().extract(message.application_properties)
    assert extracted.trace_id == "4bf92f3577b34da6a3ce929d0e0e4736"


@pytest.mark.asyncio
async def test_processor_hands_messages_over_and_completes_them(fake_sb):
    client = ServiceBusQueueClient(CONNECTION_STRING, receive_wait_seconds=0.01)
    sb_client = fake_sb.instances[0]
    sb_client.receiver = _FakeSbReceiver([_FakeSbMessage(b'{"n":1}'), _FakeSbMessage(b'{"n":2}')])
    processor = client.create_processor(QUEUE, max_concurrent_calls=2)
    bodies: list[bytes] = []

    async def on_message(message) -> None:
        bodies.append(message.body)
        await message.complete()

    async def on_error(args) -> None:
        raise AssertionError(args)

    await processor.start_processing(on_message, on_error)
    assert processor.is_processing
    await _until(lambda: len(sb_client.receiver.completed) == 2)
    await processor.close()
    await client.close()

    assert sorted(bodies) == [b'{"n":1}', b'{"n":2}']
    assert sb_client.receiver_kwargs == {"queue_name": QUEUE, "prefetch_count": 2}
    assert sb_client.receiver.closed is True
    assert sb_client.closed is True
    assert not processor.is_processing


@pytest.mark.asyncio
async def test_receive_failures_are_reported_and_pumping_continues(fake_sb):
    client = ServiceBusQueueClient(CONNECTION_STRING, receive_wait_seconds=0.01, receive_retry_seconds=0)
    sb_client = fake_sb.instances[0]
    sb_client.receiver = _FakeSbReceiver(
        [_FakeSbMessage(b"{}")],
        receive_raises=[ServiceBusConnectionError(message="link detached"), ServiceBusError(message="server busy")],
    )
    processor = client.create_processor(QUEUE)
    reported = []

    async def on_message(message) -> None:
        await message.complete()

    async def on_error(args) -> None:
        reported.append(args)

    await processor.start_processing(on_message, on_error)
    await _until(lambda: len(sb_client.receiver.completed) == 1)
    await processor.close()

    assert [args.error_source for args in reported] == [ErrorSource.CONNECTION, ErrorSource.RECEIVE]
    assert all(args.queue_name == QUEUE for args in reported)


@pytest.mark.asyncio
async def test_handler_exception_goes_to_error_handler(fake_sb):
    client = ServiceBusQueueClient(CONNECTION_STRING, receive_wait_seconds=0.01)
    sb_client = fake_sb.instances[0]
    sb_client.receiver = _FakeSbReceiver([_FakeSbMessage(b"{}")])
    processor = client.create_processor(QUEUE)
    reported = []

    async def on_message(message) -> None:
        raise RuntimeError("handler bug")

    async def on_error(args) -> None:
        reported.append(args)

    await processor.start_processing(on_message, on_error)
    await _until(lambda: len(reported) == 1)
    await processor.close()

    assert reported[0].error_source is ErrorSource.USER_CALLBACK


@pytest.mark.asyncio
async def test_close_abandons_messages_still_being_handled(fake_sb):
    client = ServiceBusQueueClient(CONNECTION_STRING, receive_wait_seconds=0.01)
    sb_client = fake_sb.instances[0]
    stuck = _FakeSbMessage(b"{}")
    sb_client.receiver = _FakeSbReceiver([stuck])
    processor = client.create_processor(QUEUE, shutdown_timeout_seconds=0.05)
    started = asyncio.Event()

    async def on_message(message) -> None:
        started.set()
        await asyncio.Event().wait()

    async def on_error(args) -> None:
        return None

    await processor.start_processing(on_message, on_error)
    await asyncio.wait_for(started.wait(), timeout=1.0)
    await processor.close()

    assert sb_client.receiver.abandoned == [stuck]
    assert sb_client.receiver.completed == []
