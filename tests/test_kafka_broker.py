import threading
import time
from unittest.mock import MagicMock

import pytest
from confluent_kafka import KafkaError, KafkaException, TopicPartition

from messaging.errors import BrokerError, BrokerUnavailable, ConsumerPermanentError, ConsumerTransientError
from messaging.kafka_broker import ConnectionLost, KafkaBrokerClient


def kafka_message(topic="orders", partition=0, offset=0, value=b'{"n": 1}', key=b"alice", error=None):
    msg = MagicMock()
    msg.topic.return_value = topic
    msg.partition.return_value = partition
    msg.offset.return_value = offset
    msg.value.return_value = value
    msg.key.return_value = key
    msg.error.return_value = error
    return msg


def kafka_error(code, fatal=False):
    err = MagicMock()
    err.code.return_value = code
    err.fatal.return_value = fatal
    return err


def confirming_producer(err=None):
    """Producer mock whose poll() fires the delivery callbacks of queued messages."""
    producer = MagicMock()
    queued = []

    def produce(topic, key, value, headers, callback):
        queued.append((topic, callback))

    def poll(timeout):
        while queued:
            topic, callback = queued.pop(0)
            callback(err, kafka_message(topic=topic, offset=42))
        return 0

    producer.produce.side_effect = produce
    producer.poll.side_effect = poll
    producer.flush.return_value = 0
    return producer


def idle_consumer():
    consumer = MagicMock()
    consumer.consume.side_effect = lambda **kwargs: time.sleep(0.01) or []
    return consumer


def committed(consumer):
    return [
        (tp.topic, tp.partition, tp.offset)
        for call in consumer.commit.call_args_list
        for tp in call.kwargs["offsets"]
    ]


def seeks(consumer):
    return [(call.args[0].topic, call.args[0].partition, call.args[0].offset) for call in consumer.seek.call_args_list]


@pytest.fixture
def producer():
    return confirming_producer()


@pytest.fixture
def client(producer):
    client = KafkaBrokerClient(
        group_id="test-group",
        publish_timeout=0.5,
        max_attempts=3,
        max_in_flight=4,
        backoff_initial=0,
        producer_factory=lambda conf: producer,
        consumer_factory=lambda conf: idle_consumer(),
    )
    client.open()
    yield client
    client.close()


class TestConfig:
    def test_producer_waits_for_all_replicas(self):
        conf = KafkaBrokerClient(bootstrap_servers="kafka:9092").producer_config()

        assert conf["bootstrap.servers"] == "kafka:9092"
        assert conf["enable.idempotence"] is True
        assert conf["acks"] == "all"

    def test_consumer_commits_manually(self):
        conf = KafkaBrokerClient(group_id="g").consumer_config()

        assert conf["group.id"] == "g"
        assert conf["enable.auto.commit"] is False
        assert conf["auto.offset.reset"] == "earliest"


class TestPublish:
    def test_confirmed_publish_returns_ack(self, client, producer):
        ack = client.publish("orders", {"order_id": "o-1"}, key="alice")

        assert (ack.queue, ack.offset) == ("orders", 42)
        kwargs = producer.produce.call_args.kwargs
        assert kwargs["topic"] == "orders"
        assert kwargs["key"] == b"alice"
        assert kwargs["value"] == b'{"order_id": "o-1"}'

    def test_no_confirmation_times_out(self):
        producer = MagicMock()
        client = KafkaBrokerClient(publish_timeout=0.05, producer_factory=lambda conf: producer)
        client.open()

        with pytest.raises(BrokerUnavailable):
            client.publish("orders", {"order_id": "o-1"})
        assert producer.poll.called

    def test_delivery_error_is_reported(self):
        producer = confirming_producer(err=KafkaError(KafkaError._MSG_TIMED_OUT))
        client = KafkaBrokerClient(producer_factory=lambda conf: producer)
        client.open()

        with pytest.raises(BrokerError):
            client.publish("orders", {"order_id": "o-1"})

    def test_full_local_queue_means_unavailable(self):
        producer = MagicMock()
        producer.produce.side_effect = BufferError("Local: Queue full")
        client = KafkaBrokerClient(producer_factory=lambda conf: producer)
        client.open()

        with pytest.raises(BrokerUnavailable):
            client.publish("orders", {"order_id": "o-1"})

    def test_closed_client_refuses(self):
        with pytest.raises(BrokerError):
            KafkaBrokerClient().publish("orders", {"order_id": "o-1"})

    def test_concurrent_publishes_are_serialized(self, client, producer):
        active = []
        overlaps = []
        poll = producer.poll.side_effect

        def slow_poll(timeout):
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            time.sleep(0.005)
            result = poll(timeout)
            active.pop()
            return result

        producer.poll.side_effect = slow_poll
        threads = [threading.Thread(target=client.publish, args=("orders", {"n": i})) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert producer.produce.call_count == 8
        assert overlaps == []

    def test_close_flushes_producer(self, producer):
        client = KafkaBrokerClient(producer_factory=lambda conf: producer)
        client.open()

        client.close()

        producer.flush.assert_called_once()


class TestSubscribe:
    def test_group_id_required(self, producer):
        client = KafkaBrokerClient(producer_factory=lambda conf: producer)
        client.open()

        with pytest.raises(BrokerError):
            client.subscribe("orders", lambda payload: None)


class TestProcessBatch:
    def test_successful_batch_commits_past_last_offset(self, client):
        seen = []
        client.subscribe("orders", seen.append)
        consumer = MagicMock()

        client.process_batch(consumer, [kafka_message(offset=o, value=b'{"n": %d}' % o) for o in (10, 11, 12)])

        assert sorted(p["n"] for p in seen) == [10, 11, 12]
        assert committed(consumer) == [("orders", 0, 13)]
        assert seeks(consumer) == []

    def test_transient_failure_rewinds_partition(self, client):
        def handler(payload):
            if payload["n"] == 11:
                raise ConsumerTransientError("db down")

        client.subscribe("orders", handler)
        consumer = MagicMock()

        client.process_batch(consumer, [kafka_message(offset=o, value=b'{"n": %d}' % o) for o in (10, 11, 12)])

        assert committed(consumer) == [("orders", 0, 11)]
        assert seeks(consumer) == [("orders", 0, 11)]

    def test_failing_message_is_dead_lettered_after_max_attempts(self, client, producer):
        def handler(payload):
            raise ConsumerTransientError("db down")

        client.subscribe("orders", handler)
        consumer = MagicMock()

        for _ in range(client.max_attempts):
            client.process_batch(consumer, [kafka_message(offset=5)])

        assert seeks(consumer) == [("orders", 0, 5)] * (client.max_attempts - 1)
        assert committed(consumer) == [("orders", 0, 6)]
        dead = producer.produce.call_args.kwargs
        assert dead["topic"] == "orders.dlq"
        assert dead["headers"]["x-attempts"] == str(client.max_attempts)
        assert dead["key"] == b"alice"

    def test_permanent_failure_is_dead_lettered_immediately(self, client, producer):
        def handler(payload):
            raise ConsumerPermanentError("schema")

        client.subscribe("orders", handler)
        consumer = MagicMock()

        client.process_batch(consumer, [kafka_message(offset=5)])

        assert committed(consumer) == [("orders", 0, 6)]
        assert producer.produce.call_args.kwargs["topic"] == "orders.dlq"

    def test_tombstone_is_dead_lettered(self, client, producer):
        seen = []
        client.subscribe("orders", seen.append)
        consumer = MagicMock()

        client.process_batch(consumer, [kafka_message(offset=5, value=None), kafka_message(offset=6)])

        assert seen == [{"n": 1}]
        assert committed(consumer) == [("orders", 0, 7)]
        dead = producer.produce.call_args_list[0].kwargs
        assert dead["topic"] == "orders.dlq"
        assert "undecodable" in dead["headers"]["x-error"]

    def test_unpublishable_dead_letter_is_retried_later(self, client, producer):
        client.subscribe("orders", lambda payload: None)
        producer.produce.side_effect = BufferError("full")
        consumer = MagicMock()

        client.process_batch(consumer, [kafka_message(offset=5, value=b"garbage")])

        assert committed(consumer) == []
        assert seeks(consumer) == [("orders", 0, 5)]

    def test_partitions_are_independent(self, client):
        def handler(payload):
            if payload["n"] == 1:
                raise ConsumerTransientError("db down")

        client.subscribe("orders", handler)
        consumer = MagicMock()

        client.process_batch(
            consumer,
            [
                kafka_message(partition=0, offset=3, value=b'{"n": 1}'),
                kafka_message(partition=1, offset=8, value=b'{"n": 2}'),
            ],
        )

        assert committed(consumer) == [("orders", 1, 9)]
        assert seeks(consumer) == [("orders", 0, 3)]


class TestConsumeLoop:
    def test_lost_cluster_raises_connection_lost(self, client):
        client.subscribe("orders", lambda payload: None)
        consumer = MagicMock()
        consumer.consume.return_value = [kafka_message(error=kafka_error(KafkaError._ALL_BROKERS_DOWN))]

        with pytest.raises(ConnectionLost):
            next(client._consume(consumer))

    def test_reconnects_and_resubscribes(self, producer):
        delivered = threading.Event()
        broken = MagicMock()
        broken.consume.side_effect = KafkaException(KafkaError(KafkaError._TRANSPORT))
        healthy = idle_consumer()
        batches = [[kafka_message(offset=0)]]
        healthy.consume.side_effect = lambda **kwargs: batches.pop() if batches else time.sleep(0.01) or []
        consumers = iter([broken, healthy])

        client = KafkaBrokerClient(
            group_id="g",
            backoff_initial=0.01,
            producer_factory=lambda conf: producer,
            consumer_factory=lambda conf: next(consumers, idle_consumer()),
        )
        client.open()
        client.subscribe("orders", lambda payload: delivered.set())
        try:
            assert delivered.wait(timeout=5)
        finally:
            client.close()

        broken.subscribe.assert_called_once_with(["orders"])
        healthy.subscribe.assert_called_once_with(["orders"])
        broken.close.assert_called_once()

    def test_unexpected_failure_restarts_the_loop(self, producer):
        recovered = threading.Event()
        crashing = MagicMock()
        crashing.consume.side_effect = [[kafka_message(offset=0)]]
        crashing.commit.side_effect = RuntimeError("commit blew up")
        healthy = idle_consumer()
        batches = [[kafka_message(offset=0)]]
        healthy.consume.side_effect = lambda **kwargs: batches.pop() if batches else time.sleep(0.01) or []
        healthy.commit.side_effect = lambda **kwargs: recovered.set()
        consumers = iter([crashing, healthy])

        client = KafkaBrokerClient(
            group_id="g",
            backoff_initial=0.01,
            producer_factory=lambda conf: producer,
            consumer_factory=lambda conf: next(consumers, idle_consumer()),
        )
        client.open()
        client.subscribe("orders", lambda payload: None)
        try:
            assert recovered.wait(timeout=5)
        finally:
            client.close()

        crashing.close.assert_called_once()

    def test_subscribes_with_revoke_callback(self, client):
        consumer = MagicMock()
        consumer.consume.return_value = [kafka_message(offset=0)]
        client.subscribe("orders", lambda payload: None)

        next(client._consume(consumer))

        assert consumer.subscribe.call_args.kwargs["on_revoke"] == client._on_revoke


class TestRevoke:
    def test_revoked_partitions_forget_attempts(self, client):
        def handler(payload):
            raise ConsumerTransientError("db down")

        client.subscribe("orders", handler)
        consumer = MagicMock()
        client.process_batch(
            consumer,
            [kafka_message(partition=0, offset=5), kafka_message(partition=1, offset=7)],
        )
        assert set(client._attempts) == {("orders", 0, 5), ("orders", 1, 7)}

        client._on_revoke(consumer, [TopicPartition("orders", 0)])

        assert set(client._attempts) == {("orders", 1, 7)}
