"""Kafka implementation of the broker client.

High-level flow:

    publish:   produce -> wait for delivery report (or timeout) -> Ack
    subscribe: consume batch -> run handlers (bounded pool) -> commit / seek back / dead-letter

Important Kafka concepts used here:

1) Publisher confirms
- `produce()` only queues the message locally. The broker's acknowledgement
  arrives later through the delivery callback, which fires inside `poll()`.
- We poll until our callback fires or `publish_timeout` elapses. On timeout
  the message is NOT dropped: it stays in the producer queue and librdkafka
  keeps retrying it until `message.timeout.ms`.
- One producer is shared by all request threads; a lock serializes publishes
  so callers never see that constraint.

2) Manual offset commit
- `enable.auto.commit=False`: an offset is committed only after its handler
  succeeded (or the message was dead-lettered).
- This gives at-least-once delivery. Duplicates are possible, so handlers
  must be idempotent.

3) Requeue
- Kafka has no per-message nack. To requeue we `seek()` the partition back
  to the failed offset; it (and anything after it in that partition) is
  fetched again. Handler idempotency absorbs the repeats.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

from confluent_kafka import Consumer, KafkaError, KafkaException, Producer, TopicPartition

from .broker import (
    Ack,
    BrokerClient,
    Delivery,
    Handler,
    Message,
    Outcome,
    dead_letter_headers,
    dead_letter_queue,
    deliver,
)
from .config import (
    KAFKA_BOOTSTRAP_SERVERS,
    MAX_DELIVERY_ATTEMPTS,
    MAX_IN_FLIGHT,
    PUBLISH_TIMEOUT_SECONDS,
    RECONNECT_BACKOFF_INITIAL,
    RECONNECT_BACKOFF_MAX,
)
from .errors import BrokerError, BrokerUnavailable
from .events import encode

logger = logging.getLogger(__name__)

# Error codes meaning "we lost the cluster", as opposed to a bad message.
_CONNECTION_ERRORS = frozenset({KafkaError._ALL_BROKERS_DOWN, KafkaError._TRANSPORT})


class ConnectionLost(Exception):
    pass


class KafkaBrokerClient(BrokerClient):
    """Broker client backed by confluent-kafka.

    Args:
        bootstrap_servers: Kafka broker addresses.
        group_id: Consumer group. Required only for `subscribe()`.
        producer_factory / consumer_factory: Build the underlying clients from
            a config dict. Overridable so tests can pass mocks.
    """

    def __init__(
        self,
        bootstrap_servers: str = KAFKA_BOOTSTRAP_SERVERS,
        group_id: str | None = None,
        publish_timeout: float = PUBLISH_TIMEOUT_SECONDS,
        max_attempts: int = MAX_DELIVERY_ATTEMPTS,
        max_in_flight: int = MAX_IN_FLIGHT,
        backoff_initial: float = RECONNECT_BACKOFF_INITIAL,
        backoff_max: float = RECONNECT_BACKOFF_MAX,
        producer_factory: Callable[[dict[str, Any]], Any] = Producer,
        consumer_factory: Callable[[dict[str, Any]], Any] = Consumer,
    ):
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.publish_timeout = publish_timeout
        self.max_attempts = max_attempts
        self.max_in_flight = max_in_flight
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self._producer_factory = producer_factory
        self._consumer_factory = consumer_factory

        self._producer = None
        self._publish_lock = threading.Lock()

        self._handlers: dict[str, Handler] = {}
        self._attempts: dict[tuple[str, int, int], int] = {}
        self._stop = threading.Event()
        self._consumer_thread: threading.Thread | None = None
        self._pool: ThreadPoolExecutor | None = None

    # --- lifecycle -------------------------------------------------------------

    def producer_config(self) -> dict[str, Any]:
        return {
            "bootstrap.servers": self.bootstrap_servers,
            # Broker-side dedup of producer retries, and wait for all in-sync
            # replicas before the delivery report says "persisted".
            "enable.idempotence": True,
            "acks": "all",
        }

    def consumer_config(self) -> dict[str, Any]:
        """Consumer settings.

        - auto.offset.reset=earliest: a brand-new group starts at the beginning
          of the topic, so orders published before the consumer first started
          are not skipped.
        - enable.auto.commit=False: we commit only after processing.
        """
        return {
            "bootstrap.servers": self.bootstrap_servers,
            "group.id": self.group_id,
            "auto.offset.reset": "earliest",
            "enable.auto.commit": False,
        }

    def open(self) -> None:
        if self._producer is None:
            self._producer = self._producer_factory(self.producer_config())
            self._stop.clear()
            logger.info("[Broker] Opened (bootstrap=%s)", self.bootstrap_servers)

    def close(self) -> None:
        self._stop.set()
        if self._consumer_thread is not None:
            self._consumer_thread.join(timeout=self.publish_timeout + 5)
            self._consumer_thread = None
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
        if self._producer is not None:
            left = self._producer.flush(self.publish_timeout)
            if left:
                logger.warning("[Broker] %s message(s) still undelivered at close", left)
            self._producer = None
        logger.info("[Broker] Closed")

    def _require_producer(self):
        if self._producer is None:
            raise BrokerError("broker client is not open")
        return self._producer

    # --- publish ---------------------------------------------------------------

    def publish(self, queue_name: str, message: Message, key: str | None = None) -> Ack:
        return self._produce(queue_name, encode(message), key=key)

    def _produce(
        self,
        topic: str,
        value: bytes,
        key: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> Ack:
        producer = self._require_producer()
        done = threading.Event()
        report: dict[str, Any] = {}

        def _delivery_report(err, msg) -> None:
            report["err"] = err
            report["msg"] = msg
            done.set()

        with self._publish_lock:
            try:
                producer.produce(
                    topic=topic,
                    key=key.encode("utf-8") if key else None,
                    value=value,
                    headers=headers,
                    callback=_delivery_report,
                )
            except BufferError as e:
                # Local queue full: the broker has been unreachable for a while.
                raise BrokerUnavailable(f"producer queue full: {e}") from e
            except KafkaException as e:
                raise BrokerError(str(e)) from e

            deadline = time.monotonic() + self.publish_timeout
            while not done.is_set():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                producer.poll(min(remaining, 0.1))

        if not done.is_set():
            logger.warning("[Producer] No confirmation from %s within %.1fs", topic, self.publish_timeout)
            raise BrokerUnavailable(f"no delivery confirmation from {topic!r} within {self.publish_timeout}s")

        if report["err"] is not None:
            logger.error("[Producer] Delivery failed: %s", report["err"])
            raise BrokerError(str(report["err"]))

        msg = report["msg"]
        logger.info("[Producer] Delivered to %s [%s] @ offset %s", msg.topic(), msg.partition(), msg.offset())
        return Ack(queue=msg.topic(), partition=msg.partition(), offset=msg.offset())

    # --- subscribe -------------------------------------------------------------

    def subscribe(self, queue_name: str, handler: Handler) -> None:
        """Register `handler` for `queue_name` and make sure the consumer runs.

        The consumer loop runs in a background thread and picks up new
        subscriptions on its next iteration.
        """
        self._require_producer()
        if not self.group_id:
            raise BrokerError("a consumer group id is required to subscribe")
        self._handlers[queue_name] = handler

        if self._consumer_thread is None:
            self._pool = ThreadPoolExecutor(max_workers=self.max_in_flight, thread_name_prefix="handler")
            self._consumer_thread = threading.Thread(target=self._run, name="broker-consumer", daemon=True)
            self._consumer_thread.start()

    def _run(self) -> None:
        """Consume until close(), reconnecting with exponential backoff."""
        backoff = self.backoff_initial
        while not self._stop.is_set():
            consumer = self._consumer_factory(self.consumer_config())
            try:
                for _ in self._consume(consumer):
                    backoff = self.backoff_initial
            except (ConnectionLost, KafkaException) as e:
                logger.warning("[Consumer] Connection lost (%s); reconnecting in %.1fs", e, backoff)
                self._stop.wait(backoff)
                backoff = min(backoff * 2, self.backoff_max)
            except Exception:
                logger.exception("[Consumer] Consume loop failed; restarting in %.1fs", backoff)
                self._stop.wait(backoff)
                backoff = min(backoff * 2, self.backoff_max)
            finally:
                try:
                    consumer.close()
                except (KafkaException, RuntimeError) as e:
                    logger.warning("[Consumer] Error while closing: %s", e)

    def _consume(self, consumer):
        """Poll batches until stopped. Yields after every processed batch."""
        subscribed: list[str] = []
        while not self._stop.is_set():
            topics = sorted(self._handlers)
            if topics != subscribed:
                consumer.subscribe(topics, on_revoke=self._on_revoke)
                subscribed = topics
                logger.info("[Consumer] Subscribed to %s", ", ".join(topics))

            # Wait up to 1 second so a shutdown request is noticed promptly.
            msgs = consumer.consume(num_messages=self.max_in_flight, timeout=1.0)
            if not msgs:
                continue

            batch = []
            for msg in msgs:
                err = msg.error()
                if err is None:
                    batch.append(msg)
                elif err.fatal() or err.code() in _CONNECTION_ERRORS:
                    raise ConnectionLost(str(err))
                else:
                    # Kafka-level notice (e.g. partition EOF), not an application payload.
                    logger.warning("[Consumer] Kafka error: %s", err)

            if batch:
                self.process_batch(consumer, batch)
                yield len(batch)

    def _on_revoke(self, consumer, partitions) -> None:
        """Forget attempt counts for partitions this consumer no longer owns."""
        revoked = {(tp.topic, tp.partition) for tp in partitions}
        for key in [k for k in self._attempts if k[:2] in revoked]:
            del self._attempts[key]
        if revoked:
            logger.info("[Consumer] Revoked %s partition(s)", len(revoked))

    def process_batch(self, consumer, batch: list) -> None:
        """Run handlers for a batch concurrently, then commit or seek back.

        Per partition, offsets are committed up to the first message that must
        be requeued; the partition is then rewound to that message.
        """
        jobs = []
        for msg in batch:
            key = (msg.topic(), msg.partition(), msg.offset())
            attempt = self._attempts[key] = self._attempts.get(key, 0) + 1
            handler = self._handlers[msg.topic()]
            jobs.append((msg, self._submit(handler, msg.value(), attempt)))
        results = [(msg, job.result()) for msg, job in jobs]

        partitions: dict[tuple[str, int], list[tuple[Any, Delivery]]] = {}
        for msg, delivery in results:
            partitions.setdefault((msg.topic(), msg.partition()), []).append((msg, delivery))

        rewound = False
        for (topic, partition), items in partitions.items():
            items.sort(key=lambda item: item[0].offset())
            commit_offset = None
            rewind_to = None
            for msg, delivery in items:
                if delivery.outcome is Outcome.DEAD_LETTER and not self._dead_letter(msg, delivery):
                    rewind_to = msg.offset()
                    break
                if delivery.outcome is Outcome.REQUEUE:
                    logger.warning(
                        "[Consumer] Requeue %s [%s] @ %s (attempt %s/%s): %r",
                        topic, partition, msg.offset(), delivery.attempt, self.max_attempts, delivery.error,
                    )
                    rewind_to = msg.offset()
                    break
                self._attempts.pop((topic, partition, msg.offset()), None)
                commit_offset = msg.offset() + 1

            if commit_offset is not None:
                # The committed offset is the NEXT one to read.
                consumer.commit(offsets=[TopicPartition(topic, partition, commit_offset)], asynchronous=False)
            if rewind_to is not None:
                consumer.seek(TopicPartition(topic, partition, rewind_to))
                rewound = True

        if rewound:
            self._stop.wait(self.backoff_initial)

    def _submit(self, handler: Handler, raw: bytes, attempt: int):
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=self.max_in_flight, thread_name_prefix="handler")
        return self._pool.submit(deliver, handler, raw, attempt, self.max_attempts)

    def _dead_letter(self, msg, delivery: Delivery) -> bool:
        """Move a message to its dead-letter queue. False if that failed."""
        topic = msg.topic()
        dlq = dead_letter_queue(topic)
        logger.error(
            "[Consumer] Dead-lettering %s [%s] @ %s after %s attempt(s): %r",
            topic, msg.partition(), msg.offset(), delivery.attempt, delivery.error,
        )
        key = msg.key()
        try:
            self._produce(
                dlq,
                msg.value(),
                key=key.decode("utf-8") if key else None,
                headers=dead_letter_headers(topic, delivery),
            )
        except BrokerError as e:
            logger.error("[Consumer] Could not dead-letter to %s: %s", dlq, e)
            return False
        return True
