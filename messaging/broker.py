"""Broker client interface and the in-memory implementation.

A broker client has an explicit lifecycle:

    client = SomeBrokerClient(...)
    client.open()
    client.publish("orders", message)       # blocks until confirmed
    client.subscribe("orders", handler)     # handler(payload: dict) -> None
    client.close()

It is constructed once per process and handed to whoever needs it (intake,
consumer), so tests can swap in `InMemoryBroker` without patching anything.

Delivery is at-least-once. What happens to a delivery is decided by
`classify()`, shared by every implementation:

    handler returned                  -> ACK
    ConsumerPermanentError / bad JSON -> DEAD_LETTER (no retry)
    any other exception               -> REQUEUE, until max_attempts,
                                         then DEAD_LETTER
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel

from .config import DEAD_LETTER_SUFFIX, MAX_DELIVERY_ATTEMPTS
from .errors import BrokerError, BrokerUnavailable, ConsumerPermanentError
from .events import decode, encode

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], None]
Message = BaseModel | dict[str, Any]


@dataclass(frozen=True)
class Ack:
    """Broker confirmation that a published message was persisted."""

    queue: str
    partition: int | None = None
    offset: int | None = None


class Outcome(str, Enum):
    ACK = "ack"
    REQUEUE = "requeue"
    DEAD_LETTER = "dead_letter"


@dataclass
class Delivery:
    """Result of running a handler against one delivery."""

    outcome: Outcome
    attempt: int
    error: BaseException | None = None


def dead_letter_queue(queue_name: str) -> str:
    return f"{queue_name}{DEAD_LETTER_SUFFIX}"


def classify(error: BaseException | None, attempt: int, max_attempts: int) -> Outcome:
    """Decide what to do with a delivery given the handler's error (if any)."""
    if error is None:
        return Outcome.ACK
    if isinstance(error, ConsumerPermanentError):
        return Outcome.DEAD_LETTER
    if attempt >= max_attempts:
        return Outcome.DEAD_LETTER
    return Outcome.REQUEUE


def deliver(handler: Handler, raw: bytes | None, attempt: int, max_attempts: int) -> Delivery:
    """Decode `raw`, run `handler`, and classify the result.

    Decode failures are permanent: re-reading the same bytes won't help.
    That includes empty (tombstone) values and JSON nested too deeply to parse.
    """
    try:
        payload = decode(raw)
    except (ValueError, TypeError, RecursionError) as e:
        return Delivery(Outcome.DEAD_LETTER, attempt, ConsumerPermanentError(f"undecodable payload: {e}"))

    try:
        handler(payload)
    except Exception as e:
        return Delivery(classify(e, attempt, max_attempts), attempt, e)
    return Delivery(Outcome.ACK, attempt)


def dead_letter_headers(queue_name: str, delivery: Delivery) -> dict[str, str]:
    return {
        "x-source-queue": queue_name,
        "x-attempts": str(delivery.attempt),
        "x-error": repr(delivery.error),
    }


class BrokerClient:
    """Interface every broker client implements."""

    def open(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def publish(self, queue_name: str, message: Message, key: str | None = None) -> Ack:
        raise NotImplementedError

    def subscribe(self, queue_name: str, handler: Handler) -> None:
        raise NotImplementedError

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass
class _Pending:
    raw: bytes
    attempt: int = 0


@dataclass
class DeadLetter:
    raw: bytes
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def payload(self) -> dict[str, Any]:
        return decode(self.raw)


class InMemoryBroker(BrokerClient):
    """Process-local broker with the same delivery policy as the Kafka client.

    Nothing is delivered on its own: call `drain()` to hand every queued
    message to its subscriber, which makes the eventual-consistency window
    explicit in tests. `redeliver()` puts an already-published message back
    on the queue to simulate at-least-once duplicates.
    """

    def __init__(self, max_attempts: int = MAX_DELIVERY_ATTEMPTS):
        self.max_attempts = max_attempts
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.dead_letters: dict[str, list[DeadLetter]] = {}
        # Set to an exception instance to make the next publishes fail with it.
        self.publish_error: BrokerError | None = None

        self._queues: dict[str, deque[_Pending]] = {}
        self._handlers: dict[str, Handler] = {}
        self._lock = threading.Lock()
        self._open = False

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def _require_open(self) -> None:
        if not self._open:
            raise BrokerError("broker client is not open")

    def publish(self, queue_name: str, message: Message, key: str | None = None) -> Ack:
        self._require_open()
        with self._lock:
            if self.publish_error is not None:
                raise self.publish_error
            raw = encode(message)
            queue = self._queues.setdefault(queue_name, deque())
            queue.append(_Pending(raw))
            self.published.append((queue_name, decode(raw)))
            offset = len(self.published) - 1
        logger.debug("Published to %s @ %s", queue_name, offset)
        return Ack(queue=queue_name, partition=0, offset=offset)

    def subscribe(self, queue_name: str, handler: Handler) -> None:
        self._require_open()
        self._handlers[queue_name] = handler
        self._queues.setdefault(queue_name, deque())

    def redeliver(self, queue_name: str, index: int = -1) -> None:
        """Queue the `index`-th message ever published to `queue_name` again."""
        raws = [encode(p) for q, p in self.published if q == queue_name]
        self._queues.setdefault(queue_name, deque()).append(_Pending(raws[index]))

    def inject(self, queue_name: str, raw: bytes) -> None:
        """Queue raw bytes as if some other producer had sent them."""
        self._queues.setdefault(queue_name, deque()).append(_Pending(raw))

    def pending(self, queue_name: str) -> int:
        return len(self._queues.get(queue_name, ()))

    def drain(self, queue_name: str | None = None) -> int:
        """Deliver queued messages until the queue(s) are empty.

        Requeued messages go to the back of their queue; each is retried at
        most `max_attempts` times before being dead-lettered, so this always
        terminates. Returns the number of deliveries made.
        """
        self._require_open()
        names = [queue_name] if queue_name else list(self._handlers)
        deliveries = 0
        for name in names:
            handler = self._handlers.get(name)
            if handler is None:
                continue
            queue = self._queues.setdefault(name, deque())
            while queue:
                item = queue.popleft()
                item.attempt += 1
                deliveries += 1
                result = deliver(handler, item.raw, item.attempt, self.max_attempts)
                if result.outcome is Outcome.REQUEUE:
                    logger.warning("Requeue %s (attempt %s): %r", name, item.attempt, result.error)
                    queue.append(item)
                elif result.outcome is Outcome.DEAD_LETTER:
                    logger.error("Dead-lettered message from %s: %r", name, result.error)
                    self.dead_letters.setdefault(dead_letter_queue(name), []).append(
                        DeadLetter(item.raw, dead_letter_headers(name, result))
                    )
        return deliveries

    def published_to(self, queue_name: str) -> list[dict[str, Any]]:
        return [payload for q, payload in self.published if q == queue_name]


__all__ = [
    "Ack",
    "BrokerClient",
    "BrokerError",
    "BrokerUnavailable",
    "DeadLetter",
    "Delivery",
    "InMemoryBroker",
    "Outcome",
    "classify",
    "dead_letter_queue",
    "deliver",
]
