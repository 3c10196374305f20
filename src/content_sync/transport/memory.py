"""In-process transport for local runs and tests"""

import asyncio
import json
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional

from .base import BrokerTransport, Delivery, DeliveryHandler
from ..utils.config import BrokerConfig
from ..utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class StoredMessage:
    """A message sitting in an in-memory queue"""
    body: bytes
    persistent: bool
    message_id: str
    redelivered: bool = False

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


class MemoryDelivery(Delivery):
    """Delivery that records how it was settled"""

    def __init__(self, transport: "InMemoryTransport", queue: str, message: StoredMessage):
        super().__init__(
            body=message.body,
            message_id=message.message_id,
            redelivered=message.redelivered,
        )
        self._transport = transport
        self._queue = queue
        self._message = message
        self.outcome: Optional[str] = None

    async def _ack(self) -> None:
        self.outcome = "ack"

    async def _nack(self, requeue: bool) -> None:
        self.outcome = "requeue" if requeue else "reject"
        if requeue:
            self._message.redelivered = True
            self._transport.queues[self._queue].appendleft(self._message)


class InMemoryTransport(BrokerTransport):
    """Broker kept in process memory

    Consumers are driven explicitly through ``drain``, one delivery at a time,
    which mirrors a prefetch of 1. Published messages stay queued until
    consumed so tests can inspect them through ``messages``.
    """

    def __init__(self, config: Optional[BrokerConfig] = None, name: Optional[str] = None):
        config = config or BrokerConfig(max_connect_attempts=1, backoff_base=0.0, reconnect_cooldown=0.0)
        super().__init__(config, name)
        self.queues: Dict[str, Deque[StoredMessage]] = defaultdict(deque)
        self.declared: Dict[str, bool] = {}
        self._consumers: Dict[str, tuple] = {}
        self.deliveries: List[MemoryDelivery] = []
        self.fail_connect = False
        self.fail_publish = False

    async def _open(self) -> Any:
        if self.fail_connect:
            raise ConnectionRefusedError("in-memory broker refused connection")
        return object()

    async def _close(self) -> None:
        self._consumers.clear()

    async def _declare(self, channel: Any, queue: str, durable: bool) -> None:
        self.declared.setdefault(queue, durable)
        self.queues.setdefault(queue, deque())

    async def _send(self, channel: Any, queue: str, body: bytes, persistent: bool) -> None:
        if self.fail_publish:
            raise ConnectionResetError("in-memory broker dropped the message")
        self.queues[queue].append(
            StoredMessage(body=body, persistent=persistent, message_id=uuid.uuid4().hex)
        )

    async def _start_consumer(
        self, channel: Any, queue: str, prefetch: int, handler: DeliveryHandler
    ) -> str:
        consumer_tag = f"ctag-{uuid.uuid4().hex[:8]}"
        self._consumers[consumer_tag] = (queue, handler)
        return consumer_tag

    async def _stop_consumer(self, channel: Any, consumer_tag: str) -> None:
        self._consumers.pop(consumer_tag, None)

    def messages(self, queue: str) -> List[Any]:
        """Decoded JSON bodies currently queued on ``queue``"""
        return [message.json() for message in self.queues.get(queue, ())]

    def inject(self, queue: str, body: Any, message_id: Optional[str] = None) -> None:
        """Enqueue a raw message as if an external producer had sent it"""
        if isinstance(body, bytes):
            raw = body
        elif isinstance(body, str):
            raw = body.encode("utf-8")
        else:
            raw = json.dumps(body).encode("utf-8")
        self.queues[queue].append(
            StoredMessage(body=raw, persistent=True, message_id=message_id or uuid.uuid4().hex)
        )

    async def drain(self, queue: str, limit: Optional[int] = None) -> int:
        """Hand queued messages to the consumer of ``queue`` sequentially"""
        handler = next(
            (h for (q, h) in self._consumers.values() if q == queue), None
        )
        if handler is None:
            return 0

        handled = 0
        pending = self.queues[queue]
        while pending and (limit is None or handled < limit):
            message = pending.popleft()
            delivery = MemoryDelivery(self, queue, message)
            self.deliveries.append(delivery)
            await handler(delivery)
            handled += 1
            # Let callbacks scheduled by the handler run before the next delivery
            await asyncio.sleep(0)
        return handled
