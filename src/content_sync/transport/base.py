"""Base broker transport shared by the change notifier and the command processor"""

import asyncio
import enum
import json
import time
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

from ..utils.config import BrokerConfig
from ..utils.errors import BrokerConnectionError, ErrorRecovery, describe_error
from ..utils.logging import get_logger

logger = get_logger(__name__)


class ConnectionState(enum.Enum):
    """Connection state for transport"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"
    ERROR = "error"


class Delivery(ABC):
    """A message handed to a consumer; the handler settles it exactly once."""

    def __init__(
        self,
        body: bytes,
        message_id: Optional[str] = None,
        redelivered: bool = False,
        headers: Optional[Dict[str, Any]] = None
    ):
        self.body = body
        self.message_id = message_id
        self.redelivered = redelivered
        self.headers = headers or {}
        self.settled = False

    async def ack(self) -> None:
        """Acknowledge the delivery"""
        if self.settled:
            logger.warning("delivery_already_settled", message_id=self.message_id)
            return
        self.settled = True
        await self._ack()

    async def nack(self, requeue: bool = True) -> None:
        """Negative-acknowledge the delivery, optionally requeueing it"""
        if self.settled:
            logger.warning("delivery_already_settled", message_id=self.message_id)
            return
        self.settled = True
        await self._nack(requeue)

    @abstractmethod
    async def _ack(self) -> None:
        pass

    @abstractmethod
    async def _nack(self, requeue: bool) -> None:
        pass


DeliveryHandler = Callable[[Delivery], Awaitable[None]]


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_message(message: Any) -> bytes:
    """Bytes pass through, strings are UTF-8 encoded, everything else becomes JSON"""
    if isinstance(message, bytes):
        return message
    if isinstance(message, str):
        return message.encode("utf-8")
    return json.dumps(message, default=_json_default).encode("utf-8")


class BrokerTransport(ABC):
    """Abstract base class for broker transports

    One shared connection and channel, opened lazily. Failures never cross
    ``assert_queue``/``publish``/``consume``: they are logged and reported
    through the return value, and the cached connection state is dropped so
    the next call re-establishes it.
    """

    def __init__(self, config: Optional[BrokerConfig] = None, name: Optional[str] = None):
        self.config = config or BrokerConfig()
        self.name = name or f"{self.__class__.__name__}_{uuid.uuid4().hex[:8]}"
        self.state = ConnectionState.DISCONNECTED
        self._channel: Any = None
        self._connect_lock = asyncio.Lock()
        self._publish_lock = asyncio.Lock()
        self._sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
        self._clock: Callable[[], float] = time.monotonic
        self._retry_at: Optional[float] = None
        self._stats = {
            "messages_published": 0,
            "messages_delivered": 0,
            "publish_failures": 0,
            "connect_attempts": 0,
            "connect_skipped": 0,
            "errors": 0,
            "connected_at": None,
            "disconnected_at": None
        }

    @property
    def is_connected(self) -> bool:
        return self._channel is not None

    # Backend hooks

    @abstractmethod
    async def _open(self) -> Any:
        """Open connection and channel, register failure observers, return the channel"""
        pass

    @abstractmethod
    async def _close(self) -> None:
        """Close the underlying connection"""
        pass

    @abstractmethod
    async def _declare(self, channel: Any, queue: str, durable: bool) -> None:
        pass

    @abstractmethod
    async def _send(self, channel: Any, queue: str, body: bytes, persistent: bool) -> None:
        pass

    @abstractmethod
    async def _start_consumer(
        self, channel: Any, queue: str, prefetch: int, handler: DeliveryHandler
    ) -> str:
        """Start consuming and return the consumer tag"""
        pass

    @abstractmethod
    async def _stop_consumer(self, channel: Any, consumer_tag: str) -> None:
        pass

    # Public contract

    async def connect(self) -> Any:
        """Return the live channel, opening one with bounded backoff if needed

        After a failed run no new attempt is made until ``reconnect_cooldown``
        seconds have passed; calls in between fail at once.

        Raises:
            BrokerConnectionError: every attempt failed
        """
        if self._channel is not None:
            return self._channel

        self._check_cooldown()

        async with self._connect_lock:
            if self._channel is not None:
                return self._channel
            self._check_cooldown()

            self.state = ConnectionState.CONNECTING

            async def attempt() -> Any:
                self._stats["connect_attempts"] += 1
                return await asyncio.wait_for(self._open(), self.config.connect_timeout)

            try:
                channel = await ErrorRecovery.exponential_backoff(
                    attempt,
                    max_retries=self.config.max_connect_attempts,
                    base_delay=self.config.backoff_base,
                    max_delay=self.config.backoff_max,
                    jitter=self.config.backoff_jitter,
                    sleep=self._sleep,
                )
            except Exception as e:
                self.state = ConnectionState.ERROR
                self._retry_at = self._clock() + self.config.reconnect_cooldown
                self._stats["errors"] += 1
                logger.error(
                    "broker_connect_failed",
                    transport=self.name,
                    host=self.config.host,
                    port=self.config.port,
                    attempts=self.config.max_connect_attempts,
                    error=describe_error(e)
                )
                raise BrokerConnectionError(
                    f"Could not connect to broker at {self.config.host}:{self.config.port}: "
                    f"{describe_error(e)}",
                    cause=e
                ) from e

            self._channel = channel
            self.state = ConnectionState.CONNECTED
            self._retry_at = None
            self._stats["connected_at"] = datetime.now()
            logger.info("broker_connected", transport=self.name, host=self.config.host)
            return channel

    def _check_cooldown(self) -> None:
        if self._retry_at is None:
            return
        remaining = self._retry_at - self._clock()
        if remaining > 0:
            self._stats["connect_skipped"] += 1
            raise BrokerConnectionError(
                f"Broker at {self.config.host}:{self.config.port} unreachable, "
                f"next connect attempt in {remaining:.1f}s"
            )

    async def get_channel(self) -> Optional[Any]:
        """Channel or None when the broker is unreachable"""
        try:
            return await self.connect()
        except BrokerConnectionError:
            return None

    def reset_connection(self, reason: Optional[str] = None) -> None:
        """Forget the cached connection so the next operation reconnects"""
        if self._channel is None and self.state != ConnectionState.CONNECTED:
            return
        self._channel = None
        self.state = ConnectionState.DISCONNECTED
        self._stats["disconnected_at"] = datetime.now()
        logger.warning("broker_connection_reset", transport=self.name, reason=reason)

    async def disconnect(self) -> None:
        """Close the connection"""
        try:
            await self._close()
        except Exception as e:
            logger.warning("broker_close_failed", transport=self.name, error=describe_error(e))
        self._channel = None
        self.state = ConnectionState.CLOSED
        self._stats["disconnected_at"] = datetime.now()
        logger.info("broker_disconnected", transport=self.name)

    async def assert_queue(self, queue: str, durable: bool = True) -> bool:
        """Declare a queue if absent; safe to call before every publish"""
        channel = await self.get_channel()
        if channel is None:
            return False

        try:
            await asyncio.wait_for(
                self._declare(channel, queue, durable), self.config.operation_timeout
            )
            return True
        except Exception as e:
            self._record_failure("assert_queue_failed", e, queue=queue)
            return False

    async def publish(self, queue: str, message: Any, persistent: bool = True) -> bool:
        """Publish a message; returns False instead of raising on failure"""
        channel = await self.get_channel()
        if channel is None:
            self._stats["publish_failures"] += 1
            return False

        try:
            body = encode_message(message)
        except (TypeError, ValueError) as e:
            self._stats["publish_failures"] += 1
            logger.error("message_encode_failed", queue=queue, error=describe_error(e))
            return False

        try:
            async with self._publish_lock:
                await asyncio.wait_for(
                    self._send(channel, queue, body, persistent), self.config.operation_timeout
                )
        except Exception as e:
            self._stats["publish_failures"] += 1
            self._record_failure("publish_failed", e, queue=queue)
            return False

        self._stats["messages_published"] += 1
        return True

    async def consume(
        self, queue: str, handler: DeliveryHandler, prefetch: int = 1
    ) -> Optional[str]:
        """Register ``handler`` for every delivery on ``queue``

        The handler must ack or nack each delivery itself.
        """
        channel = await self.get_channel()
        if channel is None:
            return None

        async def counted(delivery: Delivery) -> None:
            self._stats["messages_delivered"] += 1
            await handler(delivery)

        try:
            consumer_tag = await asyncio.wait_for(
                self._start_consumer(channel, queue, prefetch, counted),
                self.config.operation_timeout
            )
        except Exception as e:
            self._record_failure("consume_failed", e, queue=queue)
            return None

        logger.info("consumer_started", queue=queue, prefetch=prefetch, consumer_tag=consumer_tag)
        return consumer_tag

    async def cancel(self, consumer_tag: str) -> None:
        """Stop a consumer started with ``consume``"""
        if self._channel is None:
            return
        try:
            await self._stop_consumer(self._channel, consumer_tag)
            logger.info("consumer_cancelled", consumer_tag=consumer_tag)
        except Exception as e:
            logger.warning("consumer_cancel_failed", consumer_tag=consumer_tag, error=describe_error(e))

    def _record_failure(self, event: str, error: Exception, **context: Any) -> None:
        self._stats["errors"] += 1
        if isinstance(error, asyncio.TimeoutError):
            logger.error(event, transport=self.name, error="timed out", **context)
        else:
            logger.error(event, transport=self.name, error=describe_error(error), **context)

    def get_stats(self) -> Dict[str, Any]:
        """Get transport statistics"""
        return {
            **self._stats,
            "state": self.state.value,
        }
