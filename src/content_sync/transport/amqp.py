"""AMQP transport backed by aio-pika"""

from typing import Any, Dict, Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue, AbstractConnection

from .base import BrokerTransport, Delivery, DeliveryHandler
from ..utils.config import BrokerConfig
from ..utils.logging import get_logger

logger = get_logger(__name__)


class AmqpDelivery(Delivery):
    """Delivery wrapping an aio-pika incoming message"""

    def __init__(self, message: AbstractIncomingMessage):
        super().__init__(
            body=message.body,
            message_id=message.message_id,
            redelivered=bool(message.redelivered),
            headers=dict(message.headers or {}),
        )
        self._message = message

    async def _ack(self) -> None:
        await self._message.ack()

    async def _nack(self, requeue: bool) -> None:
        await self._message.nack(requeue=requeue)


class AmqpTransport(BrokerTransport):
    """RabbitMQ transport

    Uses a plain (non-robust) connection: reconnection is lazy and driven by
    the next publish/declare, never by a background loop.
    """

    def __init__(self, config: Optional[BrokerConfig] = None, name: Optional[str] = None):
        super().__init__(config, name)
        self._connection: Optional[AbstractConnection] = None
        self._consumer_queues: Dict[str, AbstractQueue] = {}

    async def _open(self) -> AbstractChannel:
        logger.info(
            "broker_connecting",
            host=self.config.host,
            port=self.config.port,
            vhost=self.config.vhost
        )
        connection = await aio_pika.connect(
            f"{self.config.url}?heartbeat={self.config.heartbeat}",
            timeout=self.config.connect_timeout,
            client_properties={"connection_name": self.name},
        )
        try:
            channel = await connection.channel()
        except Exception:
            await connection.close()
            raise

        connection.close_callbacks.add(self._on_connection_closed)
        channel.close_callbacks.add(self._on_channel_closed)
        self._connection = connection
        return channel

    def _on_connection_closed(self, sender: Any, exc: Optional[BaseException] = None) -> None:
        if exc is not None:
            logger.error("broker_connection_error", error=str(exc))
        else:
            logger.warning("broker_connection_closed")
        self._connection = None
        self._consumer_queues.clear()
        self.reset_connection("connection closed")

    def _on_channel_closed(self, sender: Any, exc: Optional[BaseException] = None) -> None:
        if exc is not None:
            logger.error("broker_channel_error", error=str(exc))
        self._consumer_queues.clear()
        self.reset_connection("channel closed")

    async def _close(self) -> None:
        connection, self._connection = self._connection, None
        self._consumer_queues.clear()
        if connection is not None and not connection.is_closed:
            connection.close_callbacks.discard(self._on_connection_closed)
            await connection.close()

    async def _declare(self, channel: AbstractChannel, queue: str, durable: bool) -> None:
        await channel.declare_queue(queue, durable=durable)

    async def _send(self, channel: AbstractChannel, queue: str, body: bytes, persistent: bool) -> None:
        delivery_mode = (
            aio_pika.DeliveryMode.PERSISTENT if persistent else aio_pika.DeliveryMode.NOT_PERSISTENT
        )
        await channel.default_exchange.publish(
            aio_pika.Message(
                body=body,
                content_type="application/json",
                delivery_mode=delivery_mode,
            ),
            routing_key=queue,
        )

    async def _start_consumer(
        self, channel: AbstractChannel, queue: str, prefetch: int, handler: DeliveryHandler
    ) -> str:
        await channel.set_qos(prefetch_count=prefetch)
        declared = await channel.declare_queue(queue, durable=True)

        async def on_message(message: AbstractIncomingMessage) -> None:
            await handler(AmqpDelivery(message))

        consumer_tag = await declared.consume(on_message, no_ack=False)
        self._consumer_queues[consumer_tag] = declared
        return consumer_tag

    async def _stop_consumer(self, channel: AbstractChannel, consumer_tag: str) -> None:
        declared = self._consumer_queues.pop(consumer_tag, None)
        if declared is not None:
            await declared.cancel(consumer_tag)
