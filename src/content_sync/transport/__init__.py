"""Broker Transport Layer

One shared broker connection used by both sync paths: durable queue
declaration, persistent publishing and manual-ack consumption.
"""

from .base import BrokerTransport, ConnectionState, Delivery, DeliveryHandler, encode_message
from .amqp import AmqpTransport, AmqpDelivery
from .memory import InMemoryTransport, MemoryDelivery

__all__ = [
    "BrokerTransport",
    "ConnectionState",
    "Delivery",
    "DeliveryHandler",
    "encode_message",
    "AmqpTransport",
    "AmqpDelivery",
    "InMemoryTransport",
    "MemoryDelivery",
]
