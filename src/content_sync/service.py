"""
Sync service wiring and lifecycle.

Builds the broker transport, operation tracker, change notifier and command
processor from one ``SyncConfig``, attaches the notifier to the content
store, and runs the request consumer until stopped.
"""

import asyncio
import signal
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .store.base import ContentStore
from .store.memory import InMemoryContentStore
from .sync.notifier import ChangeNotifier
from .sync.processor import CommandProcessor
from .sync.tracker import OperationTracker
from .transport.amqp import AmqpTransport
from .transport.base import BrokerTransport
from .utils.config import SyncConfig
from .utils.errors import ContentSyncError, TransportError, error_context
from .utils.logging import get_logger


logger = get_logger("content-sync.service")


class ServiceState(Enum):
    """Service lifecycle states."""
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class ServiceError(ContentSyncError):
    """Lifecycle misuse, such as starting a running service."""
    code = "SERVICE_ERROR"
    default_message = "Sync service error"


@dataclass
class HealthStatus:
    """Health status information."""
    healthy: bool
    last_check: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class SyncService:
    """Owns every sync component for the lifetime of one process."""

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        store: Optional[ContentStore] = None,
        transport: Optional[BrokerTransport] = None,
        tracker: Optional[OperationTracker] = None,
    ):
        self.config = config or SyncConfig()
        self.state = ServiceState.UNINITIALIZED
        self.store = store or InMemoryContentStore()
        self.transport = transport or AmqpTransport(self.config.broker, name=self.config.app_name)
        self.tracker = tracker or OperationTracker(window_ms=self.config.tracker.window_ms)

        self.notifier = ChangeNotifier(
            self.transport, self.tracker, store=self.store, queues=self.config.queues
        )
        self.store.subscribe(self.notifier)

        self.processor = CommandProcessor(
            self.transport,
            self.store,
            queues=self.config.queues,
            config=self.config.processor,
        )
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self.state == ServiceState.RUNNING

    async def start(self) -> None:
        """Connect, declare every queue and start consuming sync requests.

        Raises:
            BrokerConnectionError: the broker stayed unreachable
            TransportError: queues could not be declared or consumed
        """
        if self.is_running:
            raise ServiceError("Sync service already running")

        self.state = ServiceState.STARTING
        logger.info(
            "starting_sync_service",
            host=self.config.broker.host,
            port=self.config.broker.port,
            vhost=self.config.broker.vhost
        )

        try:
            with error_context("service", "start", host=self.config.broker.host):
                await self.transport.connect()

                for queue in self.config.queues.all_queues():
                    if not await self.transport.assert_queue(queue):
                        raise TransportError(f"Failed to declare queue {queue}")

                if not await self.processor.start():
                    raise TransportError(
                        f"Failed to consume from {self.config.queues.sync_requests}"
                    )
        except ContentSyncError:
            self.state = ServiceState.ERROR
            raise

        self.state = ServiceState.RUNNING
        logger.info("sync_service_started", queues=self.config.queues.all_queues())

    async def stop(self) -> None:
        """Cancel the consumer and close the broker connection."""
        if self.state not in (ServiceState.RUNNING, ServiceState.ERROR):
            logger.warning("stop_called_when_not_running", state=self.state.value)
            return

        self.state = ServiceState.STOPPING
        logger.info("stopping_sync_service")

        await self.processor.stop()
        await self.transport.disconnect()

        self.state = ServiceState.STOPPED
        logger.info("sync_service_stopped")

    async def health_check(self) -> HealthStatus:
        """Snapshot of transport, tracker and processor state."""
        transport = self.transport.get_stats()
        details = {
            "state": self.state.value,
            "transport": transport,
            "tracker": {"live_operations": len(self.tracker)},
            "notifier": self.notifier.get_stats(),
            "processor": self.processor.get_stats(),
        }
        healthy = self.is_running and self.transport.is_connected
        return HealthStatus(
            healthy=healthy,
            last_check=datetime.utcnow(),
            details=details,
            error=None if healthy else f"service {self.state.value}, broker {transport['state']}",
        )

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> None:
        """Start, then serve until SIGINT/SIGTERM or ``request_stop``."""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no signal handler support
                logger.debug("signal_handler_unavailable", signal=sig.name)

        try:
            await self.start()
            await self._stop_event.wait()
            logger.info("shutdown_requested")
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.stop()
