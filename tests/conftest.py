"""
Pytest configuration and shared fixtures for content sync tests.
"""

import pytest
from pathlib import Path
from typing import Any, Dict, List

# Add src to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from content_sync.store.memory import InMemoryContentStore
from content_sync.sync.notifier import ChangeNotifier
from content_sync.sync.processor import CommandProcessor
from content_sync.sync.tracker import OperationTracker
from content_sync.transport.memory import InMemoryTransport
from content_sync.utils.config import ProcessorConfig, QueueConfig


class FakeClock:
    """Manually advanced clock; ``monotonic`` and ``wall`` move together."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def monotonic(self) -> float:
        return self.now

    def wall(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tracker(clock: FakeClock) -> OperationTracker:
    return OperationTracker(window_ms=30_000, clock=clock.monotonic, wall_clock=clock.wall)


@pytest.fixture
def queues() -> QueueConfig:
    return QueueConfig()


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport(name="test-broker")


@pytest.fixture
def store() -> InMemoryContentStore:
    return InMemoryContentStore()


@pytest.fixture
def notifier(transport, tracker, store, queues) -> ChangeNotifier:
    notifier = ChangeNotifier(transport, tracker, store=store, queues=queues)
    store.subscribe(notifier)
    return notifier


@pytest.fixture
def processor_config() -> ProcessorConfig:
    return ProcessorConfig(max_parse_redeliveries=3)


@pytest.fixture
def processor(transport, store, notifier, queues, processor_config) -> CommandProcessor:
    return CommandProcessor(transport, store, queues=queues, config=processor_config)


def make_command(operation_type: str, data: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
    command = {
        "correlationId": extra.pop("correlationId", f"corr-{operation_type.lower()}"),
        "operationType": operation_type,
        "data": data,
        "timestamp": "2024-05-01T10:00:00Z",
    }
    command.update(extra)
    return command


def responses(transport: InMemoryTransport, queues: QueueConfig) -> List[Dict[str, Any]]:
    return transport.messages(queues.sync_responses)


COURSE_DATA = {
    "code": "FIN101",
    "name": "Intro to Finance",
    "expectedEnrollment": 40,
    "description": "Money and markets",
    "targetIndustryPartnership": "fintech",
    "startDate": "2024-09-01",
    "endDate": "2024-12-15",
    "isActive": True,
    "courseStatus": "open",
    "country": "AU",
}

CHALLENGE_DATA = {
    "name": "Fraud detection",
    "shortDescription": "Spot the bad transactions",
    "studentLevel": "Postgraduate",
    "startDate": "2024-09-01",
    "endDate": "2024-11-30",
    "isActive": True,
    "challengeStatus": "open",
    "country": "AU",
    "Aim": "Reduce false positives",
}
