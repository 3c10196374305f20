"""
Unit tests for the outbound change notifier.
"""

import pytest

from content_sync.store.memory import InMemoryContentStore
from content_sync.sync.models import EntityKind, MutationEvent, provenance_meta
from content_sync.sync.notifier import ChangeNotifier
from content_sync.transport.memory import InMemoryTransport
from content_sync.utils.config import BrokerConfig

from tests.conftest import CHALLENGE_DATA, COURSE_DATA


COURSE = EntityKind.COURSE
CHALLENGE = EntityKind.CHALLENGE


class TestCreate:
    """Test created events."""

    @pytest.mark.asyncio
    async def test_actor_create_publishes(self, store, notifier, transport, queues):
        record = await store.create(COURSE, {**COURSE_DATA, "userId": "u1"}, actor_id="u1")

        messages = transport.messages(queues.course_created)
        assert len(messages) == 1
        message = messages[0]
        assert message["id"] == record["id"]
        assert message["userId"] == "u1"
        assert message["code"] == "FIN101"
        assert message["status"] == "open"
        assert message["publishStatus"] == "draft"
        assert message["createdAt"] == record["createdAt"]
        assert message["triggeredBy"] == "u1"
        assert transport.declared[queues.course_created] is True

    @pytest.mark.asyncio
    async def test_system_create_is_registered_not_published(self, store, notifier, tracker, transport, queues):
        tracker.begin_publish_operation(1)
        record = await store.create(COURSE, dict(COURSE_DATA))

        assert transport.messages(queues.course_created) == []
        assert tracker.is_suppressed(record["id"])
        assert notifier.get_stats()["suppressed"] == 1

    @pytest.mark.asyncio
    async def test_external_create_is_echo_suppressed(self, store, notifier, transport, queues):
        await store.create(
            CHALLENGE, {**CHALLENGE_DATA, "meta": provenance_meta()},
            actor_id="u1", meta=provenance_meta()
        )
        assert transport.messages(queues.challenge_created) == []

    @pytest.mark.asyncio
    async def test_challenge_defaults(self, store, notifier, transport, queues):
        await store.create(CHALLENGE, dict(CHALLENGE_DATA), actor_id="u2")

        message = transport.messages(queues.challenge_created)[0]
        assert message["targetAcademicPartnership"] == ""
        assert message["name"] == "Fraud detection"
        assert message["userId"] is None

    @pytest.mark.asyncio
    async def test_relation_flattened(self, store, notifier, transport, queues):
        relation = {"data": [{"id": 3, "attributes": {"name": "Fintech"}}]}
        await store.create(COURSE, {**COURSE_DATA, "targetIndustryPartnership": relation}, actor_id="u1")

        message = transport.messages(queues.course_created)[0]
        assert message["targetIndustryPartnership"] == [{"id": 3, "name": "Fintech"}]


class TestUpdate:
    """Test updated events and publish classification."""

    @pytest.mark.asyncio
    async def test_plain_update(self, store, notifier, tracker, transport, queues):
        record = await store.create(COURSE, dict(COURSE_DATA), actor_id="u1")
        await store.update(COURSE, record["id"], {"name": "Renamed"}, actor_id="u1")

        message = transport.messages(queues.course_updated)[0]
        assert message["operationType"] == "update"
        assert message["updatedFields"] == ["name"]
        assert message["name"] == "Renamed"
        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_publish_update(self, store, notifier, tracker, transport, queues):
        record = await store.create(COURSE, dict(COURSE_DATA), actor_id="u1")
        await store.update(COURSE, record["id"], {"publishedAt": "2024-05-01T00:00:00Z"}, actor_id="u1")

        message = transport.messages(queues.course_updated)[0]
        assert message["operationType"] == "publish"
        assert message["publishStatus"] == "published"
        assert len(tracker) == 1

    @pytest.mark.asyncio
    async def test_unpublish_is_plain_update(self, store, notifier, tracker, transport, queues):
        record = await store.create(COURSE, dict(COURSE_DATA), actor_id="u1")
        await store.update(COURSE, record["id"], {"publishedAt": None}, actor_id="u1")

        assert transport.messages(queues.course_updated)[0]["operationType"] == "update"
        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_system_publish_does_not_open_operation(self, store, notifier, tracker, transport, queues):
        record = await store.create(COURSE, dict(COURSE_DATA), actor_id="u1")
        await store.update(COURSE, record["id"], {"publishedAt": "2024-05-01T00:00:00Z"})

        message = transport.messages(queues.course_updated)[0]
        assert message["operationType"] == "publish"
        assert message["triggeredBy"] == "system"
        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_external_update_suppressed(self, store, notifier, transport, queues):
        record = await store.create(COURSE, dict(COURSE_DATA), actor_id="u1")
        await store.update(
            COURSE, record["id"], {"name": "x", "meta": provenance_meta()}, meta=provenance_meta()
        )
        assert transport.messages(queues.course_updated) == []

    @pytest.mark.asyncio
    async def test_missing_result_is_ignored(self, notifier, transport, queues):
        event = MutationEvent.with_actor(COURSE, "u1", params={"data": {"name": "x"}})
        assert await notifier.after_update(event) is None
        assert transport.messages(queues.course_updated) == []


class TestSingleDelete:
    """Test single record deletes."""

    @pytest.mark.asyncio
    async def test_actor_delete_uses_snapshot(self, store, notifier, transport, queues):
        record = await store.create(COURSE, {**COURSE_DATA, "userId": "owner"}, actor_id="u1")
        await store.delete(COURSE, record["id"], actor_id="u1")

        messages = transport.messages(queues.course_deleted)
        assert len(messages) == 1
        assert messages[0]["id"] == record["id"]
        assert messages[0]["userId"] == "owner"
        assert messages[0]["code"] == "FIN101"
        assert messages[0]["triggeredBy"] == "u1"
        assert "deletedAt" in messages[0]

    @pytest.mark.asyncio
    async def test_system_delete_skipped(self, store, notifier, transport, queues):
        record = await store.create(COURSE, dict(COURSE_DATA), actor_id="u1")
        await store.delete(COURSE, record["id"])
        assert transport.messages(queues.course_deleted) == []

    @pytest.mark.asyncio
    async def test_suppressed_id_skipped(self, store, notifier, tracker, transport, queues):
        record = await store.create(CHALLENGE, dict(CHALLENGE_DATA), actor_id="u1")
        tracker.begin_publish_operation(500)
        tracker.register_related(record["id"])

        await store.delete(CHALLENGE, record["id"], actor_id="u1")
        assert transport.messages(queues.challenge_deleted) == []

    @pytest.mark.asyncio
    async def test_missing_snapshot_falls_back_to_unknown(self, notifier, transport, queues):
        event = MutationEvent.with_actor(CHALLENGE, "u1", params={"where": {"id": 77}})
        await notifier.before_delete(event)
        assert await notifier.after_delete(event) == 1

        message = transport.messages(queues.challenge_deleted)[0]
        assert message["id"] == 77
        assert message["name"] == "unknown"
        assert message["userId"] == "unknown"

    @pytest.mark.asyncio
    async def test_staging_is_per_event(self, store, notifier, transport, queues):
        first = await store.create(COURSE, {**COURSE_DATA, "code": "A1"}, actor_id="u1")
        second = await store.create(COURSE, {**COURSE_DATA, "code": "B2"}, actor_id="u1")

        event_a = MutationEvent.with_actor(COURSE, "u1", params={"where": {"id": first["id"]}})
        event_b = MutationEvent.with_actor(COURSE, "u1", params={"where": {"id": second["id"]}})
        # Interleaved deletes must not clobber each other's snapshot
        await notifier.before_delete(event_a)
        await notifier.before_delete(event_b)
        await notifier.after_delete(event_a)
        await notifier.after_delete(event_b)

        codes = [m["code"] for m in transport.messages(queues.course_deleted)]
        assert codes == ["A1", "B2"]


class FlakyStore(InMemoryContentStore):
    """Store whose lookups fail for selected ids."""

    def __init__(self, failing):
        super().__init__()
        self.failing = set(failing)

    async def find_one(self, entity, record_id):
        if record_id in self.failing:
            raise ConnectionError("lookup failed")
        return await super().find_one(entity, record_id)


class TestBulkDelete:
    """Test ``$in`` deletes."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("n,k", [(5, 0), (5, 2), (4, 4)])
    async def test_emits_n_minus_k(self, store, notifier, tracker, transport, queues, n, k):
        ids = [
            (await store.create(COURSE, {**COURSE_DATA, "code": f"C{i}"}, actor_id="u1"))["id"]
            for i in range(n)
        ]
        tracker.begin_publish_operation(999)
        for record_id in ids[:k]:
            tracker.register_related(record_id)

        await store.delete_many(COURSE, ids, actor_id="u1")

        deleted = transport.messages(queues.course_deleted)
        assert len(deleted) == n - k
        assert sorted(m["id"] for m in deleted) == sorted(ids[k:])

    @pytest.mark.asyncio
    async def test_system_bulk_delete_is_suppressed_while_operation_live(
        self, store, notifier, tracker, transport, queues
    ):
        ids = [(await store.create(COURSE, dict(COURSE_DATA), actor_id="u1"))["id"] for _ in range(3)]
        tracker.begin_publish_operation(999)

        await store.delete_many(COURSE, ids)

        assert transport.messages(queues.course_deleted) == []
        assert all(tracker.is_suppressed(i) for i in ids)

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_batch_going(self, tracker, transport, queues):
        store = FlakyStore(failing={2})
        notifier = ChangeNotifier(transport, tracker, store=store, queues=queues)
        store.subscribe(notifier)
        for i in range(3):
            await store.create(CHALLENGE, {**CHALLENGE_DATA, "name": f"ch{i}"}, actor_id="u1")

        await store.delete_many(CHALLENGE, [1, 2, 3], actor_id="u1")

        deleted = {m["id"]: m for m in transport.messages(queues.challenge_deleted)}
        assert set(deleted) == {1, 2, 3}
        assert deleted[1]["name"] == "ch0"
        assert deleted[2]["name"] == "unknown"
        assert deleted[3]["name"] == "ch2"


class TestBestEffort:
    """Notification failures never reach the content mutation."""

    @pytest.mark.asyncio
    async def test_publish_failure_is_swallowed(self, store, notifier, transport, queues):
        transport.fail_publish = True
        record = await store.create(COURSE, dict(COURSE_DATA), actor_id="u1")

        assert (await store.find_one(COURSE, record["id"])) is not None
        assert notifier.get_stats()["failed"] == 1
        assert notifier.get_stats()["published"] == 0

    @pytest.mark.asyncio
    async def test_broker_down_is_swallowed(self, store, notifier, transport, queues):
        transport.fail_connect = True
        record = await store.create(COURSE, dict(COURSE_DATA), actor_id="u1")
        await store.update(COURSE, record["id"], {"name": "x"}, actor_id="u1")
        await store.delete(COURSE, record["id"], actor_id="u1")

        assert notifier.get_stats()["failed"] == 3
        assert await store.find_one(COURSE, record["id"]) is None

    @pytest.mark.asyncio
    async def test_broker_outage_does_not_stall_mutations(self, clock, tracker, queues):
        settings = BrokerConfig()
        transport = InMemoryTransport(settings)
        transport.fail_connect = True
        transport._clock = clock.monotonic
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        transport._sleep = fake_sleep
        store = InMemoryContentStore()
        notifier = ChangeNotifier(transport, tracker, store=store, queues=queues)
        store.subscribe(notifier)

        for i in range(3):
            await store.create(COURSE, {**COURSE_DATA, "code": f"C{i}"}, actor_id="u1")

        # One backoff run for the first mutation, the others fail fast
        assert transport.get_stats()["connect_attempts"] == settings.max_connect_attempts
        assert len(delays) == settings.max_connect_attempts - 1
        assert transport.get_stats()["publish_failures"] == 0
        assert notifier.get_stats()["failed"] == 3
        assert len(store.all(COURSE)) == 3
