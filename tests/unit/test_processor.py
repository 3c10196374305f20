"""
Unit tests for the inbound command processor.
"""

import hashlib
import json

import pytest

from content_sync.sync.idempotency import IdempotencyCache
from content_sync.sync.models import EntityKind, SyncCommand
from content_sync.sync.processor import CommandProcessor
from content_sync.utils.config import ProcessorConfig

from tests.conftest import CHALLENGE_DATA, COURSE_DATA, make_command, responses


COURSE = EntityKind.COURSE
CHALLENGE = EntityKind.CHALLENGE


async def run_command(transport, processor, queues, command, **inject_kwargs):
    if processor.consumer_tag is None:
        assert await processor.start()
    transport.inject(queues.sync_requests, command, **inject_kwargs)
    await transport.drain(queues.sync_requests)
    return responses(transport, queues)[-1]


class TestCreate:
    """Test create commands."""

    @pytest.mark.asyncio
    async def test_create_course(self, transport, processor, store, queues):
        response = await run_command(
            transport, processor, queues,
            make_command("CREATE_COURSE", dict(COURSE_DATA), userId="u9", backendId="ext-1")
        )

        assert response["status"] == "success"
        assert response["correlationId"] == "corr-create_course"
        assert response["backendId"] == "ext-1"

        data = response["data"]
        record = await store.find_one(COURSE, data["id"])
        assert record["targetIndustryPartnership"] == "Fintech"
        assert record["description"] == [
            {"type": "paragraph", "children": [{"type": "text", "text": "Money and markets"}]}
        ]
        assert record["userId"] == "u9"
        assert record["publishedAt"] is not None
        assert "meta" not in record

    @pytest.mark.asyncio
    async def test_create_is_not_echoed(self, transport, processor, queues):
        await run_command(transport, processor, queues, make_command("CREATE_COURSE", dict(COURSE_DATA)))
        assert transport.messages(queues.course_created) == []

    @pytest.mark.asyncio
    async def test_payload_user_id_wins(self, transport, processor, store, queues):
        response = await run_command(
            transport, processor, queues,
            make_command("CREATE_CHALLENGE", {**CHALLENGE_DATA, "userId": "owner"}, userId="caller")
        )
        record = await store.find_one(CHALLENGE, response["data"]["id"])
        assert record["userId"] == "owner"
        assert record["Aim"][0]["children"][0]["text"] == "Reduce false positives"

    @pytest.mark.asyncio
    async def test_invalid_category_is_error_and_acked_once(self, transport, processor, store, queues):
        response = await run_command(
            transport, processor, queues,
            make_command("CREATE_COURSE", {**COURSE_DATA, "targetIndustryPartnership": "Not A Category"})
        )

        assert response["status"] == "error"
        assert response["error"] == "Invalid target industry partnership: Not A Category"
        assert [d.outcome for d in transport.deliveries] == ["ack"]
        assert transport.messages(queues.sync_requests) == []
        assert store.all(COURSE) == []


class TestUpdate:
    """Test update commands."""

    @pytest.mark.asyncio
    async def test_update_course(self, transport, processor, store, queues):
        record = await store.create(COURSE, dict(COURSE_DATA), actor_id="u1")

        response = await run_command(
            transport, processor, queues,
            make_command("UPDATE_COURSE", {"id": record["id"], "name": "Advanced Finance"})
        )

        assert response["status"] == "success"
        assert response["data"]["name"] == "Advanced Finance"
        assert response["data"]["id"] == record["id"]
        # Only the host-side create was announced
        assert transport.messages(queues.course_updated) == []
        assert len(transport.messages(queues.course_created)) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation,message", [
        ("UPDATE_COURSE", "Course ID is required for update operation"),
        ("UPDATE_CHALLENGE", "Challenge ID is required for update operation"),
        ("DELETE_COURSE", "Course ID is required for delete operation"),
        ("DELETE_CHALLENGE", "Challenge ID is required for delete operation"),
    ])
    async def test_id_required(self, transport, processor, queues, operation, message):
        response = await run_command(transport, processor, queues, make_command(operation, {"name": "x"}))
        assert response["status"] == "error"
        assert response["error"] == message

    @pytest.mark.asyncio
    async def test_update_missing_record(self, transport, processor, queues):
        response = await run_command(
            transport, processor, queues, make_command("UPDATE_CHALLENGE", {"id": 404, "name": "x"})
        )
        assert response["status"] == "error"
        assert response["error"] == "challenge 404 not found"


class TestDelete:
    """Test delete commands."""

    @pytest.mark.asyncio
    async def test_delete_challenge(self, transport, processor, store, queues):
        record = await store.create(CHALLENGE, dict(CHALLENGE_DATA), actor_id="u1")

        response = await run_command(
            transport, processor, queues, make_command("DELETE_CHALLENGE", {"id": record["id"]})
        )

        assert response["data"] == {"id": record["id"], "deleted": True}
        assert await store.find_one(CHALLENGE, record["id"]) is None
        assert transport.messages(queues.challenge_deleted) == []


class TestDispatch:
    """Test operation routing."""

    @pytest.mark.asyncio
    async def test_unknown_operation(self, transport, processor, queues):
        response = await run_command(transport, processor, queues, make_command("ARCHIVE_COURSE", {}))
        assert response["status"] == "error"
        assert response["error"] == "Unsupported operation type: ARCHIVE_COURSE"
        assert transport.deliveries[-1].outcome == "ack"

    @pytest.mark.asyncio
    async def test_process_never_raises(self, store, transport, queues):
        class BrokenStore(type(store)):
            async def create(self, *args, **kwargs):
                raise RuntimeError("database is locked")

        processor = CommandProcessor(transport, BrokenStore(), queues=queues)
        command = SyncCommand.model_validate(make_command("CREATE_CHALLENGE", dict(CHALLENGE_DATA)))

        response = await processor.process(command)
        assert response.error == "database is locked"
        assert processor.get_stats()["failed"] == 1


class TestIdempotency:
    """Test replay of redelivered commands."""

    @pytest.mark.asyncio
    async def test_duplicate_correlation_id_is_replayed(self, transport, processor, store, queues):
        command = make_command("CREATE_COURSE", dict(COURSE_DATA), correlationId="dup-1")

        first = await run_command(transport, processor, queues, command)
        second = await run_command(transport, processor, queues, command)

        assert first == second
        assert len(store.all(COURSE)) == 1
        assert processor.get_stats()["replayed"] == 1

    @pytest.mark.asyncio
    async def test_response_publish_failure_requeues_then_replays(self, transport, processor, store, queues):
        assert await processor.start()
        transport.inject(queues.sync_requests, make_command("CREATE_COURSE", dict(COURSE_DATA)))

        transport.fail_publish = True
        await transport.drain(queues.sync_requests, limit=1)
        assert transport.deliveries[0].outcome == "requeue"
        assert len(store.all(COURSE)) == 1

        transport.fail_publish = False
        await transport.drain(queues.sync_requests)

        assert transport.deliveries[1].outcome == "ack"
        assert transport.deliveries[1].redelivered
        assert len(responses(transport, queues)) == 1
        assert len(store.all(COURSE)) == 1

    @pytest.mark.asyncio
    async def test_expired_responses_are_swept(self, transport, store, queues, clock):
        cache = IdempotencyCache(ttl=60, clock=clock.monotonic)
        processor = CommandProcessor(transport, store, queues=queues, cache=cache)

        await run_command(transport, processor, queues, make_command(
            "CREATE_COURSE", dict(COURSE_DATA), correlationId="old"
        ))
        assert "old" in cache

        clock.advance(60)
        await run_command(transport, processor, queues, make_command(
            "CREATE_COURSE", dict(COURSE_DATA), correlationId="new"
        ))

        assert "old" not in cache
        assert "new" in cache
        assert processor.get_stats()["cached_responses"] == 1


class TestParseFailures:
    """Test requeue and dead-lettering of malformed deliveries."""

    @pytest.mark.asyncio
    async def test_malformed_body_is_dead_lettered_after_cap(self, transport, processor, queues):
        assert await processor.start()
        transport.inject(queues.sync_requests, b"not json", message_id="m-1")

        await transport.drain(queues.sync_requests)

        assert [d.outcome for d in transport.deliveries] == ["requeue", "requeue", "ack"]
        dead = transport.queues[queues.dead_letter]
        assert [m.body for m in dead] == [b"not json"]
        assert responses(transport, queues) == []
        assert processor.get_stats()["dead_lettered"] == 1

    def test_fingerprint_falls_back_to_body_hash(self, processor):
        class Anonymous:
            message_id = None
            body = b'{"broken": '

        assert processor._fingerprint(Anonymous()) == hashlib.sha256(b'{"broken": ').hexdigest()

    @pytest.mark.asyncio
    async def test_missing_correlation_id_is_parse_failure(self, transport, processor, queues):
        assert await processor.start()
        body = json.dumps({"operationType": "CREATE_COURSE", "data": {}})
        transport.inject(queues.sync_requests, body, message_id="m-2")

        await transport.drain(queues.sync_requests, limit=1)

        assert transport.deliveries[0].outcome == "requeue"
        assert processor.get_stats()["parse_failures"] == 1

    @pytest.mark.asyncio
    async def test_dead_letter_unavailable_keeps_requeueing(self, transport, processor, queues):
        assert await processor.start()
        transport.inject(queues.sync_requests, b"{", message_id="m-3")
        transport.fail_publish = True

        await transport.drain(queues.sync_requests, limit=4)

        assert [d.outcome for d in transport.deliveries] == ["requeue"] * 4
        assert processor.get_stats()["dead_lettered"] == 0

    @pytest.mark.asyncio
    async def test_parse_failure_counts_stay_bounded(self, transport, store, queues):
        processor = CommandProcessor(
            transport, store, queues=queues,
            config=ProcessorConfig(max_parse_redeliveries=3, parse_failure_max_entries=4),
        )
        assert await processor.start()

        for i in range(10):
            transport.inject(queues.sync_requests, b"not json", message_id=f"fresh-{i}")
            await transport.drain(queues.sync_requests, limit=1)
            # Redelivered to some other consumer, never seen here again
            transport.queues[queues.sync_requests].clear()

        stats = processor.get_stats()
        assert stats["parse_failures"] == 10
        assert stats["tracked_parse_failures"] == 4
        assert list(processor._parse_failures) == [f"fresh-{i}" for i in range(6, 10)]
