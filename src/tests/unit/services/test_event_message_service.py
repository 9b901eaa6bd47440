"""Tests for the event and message logs."""

import pytest

from agentlab.core.domain import EventKind, ScopeType
from agentlab.core.errors import ValidationError
from agentlab.infra.sqlite import Store
from agentlab.services import event_service, message_service


class TestEvents:
    @pytest.mark.asyncio
    async def test_ids_increase_and_cursor(self, store: Store) -> None:
        async with store.session() as db:
            ids = []
            for i in range(4):
                event = await event_service.record_event(
                    db, EventKind.SANDBOX_STATE, sandbox_vmid=1001, msg=f"e{i}", payload={"i": i}
                )
                ids.append(event.id)
            await event_service.record_event(db, EventKind.JOB_CREATED, job_id="job_1")
        assert ids == sorted(ids)

        async with store.session() as db:
            page = await event_service.list_events_by_sandbox(db, 1001, after_id=ids[1])
            by_job = await event_service.list_events_by_job(db, "job_1")
        assert [e.id for e in page] == ids[2:]
        assert event_service.decode_payload(page[0]) == {"i": 2}
        assert [e.kind for e in by_job] == ["job.created"]

    @pytest.mark.asyncio
    async def test_tail_is_chronological(self, store: Store) -> None:
        async with store.session() as db:
            for i in range(5):
                await event_service.record_event(db, EventKind.SANDBOX_LEASE, sandbox_vmid=1001, msg=str(i))
        async with store.session() as db:
            tail = await event_service.list_events_tail(db, vmid=1001, limit=2)
            everything = await event_service.list_events_tail(db, limit=100)
        assert [e.msg for e in tail] == ["3", "4"]
        assert len(everything) == 5

    @pytest.mark.asyncio
    async def test_validation(self, store: Store) -> None:
        async with store.session() as db:
            with pytest.raises(ValidationError):
                await event_service.record_event(db, " ")
            with pytest.raises(ValidationError):
                await event_service.list_events_tail(db, limit=0)


class TestMessages:
    @pytest.mark.asyncio
    async def test_scoped_listing(self, store: Store) -> None:
        async with store.session() as db:
            first = await message_service.append_message(db, ScopeType.JOB, "job_1", "hello", author="agent")
            await message_service.append_message(db, ScopeType.JOB, "job_2", "other")
            await message_service.append_message(db, ScopeType.JOB, "job_1", "world", kind="")
        async with store.session() as db:
            msgs = await message_service.list_messages(db, ScopeType.JOB, "job_1")
            after = await message_service.list_messages(db, ScopeType.JOB, "job_1", after_id=first.id)
            tail = await message_service.list_messages_tail(db, ScopeType.JOB, "job_1", limit=1)
        assert [m.text for m in msgs] == ["hello", "world"]
        assert msgs[1].kind == "note"
        assert [m.text for m in after] == ["world"]
        assert [m.text for m in tail] == ["world"]

    @pytest.mark.asyncio
    async def test_scope_required(self, store: Store) -> None:
        async with store.session() as db:
            with pytest.raises(ValidationError):
                await message_service.append_message(db, "", "job_1", "x")
