"""
Unit tests for payload registration, serialization and the call payloads.
"""

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backlog.db.repository import JobRepository
from backlog.errors import DeserializationError, InvalidPayloadError, JobTimeoutError
from backlog.payloads import (
    Payload,
    PerformableFunction,
    PerformableMethod,
    deserialize_payload,
    enqueue_method,
    get_payload_class,
    is_public_payload,
    list_payload_types,
    register_payload,
    serialize_payload,
)
from backlog.worker.executor import invoke_job
from job_fixtures import CALLS, EchoPayload, Widget, async_record_call, record_call, touch_widget


class UnregisteredPayload(Payload):
    def perform(self) -> None:
        pass


class TestRegistry:
    """Tests for the payload registry."""

    def test_registered_types(self):
        types = list_payload_types()
        assert "test_echo" in types
        assert "performable_function" in types
        assert "performable_method" in types
        assert get_payload_class("test_echo") is EchoPayload
        assert get_payload_class("nope") is None

    def test_public_flag(self):
        assert is_public_payload("test_echo") is True
        assert is_public_payload("performable_function") is False
        assert is_public_payload("nope") is False

    def test_register_decorator_returns_class(self):
        @register_payload("test_registered_here")
        class Local(Payload):
            value: int

            def perform(self) -> int:
                return self.value

        assert get_payload_class("test_registered_here") is Local
        assert serialize_payload(Local(value=3)) == {
            "type": "test_registered_here",
            "data": {"value": 3},
        }


class TestSerialization:
    """Tests for turning payloads into stored form and back."""

    def test_serialize_registered_payload(self):
        stored = serialize_payload(EchoPayload(message="hi", keep=True))
        assert stored == {"type": "test_echo", "data": {"message": "hi", "keep": True}}

    def test_deserialize_registered_payload(self):
        payload = deserialize_payload({"type": "test_echo", "data": {"message": "hi"}})
        assert isinstance(payload, EchoPayload)
        assert payload.message == "hi"

    def test_serialize_rejects_object_without_perform(self):
        with pytest.raises(InvalidPayloadError):
            serialize_payload({"message": "hi"})

    def test_serialize_rejects_unregistered_class(self):
        with pytest.raises(InvalidPayloadError, match="not registered"):
            serialize_payload(UnregisteredPayload())

    @pytest.mark.parametrize(
        "source",
        [
            None,
            "test_echo",
            {"data": {}},
            {"type": "unknown_type", "data": {}},
            {"type": "test_echo", "data": {"wrong": 1}},
        ],
    )
    def test_deserialize_failures(self, source):
        with pytest.raises(DeserializationError, match="Job failed to load"):
            deserialize_payload(source)


class TestPerformableFunction:
    """Tests for deferred module level function calls."""

    def test_build_stores_reference(self):
        payload = PerformableFunction.build(record_call, 1, "two")

        assert payload.function == "job_fixtures:record_call"
        assert payload.args == [1, "two"]
        assert payload.display_name() == "job_fixtures.record_call"

    def test_build_rejects_lambda(self):
        with pytest.raises(InvalidPayloadError):
            PerformableFunction.build(lambda: None)

    async def test_perform_calls_function(self):
        payload = deserialize_payload(serialize_payload(PerformableFunction.build(record_call, 1, "two")))

        assert await payload.perform() == 1
        assert CALLS == [("record_call", 1, "two")]

    async def test_perform_calls_coroutine_function(self):
        payload = PerformableFunction.build(async_record_call, "x")

        await payload.perform()

        assert CALLS == [("async_record_call", "x")]

    async def test_missing_function_fails_to_load(self):
        payload = PerformableFunction(function="job_fixtures:does_not_exist")

        with pytest.raises(DeserializationError):
            await payload.perform()

    def test_class_argument_is_stored_by_reference(self):
        payload = PerformableFunction.build(record_call, Widget)

        assert payload.args == ["CLASS:job_fixtures:Widget"]


class TestPerformableMethod:
    """Tests for deferred method calls on classes and entities."""

    def test_class_target(self):
        payload = PerformableMethod.build(Widget, "count", 3)

        assert payload.target == "CLASS:job_fixtures:Widget"
        assert payload.display_name() == "Widget.count"

    def test_undefined_method(self):
        with pytest.raises(AttributeError, match="undefined method"):
            PerformableMethod.build(Widget, "nope")

    def test_plain_object_target_is_rejected(self):
        with pytest.raises(InvalidPayloadError):
            PerformableMethod.build("text", "upper")

    def test_unsaved_entity_is_rejected(self):
        with pytest.raises(InvalidPayloadError, match="unsaved"):
            PerformableMethod.build(Widget(name="new"), "touch")

    def test_unknown_target_display_name(self):
        assert PerformableMethod(target="garbage", method="run").display_name() == "Unknown#run"

    async def test_class_method_runs(self):
        payload = PerformableMethod.build(Widget, "count", 3)

        assert await payload.perform() == 3
        assert CALLS == [("Widget.count", 3)]

    async def test_entity_method_runs_and_persists(self, db_session: AsyncSession):
        widget = Widget(name="w")
        db_session.add(widget)
        await db_session.commit()

        payload = PerformableMethod.build(widget, "touch", 2)
        assert payload.target == f"ENTITY:job_fixtures:Widget:{widget.id}"
        assert payload.display_name() == "Widget#touch"

        assert await payload.perform() == 2

        reloaded = (
            await db_session.execute(
                select(Widget).where(Widget.id == widget.id).execution_options(populate_existing=True)
            )
        ).scalar_one()
        assert reloaded.touched == 2

    async def _touched(self, db_session: AsyncSession, widget_id: int) -> int:
        reloaded = (
            await db_session.execute(
                select(Widget).where(Widget.id == widget_id).execution_options(populate_existing=True)
            )
        ).scalar_one()
        return reloaded.touched

    async def test_entity_passed_as_argument_persists(self, db_session: AsyncSession):
        widget = Widget(name="arg")
        db_session.add(widget)
        await db_session.commit()

        payload = PerformableFunction.build(touch_widget, widget, 3)
        assert payload.args[0] == f"ENTITY:job_fixtures:Widget:{widget.id}"

        assert await payload.perform() == 3
        assert await self._touched(db_session, widget.id) == 3

    async def test_blocking_entity_method_hits_deadline(self, db_session: AsyncSession):
        widget = Widget(name="slow")
        db_session.add(widget)
        await db_session.commit()

        payload = PerformableMethod.build(widget, "slow_touch", 0.5)
        with pytest.raises(JobTimeoutError):
            await invoke_job(payload, timeout=0.1)

        # The overrunning thread finishes on a detached copy
        await asyncio.sleep(0.6)
        assert await self._touched(db_session, widget.id) == 0

    async def test_deleted_entity_is_a_no_op(self, db_session: AsyncSession):
        widget = Widget(name="gone")
        db_session.add(widget)
        await db_session.commit()
        payload = PerformableMethod.build(widget, "touch")
        await db_session.delete(widget)
        await db_session.commit()

        assert await payload.perform() is True
        assert CALLS == []

    async def test_enqueue_method(self, repo: JobRepository, db_session: AsyncSession):
        job = await enqueue_method(repo, Widget, "count", 5, priority=3)
        await db_session.commit()

        assert job.priority == 3
        assert job.handler["type"] == "performable_method"
        assert job.name == "Widget.count"
