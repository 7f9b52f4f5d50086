import asyncio
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from async_message_gateway.attendance import (
    CHECKIN,
    CHECKOUT,
    DEFAULT_TEMPLATES,
    OUTSIDE,
    AttendanceConsumer,
    classify,
    pretty_time,
    render,
    time_to_seconds,
)
from async_message_gateway.credentials import CredentialStore
from async_message_gateway.models import MessageTemplate, StudentRecord, TenantConfig
from async_message_gateway.sessions import SessionRegistry

from gateway_fakes import DummyMetrics, FakeProvider, FakeStore, quiet_logger

UTC = ZoneInfo("UTC")
WINDOWS = TenantConfig(
    name="Green Valley School",
    checkinStart="07:50:00",
    checkinEnd="08:10:00",
    checkoutStart="13:00:00",
    checkoutEnd="13:30:00",
    bufferMinutes=5,
)


def epoch(hour, minute, second=0):
    return datetime(2024, 3, 4, hour, minute, second, tzinfo=timezone.utc).timestamp()


def event(badge="1001", at=None, tenant_key="gvs"):
    return {"badgeId": badge, "tenantKey": tenant_key, "occurredAtEpochSeconds": at or epoch(7, 46)}


def test_time_to_seconds():
    assert time_to_seconds("07:50:00") == 7 * 3600 + 50 * 60
    assert time_to_seconds("13:05") == 13 * 3600 + 5 * 60
    assert time_to_seconds("aa:10:05") == 10 * 60 + 5
    assert time_to_seconds(None) == 0
    assert time_to_seconds("inf:00:00") == 0
    assert time_to_seconds("nan:10:00") == 600


def test_classify_with_buffer():
    assert classify(time_to_seconds("07:46:00"), WINDOWS) == CHECKIN
    assert classify(time_to_seconds("07:45:00"), WINDOWS) == CHECKIN
    assert classify(time_to_seconds("08:15:00"), WINDOWS) == CHECKIN
    assert classify(time_to_seconds("07:40:00"), WINDOWS) == OUTSIDE
    assert classify(time_to_seconds("08:15:01"), WINDOWS) == OUTSIDE
    assert classify(time_to_seconds("12:56:00"), WINDOWS) == CHECKOUT
    assert classify(time_to_seconds("13:36:00"), WINDOWS) == OUTSIDE


def test_pretty_time():
    assert pretty_time(epoch(7, 46), UTC) == "7:46 AM"
    assert pretty_time(epoch(0, 5), UTC) == "12:05 AM"
    assert pretty_time(epoch(13, 30), UTC) == "1:30 PM"
    assert pretty_time(epoch(7, 46), ZoneInfo("Asia/Karachi")) == "12:46 PM"


def test_render_placeholders():
    text = render(
        "{father_name}: {student_name} of {class_name} reached {school_name} at {date_time}. {unknown}",
        {
            "student_name": "Ali",
            "father_name": "Ahmed",
            "date_time": "7:46 AM",
            "class_name": "Grade 5",
            "school_name": "GVS",
        },
    )
    assert text == "Ahmed: Ali of Grade 5 reached GVS at 7:46 AM. {unknown}"


def test_render_repeated_and_missing_values():
    assert render("{student_name} / {student_name}", {"student_name": "Ali"}) == "Ali / Ali"
    assert render("Hi {father_name}", {"father_name": None}) == "Hi {father_name}"


async def make_consumer(tmp_path, store=None, connect=("school1",)):
    provider = FakeProvider()
    registry = SessionRegistry(provider, CredentialStore(tmp_path), logger=quiet_logger())
    for tenant_id in connect:
        await registry.request_start(tenant_id)
    store = store or FakeStore()
    store.students["1001"] = StudentRecord(
        name="Ali", guardianName="Ahmed", guardianContact="923001234567", standardName="Grade 5"
    )
    store.configs["gvs"] = WINDOWS
    metrics = DummyMetrics()
    consumer = AttendanceConsumer(store, registry, timezone="UTC", metrics=metrics, logger=quiet_logger())
    return consumer, registry, provider, store, metrics


@pytest.mark.asyncio
async def test_drain_sends_arrival_with_default_template(tmp_path):
    consumer, _, provider, store, metrics = await make_consumer(tmp_path)
    store.queue("school1", event())

    report = await consumer.drain("school1")

    assert report.popped == 1 and report.sent == 1
    recipient, payload = provider.last_handle().sent[0]
    assert recipient == "923001234567@s.whatsapp.net"
    assert payload.text == render(
        DEFAULT_TEMPLATES["arrival"],
        {
            "student_name": "Ali",
            "father_name": "Ahmed",
            "date_time": "7:46 AM",
            "class_name": "Grade 5",
            "school_name": "Green Valley School",
        },
    )
    assert metrics.attendance == [("school1", CHECKIN)]


@pytest.mark.asyncio
async def test_drain_uses_tenant_templates(tmp_path):
    consumer, _, provider, store, _ = await make_consumer(tmp_path)
    store.templates["gvs"] = [
        MessageTemplate(kind="arrival", body="in {student_name}"),
        MessageTemplate(kind="departure", body="{student_name} left at {date_time}"),
    ]
    store.queue("school1", event(at=epoch(13, 10)))

    await consumer.drain("school1")

    assert provider.last_handle().sent[0][1].text == "Ali left at 1:10 PM"


@pytest.mark.asyncio
async def test_duplicate_badge_processed_once_per_drain(tmp_path):
    consumer, _, provider, store, _ = await make_consumer(tmp_path)
    store.queue("school1", event(), event(at=epoch(7, 48)))

    report = await consumer.drain("school1")

    assert report.popped == 2
    assert report.sent == 1
    assert report.duplicates == 1
    assert len(provider.last_handle().sent) == 1

    store.queue("school1", event(at=epoch(7, 55)))
    await consumer.drain("school1")
    assert len(provider.last_handle().sent) == 2


@pytest.mark.asyncio
async def test_event_outside_windows_sends_nothing(tmp_path):
    consumer, _, provider, store, metrics = await make_consumer(tmp_path)
    store.queue("school1", event(at=epoch(7, 40)))

    report = await consumer.drain("school1")

    assert report.outside == 1
    assert provider.last_handle().sent == []
    assert metrics.attendance == [("school1", OUTSIDE)]


@pytest.mark.asyncio
async def test_malformed_and_unknown_entries_are_skipped(tmp_path):
    consumer, _, provider, store, _ = await make_consumer(tmp_path)
    store.students["1002"] = StudentRecord(name="Sara", guardianName="Bilal", guardianContact="923007654321")
    store.queue(
        "school1",
        "not json",
        {"badgeId": "1001"},
        event(badge="9999"),
        event(badge="1002", tenant_key="unknown"),
        event(),
    )

    report = await consumer.drain("school1")

    assert report.popped == 5
    assert report.invalid == 2
    assert report.missing == 2
    assert report.sent == 1
    assert len(provider.last_handle().sent) == 1


@pytest.mark.asyncio
async def test_send_failure_does_not_stop_drain(tmp_path):
    consumer, _, provider, store, _ = await make_consumer(tmp_path)
    store.students["1002"] = StudentRecord(name="Sara", guardianName="Bilal", guardianContact="923007654321")
    provider.last_handle().send_errors.append(ConnectionError("socket closed"))
    store.queue("school1", event(), event(badge="1002"))

    report = await consumer.drain("school1")

    assert report.failed == 1
    assert report.sent == 1
    assert provider.last_handle().sent[0][0] == "923007654321@s.whatsapp.net"


@pytest.mark.asyncio
async def test_tick_only_drains_connected_tenants(tmp_path):
    consumer, registry, _, store, _ = await make_consumer(tmp_path)
    store.queue("school1", event())
    store.queue("school2", event())

    reports = await consumer.tick(["school1", "school2"])

    assert list(reports) == ["school1"]
    assert store.queues["school1"] == []
    assert len(store.queues["school2"]) == 1


@pytest.mark.asyncio
async def test_tick_defaults_to_connected_sessions(tmp_path):
    consumer, registry, provider, store, _ = await make_consumer(tmp_path, connect=("school1", "school2"))
    await registry.destroy("school2")
    store.queue("school1", event())

    reports = await consumer.tick()

    assert list(reports) == ["school1"]


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(tmp_path):
    consumer, _, _, store, _ = await make_consumer(tmp_path)
    store.queue("school1", event())

    gate = asyncio.Event()
    original_pop = store.pop_event

    async def slow_pop(tenant_id):
        await gate.wait()
        return await original_pop(tenant_id)

    store.pop_event = slow_pop
    first = asyncio.create_task(consumer.tick())
    await asyncio.sleep(0)
    assert consumer.running

    assert await consumer.tick() is None

    gate.set()
    reports = await first
    assert reports["school1"].sent == 1
    assert not consumer.running


@pytest.mark.asyncio
async def test_drain_failure_isolated_per_tenant(tmp_path):
    consumer, _, provider, store, _ = await make_consumer(tmp_path, connect=("school1", "school2"))
    store.queue("school2", event())
    original_pop = store.pop_event

    async def pop(tenant_id):
        if tenant_id == "school1":
            raise ConnectionError("redis down")
        return await original_pop(tenant_id)

    store.pop_event = pop

    reports = await consumer.tick()

    assert list(reports) == ["school2"]
    assert reports["school2"].sent == 1


@pytest.mark.asyncio
async def test_out_of_range_timestamp_does_not_stop_tick(tmp_path):
    consumer, _, provider, store, metrics = await make_consumer(tmp_path)
    store.queue("school1", event(at=1e20), event())

    reports = await consumer.tick(["school1"])

    report = reports["school1"]
    assert report.popped == 2
    assert report.invalid == 1
    assert report.sent == 1
    assert len(provider.last_handle().sent) == 1
    assert ("school1", "invalid") in metrics.attendance


@pytest.mark.asyncio
async def test_timestamp_overflowing_local_zone_is_discarded(tmp_path):
    consumer, _, provider, store, _ = await make_consumer(tmp_path)
    consumer.timezone = ZoneInfo("Asia/Karachi")
    store.students["1002"] = StudentRecord(name="Sara", guardianName="Bilal", guardianContact="923007654321")
    store.queue("school1", event(at=253402300799), event(badge="1002", at=epoch(2, 46)))

    report = await consumer.drain("school1")

    assert report.invalid == 1
    assert report.sent == 1
    assert provider.last_handle().sent[0][0] == "923007654321@s.whatsapp.net"
