import asyncio
import time

import pytest

from async_message_gateway.core import GatewayCore
from async_message_gateway.fetcher import ImageFetcher
from async_message_gateway.rate_limit import JitterThrottle
from async_message_gateway.rules import HandlerRegistry
from async_message_gateway.transport import InboundMessage, TransportEvent

from gateway_fakes import FakeProvider, FakeStore, quiet_logger

BULK_SECRET = "bulk-secret"


async def make_core(tmp_path, provider=None, **kwargs) -> GatewayCore:
    provider = provider or FakeProvider()
    kwargs.setdefault("store", FakeStore())
    core = GatewayCore(
        provider=provider,
        credentials_dir=str(tmp_path),
        sessions_file=str(tmp_path / "sessions.txt"),
        db_path=str(tmp_path / "gateway.db"),
        bulk_secret=BULK_SECRET,
        test_mode=True,
        logger=quiet_logger(),
        **kwargs,
    )
    await core.delivery_log.init_db()
    core.bulk.throttle = JitterThrottle(0, 0)
    return core


@pytest.mark.asyncio
async def test_start_session_registers_tenant(tmp_path):
    core = await make_core(tmp_path)

    result = await core.handle_command("startSession", {"tenant_id": "school1"})

    assert result["ok"] is True
    assert result["status"] == "connected"
    assert result["identity"] == {"id": "school1@s.whatsapp.net"}
    assert core.registry_file.read() == ["school1"]

    status = await core.handle_command("sessionStatus", {"tenant_id": "school1"})
    assert status["status"] == "connected"


@pytest.mark.asyncio
async def test_start_session_returns_qr(tmp_path):
    core = await make_core(tmp_path, provider=FakeProvider(qr="QR-DATA"))

    result = await core.handle_command("startSession", {"tenant_id": "school1"})

    assert result == {"ok": True, "status": "qr", "qr": "QR-DATA"}


@pytest.mark.asyncio
async def test_start_session_failure(tmp_path):
    provider = FakeProvider()
    provider.failures.append(RuntimeError("provider offline"))
    core = await make_core(tmp_path, provider=provider)

    result = await core.handle_command("startSession", {"tenant_id": "school1"})

    assert result["ok"] is False
    assert result["error"] == "provider offline"


@pytest.mark.asyncio
async def test_invalid_tenant_id_is_rejected(tmp_path):
    core = await make_core(tmp_path)

    result = await core.handle_command("startSession", {"tenant_id": "../etc"})

    assert result["ok"] is False
    assert result["error_code"] == "invalid_tenant_id"
    assert not (tmp_path / "sessions.txt").exists()


@pytest.mark.asyncio
async def test_send_text_and_log_delivery(tmp_path):
    provider = FakeProvider()
    core = await make_core(tmp_path, provider=provider)
    await core.handle_command("startSession", {"tenant_id": "school1"})

    result = await core.handle_command("send", {"tenant_id": "school1", "number": "923001234567", "message": "Hello"})

    assert result["ok"] is True
    assert result["type"] == "text"
    assert result["message"] == "Hello"
    recipient, payload = provider.last_handle().sent[0]
    assert recipient == "923001234567@s.whatsapp.net"
    assert payload.text == "Hello"

    deliveries = await core.handle_command("listDeliveries", {"tenant_id": "school1"})
    assert [(d["recipient"], d["source"], d["status"]) for d in deliveries["deliveries"]] == [
        ("923001234567", "direct", "sent")
    ]


@pytest.mark.asyncio
async def test_send_validation_and_state_errors(tmp_path):
    core = await make_core(tmp_path, provider=FakeProvider(qr="QR"))

    missing = await core.handle_command("send", {"tenant_id": "school1", "message": "Hello"})
    assert missing["error_code"] == "validation_error"

    unknown = await core.handle_command("send", {"tenant_id": "school1", "number": "923001234567", "message": "Hi"})
    assert unknown["error_code"] == "unknown_session"

    await core.handle_command("startSession", {"tenant_id": "school1"})
    not_connected = await core.handle_command(
        "send", {"tenant_id": "school1", "number": "923001234567", "message": "Hi"}
    )
    assert not_connected["ok"] is False
    assert not_connected["error_code"] == "not_connected"

    deliveries = await core.handle_command("listDeliveries", {"tenant_id": "school1"})
    assert [d["status"] for d in deliveries["deliveries"]] == ["error", "error"]


@pytest.mark.asyncio
async def test_send_image_fetches_content(tmp_path):
    provider = FakeProvider()

    async def fetch(url):
        return b"jpeg-bytes"

    core = await make_core(tmp_path, provider=provider, image_fetcher=ImageFetcher(fetch_callable=fetch))
    await core.handle_command("startSession", {"tenant_id": "school1"})

    result = await core.handle_command(
        "send",
        {"tenant_id": "school1", "number": "923001234567", "message": "Report card", "image_url": "https://x/y.jpg"},
    )

    assert result["ok"] is True
    assert result["type"] == "image"
    assert result["caption"] == "Report card"
    payload = provider.last_handle().sent[0][1]
    assert payload.image == b"jpeg-bytes"
    assert payload.caption == "Report card"


@pytest.mark.asyncio
async def test_send_image_unavailable(tmp_path):
    async def fetch(url):
        return None

    core = await make_core(tmp_path, image_fetcher=ImageFetcher(fetch_callable=fetch))
    await core.handle_command("startSession", {"tenant_id": "school1"})

    result = await core.handle_command(
        "send", {"tenant_id": "school1", "number": "923001234567", "image_url": "https://x/y.jpg"}
    )

    assert result["error_code"] == "image_unavailable"


@pytest.mark.asyncio
async def test_send_bulk_checks_secret_state_and_payload(tmp_path):
    core = await make_core(tmp_path, provider=FakeProvider(qr="QR"))
    messages = [{"recipient": "923001111111", "message": "hi"}]

    forbidden = await core.handle_command("sendBulk", {"tenant_id": "school1", "messages": messages, "secret": "x"})
    assert forbidden["error_code"] == "forbidden"

    not_connected = await core.handle_command(
        "sendBulk", {"tenant_id": "school1", "messages": messages, "secret": BULK_SECRET}
    )
    assert not_connected["error_code"] == "not_connected"

    core.sessions.provider.qr = None
    await core.handle_command("startSession", {"tenant_id": "school1"})
    invalid = await core.handle_command("sendBulk", {"tenant_id": "school1", "messages": [], "secret": BULK_SECRET})
    assert invalid["error_code"] == "validation_error"


@pytest.mark.asyncio
async def test_send_bulk_runs_in_background(tmp_path):
    provider = FakeProvider()
    core = await make_core(tmp_path, provider=provider)
    await core.handle_command("startSession", {"tenant_id": "school1"})
    messages = [
        {"recipient": "923001111111", "message": "one"},
        {"recipient": "923002222222", "message": "two"},
    ]

    result = await core.handle_command(
        "sendBulk", {"tenant_id": "school1", "messages": messages, "secret": BULK_SECRET}
    )

    assert result == {"ok": True, "accepted": 2}
    await asyncio.gather(*list(core._background))
    assert len(provider.last_handle().sent) == 2


@pytest.mark.asyncio
async def test_destroy_session_removes_state(tmp_path):
    core = await make_core(tmp_path)
    await core.handle_command("startSession", {"tenant_id": "school1"})
    creds = core.credentials.path_for("school1")
    creds.mkdir()

    result = await core.handle_command("destroySession", {"tenant_id": "school1"})

    assert result["ok"] is True
    assert not creds.exists()
    status = await core.handle_command("sessionStatus", {"tenant_id": "school1"})
    assert status["status"] == "not_initialized"


@pytest.mark.asyncio
async def test_list_sessions_and_unknown_command(tmp_path):
    core = await make_core(tmp_path)
    await core.handle_command("startSession", {"tenant_id": "school1"})

    sessions = await core.handle_command("listSessions")
    assert [s["tenant_id"] for s in sessions["sessions"]] == ["school1"]
    assert sessions["sessions"][0]["state"] == "connected"

    assert await core.handle_command("noSuchCommand") == {"ok": False, "error": "unknown command"}


@pytest.mark.asyncio
async def test_inbound_rule_marks_read_and_runs_handler(tmp_path):
    provider = FakeProvider()
    handlers = HandlerRegistry()
    calls = []

    @handlers.handler("record")
    async def record(ctx, params):
        calls.append(params)

    rules = [{"value": "help", "actions": [{"type": "handler", "name": "record", "params": {"sender": ""}}]}]
    core = await make_core(tmp_path, provider=provider, rules=rules, handlers=handlers)
    await core.handle_command("startSession", {"tenant_id": "school1"})
    message = InboundMessage("923001234567@s.whatsapp.net", "HELP", time.time())

    await provider.last_handle().emit(TransportEvent.inbound(message))

    assert calls == [{"sender": "923001234567"}]
    assert provider.last_handle().read == [message]


@pytest.mark.asyncio
async def test_resume_saved_sessions(tmp_path):
    provider = FakeProvider()
    core = await make_core(tmp_path, provider=provider)
    (tmp_path / "sessions.txt").write_text("school1\nschool2\n")
    core.credentials.path_for("school1").mkdir()

    resumed = core.resume_saved_sessions()
    await asyncio.gather(*list(core._background))

    assert resumed == ["school1"]
    assert provider.connects == ["school1"]
    assert core.sessions.is_connected("school1")


@pytest.mark.asyncio
async def test_run_now_triggers_attendance_tick(tmp_path):
    store = FakeStore()
    core = await make_core(tmp_path, store=store)
    ticks = []

    async def tick(tenant_ids=None):
        ticks.append(tenant_ids)
        return {}

    core.attendance.tick = tick
    await core.start()
    try:
        await asyncio.sleep(0.01)
        assert ticks == []
        result = await core.handle_command("run now")
        assert result == {"ok": True}
        for _ in range(50):
            if ticks:
                break
            await asyncio.sleep(0.01)
        assert ticks == [None]
    finally:
        await core.stop()


@pytest.mark.asyncio
async def test_stop_closes_connections_and_keeps_credentials(tmp_path):
    provider = FakeProvider()
    core = await make_core(tmp_path, provider=provider)
    await core.start()
    await core.handle_command("startSession", {"tenant_id": "school1"})
    creds = core.credentials.path_for("school1")
    creds.mkdir()

    await core.stop()

    assert provider.last_handle().closed
    assert creds.exists()
    assert not core.sessions.is_connected("school1")


@pytest.mark.asyncio
async def test_retention_removes_old_deliveries(tmp_path):
    core = await make_core(tmp_path, delivery_retention_seconds=60)
    await core.delivery_log.log_delivery("school1", "923001111111", source="bulk", status="sent", ts=1)
    await core.delivery_log.log_delivery("school1", "923002222222", source="bulk", status="sent")

    assert await core._apply_retention() == 1
    remaining = await core.delivery_log.list_deliveries("school1")
    assert [r["recipient"] for r in remaining] == ["923002222222"]
