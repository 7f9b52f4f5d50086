"""Core orchestration logic for the message gateway."""

from __future__ import annotations

import asyncio
import math
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .attendance import AttendanceConsumer
from .bulk import BulkDispatcher
from .credentials import CredentialStore, TenantRegistryFile, is_valid_tenant_id
from .errors import GatewayError, InvalidTenantId
from .fetcher import ImageFetcher
from .handlers import build_default_handlers
from .logger import get_logger
from .persistence import DeliveryLog
from .portal import PortalClient
from .prometheus import GatewayMetrics
from .rate_limit import JitterThrottle
from .rules import HandlerRegistry, Rule, RuleEngine, load_rules
from .sessions import SessionRegistry
from .store import RedisStore
from .supervisor import ReconnectSupervisor
from .transport import DEFAULT_RECIPIENT_SUFFIX, InboundMessage, MessageTransportProvider, OutboundPayload

DEFAULT_RETENTION_SECONDS = 7 * 24 * 3600


class GatewayCore:
    """Wire sessions, supervision, rules, attendance and bulk delivery together."""

    def __init__(
        self,
        *,
        provider: MessageTransportProvider,
        store=None,
        redis_url: str = "redis://127.0.0.1:6379",
        redis_key_prefix: str = "",
        credentials_dir: str = ".",
        credentials_prefix: str = "auth_info",
        sessions_file: str = "sessions.txt",
        db_path: str | None = "/data/message_gateway.db",
        rules: Optional[List[Rule]] = None,
        rules_path: str | None = None,
        handlers: HandlerRegistry | None = None,
        portal_url: str | None = None,
        portal_token: str | None = None,
        bulk_secret: str | None = None,
        timezone: str = "UTC",
        attendance_interval: float = 60.0,
        connect_timeout: float = 30.0,
        reconnect_delay: float = 2.0,
        recipient_suffix: str = DEFAULT_RECIPIENT_SUFFIX,
        bulk_min_delay: float = 20.0,
        bulk_max_delay: float = 50.0,
        cache_refresh_interval: float | None = 24 * 3600,
        admin_alerts_interval: float | None = 30 * 60,
        delivery_retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        image_fetcher: ImageFetcher | None = None,
        metrics: GatewayMetrics | None = None,
        test_mode: bool = False,
        logger=None,
    ):
        """Prepare the runtime collaborators; nothing runs before :meth:`start`."""
        self.logger = logger or get_logger()
        self.metrics = metrics or GatewayMetrics()
        self.credentials = CredentialStore(credentials_dir, credentials_prefix)
        self.registry_file = TenantRegistryFile(sessions_file)
        self.delivery_log = DeliveryLog(db_path or ":memory:")
        self.store = store if store is not None else RedisStore(redis_url, key_prefix=redis_key_prefix)
        self.portal = PortalClient(portal_url, portal_token)
        self.image_fetcher = image_fetcher or ImageFetcher()
        self._bulk_secret = bulk_secret
        self._test_mode = bool(test_mode)
        self._retention_seconds = delivery_retention_seconds

        self.sessions = SessionRegistry(
            provider,
            self.credentials,
            connect_timeout=connect_timeout,
            recipient_suffix=recipient_suffix,
            on_inbound=self._on_inbound,
            metrics=self.metrics,
        )
        self.supervisor = ReconnectSupervisor(self.sessions, reconnect_delay=reconnect_delay, metrics=self.metrics)

        handler_registry = build_default_handlers(self.sessions, self.portal, handlers)
        if rules is None:
            rules = load_rules(rules_path) if rules_path else []
        self.rules = RuleEngine(rules, handler_registry, recipient_suffix=recipient_suffix)

        self.attendance = AttendanceConsumer(
            self.store,
            self.sessions,
            timezone=timezone,
            delivery_log=self.delivery_log,
            metrics=self.metrics,
        )
        self.bulk = BulkDispatcher(
            self.sessions,
            throttle=JitterThrottle(bulk_min_delay, bulk_max_delay),
            delivery_log=self.delivery_log,
        )

        self._attendance_interval = math.inf if self._test_mode else max(1.0, float(attendance_interval))
        self._cache_refresh_interval = cache_refresh_interval
        self._admin_alerts_interval = admin_alerts_interval

        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._background: Set[asyncio.Task] = set()

    # --------------------------------------------------------------------- utils
    @staticmethod
    def _utc_now_iso() -> str:
        """Return the current UTC timestamp as ISO-8601 string."""
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        """Run ``coro`` in the background, keeping a reference until it ends."""
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Initialise the delivery log and the external store connection."""
        await self.delivery_log.init_db()
        connect = getattr(self.store, "connect", None)
        if connect is not None:
            try:
                await connect()
            except Exception as exc:
                self.logger.error("Store connection failed, attendance ticks will retry: %s", exc)

    async def start(self) -> None:
        """Start background loops and resume the sessions that have credentials."""
        self.logger.debug("Starting GatewayCore...")
        await self.init()
        self._stop.clear()
        self.supervisor.start()
        self._tasks.append(asyncio.create_task(self._attendance_loop(), name="attendance-loop"))
        if not self._test_mode:
            self._tasks.append(asyncio.create_task(self._cleanup_loop(), name="delivery-cleanup-loop"))
            if self.portal.configured:
                if self._cache_refresh_interval:
                    self._tasks.append(
                        asyncio.create_task(
                            self._periodic_loop("cache-refresh", self._cache_refresh_interval, self.portal.refresh_cache),
                            name="cache-refresh-loop",
                        )
                    )
                if self._admin_alerts_interval:
                    self._tasks.append(
                        asyncio.create_task(
                            self._periodic_loop("admin-alerts", self._admin_alerts_interval, self.portal.send_admin_alerts),
                            name="admin-alerts-loop",
                        )
                    )
        self.resume_saved_sessions()
        self.logger.debug("All background tasks created")

    def resume_saved_sessions(self) -> List[str]:
        """Auto-start every registered tenant whose credentials exist."""
        resumed: List[str] = []
        for tenant_id in self.registry_file.read():
            if self.credentials.exists(tenant_id):
                self.logger.info("[%s] Existing session found, reconnecting...", tenant_id)
                self._spawn(self._auto_start(tenant_id), name=f"auto-start-{tenant_id}")
                resumed.append(tenant_id)
            else:
                self.logger.info("[%s] No saved session, waiting for an explicit start", tenant_id)
        return resumed

    async def _auto_start(self, tenant_id: str) -> None:
        result = await self.sessions.request_start(tenant_id)
        if result.status == "error":
            self.logger.error("[%s] Auto-start failed: %s", tenant_id, result.message)

    async def stop(self) -> None:
        """Stop the background tasks gracefully and close every connection."""
        self._stop.set()
        self._wake_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.supervisor.stop()
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        await self.sessions.close_all()
        close = getattr(self.store, "close", None)
        if close is not None:
            try:
                await close()
            except Exception as exc:
                self.logger.warning("Store close failed: %s", exc)

    # ----------------------------------------------------------------- inbound
    async def _on_inbound(self, tenant_id: str, message: InboundMessage) -> None:
        await self.rules.handle(tenant_id, message, on_match=self.sessions.mark_read)

    # ------------------------------------------------------------------ loops
    async def _attendance_loop(self) -> None:
        """Run an attendance tick every interval or when woken by 'run now'."""
        first_iteration = True
        while not self._stop.is_set():
            if first_iteration and self._test_mode:
                await self._wait_for_wakeup(self._attendance_interval)
            first_iteration = False
            if self._stop.is_set():
                break
            try:
                await self.attendance.tick()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in attendance loop: %s", exc)
            await self._wait_for_wakeup(self._attendance_interval)

    async def _periodic_loop(self, name: str, interval: float, job: Callable[[], Awaitable[Any]]) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await job()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in %s job: %s", name, exc)

    async def _cleanup_loop(self) -> None:
        """Apply the delivery log retention once an hour."""
        while not self._stop.is_set():
            await self._apply_retention()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=3600)
            except asyncio.TimeoutError:
                continue

    async def _apply_retention(self) -> int:
        if self._retention_seconds <= 0:
            return 0
        threshold = int(time.time()) - self._retention_seconds
        try:
            return await self.delivery_log.remove_before(threshold)
        except Exception:
            self.logger.exception("Delivery log retention failed")
            return 0

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the loop while allowing external wake-ups via 'run now'."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(float(timeout)):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    # --------------------------------------------------------------- commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload or {}
        try:
            if cmd == "run now":
                self._wake_event.set()
                return {"ok": True}
            if cmd == "listSessions":
                return {"ok": True, "sessions": self.sessions.snapshot()}
            if cmd == "startSession":
                return await self._start_session(payload)
            if cmd == "sessionStatus":
                tenant_id = self._tenant_id(payload)
                return {"ok": True, **self.sessions.status(tenant_id)}
            if cmd == "destroySession":
                tenant_id = self._tenant_id(payload)
                await self.sessions.destroy(tenant_id)
                return {"ok": True, "message": f"Session {tenant_id} ended and data deleted"}
            if cmd == "send":
                return await self._send(payload)
            if cmd == "sendBulk":
                return await self._send_bulk(payload)
            if cmd == "listDeliveries":
                tenant_id = self._tenant_id(payload) if payload.get("tenant_id") is not None else None
                limit = int(payload.get("limit") or 100)
                deliveries = await self.delivery_log.list_deliveries(tenant_id, limit=limit)
                return {"ok": True, "deliveries": deliveries}
        except GatewayError as exc:
            return {"ok": False, "error": str(exc), "error_code": exc.code}
        return {"ok": False, "error": "unknown command"}

    @staticmethod
    def _tenant_id(payload: Dict[str, Any]) -> str:
        tenant_id = payload.get("tenant_id")
        if not is_valid_tenant_id(tenant_id):
            raise InvalidTenantId(str(tenant_id))
        return tenant_id

    async def _start_session(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        tenant_id = self._tenant_id(payload)
        self.registry_file.ensure(tenant_id)
        result = await self.sessions.request_start(tenant_id)
        if result.status == "error":
            return {"ok": False, "status": "error", "error": result.message, "error_code": "start_failed"}
        response: Dict[str, Any] = {"ok": True, **result.as_dict()}
        status = self.sessions.status(tenant_id)
        if status.get("identity") is not None:
            response["identity"] = status["identity"]
        return response

    async def _send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        tenant_id = self._tenant_id(payload)
        number = payload.get("number")
        message = payload.get("message")
        image_url = payload.get("image_url")
        if not number:
            return {"ok": False, "error": "Missing number", "error_code": "validation_error"}
        if image_url:
            if not self.sessions.is_connected(tenant_id):
                return {"ok": False, "error": "Session is not connected", "error_code": "not_connected"}
            image = await self.image_fetcher.fetch(image_url)
            if not image:
                return {"ok": False, "error": "Could not retrieve image from URL", "error_code": "image_unavailable"}
            out = OutboundPayload.from_image(image, caption=message or "")
        elif not message:
            return {"ok": False, "error": "Missing message for text message", "error_code": "validation_error"}
        else:
            out = OutboundPayload.from_text(message)

        try:
            await self.sessions.send(tenant_id, number, out, source="direct")
        except GatewayError as exc:
            await self._log_delivery(tenant_id, number, "direct", "error", str(exc))
            raise
        await self._log_delivery(tenant_id, number, "direct", "sent", None)
        result = {"ok": True, "tenant_id": tenant_id, "to": number, "type": out.kind, "timestamp": self._utc_now_iso()}
        if image_url:
            result.update({"caption": message or "", "image_url": image_url})
        else:
            result["message"] = message
        return result

    async def _send_bulk(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        tenant_id = self._tenant_id(payload)
        if self._bulk_secret is None or payload.get("secret") != self._bulk_secret:
            return {"ok": False, "error": "Forbidden: invalid API key", "error_code": "forbidden"}
        if not self.sessions.is_connected(tenant_id):
            return {"ok": False, "error": "Session is not connected", "error_code": "not_connected"}
        messages = payload.get("messages")
        if not isinstance(messages, list) or not messages:
            return {"ok": False, "error": "Missing or invalid messages array", "error_code": "validation_error"}
        self._spawn(self._run_bulk(tenant_id, messages), name=f"bulk-{tenant_id}")
        return {"ok": True, "accepted": len(messages)}

    async def _run_bulk(self, tenant_id: str, messages: List[Dict[str, Any]]) -> None:
        try:
            results = await self.bulk.dispatch(tenant_id, messages)
        except Exception:
            self.logger.exception("[%s] Bulk dispatch aborted", tenant_id)
            return
        sent = sum(1 for item in results if item["status"] == "sent")
        self.logger.info("[%s] Bulk dispatch finished: %d/%d sent", tenant_id, sent, len(results))

    async def _log_delivery(self, tenant_id: str, recipient: str, source: str, status: str, error: Optional[str]) -> None:
        try:
            await self.delivery_log.log_delivery(tenant_id, recipient, source=source, status=status, error=error)
        except Exception:
            self.logger.exception("[%s] Failed to record delivery", tenant_id)
