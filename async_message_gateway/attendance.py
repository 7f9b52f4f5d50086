"""Attendance queue consumer.

Every tick drains the attendance queue of each connected tenant. An event is
classified against the tenant check-in and check-out windows, widened by
``bufferMinutes`` on both edges, and turned into an arrival or departure
notification for the student's guardian. Events outside both windows are
dropped without a message.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple
from zoneinfo import ZoneInfo

from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigNotFound, GatewayError
from .logger import get_logger
from .models import AttendanceEvent, MessageTemplate, StudentRecord, TenantConfig
from .sessions import SessionRegistry, SessionState
from .transport import OutboundPayload

CHECKIN = "checkin"
CHECKOUT = "checkout"
OUTSIDE = "outside"

ARRIVAL = "arrival"
DEPARTURE = "departure"
TEMPLATE_KIND = {CHECKIN: ARRIVAL, CHECKOUT: DEPARTURE}

DEFAULT_TEMPLATES = {
    ARRIVAL: "Dear {father_name}, {student_name} ({class_name}) has arrived at {school_name} at {date_time}.",
    DEPARTURE: "Dear {father_name}, {student_name} ({class_name}) has left {school_name} at {date_time}.",
}


def time_to_seconds(value: str | None) -> int:
    """Convert ``HH:MM[:SS]`` into seconds since midnight; bad parts count as 0."""
    parts = str(value or "00:00:00").split(":")
    numbers: List[int] = []
    for part in (parts + ["0", "0", "0"])[:3]:
        try:
            numbers.append(int(float(part)))
        except (ValueError, OverflowError):
            numbers.append(0)
    hours, minutes, seconds = numbers
    return hours * 3600 + minutes * 60 + seconds


def _local_datetime(epoch_seconds: float, tz: ZoneInfo) -> datetime:
    return datetime.fromtimestamp(float(epoch_seconds), timezone.utc).astimezone(tz)


def seconds_since_midnight(epoch_seconds: float, tz: ZoneInfo) -> int:
    local = _local_datetime(epoch_seconds, tz)
    return local.hour * 3600 + local.minute * 60 + local.second


def pretty_time(epoch_seconds: float, tz: ZoneInfo) -> str:
    """Format as ``7:46 AM``."""
    local = _local_datetime(epoch_seconds, tz)
    hour = local.hour % 12 or 12
    return f"{hour}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"


def window_bounds(config: TenantConfig) -> Tuple[Tuple[float, float], Tuple[float, float]]:
    """Return ``((checkin_lo, checkin_hi), (checkout_lo, checkout_hi))`` in seconds."""
    buffer = float(config.buffer_minutes or 0) * 60
    checkin = (time_to_seconds(config.checkin_start) - buffer, time_to_seconds(config.checkin_end) + buffer)
    checkout = (time_to_seconds(config.checkout_start) - buffer, time_to_seconds(config.checkout_end) + buffer)
    return checkin, checkout


def classify(local_seconds: float, config: TenantConfig) -> str:
    """Classify a time of day; both window edges are inclusive."""
    (in_lo, in_hi), (out_lo, out_hi) = window_bounds(config)
    if in_lo <= local_seconds <= in_hi:
        return CHECKIN
    if out_lo <= local_seconds <= out_hi:
        return CHECKOUT
    return OUTSIDE


def render(template: str, fields: Mapping[str, Optional[str]]) -> str:
    """Replace ``{key}`` placeholders; unknown placeholders stay as they are."""
    text = template or ""
    for key, value in fields.items():
        if value is None:
            continue
        text = text.replace("{" + key + "}", str(value))
    return text


def select_template(kind: str, templates: Iterable[MessageTemplate]) -> str:
    for template in templates:
        if template.kind == kind and template.body:
            return template.body
    return DEFAULT_TEMPLATES[kind]


@dataclass
class DrainReport:
    popped: int = 0
    sent: int = 0
    duplicates: int = 0
    invalid: int = 0
    missing: int = 0
    outside: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class AttendanceConsumer:
    """Drain attendance queues into guardian notifications."""

    def __init__(
        self,
        store,
        sessions: SessionRegistry,
        *,
        timezone: str = "UTC",
        delivery_log=None,
        metrics=None,
        logger=None,
    ):
        self.store = store
        self.sessions = sessions
        self.timezone = ZoneInfo(timezone)
        self.delivery_log = delivery_log
        self.metrics = metrics
        self.logger = logger or get_logger("Attendance")
        self._tick_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._tick_lock.locked()

    async def tick(self, tenant_ids: Iterable[str] | None = None) -> Optional[Dict[str, DrainReport]]:
        """Drain the queues of connected tenants.

        Returns ``None`` when a previous tick is still running; overlapping
        ticks are skipped, not queued.
        """
        if self._tick_lock.locked():
            self.logger.info("Previous attendance tick still running, skipping")
            return None
        async with self._tick_lock:
            tenants = list(tenant_ids) if tenant_ids is not None else self.sessions.tenants(SessionState.CONNECTED)
            reports: Dict[str, DrainReport] = {}
            for tenant_id in tenants:
                if not self.sessions.is_connected(tenant_id):
                    self.logger.info("[%s] Skipping attendance drain: session is not connected", tenant_id)
                    continue
                try:
                    reports[tenant_id] = await self.drain(tenant_id)
                except Exception:
                    self.logger.exception("[%s] Attendance drain aborted", tenant_id)
            return reports

    async def drain(self, tenant_id: str) -> DrainReport:
        """Pop and process every queued event of ``tenant_id``."""
        report = DrainReport()
        seen: Set[str] = set()
        while True:
            raw = await self.store.pop_event(tenant_id)
            if raw is None:
                break
            report.popped += 1
            await self._process(tenant_id, raw, seen, report)
        if report.popped:
            self.logger.info("[%s] Attendance drain finished: %s", tenant_id, report.as_dict())
        return report

    async def _process(self, tenant_id: str, raw: str | bytes, seen: Set[str], report: DrainReport) -> None:
        try:
            event = AttendanceEvent.model_validate_json(raw)
        except PydanticValidationError as exc:
            self.logger.warning("[%s] Discarding malformed attendance entry %r: %s", tenant_id, raw, exc)
            report.invalid += 1
            self._count(tenant_id, "invalid")
            return

        if event.badge_id in seen:
            self.logger.debug("[%s] Duplicate badge %s in this drain, discarded", tenant_id, event.badge_id)
            report.duplicates += 1
            self._count(tenant_id, "duplicate")
            return
        seen.add(event.badge_id)

        try:
            student, config, templates = await self._load(event)
        except ConfigNotFound as exc:
            self.logger.warning("[%s] %s, skipping badge %s", tenant_id, exc, event.badge_id)
            report.missing += 1
            self._count(tenant_id, "missing_config")
            return

        try:
            local_seconds = seconds_since_midnight(event.occurred_at, self.timezone)
            occurred = pretty_time(event.occurred_at, self.timezone)
        except (OverflowError, ValueError, OSError) as exc:
            self.logger.warning(
                "[%s] Discarding badge %s with unusable timestamp %r: %s", tenant_id, event.badge_id, event.occurred_at, exc
            )
            report.invalid += 1
            self._count(tenant_id, "invalid")
            return
        window = classify(local_seconds, config)
        if window == OUTSIDE:
            self.logger.info(
                "[%s] Badge %s at %s is outside attendance windows, no message",
                tenant_id,
                event.badge_id,
                occurred,
            )
            report.outside += 1
            self._count(tenant_id, OUTSIDE)
            return

        text = self.compose(window, event, student, config, templates)
        recipient = student.guardian_contact
        try:
            await self.sessions.send(tenant_id, recipient, OutboundPayload.from_text(text), source="attendance")
        except GatewayError as exc:
            self.logger.error("[%s] Attendance message to %s failed: %s", tenant_id, recipient, exc)
            report.failed += 1
            self._count(tenant_id, "failed")
            await self._log(tenant_id, recipient, "error", str(exc))
            return
        report.sent += 1
        self._count(tenant_id, window)
        await self._log(tenant_id, recipient, "sent", None)

    async def _load(self, event: AttendanceEvent) -> Tuple[StudentRecord, TenantConfig, List[MessageTemplate]]:
        student = await self.store.get_student(event.badge_id)
        if student is None:
            raise ConfigNotFound("student", event.badge_id)
        config = await self.store.get_tenant_config(event.tenant_key)
        if config is None:
            raise ConfigNotFound("tenant", event.tenant_key)
        templates = await self.store.get_templates(event.tenant_key)
        return student, config, templates

    def compose(
        self,
        window: str,
        event: AttendanceEvent,
        student: StudentRecord,
        config: TenantConfig,
        templates: Iterable[MessageTemplate] = (),
    ) -> str:
        template = select_template(TEMPLATE_KIND[window], templates)
        return render(
            template,
            {
                "student_name": student.name,
                "father_name": student.guardian_name,
                "date_time": pretty_time(event.occurred_at, self.timezone),
                "class_name": student.standard_name,
                "school_name": config.name,
            },
        )

    def _count(self, tenant_id: str, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.inc_attendance(tenant_id, outcome)

    async def _log(self, tenant_id: str, recipient: str, status: str, error: Optional[str]) -> None:
        if self.delivery_log is None:
            return
        try:
            await self.delivery_log.log_delivery(tenant_id, recipient, source="attendance", status=status, error=error)
        except Exception:
            self.logger.exception("[%s] Failed to record attendance delivery", tenant_id)
