"""Reconnect supervision for closed transport connections."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from .logger import get_logger
from .sessions import CloseNotice, SessionRegistry
from .transport import CloseReason

DEFAULT_PURGE_CODES = (401,)
DEFAULT_RETAIN_CODES = (440,)
DEFAULT_RETAIN_TYPES = ("replaced", "conflict")


class Disposition(str, Enum):
    PURGE = "purge"
    RETAIN = "retain"
    RETRY = "retry"


class ReconnectSupervisor:
    """Consume close notices and decide between giving up and reconnecting.

    Notices arrive on ``registry.close_channel``. A retry is a task that waits
    ``reconnect_delay`` seconds (doubling on every failed attempt up to
    ``max_reconnect_delay``) and restarts the session only if its generation
    did not change in the meantime.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        reconnect_delay: float = 2.0,
        max_reconnect_delay: float = 60.0,
        max_attempts: int | None = None,
        purge_codes: Iterable[int] = DEFAULT_PURGE_CODES,
        retain_codes: Iterable[int] = DEFAULT_RETAIN_CODES,
        retain_types: Iterable[str] = DEFAULT_RETAIN_TYPES,
        metrics=None,
        logger=None,
    ):
        self.registry = registry
        self.channel = registry.close_channel
        self.reconnect_delay = max(0.0, float(reconnect_delay))
        self.max_reconnect_delay = max(self.reconnect_delay, float(max_reconnect_delay))
        self.max_attempts = max_attempts
        self.purge_codes = frozenset(int(code) for code in purge_codes)
        self.retain_codes = frozenset(int(code) for code in retain_codes)
        self.retain_types = frozenset(t.lower() for t in retain_types)
        self.metrics = metrics
        self.logger = logger or get_logger("ReconnectSupervisor")
        self.scheduled = 0
        self.suppressed = 0

        self._retries: Dict[str, asyncio.Task] = {}
        # retries already inside request_start, with their attempt number
        self._in_flight: Dict[str, Tuple[asyncio.Task, int]] = {}
        self._task: Optional[asyncio.Task] = None

    # ---------------------------------------------------------------- policy
    def classify(self, reason: CloseReason | None) -> Disposition:
        reason = reason or CloseReason()
        if reason.status_code is not None and reason.status_code in self.purge_codes:
            return Disposition.PURGE
        if reason.status_code is not None and reason.status_code in self.retain_codes:
            return Disposition.RETAIN
        if reason.type and reason.type.lower() in self.retain_types:
            return Disposition.RETAIN
        return Disposition.RETRY

    def delay_for(self, attempt: int) -> float:
        return min(self.reconnect_delay * (2 ** max(0, attempt)), self.max_reconnect_delay)

    async def handle_close(self, notice: CloseNotice) -> Disposition:
        """Apply the policy to one close notice."""
        disposition = self.classify(notice.reason)
        self.logger.info(
            "[%s] Close %s (generation %d) -> %s",
            notice.tenant_id,
            notice.reason.describe(),
            notice.generation,
            disposition.value,
        )
        if disposition is Disposition.RETRY:
            self.schedule_retry(notice)
            return disposition

        purge = disposition is Disposition.PURGE
        reason = "credentials invalidated" if purge else "connection superseded"
        changed = await self.registry.mark_terminal(notice.tenant_id, notice.generation, purge=purge, reason=reason)
        if changed:
            if self.metrics is not None:
                self.metrics.inc_terminal(notice.tenant_id, purge)
            self.logger.warning("[%s] Session is terminal (%s), not reconnecting", notice.tenant_id, reason)
        return disposition

    # --------------------------------------------------------------- retries
    def schedule_retry(self, notice: CloseNotice) -> asyncio.Task:
        """Schedule a reconnect for ``notice``.

        A retry still waiting is replaced. A retry already connecting is left
        to finish and the new one continues its attempt count.
        """
        tenant_id = notice.tenant_id
        existing = self._retries.get(tenant_id)
        if existing is not None and not existing.done() and existing is not asyncio.current_task():
            existing.cancel()
        in_flight = self._in_flight.get(tenant_id)
        if in_flight is not None and not in_flight[0].done() and in_flight[0] is not asyncio.current_task():
            notice = replace(notice, attempt=max(notice.attempt, in_flight[1] + 1))
        delay = self.delay_for(notice.attempt)
        task = asyncio.create_task(self._retry_later(notice, delay), name=f"reconnect-{tenant_id}")
        self._retries[tenant_id] = task
        task.add_done_callback(lambda t, tid=tenant_id: self._forget(tid, t))
        self.scheduled += 1
        self.logger.info("[%s] Reconnect scheduled in %.1fs (attempt %d)", tenant_id, delay, notice.attempt + 1)
        return task

    def _forget(self, tenant_id: str, task: asyncio.Task) -> None:
        if self._retries.get(tenant_id) is task:
            del self._retries[tenant_id]

    async def _retry_later(self, notice: CloseNotice, delay: float) -> bool:
        await asyncio.sleep(delay)
        tenant_id = notice.tenant_id
        current = self.registry.current_generation(tenant_id)
        if current != notice.generation:
            self.suppressed += 1
            self.logger.info(
                "[%s] Reconnect suppressed: generation %d superseded by %s", tenant_id, notice.generation, current
            )
            return False
        task = asyncio.current_task()
        if self._retries.get(tenant_id) is task:
            del self._retries[tenant_id]
        self._in_flight[tenant_id] = (task, notice.attempt)
        if self.metrics is not None:
            self.metrics.inc_reconnect(tenant_id)
        self.logger.info("[%s] Reconnecting...", tenant_id)
        try:
            result = await self.registry.request_start(tenant_id)
        except Exception:
            self.logger.exception("[%s] Reconnect failed", tenant_id)
            return False
        finally:
            entry = self._in_flight.get(tenant_id)
            if entry is not None and entry[0] is task:
                del self._in_flight[tenant_id]
        if result.status != "error":
            return True
        self.logger.warning("[%s] Reconnect attempt %d failed: %s", tenant_id, notice.attempt + 1, result.message)
        if self.max_attempts is not None and notice.attempt + 1 >= self.max_attempts:
            self.logger.error("[%s] Giving up after %d reconnect attempts", tenant_id, notice.attempt + 1)
            return False
        if tenant_id in self._retries:
            self.logger.debug("[%s] A newer reconnect is already scheduled", tenant_id)
            return False
        generation = self.registry.current_generation(tenant_id)
        if generation is not None:
            self.schedule_retry(
                CloseNotice(tenant_id=tenant_id, generation=generation, reason=notice.reason, attempt=notice.attempt + 1)
            )
        return False

    def pending(self) -> List[str]:
        """Tenants with a reconnect waiting to fire or still connecting."""
        waiting = {tid for tid, task in self._retries.items() if not task.done()}
        connecting = {tid for tid, (task, _) in self._in_flight.items() if not task.done()}
        return sorted(waiting | connecting)

    # ------------------------------------------------------------- lifecycle
    async def run(self) -> None:
        """Consume the close channel forever."""
        while True:
            notice = await self.channel.get()
            try:
                await self.handle_close(notice)
            except Exception:
                self.logger.exception("[%s] Unhandled error while supervising close", notice.tenant_id)
            finally:
                self.channel.task_done()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="reconnect-supervisor")

    async def stop(self) -> None:
        tasks = [task for task in self._retries.values() if not task.done()]
        tasks += [task for task, _ in self._in_flight.values() if not task.done()]
        if self._task is not None:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._retries.clear()
        self._in_flight.clear()
        self._task = None
