"""Sequential, throttled delivery of pre-built message batches."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

from .logger import get_logger
from .rate_limit import JitterThrottle
from .sessions import SessionRegistry
from .transport import OutboundPayload


def _recipient_of(item: Mapping[str, Any]) -> Optional[str]:
    return item.get("recipient") or item.get("phoneNumber") or item.get("phone_number")


class BulkDispatcher:
    """Send a batch one message at a time, pausing between sends.

    A failed item is logged and the batch goes on; the pause follows every
    attempted send, successful or not.
    """

    def __init__(self, sessions: SessionRegistry, *, throttle: JitterThrottle | None = None, delivery_log=None, logger=None):
        self.sessions = sessions
        self.throttle = throttle or JitterThrottle()
        self.delivery_log = delivery_log
        self.logger = logger or get_logger("BulkDispatcher")

    async def dispatch(self, tenant_id: str, items: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        total = len(items)
        for index, item in enumerate(items):
            recipient = _recipient_of(item) if isinstance(item, Mapping) else None
            message = item.get("message") if isinstance(item, Mapping) else None
            if not recipient or not message:
                self.logger.warning("[%s] Skipping invalid bulk item #%d: %r", tenant_id, index, item)
                results.append({"index": index, "recipient": recipient, "status": "skipped", "error": "missing recipient or message"})
                continue

            try:
                await self.sessions.send(tenant_id, recipient, OutboundPayload.from_text(message), source="bulk")
            except Exception as exc:
                self.logger.error("[%s] Bulk message %d/%d to %s failed: %s", tenant_id, index + 1, total, recipient, exc)
                results.append({"index": index, "recipient": recipient, "status": "error", "error": str(exc)})
                await self._log(tenant_id, recipient, "error", str(exc))
            else:
                self.logger.info("[%s] Bulk message %d/%d sent to %s", tenant_id, index + 1, total, recipient)
                results.append({"index": index, "recipient": recipient, "status": "sent"})
                await self._log(tenant_id, recipient, "sent", None)

            delay = await self.throttle.wait()
            self.logger.debug("[%s] Waited %.1fs before next bulk message", tenant_id, delay)
        return results

    async def _log(self, tenant_id: str, recipient: str, status: str, error: Optional[str]) -> None:
        if self.delivery_log is None:
            return
        try:
            await self.delivery_log.log_delivery(tenant_id, recipient, source="bulk", status=status, error=error)
        except Exception:
            self.logger.exception("[%s] Failed to record bulk delivery", tenant_id)
