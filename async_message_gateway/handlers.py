"""Built-in rule handlers."""

from __future__ import annotations

from typing import Any, Dict

from .errors import GatewayError
from .logger import get_logger
from .portal import PortalClient
from .rules import HandlerRegistry, RuleContext
from .sessions import SessionRegistry
from .transport import OutboundPayload

SUBSCRIBED_REPLY = "You are now subscribed ✅"
UNSUBSCRIBED_REPLY = "You are unsubscribed ✅"

logger = get_logger("RuleHandlers")


def build_default_handlers(
    sessions: SessionRegistry,
    portal: PortalClient,
    handlers: HandlerRegistry | None = None,
) -> HandlerRegistry:
    """Register the handlers shipped with the gateway and return the registry."""
    handlers = handlers or HandlerRegistry()

    async def update_subscription(ctx: RuleContext, params: Dict[str, Any]) -> bool:
        """Record a (un)subscription on the portal and confirm it to the sender."""
        sender = params.get("sender")
        text = params.get("text")
        if not sender:
            logger.error("[%s] update_subscription: sender is required", ctx.tenant_id)
            return False
        if text not in ("1", "0"):
            raise ValueError('text must be "1" or "0"')

        if not await portal.update_subscription(sender, text):
            return False

        reply = SUBSCRIBED_REPLY if text == "1" else UNSUBSCRIBED_REPLY
        try:
            await sessions.send(ctx.tenant_id, ctx.message.remote_id, OutboundPayload.from_text(reply), source="rule")
        except GatewayError as exc:
            logger.error("[%s] Failed to confirm subscription to %s: %s", ctx.tenant_id, sender, exc)
            return False
        logger.info("[%s] %s %s", ctx.tenant_id, "Subscribed" if text == "1" else "Unsubscribed", sender)
        return True

    handlers.register("update_subscription", update_subscription)
    # name used by existing rules files
    handlers.register("subOrUnsubToWhatsapp", update_subscription)
    return handlers
