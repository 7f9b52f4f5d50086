"""Rule engine routing inbound text to named side-effect handlers.

Rules are read once from a JSON document::

    [
      {
        "value": "1",
        "operand": "=",
        "enabled": true,
        "actions": [
          {"type": "handler", "name": "update_subscription",
           "params": {"text": "1", "sender": ""}}
        ]
      }
    ]

Only exact equality is supported: the configured value must equal the
lower-cased inbound text.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from .logger import get_logger
from .transport import DEFAULT_RECIPIENT_SUFFIX, InboundMessage, strip_transport_suffix

HANDLER_ACTION_TYPES = ("handler", "ruleMethod")
OPERATOR_EQUALS = "="


class ActionSpec(BaseModel):
    """One action of a rule; only handler actions are executed."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    kind: str = Field(default="handler", alias="type")
    name: str
    params: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_handler(self) -> bool:
        return self.kind in HANDLER_ACTION_TYPES


class Rule(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    value: str
    operator: str = Field(default=OPERATOR_EQUALS, alias="operand")
    enabled: bool = True
    actions: List[ActionSpec] = Field(default_factory=list)

    def matches(self, text: str) -> bool:
        if not self.enabled or self.operator != OPERATOR_EQUALS:
            return False
        return self.value.lower() == (text or "").lower()


@dataclass(frozen=True)
class RuleContext:
    """What a handler knows about the message that triggered it."""

    tenant_id: str
    message: InboundMessage
    sender_phone: str


Handler = Callable[[RuleContext, Dict[str, Any]], Awaitable[Any]]


class HandlerRegistry:
    """Name to coroutine mapping used to resolve rule actions."""

    def __init__(self, handlers: Mapping[str, Handler] | None = None):
        self._handlers: Dict[str, Handler] = dict(handlers or {})

    def register(self, name: str, handler: Handler) -> Handler:
        self._handlers[name] = handler
        return handler

    def handler(self, name: str) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""

        def decorator(fn: Handler) -> Handler:
            return self.register(name, fn)

        return decorator

    def get(self, name: str) -> Optional[Handler]:
        return self._handlers.get(name)

    def names(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers


def load_rules(path: str | Path) -> List[Rule]:
    """Read rules from a JSON file; a missing file yields no rules."""
    rules_path = Path(path).expanduser()
    if not rules_path.exists():
        get_logger("RuleEngine").warning("Rules file %s not found, no rules loaded", rules_path)
        return []
    data = json.loads(rules_path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"Rules file {rules_path} must contain a JSON list")
    return [Rule.model_validate(item) for item in data]


class RuleEngine:
    def __init__(
        self,
        rules: Iterable[Rule | Mapping[str, Any]] = (),
        handlers: HandlerRegistry | None = None,
        *,
        recipient_suffix: str = DEFAULT_RECIPIENT_SUFFIX,
        logger=None,
    ):
        self.rules: Sequence[Rule] = tuple(r if isinstance(r, Rule) else Rule.model_validate(r) for r in rules)
        self.handlers = handlers or HandlerRegistry()
        self.recipient_suffix = recipient_suffix
        self.logger = logger or get_logger("RuleEngine")

    @classmethod
    def from_file(cls, path: str | Path, handlers: HandlerRegistry | None = None, **kwargs: Any) -> "RuleEngine":
        return cls(load_rules(path), handlers, **kwargs)

    def match_rule(self, text: str | None) -> Optional[Rule]:
        """Return the first enabled rule whose value equals ``text`` (case-insensitive)."""
        for rule in self.rules:
            if rule.matches(text or ""):
                return rule
        return None

    def build_context(self, tenant_id: str, message: InboundMessage) -> RuleContext:
        return RuleContext(
            tenant_id=tenant_id,
            message=message,
            sender_phone=strip_transport_suffix(message.remote_id, self.recipient_suffix),
        )

    # ---------------------------------------------------------- params
    def resolve_params(self, template: Any, context: RuleContext, key: str = "") -> Any:
        """Resolve a parameter template against ``context``.

        Mappings are resolved key by key. A scalar is resolved by the key it is
        stored under: ``text`` keeps its configured literal, ``sender`` becomes
        the sender phone number and every other key becomes an empty string.
        """
        if isinstance(template, Mapping):
            return {k: self.resolve_params(v, context, str(k)) for k, v in template.items()}
        if isinstance(template, (list, tuple)):
            return [self.resolve_params(item, context, key) for item in template]
        return self._interpolate(key, template, context)

    def _interpolate(self, key: str, value: Any, context: RuleContext) -> Any:
        if key == "text":
            return value
        if key == "sender":
            return context.sender_phone
        if key:
            self.logger.debug("Parameter '%s' is not interpolated, resolving to empty string", key)
        return ""

    # ---------------------------------------------------------- actions
    async def run_actions(self, rule: Rule, context: RuleContext) -> int:
        """Run the handler actions of ``rule``; return how many completed."""
        completed = 0
        for action in rule.actions:
            if not action.is_handler:
                continue
            handler = self.handlers.get(action.name)
            if handler is None:
                self.logger.warning("[%s] Unknown rule handler: %s", context.tenant_id, action.name)
                continue
            params = self.resolve_params(action.params, context)
            try:
                await handler(context, params)
            except Exception:
                self.logger.exception("[%s] Rule handler %s failed", context.tenant_id, action.name)
                continue
            completed += 1
        return completed

    async def handle(
        self,
        tenant_id: str,
        message: InboundMessage,
        *,
        on_match: Callable[[str, InboundMessage], Awaitable[Any]] | None = None,
    ) -> Optional[Rule]:
        """Match ``message`` and run the actions of the matching rule."""
        rule = self.match_rule(message.text)
        if rule is None:
            return None
        if on_match is not None:
            await on_match(tenant_id, message)
        await self.run_actions(rule, self.build_context(tenant_id, message))
        return rule
