import json
import time

import pytest

from async_message_gateway.rules import HandlerRegistry, Rule, RuleEngine, load_rules
from async_message_gateway.transport import InboundMessage

from gateway_fakes import quiet_logger


def subscription_rule(value="1", **overrides):
    data = {
        "value": value,
        "operand": "=",
        "enabled": True,
        "actions": [{"type": "handler", "name": "record", "params": {"text": value, "sender": "", "other": "x"}}],
    }
    data.update(overrides)
    return data


def inbound(text, remote_id="923001234567@s.whatsapp.net"):
    return InboundMessage(remote_id=remote_id, text=text, timestamp=time.time())


def test_rule_matches_exact_text_case_insensitively():
    rule = Rule.model_validate(subscription_rule("Yes"))

    assert rule.matches("yes")
    assert rule.matches("YES")
    assert not rule.matches("yes please")
    assert not rule.matches("")


def test_numeric_rule_does_not_match_substring():
    engine = RuleEngine([subscription_rule("1")], logger=quiet_logger())

    assert engine.match_rule("1") is not None
    assert engine.match_rule("yes1") is None
    assert engine.match_rule("11") is None
    assert engine.match_rule(None) is None


def test_disabled_and_unsupported_rules_never_match():
    engine = RuleEngine(
        [subscription_rule("1", enabled=False), subscription_rule("0", operand="contains")],
        logger=quiet_logger(),
    )
    assert engine.match_rule("1") is None
    assert engine.match_rule("0") is None


def test_first_matching_rule_wins():
    first = subscription_rule("stop")
    second = subscription_rule("STOP")
    second["actions"][0]["name"] = "second"
    engine = RuleEngine([first, second], logger=quiet_logger())

    assert engine.match_rule("Stop").actions[0].name == "record"


def test_load_rules_from_file(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps([subscription_rule("1"), subscription_rule("0")]))

    rules = load_rules(path)

    assert [r.value for r in rules] == ["1", "0"]
    assert rules[0].operator == "="
    assert rules[0].actions[0].kind == "handler"
    assert rules[0].actions[0].is_handler


def test_load_rules_missing_file_gives_no_rules(tmp_path):
    assert load_rules(tmp_path / "missing.json") == []


def test_load_rules_rejects_non_list(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps({"value": "1"}))
    with pytest.raises(ValueError):
        load_rules(path)


def test_resolve_params_interpolation():
    engine = RuleEngine([], logger=quiet_logger())
    ctx = engine.build_context("school1", inbound("1"))

    params = engine.resolve_params({"text": "1", "sender": "", "other": "literal", "nested": {"sender": "x"}}, ctx)

    assert params == {"text": "1", "sender": "923001234567", "other": "", "nested": {"sender": "923001234567"}}


@pytest.mark.asyncio
async def test_handle_runs_matching_handler_and_marks_read():
    handlers = HandlerRegistry()
    calls = []
    marked = []

    @handlers.handler("record")
    async def record(ctx, params):
        calls.append((ctx.tenant_id, ctx.sender_phone, params))
        return True

    async def on_match(tenant_id, message):
        marked.append((tenant_id, message.text))

    engine = RuleEngine([subscription_rule("1")], handlers, logger=quiet_logger())

    rule = await engine.handle("school1", inbound("1"), on_match=on_match)

    assert rule is not None
    assert marked == [("school1", "1")]
    assert calls == [("school1", "923001234567", {"text": "1", "sender": "923001234567", "other": ""})]


@pytest.mark.asyncio
async def test_handle_without_match_does_nothing():
    marked = []

    async def on_match(tenant_id, message):
        marked.append(tenant_id)

    engine = RuleEngine([subscription_rule("1")], logger=quiet_logger())

    assert await engine.handle("school1", inbound("hello"), on_match=on_match) is None
    assert marked == []


@pytest.mark.asyncio
async def test_run_actions_isolates_failures_and_skips_unknown():
    handlers = HandlerRegistry()
    calls = []

    async def broken(ctx, params):
        raise RuntimeError("portal down")

    async def ok(ctx, params):
        calls.append(params)

    handlers.register("broken", broken)
    handlers.register("ok", ok)
    rule = Rule.model_validate(
        {
            "value": "1",
            "actions": [
                {"type": "handler", "name": "broken"},
                {"type": "handler", "name": "missing"},
                {"type": "webhook", "name": "ok"},
                {"type": "ruleMethod", "name": "ok", "params": {"text": "1"}},
            ],
        }
    )
    engine = RuleEngine([rule], handlers, logger=quiet_logger())

    completed = await engine.run_actions(rule, engine.build_context("school1", inbound("1")))

    assert completed == 1
    assert calls == [{"text": "1"}]


def test_handler_registry_membership():
    handlers = HandlerRegistry()

    async def noop(ctx, params):
        return None

    handlers.register("noop", noop)

    assert "noop" in handlers
    assert "other" not in handlers
    assert handlers.get("noop") is noop
    assert handlers.names() == ["noop"]
