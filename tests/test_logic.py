import logging

from form_runtime.logic import LogicEngine

RULES = [
    {
        "id": "adult",
        "name": "Adults see the waiver",
        "when": {"field": "age", "op": ">=", "value": 18},
        "actions": [
            {"type": "show", "target": "waiver"},
            {"type": "require", "target": "waiver"},
        ],
    },
    {
        "id": "lock",
        "when": {"field": "status", "op": "=", "value": "submitted"},
        "actions": [
            {"type": "disable", "target": "age"},
            {"type": "hide", "target": "waiver"},
        ],
    },
]


def test_initial_state_uses_field_flags() -> None:
    engine = LogicEngine([], field_keys=["name", "waiver"], hidden_fields=["waiver"], required_fields=["name"])
    result = engine.evaluate({"extra": 1})
    assert result.visible == {"name": True, "waiver": False, "extra": True}
    assert result.required == {"name": True, "waiver": False, "extra": False}
    assert result.disabled == {"name": False, "waiver": False, "extra": False}
    assert result.values == {}


def test_matching_rule_applies_every_action() -> None:
    engine = LogicEngine(RULES, field_keys=["age", "status", "waiver"], hidden_fields=["waiver"])
    result = engine.evaluate({"age": 30})
    assert result.visible["waiver"] is True
    assert result.required["waiver"] is True
    assert result.disabled["age"] is False


def test_later_rule_wins() -> None:
    engine = LogicEngine(RULES, field_keys=["age", "status", "waiver"])
    result = engine.evaluate({"age": 30, "status": "submitted"})
    assert result.visible["waiver"] is False
    assert result.required["waiver"] is True
    assert result.disabled["age"] is True


def test_evaluate_is_idempotent() -> None:
    engine = LogicEngine(RULES, field_keys=["age", "status", "waiver"])
    values = {"age": 30, "status": "draft"}
    assert engine.evaluate(values).as_dict() == engine.evaluate(values).as_dict()
    assert values == {"age": 30, "status": "draft"}


def test_set_value_produces_override() -> None:
    rules = [
        {
            "id": "default_country",
            "when": {"field": "region", "op": "=", "value": "NA"},
            "actions": [{"type": "setValue", "target": "currency", "value": "USD"}],
        }
    ]
    engine = LogicEngine(rules)
    assert engine.evaluate({"region": "NA"}).values == {"currency": "USD"}
    assert engine.evaluate({"region": "EU"}).values == {}
    assert "currency" in engine.field_keys


def test_show_targets_start_hidden_when_enabled() -> None:
    engine = LogicEngine(RULES, field_keys=["age", "waiver"], hide_show_targets=True)
    assert engine.evaluate({"age": 10}).visible["waiver"] is False
    assert engine.evaluate({"age": 20}).visible["waiver"] is True


def test_unknown_action_is_ignored(caplog) -> None:
    rules = [{"id": "odd", "when": {"field": "a", "op": "not_empty"}, "actions": [{"type": "explode", "target": "a"}]}]
    engine = LogicEngine(rules)
    with caplog.at_level(logging.WARNING, logger="form_runtime.logic"):
        result = engine.evaluate({"a": "x"})
    assert result.visible == {"a": True}
    assert "unknown_logic_action" in caplog.messages
