from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from .conditions import evaluate_condition
from .schema import Action, Rule

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LogicResult:
    visible: dict[str, bool] = field(default_factory=dict)
    disabled: dict[str, bool] = field(default_factory=dict)
    required: dict[str, bool] = field(default_factory=dict)
    values: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, dict[str, Any]]:
        return {
            "visible": dict(self.visible),
            "disabled": dict(self.disabled),
            "required": dict(self.required),
            "values": dict(self.values),
        }


def _apply_action(action: Action, result: LogicResult) -> None:
    if action.type == "show":
        result.visible[action.target] = True
    elif action.type == "hide":
        result.visible[action.target] = False
    elif action.type == "enable":
        result.disabled[action.target] = False
    elif action.type == "disable":
        result.disabled[action.target] = True
    elif action.type == "require":
        result.required[action.target] = True
    elif action.type == "unrequire":
        result.required[action.target] = False
    elif action.type == "setValue":
        result.values[action.target] = action.value
    else:
        logger.warning("unknown_logic_action", extra={"action_type": action.type, "target": action.target})


class LogicEngine:
    """Applies conditional rules, in order, on top of each field's static state.

    Every rule whose ``when`` condition holds applies all of its actions; later
    rules overwrite earlier ones for the same field and attribute.
    """

    def __init__(
        self,
        rules: Iterable[Rule | Mapping[str, Any]],
        field_keys: Iterable[str] = (),
        hidden_fields: Iterable[str] = (),
        required_fields: Iterable[str] = (),
        hide_show_targets: bool = False,
    ) -> None:
        self.rules = [Rule.from_dict(rule) for rule in rules]
        self.hidden_fields = frozenset(hidden_fields)
        self.required_fields = frozenset(required_fields)
        self.hide_show_targets = hide_show_targets

        known = dict.fromkeys(field_keys)
        for rule in self.rules:
            for action in rule.actions:
                known.setdefault(action.target)
        self.field_keys = list(known)
        self._known_keys = frozenset(known)

    def _initial_state(self, values: Mapping[str, Any]) -> LogicResult:
        result = LogicResult()
        for key in [*self.field_keys, *(key for key in values if key not in self._known_keys)]:
            result.visible[key] = key not in self.hidden_fields
            result.disabled[key] = False
            result.required[key] = key in self.required_fields

        if self.hide_show_targets:
            for rule in self.rules:
                for action in rule.actions:
                    if action.type == "show":
                        result.visible[action.target] = False
        return result

    def evaluate(self, values: Mapping[str, Any]) -> LogicResult:
        result = self._initial_state(values)
        for rule in self.rules:
            if not evaluate_condition(rule.when, values):
                continue
            logger.debug("logic_rule_matched", extra={"rule_id": rule.id, "rule_name": rule.name})
            for action in rule.actions:
                _apply_action(action, result)
        return result
