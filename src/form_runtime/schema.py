from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

logger = logging.getLogger(__name__)

CONDITION_OPERATORS = {"=", "!=", ">", "<", ">=", "<=", "contains", "not_contains", "empty", "not_empty"}
VALUELESS_OPERATORS = {"empty", "not_empty"}
ACTION_TYPES = {"show", "hide", "enable", "disable", "require", "unrequire", "setValue"}
OUTPUT_FORMATS = {"number", "currency", "percentage", "text"}
AI_OUTPUT_FORMATS = {"number", "currency", "percentage", "text", "fraction", "measurement"}
AI_SCOPES = {"global", "fieldgroup"}
CONTAINER_FIELD_TYPES = {"fieldgroup", "section"}


class SchemaError(ValueError):
    """Raised when a form schema payload is structurally invalid."""


def _require_mapping(raw: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise SchemaError(f"{what} must be an object, got {type(raw).__name__}")
    return raw


def _list_of(raw: Any, what: str) -> list[Any]:
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raise SchemaError(f"{what} must be a list")
    return list(raw)


@dataclass(slots=True, frozen=True)
class Condition:
    field: str | None
    op: str | None
    value: Any = None
    and_: tuple[Condition, ...] = ()
    or_: tuple[Condition, ...] = ()

    @classmethod
    def from_dict(cls, raw: Any) -> Condition:
        if isinstance(raw, Condition):
            return raw
        data = _require_mapping(raw, "condition")
        op = data.get("op")
        if op is not None and op not in CONDITION_OPERATORS:
            logger.warning("unknown_condition_operator", extra={"op": op, "field": data.get("field")})
        if op not in VALUELESS_OPERATORS and op is not None and "value" not in data:
            logger.warning("condition_missing_value", extra={"op": op, "field": data.get("field")})
        return cls(
            field=(str(data["field"]) if data.get("field") else None),
            op=(str(op) if op is not None else None),
            value=data.get("value"),
            and_=tuple(cls.from_dict(item) for item in _list_of(data.get("and"), "condition.and")),
            or_=tuple(cls.from_dict(item) for item in _list_of(data.get("or"), "condition.or")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"field": self.field, "op": self.op}
        if self.op not in VALUELESS_OPERATORS:
            payload["value"] = self.value
        if self.and_:
            payload["and"] = [item.to_dict() for item in self.and_]
        if self.or_:
            payload["or"] = [item.to_dict() for item in self.or_]
        return payload


@dataclass(slots=True, frozen=True)
class Action:
    type: str
    target: str
    value: Any = None

    @classmethod
    def from_dict(cls, raw: Any) -> Action:
        if isinstance(raw, Action):
            return raw
        data = _require_mapping(raw, "action")
        if not data.get("target"):
            raise SchemaError("action requires a target")
        return cls(type=str(data.get("type") or ""), target=str(data["target"]), value=data.get("value"))


@dataclass(slots=True, frozen=True)
class Rule:
    id: str
    when: Condition
    actions: tuple[Action, ...]
    name: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> Rule:
        if isinstance(raw, Rule):
            return raw
        data = _require_mapping(raw, "rule")
        if data.get("when") is None:
            raise SchemaError(f"rule {data.get('id')!r} requires a 'when' condition")
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            when=Condition.from_dict(data["when"]),
            actions=tuple(Action.from_dict(item) for item in _list_of(data.get("actions"), "rule.actions")),
        )


@dataclass(slots=True, frozen=True)
class CalculationOutput:
    target: str
    format: str | None = None


@dataclass(slots=True, frozen=True)
class Calculation:
    id: str
    formula: str
    outputs: tuple[CalculationOutput, ...]
    name: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> Calculation:
        if isinstance(raw, Calculation):
            return raw
        data = _require_mapping(raw, "calculation")
        # blank formulas fail per calculation at evaluation time
        formula = str(data.get("formula") or "").strip()
        if not formula:
            logger.warning("calculation_without_formula", extra={"calculation_id": data.get("id")})
        outputs = []
        for item in _list_of(data.get("outputs"), "calculation.outputs"):
            output = _require_mapping(item, "calculation output")
            if not output.get("target"):
                raise SchemaError(f"calculation {data.get('id')!r} has an output without a target")
            fmt = output.get("format") or None
            if fmt is not None and fmt not in OUTPUT_FORMATS:
                logger.warning(
                    "unsupported_output_format",
                    extra={"calculation_id": data.get("id"), "target": output["target"], "format": fmt},
                )
                fmt = None
            outputs.append(CalculationOutput(target=str(output["target"]), format=fmt))
        calc_id = str(data.get("id") or "")
        return cls(id=calc_id, name=str(data.get("name") or calc_id), formula=formula, outputs=tuple(outputs))


@dataclass(slots=True, frozen=True)
class AIExample:
    inputs: dict[str, Any]
    expected_output: Any

    def to_dict(self) -> dict[str, Any]:
        return {"inputs": self.inputs, "expectedOutput": self.expected_output}


@dataclass(slots=True, frozen=True)
class AICalculation:
    id: str
    prompt: str
    field_references: tuple[str, ...]
    output_format: str = "text"
    name: str = ""
    instructions: str = ""
    target_field: str | None = None
    examples: tuple[AIExample, ...] = ()
    fallback_value: Any = None
    unit_conversion: Any = None
    cache_results: bool = True
    scope: str = "global"
    field_group_key: str | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> AICalculation:
        if isinstance(raw, AICalculation):
            return raw
        data = _require_mapping(raw, "aiCalculation")
        calc_id = str(data.get("id") or "")
        if not calc_id:
            raise SchemaError("AI calculation requires an id")
        scope = str(data.get("scope") or "global")
        if scope not in AI_SCOPES:
            raise SchemaError(f"unsupported AI calculation scope: {scope}")
        group_key = data.get("fieldGroupKey")
        if scope == "fieldgroup" and not group_key:
            raise SchemaError(f"AI calculation {calc_id!r} is field-group scoped but has no fieldGroupKey")
        output_format = str(data.get("outputFormat") or "text")
        if output_format not in AI_OUTPUT_FORMATS:
            raise SchemaError(f"unsupported AI output format: {output_format}")
        examples = tuple(
            AIExample(inputs=dict(item.get("inputs") or {}), expected_output=item.get("expectedOutput"))
            for item in (_require_mapping(entry, "AI example") for entry in _list_of(data.get("examples"), "examples"))
        )
        return cls(
            id=calc_id,
            name=str(data.get("name") or calc_id),
            prompt=str(data.get("prompt") or ""),
            instructions=str(data.get("instructions") or ""),
            field_references=tuple(str(ref) for ref in _list_of(data.get("fieldReferences"), "fieldReferences")),
            target_field=(str(data["targetField"]) if data.get("targetField") else None),
            output_format=output_format,
            examples=examples,
            fallback_value=data.get("fallbackValue"),
            unit_conversion=data.get("unitConversion"),
            cache_results=bool(data.get("cacheResults", True)),
            scope=scope,
            field_group_key=(str(group_key) if group_key else None),
        )

    @property
    def resolved_target(self) -> str | None:
        if self.target_field:
            return self.target_field
        if self.field_references:
            return self.field_references[-1]
        return None

    @property
    def combined_instructions(self) -> str:
        return "\n\n".join(part for part in (self.prompt.strip(), self.instructions.strip()) if part)


@dataclass(slots=True, frozen=True)
class PageNavigationRule:
    id: str
    condition: Condition
    target_page: int
    label: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> PageNavigationRule:
        data = _require_mapping(raw, "navigation rule")
        try:
            target_page = int(data.get("targetPage"))
        except (TypeError, ValueError) as exc:
            raise SchemaError(f"navigation rule {data.get('id')!r} requires a numeric targetPage") from exc
        return cls(
            id=str(data.get("id") or ""),
            condition=Condition.from_dict(data.get("condition") or {}),
            target_page=target_page,
            label=str(data.get("label") or ""),
        )


@dataclass(slots=True)
class FormField:
    key: str
    type: str
    id: str = ""
    label: str = ""
    required: bool = False
    hidden: bool = False
    default: Any = None
    has_default: bool = False
    fields: list[FormField] = field(default_factory=list)
    conditions: list[Any] = field(default_factory=list)
    navigation_rules: list[PageNavigationRule] = field(default_factory=list)
    default_next_page: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN_KEYS = frozenset(
        {
            "id",
            "key",
            "type",
            "label",
            "required",
            "validation",
            "hidden",
            "default",
            "hasDefault",
            "fields",
            "conditions",
            "navigationRules",
            "defaultNextPage",
        }
    )

    @classmethod
    def from_dict(cls, raw: Any) -> FormField:
        data = _require_mapping(raw, "field")
        field_type = str(data.get("type") or "")
        key = str(data.get("key") or "")
        if not key and field_type != "pagebreak":
            raise SchemaError(f"field {data.get('id')!r} requires a key")
        validation = data.get("validation") or {}
        default_next = data.get("defaultNextPage")
        if default_next is not None:
            try:
                default_next = int(default_next)
            except (TypeError, ValueError) as exc:
                raise SchemaError(f"field {key!r} has a non-numeric defaultNextPage") from exc
        return cls(
            key=key,
            type=field_type,
            id=str(data.get("id") or key),
            label=str(data.get("label") or ""),
            required=bool(data.get("required") or (isinstance(validation, Mapping) and validation.get("required"))),
            hidden=data.get("hidden") is True,
            default=data.get("default"),
            has_default=("default" in data or bool(data.get("hasDefault"))),
            fields=[cls.from_dict(child) for child in _list_of(data.get("fields"), f"{key}.fields")],
            conditions=_list_of(data.get("conditions"), f"{key}.conditions"),
            navigation_rules=[
                PageNavigationRule.from_dict(item) for item in _list_of(data.get("navigationRules"), "navigationRules")
            ],
            default_next_page=default_next,
            extra={name: value for name, value in data.items() if name not in cls._KNOWN_KEYS},
        )

    @property
    def is_container(self) -> bool:
        return self.type in CONTAINER_FIELD_TYPES


def _shows_owner(raw: Any) -> bool:
    # field conditions without their own actions default to showing the field
    return isinstance(raw, Mapping) and not raw.get("actions")


def iter_fields(fields: Iterable[FormField]) -> Iterable[FormField]:
    for item in fields:
        yield item
        if item.is_container:
            yield from iter_fields(item.fields)


@dataclass(slots=True)
class FormSchema:
    fields: list[FormField]
    logic: list[Rule]
    calculations: list[Calculation]
    ai_calculations: list[AICalculation]
    id: str = ""
    name: str = ""
    version: int = 1

    @classmethod
    def from_dict(cls, payload: Any) -> FormSchema:
        if isinstance(payload, FormSchema):
            return payload
        data = _require_mapping(payload, "schema")
        try:
            version = int(data.get("version", 1))
        except (TypeError, ValueError) as exc:
            raise SchemaError("schema version must be an integer") from exc
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            version=version,
            fields=[FormField.from_dict(item) for item in _list_of(data.get("fields"), "fields")],
            logic=[Rule.from_dict(item) for item in _list_of(data.get("logic"), "logic")],
            calculations=[Calculation.from_dict(item) for item in _list_of(data.get("calculations"), "calculations")],
            ai_calculations=[
                AICalculation.from_dict(item) for item in _list_of(data.get("aiCalculations"), "aiCalculations")
            ],
        )

    def field_keys(self) -> list[str]:
        return [item.key for item in iter_fields(self.fields) if item.key]

    def hidden_field_keys(self) -> list[str]:
        """Keys that start hidden: explicitly ``hidden`` fields and fields revealed by their own conditions."""
        return [
            item.key
            for item in iter_fields(self.fields)
            if item.key and (item.hidden or any(_shows_owner(raw) for raw in item.conditions))
        ]

    def required_field_keys(self) -> list[str]:
        return [item.key for item in iter_fields(self.fields) if item.key and item.required]

    def default_values(self) -> dict[str, Any]:
        # fieldgroup children default per instance, not at the top level
        defaults: dict[str, Any] = {}
        pending = list(self.fields)
        while pending:
            item = pending.pop(0)
            if item.key and item.has_default:
                defaults[item.key] = item.default
            if item.type == "section":
                pending.extend(item.fields)
        return defaults

    def merged_logic(self) -> list[Rule]:
        rules = list(self.logic)
        for item in iter_fields(self.fields):
            for index, raw in enumerate(item.conditions):
                entry = _require_mapping(raw, f"{item.key}.conditions[{index}]")
                when = entry.get("when") or entry
                actions = entry.get("actions") or [{"type": "show", "target": item.key}]
                rules.append(
                    Rule(
                        id=f"field_{item.key}_{index}",
                        name=f"Field condition for {item.key}",
                        when=Condition.from_dict(when),
                        actions=tuple(Action.from_dict(action) for action in actions),
                    )
                )
        return rules
