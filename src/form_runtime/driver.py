"""Reactive driver that keeps logic state and computed values consistent.

Each settle pass is a reducer step: fingerprint the values, run the logic
rules, merge ``setValue`` overrides, run the arithmetic calculations and merge
their outputs. The session is settled once a pass yields no value deltas.
AI results arrive asynchronously and are tagged with a generation number so a
response that was overtaken by newer input is dropped instead of applied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from .ai_client import AICalculationService
from .cache import ResultCache, create_result_cache, stable_dumps
from .calculations import CalcEngine
from .config import RuntimeSettings
from .logic import LogicEngine, LogicResult
from .navigation import next_page, previous_page, split_pages
from .schema import FormSchema

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, Any], None]


@dataclass(slots=True)
class RenderState:
    values: dict[str, Any] = field(default_factory=dict)
    visible: dict[str, bool] = field(default_factory=dict)
    disabled: dict[str, bool] = field(default_factory=dict)
    required: dict[str, bool] = field(default_factory=dict)

    def as_dict(self) -> dict[str, dict[str, Any]]:
        return {
            "values": dict(self.values),
            "visible": dict(self.visible),
            "disabled": dict(self.disabled),
            "required": dict(self.required),
        }


class FormSession:
    def __init__(
        self,
        schema: FormSchema | Mapping[str, Any],
        ai_service: AICalculationService | None = None,
        cache: ResultCache | None = None,
        settings: RuntimeSettings | None = None,
        initial_values: Mapping[str, Any] | None = None,
    ) -> None:
        self.schema = FormSchema.from_dict(schema)
        self.settings = settings or RuntimeSettings()
        self.logic_engine = LogicEngine(
            self.schema.merged_logic(),
            field_keys=self.schema.field_keys(),
            hidden_fields=self.schema.hidden_field_keys(),
            required_fields=self.schema.required_field_keys(),
            hide_show_targets=self.settings.hide_show_targets,
        )
        self.calc_engine = CalcEngine(
            self.schema.calculations,
            self.schema.ai_calculations,
            ai_service=ai_service,
            cache=cache if cache is not None else create_result_cache(self.settings.ai_cache_size),
            cycle_policy=self.settings.cycle_policy,
        )
        self.pages = split_pages(self.schema.fields)
        self.values: dict[str, Any] = {**self.schema.default_values(), **dict(initial_values or {})}
        self.generation = 0

        self._logic = LogicResult()
        self._last_fingerprint: str | None = None
        self._applying = False
        self._pending: list[dict[str, Any]] = []
        self._listeners: list[ChangeListener] = []
        self.settle()

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _apply(self, updates: Mapping[str, Any]) -> dict[str, Any]:
        changed = {key: value for key, value in updates.items() if key not in self.values or self.values[key] != value}
        if not changed:
            return changed
        self._applying = True
        try:
            self.values.update(changed)
            for key, value in changed.items():
                for listener in self._listeners:
                    listener(key, value)
        finally:
            self._applying = False
        return changed

    def _run_passes(self) -> None:
        for pass_number in range(1, self.settings.max_reactive_passes + 1):
            fingerprint = stable_dumps(self.values)
            if fingerprint == self._last_fingerprint:
                return
            self._last_fingerprint = fingerprint

            self._logic = self.logic_engine.evaluate(self.values)
            changed = self._apply(self._logic.values)
            changed.update(self._apply(self.calc_engine.evaluate_sync(self.values)))
            if not changed:
                return
            logger.debug("reactive_pass_applied", extra={"pass_number": pass_number, "changed": sorted(changed)})

        logger.warning(
            "reactive_pass_limit_reached",
            extra={"max_reactive_passes": self.settings.max_reactive_passes, "form_id": self.schema.id},
        )

    def settle(self) -> RenderState:
        while True:
            self._run_passes()
            if not self._pending:
                break
            self._apply(self._pending.pop(0))
        return self.render_state()

    def update(self, changes: Mapping[str, Any]) -> RenderState:
        if self._applying:
            # issued from a change listener while a batch is being applied
            self._pending.append(dict(changes))
            return self.render_state()
        if self._apply(changes):
            self.generation += 1
        return self.settle()

    async def update_async(self, changes: Mapping[str, Any] | None = None) -> RenderState:
        if changes:
            self.update(changes)
        else:
            self.settle()

        for _ in range(self.settings.max_reactive_passes):
            self.generation += 1
            generation = self.generation
            results = await self.calc_engine.evaluate(dict(self.values))
            if generation != self.generation:
                logger.debug(
                    "stale_ai_results_discarded",
                    extra={"generation": generation, "latest_generation": self.generation},
                )
                break
            if not self._apply(results):
                break
            self.settle()
        return self.render_state()

    def render_state(self) -> RenderState:
        return RenderState(
            values=dict(self.values),
            visible=dict(self._logic.visible),
            disabled=dict(self._logic.disabled),
            required=dict(self._logic.required),
        )

    def next_page(self, current: int) -> int:
        return next_page(self.pages, current, self.values)

    def previous_page(self, current: int) -> int:
        return previous_page(current)
