from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Mapping

from .ai_client import AICalculationService, build_request_payload
from .cache import InMemoryResultCache, ResultCache, build_cache_key
from .expressions import FormulaError, bind_value, build_bindings, compile_formula, evaluate_program, format_output
from .schema import AICalculation, Calculation

logger = logging.getLogger(__name__)

CYCLE_POLICIES = {"evaluate", "error"}


class CalculationCycleError(ValueError):
    """Raised when calculations depend on each other and cycles are configured as errors."""


def _referenced_identifiers(calculation: Calculation) -> frozenset[str]:
    try:
        return compile_formula(calculation.formula).identifiers
    except FormulaError:
        return frozenset()


def sort_by_dependency(calculations: list[Calculation], cycle_policy: str = "evaluate") -> list[Calculation]:
    """Order calculations so producers of a referenced output run before their consumers."""
    references = [_referenced_identifiers(calc) for calc in calculations]
    dependencies = [
        [
            other_index
            for other_index, other in enumerate(calculations)
            if other_index != index and any(output.target in references[index] for output in other.outputs)
        ]
        for index in range(len(calculations))
    ]

    ordered: list[Calculation] = []
    visited: set[int] = set()
    visiting: set[int] = set()

    def visit(index: int) -> None:
        if index in visited:
            return
        calc = calculations[index]
        if index in visiting:
            logger.warning(
                "calculation_cycle_detected",
                extra={"calculation_id": calc.id, "calculation_name": calc.name, "cycle_policy": cycle_policy},
            )
            if cycle_policy == "error":
                raise CalculationCycleError(f"circular dependency detected in calculation {calc.name}")
            return

        visiting.add(index)
        for dependency in dependencies[index]:
            visit(dependency)
        visiting.discard(index)
        visited.add(index)
        ordered.append(calc)

    for index in range(len(calculations)):
        visit(index)
    return ordered


class CalcEngine:
    def __init__(
        self,
        calculations: Iterable[Calculation | Mapping[str, Any]],
        ai_calculations: Iterable[AICalculation | Mapping[str, Any]] = (),
        ai_service: AICalculationService | None = None,
        cache: ResultCache | None = None,
        cycle_policy: str = "evaluate",
    ) -> None:
        if cycle_policy not in CYCLE_POLICIES:
            raise ValueError(f"unsupported cycle policy: {cycle_policy}")
        self.calculations = [Calculation.from_dict(calc) for calc in calculations]
        self.ai_calculations = [AICalculation.from_dict(calc) for calc in ai_calculations]
        self.ai_service = ai_service
        self.cache: ResultCache = cache if cache is not None else InMemoryResultCache()
        self.cycle_policy = cycle_policy
        self.ordered = sort_by_dependency(self.calculations, cycle_policy)

    def evaluate_sync(self, values: Mapping[str, Any]) -> dict[str, Any]:
        results: dict[str, Any] = {}
        bindings = build_bindings(values)
        computed = bindings.maps[0]

        for calc in self.ordered:
            try:
                value = evaluate_program(compile_formula(calc.formula), bindings)
                formatted = [(output.target, format_output(value, output.format)) for output in calc.outputs]
            except Exception as exc:
                logger.error(
                    "calculation_failed",
                    extra={"calculation_id": calc.id, "calculation_name": calc.name, "error": str(exc)},
                )
                formatted = [(output.target, 0) for output in calc.outputs]

            for target, output_value in formatted:
                results[target] = output_value
                computed[target] = bind_value(output_value)
        return results

    async def evaluate(self, values: Mapping[str, Any]) -> dict[str, Any]:
        results = self.evaluate_sync(values)
        if not self.ai_calculations:
            return results

        merged = {**values, **results}
        for ai_calc in self.ai_calculations:
            if ai_calc.scope == "fieldgroup":
                await self._evaluate_field_group(ai_calc, merged, results)
            else:
                await self._evaluate_global(ai_calc, merged, results)
            merged.update(results)
        return results

    async def _resolve(self, ai_calc: AICalculation, field_values: dict[str, Any], cache_key: str) -> Any:
        if ai_calc.cache_results and cache_key in self.cache:
            logger.debug("ai_cache_hit", extra={"calculation_id": ai_calc.id})
            return self.cache.get(cache_key)

        if self.ai_service is None:
            logger.warning("ai_service_not_configured", extra={"calculation_id": ai_calc.id})
            return ai_calc.fallback_value

        try:
            result = await self.ai_service.calculate(build_request_payload(ai_calc, field_values))
        except Exception as exc:
            logger.warning(
                "ai_calculation_failed",
                extra={"calculation_id": ai_calc.id, "calculation_name": ai_calc.name, "error": str(exc)},
            )
            return ai_calc.fallback_value

        if ai_calc.cache_results:
            self.cache.set(cache_key, result)
        return result

    async def _evaluate_global(self, ai_calc: AICalculation, merged: dict[str, Any], results: dict[str, Any]) -> None:
        field_values = {ref: merged.get(ref) for ref in ai_calc.field_references}
        value = await self._resolve(ai_calc, field_values, build_cache_key(ai_calc.id, field_values))
        results[ai_calc.id] = value
        if ai_calc.target_field:
            results[ai_calc.target_field] = value

    async def _evaluate_field_group(
        self,
        ai_calc: AICalculation,
        merged: dict[str, Any],
        results: dict[str, Any],
    ) -> None:
        group_key = ai_calc.field_group_key
        instances = merged.get(group_key) if group_key else None
        if not isinstance(instances, list):
            logger.debug("ai_field_group_skipped", extra={"calculation_id": ai_calc.id, "field_group_key": group_key})
            return

        target = ai_calc.resolved_target
        if target is None:
            logger.warning("ai_calculation_without_target", extra={"calculation_id": ai_calc.id})
            return

        async def run_instance(index: int, instance: Mapping[str, Any]) -> Any:
            # the target is excluded so writing the result back does not change the key
            snapshot = {key: value for key, value in instance.items() if key != target}
            field_values = {ref: instance.get(ref) for ref in ai_calc.field_references}
            cache_key = build_cache_key(ai_calc.id, group_key, index, snapshot)
            return await self._resolve(ai_calc, field_values, cache_key)

        snapshots = [dict(instance) if isinstance(instance, Mapping) else {} for instance in instances]
        outcomes = await asyncio.gather(
            *(run_instance(index, instance) for index, instance in enumerate(snapshots)),
            return_exceptions=True,
        )

        updated: list[dict[str, Any]] = []
        for index, (instance, outcome) in enumerate(zip(snapshots, outcomes, strict=True)):
            if isinstance(outcome, Exception):
                logger.warning(
                    "ai_field_group_instance_failed",
                    extra={"calculation_id": ai_calc.id, "instance_index": index, "error": str(outcome)},
                )
                outcome = ai_calc.fallback_value
            updated.append({**instance, target: outcome})
        results[group_key] = updated
