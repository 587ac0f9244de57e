import logging

import pytest

from form_runtime.calculations import CalcEngine, CalculationCycleError, sort_by_dependency
from form_runtime.schema import Calculation

CHAIN = [
    {"id": "b", "formula": "A + 1", "outputs": [{"target": "B"}]},
    {"id": "a", "formula": "2 * 3", "outputs": [{"target": "A"}]},
]


@pytest.mark.parametrize("calculations", [CHAIN, list(reversed(CHAIN))])
def test_dependent_calculations_run_in_order(calculations) -> None:
    engine = CalcEngine(calculations)
    assert [calc.id for calc in engine.ordered] == ["a", "b"]
    assert engine.evaluate_sync({}) == {"A": 6, "B": 7}


def test_calculation_outputs_are_formatted() -> None:
    engine = CalcEngine(
        [
            {
                "id": "total",
                "formula": "qty * price",
                "outputs": [{"target": "total", "format": "currency"}, {"target": "total_raw"}],
            }
        ]
    )
    assert engine.evaluate_sync({"qty": "3", "price": 10}) == {"total": "$30.00", "total_raw": 30}


def test_formatted_outputs_feed_later_calculations() -> None:
    engine = CalcEngine(
        [
            {"id": "with_tax", "formula": "subtotal * 1.5", "outputs": [{"target": "gross", "format": "currency"}]},
            {"id": "doubled", "formula": "gross * 2", "outputs": [{"target": "double_gross"}]},
        ]
    )
    assert engine.evaluate_sync({"subtotal": 1000}) == {"gross": "$1,500.00", "double_gross": 3000}


def test_cycle_terminates_with_warning(caplog) -> None:
    calculations = [
        {"id": "a", "name": "A from B", "formula": "B", "outputs": [{"target": "A"}]},
        {"id": "b", "name": "B from A", "formula": "A", "outputs": [{"target": "B"}]},
    ]
    with caplog.at_level(logging.WARNING, logger="form_runtime.calculations"):
        engine = CalcEngine(calculations)
        results = engine.evaluate_sync({})
    assert "calculation_cycle_detected" in caplog.messages
    assert sorted(results) == ["A", "B"]
    assert results == {"A": 0, "B": 0}


def test_cycle_uses_best_available_bindings() -> None:
    calculations = [
        {"id": "a", "formula": "B + 1", "outputs": [{"target": "A"}]},
        {"id": "b", "formula": "A + 1", "outputs": [{"target": "B"}]},
    ]
    engine = CalcEngine(calculations)
    assert engine.evaluate_sync({"A": 1, "B": 1}) == {"B": 2, "A": 3}


def test_cycle_policy_error_raises() -> None:
    calculations = [
        {"id": "a", "formula": "B", "outputs": [{"target": "A"}]},
        {"id": "b", "formula": "A", "outputs": [{"target": "B"}]},
    ]
    with pytest.raises(CalculationCycleError):
        CalcEngine(calculations, cycle_policy="error")


def test_unknown_cycle_policy_is_rejected() -> None:
    with pytest.raises(ValueError, match="cycle policy"):
        CalcEngine([], cycle_policy="retry")


def test_failing_calculation_is_isolated(caplog) -> None:
    engine = CalcEngine(
        [
            {"id": "bad", "formula": "missing * 2", "outputs": [{"target": "x"}, {"target": "y"}]},
            {"id": "ratio", "formula": "a / b", "outputs": [{"target": "ratio"}]},
            {"id": "good", "formula": "a + 1", "outputs": [{"target": "z"}]},
        ]
    )
    with caplog.at_level(logging.ERROR, logger="form_runtime.calculations"):
        results = engine.evaluate_sync({"a": 4, "b": 0})
    assert results == {"x": 0, "y": 0, "ratio": 0, "z": 5}
    assert caplog.messages.count("calculation_failed") == 2


def test_evaluate_sync_is_idempotent() -> None:
    engine = CalcEngine(CHAIN)
    values = {"unused": "1"}
    assert engine.evaluate_sync(values) == engine.evaluate_sync(values)
    assert values == {"unused": "1"}


def test_sort_by_dependency_matches_whole_identifiers() -> None:
    calculations = [
        Calculation.from_dict({"id": "uses_total", "formula": "subtotal + 1", "outputs": [{"target": "grand"}]}),
        Calculation.from_dict({"id": "total", "formula": "1", "outputs": [{"target": "total"}]}),
    ]
    assert [calc.id for calc in sort_by_dependency(calculations)] == ["uses_total", "total"]


def test_blank_formula_only_zeroes_its_own_outputs(caplog) -> None:
    engine = CalcEngine(
        [
            {"id": "draft", "formula": "", "outputs": [{"target": "draft_out"}]},
            {"id": "total", "formula": "qty * price", "outputs": [{"target": "total"}]},
        ]
    )
    with caplog.at_level(logging.ERROR, logger="form_runtime.calculations"):
        results = engine.evaluate_sync({"qty": 3, "price": 10})
    assert results == {"draft_out": 0, "total": 30}
    assert "calculation_failed" in caplog.messages


def test_unknown_output_format_returns_raw_value() -> None:
    engine = CalcEngine(
        [{"id": "ratio", "formula": "qty / 4", "outputs": [{"target": "ratio", "format": "fraction"}]}]
    )
    assert engine.calculations[0].outputs[0].format is None
    assert engine.evaluate_sync({"qty": 3}) == {"ratio": 0.75}
