import asyncio
import logging

import pytest

from form_runtime.config import RuntimeSettings
from form_runtime.driver import FormSession

ORDER_SCHEMA = {
    "id": "order",
    "fields": [
        {"key": "region", "type": "select", "default": "EU"},
        {"key": "currency", "type": "text"},
        {"key": "qty", "type": "number", "default": 1},
        {"key": "price", "type": "number", "default": 10},
        {"key": "discount", "type": "number", "hidden": True},
        {"key": "total", "type": "calculated"},
    ],
    "logic": [
        {
            "id": "na_currency",
            "when": {"field": "region", "op": "=", "value": "NA"},
            "actions": [
                {"type": "setValue", "target": "currency", "value": "USD"},
                {"type": "setValue", "target": "price", "value": 12},
            ],
        },
        {
            "id": "bulk",
            "when": {"field": "qty", "op": ">=", "value": 10},
            "actions": [{"type": "show", "target": "discount"}],
        },
    ],
    "calculations": [{"id": "total", "formula": "qty * price", "outputs": [{"target": "total"}]}],
}


def test_session_settles_on_creation() -> None:
    session = FormSession(ORDER_SCHEMA)
    state = session.render_state()
    assert state.values == {"region": "EU", "qty": 1, "price": 10, "total": 10}
    assert state.visible["discount"] is False
    assert state.visible["total"] is True


def test_update_runs_logic_and_calculations_until_settled() -> None:
    session = FormSession(ORDER_SCHEMA)
    state = session.update({"region": "NA", "qty": 12})
    assert state.values["currency"] == "USD"
    assert state.values["price"] == 12
    assert state.values["total"] == 144
    assert state.visible["discount"] is True
    assert session.generation == 1


def test_update_without_changes_keeps_generation() -> None:
    session = FormSession(ORDER_SCHEMA)
    session.update({"qty": 1})
    assert session.generation == 0


def test_settle_is_idempotent() -> None:
    session = FormSession(ORDER_SCHEMA, initial_values={"qty": 3})
    first = session.settle().as_dict()
    assert session.settle().as_dict() == first
    assert first["values"]["total"] == 30


def test_oscillating_rules_stop_at_pass_limit(caplog) -> None:
    schema = {
        "fields": [{"key": "a", "type": "number", "default": 1}],
        "logic": [
            {"id": "up", "when": {"field": "a", "op": "=", "value": 1}, "actions": [{"type": "setValue", "target": "a", "value": 2}]},
            {"id": "down", "when": {"field": "a", "op": "=", "value": 2}, "actions": [{"type": "setValue", "target": "a", "value": 1}]},
        ],
    }
    with caplog.at_level(logging.WARNING, logger="form_runtime.driver"):
        session = FormSession(schema, settings=RuntimeSettings(max_reactive_passes=3))
    assert "reactive_pass_limit_reached" in caplog.messages
    assert session.values["a"] in {1, 2}


def test_listener_updates_are_queued_until_batch_settles() -> None:
    session = FormSession(ORDER_SCHEMA)
    seen: list[tuple[str, object]] = []

    def on_change(key: str, value: object) -> None:
        seen.append((key, value))
        if key == "qty":
            session.update({"price": 5})

    session.subscribe(on_change)
    state = session.update({"qty": 4})
    assert state.values["price"] == 5
    assert state.values["total"] == 20
    assert ("qty", 4) in seen
    assert ("total", 20) in seen


def test_field_conditions_become_rules() -> None:
    schema = {
        "fields": [
            {"key": "has_pet", "type": "checkbox"},
            {
                "key": "pet_name",
                "type": "text",
                "conditions": [{"field": "has_pet", "op": "=", "value": "yes"}],
            },
        ]
    }
    session = FormSession(schema)
    assert session.render_state().visible["pet_name"] is False
    assert session.update({"has_pet": True}).visible["pet_name"] is True


class SlowService:
    def __init__(self) -> None:
        self.calls = 0
        self.release = asyncio.Event()

    async def calculate(self, payload: dict) -> str:
        self.calls += 1
        if self.calls == 1:
            await self.release.wait()
        return f"note for {payload['fieldValues']['name']}"


AI_SCHEMA = {
    "fields": [{"key": "name", "type": "text"}, {"key": "note", "type": "text"}],
    "aiCalculations": [
        {"id": "note_calc", "prompt": "Write a note", "fieldReferences": ["name"], "targetField": "note"}
    ],
}


@pytest.mark.asyncio
async def test_update_async_applies_ai_results() -> None:
    service = SlowService()
    service.release.set()
    session = FormSession(AI_SCHEMA, ai_service=service)
    state = await session.update_async({"name": "Ada"})
    assert state.values["note"] == "note for Ada"
    assert state.values["note_calc"] == "note for Ada"


@pytest.mark.asyncio
async def test_stale_ai_results_are_discarded() -> None:
    service = SlowService()
    session = FormSession(AI_SCHEMA, ai_service=service)

    slow = asyncio.create_task(session.update_async({"name": "Ada"}))
    await asyncio.sleep(0)
    fresh = await session.update_async({"name": "Bo"})
    service.release.set()
    await slow

    assert fresh.values["note"] == "note for Bo"
    assert session.values["note"] == "note for Bo"


def test_page_navigation_through_session() -> None:
    schema = {
        "fields": [
            {"key": "route", "type": "text"},
            {
                "id": "break_1",
                "type": "pagebreak",
                "navigationRules": [
                    {"id": "skip", "condition": {"field": "route", "op": "=", "value": "fast"}, "targetPage": 3}
                ],
            },
            {"key": "details", "type": "text"},
            {"id": "break_2", "type": "pagebreak"},
            {"key": "confirm", "type": "checkbox"},
        ]
    }
    session = FormSession(schema)
    assert len(session.pages) == 3
    assert session.next_page(0) == 1
    session.update({"route": "fast"})
    assert session.next_page(0) == 2
    assert session.next_page(2) == 2
    assert session.previous_page(0) == 0


def test_blank_formula_does_not_break_the_session() -> None:
    schema = {
        **ORDER_SCHEMA,
        "calculations": [
            {"id": "draft", "formula": " ", "outputs": [{"target": "draft_out"}]},
            *ORDER_SCHEMA["calculations"],
        ],
    }
    session = FormSession(schema)
    state = session.update({"qty": 3})
    assert state.values["total"] == 30
    assert state.values["draft_out"] == 0
