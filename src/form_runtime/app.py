from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from flask import Flask, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .ai_client import AICalculationClient
from .calculations import CalcEngine
from .config import RuntimeSettings
from .driver import FormSession
from .logic import LogicEngine
from .navigation import next_page, previous_page, split_pages
from .schema import FormSchema, SchemaError

APP_NAME = "form-runtime"


def _configure_observability(app: Flask, app_name: str, settings: RuntimeSettings) -> None:
    app.config["APP_NAME"] = app_name
    level = getattr(logging, settings.log_level, logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("form_runtime").setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        if _is_api_request():
            return jsonify({"error": "invalid request payload"}), 400
        return error

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        if _is_api_request():
            return jsonify({"error": error.description}), error.code
        return error

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        if _is_api_request():
            return jsonify({"error": "internal server error"}), 500
        raise error


def _json_body() -> dict[str, Any]:
    body = request.get_json(force=True, silent=False) or {}
    if not isinstance(body, dict):
        raise BadRequest("request body must be a JSON object")
    return body


def _schema_and_values(body: dict[str, Any]) -> tuple[FormSchema, dict[str, Any]]:
    if "schema" not in body:
        raise SchemaError("schema is required")
    values = body.get("values", {})
    if not isinstance(values, dict):
        raise SchemaError("values must be an object")
    return FormSchema.from_dict(body["schema"]), values


def create_runtime_app(
    settings: RuntimeSettings | None = None,
    ai_transport: httpx.AsyncBaseTransport | None = None,
) -> Flask:
    settings = settings or RuntimeSettings.from_env()
    app = Flask(__name__)
    _configure_observability(app, APP_NAME, settings)
    _configure_error_handlers(app)
    app.config["RUNTIME_SETTINGS"] = settings

    def _ai_client(schema: FormSchema) -> AICalculationClient | None:
        if not schema.ai_calculations:
            return None
        return AICalculationClient(settings.ai_endpoint, timeout=settings.ai_timeout, transport=ai_transport)

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.post("/api/logic")
    def evaluate_logic() -> Any:
        body = _json_body()
        try:
            schema, values = _schema_and_values(body)
            engine = LogicEngine(
                schema.merged_logic(),
                field_keys=schema.field_keys(),
                hidden_fields=schema.hidden_field_keys(),
                required_fields=schema.required_field_keys(),
                hide_show_targets=settings.hide_show_targets,
            )
        except SchemaError as exc:
            return jsonify({"error": str(exc)}), 400

        return jsonify(engine.evaluate(values).as_dict())

    @app.post("/api/calculate")
    def calculate() -> Any:
        body = _json_body()
        try:
            schema, values = _schema_and_values(body)
            engine = CalcEngine(
                schema.calculations,
                schema.ai_calculations,
                ai_service=_ai_client(schema),
                cycle_policy=settings.cycle_policy,
            )
        except (SchemaError, ValueError) as exc:
            return jsonify({"error": str(exc)}), 400

        if body.get("include_ai"):
            results = asyncio.run(engine.evaluate(values))
        else:
            results = engine.evaluate_sync(values)
        return jsonify({"results": results})

    @app.post("/api/evaluate")
    def evaluate_form() -> Any:
        body = _json_body()
        try:
            schema, values = _schema_and_values(body)
            session = FormSession(schema, ai_service=_ai_client(schema), settings=settings, initial_values=values)
        except (SchemaError, ValueError) as exc:
            return jsonify({"error": str(exc)}), 400

        state = asyncio.run(session.update_async())
        app.logger.info(
            "form_evaluated",
            extra={"form_id": schema.id, "field_count": len(state.values), "generation": session.generation},
        )
        return jsonify(state.as_dict())

    @app.post("/api/navigate")
    def navigate() -> Any:
        body = _json_body()
        try:
            schema, values = _schema_and_values(body)
            current_page = int(body.get("current_page", 0))
        except (SchemaError, TypeError, ValueError) as exc:
            return jsonify({"error": str(exc)}), 400

        if body.get("direction", "next") == "previous":
            return jsonify({"page": previous_page(current_page)})
        return jsonify({"page": next_page(split_pages(schema.fields), current_page, values)})

    return app
