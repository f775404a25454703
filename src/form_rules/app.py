from __future__ import annotations

import logging
import os
from typing import Any

from flask import Flask, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .dependencies import extract_source_dependencies
from .errors import ConfigurationError
from .form import FormEngine, analyze_form
from .http import DEFAULT_TIMEOUT, HttpClient
from .scheduling import ManualScheduler
from .schemas import SchemaRegistry


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(ConfigurationError)
    def handle_configuration_error(error: ConfigurationError) -> Any:
        app.logger.warning(
            "configuration_rejected",
            extra={"path": request.path, "method": request.method, "error": str(error)},
        )
        errors = error.errors or [error]
        return jsonify({"error": str(error), "errors": [item.to_dict() for item in errors]}), 400

    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        return jsonify({"error": "invalid request payload"}), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        return jsonify({"error": error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        return jsonify({"error": "internal server error"}), 500


def _json_body() -> dict[str, Any]:
    body = request.get_json(force=True, silent=False) or {}
    if not isinstance(body, dict):
        raise BadRequest("request body must be a JSON object")
    return body


def _form_config(body: dict[str, Any]) -> dict[str, Any]:
    fields = body.get("fields")
    if not isinstance(fields, list):
        raise BadRequest("fields must be a list")
    return {"fields": fields, "schemas": body.get("schemas") or []}


def _http_client(app: Flask) -> HttpClient:
    return HttpClient(base_url=app.config["FORM_HTTP_BASE_URL"], timeout=app.config["FORM_HTTP_TIMEOUT"])


def create_rules_app(schemas_path: str | None = None) -> Flask:
    app = Flask(__name__)
    _configure_observability(app, "form-rules")
    _configure_error_handlers(app)
    app.config["FORM_SCHEMAS_PATH"] = schemas_path or os.environ.get("FORM_SCHEMAS_PATH", "")
    app.config["FORM_HTTP_BASE_URL"] = os.environ.get("FORM_HTTP_BASE_URL", "")
    app.config["FORM_HTTP_TIMEOUT"] = float(os.environ.get("FORM_HTTP_TIMEOUT", DEFAULT_TIMEOUT))
    schemas = SchemaRegistry.from_file(app.config["FORM_SCHEMAS_PATH"]) if app.config["FORM_SCHEMAS_PATH"] else SchemaRegistry()
    app.extensions["form_schemas"] = schemas

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.post("/api/analyze")
    def analyze() -> Any:
        body = _json_body()
        return jsonify(analyze_form(_form_config(body), schemas=schemas))

    @app.post("/api/evaluate")
    def evaluate() -> Any:
        body = _json_body()
        values = body.get("values") or {}
        external_data = body.get("externalData") or {}
        if not isinstance(values, dict) or not isinstance(external_data, dict):
            return jsonify({"error": "values and externalData must be objects"}), 400

        scheduler = ManualScheduler()
        engine = FormEngine(
            _form_config(body),
            schemas=schemas,
            scheduler=scheduler,
            external_data=external_data,
            http_client=_http_client(app),
        )
        try:
            try:
                engine.apply_values(values)
            except (KeyError, ValueError) as exc:
                return jsonify({"error": str(exc.args[0])}), 400
            scheduler.settle()
            app.logger.info(
                "form_evaluated",
                extra={"fields": len(engine.fields), "valid": engine.valid.peek(), "values": sorted(values)},
            )
            return jsonify({"valid": engine.valid.peek(), "value": engine.form_value(), "fields": engine.snapshot()})
        finally:
            engine.dispose()
            scheduler.close()

    @app.post("/api/dependencies")
    def dependencies() -> Any:
        body = _json_body()
        expression = body.get("expression")
        if not isinstance(expression, str) or not expression.strip():
            return jsonify({"error": "expression must be a non-empty string"}), 400
        return jsonify({"expression": expression, "dependencies": sorted(extract_source_dependencies(expression))})

    @app.get("/api/schemas")
    def list_schemas() -> Any:
        return jsonify({"schemas": schemas.names()})

    @app.post("/api/schemas")
    def register_schema() -> Any:
        body = _json_body()
        definition = schemas.register(body)
        return jsonify({"status": "ok", "schema": definition.name}), 201

    return app
