"""FastAPI service exposing form evaluation and config checks."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from form_config import ConfigError, validate_form_config
from value_store import ExternalDataStore, FormValueStore

from app.config import load_settings
from app.diagnostics import build_diagnostics
from app.form_engine import FormEngine
from app.registry import FunctionRegistry

app = FastAPI(title="Dynamic Form Engine")
logger = logging.getLogger("dynform.api")
logging.basicConfig(level=logging.INFO)

settings = load_settings()
registry = FunctionRegistry()


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


async def _read_body(request: Request) -> Dict[str, Any] | JSONResponse:
    try:
        body = await request.json()
    except ValueError:
        return _error_response("BODY_INVALID", "request body must be JSON", None)
    if not isinstance(body, dict):
        return _error_response("BODY_INVALID", "request body must be an object", None)
    for key in ("value", "externalData"):
        if body.get(key) is not None and not isinstance(body.get(key), dict):
            return _error_response("BODY_INVALID", f"{key} must be an object", key)
    return body


async def _run_engine(body: Dict[str, Any]) -> FormEngine:
    engine = FormEngine(
        body.get("form"),
        FormValueStore(body.get("value") or {}),
        ExternalDataStore(body.get("externalData") or {}),
        registry=registry,
        settings=settings,
    )
    if body.get("submitting"):
        engine.set_submitting(True)
    settled = await engine.settle(settings.settle_timeout_s)
    if not settled:
        logger.warning("form_settle_timeout fields=%s timeout_s=%s", len(engine.fields()), settings.settle_timeout_s)
    return engine


@app.post("/forms/validate-config")
async def forms_validate_config(request: Request):
    body = await _read_body(request)
    if isinstance(body, JSONResponse):
        return body
    errors, warnings = validate_form_config(body.get("form"), function_names=registry)
    payload = {"ok": not errors, "errors": errors, "warnings": warnings}
    return JSONResponse(jsonable_encoder(payload), status_code=200)


@app.post("/forms/evaluate")
async def forms_evaluate(request: Request):
    body = await _read_body(request)
    if isinstance(body, JSONResponse):
        return body
    try:
        engine = await _run_engine(body)
    except ConfigError as exc:
        payload = {"ok": False, "errors": exc.issues, "warnings": []}
        return JSONResponse(jsonable_encoder(payload), status_code=400)
    try:
        fields = {}
        for path in engine.fields():
            state = engine.state(path)
            if state is not None:
                fields[path] = state.as_dict()
        return _ok_response(
            {
                "valid": engine.is_valid(),
                "pending": engine.is_pending(),
                "form_state": engine.form_state(),
                "fields": fields,
            }
        )
    finally:
        await engine.aclose()


@app.post("/forms/diagnostics")
async def forms_diagnostics(request: Request):
    body = await _read_body(request)
    if isinstance(body, JSONResponse):
        return body
    try:
        engine = await _run_engine(body)
    except ConfigError as exc:
        payload = {"ok": False, "errors": exc.issues, "warnings": []}
        return JSONResponse(jsonable_encoder(payload), status_code=400)
    try:
        return _ok_response({"diagnostics": build_diagnostics(engine)})
    finally:
        await engine.aclose()
