"""Diagnostics report for a running form engine."""

from __future__ import annotations

from typing import Any, Dict, List

from app.form_engine import FormEngine


def build_diagnostics(engine: FormEngine) -> dict:
    fields: List[Dict[str, Any]] = []
    invalid = 0
    pending = 0
    async_errors = 0
    for path in engine.fields():
        state = engine.state(path)
        deps = engine.dependencies(path)
        tasks = [task.as_dict() for task in engine.tasks(path)]
        errors = [error.kind for error in state.errors] if state else []
        if errors:
            invalid += 1
        if state and state.pending:
            pending += 1
        if state and state.async_error:
            async_errors += 1
        fields.append(
            {
                "path": path,
                "directives": state.directives.as_dict() if state else None,
                "errors": errors,
                "pending": bool(state and state.pending),
                "async_error": bool(state and state.async_error),
                "dependencies": deps.as_dict() if deps else None,
                "tasks": tasks,
            }
        )
    return {
        "fields": fields,
        "form_state": engine.form_state(),
        "summary": {
            "fields": len(fields),
            "invalid": invalid,
            "pending": pending,
            "async_errors": async_errors,
            "valid": engine.is_valid(),
        },
    }
