"""Form engine: keeps field directives and validation in sync with the form value."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Set, Tuple

from async_tasks import AsyncTask, AsyncTaskManager, HttpClient, HttpOutcome
from condition_eval import EvaluationContext, HttpRequestSpec, HttpCondition
from dependency_tracker import WHOLE_FORM, Dependencies, DependencyIndex, field_dependencies, item_dependencies
from dynform.field_path import format_path, get_path, parse_path
from dynform.snapshot_hash import snapshot_hash
from expression_eval import Clock
from form_config import FieldSpec, FormSpec, parse_form
from logic_resolver import FORM_INVALID, FORM_PENDING, FORM_SUBMITTING, FieldDirectives, resolve_directives
from validator_resolver import HttpValidator, ValidationError, resolve_errors, resolve_message
from value_store import ExternalDataStore, FormValueStore

from app.config import EngineSettings, load_settings
from app.http_client import HttpxRequestClient
from app.messages import JinjaMessageFormatter
from app.registry import FunctionRegistry

logger = logging.getLogger("dynform.engine")

Listener = Callable[[Set[str]], None]


@dataclass(frozen=True)
class FieldState:
    directives: FieldDirectives
    errors: Tuple[ValidationError, ...] = ()
    pending: bool = False
    async_error: bool = False

    @property
    def valid(self) -> bool:
        return not self.errors

    def as_dict(self) -> Dict[str, Any]:
        return {
            "directives": self.directives.as_dict(),
            "errors": [error.as_dict() for error in self.errors],
            "pending": self.pending,
            "async_error": self.async_error,
            "valid": self.valid,
        }


def _uses_http(spec: FieldSpec) -> bool:
    def _walk(cond: Any) -> bool:
        if isinstance(cond, HttpCondition):
            return True
        return any(_walk(child) for child in getattr(cond, "conditions", None) or [])

    for rule in spec.logic:
        if _walk(rule.condition):
            return True
    for validator in spec.validators:
        if isinstance(validator, HttpValidator) or _walk(validator.when):
            return True
    return any(_uses_http(item) for item in spec.item_fields)


class FormEngine:
    def __init__(
        self,
        form: FormSpec | Dict[str, Any],
        values: FormValueStore | None = None,
        external: ExternalDataStore | None = None,
        *,
        http_client: HttpClient | None = None,
        registry: FunctionRegistry | None = None,
        formatter: Callable[[str, Dict[str, Any]], str] | None = None,
        settings: EngineSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._registry = registry if registry is not None else FunctionRegistry()
        self._form = form if isinstance(form, FormSpec) else parse_form(form, function_names=self._registry)
        self._values = values if values is not None else FormValueStore()
        self._external = external if external is not None else ExternalDataStore()
        self._settings = settings or load_settings()
        self._format = formatter or JinjaMessageFormatter()
        self._clock = clock
        self._owned_client: HttpxRequestClient | None = None
        if http_client is None and any(_uses_http(spec) for spec in self._form.fields):
            self._owned_client = HttpxRequestClient(
                base_url=self._settings.http_base_url,
                timeout_s=self._settings.http_timeout_s,
            )
            http_client = self._owned_client
        self._tasks = AsyncTaskManager(
            http_client,
            debounce_ms=self._settings.http_debounce_ms,
            timeout_s=self._settings.http_timeout_s,
            cache_ttl_s=self._settings.http_cache_ttl_s,
            cache_max_entries=self._settings.http_cache_max_entries,
            on_settled=self._on_task_settled,
        )
        self._index = DependencyIndex()
        self._fields: Dict[str, FieldSpec] = {}
        self._arrays: Dict[str, FieldSpec] = {}
        # torn-down item field -> its array path
        self._detached: Dict[str, str] = {}
        self._states: Dict[str, FieldState] = {}
        self._listeners: List[Listener] = []
        self._submitting = False
        self._form_state: Dict[str, bool] = {FORM_SUBMITTING: False, FORM_INVALID: False, FORM_PENDING: False}
        self._closed = False
        for spec in self._form.fields:
            self._track(spec)
            if spec.is_array:
                self._arrays[spec.path] = spec
        self._sync_items(self._values.snapshot())
        self._values.subscribe(self._on_values_changed)
        self._external.subscribe(self._on_external_changed)
        logger.info(
            "form_engine_ready fields=%s http=%s",
            len(self._fields),
            http_client is not None,
        )
        self._run_pass(self._index.fields())

    # -- public surface ------------------------------------------------

    @property
    def form(self) -> FormSpec:
        return self._form

    @property
    def values(self) -> FormValueStore:
        return self._values

    @property
    def external(self) -> ExternalDataStore:
        return self._external

    def fields(self) -> List[str]:
        return self._index.fields()

    def state(self, field_path: str) -> FieldState | None:
        return self._states.get(field_path)

    def get_directives(self, field_path: str) -> FieldDirectives:
        state = self._states.get(field_path)
        return state.directives if state is not None else FieldDirectives()

    def get_errors(self, field_path: str) -> List[ValidationError]:
        state = self._states.get(field_path)
        return list(state.errors) if state is not None else []

    def is_pending(self, field_path: str | None = None) -> bool:
        if field_path is None:
            return any(state.pending for state in self._states.values())
        state = self._states.get(field_path)
        return bool(state and state.pending)

    def has_async_error(self, field_path: str) -> bool:
        state = self._states.get(field_path)
        return bool(state and state.async_error)

    def is_valid(self) -> bool:
        """No visible, enabled field carries an error."""
        for state in self._states.values():
            if state.errors and not (state.directives.hidden or state.directives.disabled):
                return False
        return True

    def form_state(self) -> Dict[str, bool]:
        return dict(self._form_state)

    def dependencies(self, field_path: str) -> Dependencies | None:
        return self._index.dependencies(field_path)

    def tasks(self, field_path: str | None = None) -> List[AsyncTask]:
        return self._tasks.tasks(field_path)

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> bool:
        try:
            self._listeners.remove(listener)
            return True
        except ValueError:
            return False

    def set_submitting(self, submitting: bool) -> None:
        self._submitting = bool(submitting)
        form_value = self._values.snapshot()
        external = self._external.snapshot()
        self._notify(self._sync_form_state(form_value, external))

    def refresh(self) -> None:
        """Re-evaluate every field, e.g. after a validator function was swapped."""
        self._notify(self._run_pass(self._index.fields()))

    def teardown(self, field_path: str) -> bool:
        """Stop tracking a field: cancel its tasks and drop its index entries.

        An array field takes its item fields with it; a torn-down item field
        stays gone while its item exists.
        """
        spec = self._fields.get(field_path)
        if spec is None:
            return False
        self._drop(field_path)
        if spec.array_path is not None:
            self._detached[field_path] = spec.array_path
        if self._arrays.pop(field_path, None) is not None:
            for path in [p for p, s in self._fields.items() if s.array_path == field_path]:
                self._drop(path)
        form_value = self._values.snapshot()
        external = self._external.snapshot()
        self._notify(self._sync_form_state(form_value, external))
        return True

    async def settle(self, timeout: float | None = None) -> bool:
        """Wait for in-flight HTTP work; False when the timeout ran out first."""
        limit = self._settings.settle_timeout_s if timeout is None else timeout
        return await self._tasks.drain(limit)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._values.unsubscribe(self._on_values_changed)
        self._external.unsubscribe(self._on_external_changed)
        self._tasks.cancel_all()
        if self._owned_client is not None:
            await self._owned_client.aclose()
        logger.info("form_engine_closed fields=%s", len(self._fields))

    # -- field registry ------------------------------------------------

    def _track(self, spec: FieldSpec) -> None:
        deps = field_dependencies(spec.item_path or spec.path, spec.logic, spec.validators)
        if spec.array_path is not None:
            deps = item_dependencies(deps, spec.array_path, spec.array_index)
        self._fields[spec.path] = spec
        self._index.add(spec.path, deps)

    def _drop(self, field_path: str) -> bool:
        if self._fields.pop(field_path, None) is None:
            return False
        self._index.remove(field_path)
        cancelled = self._tasks.cancel(field_path)
        self._states.pop(field_path, None)
        logger.info("field_teardown field=%s cancelled_tasks=%s", field_path, cancelled)
        return True

    def _sync_items(self, form_value: Dict[str, Any]) -> Tuple[List[str], List[str]]:
        """Create and drop item fields so they match the current array items."""
        added: List[str] = []
        removed: List[str] = []
        for array_path, spec in self._arrays.items():
            items = get_path(form_value, array_path)
            count = len(items) if isinstance(items, list) else 0
            wanted: Dict[str, FieldSpec] = {}
            for index in range(count):
                for template in spec.item_fields:
                    item_spec = template.for_item(array_path, index)
                    wanted[item_spec.path] = item_spec
            for path in [p for p, s in self._fields.items() if s.array_path == array_path and p not in wanted]:
                self._drop(path)
                removed.append(path)
            for path in [p for p, a in self._detached.items() if a == array_path and p not in wanted]:
                del self._detached[path]
            for path, item_spec in wanted.items():
                if path not in self._fields and path not in self._detached:
                    self._track(item_spec)
                    added.append(path)
        if added or removed:
            logger.debug("array_items_synced added=%s removed=%s", len(added), len(removed))
        return added, removed

    # -- change handling -----------------------------------------------

    def _on_values_changed(self, changed_paths: List[str]) -> None:
        if self._closed:
            return
        added, removed = self._sync_items(self._values.snapshot())
        impacted = self._index.impacted(changed_paths=changed_paths)
        impacted += [path for path in added if path not in impacted]
        changed = self._run_pass(impacted) | set(removed)
        if removed and not impacted:
            changed |= self._sync_form_state(self._values.snapshot(), self._external.snapshot())
        self._notify(changed)

    def _on_external_changed(self, changed_keys: List[str]) -> None:
        if self._closed:
            return
        self._notify(self._run_pass(self._index.impacted(changed_keys=changed_keys)))

    def _on_task_settled(self, task: AsyncTask) -> None:
        if self._closed or task.field_path not in self._fields:
            return
        logger.debug(
            "async_task_settled task_id=%s field=%s slot=%s status=%s",
            task.id,
            task.field_path,
            task.slot,
            task.status,
        )
        self._notify(self._run_pass([task.field_path]))

    def _notify(self, changed: Set[str]) -> None:
        if not changed:
            return
        for listener in list(self._listeners):
            try:
                listener(set(changed))
            except Exception:
                logger.exception("engine_listener_failed changed=%s", sorted(changed))

    # -- evaluation ----------------------------------------------------

    def _run_pass(self, field_paths: List[str]) -> Set[str]:
        if not field_paths:
            return set()
        form_value = self._values.snapshot()
        external = self._external.snapshot()
        changed = {path for path in field_paths if self._evaluate_field(path, form_value, external)}
        changed |= self._sync_form_state(form_value, external)
        logger.debug("evaluation_pass fields=%s changed=%s", len(field_paths), len(changed))
        return changed

    def _evaluate_field(self, field_path: str, form_value: Dict[str, Any], external: Dict[str, Any]) -> bool:
        spec = self._fields.get(field_path)
        if spec is None:
            return False
        used: Set[Tuple[str, str]] = set()
        ctx = EvaluationContext(
            form_value=form_value,
            external_data=external,
            field_path=field_path,
            form_state=dict(self._form_state),
            resolve_http=self._http_resolver(field_path, used, form_value, external),
            clock=self._clock,
        )
        if spec.array_path is not None:
            item = get_path(form_value, format_path(parse_path(spec.array_path) + (spec.array_index,)))
            ctx.form_value = item if isinstance(item, dict) else {}
            ctx.root_form_value = form_value
            ctx.field_path = spec.item_path
            ctx.array_path = spec.array_path
            ctx.array_index = spec.array_index
        resolution =resolve_directives(spec.static, spec.logic, ctx)
        outcome = resolve_errors(spec.validators, resolution.directives, ctx, self._registry)
        self._tasks.retain(field_path, used)
        errors = tuple(self._with_message(spec, error) for error in outcome.errors)
        state = FieldState(
            directives=resolution.directives,
            errors=errors,
            pending=resolution.pending or outcome.pending,
            async_error=outcome.async_error,
        )
        if self._states.get(field_path) == state:
            return False
        self._states[field_path] = state
        return True

    def _with_message(self, spec: FieldSpec, error: ValidationError) -> ValidationError:
        message = resolve_message(
            error,
            spec.validation_messages,
            self._form.default_validation_messages,
            self._format,
        )
        return ValidationError(error.kind, dict(error.params), message)

    def _http_resolver(
        self,
        field_path: str,
        used: Set[Tuple[str, str]],
        form_value: Dict[str, Any],
        external: Dict[str, Any],
    ) -> Callable[[HttpRequestSpec, str, Dict[str, Any]], HttpOutcome]:
        snapshot: List[str] = []

        def _resolve(spec: HttpRequestSpec, slot: str, bindings: Dict[str, Any]) -> HttpOutcome:
            kind = "validator" if slot.startswith("validators") else "condition"
            used.add((kind, slot))
            if not snapshot:
                snapshot.append(self._dependency_snapshot(field_path, form_value, external))
            return self._tasks.resolve(field_path, kind, slot, spec, bindings, snapshot[0], self._clock)

        return _resolve

    def _dependency_snapshot(self, field_path: str, form_value: Dict[str, Any], external: Dict[str, Any]) -> str:
        deps = self._index.dependencies(field_path) or Dependencies()
        if deps.whole_form:
            form_part: Any = form_value
        else:
            form_part = {path: get_path(form_value, path) for path in sorted(deps.form_paths)}
        if WHOLE_FORM in deps.external_keys:
            external_part: Any = external
        else:
            external_part = {key: external.get(key) for key in sorted(deps.external_keys)}
        return snapshot_hash({"form": form_part, "external": external_part})

    def _sync_form_state(self, form_value: Dict[str, Any], external: Dict[str, Any]) -> Set[str]:
        """Recompute form-level aliases and re-run the fields that read them.

        Fields with alias rules are left out of formInvalid/formPending so the
        re-run cannot feed back into the aliases.
        """
        invalid = False
        pending = False
        for path, state in self._states.items():
            spec = self._fields.get(path)
            if spec is None or spec.uses_form_state:
                continue
            if state.pending:
                pending = True
            if state.errors and not (state.directives.hidden or state.directives.disabled):
                invalid = True
        new_state = {FORM_SUBMITTING: self._submitting, FORM_INVALID: invalid, FORM_PENDING: pending}
        diff = sorted(name for name, value in new_state.items() if self._form_state.get(name) != value)
        self._form_state = new_state
        if not diff:
            return set()
        logger.debug("form_state_changed changed=%s", ",".join(diff))
        return {
            path
            for path in self._index.impacted(changed_state=diff)
            if self._evaluate_field(path, form_value, external)
        }
