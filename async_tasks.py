"""Async HTTP task management: debounce, de-duplication, cancellation, caching."""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Protocol, Set, Tuple
from urllib.parse import quote

import httpx

import expression_eval
from condition_eval import HttpRequestSpec
from dynform.canonical_json import canonical_key

logger = logging.getLogger("dynform.async_tasks")

PENDING = "pending"
RESOLVED = "resolved"
ERROR = "error"
CANCELLED = "cancelled"
SKIPPED = "skipped"

DEFAULT_DEBOUNCE_MS = 300
DEFAULT_TIMEOUT_S = 10.0
DEFAULT_CACHE_TTL_S = 30.0
DEFAULT_CACHE_MAX_ENTRIES = 256

PLACEHOLDER_RE = re.compile(r":([A-Za-z_][A-Za-z0-9_]*)")

TaskKey = Tuple[str, str, str]


@dataclass
class AsyncError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


class HttpClient(Protocol):
    def request(self, request: Dict[str, Any]) -> Awaitable[Dict[str, Any]]:
        ...


@dataclass(frozen=True)
class ResolvedRequest:
    url: str
    method: str = "GET"
    headers: Tuple[Tuple[str, str], ...] = ()

    @property
    def key(self) -> str:
        return canonical_key({"method": self.method, "url": self.url, "headers": list(self.headers)})

    def as_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "method": self.method, "headers": dict(self.headers)}


@dataclass(frozen=True)
class HttpOutcome:
    status: str
    response: Any = None
    error: AsyncError | None = None


@dataclass
class AsyncTask:
    id: str
    field_path: str
    kind: str
    slot: str
    request: ResolvedRequest
    dependency_snapshot: str = ""
    status: str = PENDING
    result: Any = None
    error: AsyncError | None = None
    started_at: float = 0.0
    settled_at: float | None = None
    handle: asyncio.Task | None = field(default=None, repr=False, compare=False)

    @property
    def key(self) -> TaskKey:
        return (self.field_path, self.kind, self.slot)

    def outcome(self) -> HttpOutcome:
        if self.status == RESOLVED:
            return HttpOutcome(RESOLVED, self.result)
        if self.status == ERROR:
            return HttpOutcome(ERROR, error=self.error)
        return HttpOutcome(PENDING)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "field_path": self.field_path,
            "kind": self.kind,
            "slot": self.slot,
            "request": self.request.as_dict(),
            "dependency_snapshot": self.dependency_snapshot,
            "status": self.status,
            "error": self.error.code if self.error else None,
        }


@dataclass
class _SharedRequest:
    future: asyncio.Future
    waiters: int = 0
    abandoned: bool = False


def url_placeholders(url: str) -> List[str]:
    return PLACEHOLDER_RE.findall(url)


def _param_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return expression_eval.to_js_string(value)


def build_request(
    spec: HttpRequestSpec,
    bindings: Dict[str, Any],
    clock: expression_eval.Clock | None = None,
) -> ResolvedRequest | None:
    """Resolve URL placeholders and query params; None when a path param is null."""
    values: Dict[str, str] = {}
    for name, expr in spec.params.items():
        value = expression_eval.eval_expression(expr, bindings, clock)
        if value is None:
            return None
        values[name] = quote(_param_text(value), safe="")

    def _sub(match: re.Match) -> str:
        return values.get(match.group(1), match.group(0))

    url = PLACEHOLDER_RE.sub(_sub, spec.url)

    query: List[Tuple[str, str]] = []
    for name, expr in spec.query_params.items():
        value = expression_eval.eval_expression(expr, bindings, clock)
        if value is None:
            continue
        if isinstance(value, list):
            query.extend((name, _param_text(item)) for item in value if item is not None)
        else:
            query.append((name, _param_text(value)))
    if query:
        url = f"{url}{'&' if '?' in url else '?'}{httpx.QueryParams(query)}"

    headers = tuple(sorted((str(k), str(v)) for k, v in spec.headers.items()))
    return ResolvedRequest(url=url, method=(spec.method or "GET").upper(), headers=headers)


class AsyncTaskManager:
    """Runs HTTP-backed evaluations; the latest task per key wins."""

    def __init__(
        self,
        client: HttpClient | None,
        *,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        cache_ttl_s: float = DEFAULT_CACHE_TTL_S,
        cache_max_entries: int = DEFAULT_CACHE_MAX_ENTRIES,
        on_settled: Callable[[AsyncTask], None] | None = None,
        time_func: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._debounce_ms = debounce_ms
        self._timeout_s = timeout_s
        self._cache_ttl_s = cache_ttl_s
        self._cache_max_entries = max(1, cache_max_entries)
        self._on_settled = on_settled
        self._time = time_func
        self._latest: Dict[TaskKey, AsyncTask] = {}
        self._inflight: Dict[str, _SharedRequest] = {}
        self._cache: Dict[str, Tuple[float, Any]] = {}

    def set_on_settled(self, callback: Callable[[AsyncTask], None] | None) -> None:
        self._on_settled = callback

    # -- scheduling ----------------------------------------------------

    def resolve(
        self,
        field_path: str,
        kind: str,
        slot: str,
        spec: HttpRequestSpec,
        bindings: Dict[str, Any],
        dependency_snapshot: str = "",
        clock: expression_eval.Clock | None = None,
    ) -> HttpOutcome:
        """Current outcome for a request slot, starting a task when needed."""
        key = (field_path, kind, slot)
        try:
            request = build_request(spec, bindings, clock)
        except expression_eval.ExpressionError as exc:
            logger.warning(
                "http_request_build_failed field=%s slot=%s code=%s error=%s",
                field_path,
                slot,
                exc.code,
                exc.message,
            )
            self._cancel_task(self._latest.pop(key, None))
            return HttpOutcome(ERROR, error=AsyncError("HTTP_REQUEST_INVALID", exc.message, slot))
        if request is None:
            self._cancel_task(self._latest.pop(key, None))
            return HttpOutcome(SKIPPED)

        task = self._latest.get(key)
        if task is not None and task.status != CANCELLED and task.request.key == request.key:
            unscheduled = task.error is not None and task.error.code == "ASYNC_NO_LOOP"
            if not unscheduled:
                return task.outcome()

        cached = self._cache_get(request.key)
        if cached is not None:
            body = cached[1]
            self._cancel_task(task)
            done = self._new_task(field_path, kind, slot, request, dependency_snapshot)
            done.status = RESOLVED
            done.result = body
            done.settled_at = done.started_at
            self._latest[key] = done
            logger.debug("http_cache_hit field=%s slot=%s url=%s", field_path, slot, request.url)
            return done.outcome()

        debounce_ms = spec.debounce_ms if spec.debounce_ms is not None else self._debounce_ms
        return self.run(field_path, kind, slot, request, dependency_snapshot, debounce_ms).outcome()

    def run(
        self,
        field_path: str,
        kind: str,
        slot: str,
        request: ResolvedRequest,
        dependency_snapshot: str = "",
        debounce_ms: int | None = None,
    ) -> AsyncTask:
        """Start a task for the key, cancelling whatever was running there."""
        task = self._new_task(field_path, kind, slot, request, dependency_snapshot)
        self._cancel_task(self._latest.get(task.key))
        self._latest[task.key] = task
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            task.status = ERROR
            task.error = AsyncError("ASYNC_NO_LOOP", "No running event loop", slot)
            task.settled_at = self._time()
            logger.warning("async_task_unscheduled field=%s slot=%s reason=no_loop", field_path, slot)
            return task
        delay = (self._debounce_ms if debounce_ms is None else debounce_ms) / 1000.0
        task.handle = loop.create_task(self._execute(task, delay))
        logger.debug(
            "async_task_started task_id=%s field=%s kind=%s slot=%s url=%s",
            task.id,
            field_path,
            kind,
            slot,
            request.url,
        )
        return task

    def _new_task(
        self,
        field_path: str,
        kind: str,
        slot: str,
        request: ResolvedRequest,
        dependency_snapshot: str,
    ) -> AsyncTask:
        return AsyncTask(
            id=uuid.uuid4().hex,
            field_path=field_path,
            kind=kind,
            slot=slot,
            request=request,
            dependency_snapshot=dependency_snapshot,
            started_at=self._time(),
        )

    # -- cancellation --------------------------------------------------

    def _cancel_task(self, task: AsyncTask | None) -> bool:
        if task is None or task.status != PENDING:
            return False
        task.status = CANCELLED
        task.settled_at = self._time()
        if task.handle is not None and not task.handle.done():
            task.handle.cancel()
        logger.debug("async_task_cancelled task_id=%s field=%s slot=%s", task.id, task.field_path, task.slot)
        return True

    def cancel(self, field_path: str, kind: str | None = None) -> int:
        """Cancel and forget every task of a field (optionally one kind)."""
        count = 0
        for key in [k for k in self._latest if k[0] == field_path and (kind is None or k[1] == kind)]:
            if self._cancel_task(self._latest.pop(key)):
                count += 1
        return count

    def retain(self, field_path: str, keep: Set[Tuple[str, str]]) -> int:
        """Drop tasks of ``field_path`` whose (kind, slot) was not used this pass."""
        count = 0
        for key in [k for k in self._latest if k[0] == field_path and (k[1], k[2]) not in keep]:
            if self._cancel_task(self._latest.pop(key)):
                count += 1
        return count

    def cancel_all(self) -> int:
        count = 0
        for key in list(self._latest):
            if self._cancel_task(self._latest.pop(key)):
                count += 1
        return count

    # -- inspection ----------------------------------------------------

    def tasks(self, field_path: str | None = None) -> List[AsyncTask]:
        return [t for k, t in self._latest.items() if field_path is None or k[0] == field_path]

    def has_pending(self, field_path: str | None = None) -> bool:
        return any(t.status == PENDING for t in self.tasks(field_path))

    def has_error(self, field_path: str | None = None) -> bool:
        return any(t.status == ERROR for t in self.tasks(field_path))

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait until no task is pending; follow-up tasks are awaited too."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        while True:
            handles = [
                t.handle
                for t in self._latest.values()
                if t.status == PENDING and t.handle is not None and not t.handle.done()
            ]
            if not handles:
                return True
            remaining = None
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return False
            await asyncio.wait(handles, timeout=remaining)
            await asyncio.sleep(0)

    # -- execution -----------------------------------------------------

    async def _execute(self, task: AsyncTask, delay: float) -> None:
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            body = await self._fetch(task.request)
        except AsyncError as exc:
            self._settle(task, ERROR, error=exc)
        else:
            self._settle(task, RESOLVED, result=body)

    async def _fetch(self, request: ResolvedRequest) -> Any:
        shared = self._inflight.get(request.key)
        if shared is None or shared.abandoned:
            shared = _SharedRequest(asyncio.ensure_future(self._send(request)))
            self._inflight[request.key] = shared
            shared.future.add_done_callback(partial(self._release, request.key, shared))
        else:
            logger.debug("http_request_shared url=%s waiters=%s", request.url, shared.waiters + 1)
        shared.waiters += 1
        try:
            return await asyncio.shield(shared.future)
        except asyncio.CancelledError:
            if shared.waiters == 1 and not shared.future.done():
                shared.abandoned = True
                shared.future.cancel()
            raise
        finally:
            shared.waiters -= 1

    def _release(self, key: str, shared: _SharedRequest, future: asyncio.Future) -> None:
        if self._inflight.get(key) is shared:
            self._inflight.pop(key, None)
        if not future.cancelled():
            # mark the exception retrieved; waiters already received it
            future.exception()

    async def _send(self, request: ResolvedRequest) -> Any:
        if self._client is None:
            raise AsyncError("HTTP_CLIENT_MISSING", "No HTTP client configured", request.url)
        try:
            response = await asyncio.wait_for(
                self._client.request(request.as_dict()), timeout=self._timeout_s
            )
        except asyncio.TimeoutError as exc:
            raise AsyncError("HTTP_TIMEOUT", f"timed out after {self._timeout_s}s", request.url) from exc
        except AsyncError:
            raise
        except Exception as exc:
            raise AsyncError("HTTP_TRANSPORT_ERROR", str(exc) or type(exc).__name__, request.url) from exc
        status = response.get("status") if isinstance(response, dict) else None
        if not isinstance(status, int) or not 200 <= status < 300:
            raise AsyncError("HTTP_STATUS", f"unexpected status {status}", request.url)
        return response.get("body")

    def _settle(self, task: AsyncTask, status: str, result: Any = None, error: AsyncError | None = None) -> None:
        if task.status != PENDING or self._latest.get(task.key) is not task:
            logger.debug(
                "stale_result_discarded task_id=%s field=%s slot=%s status=%s",
                task.id,
                task.field_path,
                task.slot,
                status,
            )
            return
        task.status = status
        task.result = result
        task.error = error
        task.settled_at = self._time()
        if status == RESOLVED:
            self._cache_put(task.request.key, result)
        else:
            logger.warning(
                "async_task_failed task_id=%s field=%s slot=%s code=%s error=%s",
                task.id,
                task.field_path,
                task.slot,
                error.code if error else None,
                error.message if error else None,
            )
        if self._on_settled is None:
            return
        try:
            self._on_settled(task)
        except Exception:
            logger.exception("async_task_settle_callback_failed task_id=%s field=%s", task.id, task.field_path)

    # -- response cache ------------------------------------------------

    def _cache_get(self, key: str) -> Tuple[float, Any] | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry[0] <= self._time():
            self._cache.pop(key, None)
            return None
        return entry

    def _cache_put(self, key: str, body: Any) -> None:
        if self._cache_ttl_s <= 0:
            return
        now = self._time()
        expired = [k for k, (expires, _) in self._cache.items() if expires <= now]
        for k in expired:
            del self._cache[k]
        self._cache.pop(key, None)
        while len(self._cache) >= self._cache_max_entries:
            # dicts keep insertion order, so the first entry is the oldest
            del self._cache[next(iter(self._cache))]
        self._cache[key] = (now + self._cache_ttl_s, body)

    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        self._cache.clear()
