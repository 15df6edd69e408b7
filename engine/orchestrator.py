from __future__ import annotations
import json, queue, threading, uuid, time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Sequence

from schemas.models import (
    Category, DiagnosticsState, DomainCheckResult, RunSettings, RunStats, utc_now_iso,
)
from logging_.engine_logger import get_engine_logger
from sources.domain_lists import (
    find_preset, load_domains_for_categories, load_domains_from_preset_or_url, source_url,
)
from sources.snapshot import SnapshotStore
from .cancel import CancelToken
from .chain import check_domain
from .control import ControlDomains, ControlResults, run_control_checks
from .diagnostics import MAJORITY_RATIO, OTHER_CONNECTIVITY_RATIO, compute_diagnostics, empty_run_diagnostics
from .scheduler import Checker, SchedulerReport, run_checks
from .store import ResultStore, category_stats

_engine_logger = get_engine_logger()

Emit = Callable[[dict], None]
Loader = Callable[[RunSettings], tuple]


@dataclass
class RunContext:
    """Everything one run owns. Nothing about a run lives outside this object."""
    run_id: str
    settings: RunSettings
    token: CancelToken = field(default_factory=CancelToken)
    store: ResultStore = field(default_factory=ResultStore)
    control: ControlResults = field(default_factory=ControlResults)
    other_connectivity_ratio: float = OTHER_CONNECTIVITY_RATIO
    majority_ratio: float = MAJORITY_RATIO
    lists_loaded: bool = False
    used_fallback: bool = False
    done: int = 0
    total: int = 0
    phase: str = "created"
    running: bool = False
    cancelled: bool = False
    started_at: str | None = None
    duration_ms: int | None = None
    error: str | None = None
    _started_mono: float | None = None

    def is_cancelled(self) -> bool:
        return self.cancelled

    def mark_started(self, total: int):
        self.done = 0
        self.total = total
        self.started_at = utc_now_iso()
        self._started_mono = time.monotonic()
        self.duration_ms = None

    def mark_finished(self, cancelled: bool):
        self.cancelled = cancelled
        if self._started_mono is not None:
            self.duration_ms = int((time.monotonic() - self._started_mono) * 1000)
        self.phase = "finished"

    def stats(self, results: Sequence[DomainCheckResult] | None = None) -> RunStats:
        if results is None:
            results = self.store.results()
        return RunStats.from_results(results, duration_ms=self.duration_ms, started_at=self.started_at)

    def diagnostics(self, results: Sequence[DomainCheckResult] | None = None) -> DiagnosticsState:
        if results is None:
            results = self.store.results()
        if self.phase == "finished" and not results:
            return empty_run_diagnostics(self.lists_loaded, self.used_fallback)
        return compute_diagnostics(
            self.control.primary,
            self.control.list_host,
            self.lists_loaded,
            self.used_fallback,
            results,
            ok_threshold_ratio=self.settings.ok_threshold_ratio,
            other_connectivity_ratio=self.other_connectivity_ratio,
            majority_ratio=self.majority_ratio,
        )

    def export_payload(self) -> dict[str, Any]:
        # один снимок результатов на все поля: фоновый поток продолжает писать в store
        results = self.store.results()
        return {
            "exportedAt": utc_now_iso(),
            "stats": self.stats(results).to_dict(),
            "diagnostics": self.diagnostics(results).to_dict(),
            "results": [r.to_dict() for r in results],
            "snapshotInfo": SnapshotStore.info(),
        }

    def export_json(self) -> str:
        return json.dumps(self.export_payload(), ensure_ascii=False, indent=2)

    def state(self, include_results: bool = True) -> dict[str, Any]:
        results = self.store.results()
        st = {
            "run_id": self.run_id,
            "phase": self.phase,
            "running": self.running,
            "cancelled": self.cancelled,
            "done": self.done,
            "total": self.total,
            "settings": self.settings.to_dict(),
            "control": self.control.to_dict(),
            "stats": self.stats(results).to_dict(),
            "diagnostics": self.diagnostics(results).to_dict(),
            "categories": [c.to_dict() for c in category_stats(results)],
            "error": self.error,
        }
        if include_results:
            st["results"] = [r.to_dict() for r in results]
        return st


def load_domains(settings: RunSettings) -> tuple[list[tuple[str, Category | None]], bool]:
    """Resolves the run's domain list: explicit preset/URL first, else balanced categories."""
    limit = settings.domain_limit
    if settings.preset or settings.source_url:
        preset = find_preset(settings.preset)
        preset_url = source_url(preset.path) if preset else None
        domains, used_fallback = load_domains_from_preset_or_url(preset_url, settings.source_url)
        category = preset.category if preset and not settings.source_url else None
        return [(d, category) for d in domains[:limit]], used_fallback

    categories = settings.categories or list(Category)
    return load_domains_for_categories(categories, limit)


def _noop(_payload: dict):
    pass


def _result_event(ctx: RunContext, result: DomainCheckResult) -> dict:
    return {"type": "check_finished", "run_id": ctx.run_id, **result.to_dict()}


def execute_run(
        ctx: RunContext,
        emit: Emit | None = None,
        checker: Checker = check_domain,
        loader: Loader = load_domains,
        control_domains: ControlDomains = ControlDomains(),
        control_timeout_ms: int = 8000,
) -> RunContext:
    """
    Full run, synchronously: load list -> pending entries -> control checks ->
    bulk checks. Returns the same context; check ctx.cancelled afterwards.
    """
    emit = emit or _noop
    run_id = ctx.run_id
    ctx.running = True
    ctx.phase = "loading"
    try:
        domains, used_fallback = loader(ctx.settings)
        ctx.used_fallback = used_fallback
        ctx.lists_loaded = not used_fallback
        _engine_logger.info(
            f"[{run_id}] Domain list ready: {len(domains)} domains (fallback: {used_fallback})."
        )

        if not domains:
            ctx.store.reset(())
            ctx.mark_started(0)
            ctx.mark_finished(cancelled=ctx.token.is_cancelled())
            diag = ctx.diagnostics()
            _engine_logger.warning(f"[{run_id}] {diag.health_message}")
            emit({"type": "run_finished", "run_id": run_id,
                  "stats": ctx.stats().to_dict(), "diagnostics": diag.to_dict(),
                  "cancelled": ctx.cancelled})
            return ctx

        ctx.store.reset(domains)
        queue_domains = ctx.store.domains()
        ctx.mark_started(len(queue_domains))
        emit({"type": "lists_loaded", "run_id": run_id, "total": ctx.total,
              "listsLoaded": ctx.lists_loaded, "usedFallbackList": ctx.used_fallback})

        ctx.phase = "control"
        ctx.control = run_control_checks(
            control_domains, control_timeout_ms, ctx.token, checker=checker, run_id=run_id
        )
        emit({"type": "control_finished", "run_id": run_id, **ctx.control.to_dict()})

        ctx.phase = "checking"
        report = _run_bulk(ctx, queue_domains, emit, checker)

        ctx.mark_finished(cancelled=report.cancelled)
        _emit_finished(ctx, emit)
        return ctx
    finally:
        ctx.running = False


def execute_retry(
        ctx: RunContext,
        emit: Emit | None = None,
        checker: Checker = check_domain,
        token: CancelToken | None = None,
) -> RunContext:
    """
    Re-checks the run's fail/timeout domains with the run's own settings.
    Uses `token` when given (the caller may already hold it to stop the
    retry), otherwise a fresh one.
    """
    emit = emit or _noop
    ctx.token = token if token is not None else CancelToken()
    ctx.cancelled = False
    ctx.running = True
    ctx.phase = "retrying"
    try:
        failed = ctx.store.failed_domains()
        ctx.mark_started(len(failed))
        emit({"type": "retry_started", "run_id": ctx.run_id, "total": ctx.total})

        def on_result(result: DomainCheckResult):
            emit(_result_event(ctx, result))

        def on_progress(done: int, total: int):
            ctx.done = done
            emit({"type": "progress", "run_id": ctx.run_id, "done": done, "total": total})

        report = ctx.store.retry_failed(
            ctx.settings.concurrency, ctx.settings.timeout_ms, ctx.token,
            on_result=on_result, on_progress=on_progress,
            checker=checker, run_id=ctx.run_id,
        )
        ctx.mark_finished(cancelled=report.cancelled)
        _emit_finished(ctx, emit)
        return ctx
    finally:
        ctx.running = False


def _run_bulk(ctx: RunContext, domains: Sequence[str], emit: Emit, checker: Checker) -> SchedulerReport:
    def on_result(result: DomainCheckResult):
        ctx.store.install(result)
        emit(_result_event(ctx, ctx.store.get(result.domain)))

    def on_progress(done: int, total: int):
        ctx.done = done
        emit({"type": "progress", "run_id": ctx.run_id, "done": done, "total": total})

    return run_checks(
        domains, ctx.settings.concurrency, ctx.settings.timeout_ms, ctx.token,
        on_result=on_result, on_progress=on_progress,
        checker=checker, run_id=ctx.run_id,
    )


def _emit_finished(ctx: RunContext, emit: Emit):
    stats = ctx.stats()
    diag = ctx.diagnostics()
    _engine_logger.info(
        f"[{ctx.run_id}] Run finished: ok={stats.ok} fail={stats.fail} timeout={stats.timeout} "
        f"pending={stats.pending} cancelled={ctx.cancelled} -> {diag.health_status.value}"
    )
    emit({"type": "run_finished", "run_id": ctx.run_id,
          "stats": stats.to_dict(), "diagnostics": diag.to_dict(), "cancelled": ctx.cancelled})


class RunError(Exception):
    pass


class RunManager:
    """
    Runs checks in background threads for the web app and fans their events
    out to SSE subscribers.
    """

    def __init__(
            self,
            checker: Checker = check_domain,
            loader: Loader = load_domains,
            control_domains: ControlDomains = ControlDomains(),
            control_timeout_ms: int = 8000,
            other_connectivity_ratio: float = OTHER_CONNECTIVITY_RATIO,
            majority_ratio: float = MAJORITY_RATIO,
    ):
        self.checker = checker
        self.loader = loader
        self.control_domains = control_domains
        self.control_timeout_ms = control_timeout_ms
        self.other_connectivity_ratio = other_connectivity_ratio
        self.majority_ratio = majority_ratio
        self._runs: Dict[str, RunContext] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._sse_queues: Dict[str, "queue.Queue[str | None]"] = {}
        self._lock = threading.Lock()

    # --- SSE ---

    def emit(self, run_id: str, payload: dict):
        msg = json.dumps(payload, ensure_ascii=False)
        _engine_logger.debug(f"[{run_id}] Emitting SSE event type: {payload.get('type')}")
        with self._lock:
            q = self._sse_queues.get(run_id)
        if q:
            try:
                q.put(msg, block=False)
            except queue.Full:
                _engine_logger.warning(f"SSE queue full for run_id {run_id}")

    def subscribe(self, run_id: str) -> "queue.Queue[str | None]":
        with self._lock:
            q = self._sse_queues.get(run_id)
            if q is None:
                q = queue.Queue(maxsize=1000)
                self._sse_queues[run_id] = q
            return q

    def unsubscribe(self, run_id: str):
        with self._lock:
            self._sse_queues.pop(run_id, None)

    def _close_stream(self, run_id: str):
        with self._lock:
            q = self._sse_queues.get(run_id)
        if q:
            try:
                q.put(None, block=False)
            except queue.Full:
                _engine_logger.warning(f"SSE queue full when trying to send None sentinel for run_id {run_id}")

    # --- runs ---

    def get(self, run_id: str) -> RunContext | None:
        with self._lock:
            return self._runs.get(run_id)

    def start_run(self, settings: RunSettings) -> str:
        """Returns immediately with a run_id; the run proceeds in a daemon thread."""
        run_id = uuid.uuid4().hex[:12]
        ctx = RunContext(
            run_id=run_id,
            settings=settings,
            other_connectivity_ratio=self.other_connectivity_ratio,
            majority_ratio=self.majority_ratio,
        )
        with self._lock:
            self._runs[run_id] = ctx

        # очередь SSE создаем до старта потока, чтобы не потерять первые события
        self.subscribe(run_id)
        self.emit(run_id, {"type": "run_started", "run_id": run_id,
                           "ts": datetime.now().isoformat(timespec="seconds"),
                           "settings": settings.to_dict()})

        _engine_logger.info(f"[{run_id}] Spawning background thread...")
        self._spawn(run_id, lambda: execute_run(
            ctx, emit=lambda p: self.emit(run_id, p), checker=self.checker, loader=self.loader,
            control_domains=self.control_domains, control_timeout_ms=self.control_timeout_ms,
        ))
        return run_id

    def retry(self, run_id: str) -> str:
        ctx = self.get(run_id)
        if ctx is None:
            raise KeyError(run_id)
        if ctx.running:
            raise RunError(f"Run {run_id} is still in progress")
        # токен ставим до старта потока, иначе ранний stop() отменит старый
        token = CancelToken()
        ctx.token = token
        self.subscribe(run_id)
        self._spawn(run_id, lambda: execute_retry(
            ctx, emit=lambda p: self.emit(run_id, p), checker=self.checker, token=token,
        ))
        return run_id

    def stop(self, run_id: str) -> bool:
        ctx = self.get(run_id)
        if ctx is None:
            raise KeyError(run_id)
        if not ctx.running:
            return False
        _engine_logger.info(f"[{run_id}] Cancellation requested.")
        ctx.token.cancel()
        return True

    def wait(self, run_id: str, timeout: float | None = None) -> bool:
        with self._lock:
            t = self._threads.get(run_id)
        if t is None:
            return True
        t.join(timeout)
        return not t.is_alive()

    def _spawn(self, run_id: str, work: Callable[[], RunContext]):
        ctx = self._runs[run_id]
        ctx.running = True

        def target():
            _engine_logger.info(f"[{run_id}] Background thread started.")
            try:
                work()
            except Exception as e:
                _engine_logger.error(f"[{run_id}] Run failed: {e}", exc_info=True)
                ctx.phase = "failed"
                ctx.error = str(e)
                ctx.running = False
                self.emit(run_id, {"type": "run_failed", "run_id": run_id, "error": str(e)})
            finally:
                self._close_stream(run_id)
                self.unsubscribe(run_id)

        thread = threading.Thread(target=target, daemon=True)
        with self._lock:
            self._threads[run_id] = thread
        thread.start()
