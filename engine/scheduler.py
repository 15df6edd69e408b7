from __future__ import annotations
import queue
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterator, Sequence

from schemas.models import CheckStatus, DomainCheckResult, ResultEvent, utc_now_iso
from logging_.engine_logger import get_engine_logger
from .cancel import CancelToken
from .chain import ChainResult, ChainState, check_domain

log = get_engine_logger()

Checker = Callable[[str, int, CancelToken], ChainResult]
OnResult = Callable[[DomainCheckResult], None]
OnProgress = Callable[[int, int], None]

_WORKER_DONE = object()


@dataclass(frozen=True)
class SchedulerReport:
    done: int
    total: int
    cancelled: bool


def iter_checks(
        domains: Sequence[str],
        concurrency: int,
        timeout_ms: int,
        token: CancelToken,
        checker: Checker = check_domain,
        run_id: str = "-",
) -> Iterator[ResultEvent]:
    """
    Probes `domains` with at most `concurrency` chains in flight and yields a
    ResultEvent per finished domain, in completion order.

    Workers only pull from the shared FIFO and push results onto an event
    queue; everything yielded is produced on the consuming thread, one event
    at a time. Once the token is cancelled nothing more is yielded and
    domains not yet pulled are never probed.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be >= 1, got {concurrency}")

    total = len(domains)
    if total == 0:
        log.info(f"[{run_id}] Nothing to check: empty domain list.")
        return

    todo = deque(domains)
    pull_lock = threading.Lock()
    stop = threading.Event()  # consumer went away
    events: "queue.Queue[object]" = queue.Queue()
    n_workers = min(concurrency, total)

    def next_domain() -> str | None:
        with pull_lock:
            if token.is_cancelled() or stop.is_set() or not todo:
                return None
            return todo.popleft()

    def run_one(domain: str) -> DomainCheckResult | None:
        try:
            chain = checker(domain, timeout_ms, token)
        except Exception as e:
            log.error(f"[{run_id}] Unhandled exception while checking {domain}: {e}", exc_info=True)
            chain = ChainResult(ChainState.EXHAUSTED, CheckStatus.FAIL, None, None, ())

        if chain.status is CheckStatus.PENDING or token.is_cancelled():
            return None
        return DomainCheckResult(
            domain=domain,
            status=chain.status,
            probe_used=chain.probe_used,
            latency_ms=chain.latency_ms,
            checked_at=utc_now_iso(),
            details=chain.details,
        )

    def worker():
        try:
            while True:
                domain = next_domain()
                if domain is None:
                    return
                result = run_one(domain)
                if result is None:
                    return
                events.put(result)
        finally:
            events.put(_WORKER_DONE)

    log.debug(f"[{run_id}] Starting {n_workers} workers for {total} domains (timeout {timeout_ms} ms).")
    done = 0
    finished_workers = 0
    with ThreadPoolExecutor(max_workers=n_workers, thread_name_prefix=f"probe-{run_id}") as pool:
        try:
            for _ in range(n_workers):
                pool.submit(worker)
            while finished_workers < n_workers:
                item = events.get()
                if item is _WORKER_DONE:
                    finished_workers += 1
                    continue
                # результаты, пришедшие после отмены, выбрасываем
                if token.is_cancelled():
                    continue
                done += 1
                yield ResultEvent(result=item, done=done, total=total)
        finally:
            stop.set()

    if token.is_cancelled():
        log.info(f"[{run_id}] Scheduler stopped by cancellation ({done}/{total} done).")
    else:
        log.debug(f"[{run_id}] Scheduler finished ({done}/{total}).")


def run_checks(
        domains: Sequence[str],
        concurrency: int,
        timeout_ms: int,
        token: CancelToken,
        on_result: OnResult | None = None,
        on_progress: OnProgress | None = None,
        checker: Checker = check_domain,
        run_id: str = "-",
) -> SchedulerReport:
    """Callback form of iter_checks(): on_result, then on_progress(done, total), per domain."""
    done = 0
    for event in iter_checks(domains, concurrency, timeout_ms, token, checker=checker, run_id=run_id):
        done = event.done
        if on_result:
            on_result(event.result)
        if on_progress:
            on_progress(event.done, event.total)
    return SchedulerReport(done=done, total=len(domains), cancelled=token.is_cancelled())
