from __future__ import annotations
from dataclasses import replace
from typing import Iterable

from schemas.models import (
    Category, CategoryStats, CheckStatus, DomainCheckResult, RunStats,
)
from logging_.engine_logger import get_engine_logger
from .cancel import CancelToken
from .chain import check_domain
from .scheduler import Checker, OnProgress, SchedulerReport, run_checks

log = get_engine_logger()

RETRYABLE = (CheckStatus.FAIL, CheckStatus.TIMEOUT)


def category_stats(results: Iterable[DomainCheckResult]) -> list[CategoryStats]:
    """Per-category counters, one entry for every category (empty ones included)."""
    by_cat = {c: CategoryStats(category=c) for c in Category}
    for r in results:
        if r.category is None:
            continue
        st = by_cat[r.category]
        st.total += 1
        if r.status is CheckStatus.OK:
            st.ok += 1
        elif r.status is CheckStatus.FAIL:
            st.fail += 1
        elif r.status is CheckStatus.TIMEOUT:
            st.timeout += 1
    for st in by_cat.values():
        st.done = st.ok + st.fail + st.timeout
    return list(by_cat.values())


class ResultStore:
    """
    Per-domain results keyed by domain, in list order. Last write wins.

    Only the thread that drives the scheduler writes here (through the
    on_result callback), so no locking is done. Readers on other threads
    take one results() snapshot and derive everything from it.
    """

    def __init__(self):
        self._results: dict[str, DomainCheckResult] = {}

    def reset(self, domains: Iterable[tuple[str, Category | None] | str]):
        """Starts a fresh run: one pending entry per domain."""
        fresh: dict[str, DomainCheckResult] = {}
        for item in domains:
            domain, category = (item, None) if isinstance(item, str) else item
            if domain not in fresh:
                fresh[domain] = DomainCheckResult.pending(domain, category)
        self._results = fresh

    def install(self, result: DomainCheckResult):
        prev = self._results.get(result.domain)
        if prev is not None and result.category is None and prev.category is not None:
            result = replace(result, category=prev.category)
        self._results[result.domain] = result

    def get(self, domain: str) -> DomainCheckResult | None:
        return self._results.get(domain)

    def results(self) -> list[DomainCheckResult]:
        return list(self._results.values())

    def domains(self) -> list[str]:
        return list(self._results)

    def __len__(self) -> int:
        return len(self._results)

    def failed_domains(self) -> list[str]:
        return [d for d, r in self._results.items() if r.status in RETRYABLE]

    def stats(self, duration_ms: int | None = None, started_at: str | None = None) -> RunStats:
        return RunStats.from_results(self._results.values(), duration_ms=duration_ms, started_at=started_at)

    def stats_by_category(self) -> list[CategoryStats]:
        return category_stats(self._results.values())

    def retry_failed(
            self,
            concurrency: int,
            timeout_ms: int,
            token: CancelToken,
            on_result=None,
            on_progress: OnProgress | None = None,
            checker: Checker = check_domain,
            run_id: str = "-",
    ) -> SchedulerReport:
        """
        Re-runs only the domains that are currently fail/timeout and installs
        the new outcomes over the old ones. Everything else is left untouched;
        a retried domain that gets cancelled keeps its previous result.
        """
        failed = self.failed_domains()
        log.info(f"[{run_id}] Retrying {len(failed)} failed/timed-out domains.")

        def _install(result: DomainCheckResult):
            self.install(result)
            if on_result:
                on_result(self._results[result.domain])

        return run_checks(
            failed, concurrency, timeout_ms, token,
            on_result=_install, on_progress=on_progress,
            checker=checker, run_id=run_id,
        )
