from __future__ import annotations
from typing import Iterable

from schemas.models import CheckStatus, DiagnosticsState, DomainCheckResult, HealthStatus

DEFAULT_OK_THRESHOLD = 0.85
# Below this share of ok domains a dead control anchor means no connectivity at all.
OTHER_CONNECTIVITY_RATIO = 0.15
# Splits the two "partial" messages; the status code is partial either way.
MAJORITY_RATIO = 0.5

_FAILED = (CheckStatus.FAIL, CheckStatus.TIMEOUT)


def compute_diagnostics(
        control_primary: CheckStatus | None,
        control_list_host: CheckStatus | None,
        lists_loaded: bool,
        used_fallback: bool,
        results: Iterable[DomainCheckResult],
        ok_threshold_ratio: float = DEFAULT_OK_THRESHOLD,
        other_connectivity_ratio: float = OTHER_CONNECTIVITY_RATIO,
        majority_ratio: float = MAJORITY_RATIO,
) -> DiagnosticsState:
    """
    Maps control outcomes, list-load flags and per-domain results to a health
    verdict. The first matching branch wins:

    1. primary control failed and (nothing checked or ok ratio < 0.15) -> no-internet
    2. primary control failed, ok ratio >= 0.15 -> ok / partial by threshold
    3. primary ok, list host failed, fallback list used -> lists-unavailable
    4. primary ok, something checked -> ok / partial by threshold
    5. nothing checked, lists not loaded and fallback used -> lists-unavailable
    6. placeholder before any run
    """
    checked = [r for r in results if r.status is not CheckStatus.PENDING]
    total = len(checked)
    ok_count = sum(1 for r in checked if r.status is CheckStatus.OK)
    ok_ratio = ok_count / total if total > 0 else 0.0

    primary_failed = control_primary in _FAILED
    has_other_connectivity = total > 0 and ok_ratio >= other_connectivity_ratio

    if primary_failed and not has_other_connectivity:
        status = HealthStatus.NO_INTERNET
        message = "No internet or DNS is broken: the control domain and the other domains are unreachable"
    elif primary_failed:
        if ok_ratio > ok_threshold_ratio:
            status = HealthStatus.OK
            message = f"Connectivity is fine. The control domain did not respond, but {ok_count}/{total} domains are reachable"
        else:
            status = HealthStatus.PARTIAL
            message = f"Partial reachability: {ok_count}/{total}"
    elif control_primary is CheckStatus.OK and control_list_host in _FAILED and used_fallback:
        status = HealthStatus.LISTS_UNAVAILABLE
        message = "Domain lists could not be downloaded; the local fallback list is used"
    elif control_primary is CheckStatus.OK and total > 0:
        if ok_ratio > ok_threshold_ratio:
            status = HealthStatus.OK
            message = "Access is normal, most domains are reachable"
        elif ok_ratio >= majority_ratio:
            status = HealthStatus.PARTIAL
            message = f"Partially unreachable: {ok_count}/{total} domains are reachable"
        else:
            status = HealthStatus.PARTIAL
            message = f"Many domains are unreachable: {ok_count}/{total}"
    elif not lists_loaded and used_fallback:
        status = HealthStatus.LISTS_UNAVAILABLE
        message = "Using the fallback domain list (list source is unreachable)"
    else:
        status = HealthStatus.OK
        message = "Run not yet started"

    return DiagnosticsState(
        control_primary=control_primary,
        control_list_host=control_list_host,
        lists_loaded=lists_loaded,
        used_fallback_list=used_fallback,
        health_status=status,
        health_message=message,
        ok_ratio=ok_ratio,
    )


def empty_run_diagnostics(lists_loaded: bool, used_fallback: bool) -> DiagnosticsState:
    """Verdict for a run that had nothing to check. Never reported as success."""
    base = compute_diagnostics(None, None, lists_loaded, used_fallback, ())
    return DiagnosticsState(
        control_primary=None,
        control_list_host=None,
        lists_loaded=lists_loaded,
        used_fallback_list=used_fallback,
        health_status=base.health_status,
        health_message="Nothing to check: the domain list is empty",
        ok_ratio=0.0,
    )
