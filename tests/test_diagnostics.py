import pytest

from engine.diagnostics import compute_diagnostics, empty_run_diagnostics
from schemas.models import CheckStatus, DomainCheckResult, HealthStatus, ProbeKind


def _results(ok: int, fail: int, timeout: int = 0, pending: int = 0) -> list[DomainCheckResult]:
    out = []
    for i in range(ok):
        out.append(DomainCheckResult(f"ok{i}.test", CheckStatus.OK, probe_used=ProbeKind.ICON_PRIMARY))
    for i in range(fail):
        out.append(DomainCheckResult(f"fail{i}.test", CheckStatus.FAIL))
    for i in range(timeout):
        out.append(DomainCheckResult(f"to{i}.test", CheckStatus.TIMEOUT))
    for i in range(pending):
        out.append(DomainCheckResult.pending(f"p{i}.test"))
    return out


OK, FAIL, TIMEOUT = CheckStatus.OK, CheckStatus.FAIL, CheckStatus.TIMEOUT


@pytest.mark.parametrize("primary", [FAIL, TIMEOUT])
def test_dead_primary_and_nothing_checked_is_no_internet(primary):
    d = compute_diagnostics(primary, OK, True, False, [])
    assert d.health_status is HealthStatus.NO_INTERNET
    assert d.ok_ratio == 0


def test_dead_primary_and_low_ratio_is_no_internet():
    d = compute_diagnostics(FAIL, FAIL, True, False, _results(ok=1, fail=9))
    assert d.health_status is HealthStatus.NO_INTERNET


def test_ratio_exactly_015_with_dead_primary_is_not_no_internet():
    d = compute_diagnostics(FAIL, OK, True, False, _results(ok=3, fail=17))
    assert d.ok_ratio == pytest.approx(0.15)
    assert d.health_status is HealthStatus.PARTIAL


def test_dead_primary_but_bulk_healthy_is_ok():
    d = compute_diagnostics(TIMEOUT, OK, True, False, _results(ok=19, fail=1))
    assert d.health_status is HealthStatus.OK
    assert "19/20" in d.health_message


def test_list_host_down_with_fallback_is_lists_unavailable():
    d = compute_diagnostics(OK, TIMEOUT, False, True, _results(ok=10, fail=0))
    assert d.health_status is HealthStatus.LISTS_UNAVAILABLE


def test_list_host_down_without_fallback_uses_ratio():
    d = compute_diagnostics(OK, FAIL, True, False, _results(ok=10, fail=0))
    assert d.health_status is HealthStatus.OK


def test_ratio_equal_to_threshold_is_partial():
    d = compute_diagnostics(OK, OK, True, False, _results(ok=17, fail=3), ok_threshold_ratio=0.85)
    assert d.ok_ratio == pytest.approx(0.85)
    assert d.health_status is HealthStatus.PARTIAL


def test_majority_and_most_down_share_partial_status_with_different_messages():
    majority = compute_diagnostics(OK, OK, True, False, _results(ok=6, fail=4))
    most_down = compute_diagnostics(OK, OK, True, False, _results(ok=2, fail=8))
    assert majority.health_status is most_down.health_status is HealthStatus.PARTIAL
    assert majority.health_message != most_down.health_message


def test_pending_results_are_ignored_for_ratio():
    d = compute_diagnostics(OK, OK, True, False, _results(ok=9, fail=1, pending=90))
    assert d.ok_ratio == pytest.approx(0.9)
    assert d.health_status is HealthStatus.OK


def test_fallback_before_any_results_is_lists_unavailable():
    d = compute_diagnostics(None, None, False, True, [])
    assert d.health_status is HealthStatus.LISTS_UNAVAILABLE


def test_placeholder_before_run():
    d = compute_diagnostics(None, None, False, False, [])
    assert d.health_status is HealthStatus.OK
    assert d.health_message == "Run not yet started"


def test_threshold_is_configurable():
    results = _results(ok=7, fail=3)
    assert compute_diagnostics(OK, OK, True, False, results, ok_threshold_ratio=0.6).health_status is HealthStatus.OK
    assert compute_diagnostics(OK, OK, True, False, results).health_status is HealthStatus.PARTIAL


def test_empty_run_says_nothing_to_check():
    d = empty_run_diagnostics(lists_loaded=True, used_fallback=False)
    assert "Nothing to check" in d.health_message
    assert d.ok_ratio == 0


def test_to_dict_uses_export_keys():
    d = compute_diagnostics(OK, None, True, False, _results(ok=1, fail=0)).to_dict()
    assert d == {
        "controlPrimary": "ok",
        "controlListHost": None,
        "listsLoaded": True,
        "usedFallbackList": False,
        "healthStatus": "ok",
        "healthMessage": "Access is normal, most domains are reachable",
        "okRatio": 1.0,
    }
