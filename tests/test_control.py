from engine.cancel import CancelToken
from engine.chain import ChainResult, ChainState
from engine.control import ControlDomains, run_control_checks
from schemas.models import CheckStatus

from fakes import OK, TIMEOUT, scripted_checker


def test_runs_primary_then_list_host_sequentially():
    checker = scripted_checker({"anchor.test": [OK], "lists.test": [TIMEOUT] * 5})

    res = run_control_checks(ControlDomains("anchor.test", "lists.test"), 500, CancelToken(), checker=checker)

    assert res.primary is CheckStatus.OK
    assert res.list_host is CheckStatus.TIMEOUT
    assert checker.probes[0].calls == ["anchor.test", "lists.test"]
    assert res.to_dict() == {"primary": "ok", "listHost": "timeout"}


def test_cancellation_keeps_partial_results():
    token = CancelToken()
    seen = []

    def checker(domain, timeout_ms, tok):
        seen.append(domain)
        tok.cancel()
        return ChainResult(ChainState.EXHAUSTED, CheckStatus.FAIL, None, 5, ())

    res = run_control_checks(ControlDomains("anchor.test", "lists.test"), 500, token, checker=checker)

    assert seen == ["anchor.test"]
    assert res.primary is CheckStatus.FAIL
    assert res.list_host is None


def test_abandoned_control_check_is_not_recorded():
    token = CancelToken()

    def checker(domain, timeout_ms, tok):
        tok.cancel()
        return ChainResult(ChainState.ABANDONED, CheckStatus.PENDING, None, None, ())

    res = run_control_checks(ControlDomains(), 500, token, checker=checker)
    assert res.primary is None and res.list_host is None


def test_default_control_domains():
    d = ControlDomains()
    assert d.primary == "wikipedia.org"
    assert d.list_host == "raw.githubusercontent.com"
