import json

import pytest

import reach_checker
from engine import orchestrator
from engine.control import ControlDomains
from schemas.models import Category

from fakes import FAIL, OK, scripted_checker

CONTROL = ControlDomains("anchor.test", "lists.test")
PLAN = {"anchor.test": [OK], "lists.test": [OK], "a.test": [OK], "b.test": [FAIL] * 5}


@pytest.fixture
def fake_run(monkeypatch):
    """Routes the CLI through fake lists and probes."""
    state = {"domains": ["a.test", "b.test"], "ctx": None}

    def run(ctx, emit=None, **kwargs):
        state["ctx"] = ctx
        return orchestrator.execute_run(
            ctx, emit=emit, checker=scripted_checker(PLAN),
            loader=lambda settings: ([(d, Category.ALLOWED) for d in state["domains"]], False),
            control_domains=CONTROL,
        )

    monkeypatch.setattr(reach_checker, "execute_run", run)
    return state


def test_run_prints_verdict(fake_run, capsys):
    assert reach_checker.main(["--concurrency", "2"]) == 0

    out = capsys.readouterr().out
    assert "Loaded 2 domains (remote lists)" in out
    assert "Health: partial" in out
    assert "Total: 2  OK: 1  Fail: 1" in out
    assert fake_run["ctx"].settings.concurrency == 2


def test_export_to_stdout(fake_run, capsys):
    assert reach_checker.main(["--quiet", "--export", "-"]) == 0

    out = capsys.readouterr().out
    payload = json.loads(out[out.index("{"):])
    assert payload["stats"]["total"] == 2
    assert "Loaded" not in out


def test_export_to_file_and_summary(fake_run, tmp_path, capsys):
    target = tmp_path / "export.json"
    assert reach_checker.main(["--quiet", "--export", str(target), "--summary"]) == 0

    assert json.loads(target.read_text(encoding="utf-8"))["diagnostics"]["healthStatus"] == "partial"
    out = capsys.readouterr().out
    assert "Summary written to" in out


def test_retry_rounds(fake_run, monkeypatch, capsys):
    calls = []

    def fake_retry(ctx, emit=None):
        calls.append(ctx.store.failed_domains())
        return orchestrator.execute_retry(ctx, emit=emit, checker=scripted_checker({"b.test": [OK]}))

    monkeypatch.setattr(reach_checker, "execute_retry", fake_retry)
    assert reach_checker.main(["--quiet", "--retry-failed", "3"]) == 0

    assert calls == [["b.test"]]
    assert "OK: 2" in capsys.readouterr().out


def test_empty_list_exits_nonzero(fake_run, capsys):
    fake_run["domains"] = []
    assert reach_checker.main(["--quiet"]) == 1
    assert "Nothing to check" in capsys.readouterr().out


@pytest.mark.parametrize("argv", [["--concurrency", "0"], ["--threshold", "120"]])
def test_bad_args(fake_run, argv, capsys):
    assert reach_checker.main(argv) == 2
    assert fake_run["ctx"] is None


def test_unknown_category_is_rejected(fake_run):
    assert reach_checker.main(["--categories", "allowed,bogus"]) == 2


def test_debug_mode(monkeypatch, capsys):
    monkeypatch.setattr(reach_checker, "debug_check_domain", lambda domain, timeout_ms: [
        {"url": f"https://{domain}/favicon.ico", "probe": "favicon", "status": "fail", "latencyMs": 3},
        {"url": f"https://{domain}/ (HEAD)", "probe": "head", "status": "ok", "latencyMs": None},
    ])
    assert reach_checker.main(["--debug", "Example.com"]) == 0
    out = capsys.readouterr().out
    assert "https://example.com/favicon.ico" in out
    assert "(HEAD)" in out
