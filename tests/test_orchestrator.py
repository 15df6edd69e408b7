import json

import pytest

from engine.control import ControlDomains
from engine.orchestrator import RunContext, RunError, RunManager, execute_retry, execute_run, load_domains
from schemas.models import Category, CheckStatus, HealthStatus, ProbeKind, RunSettings, RunStats

from fakes import FAIL, OK, TIMEOUT, ConcurrencyTracker, scripted_checker

CONTROL = ControlDomains("anchor.test", "lists.test")

PLAN = {
    "anchor.test": [OK],
    "lists.test": [OK],
    **{f"d{i}.test": [OK] for i in range(7)},
    "d7.test": [FAIL, FAIL, OK],
    "d8.test": [TIMEOUT, FAIL, OK],
    "d9.test": [FAIL, TIMEOUT, TIMEOUT, FAIL, TIMEOUT],
}
DOMAINS = [f"d{i}.test" for i in range(10)]


def _loader(domains, used_fallback=False, category=Category.ALLOWED):
    def load(settings):
        return [(d, category) for d in domains], used_fallback
    return load


def _run(checker, loader, settings=None, emit=None) -> RunContext:
    ctx = RunContext(run_id="test-run", settings=settings or RunSettings(concurrency=3, timeout_ms=500))
    return execute_run(ctx, emit=emit, checker=checker, loader=loader, control_domains=CONTROL)


def test_full_run_scenario():
    events = []
    ctx = _run(scripted_checker(PLAN), _loader(DOMAINS), emit=events.append)

    stats = ctx.stats()
    assert (stats.total, stats.ok, stats.fail, stats.timeout, stats.pending) == (10, 9, 1, 0, 0)
    assert ctx.store.get("d0.test").probe_used is ProbeKind.ICON_PRIMARY
    assert ctx.store.get("d7.test").probe_used is ProbeKind.ICON_TERTIARY
    assert ctx.store.get("d9.test").status is CheckStatus.FAIL
    assert ctx.store.get("d9.test").latency_ms == 10
    assert len(ctx.store.get("d9.test").details) == 5

    diag = ctx.diagnostics()
    assert diag.ok_ratio == pytest.approx(0.9)
    assert diag.health_status is HealthStatus.OK
    assert diag.control_primary is CheckStatus.OK
    assert not ctx.cancelled and not ctx.running
    assert ctx.done == ctx.total == 10

    types = [e["type"] for e in events]
    assert types[0] == "lists_loaded"
    assert types[1] == "control_finished"
    assert types[-1] == "run_finished"
    assert types.count("check_finished") == 10
    progress = [e["done"] for e in events if e["type"] == "progress"]
    assert progress == list(range(1, 11))


def test_all_timeouts_exhaust_to_timeout():
    plan = {**PLAN, "d9.test": [TIMEOUT] * 5}
    ctx = _run(scripted_checker(plan), _loader(DOMAINS))
    assert ctx.store.get("d9.test").status is CheckStatus.TIMEOUT
    assert ctx.store.get("d9.test").probe_used is None


def test_empty_list_issues_no_probes():
    checker = scripted_checker(PLAN)
    events = []
    ctx = _run(checker, _loader([], used_fallback=True), emit=events.append)

    assert ctx.total == 0
    assert ctx.stats().total == 0
    assert all(not p.calls for p in checker.probes)
    diag = ctx.diagnostics()
    assert "Nothing to check" in diag.health_message
    assert diag.control_primary is None
    assert [e["type"] for e in events] == ["run_finished"]


def test_export_round_trip_matches_stats():
    ctx = _run(scripted_checker(PLAN), _loader(DOMAINS))
    exported = json.loads(ctx.export_json())

    recomputed = RunStats.from_results(exported["results"])
    stats = exported["stats"]
    assert (recomputed.total, recomputed.ok, recomputed.fail, recomputed.timeout, recomputed.pending) == (
        stats["total"], stats["ok"], stats["fail"], stats["timeout"], stats["pending"])
    assert exported["diagnostics"]["healthStatus"] == "ok"
    assert exported["snapshotInfo"] == {"hasSnapshot": False}
    assert {r["domain"] for r in exported["results"]} == set(DOMAINS)


def test_cancel_mid_run_leaves_pending_entries():
    ctx = RunContext(run_id="cancel-run", settings=RunSettings(concurrency=2, timeout_ms=500))
    tracker = ConcurrencyTracker(delay=0.01)

    def emit(payload):
        if payload["type"] == "progress" and payload["done"] == 4:
            ctx.token.cancel()

    execute_run(ctx, emit=emit, checker=tracker, loader=_loader([f"x{i}.test" for i in range(50)]),
                control_domains=CONTROL)

    stats = ctx.stats()
    assert ctx.cancelled
    assert stats.total == 50
    assert stats.ok == 4
    assert stats.pending == 46


def test_retry_rechecks_only_failed_domains():
    ctx = _run(scripted_checker(PLAN), _loader(DOMAINS))
    assert ctx.store.failed_domains() == ["d9.test"]

    fixed = scripted_checker({"d9.test": [OK]})
    events = []
    execute_retry(ctx, emit=events.append, checker=fixed)

    assert fixed.probes[0].calls == ["d9.test"]
    assert ctx.store.get("d9.test").status is CheckStatus.OK
    assert ctx.stats().ok == 10
    assert events[0] == {"type": "retry_started", "run_id": "test-run", "total": 1}
    assert events[-1]["type"] == "run_finished"


def test_lists_unavailable_when_list_host_down_and_fallback_used():
    plan = {**PLAN, "lists.test": [TIMEOUT] * 5}
    ctx = _run(scripted_checker(plan), _loader(DOMAINS, used_fallback=True))
    assert not ctx.lists_loaded
    assert ctx.diagnostics().health_status is HealthStatus.LISTS_UNAVAILABLE


def test_load_domains_prefers_custom_url(monkeypatch):
    seen = {}

    def fake_load(preset_url, custom_url):
        seen["args"] = (preset_url, custom_url)
        return ["a.test", "b.test", "c.test"], False

    monkeypatch.setattr("engine.orchestrator.load_domains_from_preset_or_url", fake_load)
    domains, used_fallback = load_domains(
        RunSettings(domain_limit=2, preset="youtube", source_url="https://lists.test/x.lst"))

    assert domains == [("a.test", None), ("b.test", None)]
    assert not used_fallback
    assert seen["args"][1] == "https://lists.test/x.lst"
    assert seen["args"][0].endswith("Services/youtube.lst")


def test_load_domains_preset_carries_category(monkeypatch):
    monkeypatch.setattr("engine.orchestrator.load_domains_from_preset_or_url",
                        lambda preset_url, custom_url: (["a.test"], False))
    domains, _ = load_domains(RunSettings(preset="russia-inside"))
    assert domains == [("a.test", Category.BLOCKED_BY_RUSSIA)]


def test_run_manager_start_and_wait():
    manager = RunManager(checker=scripted_checker(PLAN), loader=_loader(DOMAINS), control_domains=CONTROL)
    run_id = manager.start_run(RunSettings(concurrency=4, timeout_ms=500))

    assert manager.wait(run_id, timeout=10)
    ctx = manager.get(run_id)
    assert ctx.phase == "finished"
    assert ctx.stats().ok == 9
    state = ctx.state(include_results=False)
    assert state["total"] == 10
    assert "results" not in state


def test_run_manager_retry_errors():
    manager = RunManager(checker=ConcurrencyTracker(delay=0.05), loader=_loader(DOMAINS),
                         control_domains=CONTROL)
    with pytest.raises(KeyError):
        manager.retry("missing")

    run_id = manager.start_run(RunSettings(concurrency=1, timeout_ms=500))
    with pytest.raises(RunError):
        manager.retry(run_id)
    assert manager.stop(run_id)
    assert manager.wait(run_id, timeout=10)
    assert manager.get(run_id).cancelled
    assert manager.stop(run_id) is False


def test_failing_loader_marks_run_failed():
    def broken(settings):
        raise RuntimeError("boom")

    manager = RunManager(checker=scripted_checker(PLAN), loader=broken, control_domains=CONTROL)
    run_id = manager.start_run(RunSettings())
    assert manager.wait(run_id, timeout=10)

    ctx = manager.get(run_id)
    assert ctx.phase == "failed"
    assert ctx.error == "boom"
    assert not ctx.running


def test_export_during_run_is_self_consistent():
    manager = RunManager(checker=ConcurrencyTracker(delay=0.001), control_domains=CONTROL,
                         loader=_loader([f"bulk{i}.test" for i in range(1500)]))
    run_id = manager.start_run(RunSettings(concurrency=8, timeout_ms=500))
    ctx = manager.get(run_id)

    exports = []
    while ctx.running:
        exports.append(ctx.export_payload())
        exports.append(ctx.state())
    assert manager.wait(run_id, timeout=30)
    exports.append(ctx.export_payload())

    for payload in exports:
        recomputed = RunStats.from_results(payload["results"])
        stats = payload["stats"]
        assert (recomputed.total, recomputed.ok, recomputed.pending) == (
            stats["total"], stats["ok"], stats["pending"])
        checked = stats["ok"] + stats["fail"] + stats["timeout"]
        expected_ratio = stats["ok"] / checked if checked else 0
        assert payload["diagnostics"]["okRatio"] == pytest.approx(expected_ratio)
    assert exports[-1]["stats"]["ok"] == 1500


def test_stop_right_after_retry_cancels_it():
    manager = RunManager(checker=ConcurrencyTracker(delay=0.001, status=FAIL), control_domains=CONTROL,
                         loader=_loader(DOMAINS))
    run_id = manager.start_run(RunSettings(concurrency=2, timeout_ms=500))
    assert manager.wait(run_id, timeout=10)

    manager.checker = ConcurrencyTracker(delay=0.05)
    manager.retry(run_id)
    assert manager.stop(run_id)
    assert manager.wait(run_id, timeout=10)

    ctx = manager.get(run_id)
    assert ctx.cancelled
    assert ctx.stats().ok < 10
