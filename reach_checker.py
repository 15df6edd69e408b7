import argparse
import json
import sys
import uuid

from dotenv import load_dotenv

from config.loader import ConfigStore
from engine.chain import debug_check_domain
from engine.control import ControlDomains
from engine.orchestrator import RunContext, execute_retry, execute_run
from logging_.engine_logger import setup_cli_logger
from logging_.export_writer import write_run_summary
from schemas.models import Category, RunSettings
from sources.snapshot import SnapshotStore


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Check which domains are reachable from this network and classify its health."
    )
    p.add_argument("--categories", default="",
                   help="comma-separated: " + ", ".join(c.value for c in Category))
    p.add_argument("--preset", help="single list preset id (e.g. youtube, telegram)")
    p.add_argument("--source-url", help="custom domain list URL")
    p.add_argument("--limit", type=int, help="max domains to check")
    p.add_argument("--concurrency", type=int, help="probes in flight at once")
    p.add_argument("--timeout-ms", type=int, help="per-probe timeout")
    p.add_argument("--threshold", type=int, help="ok-ratio percent considered healthy")
    p.add_argument("--retry-failed", type=int, default=0, metavar="N",
                   help="re-check failed/timed-out domains N more times")
    p.add_argument("--export", metavar="PATH", help="write JSON export to PATH ('-' for stdout)")
    p.add_argument("--summary", action="store_true", help="write a markdown summary into the logs dir")
    p.add_argument("--debug", metavar="DOMAIN", help="run every probe against one domain and exit")
    p.add_argument("--quiet", action="store_true", help="no progress output")
    return p


def settings_from_args(args) -> RunSettings:
    cfg = ConfigStore.get()
    cats = [Category(c.strip()) for c in args.categories.split(",") if c.strip()]
    settings = RunSettings(
        concurrency=cfg.execution.max_concurrency if args.concurrency is None else args.concurrency,
        timeout_ms=cfg.execution.timeout_ms if args.timeout_ms is None else args.timeout_ms,
        ok_threshold_percent=cfg.diagnostics.ok_threshold_percent if args.threshold is None else args.threshold,
        domain_limit=cfg.execution.domain_limit if args.limit is None else args.limit,
        categories=cats or list(Category),
        preset=args.preset,
        source_url=args.source_url,
    )
    if settings.concurrency < 1 or settings.timeout_ms < 1 or not 0 <= settings.ok_threshold_percent <= 100:
        raise ValueError("concurrency and timeout must be positive, threshold within 0..100")
    return settings


def _progress_printer(quiet: bool):
    def emit(event: dict):
        if quiet:
            return
        kind = event.get("type")
        if kind == "lists_loaded":
            src = "fallback list" if event.get("usedFallbackList") else "remote lists"
            print("Loaded {} domains ({})".format(event.get("total"), src))
        elif kind == "control_finished":
            print("Control: primary={} list host={}".format(event.get("primary") or "-", event.get("listHost") or "-"))
        elif kind == "check_finished":
            print("  {:<40} {:<8} {:<12} {}".format(
                event["domain"], event["status"], event.get("probeUsed") or "-",
                "{} ms".format(event["latencyMs"]) if event.get("latencyMs") is not None else "-",
            ))
        elif kind == "progress":
            if event["done"] == event["total"] or event["done"] % 25 == 0:
                print("Progress: {}/{}".format(event["done"], event["total"]))
    return emit


def print_verdict(ctx: RunContext):
    stats = ctx.stats()
    diag = ctx.diagnostics()
    print("")
    print("Health: {} ({})".format(diag.health_status.value, diag.health_message))
    print("Total: {}  OK: {}  Fail: {}  Timeout: {}  Pending: {}".format(
        stats.total, stats.ok, stats.fail, stats.timeout, stats.pending))
    print("OK ratio: {:.2f}%".format(diag.ok_ratio * 100))
    if stats.duration_ms is not None:
        print("Time to run: {:.2f} seconds".format(stats.duration_ms / 1000))
    if ctx.cancelled:
        print("Run was cancelled; unchecked domains stay pending.")


def main(argv=None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    cfg = ConfigStore.get()
    log = setup_cli_logger()

    if args.debug:
        for step in debug_check_domain(args.debug.strip().lower(), cfg.control.timeout_ms):
            print("{:<55} {:<8} {}".format(step["url"], step["status"],
                                           "{} ms".format(step["latencyMs"]) if step["latencyMs"] is not None else "-"))
        return 0

    try:
        settings = settings_from_args(args)
    except ValueError as e:
        print("Error: {}".format(e))
        return 2

    SnapshotStore.load()
    ctx = RunContext(
        run_id=uuid.uuid4().hex[:12],
        settings=settings,
        other_connectivity_ratio=cfg.diagnostics.other_connectivity_ratio,
        majority_ratio=cfg.diagnostics.majority_ratio,
    )
    emit = _progress_printer(args.quiet)
    log.info(f"[{ctx.run_id}] CLI run started.")

    try:
        execute_run(
            ctx, emit=emit,
            control_domains=ControlDomains(primary=cfg.control.primary, list_host=cfg.control.list_host),
            control_timeout_ms=cfg.control.timeout_ms,
        )
        for i in range(args.retry_failed):
            if ctx.cancelled or not ctx.store.failed_domains():
                break
            if not args.quiet:
                print("Retry round {}: {} domains".format(i + 1, len(ctx.store.failed_domains())))
            execute_retry(ctx, emit=emit)
    except KeyboardInterrupt:
        ctx.token.cancel()
        ctx.mark_finished(cancelled=True)
        print("\nInterrupted.")

    print_verdict(ctx)

    payload = ctx.export_payload()
    if args.export == "-":
        json.dump(payload, sys.stdout, ensure_ascii=False, indent=2)
        print("")
    elif args.export:
        with open(args.export, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        print("Export written to {}".format(args.export))

    if args.summary:
        path = write_run_summary(cfg.paths.logs_dir, ctx.run_id, payload, SnapshotStore.status)
        print("Summary written to {}".format(path))

    # пустой список: "нечего проверять" это не успех
    return 1 if ctx.total == 0 and not ctx.cancelled else 0


if __name__ == "__main__":
    sys.exit(main())
