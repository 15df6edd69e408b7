import os, json
from datetime import datetime


def ensure_day_dir(logs_dir: str) -> str:
    day = datetime.now().strftime("%Y-%m-%d")
    d = os.path.join(logs_dir, day)
    os.makedirs(d, exist_ok=True)
    return d


def unique_file_path(base_dir: str, name: str, ext: str) -> str:
    path = os.path.join(base_dir, f"{name}.{ext}")
    if not os.path.exists(path):
        return path
    i = 2
    while True:
        path2 = os.path.join(base_dir, f"{name}-{i}.{ext}")
        if not os.path.exists(path2):
            return path2
        i += 1


def write_export(logs_dir: str, run_id: str, payload: dict) -> str:
    """Saves the run export as JSON into today's log directory."""
    day_dir = ensure_day_dir(logs_dir)
    base = datetime.now().strftime("%H-%M-%S") + f"_{run_id}_export"
    path = unique_file_path(day_dir, base, "json")
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)
    return path


def render_summary_md(stats: dict, diagnostics: dict, results: list[dict], snapshot_status=None) -> str:
    lines = []
    lines.append(f"# Run summary ({datetime.now().isoformat(timespec='seconds')})")
    lines.append("")
    lines.append(f"Health: **{diagnostics.get('healthStatus')}** ({diagnostics.get('healthMessage')})")
    ratio = diagnostics.get("okRatio") or 0
    lines.append(f"OK ratio: {ratio:.0%}")
    lines.append(
        f"Total: {stats.get('total')} | OK: {stats.get('ok')} | Fail: {stats.get('fail')} | "
        f"Timeout: {stats.get('timeout')} | Pending: {stats.get('pending')} | "
        f"Duration: {stats.get('durationMs') if stats.get('durationMs') is not None else '-'} ms"
    )
    lines.append(
        f"Control: primary={diagnostics.get('controlPrimary') or '-'}, "
        f"list host={diagnostics.get('controlListHost') or '-'}"
    )
    lines.append("")
    header = "| # | Domain | Category | Status | Probe | Latency (ms) |"
    sep = "|---|--------|----------|--------|-------|--------------|"
    if snapshot_status:
        header += " Listed |"
        sep += "--------|"
    lines.append(header)
    lines.append(sep)
    for i, r in enumerate(results, start=1):
        row = (
            f"| {i} | {r.get('domain', '')} | {r.get('category') or '-'} | {r.get('status', '')} | "
            f"{r.get('probeUsed') or '-'} | {r.get('latencyMs') if r.get('latencyMs') is not None else '-'} |"
        )
        if snapshot_status:
            row += f" {snapshot_status(r.get('domain', ''))} |"
        lines.append(row)
    return "\n".join(lines)


def write_run_summary(logs_dir: str, run_id: str, payload: dict, snapshot_status=None) -> str:
    day_dir = ensure_day_dir(logs_dir)
    base = datetime.now().strftime("%H-%M-%S") + f"_{run_id}_summary"
    path = unique_file_path(day_dir, base, "md")
    text = render_summary_md(payload["stats"], payload["diagnostics"], payload["results"], snapshot_status)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
    return path
