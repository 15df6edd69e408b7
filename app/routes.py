from flask import (
    Blueprint, request, Response, jsonify, current_app
)
import os
import yaml
from config.loader import ConfigStore, ConfigError
from engine.chain import debug_check_domain
from engine.orchestrator import RunError
from logging_.engine_logger import get_engine_logger
from logging_.export_writer import write_export
from schemas.models import Category, RunSettings
from sources.domain_lists import CATEGORY_SOURCES, PRESETS, extract_domain, find_preset, source_url
from sources.snapshot import SnapshotStore

log = get_engine_logger()

bp = Blueprint("routes", __name__)


def _manager():
    return current_app.extensions["run_manager"]


def _params() -> dict:
    if request.is_json:
        return request.get_json(silent=True) or {}
    data = request.form.to_dict()
    if "categories" in request.form:
        data["categories"] = request.form.getlist("categories")
    return data


def _int_param(data: dict, key: str, default: int, minimum: int, maximum: int | None = None) -> int:
    raw = data.get(key)
    if raw in (None, ""):
        return default
    try:
        val = int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be an integer")
    if val < minimum or (maximum is not None and val > maximum):
        raise ValueError(f"{key} must be within {minimum}..{maximum if maximum is not None else 'inf'}")
    return val


def settings_from_params(data: dict) -> RunSettings:
    """Builds run settings from request params, falling back to config defaults."""
    cfg = ConfigStore.get()

    raw_cats = data.get("categories") or []
    if isinstance(raw_cats, str):
        raw_cats = [c.strip() for c in raw_cats.split(",") if c.strip()]
    try:
        categories = [Category(c) for c in raw_cats] or list(Category)
    except ValueError:
        raise ValueError(f"Unknown category in {raw_cats}; expected one of {[c.value for c in Category]}")

    preset = data.get("preset") or None
    if preset and find_preset(preset) is None:
        raise ValueError(f"Unknown preset: {preset}")

    return RunSettings(
        concurrency=_int_param(data, "concurrency", cfg.execution.max_concurrency, 1, 200),
        timeout_ms=_int_param(data, "timeout_ms", cfg.execution.timeout_ms, 1),
        ok_threshold_percent=_int_param(data, "threshold_percent", cfg.diagnostics.ok_threshold_percent, 0, 100),
        domain_limit=_int_param(data, "limit", cfg.execution.domain_limit, 0),
        categories=categories,
        preset=preset,
        source_url=(data.get("source_url") or "").strip() or None,
    )


@bp.post("/run")
def launch_run():
    try:
        settings = settings_from_params(_params())
    except ValueError as e:
        log.warning(f"Run rejected: {e}")
        return jsonify({"error": str(e)}), 400

    log.info(
        f"Accepted /run request. Limit: {settings.domain_limit}. "
        f"Concurrency: {settings.concurrency}. Starting run..."
    )
    run_id = _manager().start_run(settings)
    log.info(f"[{run_id}] Returning HTTP 202 to client.")

    return jsonify({"run_id": run_id}), 202


@bp.get("/runs/<run_id>")
def run_state(run_id: str):
    ctx = _manager().get(run_id)
    if ctx is None:
        return jsonify({"error": "Unknown run"}), 404
    include_results = request.args.get("results", "1") != "0"
    return jsonify(ctx.state(include_results=include_results))


@bp.post("/runs/<run_id>/stop")
def stop_run(run_id: str):
    try:
        stopped = _manager().stop(run_id)
    except KeyError:
        return jsonify({"error": "Unknown run"}), 404
    return jsonify({"run_id": run_id, "stopping": stopped})


@bp.post("/runs/<run_id>/retry")
def retry_run(run_id: str):
    try:
        _manager().retry(run_id)
    except KeyError:
        return jsonify({"error": "Unknown run"}), 404
    except RunError as e:
        return jsonify({"error": str(e)}), 409
    log.info(f"[{run_id}] Retry of failed domains started.")
    return jsonify({"run_id": run_id}), 202


@bp.get("/runs/<run_id>/export")
def export_run(run_id: str):
    ctx = _manager().get(run_id)
    if ctx is None:
        return jsonify({"error": "Unknown run"}), 404

    payload = ctx.export_payload()
    cfg = ConfigStore.get()
    try:
        path = write_export(cfg.paths.logs_dir, run_id, payload)
        log.info(f"[{run_id}] Export written to {path}")
    except OSError as e:
        log.error(f"[{run_id}] Failed to write export file: {e}", exc_info=True)

    resp = jsonify(payload)
    resp.headers["Content-Disposition"] = f'attachment; filename="reachability-{run_id}.json"'
    return resp


@bp.get("/api/sources")
def api_sources():
    return jsonify({
        "categories": [
            {"id": cat.value, "label": src.label, "shortLabel": src.short_label,
             "url": source_url(src.path) if src.path else None}
            for cat, src in CATEGORY_SOURCES.items()
        ],
        "presets": [
            {"id": p.id, "label": p.label, "url": source_url(p.path),
             "category": p.category.value if p.category else None}
            for p in PRESETS
        ],
    })


@bp.get("/api/debug-check")
def api_debug_check():
    domain = extract_domain(request.args.get("domain") or "")
    if len(domain) < 2:
        return jsonify({"error": "domain is required"}), 400
    try:
        timeout_ms = _int_param(request.args, "timeout_ms", 8000, 1)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    log.info(f"Debug check requested for {domain}")
    return jsonify({"domain": domain, "steps": debug_check_domain(domain, timeout_ms)})


@bp.get("/api/snapshot")
def api_snapshot():
    domain = extract_domain(request.args.get("domain") or "")
    info = SnapshotStore.info()
    if not domain:
        return jsonify(info)
    return jsonify({**info, "domain": domain, "listed": SnapshotStore.status(domain)})


@bp.get("/settings")
def settings():
    return Response(ConfigStore.raw_yaml(), mimetype="text/yaml")


@bp.post("/settings")
def settings_save():
    yaml_text = request.get_data(as_text=True) if not request.form else (request.form.get("yaml") or "")
    try:
        ConfigStore.save_yaml(yaml_text)
    except (yaml.YAMLError, ConfigError) as e:
        log.warning(f"Settings rejected: {e}")
        return jsonify({"success": False, "message": str(e)}), 400
    except OSError as e:
        log.error(f"Error saving settings: {e}", exc_info=True)
        return jsonify({"success": False, "message": str(e)}), 500
    log.info(f"Settings saved to {os.path.join(ConfigStore.get().paths.data_dir, 'config', 'app.yaml')}")
    return jsonify({"success": True})
