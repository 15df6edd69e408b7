from flask import Blueprint, send_from_directory
from config.loader import ConfigStore
import os

static_bp = Blueprint('static_logs', __name__)


@static_bp.route('/logs/<path:filename>')
def serve_log_file(filename):
    """Serves exports and summaries from the logs directory."""
    cfg = ConfigStore.get()
    log_directory = os.path.abspath(cfg.paths.logs_dir)
    return send_from_directory(log_directory, filename)
