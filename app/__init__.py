from flask import Flask
from config.loader import ConfigStore
from logging_.engine_logger import setup_loggers
from engine.control import ControlDomains
from engine.orchestrator import RunManager
from sources.snapshot import SnapshotStore
from dotenv import load_dotenv
import os

load_dotenv()


def create_app(run_manager: RunManager | None = None) -> Flask:
    app = Flask(__name__)
    app.config['JSONIFY_PRETTYPRINT_REGULAR'] = False

    app.secret_key = os.environ.get('SECRET_KEY')
    if not app.secret_key:
        print("WARNING: SECRET_KEY not set. Using a development key.")
        app.secret_key = 'dev-secret-key'

    ConfigStore.init()
    setup_loggers(app)
    SnapshotStore.load()

    cfg = ConfigStore.get()
    if run_manager is None:
        run_manager = RunManager(
            control_domains=ControlDomains(primary=cfg.control.primary, list_host=cfg.control.list_host),
            control_timeout_ms=cfg.control.timeout_ms,
            other_connectivity_ratio=cfg.diagnostics.other_connectivity_ratio,
            majority_ratio=cfg.diagnostics.majority_ratio,
        )
    app.extensions["run_manager"] = run_manager

    from .routes import bp as routes_bp
    app.register_blueprint(routes_bp)

    # SSE endpoint
    from .sse import bp as sse_bp
    app.register_blueprint(sse_bp)

    # exported files from the logs dir
    from .static_server import static_bp
    app.register_blueprint(static_bp)

    return app
