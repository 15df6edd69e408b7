import logging, os, sys
from datetime import datetime
from logging import Formatter
from logging import FileHandler
from flask import Flask, request, Response
from config.loader import ConfigStore

_engine_logger = None

_ENGINE_FMT = Formatter(
    "%(asctime)s [%(levelname)s] %(message)s",
    "%Y-%m-%d %H:%M:%S"
)


def get_engine_logger():
    """
    Gets the singleton logger instance.
    Setup is handled by setup_loggers() / setup_cli_logger().
    """
    global _engine_logger
    if _engine_logger is None:
        _engine_logger = logging.getLogger("engine")
    return _engine_logger


def _configure_engine_logger(log_dir: str, level_name: str) -> logging.Logger:
    os.makedirs(log_dir, exist_ok=True)
    log_level = getattr(logging, level_name.upper(), logging.INFO)

    engine_logger = get_engine_logger()
    engine_logger.setLevel(log_level)

    log_path = os.path.abspath(os.path.join(log_dir, "engine.log"))
    # повторный create_app() не должен плодить хендлеры
    already = any(
        isinstance(h, FileHandler) and h.baseFilename == log_path
        for h in engine_logger.handlers
    )
    if not already:
        engine_handler = FileHandler(log_path)
        engine_handler.setFormatter(_ENGINE_FMT)
        engine_logger.addHandler(engine_handler)

    engine_logger.propagate = False
    return engine_logger


def setup_cli_logger(level: str | None = None) -> logging.Logger:
    """File logging for the CLI; errors are echoed to stderr as well."""
    cfg = ConfigStore.get()
    engine_logger = _configure_engine_logger(cfg.paths.logs_dir, level or cfg.logging.level)

    if not any(getattr(h, "_cli_stderr", False) for h in engine_logger.handlers):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.ERROR)
        stderr_handler.setFormatter(Formatter("[%(levelname)s] %(message)s"))
        stderr_handler._cli_stderr = True
        engine_logger.addHandler(stderr_handler)

    return engine_logger


def setup_loggers(app: Flask):
    """
    Initializes and configures both 'engine' and 'access' loggers
    based on the global config.
    """
    cfg = ConfigStore.get()
    log_dir = cfg.paths.logs_dir
    engine_logger = _configure_engine_logger(log_dir, cfg.logging.level)

    # логгер access.log
    access_logger = logging.getLogger("access")
    access_logger.setLevel(logging.INFO)
    access_path = os.path.abspath(os.path.join(log_dir, "access.log"))
    if not any(isinstance(h, FileHandler) and h.baseFilename == access_path for h in access_logger.handlers):
        access_handler = FileHandler(access_path)
        access_handler.setFormatter(Formatter('%(message)s'))
        access_logger.addHandler(access_handler)
    access_logger.propagate = False

    @app.after_request
    def log_access(response: Response):
        # SSE и выгрузки не логируем, слишком шумно
        if request.path.startswith('/events/') or request.path.startswith('/logs/'):
            return response

        ts = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        access_logger.info(
            f'[{ts}] {request.remote_addr} - "{request.method} {request.full_path}" '
            f'{response.status_code}'
        )
        return response

    engine_logger.info(f"Loggers initialized. Engine log level set to {cfg.logging.level.upper()}.")
