from __future__ import annotations
import os, yaml
from dataclasses import dataclass


class ConfigError(ValueError):
    pass


@dataclass
class AppCfg:
    host: str
    port: int


@dataclass
class LoggingCfg:
    level: str


@dataclass
class PathsCfg:
    logs_dir: str
    data_dir: str


@dataclass
class ExecCfg:
    max_concurrency: int
    timeout_ms: int
    domain_limit: int


@dataclass
class DiagnosticsCfg:
    ok_threshold_percent: int
    other_connectivity_ratio: float
    majority_ratio: float


@dataclass
class ControlCfg:
    primary: str
    list_host: str
    timeout_ms: int


@dataclass
class ListsCfg:
    base_url: str
    fetch_timeout_sec: int
    snapshot_file: str


@dataclass
class HttpCfg:
    user_agent: str
    accept: str
    accept_language: str


@dataclass
class RootCfg:
    app: AppCfg
    logging: LoggingCfg
    paths: PathsCfg
    execution: ExecCfg
    diagnostics: DiagnosticsCfg
    control: ControlCfg
    lists: ListsCfg
    http_client: HttpCfg


_DEFAULTS = {
    "app": {"host": "0.0.0.0", "port": 8080},
    "logging": {"level": "INFO"},
    "paths": {"logs_dir": "./logs", "data_dir": "./data"},
    "execution": {"max_concurrency": 15, "timeout_ms": 6000, "domain_limit": 120},
    "diagnostics": {
        "ok_threshold_percent": 85,
        "other_connectivity_ratio": 0.15,
        "majority_ratio": 0.5,
    },
    "control": {
        "primary": "wikipedia.org",
        "list_host": "raw.githubusercontent.com",
        "timeout_ms": 8000,
    },
    "lists": {
        "base_url": "https://raw.githubusercontent.com/itdoginfo/allow-domains/main",
        "fetch_timeout_sec": 15,
        "snapshot_file": "rkn_snapshot.json",
    },
    "http_client": {
        "user_agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/143.0.0.0 Safari/537.36",
        "accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
        "accept_language": "en-US,en;q=0.5",
    },
}


def _config_path() -> str:
    data_dir = os.environ.get("DATA_DIR", "./data")
    return os.path.join(data_dir, "config", "app.yaml")


def _build(data: dict) -> RootCfg:
    if not isinstance(data, dict):
        raise ConfigError("Config root must be a mapping")

    # секции, которых нет в yaml, берем из дефолтов; внутри секции yaml побеждает
    merged = {}
    for section, defaults in _DEFAULTS.items():
        raw = data.get(section)
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigError(f"Config section '{section}' must be a mapping, got {type(raw).__name__}")
        merged[section] = {**defaults, **raw}

    try:
        return RootCfg(
            app=AppCfg(**merged["app"]),
            logging=LoggingCfg(**merged["logging"]),
            paths=PathsCfg(**merged["paths"]),
            execution=ExecCfg(**merged["execution"]),
            diagnostics=DiagnosticsCfg(**merged["diagnostics"]),
            control=ControlCfg(**merged["control"]),
            lists=ListsCfg(**merged["lists"]),
            http_client=HttpCfg(**merged["http_client"]),
        )
    except TypeError as e:
        raise ConfigError(f"Unknown or missing config key: {e}") from e


# числовые поля: yaml легко отдает строку вместо числа
_NUMERIC_FIELDS = {
    "app": {"port": int},
    "execution": {"max_concurrency": int, "timeout_ms": int, "domain_limit": int},
    "diagnostics": {"ok_threshold_percent": int, "other_connectivity_ratio": float, "majority_ratio": float},
    "control": {"timeout_ms": int},
    "lists": {"fetch_timeout_sec": int},
}


def _check_types(cfg: RootCfg):
    for section, fields in _NUMERIC_FIELDS.items():
        obj = getattr(cfg, section)
        for name, kind in fields.items():
            val = getattr(obj, name)
            allowed = (int, float) if kind is float else (int,)
            if isinstance(val, bool) or not isinstance(val, allowed):
                expected = "a number" if kind is float else "an integer"
                raise ConfigError(f"{section}.{name} must be {expected}, got {val!r}")


def validate(cfg: RootCfg):
    _check_types(cfg)
    if cfg.execution.max_concurrency < 1:
        raise ConfigError("execution.max_concurrency must be >= 1")
    if cfg.execution.timeout_ms <= 0:
        raise ConfigError("execution.timeout_ms must be > 0")
    if cfg.execution.domain_limit < 0:
        raise ConfigError("execution.domain_limit must be >= 0")
    if not 0 <= cfg.diagnostics.ok_threshold_percent <= 100:
        raise ConfigError("diagnostics.ok_threshold_percent must be within 0..100")
    if cfg.control.timeout_ms <= 0:
        raise ConfigError("control.timeout_ms must be > 0")


class ConfigStore:
    _cfg: RootCfg = None
    _yaml_text: str = ""

    @classmethod
    def init(cls):
        app_yaml = _config_path()

        try:
            with open(app_yaml, "r", encoding="utf-8") as f:
                text = f.read()
                cls._yaml_text = text
                data = yaml.safe_load(text) or {}
        except FileNotFoundError:
            print(f"FATAL: Config file not found at {app_yaml}")
            print(f"       (Make sure ./data/config/app.yaml exists or set DATA_DIR)")
            raise

        cfg = _build(data)
        cls._override_from_env(cfg)
        validate(cfg)
        cls._cfg = cfg

        os.makedirs(cls._cfg.paths.data_dir, exist_ok=True)
        os.makedirs(cls._cfg.paths.logs_dir, exist_ok=True)

    @classmethod
    def _override_from_env(cls, cfg: RootCfg):
        env_map = {
            "APP_HOST": (cfg.app, "host"),
            "APP_PORT": (cfg.app, "port", int),
            "LOG_LEVEL": (cfg.logging, "level"),
            "LOG_DIR": (cfg.paths, "logs_dir"),
            "DATA_DIR": (cfg.paths, "data_dir"),
            "MAX_CONCURRENCY": (cfg.execution, "max_concurrency", int),
            "CHECK_TIMEOUT_MS": (cfg.execution, "timeout_ms", int),
            "DOMAIN_LIMIT": (cfg.execution, "domain_limit", int),
            "OK_THRESHOLD_PERCENT": (cfg.diagnostics, "ok_threshold_percent", int),
            "CONTROL_PRIMARY": (cfg.control, "primary"),
            "CONTROL_LIST_HOST": (cfg.control, "list_host"),
            "LISTS_BASE_URL": (cfg.lists, "base_url"),
            "USER_AGENT": (cfg.http_client, "user_agent"),
        }

        for env_key, info in env_map.items():
            val = os.environ.get(env_key)
            if val is not None:
                obj, attr_name = info[0], info[1]
                cast_func = info[2] if len(info) > 2 else str

                try:
                    setattr(obj, attr_name, cast_func(val))
                except (ValueError, TypeError):
                    print(f"Warning: Could not cast env var {env_key}={val} to {cast_func}")

    @classmethod
    def get(cls) -> RootCfg:
        if cls._cfg is None:
            cls.init()
        return cls._cfg

    @classmethod
    def reset(cls):
        cls._cfg = None
        cls._yaml_text = ""

    @classmethod
    def raw_yaml(cls) -> str:
        return cls._yaml_text

    @classmethod
    def save_yaml(cls, text: str):
        """Validates the YAML text against the config schema, then writes it and reloads."""
        data = yaml.safe_load(text) or {}
        cfg = _build(data)
        validate(cfg)

        app_yaml = _config_path()
        with open(app_yaml, "w", encoding="utf-8") as f:
            f.write(text)
        cls._yaml_text = text
        cls.init()
