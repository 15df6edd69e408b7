from __future__ import annotations
import json
import os

from config.loader import ConfigStore
from logging_.engine_logger import get_engine_logger

log = get_engine_logger()


class SnapshotStore:
    """
    Reference snapshot of officially listed domains ({"domains": [...], "updatedAt": ...}).
    Only `domains` is used; a missing or broken file simply means "no snapshot".
    """
    _domains: list[str] | None = None
    _updated_at: str | None = None

    @classmethod
    def default_path(cls) -> str:
        cfg = ConfigStore.get()
        return os.path.join(cfg.paths.data_dir, cfg.lists.snapshot_file)

    @classmethod
    def load(cls, path: str | None = None) -> bool:
        path = path or cls.default_path()
        cls._domains = None
        cls._updated_at = None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            log.info(f"No reference snapshot at {path}")
            return False
        except (OSError, json.JSONDecodeError) as e:
            log.warning(f"Failed to load reference snapshot {path}: {e}")
            return False

        if not isinstance(data, dict) or not isinstance(data.get("domains"), list):
            log.warning(f"Reference snapshot {path} has no 'domains' array")
            return False

        cls._domains = [d.strip().lower() for d in data["domains"] if isinstance(d, str) and d.strip()]
        updated = data.get("updatedAt")
        cls._updated_at = updated if isinstance(updated, str) else None
        log.info(f"Reference snapshot loaded: {len(cls._domains)} domains")
        return True

    @classmethod
    def status(cls, domain: str) -> str:
        """'yes' if the domain or a parent domain is listed, 'no' if not, 'unknown' without a snapshot."""
        if not cls._domains:
            return "unknown"
        d = domain.strip().lower()
        for listed in cls._domains:
            if d == listed or d.endswith("." + listed):
                return "yes"
        return "no"

    @classmethod
    def info(cls) -> dict:
        if cls._domains is None:
            return {"hasSnapshot": False}
        return {"hasSnapshot": True, "updatedAt": cls._updated_at}

    @classmethod
    def clear(cls):
        cls._domains = None
        cls._updated_at = None
