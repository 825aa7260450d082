"""
quota/config.py — YAML 配置加载

• 配置文件路径：环境变量 CONFIG_FILE，缺省为 ./config.yaml
• cfg.get("a.b.c", default) 支持点号路径读取
• 环境变量覆盖：QUOTA_ 前缀 + 大写路径（点号换成下划线），如 QUOTA_QUOTA_TIMEZONE
"""

import os
import threading
from typing import Any, Dict, Optional

import yaml


VERSION = "1.0.0"
API_BASE = "/api/v1"
ENV_PREFIX = "QUOTA_"

_MISSING = object()


class Config:
    def __init__(self, path: Optional[str] = None):
        self.path = path or os.getenv("CONFIG_FILE", "./config.yaml")
        self.config: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self.reload()

    def reload(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.path and os.path.exists(self.path):
            with open(self.path, "r", encoding="utf-8") as fp:
                loaded = yaml.safe_load(fp)
            if isinstance(loaded, dict):
                data = loaded
        with self._lock:
            self.config = data
        return data

    def _env_key(self, key: str) -> str:
        return ENV_PREFIX + str(key or "").replace(".", "_").replace("-", "_").upper()

    def get(self, key: str, default: Any = None) -> Any:
        env_value = os.getenv(self._env_key(key))
        if env_value is not None and env_value != "":
            return env_value

        cursor: Any = self.config if isinstance(self.config, dict) else {}
        for part in [x for x in str(key or "").split(".") if x]:
            if not isinstance(cursor, dict):
                return default
            cursor = cursor.get(part, _MISSING)
            if cursor is _MISSING:
                return default
        return default if cursor is None else cursor


def get_int(key: str, default: int, min_value: int = 0, max_value: int = 10 ** 9) -> int:
    try:
        value = int(cfg.get(key, default))
    except Exception:
        value = int(default)
    return max(min_value, min(max_value, value))


def get_float(key: str, default: float, min_value: float = 0.0, max_value: float = 3600.0) -> float:
    try:
        value = float(cfg.get(key, default))
    except Exception:
        value = float(default)
    return max(min_value, min(max_value, value))


cfg = Config()
