"""
core/config.py：全局配置

配置来源为 YAML 文件（路径取自环境变量 CONFIG_PATH，默认 ./config.yaml）。
字符串值支持 ${VAR} / ${VAR:default} 形式的环境变量替换，在读取时解析。

用法：
    from core.config import cfg
    ttl = cfg.get("auth.session_ttl_minutes", 10)
"""

import copy
import os
import re
import threading
from typing import Any, Dict, Optional

import yaml


VERSION = "1.2.0"
API_BASE = "/api"

_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]*))?\}")


def _scalar(text: str) -> Any:
    # 环境变量只转换布尔与数字，其余保持原字符串
    try:
        parsed = yaml.safe_load(text)
    except yaml.YAMLError:
        return text
    if isinstance(parsed, (bool, int, float)):
        return parsed
    return text


class Config:
    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or os.getenv("CONFIG_PATH", "config.yaml")
        self.config: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self.reload()

    def reload(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.config_path and os.path.exists(self.config_path):
            with open(self.config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            data = {}
        with self._lock:
            self.config = data
        return self.config

    def replace_env_vars(self, value: Any) -> Any:
        """递归替换 ${VAR:default}，整串匹配时保留默认值的 YAML 类型。"""
        if isinstance(value, dict):
            return {k: self.replace_env_vars(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.replace_env_vars(v) for v in value]
        if not isinstance(value, str):
            return value

        whole = _ENV_PATTERN.fullmatch(value.strip())
        if whole:
            name, default = whole.group(1).strip(), whole.group(2)
            env_value = os.getenv(name)
            if env_value is not None:
                return _scalar(env_value)
            if default is None:
                return ""
            try:
                return yaml.safe_load(default)
            except yaml.YAMLError:
                return default

        def _sub(match):
            return os.getenv(match.group(1).strip(), match.group(2) or "")

        return _ENV_PATTERN.sub(_sub, value)

    def get(self, key: str, default: Any = None) -> Any:
        cursor: Any = self.config
        for part in [x for x in str(key or "").split(".") if x]:
            if not isinstance(cursor, dict) or part not in cursor:
                return default
            cursor = cursor[part]
        value = self.replace_env_vars(copy.deepcopy(cursor))
        if value is None or value == "":
            return default
        return value

    def set(self, key: str, value: Any) -> None:
        keys = [x for x in str(key or "").split(".") if x]
        if not keys:
            return
        with self._lock:
            cursor = self.config
            for part in keys[:-1]:
                current = cursor.get(part)
                if not isinstance(current, dict):
                    cursor[part] = {}
                cursor = cursor[part]
            cursor[keys[-1]] = value


cfg = Config()
