"""YAML configuration for the trading runtime.

Values may reference the environment as ``${NAME}`` or ``${NAME:-fallback}``.
A value that is only a placeholder resolves to ``None`` when the variable is
unset, so optional transports (Slack, SMTP, a default broker) stay disabled
instead of carrying the literal placeholder text. Individual keys can also be
overridden with ``FXCORE__<SECTION>__<KEY>=<yaml scalar>``.
"""
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'
CONFIG_PATH_ENV = 'FXCORE_CONFIG'
OVERRIDE_PREFIX = 'FXCORE__'

_PLACEHOLDER = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}')


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


class SectionProxy(Mapping):
    """Read-only view of one config section with attribute access."""

    def __init__(self, data: Optional[Dict[str, Any]]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        if self._data.get(name) is None:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(self._data[name])

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


def resolve_placeholders(node: Any, environ: Optional[Mapping] = None) -> Any:
    env = os.environ if environ is None else environ
    if isinstance(node, dict):
        return {key: resolve_placeholders(value, env) for key, value in node.items()}
    if isinstance(node, list):
        return [resolve_placeholders(item, env) for item in node]
    if not isinstance(node, str) or '${' not in node:
        return node

    whole = _PLACEHOLDER.fullmatch(node.strip())
    if whole:
        value = env.get(whole.group(1))
        if value in (None, ''):
            return whole.group(2)
        return value
    return _PLACEHOLDER.sub(lambda m: env.get(m.group(1)) or m.group(2) or '', node)


def apply_env_overrides(data: Dict[str, Any], environ: Optional[Mapping] = None) -> Dict[str, Any]:
    env = os.environ if environ is None else environ
    for name, raw in env.items():
        if not name.startswith(OVERRIDE_PREFIX):
            continue
        path = [part.lower() for part in name[len(OVERRIDE_PREFIX):].split('__') if part]
        if not path:
            continue
        node = data
        for part in path[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        try:
            node[path[-1]] = yaml.safe_load(raw)
        except yaml.YAMLError:
            node[path[-1]] = raw
    return data


class Config:
    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self.config_path = Path(config_path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise RuntimeError(f"Configuration root in {self.config_path} must be a mapping")
        return apply_env_overrides(resolve_placeholders(raw))

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def section(self, key: str) -> Dict[str, Any]:
        value = self._data.get(key)
        return value if isinstance(value, dict) else {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            value = self._data[name]
        except KeyError as exc:
            raise AttributeError(f"Config key '{name}' not found") from exc
        return _wrap(value)

    def reload(self) -> None:
        self._data = self._load_config()


config = Config()
