import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from orchestration.errors import ConfigError

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / 'config.yaml'
CONFIG_PATH_ENV = 'MARKWATCH_CONFIG'

# ${NAME} or ${NAME:-fallback}, anywhere inside a string value
_PLACEHOLDER = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}')


def expand_placeholders(value: str) -> str:
    """Substitute environment variables; unset names without a fallback become ''."""
    return _PLACEHOLDER.sub(lambda m: os.getenv(m.group(1)) or (m.group(2) or ''), value)


_TRUE = frozenset({'1', 'true', 'yes', 'on'})
_FALSE = frozenset({'0', 'false', 'no', 'off'})


def as_bool(value: Any, default: bool = False, name: str = 'value') -> bool:
    """Parse a flag given as a YAML bool, a number or a placeholder-resolved string."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if not text:
        return default
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"{name} must be true or false, got {value!r}")


class SectionProxy(Mapping):
    """Read-only view of one config section with attribute access."""

    def __init__(self, data: Optional[Dict[str, Any]]):
        self._data = data or {}

    def _wrap(self, value: Any) -> Any:
        return SectionProxy(value) if isinstance(value, dict) else value

    def __getitem__(self, key: str) -> Any:
        return self._wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_') or name not in self._data:
            raise AttributeError(f"Config key '{name}' not found")
        return self._wrap(self._data[name])

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return self._wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config:
    """YAML configuration with ``${ENV}`` placeholders resolved after ``.env`` is loaded.

    The file is chosen by, in order: the ``config_path`` argument, the
    ``MARKWATCH_CONFIG`` environment variable, the bundled ``config.yaml``.
    """

    def __init__(self, config_path: Optional[str] = None):
        path = config_path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH
        self.config_path = Path(path)
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise ConfigError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r', encoding='utf-8') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"Error parsing YAML configuration {self.config_path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"Configuration root must be a mapping in {self.config_path}")
        return self._resolve_env_vars(raw)

    def _resolve_env_vars(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._resolve_env_vars(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._resolve_env_vars(item) for item in node]
        if isinstance(node, str) and '${' in node:
            return expand_placeholders(node)
        return node

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def section(self, name: str) -> SectionProxy:
        """Named section, empty when absent or not a mapping."""
        value = self._data.get(name)
        return SectionProxy(value if isinstance(value, dict) else None)

    def __getitem__(self, key: str) -> Any:
        value = self._data[key]
        return SectionProxy(value) if isinstance(value, dict) else value

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            value = self._data[name]
        except KeyError as exc:
            raise AttributeError(f"Config key '{name}' not found") from exc
        return SectionProxy(value) if isinstance(value, dict) else value

    def to_dict(self) -> Dict[str, Any]:
        return self._data

    def reload(self) -> None:
        self._data = self._load_config()


config = Config()
