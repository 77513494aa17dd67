# config.py
from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Union

import yaml

from .errors import ConfigParseError, ConfigTypeError, MissingKey

_MISSING = object()


class Config(Mapping):
    """
    Read-only view over the merged configuration.

    Lookups:
      config["samples"]            -> value or MissingKey
      config.get("paths.raw")      -> dotted keys walk nested mappings
      config.get("x", default)     -> default instead of MissingKey
      config.get_list("samples")   -> typed lookups raise ConfigTypeError
    Nested mappings come back as Config views, lists as tuples.
    """

    def __init__(self, data: Optional[Mapping[str, Any]] = None, *, _prefix: str = ""):
        self._data: Dict[str, Any] = copy.deepcopy(dict(data or {}))
        self._prefix = _prefix

    # ---- Mapping protocol ----
    def __getitem__(self, key: str) -> Any:
        return self.get(key)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return self.get(str(key), _MISSING) is not _MISSING

    def __repr__(self) -> str:
        return f"Config({self._data!r})"

    # ---- lookups ----
    def get(self, key: str, default: Any = _MISSING) -> Any:
        found = self._lookup(key)
        if found is _MISSING:
            if default is not _MISSING:
                return default
            raise MissingKey(key=self._prefix + key, known=sorted(self._data))
        return self._wrap(found, key)

    def get_str(self, key: str, default: Any = _MISSING) -> str:
        value = self.get(key, default)
        if not isinstance(value, str):
            raise ConfigTypeError(key=key, expected="a string", value=value)
        return value

    def get_int(self, key: str, default: Any = _MISSING) -> int:
        value = self.get(key, default)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigTypeError(key=key, expected="an integer", value=value)
        return value

    def get_list(self, key: str, default: Any = _MISSING) -> List[Any]:
        value = self.get(key, default)
        if isinstance(value, str):
            return [value]
        if not isinstance(value, (list, tuple)):
            raise ConfigTypeError(key=key, expected="a list", value=value)
        return list(value)

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

    def _lookup(self, key: str) -> Any:
        if key in self._data:
            return self._data[key]
        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return _MISSING
            node = node[part]
        return node

    def _wrap(self, value: Any, key: str) -> Any:
        if isinstance(value, dict):
            return Config(value, _prefix=f"{self._prefix}{key}.")
        if isinstance(value, list):
            return tuple(copy.deepcopy(value))
        return value


def deep_merge(base: Dict[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``update`` into ``base`` (in place); update wins."""
    for k, v in update.items():
        if isinstance(v, Mapping) and isinstance(base.get(k), dict):
            deep_merge(base[k], v)
        else:
            base[k] = copy.deepcopy(dict(v)) if isinstance(v, Mapping) else copy.deepcopy(v)
    return base


def parse_overrides(bindings: Iterable[str]) -> Dict[str, Any]:
    """
    Parse CLI ``key=value`` bindings.

    Values are read as YAML so ``n=3`` is an int and ``samples=[a,b]`` a list.
    """
    out: Dict[str, Any] = {}
    for raw in bindings:
        if "=" not in raw:
            raise ConfigParseError(source="--config", message=f"expected key=value, got {raw!r}")
        key, value = raw.split("=", 1)
        key = key.strip()
        if not key:
            raise ConfigParseError(source="--config", message=f"empty key in {raw!r}")
        try:
            out[key] = yaml.safe_load(value) if value.strip() else ""
        except yaml.YAMLError:
            out[key] = value
    return out


def _read_source(path: Path) -> Dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigParseError(source=str(path), message=f"cannot read file: {e.strerror or e}") from e

    try:
        if path.suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigParseError(source=str(path), message=str(e)) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigParseError(
            source=str(path),
            message=f"top level must be a mapping, got {type(data).__name__}",
        )
    return data


class ConfigStore:
    """
    Layers configuration sources by priority:

        defaults < config files (load order) < CLI overrides

    Later layers win key by key (nested mappings are merged).
    """

    def __init__(self, defaults: Optional[Mapping[str, Any]] = None):
        self._layers: List[Dict[str, Any]] = []
        self._overrides: Dict[str, Any] = {}
        self.sources: List[str] = []
        if defaults:
            self._layers.append(copy.deepcopy(dict(defaults)))
            self.sources.append("<defaults>")

    def load(self, source: Union[str, Path, Mapping[str, Any]]) -> Config:
        if isinstance(source, Mapping):
            self._layers.append(copy.deepcopy(dict(source)))
            self.sources.append("<mapping>")
        else:
            path = Path(source)
            self._layers.append(_read_source(path))
            self.sources.append(str(path))
        return self.config

    def override(self, bindings: Union[Mapping[str, Any], Iterable[str]]) -> Config:
        if not isinstance(bindings, Mapping):
            bindings = parse_overrides(bindings)
        deep_merge(self._overrides, bindings)
        return self.config

    @property
    def config(self) -> Config:
        merged: Dict[str, Any] = {}
        for layer in self._layers:
            deep_merge(merged, layer)
        deep_merge(merged, self._overrides)
        return Config(merged)

    def get(self, key: str, default: Any = _MISSING) -> Any:
        return self.config.get(key, default)
