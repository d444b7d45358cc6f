from pathlib import Path
from typing import Any, Callable, Dict, IO, Mapping, Union
import copy
import json

import yaml

from .errors import InvalidArgumentError

_LOADERS: Dict[str, Callable[[IO[str]], Any]] = {
    ".json": json.load,
    ".yaml": yaml.safe_load,
    ".yml": yaml.safe_load,
}


class ConfigManager:
    """
    Loads generation option files and layers them.

    A run's options are built from the dataclass defaults, then an options
    file, then caller overrides; each layer only needs to name the keys it
    changes.
    """

    @staticmethod
    def load_config(path: Union[str, Path]) -> Dict[str, Any]:
        """
        Read an options file.

        Args:
            path: JSON (``.json``) or YAML (``.yaml``/``.yml``) file

        Returns:
            Parsed mapping; an empty file yields ``{}``
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        loader = _LOADERS.get(path.suffix.lower())
        if loader is None:
            raise InvalidArgumentError(
                f"Unsupported config format: {path.suffix!r}; expected one of {sorted(_LOADERS)}"
            )

        with open(path, 'r') as f:
            data = loader(f)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise InvalidArgumentError(f"{path} must contain a mapping, got {type(data).__name__}")
        return data

    @staticmethod
    def merge_configs(*layers: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Deep-merge config layers, later layers winning.

        Empty layers are skipped; inputs are never mutated.
        """
        merged: Dict[str, Any] = {}
        for layer in layers:
            if not layer:
                continue
            ConfigManager._merge_into(merged, layer)
        return merged

    @staticmethod
    def section(config: Mapping[str, Any], name: str) -> Dict[str, Any]:
        """Named sub-mapping of ``config`` (``{}`` when absent)."""
        value = config.get(name)
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise InvalidArgumentError(f"Config section '{name}' must be a mapping, got {value!r}")
        return value

    @staticmethod
    def _merge_into(target: Dict[str, Any], layer: Mapping[str, Any]):
        for key, value in layer.items():
            current = target.get(key)
            if isinstance(current, dict) and isinstance(value, Mapping):
                ConfigManager._merge_into(current, value)
            elif isinstance(value, Mapping):
                target[key] = {}
                ConfigManager._merge_into(target[key], value)
            else:
                target[key] = copy.deepcopy(value)
