from abc import ABC
from typing import Any, Dict, Optional, Union

import torch

from .errors import InvalidArgumentError

_DTYPE_NAMES = {
    "fp32": torch.float32,
    "f32": torch.float32,
    "fp16": torch.float16,
    "f16": torch.float16,
    "bf16": torch.bfloat16,
    "float32": torch.float32,
    "float": torch.float32,
    "float16": torch.float16,
    "half": torch.float16,
    "bfloat16": torch.bfloat16,
}


def resolve_device(value: Optional[Union[str, torch.device]]) -> torch.device:
    """Device from a config value; ``None`` picks CUDA when available."""
    if value is None:
        value = "cuda" if torch.cuda.is_available() else "cpu"
    return torch.device(value)


def resolve_dtype(value: Optional[Union[str, torch.dtype]]) -> torch.dtype:
    """Dtype from a config value (``torch.dtype`` or a short name like ``"fp16"``)."""
    if isinstance(value, torch.dtype):
        return value
    if value is None:
        return torch.float32
    if value not in _DTYPE_NAMES:
        raise InvalidArgumentError(f"Unknown dtype {value!r}; expected one of {sorted(_DTYPE_NAMES)}")
    return _DTYPE_NAMES[value]


class Component(ABC):
    """
    Base class for engines, collaborators and pipelines.

    Reads ``device``, ``dtype`` and ``name`` from an optional config dict;
    everything else in the dict is left to the subclass.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self._device = resolve_device(self.config.get("device"))
        self._dtype = resolve_dtype(self.config.get("dtype"))
        self.name = self.config.get("name", self.__class__.__name__)

    @property
    def device(self) -> torch.device:
        return self._device

    @property
    def dtype(self) -> torch.dtype:
        return self._dtype

    def to(self, device: Optional[Union[str, torch.device]] = None,
           dtype: Optional[torch.dtype] = None) -> "Component":
        """
        Move the component; ``None`` keeps the current device or dtype.

        Returns:
            Self for chaining
        """
        if device is not None:
            self._device = torch.device(device)
        if dtype is not None:
            self._dtype = dtype
        return self
