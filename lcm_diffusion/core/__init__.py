# lcm_diffusion/core/__init__.py
from .component import Component
from .registry import Registry, register_component
from .factory import ComponentFactory
from .config import ConfigManager
from .cancellation import CancellationToken
from .errors import (
    DiffusionError,
    InvalidArgumentError,
    InvalidStateError,
    InferenceError,
    OperationCancelledError,
)

__all__ = [
    'Component',
    'Registry',
    'register_component',
    'ComponentFactory',
    'ConfigManager',
    'CancellationToken',
    'DiffusionError',
    'InvalidArgumentError',
    'InvalidStateError',
    'InferenceError',
    'OperationCancelledError',
]
