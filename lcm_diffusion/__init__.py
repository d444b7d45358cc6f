# Main package exports
from .core import (
    Component,
    Registry,
    ComponentFactory,
    ConfigManager,
    CancellationToken,
    DiffusionError,
    InvalidArgumentError,
    InvalidStateError,
    InferenceError,
    OperationCancelledError,
)
from .utils import ModelOptions, PromptOptions, SchedulerOptions, BatchOptions, load_generation_options
from .models import GuidanceEmbedder, TorchInferenceEngine, TextEncoder, VAE, EngineVAE
from .schedulers import Scheduler, LCMScheduler
from .pipelines import Pipeline, DenoisingLoop, LatentConsistencySession

__version__ = "0.1.0"

__all__ = [
    'Component',
    'Registry',
    'ComponentFactory',
    'ConfigManager',
    'CancellationToken',
    'DiffusionError',
    'InvalidArgumentError',
    'InvalidStateError',
    'InferenceError',
    'OperationCancelledError',
    'ModelOptions',
    'PromptOptions',
    'SchedulerOptions',
    'BatchOptions',
    'load_generation_options',
    'GuidanceEmbedder',
    'TorchInferenceEngine',
    'TextEncoder',
    'VAE',
    'EngineVAE',
    'Scheduler',
    'LCMScheduler',
    'Pipeline',
    'DenoisingLoop',
    'LatentConsistencySession',
]
