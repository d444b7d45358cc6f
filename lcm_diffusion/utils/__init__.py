from .config import (
    DiffuserType,
    BatchOptionType,
    ModelOptions,
    PromptOptions,
    SchedulerOptions,
    BatchOptions,
    load_generation_options,
)

__all__ = [
    'DiffuserType',
    'BatchOptionType',
    'ModelOptions',
    'PromptOptions',
    'SchedulerOptions',
    'BatchOptions',
    'load_generation_options',
]
