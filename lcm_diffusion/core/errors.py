"""Exception types raised by the diffusion pipeline."""

from typing import Optional


class DiffusionError(Exception):
    """Base class for every error surfaced by a generation run."""


class InvalidArgumentError(DiffusionError, ValueError):
    """Bad embedding dimension, malformed options or unknown component name."""


class InvalidStateError(DiffusionError, RuntimeError):
    """Scheduler used after release or with a timestep outside its schedule."""


class _StepError(DiffusionError):

    def __init__(self, message: str, step_index: Optional[int] = None,
                 timestep: Optional[int] = None):
        if step_index is not None:
            message = f"{message} (step {step_index}, timestep {timestep})"
        super().__init__(message)
        self.step_index = step_index
        self.timestep = timestep


class InferenceError(_StepError):
    """The inference engine failed while predicting noise for a step."""


class OperationCancelledError(_StepError):
    """Cancellation was observed at an iteration boundary."""
