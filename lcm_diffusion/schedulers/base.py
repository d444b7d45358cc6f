# lcm_diffusion/schedulers/base.py
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence, Union
import math

import torch

from ..core.errors import InvalidStateError
from ..utils.config import SchedulerOptions


class SchedulerType(str, Enum):
    """Scheduler families selectable through SchedulerOptions.scheduler_type."""
    LCM = "LCM"


class SchedulerState(Enum):
    INITIALIZED = "initialized"
    STEPPING = "stepping"
    RELEASED = "released"


@dataclass
class SchedulerStepResult:
    """
    Output of a single scheduler step.

    ``prev_sample`` is the latent for the next iteration, ``denoised`` the
    scheduler's current best estimate of the clean latent.
    """
    prev_sample: torch.Tensor
    denoised: torch.Tensor


def betas_for_alpha_bar(num_diffusion_timesteps: int, max_beta: float = 0.999) -> torch.Tensor:
    """Cosine ("squaredcos_cap_v2") beta schedule."""
    def alpha_bar(t):
        return math.cos((t + 0.008) / 1.008 * math.pi / 2) ** 2

    betas = []
    for i in range(num_diffusion_timesteps):
        t1 = i / num_diffusion_timesteps
        t2 = (i + 1) / num_diffusion_timesteps
        betas.append(min(1 - alpha_bar(t2) / alpha_bar(t1), max_beta))
    return torch.tensor(betas, dtype=torch.float32)


class Scheduler(ABC):
    """
    Base interface for diffusion schedulers.

    A scheduler owns the timestep schedule and the per-step update rule for
    exactly one generation run. It is created with its options, stepped once
    per timestep and released when the run ends; use it as a context manager
    so release happens on every exit path.
    """

    def __init__(self, options: SchedulerOptions):
        """
        Initialize scheduler with its options.

        Args:
            options: Scheduler options for this run
        """
        options.check()
        self.options = options
        self.state = SchedulerState.INITIALIZED

        self.betas = self._create_betas()
        self.alphas = 1.0 - self.betas
        self.alphas_cumprod = torch.cumprod(self.alphas, dim=0)

        self.timesteps: List[int] = []

    def _create_betas(self) -> torch.Tensor:
        o = self.options
        if o.trained_betas is not None:
            return torch.tensor(o.trained_betas, dtype=torch.float32)
        if o.beta_schedule == "linear":
            return torch.linspace(o.beta_start, o.beta_end, o.train_timesteps, dtype=torch.float32)
        if o.beta_schedule == "scaled_linear":
            return torch.linspace(o.beta_start ** 0.5, o.beta_end ** 0.5, o.train_timesteps, dtype=torch.float32) ** 2
        return betas_for_alpha_bar(o.train_timesteps)

    @property
    def init_noise_sigma(self) -> float:
        """Standard deviation of the initial noise distribution."""
        return 1.0

    @property
    def is_released(self) -> bool:
        return self.state is SchedulerState.RELEASED

    def _ensure_active(self):
        if self.is_released:
            raise InvalidStateError(f"{self.__class__.__name__} has been released")

    def get_timesteps(self) -> List[int]:
        """Timestep schedule for this run, highest noise first."""
        self._ensure_active()
        return list(self.timesteps)

    def scale_input(self, sample: torch.Tensor, timestep: int) -> torch.Tensor:
        """
        Scale the latent before it is fed to the model.

        Identity by default; variance-scaling schedulers override it.
        """
        self._ensure_active()
        return sample

    @abstractmethod
    def step(
        self,
        model_output: torch.Tensor,
        timestep: int,
        sample: torch.Tensor,
    ) -> SchedulerStepResult:
        """
        Perform a single denoising step.

        Args:
            model_output: Output from diffusion model
            timestep: Current timestep
            sample: Current sample (noisy latent)

        Returns:
            SchedulerStepResult with the next latent and the denoised estimate
        """
        pass

    def add_noise(self, original_samples: torch.Tensor, noise: torch.Tensor,
                  timesteps: Union[int, Sequence[int]]) -> torch.Tensor:
        """Noise clean latents to the level of ``timesteps`` (forward process)."""
        self._ensure_active()
        t = torch.as_tensor(timesteps, dtype=torch.long).flatten()
        alpha_prod = self.alphas_cumprod[t].to(device=original_samples.device, dtype=original_samples.dtype)
        sqrt_alpha_prod = alpha_prod.sqrt()
        sqrt_one_minus_alpha_prod = (1 - alpha_prod).sqrt()
        while sqrt_alpha_prod.dim() < original_samples.dim():
            sqrt_alpha_prod = sqrt_alpha_prod.unsqueeze(-1)
            sqrt_one_minus_alpha_prod = sqrt_one_minus_alpha_prod.unsqueeze(-1)
        return sqrt_alpha_prod * original_samples + sqrt_one_minus_alpha_prod * noise

    def release(self):
        """Free per-run state; further calls raise InvalidStateError."""
        self.state = SchedulerState.RELEASED

    def __enter__(self) -> "Scheduler":
        self._ensure_active()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
