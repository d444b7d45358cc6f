"""
Latent Consistency Model (LCM) scheduler.

Consistency-distilled models predict the end point of the probability-flow
ODE directly, so each step jumps straight to a denoised estimate and then
re-noises it to the next, lower, timestep. That closed-form update is what
lets LCMs produce usable images in 2-8 steps.

The schedule is drawn from the "origin" timesteps the model was distilled
on: every ``train_timesteps // original_inference_steps``-th training
timestep, optionally truncated by ``strength`` for image-to-image.
"""

import math
import numbers
from typing import Dict, List, Optional, Sequence, Tuple, Union

import torch
import structlog

from ..core.errors import InvalidArgumentError, InvalidStateError
from ..core.registry import register_component
from ..utils.config import SchedulerOptions
from .base import Scheduler, SchedulerState, SchedulerStepResult, SchedulerType

logger = structlog.get_logger()


@register_component(SchedulerType.LCM.value, Scheduler)
class LCMScheduler(Scheduler):
    """
    Multistep consistency sampler for latent consistency models.

    Each ``step`` call computes the denoised estimate from the consistency
    boundary condition for the current timestep and, unless it is the final
    step, re-noises that estimate towards the next scheduled timestep.
    Randomness comes from a generator seeded with ``SchedulerOptions.seed``,
    so a run is reproducible from its options alone.
    """

    def __init__(self, options: SchedulerOptions):
        """
        Initialize LCM scheduler.

        Args:
            options: Scheduler options; ``strength`` below 1 shortens the
                origin schedule for image-to-image runs
        """
        super().__init__(options)
        self.logger = logger.bind(component="LCMScheduler")

        # Alpha used for "previous" timesteps that fall before the schedule
        self.final_alpha_cumprod = (
            torch.tensor(1.0) if options.set_alpha_to_one else self.alphas_cumprod[0]
        )

        self.generator = torch.Generator(device="cpu").manual_seed(options.seed)

        # Per-run state
        self._step_index = 0
        self._coefficients: Dict[int, Tuple[float, float]] = {}
        self.denoised: Optional[torch.Tensor] = None

        self.timesteps = self._create_timesteps()

        self.logger.info("Initialized LCM scheduler",
                         inference_steps=options.inference_steps,
                         original_inference_steps=options.original_inference_steps,
                         strength=options.strength,
                         prediction_type=options.prediction_type)

    def _create_timesteps(self) -> List[int]:
        """
        Build the LCM timestep schedule.

        The origin timesteps are ``k * c - 1`` for ``k = 1..int(original * strength)``
        with ``c = train_timesteps // original``; the schedule takes every
        ``skip``-th of them from the top, ``inference_steps`` in total.
        """
        o = self.options
        c = o.train_timesteps // o.original_inference_steps
        origin_steps = int(o.original_inference_steps * o.strength)
        origin_timesteps = [k * c - 1 for k in range(1, origin_steps + 1)]

        if o.inference_steps > len(origin_timesteps):
            raise InvalidArgumentError(
                f"inference_steps ({o.inference_steps}) exceeds the "
                f"{len(origin_timesteps)} available origin timesteps"
            )

        skip = len(origin_timesteps) // o.inference_steps
        timesteps = origin_timesteps[::-1][::skip][:o.inference_steps]

        self.logger.debug("Timesteps set", timesteps=timesteps)
        return timesteps

    @property
    def step_index(self) -> int:
        """Index of the next timestep ``step`` expects."""
        return self._step_index

    def _schedule_timestep(self, timestep: Union[int, float, torch.Tensor]) -> int:
        """``timestep`` as an int, provided it is exactly one of the scheduled timesteps."""
        if isinstance(timestep, torch.Tensor):
            if timestep.numel() != 1:
                raise InvalidStateError(f"Expected a single timestep, got shape {list(timestep.shape)}")
            timestep = timestep.item()
        if (isinstance(timestep, bool) or not isinstance(timestep, numbers.Real)
                or not math.isfinite(timestep) or int(timestep) != timestep):
            raise InvalidStateError(f"Timestep {timestep!r} is not an integer timestep")
        timestep = int(timestep)
        if timestep not in self.timesteps:
            raise InvalidStateError(
                f"Timestep {timestep} is not part of this run's schedule {self.timesteps}"
            )
        return timestep

    def scale_input(self, sample: torch.Tensor, timestep: Union[int, torch.Tensor]) -> torch.Tensor:
        """LCM feeds latents to the model unscaled."""
        self._ensure_active()
        self._schedule_timestep(timestep)
        return sample

    def get_scalings_for_boundary_condition(self, timestep: int) -> Tuple[float, float]:
        """
        Consistency-model boundary condition scalings ``(c_skip, c_out)``.

        With ``s = timestep * timestep_scaling``:
        ``c_skip = sigma_data^2 / (s^2 + sigma_data^2)`` and
        ``c_out = s / sqrt(s^2 + sigma_data^2)``.
        """
        sigma_data = self.options.sigma_data
        scaled = timestep * self.options.timestep_scaling
        c_skip = sigma_data ** 2 / (scaled ** 2 + sigma_data ** 2)
        c_out = scaled / math.sqrt(scaled ** 2 + sigma_data ** 2)
        return c_skip, c_out

    def _predict_original_sample(self, model_output: torch.Tensor, sample: torch.Tensor,
                                 alpha_prod_t: torch.Tensor, beta_prod_t: torch.Tensor) -> torch.Tensor:
        prediction_type = self.options.prediction_type
        if prediction_type == "epsilon":
            return (sample - beta_prod_t.sqrt() * model_output) / alpha_prod_t.sqrt()
        elif prediction_type == "sample":
            return model_output
        elif prediction_type == "v_prediction":
            return alpha_prod_t.sqrt() * sample - beta_prod_t.sqrt() * model_output
        raise InvalidArgumentError(f"Unsupported prediction_type: {prediction_type}")

    def step(
        self,
        model_output: torch.Tensor,
        timestep: Union[int, torch.Tensor],
        sample: torch.Tensor,
    ) -> SchedulerStepResult:
        """
        Perform one consistency step.

        Args:
            model_output: Noise (or sample / velocity) prediction from the model
            timestep: Current timestep; must be the next one in the schedule
            sample: Current noisy latent

        Returns:
            SchedulerStepResult with the re-noised latent for the next step
            and the current denoised estimate
        """
        self._ensure_active()
        timestep = self._schedule_timestep(timestep)
        step_index = self.timesteps.index(timestep)
        if step_index != self._step_index:
            expected = self.timesteps[self._step_index] if self._step_index < len(self.timesteps) else None
            raise InvalidStateError(
                f"Expected timestep {expected} at step {self._step_index}, got {timestep}"
            )
        self.state = SchedulerState.STEPPING

        # 1. previous timestep; the final step "re-noises" to itself
        is_last_step = step_index == len(self.timesteps) - 1
        prev_timestep = timestep if is_last_step else self.timesteps[step_index + 1]

        # 2. alphas and betas
        alpha_prod_t = self.alphas_cumprod[timestep].to(device=sample.device, dtype=sample.dtype)
        if prev_timestep >= 0:
            alpha_prod_t_prev = self.alphas_cumprod[prev_timestep]
        else:
            alpha_prod_t_prev = self.final_alpha_cumprod
        alpha_prod_t_prev = alpha_prod_t_prev.to(device=sample.device, dtype=sample.dtype)
        beta_prod_t = 1 - alpha_prod_t
        beta_prod_t_prev = 1 - alpha_prod_t_prev

        # 3. boundary condition scalings
        c_skip, c_out = self._coefficients.setdefault(
            timestep, self.get_scalings_for_boundary_condition(timestep)
        )

        # 4. predicted x_0
        predicted_original_sample = self._predict_original_sample(
            model_output, sample, alpha_prod_t, beta_prod_t
        )
        if self.options.clip_sample:
            predicted_original_sample = predicted_original_sample.clamp(
                -self.options.clip_sample_range, self.options.clip_sample_range
            )

        # 5. denoise with the consistency boundary condition
        denoised = c_out * predicted_original_sample + c_skip * sample

        # 6. re-noise towards the next timestep (multistep consistency sampling)
        if is_last_step:
            prev_sample = denoised
        else:
            noise = self.create_random_sample(model_output.shape, dtype=sample.dtype, device=sample.device)
            prev_sample = alpha_prod_t_prev.sqrt() * denoised + beta_prod_t_prev.sqrt() * noise

        self._step_index += 1
        self.denoised = denoised
        return SchedulerStepResult(prev_sample=prev_sample, denoised=denoised)

    def create_random_sample(self, shape: Sequence[int], dtype: torch.dtype = torch.float32,
                             device: Union[str, torch.device] = "cpu") -> torch.Tensor:
        """Draw seeded standard normal noise scaled by ``init_noise_sigma``."""
        self._ensure_active()
        noise = torch.randn(tuple(shape), generator=self.generator, dtype=torch.float32)
        return (noise * self.init_noise_sigma).to(device=device, dtype=dtype)

    def release(self):
        if self.is_released:
            return
        super().release()
        self._coefficients.clear()
        self.denoised = None
        self.logger.debug("Released LCM scheduler", steps_taken=self._step_index)
