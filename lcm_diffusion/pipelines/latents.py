# lcm_diffusion/pipelines/latents.py
from abc import ABC, abstractmethod
from typing import List
import logging

import torch

from ..core.errors import InvalidArgumentError
from ..models.vae import VAE
from ..schedulers.base import Scheduler
from ..utils.config import PromptOptions, SchedulerOptions

logger = logging.getLogger(__name__)


class LatentPreparer(ABC):
    """Produces the initial latent for a run."""

    @abstractmethod
    def prepare(
        self,
        prompt_options: PromptOptions,
        scheduler_options: SchedulerOptions,
        scheduler: Scheduler,
        timesteps: List[int],
    ) -> torch.Tensor:
        pass


class TextToImageLatents(LatentPreparer):
    """Pure noise of the scaled dimension, drawn from the scheduler's generator."""

    def prepare(self, prompt_options, scheduler_options, scheduler, timesteps):
        shape = scheduler_options.get_scaled_dimension()
        logger.debug(f"Creating random latents {list(shape)}")
        return scheduler.create_random_sample(shape)


class ImageToImageLatents(LatentPreparer):
    """
    Encodes the input image and noises it to the first scheduled timestep.

    How much of the image survives is controlled by ``strength`` through the
    scheduler's (shortened) timestep schedule.
    """

    def __init__(self, vae: VAE):
        self.vae = vae

    def prepare(self, prompt_options, scheduler_options, scheduler, timesteps):
        image = prompt_options.input_image
        if image is None:
            raise InvalidArgumentError("Image-to-image requires prompt_options.input_image")

        expected = (scheduler_options.height, scheduler_options.width)
        if tuple(image.shape[-2:]) != expected:
            raise InvalidArgumentError(
                f"Input image is {list(image.shape[-2:])}, expected {list(expected)}"
            )

        latents = self.vae.encode(image)
        noise = scheduler.create_random_sample(latents.shape, dtype=latents.dtype, device=latents.device)
        logger.debug(f"Noising encoded image to timestep {timesteps[0]}")
        return scheduler.add_noise(latents, noise, timesteps[0])
