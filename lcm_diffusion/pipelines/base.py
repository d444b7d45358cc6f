# lcm_diffusion/pipelines/base.py
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union
import logging
import os
import random
import time

import numpy as np
import torch

from ..core.cancellation import CancellationToken
from ..core.component import Component
from ..core.errors import InvalidArgumentError
from ..models.engine import InferenceEngine, ModelMetadataProvider
from ..models.text_encoder import TextEncoder
from ..models.vae import VAE
from ..utils.config import (
    BatchOptionType,
    BatchOptions,
    ModelOptions,
    PromptOptions,
    SchedulerOptions,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
BatchProgressCallback = Callable[[int, int, int, int], None]


@dataclass
class BatchResult:
    """One entry of a batch run: the options used and the decoded image."""
    scheduler_options: SchedulerOptions
    result: torch.Tensor


def expand_batch_options(scheduler_options: SchedulerOptions,
                         batch_options: BatchOptions) -> List[SchedulerOptions]:
    """
    Expand a batch request into one SchedulerOptions per run.

    SEED keeps the configured seed for the first entry and draws the rest
    from a generator seeded with it; STEP, GUIDANCE and STRENGTH sweep
    ``value_from..value_to`` inclusive by ``increment``.
    """
    issues = batch_options.validate()
    if issues:
        raise InvalidArgumentError("Invalid batch options: " + "; ".join(issues))

    if batch_options.batch_type == BatchOptionType.SEED:
        rng = random.Random(scheduler_options.seed)
        seeds = [scheduler_options.seed] + [rng.randint(0, 2 ** 31 - 1) for _ in range(batch_options.count - 1)]
        return [replace(scheduler_options, seed=s) for s in seeds]

    values = np.arange(
        batch_options.value_from,
        batch_options.value_to + batch_options.increment / 2,
        batch_options.increment,
    )
    if batch_options.batch_type == BatchOptionType.STEP:
        return [replace(scheduler_options, inference_steps=int(round(v))) for v in values]
    if batch_options.batch_type == BatchOptionType.GUIDANCE:
        return [replace(scheduler_options, guidance_scale=round(float(v), 6)) for v in values]
    return [replace(scheduler_options, strength=round(float(v), 6)) for v in values]


class Pipeline(Component, ABC):
    """
    Base interface for diffusers.

    Owns the parts every sampling strategy shares: prompt encoding,
    decoding, batch expansion and saving. Subclasses provide the
    denoising itself in ``scheduler_step`` and declare whether they
    support classifier-free guidance.
    """

    # Consumed by shared code to decide on guidance-related tensor duplication
    supports_guidance: bool = True

    def __init__(
        self,
        engine: InferenceEngine,
        metadata: ModelMetadataProvider,
        text_encoder: TextEncoder,
        vae: VAE,
        config: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize pipeline.

        Args:
            engine: Inference engine running the UNet (and VAE)
            metadata: Model metadata provider, usually the engine itself
            text_encoder: Prompt encoding collaborator
            vae: Latent encoding/decoding collaborator
            config: Pipeline configuration (device, dtype, show_progress)
        """
        super().__init__(config)
        self.engine = engine
        self.metadata = metadata
        self.text_encoder = text_encoder
        self.vae = vae

    @abstractmethod
    def should_perform_guidance(self, scheduler_options: SchedulerOptions) -> bool:
        pass

    @abstractmethod
    def scheduler_step(
        self,
        model_options: ModelOptions,
        prompt_options: PromptOptions,
        scheduler_options: SchedulerOptions,
        prompt_embeddings: torch.Tensor,
        perform_guidance: bool,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> torch.Tensor:
        """
        Run the denoising loop.

        Returns:
            Denoised latents ready for decoding
        """
        pass

    def encode_prompt(self, prompt_options: PromptOptions, perform_guidance: bool) -> torch.Tensor:
        """
        Encode the prompt; with guidance the negative embedding is stacked first.
        """
        negative_prompt = prompt_options.negative_prompt if perform_guidance else None
        embeds = self.text_encoder.encode(prompt_options.prompt, negative_prompt)
        if perform_guidance:
            return torch.cat([embeds["negative_prompt_embeds"], embeds["prompt_embeds"]])
        return embeds["prompt_embeds"]

    def decode_latents(self, latents: torch.Tensor) -> torch.Tensor:
        return self.vae.decode(latents)

    def diffuse(
        self,
        model_options: ModelOptions,
        prompt_options: PromptOptions,
        scheduler_options: SchedulerOptions,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> torch.Tensor:
        """
        Generate one image.

        Returns:
            Decoded image tensor [1, 3, height, width] in [-1, 1]
        """
        if not prompt_options.prompt:
            raise InvalidArgumentError("prompt is required")
        scheduler_options.check()

        start_time = time.time()
        perform_guidance = self.should_perform_guidance(scheduler_options)

        logger.info(f"Encoding prompt: '{prompt_options.prompt}'")
        prompt_embeddings = self.encode_prompt(prompt_options, perform_guidance)

        latents = self.scheduler_step(
            model_options,
            prompt_options,
            scheduler_options,
            prompt_embeddings,
            perform_guidance,
            progress_callback,
            cancellation_token,
        )

        logger.info("Decoding latents")
        image = self.decode_latents(latents)
        logger.info(f"Generation finished in {time.time() - start_time:.2f}s")
        return image

    def diffuse_batch(
        self,
        model_options: ModelOptions,
        prompt_options: PromptOptions,
        scheduler_options: SchedulerOptions,
        batch_options: BatchOptions,
        progress_callback: Optional[BatchProgressCallback] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> Iterator[BatchResult]:
        """
        Generate one image per expanded batch entry, yielding as each finishes.

        Every entry runs its own loop (and scheduler); only the prompt
        embedding is shared.
        """
        if not prompt_options.prompt:
            raise InvalidArgumentError("prompt is required")
        variants = expand_batch_options(scheduler_options, batch_options)
        for variant in variants:
            variant.check()
        return self._diffuse_batch(model_options, prompt_options, variants,
                                   progress_callback, cancellation_token)

    def _diffuse_batch(self, model_options, prompt_options, variants,
                       progress_callback, cancellation_token) -> Iterator[BatchResult]:
        perform_guidance = self.should_perform_guidance(variants[0])
        prompt_embeddings = self.encode_prompt(prompt_options, perform_guidance)

        batch_count = len(variants)
        for batch_index, options in enumerate(variants, start=1):
            logger.info(f"Batch {batch_index}/{batch_count}: seed={options.seed}, "
                        f"steps={options.inference_steps}, guidance={options.guidance_scale}, "
                        f"strength={options.strength}")

            step_callback = None
            if progress_callback is not None:
                def step_callback(step, steps, _index=batch_index):
                    progress_callback(_index, batch_count, step, steps)

            latents = self.scheduler_step(
                model_options,
                prompt_options,
                options,
                prompt_embeddings,
                perform_guidance,
                step_callback,
                cancellation_token,
            )
            yield BatchResult(scheduler_options=options, result=self.decode_latents(latents))

    def save_output(self, output: torch.Tensor, path: Union[str, Path]) -> List[str]:
        """
        Save decoded images to file.

        Args:
            output: Image tensor [B, 3, H, W] or [3, H, W] in [-1, 1]
            path: Output file path; batches get an index suffix

        Returns:
            Paths written
        """
        from PIL import Image

        output_dir = os.path.dirname(os.path.abspath(path))
        os.makedirs(output_dir, exist_ok=True)

        if output.ndim == 3:
            output = output.unsqueeze(0)
        elif output.ndim != 4:
            raise ValueError(f"Unsupported tensor shape: {list(output.shape)}")

        images = (output.detach().float() / 2 + 0.5).clamp(0, 1)
        images_np = (images * 255).round().cpu().permute(0, 2, 3, 1).numpy().astype(np.uint8)

        path = Path(path)
        written = []
        for i, image_np in enumerate(images_np):
            target = path if len(images_np) == 1 else path.with_name(f"{path.stem}_{i}{path.suffix}")
            Image.fromarray(image_np).save(target)
            written.append(str(target))
            logger.info(f"Saved output to {target}")
        return written
