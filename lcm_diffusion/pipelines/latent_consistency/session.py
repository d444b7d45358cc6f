# lcm_diffusion/pipelines/latent_consistency/session.py
from typing import Any, Dict, Iterator, Optional
import logging

import torch

from ...core.cancellation import CancellationToken
from ...models.engine import InferenceEngine, ModelMetadataProvider
from ...models.guidance import GuidanceEmbedder
from ...models.text_encoder import TextEncoder
from ...models.vae import VAE
from ...utils.config import BatchOptions, DiffuserType, ModelOptions, PromptOptions, SchedulerOptions
from ..base import BatchProgressCallback, BatchResult, Pipeline, ProgressCallback
from ..latents import ImageToImageLatents, TextToImageLatents
from .loop import DenoisingLoop

logger = logging.getLogger(__name__)


class LatentConsistencySession(Pipeline):
    """
    Entry point for latent consistency generation.

    LCMs have classifier-free guidance distilled into the model (the guidance
    scale is fed in as an embedding), so negative prompts are cleared on
    every entry point and guidance is never performed.
    """

    supports_guidance = False

    def __init__(
        self,
        engine: InferenceEngine,
        metadata: ModelMetadataProvider,
        text_encoder: TextEncoder,
        vae: VAE,
        config: Optional[Dict[str, Any]] = None,
        guidance_embedder: Optional[GuidanceEmbedder] = None,
    ):
        super().__init__(engine, metadata, text_encoder, vae, config)
        self.loop = DenoisingLoop(
            engine,
            metadata,
            latent_preparers={
                DiffuserType.TEXT_TO_IMAGE: TextToImageLatents(),
                DiffuserType.IMAGE_TO_IMAGE: ImageToImageLatents(vae),
            },
            guidance_embedder=guidance_embedder,
            show_progress=self.config.get("show_progress", False),
        )
        logger.info(f"Initialized {self.name} on {self.device}")

    def diffuse(
        self,
        model_options: ModelOptions,
        prompt_options: PromptOptions,
        scheduler_options: SchedulerOptions,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> torch.Tensor:
        # LCM does not support negative prompting
        prompt_options.negative_prompt = ""
        return super().diffuse(model_options, prompt_options, scheduler_options,
                               progress_callback, cancellation_token)

    def diffuse_batch(
        self,
        model_options: ModelOptions,
        prompt_options: PromptOptions,
        scheduler_options: SchedulerOptions,
        batch_options: BatchOptions,
        progress_callback: Optional[BatchProgressCallback] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> Iterator[BatchResult]:
        # LCM does not support negative prompting
        prompt_options.negative_prompt = ""
        return super().diffuse_batch(model_options, prompt_options, scheduler_options,
                                     batch_options, progress_callback, cancellation_token)

    def should_perform_guidance(self, scheduler_options: SchedulerOptions) -> bool:
        # LCM does not support guidance
        return False

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
        return self.loop.run(
            model_options,
            prompt_embeddings,
            prompt_options,
            scheduler_options,
            progress_callback=progress_callback,
            cancellation_token=cancellation_token,
            perform_guidance=perform_guidance,
        )
