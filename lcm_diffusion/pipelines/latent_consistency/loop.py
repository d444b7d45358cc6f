# lcm_diffusion/pipelines/latent_consistency/loop.py
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
import logging
import time

import torch
from tqdm import tqdm

from ...core.cancellation import CancellationToken
from ...core.errors import DiffusionError, InferenceError, InvalidArgumentError
from ...core.factory import ComponentFactory
from ...models.engine import InferenceEngine, ModelMetadataProvider, ModelType, TensorMetadata
from ...models.guidance import GuidanceEmbedder
from ...schedulers import Scheduler, SchedulerStepResult
from ...utils.config import DiffuserType, ModelOptions, PromptOptions, SchedulerOptions
from ..base import ProgressCallback
from ..latents import LatentPreparer, TextToImageLatents


@dataclass
class _UNetSignature:
    """Input and output metadata of the UNet, in the positions the loop fills."""
    inputs: List[TensorMetadata]  # latent, timestep, prompt embedding, guidance embedding
    output: TensorMetadata

    @property
    def timestep(self) -> TensorMetadata:
        return self.inputs[1]


class DenoisingLoop:
    """
    Latent consistency denoising loop.

    Runs one generation: acquires a scheduler for the run, prepares the
    initial latent, then for every scheduled timestep scales the latent,
    asks the inference engine for a noise prediction and lets the scheduler
    step. The result is the scheduler's final denoised estimate, not the
    last raw latent.

    The UNet is called with exactly four inputs, in the model's input order:
    latent, timestep, prompt embedding and guidance embedding. The batch is
    never duplicated for classifier-free guidance.
    """

    def __init__(
        self,
        engine: InferenceEngine,
        metadata: ModelMetadataProvider,
        latent_preparers: Optional[Dict[DiffuserType, LatentPreparer]] = None,
        guidance_embedder: Optional[GuidanceEmbedder] = None,
        logger: Optional[logging.Logger] = None,
        show_progress: bool = False,
    ):
        """
        Initialize the loop.

        Args:
            engine: Inference engine running the UNet
            metadata: Metadata provider for the UNet's inputs and outputs
            latent_preparers: Initial latent strategy per diffuser type
            guidance_embedder: Guidance scale embedder (256-dim by default)
            logger: Logger for lifecycle and per-step timing messages
            show_progress: Render a tqdm progress bar
        """
        self.engine = engine
        self.metadata = metadata
        self.latent_preparers = latent_preparers or {DiffuserType.TEXT_TO_IMAGE: TextToImageLatents()}
        self.guidance_embedder = guidance_embedder or GuidanceEmbedder()
        self.logger = logger or logging.getLogger(__name__)
        self.show_progress = show_progress

    def create_scheduler(self, scheduler_options: SchedulerOptions) -> Scheduler:
        """Scheduler for one run, looked up by ``scheduler_type``."""
        return ComponentFactory.create_component(
            scheduler_options.scheduler_type, scheduler_options, Scheduler
        )

    def run(
        self,
        model_options: ModelOptions,
        prompt_embedding: torch.Tensor,
        prompt_options: PromptOptions,
        scheduler_options: SchedulerOptions,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation_token: Optional[CancellationToken] = None,
        perform_guidance: bool = False,
    ) -> torch.Tensor:
        """
        Denoise one latent.

        Args:
            model_options: Models used by this run
            prompt_embedding: Encoded prompt (read-only)
            prompt_options: Prompt options; selects the latent preparer
            scheduler_options: Scheduler and loop options
            progress_callback: Called with (step, total_steps) after each step
            cancellation_token: Checked before each step
            perform_guidance: Must be False; latent consistency sampling has
                guidance distilled into the model

        Returns:
            Final denoised latent, shaped like ``get_scaled_dimension()``

        Raises:
            InvalidArgumentError: bad options or model signature
            InferenceError: the engine failed; carries the step and timestep
            OperationCancelledError: cancellation observed before a step
        """
        if perform_guidance:
            raise InvalidArgumentError("Latent consistency sampling does not support guidance")
        scheduler_options.check()
        preparer = self.latent_preparers.get(prompt_options.diffuser_type)
        if preparer is None:
            raise InvalidArgumentError(f"Unsupported diffuser type: {prompt_options.diffuser_type}")
        token = cancellation_token or CancellationToken()

        unet = self._get_unet_signature(model_options)
        output_dimension = scheduler_options.get_scaled_dimension()

        with self.create_scheduler(scheduler_options) as scheduler:
            timesteps = scheduler.get_timesteps()
            latents = preparer.prepare(prompt_options, scheduler_options, scheduler, timesteps)
            guidance_embedding = self.guidance_embedder.embed(scheduler_options.guidance_scale)

            self.logger.info(f"Running {len(timesteps)} latent consistency steps, timesteps={timesteps}")
            denoised = None
            total_steps = len(timesteps)
            for step, timestep in enumerate(tqdm(timesteps, desc="Denoising", disable=not self.show_progress), start=1):
                token.raise_if_cancellation_requested(step, timestep)
                step_start = time.perf_counter()

                result = self._run_step(
                    model_options, scheduler, unet, latents, timestep,
                    prompt_embedding, guidance_embedding, output_dimension, step,
                )
                latents, denoised = result.prev_sample, result.denoised

                self._notify_progress(progress_callback, step, total_steps)
                self.logger.debug(
                    f"Step {step}/{total_steps} (t={timestep}) took {time.perf_counter() - step_start:.3f}s"
                )

        return denoised

    def _get_unet_signature(self, model_options: ModelOptions) -> _UNetSignature:
        inputs = self.metadata.get_input_metadata(model_options, ModelType.UNET)
        outputs = self.metadata.get_output_metadata(model_options, ModelType.UNET)
        if len(inputs) < 4 or not outputs:
            raise InvalidArgumentError(
                f"UNet '{model_options.unet}' must take 4 inputs and produce an output, "
                f"got inputs={[m.name for m in inputs]} outputs={[m.name for m in outputs]}"
            )
        return _UNetSignature(inputs=list(inputs[:4]), output=outputs[0])

    @staticmethod
    def _timestep_tensor(metadata: TensorMetadata, timestep: int) -> torch.Tensor:
        """Timestep in the representation the UNet expects (int64 or float, scalar or [1])."""
        value = int(timestep) if metadata.is_integer else float(timestep)
        if len(metadata.shape) == 0:
            return torch.tensor(value, dtype=metadata.dtype)
        return torch.tensor([value], dtype=metadata.dtype)

    def _run_step(
        self,
        model_options: ModelOptions,
        scheduler: Scheduler,
        unet: _UNetSignature,
        latents: torch.Tensor,
        timestep: int,
        prompt_embedding: torch.Tensor,
        guidance_embedding: torch.Tensor,
        output_dimension: Sequence[int],
        step: int,
    ) -> SchedulerStepResult:
        input_tensor = scheduler.scale_input(latents, timestep)

        # Inputs follow the precision of the UNet output
        dtype = unet.output.dtype
        values = [
            input_tensor.to(dtype=dtype),
            self._timestep_tensor(unet.timestep, timestep),
            prompt_embedding.to(dtype=dtype),
            guidance_embedding.to(dtype=dtype),
        ]
        inputs = {}
        for meta, value in zip(unet.inputs, values):
            meta.validate_shape(value.shape)
            inputs[meta.name] = value

        output_buffer = unet.output.create_output_buffer(output_dimension, device=latents.device)
        try:
            self.engine.run(model_options, ModelType.UNET, inputs, {unet.output.name: output_buffer})
        except InferenceError as e:
            raise InferenceError(f"UNet inference failed: {e}", step, timestep) from e
        except DiffusionError:
            raise
        except Exception as e:
            raise InferenceError(f"UNet inference failed: {e}", step, timestep) from e

        noise_pred = output_buffer.to(dtype=latents.dtype)
        return scheduler.step(noise_pred, timestep, latents)

    def _notify_progress(self, progress_callback: Optional[ProgressCallback], step: int, total_steps: int):
        if progress_callback is None:
            return
        try:
            progress_callback(step, total_steps)
        except Exception:
            self.logger.warning(f"Progress callback failed at step {step}/{total_steps}", exc_info=True)
