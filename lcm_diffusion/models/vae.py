# lcm_diffusion/models/vae.py
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import logging

import torch

from ..core.component import Component
from ..utils.config import ModelOptions
from .engine import InferenceEngine, ModelMetadataProvider, ModelType

logger = logging.getLogger(__name__)

class VAE(Component, ABC):
    """
    Base interface for VAEs.

    Maps images to the scaled latent space the UNet works in and back.
    """

    @abstractmethod
    def encode(self, images: torch.Tensor) -> torch.Tensor:
        """
        Encode images to scaled latents.

        Args:
            images: Image tensor [B, 3, H, W] in [-1, 1]

        Returns:
            Latent tensor [B, 4, H / 8, W / 8]
        """
        pass

    @abstractmethod
    def decode(self, latents: torch.Tensor) -> torch.Tensor:
        """
        Decode scaled latents to pixel space.

        Args:
            latents: Latent tensor [B, 4, h, w]

        Returns:
            Image tensor [B, 3, h * 8, w * 8] in [-1, 1]
        """
        pass


class EngineVAE(VAE):
    """
    VAE whose encoder and decoder run through an InferenceEngine.

    Latents are multiplied by ``ModelOptions.scale_factor`` after encoding
    and divided by it before decoding.
    """

    def __init__(
        self,
        engine: InferenceEngine,
        metadata: ModelMetadataProvider,
        model_options: ModelOptions,
        config: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(config)
        self.engine = engine
        self.metadata = metadata
        self.model_options = model_options

    def _run(self, model_type: ModelType, value: torch.Tensor, out_shape) -> torch.Tensor:
        input_meta = self.metadata.get_input_metadata(self.model_options, model_type)[0]
        output_meta = self.metadata.get_output_metadata(self.model_options, model_type)[0]
        input_meta.validate_shape(value.shape)

        buffer = output_meta.create_output_buffer(out_shape, device=self.device)
        self.engine.run(
            self.model_options,
            model_type,
            {input_meta.name: value.to(dtype=input_meta.dtype)},
            {output_meta.name: buffer},
        )
        return buffer.float()

    def encode(self, images: torch.Tensor) -> torch.Tensor:
        b, _, h, w = images.shape
        latents = self._run(ModelType.VAE_ENCODER, images, (b, 4, h // 8, w // 8))
        return latents * self.model_options.scale_factor

    def decode(self, latents: torch.Tensor) -> torch.Tensor:
        logger.debug(f"Decoding latents {list(latents.shape)}")
        b, _, h, w = latents.shape
        latents = latents / self.model_options.scale_factor
        return self._run(ModelType.VAE_DECODER, latents, (b, 3, h * 8, w * 8))
