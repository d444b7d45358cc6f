import math
from typing import Optional, Union

import torch

from ..core.errors import InvalidArgumentError


class GuidanceEmbedder:
    """
    Sinusoidal embedding of the guidance scale.

    LCMs are distilled with the guidance scale baked in as an extra model
    input (``w`` embedding) instead of running classifier-free guidance.
    The embedding follows the usual timestep embedding recipe applied to
    ``guidance_scale - 1``.
    """

    def __init__(self, embedding_dim: int = 256, dtype: torch.dtype = torch.float32,
                 device: Optional[Union[str, torch.device]] = None):
        self.embedding_dim = embedding_dim
        self.dtype = dtype
        self.device = device

    def embed(self, guidance_scale: float, embedding_dim: Optional[int] = None) -> torch.Tensor:
        """
        Embed a guidance scale.

        Args:
            guidance_scale: Guidance scale the model was asked to emulate
            embedding_dim: Even embedding size (defaults to the embedder's)

        Returns:
            Tensor of shape [1, embedding_dim]: sines of the scaled
            frequencies followed by their cosines
        """
        dim = self.embedding_dim if embedding_dim is None else embedding_dim
        if dim < 2 or dim % 2 != 0:
            raise InvalidArgumentError(f"embedding_dim must be even and >= 2, got {dim}")

        # float64 keeps sin/cos stable for large guidance scales
        scale = float(guidance_scale) - 1.0
        half_dim = dim // 2
        log_step = math.log(10000.0) / max(half_dim - 1, 1)
        freqs = torch.exp(torch.arange(half_dim, dtype=torch.float64) * -log_step)
        args = scale * freqs

        emb = torch.cat([torch.sin(args), torch.cos(args)]).unsqueeze(0)
        return emb.to(device=self.device, dtype=self.dtype)
