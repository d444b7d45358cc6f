# lcm_diffusion/models/text_encoder.py
from abc import ABC, abstractmethod
from typing import Dict, Optional
import torch
from ..core.component import Component

class TextEncoder(Component, ABC):
    """
    Base interface for prompt encoders.

    Tokenization and the text model live behind this interface; the
    pipeline only sees the resulting embeddings.
    """

    @abstractmethod
    def encode(
        self,
        prompt: str,
        negative_prompt: Optional[str] = None
    ) -> Dict[str, torch.Tensor]:
        """
        Encode a prompt into embeddings.

        Args:
            prompt: Text prompt to encode
            negative_prompt: Optional negative prompt; only encoded when the
                pipeline performs classifier-free guidance

        Returns:
            Dictionary with ``prompt_embeds`` and, when a negative prompt was
            given, ``negative_prompt_embeds``
        """
        pass
