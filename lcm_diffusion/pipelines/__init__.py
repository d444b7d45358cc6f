from .base import Pipeline, BatchResult, expand_batch_options
from .latents import LatentPreparer, TextToImageLatents, ImageToImageLatents
from .latent_consistency import DenoisingLoop, LatentConsistencySession

__all__ = [
    'Pipeline',
    'BatchResult',
    'expand_batch_options',
    'LatentPreparer',
    'TextToImageLatents',
    'ImageToImageLatents',
    'DenoisingLoop',
    'LatentConsistencySession',
]
