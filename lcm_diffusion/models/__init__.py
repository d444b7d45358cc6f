from .guidance import GuidanceEmbedder
from .engine import (
    ModelType,
    TensorMetadata,
    ModelMetadataProvider,
    InferenceEngine,
    TorchInferenceEngine,
    model_id_for,
)
from .text_encoder import TextEncoder
from .vae import VAE, EngineVAE

__all__ = [
    'GuidanceEmbedder',
    'ModelType',
    'TensorMetadata',
    'ModelMetadataProvider',
    'InferenceEngine',
    'TorchInferenceEngine',
    'model_id_for',
    'TextEncoder',
    'VAE',
    'EngineVAE',
]
