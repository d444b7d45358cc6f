# lcm_diffusion/models/engine.py
"""
Inference engine boundary.

The pipeline never calls a network directly: it asks an ``InferenceEngine``
to run a model identified by ``(ModelOptions, ModelType)`` with a map of
named input tensors, writing into caller-supplied output buffers. The
``ModelMetadataProvider`` side of the contract exposes the ordered input and
output names plus per-tensor shape and dtype, which the loop uses to size
buffers and pick the timestep representation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
import logging

import torch

from ..core.component import Component
from ..core.errors import InferenceError, InvalidArgumentError
from ..utils.config import ModelOptions

logger = logging.getLogger(__name__)


class ModelType(str, Enum):
    UNET = "unet"
    TEXT_ENCODER = "text_encoder"
    VAE_ENCODER = "vae_encoder"
    VAE_DECODER = "vae_decoder"


def model_id_for(model_options: ModelOptions, model_type: ModelType) -> str:
    """Model id configured for ``model_type``."""
    return getattr(model_options, ModelType(model_type).value)


@dataclass(frozen=True)
class TensorMetadata:
    """
    Name, shape and dtype of one model input or output.

    Dimensions given as -1 are dynamic and match any size.
    """
    name: str
    shape: Tuple[int, ...]
    dtype: torch.dtype = torch.float32

    def create_output_buffer(self, dimensions: Sequence[int],
                             device: Union[str, torch.device] = "cpu") -> torch.Tensor:
        """Allocate an output buffer of ``dimensions`` in this tensor's dtype."""
        self.validate_shape(dimensions)
        return torch.zeros(tuple(dimensions), dtype=self.dtype, device=device)

    def validate_shape(self, shape: Sequence[int]):
        shape = tuple(shape)
        if len(shape) != len(self.shape) or any(
            expected != -1 and expected != actual for expected, actual in zip(self.shape, shape)
        ):
            raise InvalidArgumentError(
                f"Tensor '{self.name}' has shape {list(shape)}, expected {list(self.shape)}"
            )

    @property
    def is_integer(self) -> bool:
        return not (self.dtype.is_floating_point or self.dtype.is_complex)


class ModelMetadataProvider(ABC):
    """Ordered input/output names and tensor metadata for a model."""

    @abstractmethod
    def get_input_metadata(self, model_options: ModelOptions,
                           model_type: ModelType) -> List[TensorMetadata]:
        pass

    @abstractmethod
    def get_output_metadata(self, model_options: ModelOptions,
                            model_type: ModelType) -> List[TensorMetadata]:
        pass

    def get_input_names(self, model_options: ModelOptions, model_type: ModelType) -> List[str]:
        return [m.name for m in self.get_input_metadata(model_options, model_type)]

    def get_output_names(self, model_options: ModelOptions, model_type: ModelType) -> List[str]:
        return [m.name for m in self.get_output_metadata(model_options, model_type)]


class InferenceEngine(ABC):
    """Runs a model: named tensors in, named output buffers filled."""

    @abstractmethod
    def run(
        self,
        model_options: ModelOptions,
        model_type: ModelType,
        inputs: Dict[str, torch.Tensor],
        outputs: Dict[str, torch.Tensor],
    ) -> List[torch.Tensor]:
        """
        Run inference.

        Args:
            model_options: Which models the run uses
            model_type: Which of those models to invoke
            inputs: Input tensors keyed by the model's input names
            outputs: Pre-allocated output buffers keyed by output name; the
                engine writes results into them

        Returns:
            Output tensors in the model's output order

        Raises:
            InferenceError: if the model fails
        """
        pass


@dataclass
class _RegisteredModel:
    module: Callable[..., Any]
    inputs: List[TensorMetadata]
    outputs: List[TensorMetadata]


class TorchInferenceEngine(Component, InferenceEngine, ModelMetadataProvider):
    """
    In-process engine backed by PyTorch callables.

    Models (``nn.Module`` or any callable taking the inputs positionally in
    metadata order) are registered per ``(model id, ModelType)``.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self._models: Dict[Tuple[str, ModelType], _RegisteredModel] = {}

    def register_model(
        self,
        model_id: str,
        model_type: ModelType,
        module: Callable[..., Any],
        inputs: Sequence[TensorMetadata],
        outputs: Sequence[TensorMetadata],
    ):
        """
        Register a model.

        Args:
            model_id: Model id as referenced by ModelOptions
            model_type: Role of the model
            module: Callable invoked as ``module(*inputs)``
            inputs: Input metadata in positional order
            outputs: Output metadata in return order
        """
        if isinstance(module, torch.nn.Module):
            module = module.to(device=self.device, dtype=self.dtype).eval()
        self._models[(model_id, ModelType(model_type))] = _RegisteredModel(
            module=module, inputs=list(inputs), outputs=list(outputs)
        )
        logger.info(f"{self.name}: registered {ModelType(model_type).value} model '{model_id}' "
                    f"on {self.device}")

    def to(self, device=None, dtype=None) -> "TorchInferenceEngine":
        """Move the engine and every registered ``nn.Module``."""
        super().to(device, dtype)
        for model in self._models.values():
            if isinstance(model.module, torch.nn.Module):
                model.module.to(device=self.device, dtype=self.dtype)
        return self

    def _get_model(self, model_options: ModelOptions, model_type: ModelType) -> _RegisteredModel:
        model_id = model_id_for(model_options, model_type)
        try:
            return self._models[(model_id, ModelType(model_type))]
        except KeyError:
            raise InvalidArgumentError(
                f"No {ModelType(model_type).value} model registered as '{model_id}'"
            ) from None

    def get_input_metadata(self, model_options: ModelOptions,
                           model_type: ModelType) -> List[TensorMetadata]:
        return list(self._get_model(model_options, model_type).inputs)

    def get_output_metadata(self, model_options: ModelOptions,
                            model_type: ModelType) -> List[TensorMetadata]:
        return list(self._get_model(model_options, model_type).outputs)

    def run(
        self,
        model_options: ModelOptions,
        model_type: ModelType,
        inputs: Dict[str, torch.Tensor],
        outputs: Dict[str, torch.Tensor],
    ) -> List[torch.Tensor]:
        model = self._get_model(model_options, model_type)
        model_id = model_id_for(model_options, model_type)

        missing = [m.name for m in model.inputs if m.name not in inputs]
        if missing:
            raise InvalidArgumentError(f"Missing inputs for '{model_id}': {missing}")
        args = [inputs[m.name].to(device=self.device) for m in model.inputs]

        try:
            with torch.no_grad():
                result = model.module(*args)
        except Exception as e:
            raise InferenceError(f"{ModelType(model_type).value} model '{model_id}' failed: {e}") from e

        results = list(result) if isinstance(result, (tuple, list)) else [result]
        if len(results) != len(model.outputs):
            raise InferenceError(
                f"Model '{model_id}' returned {len(results)} outputs, expected {len(model.outputs)}"
            )

        returned = []
        for meta, value in zip(model.outputs, results):
            buffer = outputs.get(meta.name)
            if buffer is None:
                returned.append(value)
                continue
            if tuple(buffer.shape) != tuple(value.shape):
                raise InferenceError(
                    f"Output '{meta.name}' of '{model_id}' has shape {list(value.shape)}, "
                    f"buffer expects {list(buffer.shape)}"
                )
            buffer.copy_(value.to(dtype=buffer.dtype))
            returned.append(buffer)
        return returned
