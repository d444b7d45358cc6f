# lcm_diffusion/utils/config.py
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple, Union
import logging
import math

import torch

from ..core.config import ConfigManager
from ..core.errors import InvalidArgumentError

logger = logging.getLogger(__name__)


class DiffuserType(str, Enum):
    TEXT_TO_IMAGE = "text_to_image"
    IMAGE_TO_IMAGE = "image_to_image"


class BatchOptionType(str, Enum):
    SEED = "seed"
    STEP = "step"
    GUIDANCE = "guidance"
    STRENGTH = "strength"


def _coerce_enum(enum_cls, value, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidArgumentError(
            f"Invalid {field_name} {value!r}; expected one of {[m.value for m in enum_cls]}"
        ) from None


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_finite_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _from_dict(cls, data: Dict[str, Any]):
    """Build a dataclass from a dict, ignoring unknown keys."""
    names = {f.name for f in fields(cls)}
    unknown = set(data) - names
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**{k: v for k, v in data.items() if k in names})


@dataclass
class ModelOptions:
    """
    Identifies the models a generation run talks to.

    The inference engine resolves each model id together with a ModelType.
    """
    name: str = "lcm-dreamshaper-v7"
    unet: str = "unet"
    text_encoder: str = "text_encoder"
    vae_encoder: str = "vae_encoder"
    vae_decoder: str = "vae_decoder"
    scale_factor: float = 0.18215  # VAE latent scale
    sample_size: int = 512

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelOptions":
        return _from_dict(cls, data)


@dataclass
class PromptOptions:
    """Prompt text and the kind of diffusion run to perform."""
    prompt: str = ""
    negative_prompt: str = ""
    diffuser_type: DiffuserType = DiffuserType.TEXT_TO_IMAGE
    input_image: Optional[torch.Tensor] = None  # [1, 3, H, W] in [-1, 1]

    def __post_init__(self):
        self.diffuser_type = _coerce_enum(DiffuserType, self.diffuser_type, "diffuser_type")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PromptOptions":
        return _from_dict(cls, data)


@dataclass
class SchedulerOptions:
    """
    Configuration for the scheduler and the denoising loop.

    Controls the core aspects of a single generation run:
    - Output dimensions
    - Step count, strength and guidance scale
    - Noise schedule and consistency parameters
    """
    scheduler_type: str = "LCM"
    height: int = 512  # Image height (multiple of 8)
    width: int = 512  # Image width (multiple of 8)
    seed: int = 0
    inference_steps: int = 6
    guidance_scale: float = 1.0
    strength: float = 1.0  # Fraction of the origin schedule to use (image-to-image)

    # noise schedule
    train_timesteps: int = 1000
    beta_start: float = 0.00085
    beta_end: float = 0.012
    beta_schedule: str = "scaled_linear"  # "scaled_linear", "linear", "squaredcos_cap_v2"
    trained_betas: Optional[List[float]] = None
    set_alpha_to_one: bool = True

    # consistency parameters
    original_inference_steps: int = 50
    prediction_type: str = "epsilon"  # "epsilon", "sample", "v_prediction"
    timestep_scaling: float = 10.0
    sigma_data: float = 0.5
    clip_sample: bool = False
    clip_sample_range: float = 1.0

    def get_scaled_dimension(self, batch_size: int = 1, channels: int = 4) -> Tuple[int, int, int, int]:
        """Latent shape for these options: [batch, channels, height / 8, width / 8]."""
        return (batch_size, channels, self.height // 8, self.width // 8)

    def validate(self) -> List[str]:
        """Validate options and return a list of issues (empty when valid)."""
        issues = [
            f"{name} must be an integer, got {getattr(self, name)!r}"
            for name in ("height", "width", "seed", "inference_steps", "train_timesteps", "original_inference_steps")
            if not _is_int(getattr(self, name))
        ]
        issues += [
            f"{name} must be a finite number, got {getattr(self, name)!r}"
            for name in ("guidance_scale", "strength", "beta_start", "beta_end", "timestep_scaling", "sigma_data")
            if not _is_finite_number(getattr(self, name))
        ]
        if issues:
            # range checks below assume well-typed values
            return issues

        if self.height <= 0 or self.width <= 0:
            issues.append("height and width must be positive")
        elif self.height % 8 != 0 or self.width % 8 != 0:
            issues.append("height and width must be multiples of 8")

        if self.inference_steps < 1:
            issues.append("inference_steps must be at least 1")

        if not 0.0 < self.strength <= 1.0:
            issues.append("strength must be in (0, 1]")

        if self.train_timesteps < 1:
            issues.append("train_timesteps must be at least 1")

        if not 0 < self.original_inference_steps <= self.train_timesteps:
            issues.append("original_inference_steps must be in [1, train_timesteps]")
        elif self.inference_steps > int(self.original_inference_steps * self.strength):
            issues.append(
                f"inference_steps ({self.inference_steps}) cannot exceed "
                f"original_inference_steps * strength "
                f"({int(self.original_inference_steps * self.strength)})"
            )

        if self.prediction_type not in ("epsilon", "sample", "v_prediction"):
            issues.append(f"Unsupported prediction_type: {self.prediction_type}")

        if self.trained_betas is None and self.beta_schedule not in ("scaled_linear", "linear", "squaredcos_cap_v2"):
            issues.append(f"Unsupported beta_schedule: {self.beta_schedule}")

        if self.trained_betas is not None and len(self.trained_betas) != self.train_timesteps:
            issues.append("trained_betas must have train_timesteps entries")

        return issues

    def check(self):
        """Raise InvalidArgumentError listing every validation issue."""
        issues = self.validate()
        if issues:
            raise InvalidArgumentError("Invalid scheduler options: " + "; ".join(issues))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchedulerOptions":
        return _from_dict(cls, data)


@dataclass
class BatchOptions:
    """
    Describes how one request expands into several scheduler variants.

    SEED draws ``count`` random seeds; the other types sweep a value
    from ``value_from`` to ``value_to`` (inclusive) by ``increment``.
    """
    batch_type: BatchOptionType = BatchOptionType.SEED
    count: int = 1
    value_from: float = 0.0
    value_to: float = 0.0
    increment: float = 1.0

    def __post_init__(self):
        self.batch_type = _coerce_enum(BatchOptionType, self.batch_type, "batch_type")

    def validate(self) -> List[str]:
        if self.batch_type == BatchOptionType.SEED:
            if not _is_int(self.count):
                return [f"count must be an integer, got {self.count!r}"]
        else:
            issues = [
                f"{name} must be a finite number, got {getattr(self, name)!r}"
                for name in ("value_from", "value_to", "increment")
                if not _is_finite_number(getattr(self, name))
            ]
            if issues:
                return issues

        issues = []
        if self.batch_type == BatchOptionType.SEED:
            if self.count < 1:
                issues.append("count must be at least 1")
        else:
            if self.increment <= 0:
                issues.append("increment must be positive")
            if self.value_to < self.value_from:
                issues.append("value_to must not be smaller than value_from")
        return issues

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchOptions":
        return _from_dict(cls, data)


def load_generation_options(
    path: Union[str, Path],
    overrides: Optional[Dict[str, Any]] = None,
) -> Tuple[ModelOptions, PromptOptions, SchedulerOptions, Optional[BatchOptions]]:
    """
    Load generation options from a YAML or JSON file.

    The file holds up to four sections, ``model``, ``prompt``, ``scheduler``
    and ``batch``; ``overrides`` is deep-merged on top of it.

    Returns:
        Tuple of (model, prompt, scheduler, batch) options; batch is None
        when the file has no ``batch`` section
    """
    config = ConfigManager.merge_configs(ConfigManager.load_config(path), overrides or {})

    options = (
        ModelOptions.from_dict(ConfigManager.section(config, "model")),
        PromptOptions.from_dict(ConfigManager.section(config, "prompt")),
        SchedulerOptions.from_dict(ConfigManager.section(config, "scheduler")),
        BatchOptions.from_dict(ConfigManager.section(config, "batch")) if "batch" in config else None,
    )
    logger.info(f"Loaded generation options from {path}")
    return options
