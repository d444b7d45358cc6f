"""Shared fixtures: a tiny in-process UNet/VAE wired into a TorchInferenceEngine."""
import pytest
import torch
import torch.nn.functional as F

from lcm_diffusion.models import ModelType, TensorMetadata, TextEncoder, TorchInferenceEngine, EngineVAE
from lcm_diffusion.utils.config import ModelOptions, PromptOptions, SchedulerOptions

PROMPT_SHAPE = (1, 77, 768)

UNET_INPUTS = [
    TensorMetadata("sample", (-1, 4, -1, -1)),
    TensorMetadata("timestep", (1,), torch.int64),
    TensorMetadata("encoder_hidden_states", (-1, 77, 768)),
    TensorMetadata("timestep_cond", (-1, 256)),
]
UNET_OUTPUTS = [TensorMetadata("out_sample", (-1, 4, -1, -1))]


class RecordingUNet:
    """Predicts zero noise and records every call."""

    def __init__(self, fail_at_call=None):
        self.calls = []
        self.fail_at_call = fail_at_call

    def __call__(self, sample, timestep, encoder_hidden_states, timestep_cond):
        self.calls.append({
            "sample": sample.clone(),
            "timestep": timestep.clone(),
            "encoder_hidden_states": encoder_hidden_states,
            "timestep_cond": timestep_cond.clone(),
        })
        if self.fail_at_call is not None and len(self.calls) == self.fail_at_call:
            raise RuntimeError("device lost")
        return torch.zeros_like(sample)


def vae_encoder(images):
    pooled = F.avg_pool2d(images, 8)
    return torch.cat([pooled, pooled.mean(dim=1, keepdim=True)], dim=1)


def vae_decoder(latents):
    return torch.tanh(latents[:, :3]).repeat_interleave(8, dim=-2).repeat_interleave(8, dim=-1)


class StaticTextEncoder(TextEncoder):
    """Returns a fixed embedding and records the prompts it was given."""

    def __init__(self):
        super().__init__({"device": "cpu"})
        self.calls = []

    def encode(self, prompt, negative_prompt=None):
        self.calls.append((prompt, negative_prompt))
        embeds = {"prompt_embeds": torch.full(PROMPT_SHAPE, 0.5)}
        if negative_prompt is not None:
            embeds["negative_prompt_embeds"] = torch.zeros(PROMPT_SHAPE)
        return embeds


@pytest.fixture
def model_options():
    return ModelOptions(name="test-lcm")


@pytest.fixture
def unet():
    return RecordingUNet()


@pytest.fixture
def engine(model_options, unet):
    engine = TorchInferenceEngine({"device": "cpu"})
    engine.register_model(model_options.unet, ModelType.UNET, unet, UNET_INPUTS, UNET_OUTPUTS)
    engine.register_model(
        model_options.vae_encoder, ModelType.VAE_ENCODER, vae_encoder,
        [TensorMetadata("sample", (-1, 3, -1, -1))],
        [TensorMetadata("latent_sample", (-1, 4, -1, -1))],
    )
    engine.register_model(
        model_options.vae_decoder, ModelType.VAE_DECODER, vae_decoder,
        [TensorMetadata("latent_sample", (-1, 4, -1, -1))],
        [TensorMetadata("sample", (-1, 3, -1, -1))],
    )
    return engine


@pytest.fixture
def vae(engine, model_options):
    return EngineVAE(engine, engine, model_options, {"device": "cpu"})


@pytest.fixture
def text_encoder():
    return StaticTextEncoder()


@pytest.fixture
def prompt_embedding():
    return torch.full(PROMPT_SHAPE, 0.5)


@pytest.fixture
def prompt_options():
    return PromptOptions(prompt="a photo of a cat")


@pytest.fixture
def scheduler_options():
    # 32x32 pixels -> 4x4 latent
    return SchedulerOptions(height=32, width=32, inference_steps=4, guidance_scale=7.5, seed=42)
