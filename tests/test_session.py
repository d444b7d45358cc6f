"""Tests for LatentConsistencySession, the generation entry point."""
import pytest
import torch
from PIL import Image

from lcm_diffusion.core.cancellation import CancellationToken
from lcm_diffusion.core.errors import InvalidArgumentError, OperationCancelledError
from lcm_diffusion.pipelines import LatentConsistencySession
from lcm_diffusion.utils.config import BatchOptions, DiffuserType, PromptOptions


@pytest.fixture
def session(engine, text_encoder, vae):
    return LatentConsistencySession(engine, engine, text_encoder, vae, {"device": "cpu"})


def test_diffuse_produces_image(session, unet, model_options, prompt_options, scheduler_options):
    progress = []
    image = session.diffuse(model_options, prompt_options, scheduler_options,
                            progress_callback=lambda step, total: progress.append(step))

    assert image.shape == (1, 3, 32, 32)
    assert image.abs().max() <= 1.0
    assert len(unet.calls) == 4
    assert progress == [1, 2, 3, 4]


def test_negative_prompt_is_cleared(session, text_encoder, model_options, scheduler_options):
    prompt_options = PromptOptions(prompt="a cat", negative_prompt="blurry")

    session.diffuse(model_options, prompt_options, scheduler_options)

    assert prompt_options.negative_prompt == ""
    assert text_encoder.calls == [("a cat", None)]


def test_guidance_is_never_performed(session, scheduler_options):
    assert session.supports_guidance is False
    assert session.should_perform_guidance(scheduler_options) is False
    scheduler_options.guidance_scale = 12.0
    assert session.should_perform_guidance(scheduler_options) is False


def test_empty_prompt(session, model_options, scheduler_options):
    with pytest.raises(InvalidArgumentError):
        session.diffuse(model_options, PromptOptions(prompt=""), scheduler_options)


def test_cancellation_propagates(session, unet, model_options, prompt_options, scheduler_options):
    token = CancellationToken()
    token.cancel()
    with pytest.raises(OperationCancelledError):
        session.diffuse(model_options, prompt_options, scheduler_options, cancellation_token=token)
    assert unet.calls == []


def test_image_to_image(session, unet, model_options, scheduler_options):
    scheduler_options.strength = 0.5
    prompt_options = PromptOptions(
        prompt="a cat, watercolor",
        diffuser_type=DiffuserType.IMAGE_TO_IMAGE,
        input_image=torch.rand(1, 3, 32, 32) * 2 - 1,
    )

    image = session.diffuse(model_options, prompt_options, scheduler_options)

    assert image.shape == (1, 3, 32, 32)
    assert [call["timestep"].item() for call in unet.calls] == [499, 379, 259, 139]


def test_image_to_image_requires_image(session, model_options, scheduler_options):
    prompt_options = PromptOptions(prompt="a cat", diffuser_type="image_to_image")
    with pytest.raises(InvalidArgumentError):
        session.diffuse(model_options, prompt_options, scheduler_options)


def test_image_to_image_checks_image_size(session, model_options, scheduler_options):
    prompt_options = PromptOptions(
        prompt="a cat", diffuser_type="image_to_image", input_image=torch.zeros(1, 3, 64, 64)
    )
    with pytest.raises(InvalidArgumentError):
        session.diffuse(model_options, prompt_options, scheduler_options)


class TestBatch:
    def test_step_sweep(self, session, text_encoder, model_options, prompt_options, scheduler_options):
        batch = BatchOptions(batch_type="step", value_from=2, value_to=4, increment=1)
        progress = []

        results = list(session.diffuse_batch(
            model_options, prompt_options, scheduler_options, batch,
            progress_callback=lambda *args: progress.append(args),
        ))

        assert [r.scheduler_options.inference_steps for r in results] == [2, 3, 4]
        assert all(r.result.shape == (1, 3, 32, 32) for r in results)
        # prompt is encoded once for the whole batch
        assert len(text_encoder.calls) == 1
        assert progress[0] == (1, 3, 1, 2)
        assert progress[-1] == (3, 3, 4, 4)
        assert len(progress) == 2 + 3 + 4

    def test_seed_batch_keeps_first_seed(self, session, model_options, prompt_options, scheduler_options):
        batch = BatchOptions(batch_type="seed", count=3)

        results = list(session.diffuse_batch(model_options, prompt_options, scheduler_options, batch))

        seeds = [r.scheduler_options.seed for r in results]
        assert seeds[0] == scheduler_options.seed
        assert len(set(seeds)) == 3
        assert not torch.equal(results[0].result, results[1].result)

    def test_negative_prompt_cleared_before_iteration(self, session, model_options, scheduler_options):
        prompt_options = PromptOptions(prompt="a cat", negative_prompt="blurry")
        session.diffuse_batch(model_options, prompt_options, scheduler_options, BatchOptions(count=2))
        assert prompt_options.negative_prompt == ""

    def test_invalid_variant_rejected_eagerly(self, session, unet, model_options, prompt_options, scheduler_options):
        batch = BatchOptions(batch_type="step", value_from=4, value_to=60, increment=8)
        with pytest.raises(InvalidArgumentError):
            session.diffuse_batch(model_options, prompt_options, scheduler_options, batch)
        assert unet.calls == []


def test_save_output(session, model_options, prompt_options, scheduler_options, tmp_path):
    image = session.diffuse(model_options, prompt_options, scheduler_options)

    written = session.save_output(image, tmp_path / "out" / "cat.png")

    assert written == [str(tmp_path / "out" / "cat.png")]
    with Image.open(written[0]) as saved:
        assert saved.size == (32, 32)
        assert saved.mode == "RGB"


def test_save_output_batch_suffix(session, tmp_path):
    written = session.save_output(torch.zeros(2, 3, 8, 8), tmp_path / "grid.png")
    assert written == [str(tmp_path / "grid_0.png"), str(tmp_path / "grid_1.png")]
