"""Tests for the latent consistency denoising loop."""
import pytest
import torch

from lcm_diffusion.core.cancellation import CancellationToken
from lcm_diffusion.core.errors import InferenceError, InvalidArgumentError, OperationCancelledError
from lcm_diffusion.models import GuidanceEmbedder, ModelType, TensorMetadata, TorchInferenceEngine
from lcm_diffusion.pipelines import DenoisingLoop
from lcm_diffusion.schedulers import LCMScheduler

from conftest import RecordingUNet, UNET_INPUTS, UNET_OUTPUTS


class TrackingScheduler(LCMScheduler):
    """LCMScheduler that counts releases and remembers the denoised estimates."""

    def __init__(self, options):
        super().__init__(options)
        self.release_count = 0
        self.history = []

    def step(self, model_output, timestep, sample):
        result = super().step(model_output, timestep, sample)
        self.history.append(result)
        return result

    def release(self):
        self.release_count += 1
        super().release()


class TrackingLoop(DenoisingLoop):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.schedulers = []

    def create_scheduler(self, scheduler_options):
        scheduler = TrackingScheduler(scheduler_options)
        self.schedulers.append(scheduler)
        return scheduler


@pytest.fixture
def loop(engine):
    return TrackingLoop(engine, engine)


def test_end_to_end_four_steps(loop, unet, model_options, prompt_embedding, prompt_options, scheduler_options):
    progress = []

    result = loop.run(model_options, prompt_embedding, prompt_options, scheduler_options,
                      progress_callback=lambda step, total: progress.append((step, total)))

    assert len(unet.calls) == 4
    assert progress == [(1, 4), (2, 4), (3, 4), (4, 4)]
    assert tuple(result.shape) == scheduler_options.get_scaled_dimension() == (1, 4, 4, 4)
    assert torch.isfinite(result).all()


def test_model_inputs_follow_schedule(loop, unet, model_options, prompt_embedding, prompt_options, scheduler_options):
    loop.run(model_options, prompt_embedding, prompt_options, scheduler_options)

    scheduler = loop.schedulers[0]
    timesteps = [call["timestep"] for call in unet.calls]
    assert [t.item() for t in timesteps] == [999, 759, 519, 279]
    assert all(t.dtype == torch.int64 and t.shape == (1,) for t in timesteps)

    expected_guidance = GuidanceEmbedder().embed(7.5)
    for call in unet.calls:
        assert call["sample"].shape == (1, 4, 4, 4)
        assert torch.equal(call["timestep_cond"], expected_guidance)
        assert torch.equal(call["encoder_hidden_states"], prompt_embedding)

    # each step feeds the previous step's latent back in
    for previous, call in zip(scheduler.history, unet.calls[1:]):
        assert torch.equal(call["sample"], previous.prev_sample)


def test_returns_final_denoised_estimate(loop, model_options, prompt_embedding, prompt_options, scheduler_options):
    result = loop.run(model_options, prompt_embedding, prompt_options, scheduler_options)

    scheduler = loop.schedulers[0]
    assert result is scheduler.history[-1].denoised
    assert scheduler.release_count == 1
    assert scheduler.is_released


def test_same_options_reproduce_result(engine, model_options, prompt_embedding, prompt_options, scheduler_options):
    first = DenoisingLoop(engine, engine).run(model_options, prompt_embedding, prompt_options, scheduler_options)
    second = DenoisingLoop(engine, engine).run(model_options, prompt_embedding, prompt_options, scheduler_options)
    assert torch.equal(first, second)


def test_cancellation_mid_loop(loop, unet, model_options, prompt_embedding, prompt_options, scheduler_options):
    scheduler_options.inference_steps = 10
    token = CancellationToken()

    def on_progress(step, total):
        if step == 2:
            token.cancel()

    with pytest.raises(OperationCancelledError) as exc_info:
        loop.run(model_options, prompt_embedding, prompt_options, scheduler_options,
                 progress_callback=on_progress, cancellation_token=token)

    assert len(unet.calls) == 2
    assert exc_info.value.step_index == 3
    assert loop.schedulers[0].release_count == 1


def test_cancelled_before_start(loop, unet, model_options, prompt_embedding, prompt_options, scheduler_options):
    token = CancellationToken()
    token.cancel()
    with pytest.raises(OperationCancelledError):
        loop.run(model_options, prompt_embedding, prompt_options, scheduler_options, cancellation_token=token)
    assert unet.calls == []
    assert loop.schedulers[0].release_count == 1


def test_inference_failure_reports_step(model_options, prompt_embedding, prompt_options, scheduler_options):
    failing = RecordingUNet(fail_at_call=2)
    engine = TorchInferenceEngine({"device": "cpu"})
    engine.register_model(model_options.unet, ModelType.UNET, failing, UNET_INPUTS, UNET_OUTPUTS)
    loop = TrackingLoop(engine, engine)

    with pytest.raises(InferenceError) as exc_info:
        loop.run(model_options, prompt_embedding, prompt_options, scheduler_options)

    assert exc_info.value.step_index == 2
    assert exc_info.value.timestep == 759
    assert isinstance(exc_info.value.__cause__, InferenceError)
    assert len(failing.calls) == 2
    assert loop.schedulers[0].release_count == 1


def test_failing_progress_callback_does_not_abort(loop, unet, model_options, prompt_embedding, prompt_options, scheduler_options):
    def on_progress(step, total):
        raise ValueError("listener went away")

    result = loop.run(model_options, prompt_embedding, prompt_options, scheduler_options,
                      progress_callback=on_progress)

    assert len(unet.calls) == 4
    assert result.shape == (1, 4, 4, 4)


def test_guidance_is_rejected(loop, unet, model_options, prompt_embedding, prompt_options, scheduler_options):
    with pytest.raises(InvalidArgumentError):
        loop.run(model_options, prompt_embedding, prompt_options, scheduler_options, perform_guidance=True)
    assert unet.calls == []


def test_float_timestep_input(model_options, prompt_embedding, prompt_options, scheduler_options):
    unet = RecordingUNet()
    inputs = list(UNET_INPUTS)
    inputs[1] = TensorMetadata("timestep", (), torch.float32)
    engine = TorchInferenceEngine({"device": "cpu"})
    engine.register_model(model_options.unet, ModelType.UNET, unet, inputs, UNET_OUTPUTS)

    DenoisingLoop(engine, engine).run(model_options, prompt_embedding, prompt_options, scheduler_options)

    assert unet.calls[0]["timestep"].dtype == torch.float32
    assert unet.calls[0]["timestep"].shape == ()
    assert unet.calls[0]["timestep"].item() == 999.0


def test_half_precision_unet_output(model_options, prompt_embedding, prompt_options, scheduler_options):
    unet = RecordingUNet()
    inputs = [TensorMetadata(m.name, m.shape, m.dtype if m.name == "timestep" else torch.float16) for m in UNET_INPUTS]
    outputs = [TensorMetadata("out_sample", (-1, 4, -1, -1), torch.float16)]
    engine = TorchInferenceEngine({"device": "cpu"})
    engine.register_model(model_options.unet, ModelType.UNET, unet, inputs, outputs)

    result = DenoisingLoop(engine, engine).run(model_options, prompt_embedding, prompt_options, scheduler_options)

    assert unet.calls[0]["sample"].dtype == torch.float16
    assert result.dtype == torch.float32


def test_unet_with_wrong_signature(model_options, prompt_embedding, prompt_options, scheduler_options):
    engine = TorchInferenceEngine({"device": "cpu"})
    engine.register_model(model_options.unet, ModelType.UNET, RecordingUNet(), UNET_INPUTS[:3], UNET_OUTPUTS)
    with pytest.raises(InvalidArgumentError):
        DenoisingLoop(engine, engine).run(model_options, prompt_embedding, prompt_options, scheduler_options)


def test_prompt_embedding_shape_is_validated(loop, unet, model_options, prompt_options, scheduler_options):
    with pytest.raises(InvalidArgumentError):
        loop.run(model_options, torch.zeros(1, 10, 768), prompt_options, scheduler_options)
    assert unet.calls == []
    assert loop.schedulers[0].release_count == 1


def test_invalid_options(loop, model_options, prompt_embedding, prompt_options, scheduler_options):
    scheduler_options.height = 30
    with pytest.raises(InvalidArgumentError):
        loop.run(model_options, prompt_embedding, prompt_options, scheduler_options)
    assert loop.schedulers == []


@pytest.mark.parametrize("field, value", [
    ("inference_steps", 4.0),
    ("guidance_scale", float("nan")),
    ("guidance_scale", float("inf")),
    ("strength", float("nan")),
])
def test_mistyped_options_fail_before_inference(loop, unet, model_options, prompt_embedding, prompt_options,
                                                scheduler_options, field, value):
    setattr(scheduler_options, field, value)
    with pytest.raises(InvalidArgumentError):
        loop.run(model_options, prompt_embedding, prompt_options, scheduler_options)
    assert loop.schedulers == []
    assert unet.calls == []
