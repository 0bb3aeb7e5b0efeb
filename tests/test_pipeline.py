"""End-to-end tests for the burst pipeline."""

import pytest
import torch
import torch.nn.functional as F

import hdrplus_pipeline
from conftest import noisy_burst, sine_scene, smooth_texture, to_rgba
from hdrplus_config import BurstConfig, ToneMapConfig, WarpConfig
from hdrplus_errors import InvalidBurstError, PipelineFailedError
from hdrplus_pipeline import BurstPipeline, PipelineStage, process_burst
from hdrplus_types import CACoefficients, CaptureMetadata, Frame


def _merge_only_with_spatial():
    return BurstConfig(warp=WarpConfig(correct_chromatic_aberration=False),
                       tonemap=ToneMapConfig(enabled=False))


class TestSingleFrame:

    def test_single_frame_is_returned_unchanged(self, plain_config):
        img = to_rgba(smooth_texture(64, 80))
        result = process_burst([img], config=plain_config)
        assert result.image.shape == (64, 80, 4)
        assert torch.allclose(result.image, img, atol=1e-5)
        assert result.frames_merged == 1
        assert result.reference_index == 0
        assert result.image_u8 is None

    def test_white_balance_applied_after_merge(self, plain_config):
        img = to_rgba(torch.full((48, 48), 0.3))
        result = process_burst([img], CaptureMetadata(white_balance=(2.0, 0.5)), plain_config)
        assert torch.allclose(result.image[..., 0], torch.full((48, 48), 0.6), atol=1e-5)
        assert torch.allclose(result.image[..., 1], torch.full((48, 48), 0.3), atol=1e-5)
        assert torch.allclose(result.image[..., 2], torch.full((48, 48), 0.15), atol=1e-5)

    def test_black_level_subtracted(self, plain_config):
        img = to_rgba(torch.full((48, 48), 0.55))
        result = process_burst([img], CaptureMetadata(black_level=0.1), plain_config)
        assert torch.allclose(result.image[..., :3], torch.full((48, 48, 3), 0.5), atol=1e-5)
        assert torch.allclose(result.image[..., 3], torch.ones(48, 48))


class TestBurst:

    def test_noise_reduction(self):
        """Eight noisy frames of a static scene merge to well under the single-frame noise."""
        sigma = 0.05
        clean = sine_scene(128, 128)
        result = process_burst(noisy_burst(clean, 8, sigma, seed=11), config=_merge_only_with_spatial())
        residual = result.image[..., :3] - clean[..., None]
        assert residual.std().item() < 0.025
        assert abs(residual.mean().item()) < 0.005
        assert result.frames_merged == 8

    def test_more_frames_less_noise(self, plain_config):
        sigma = 0.05
        clean = sine_scene(96, 96)
        burst = noisy_burst(clean, 8, sigma, seed=5)
        residuals = []
        for n in (2, 4, 8):
            result = process_burst(burst[:n], config=plain_config)
            residuals.append((result.image[..., :3] - clean[..., None]).std().item())
        assert residuals[0] > residuals[1] > residuals[2]
        assert residuals[0] < sigma

    def test_shifted_frames_are_aligned(self, plain_config):
        """Translated alternates are aligned before merging, so the scene is not smeared."""
        big = smooth_texture(160, 160, seed=2, cells=10)
        shifts = [(0, 0), (3, -2), (-2, 4), (1, 1)]
        frames = [to_rgba(big[16 + dy:144 + dy, 16 + dx:144 + dx]) for dy, dx in shifts]
        result = process_burst(frames, config=plain_config)
        r = result.reference_index
        inner = (slice(16, -16), slice(16, -16))
        err = (result.image[inner] - frames[r][inner]).abs().max().item()
        assert err < 0.01
        assert len(result.diagnostics) == 3
        for diag in result.diagnostics:
            dy = shifts[diag.index][0] - shifts[r][0]
            dx = shifts[diag.index][1] - shifts[r][1]
            disp = diag.displacement.disp
            assert torch.all(disp[0, 1:-1, 1:-1] == dy)
            assert torch.all(disp[1, 1:-1, 1:-1] == dx)

    def test_sharpest_frame_is_reference(self, plain_config):
        sharp = smooth_texture(64, 64, seed=4, cells=32)
        blurred = F.avg_pool2d(F.pad(sharp[None, None], (1, 1, 1, 1), mode='replicate'), 3, 1)[0, 0]
        frames = [to_rgba(blurred), to_rgba(blurred), to_rgba(sharp), to_rgba(blurred)]
        result = process_burst(frames, config=plain_config)
        assert result.reference_index == 2

    def test_deterministic(self):
        burst = noisy_burst(sine_scene(64, 64), 4, 0.03, seed=9)
        a = process_burst(burst)
        b = process_burst(burst)
        assert torch.equal(a.image, b.image)
        assert torch.equal(a.image_u8, b.image_u8)

    def test_default_output(self):
        burst = noisy_burst(sine_scene(64, 64) * 0.2, 3, 0.01, seed=3)
        result = process_burst(burst, CaptureMetadata(lens_id="wide"))
        assert result.image_u8.dtype == torch.uint8
        assert result.image_u8.shape == (64, 64, 4)
        assert result.image.min() >= 0.0 and result.image.max() <= 1.0
        assert result.noise_model.read > 0.0
        assert result.noise_map is not None
        assert set(result.timings) >= {"reference", "noise", "align", "merge", "total"}
        assert len(result.diagnostics) == 2
        for diag in result.diagnostics:
            assert diag.sharpness > 0.0
            assert diag.noise_variance.shape == (4,)
            assert torch.all(diag.noise_variance[:3] > 0) and diag.noise_variance[3] == 0

    def test_adaptive(self):
        burst = noisy_burst(sine_scene(64, 64) * 0.05, 3, 0.005, seed=1)
        result = process_burst(burst, config=BurstConfig(adaptive=True))
        assert result.image_u8 is not None

    def test_supplied_ca_coefficients(self):
        """Precomputed coefficients are used instead of estimating."""
        burst = noisy_burst(sine_scene(64, 64), 2, 0.01)
        result = process_burst(burst, config=BurstConfig(tonemap=ToneMapConfig(enabled=False)),
                               ca_coefficients=CACoefficients(red=0.002, blue=-0.001))
        assert result.ca == CACoefficients(red=0.002, blue=-0.001)

    def test_frames_as_frame_objects(self, plain_config):
        clean = smooth_texture(64, 64)
        frames = [Frame.from_tensor(f) for f in noisy_burst(clean, 3, 0.01)]
        result = process_burst(frames, config=plain_config)
        assert result.frames_merged == 3


class TestProgress:

    def test_progress_is_monotonic(self):
        events = []
        pipeline = BurstPipeline()
        pipeline.process(noisy_burst(sine_scene(64, 64), 3, 0.02),
                         progress=lambda stage, frac: events.append((stage, frac)))
        fractions = [f for _, f in events]
        assert fractions == sorted(fractions)
        assert events[-1] == (PipelineStage.COMPLETE, 1.0)
        stages = [s for s, _ in events]
        for stage in (PipelineStage.SELECTING_REFERENCE, PipelineStage.ALIGNING,
                      PipelineStage.MERGING, PipelineStage.DENOISING, PipelineStage.TONE_MAPPING):
            assert stage in stages
        assert pipeline.stage is PipelineStage.COMPLETE


class TestFailures:

    def test_empty_burst(self):
        with pytest.raises(InvalidBurstError):
            process_burst([])

    def test_bad_black_level(self):
        with pytest.raises(InvalidBurstError, match="black_level"):
            process_burst([to_rgba(torch.full((64, 64), 0.5))], CaptureMetadata(black_level=1.0))

    def test_bad_frame(self):
        with pytest.raises(InvalidBurstError):
            process_burst([torch.zeros(64, 64, 2)])

    def test_non_finite_frame(self):
        img = to_rgba(torch.full((64, 64), 0.5)).clone()
        img[3, 3, 0] = float("nan")
        with pytest.raises(InvalidBurstError, match="non-finite"):
            process_burst([img])

    def test_too_small(self):
        pipeline = BurstPipeline()
        with pytest.raises(PipelineFailedError):
            pipeline.process([to_rgba(torch.full((20, 20), 0.5))] * 2)
        assert pipeline.stage is PipelineStage.FAILED

    def test_mismatched_frame_is_skipped(self, plain_config):
        clean = smooth_texture(64, 64)
        frames = noisy_burst(clean, 3, 0.01)
        frames.insert(1, to_rgba(smooth_texture(48, 48)))
        result = process_burst(frames, config=plain_config)
        assert result.skipped_frames == [1]
        assert result.frames_merged == 3

    def test_out_of_memory_becomes_pipeline_failure(self, monkeypatch, plain_config):
        def exhausted(*args, **kwargs):
            raise RuntimeError("CUDA out of memory. Tried to allocate 1.00 GiB")

        monkeypatch.setattr(hdrplus_pipeline, "MergeAccumulator", exhausted)
        with pytest.raises(PipelineFailedError, match=r"\[merging\] out of memory"):
            process_burst(noisy_burst(sine_scene(64, 64), 2, 0.01), config=plain_config)

    def test_other_runtime_errors_propagate(self, monkeypatch, plain_config):
        def broken(*args, **kwargs):
            raise RuntimeError("shape mismatch")

        monkeypatch.setattr(hdrplus_pipeline, "MergeAccumulator", broken)
        with pytest.raises(RuntimeError, match="shape mismatch"):
            process_burst(noisy_burst(sine_scene(64, 64), 2, 0.01), config=plain_config)
