"""Tests for the post-merge spatial Wiener denoise."""

import torch

from conftest import sine_scene, to_rgba
from hdrplus_config import SpatialDenoiseConfig
from hdrplus_spatial_denoise import frequency_shape, spatial_denoise


class TestFrequencyShape:

    def test_dc_and_nyquist(self):
        shape = frequency_shape(16, 1.5, None, torch.float64)
        assert shape[0, 0] == 1.0
        assert shape[8, 0] == 1.5
        assert shape[8, 8] == 1.5

    def test_no_boost_is_flat(self):
        assert torch.all(frequency_shape(8, 1.0, None, torch.float32) == 1.0)


class TestSpatialDenoise:

    def test_reduces_noise(self):
        sigma = 0.03
        clean = to_rgba(sine_scene(96, 96)).permute(2, 0, 1)
        g = torch.Generator().manual_seed(0)
        noisy = clean.clone()
        noisy[:3] += sigma * torch.randn(noisy[:3].shape, generator=g)
        out = spatial_denoise(noisy, sigma * sigma, 1)
        assert (out[:3] - clean[:3]).std() < 0.8 * (noisy[:3] - clean[:3]).std()
        assert abs((out[:3] - clean[:3]).mean().item()) < 0.005

    def test_constant_preserved(self):
        img = torch.full((4, 40, 48), 0.42)
        out = spatial_denoise(img, 1e-3, 4)
        assert torch.allclose(out, img, atol=1e-5)

    def test_more_frames_means_less_smoothing(self):
        """The residual noise estimate shrinks with the number of merged frames."""
        g = torch.Generator().manual_seed(1)
        img = (0.5 + 0.03 * torch.randn(4, 48, 48, generator=g)).clamp(0, 1)
        few = spatial_denoise(img, 9e-4, 1)
        many = spatial_denoise(img, 9e-4, 16)
        assert (many - img).abs().mean() < (few - img).abs().mean()

    def test_zero_strength_is_noop(self):
        img = torch.rand(4, 32, 32)
        assert spatial_denoise(img, 1e-3, 2, SpatialDenoiseConfig(strength=0.0)) is img
