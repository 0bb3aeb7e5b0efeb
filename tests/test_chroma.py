"""Tests for the luma-guided chroma denoise."""

import torch

from hdrplus_chroma import chroma_denoise, rgb_to_ycbcr, ycbcr_to_rgb
from hdrplus_config import ChromaDenoiseConfig


class TestColourSpace:

    def test_grey_has_no_chroma(self):
        ycc = rgb_to_ycbcr(torch.full((3, 4, 4), 0.6))
        assert torch.allclose(ycc[0], torch.full((4, 4), 0.6))
        assert torch.allclose(ycc[1:], torch.zeros(2, 4, 4), atol=1e-7)

    def test_inverse(self):
        rgb = torch.rand(3, 8, 8, dtype=torch.float64)
        assert torch.allclose(ycbcr_to_rgb(rgb_to_ycbcr(rgb)), rgb, atol=1e-9)


class TestChromaDenoise:

    def test_grey_unchanged(self):
        g = torch.Generator().manual_seed(0)
        grey = (0.5 + 0.1 * torch.randn(1, 32, 32, generator=g)).clamp(0, 1).expand(3, -1, -1)
        img = torch.cat([grey, torch.ones(1, 32, 32)], dim=0)
        assert torch.allclose(chroma_denoise(img), img, atol=1e-5)

    def test_luma_preserved(self):
        g = torch.Generator().manual_seed(1)
        img = torch.cat([(0.5 + 0.05 * torch.randn(3, 32, 32, generator=g)), torch.ones(1, 32, 32)])
        out = chroma_denoise(img, ChromaDenoiseConfig(strength=1.0))
        assert torch.allclose(rgb_to_ycbcr(out[:3])[0], rgb_to_ycbcr(img[:3])[0], atol=1e-5)
        assert torch.equal(out[3], img[3])

    def test_reduces_chroma_noise(self):
        g = torch.Generator().manual_seed(2)
        img = torch.cat([(0.5 + 0.05 * torch.randn(3, 48, 48, generator=g)), torch.ones(1, 48, 48)])
        before = rgb_to_ycbcr(img[:3])[1:].std()
        after = rgb_to_ycbcr(chroma_denoise(img, ChromaDenoiseConfig(strength=1.0))[:3])[1:].std()
        assert after < 0.8 * before

    def test_keeps_colour_edge_at_luma_edge(self):
        """Chroma does not bleed across a strong luminance edge."""
        img = torch.zeros(4, 16, 16)
        img[3] = 1.0
        img[0, :, :8] = 0.9  # bright red
        img[2, :, 8:] = 0.2  # dark blue
        out = chroma_denoise(img, ChromaDenoiseConfig(strength=1.0, edge_threshold=0.02))
        assert torch.allclose(out[:3, :, 7], img[:3, :, 7], atol=1e-3)
        assert torch.allclose(out[:3, :, 8], img[:3, :, 8], atol=1e-3)

    def test_zero_strength_is_noop(self):
        img = torch.rand(4, 8, 8)
        assert chroma_denoise(img, ChromaDenoiseConfig(strength=0.0)) is img
