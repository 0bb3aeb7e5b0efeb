"""Shared pytest fixtures for burst-merge tests."""
import math

import pytest
import torch
import torch.nn.functional as F

from hdrplus_config import (BurstConfig, ChromaDenoiseConfig, SpatialDenoiseConfig,
                            ToneMapConfig, WarpConfig)


def smooth_texture(h: int, w: int, seed: int = 0, cells: int = 8) -> torch.Tensor:
    """Smooth random texture in roughly [0.2, 0.8], [H,W] float32."""
    g = torch.Generator().manual_seed(seed)
    coarse = torch.rand(1, 1, cells, cells, generator=g)
    tex = F.interpolate(coarse, size=(h, w), mode='bicubic', align_corners=False)[0, 0]
    return (0.2 + 0.6 * tex).clamp(0.0, 1.0)


def sine_scene(h: int, w: int) -> torch.Tensor:
    """0.5 + 0.2·sin(2πx/32)·sin(2πy/24), [H,W] float32."""
    y = torch.arange(h, dtype=torch.float32)[:, None]
    x = torch.arange(w, dtype=torch.float32)[None, :]
    return 0.5 + 0.2 * torch.sin(2 * math.pi * x / 32) * torch.sin(2 * math.pi * y / 24)


def to_rgba(gray: torch.Tensor) -> torch.Tensor:
    """[H,W] → [H,W,4] grey RGBA with opaque alpha."""
    rgb = gray[..., None].expand(-1, -1, 3)
    return torch.cat([rgb, torch.ones_like(gray)[..., None]], dim=-1).contiguous()


def noisy_burst(clean: torch.Tensor, count: int, sigma: float, seed: int = 0):
    """`count` RGBA frames of `clean` [H,W] with independent Gaussian noise per channel."""
    g = torch.Generator().manual_seed(seed)
    frames = []
    for _ in range(count):
        rgba = to_rgba(clean).clone()
        rgba[..., :3] += sigma * torch.randn(rgba[..., :3].shape, generator=g)
        frames.append(rgba)
    return frames


@pytest.fixture
def texture():
    return smooth_texture


@pytest.fixture
def plain_config() -> BurstConfig:
    """Merge-only configuration: no post-denoise, no tone mapping, no CA correction."""
    return BurstConfig(
        warp=WarpConfig(correct_chromatic_aberration=False),
        spatial=SpatialDenoiseConfig(enabled=False),
        chroma=ChromaDenoiseConfig(enabled=False),
        tonemap=ToneMapConfig(enabled=False),
    )
