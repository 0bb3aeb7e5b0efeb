# hdrplus_spatial_denoise.py
# Post-merge frequency-domain Wiener shrinkage of residual noise:
#   w(ω) = |S|² / (|S|² + strength · N² · σ²/frames · shape(ω)),
#   shape = 1 at DC, rising linearly to `high_freq_boost` at Nyquist.

import logging
from typing import Optional

import torch

from hdrplus_config import SpatialDenoiseConfig
from hdrplus_wola import wola

logger = logging.getLogger(__name__)

Tensor = torch.Tensor


def frequency_shape(n: int, boost: float, device, dtype) -> Tensor:
    """Radial ramp [N,N] from 1 at DC to `boost` at (and beyond) the Nyquist radius."""
    k = torch.arange(n, device=device)
    f = torch.minimum(k, n - k).to(dtype) / n  # cycles/pixel, 0..0.5
    rad = torch.sqrt(f[:, None] ** 2 + f[None, :] ** 2)
    return 1.0 + (boost - 1.0) * (rad / 0.5).clamp(max=1.0)


@torch.no_grad()
def spatial_denoise(img: Tensor, noise_var: float, frames: int,
                    cfg: Optional[SpatialDenoiseConfig] = None) -> Tensor:
    """Denoise a merged [C,H,W] image whose per-frame noise variance was `noise_var`."""
    cfg = cfg or SpatialDenoiseConfig()
    n = cfg.tile_size
    residual_var = noise_var / max(frames, 1)
    if cfg.strength <= 0.0 or residual_var <= 0.0:
        return img
    shape = frequency_shape(n, cfg.high_freq_boost, img.device, img.dtype)
    noise = cfg.strength * (n * n) * residual_var * shape

    def shrink(tiles: Tensor, oy: int, ox: int) -> Tensor:
        S = torch.fft.fft2(tiles)
        S2 = S.real ** 2 + S.imag ** 2
        w = S2 / (S2 + noise).clamp(min=1e-12)
        w[..., 0, 0] = 1.0
        return torch.fft.ifft2(S * w).real

    out = wola(img, n, shrink)
    logger.debug("spatial denoise: residual sigma %.5f over %d frames", residual_var ** 0.5, frames)
    return out.clamp(0.0, 1.0)
