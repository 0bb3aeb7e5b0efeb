# hdrplus_chroma.py
# Edge-aware chroma denoise: separable 5-tap bilateral filter on Cb/Cr (BT.601),
# guided by luma so strong luminance edges are not crossed. Luma passes through.

import math
from typing import Optional

import torch
import torch.nn.functional as F

from hdrplus_config import ChromaDenoiseConfig

Tensor = torch.Tensor

TAPS = 2  # radius of the 5-tap kernel


def rgb_to_ycbcr(rgb: Tensor) -> Tensor:
    """[3,H,W] RGB → [3,H,W] (Y, Cb, Cr), full range, chroma centred on 0."""
    r, g, b = rgb[0], rgb[1], rgb[2]
    y = 0.299 * r + 0.587 * g + 0.114 * b
    cb = 0.564 * (b - y)
    cr = 0.713 * (r - y)
    return torch.stack([y, cb, cr], dim=0)


def ycbcr_to_rgb(ycc: Tensor) -> Tensor:
    y, cb, cr = ycc[0], ycc[1], ycc[2]
    r = y + cr / 0.713
    b = y + cb / 0.564
    g = (y - 0.299 * r - 0.114 * b) / 0.587
    return torch.stack([r, g, b], dim=0)


def _shifted(x: Tensor, k: int, dim: int) -> Tensor:
    """x shifted by k along dim (−1: width, −2: height) with clamp-to-edge."""
    if k == 0:
        return x
    pad = [0, 0, 0, 0]
    axis = 0 if dim == -1 else 2
    pad[axis], pad[axis + 1] = TAPS, TAPS
    xp = F.pad(x[None], tuple(pad), mode='replicate')[0]
    size = x.shape[dim]
    return xp.narrow(dim, TAPS + k, size)


def _bilateral_pass(chroma: Tensor, luma: Tensor, dim: int, sigma_s: float, edge: float) -> Tensor:
    num = torch.zeros_like(chroma)
    den = torch.zeros_like(luma)
    for k in range(-TAPS, TAPS + 1):
        ws = math.exp(-(k * k) / (2.0 * sigma_s * sigma_s))
        dl = _shifted(luma[None], k, dim)[0] - luma
        w = ws * torch.exp(-(dl * dl) / (2.0 * edge * edge))
        num = num + w * _shifted(chroma, k, dim)
        den = den + w
    return num / den.clamp(min=1e-12)


@torch.no_grad()
def chroma_denoise(img: Tensor, cfg: Optional[ChromaDenoiseConfig] = None) -> Tensor:
    """Filter the chroma of a [C,H,W] RGB(A) image; extra channels pass through."""
    cfg = cfg or ChromaDenoiseConfig()
    if cfg.strength <= 0.0:
        return img
    ycc = rgb_to_ycbcr(img[:3])
    luma, chroma = ycc[0], ycc[1:]
    filt = _bilateral_pass(chroma, luma, -1, cfg.spatial_sigma, cfg.edge_threshold)
    filt = _bilateral_pass(filt, luma, -2, cfg.spatial_sigma, cfg.edge_threshold)
    chroma = chroma + cfg.strength * (filt - chroma)
    rgb = ycbcr_to_rgb(torch.cat([luma[None], chroma], dim=0)).clamp(0.0, 1.0)
    return torch.cat([rgb, img[3:]], dim=0)
