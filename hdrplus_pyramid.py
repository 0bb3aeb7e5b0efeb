# hdrplus_pyramid.py
# Gaussian / box image pyramids used by the hierarchical aligner.

from typing import List

import torch
import torch.nn.functional as F

from hdrplus_types import PyramidLevel

Tensor = torch.Tensor


def luminance(chw: Tensor) -> Tensor:
    """BT.601 luma of a [C,H,W] image with C >= 3 → [H,W]."""
    return 0.299 * chw[0] + 0.587 * chw[1] + 0.114 * chw[2]


def pyr_down(img: Tensor) -> Tensor:
    # 5-tap Gaussian-like kernel separable, clamp-to-edge borders
    k = torch.tensor([1, 4, 6, 4, 1], dtype=img.dtype, device=img.device)[None, None, None, :]
    k = k / k.sum()
    x = F.pad(img[None, None], (2, 2, 2, 2), mode='replicate')
    x = F.conv2d(x, k)
    x = F.conv2d(x, k.transpose(-1, -2))
    x = x[:, :, ::2, ::2]
    return x[0, 0]


def box_down(img: Tensor) -> Tensor:
    h, w = img.shape
    x = F.pad(img[None, None], (0, w % 2, 0, h % 2), mode='replicate')
    return F.avg_pool2d(x, 2, 2)[0, 0]


def build_pyramid(img: Tensor, levels: int = 4, mode: str = "gaussian") -> List[PyramidLevel]:
    """Level 0 is the input; level l has size ceil(H/2^l) × ceil(W/2^l)."""
    down = pyr_down if mode == "gaussian" else box_down
    pyr = [img]
    for _ in range(1, levels):
        pyr.append(down(pyr[-1]))
    return pyr


def level_size(size: int, level: int) -> int:
    for _ in range(level):
        size = (size + 1) // 2
    return size


# ============================================================
# Small filters shared by the merger, CA estimator and tone mapper
# ============================================================

def sobel(img: Tensor):
    """Sobel derivatives (gy, gx) of an [H,W] image, scaled to per-pixel slope."""
    kx = torch.tensor([[-1.0, 0.0, 1.0], [-2.0, 0.0, 2.0], [-1.0, 0.0, 1.0]],
                      dtype=img.dtype, device=img.device) / 8.0
    x = F.pad(img[None, None], (1, 1, 1, 1), mode='replicate')
    gx = F.conv2d(x, kx[None, None])[0, 0]
    gy = F.conv2d(x, kx.T.contiguous()[None, None])[0, 0]
    return gy, gx


def smoothstep(e0: float, e1, x: Tensor) -> Tensor:
    t = ((x - e0) / (e1 - e0)).clamp(0.0, 1.0)
    return t * t * (3.0 - 2.0 * t)
