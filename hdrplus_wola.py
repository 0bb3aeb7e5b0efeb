# hdrplus_wola.py
# Weighted overlap-add tiling shared by the merger and the spatial denoiser.
#
# Four passes over a non-overlapping grid of N×N tiles, offset by (-N/2,-N/2), (0,-N/2),
# (-N/2,0), (0,0). Every pixel is covered by exactly one tile of each pass, and the
# separable raised-cosine windows of the four covering tiles sum to 1:
#   w(x) + w(x + N/2) = 1  with  w(x) = 0.5 - 0.5 cos(2π (x+0.5)/N)

import math
from typing import Callable, List, Tuple

import torch
import torch.nn.functional as F

Tensor = torch.Tensor


# ============================================================
# Windows and grid geometry
# ============================================================

def raised_cosine_1d(n: int, device, dtype) -> Tensor:
    x = torch.arange(n, device=device, dtype=dtype)
    return 0.5 - 0.5 * torch.cos(2 * math.pi * (x + 0.5) / n)


def raised_cosine_window_2d(n: int, device, dtype) -> Tensor:
    # w(x) = 0.5 - 0.5 cos(2π (x+0.5)/n)
    w1 = raised_cosine_1d(n, device, dtype)
    return (w1[:, None] * w1[None, :]).contiguous()


def pass_offsets(n: int) -> List[Tuple[int, int]]:
    h = n // 2
    return [(-h, -h), (0, -h), (-h, 0), (0, 0)]


def pass_grid(height: int, width: int, n: int) -> Tuple[int, int]:
    """Tiles per axis in one pass; the +1 covers the half-tile offset."""
    return math.ceil(height / n) + 1, math.ceil(width / n) + 1


# ============================================================
# Tile extraction / accumulation
# ============================================================

def extract_tiles(img: Tensor, oy: int, ox: int, n: int, nty: int, ntx: int) -> Tensor:
    """Non-overlapping N×N tiles of [C,H,W] starting at (oy, ox) → [nty,ntx,C,N,N].

    Samples outside the image are clamped to the nearest edge pixel.
    """
    C, H, W = img.shape
    ys = torch.arange(oy, oy + nty * n, device=img.device).clamp(0, H - 1)
    xs = torch.arange(ox, ox + ntx * n, device=img.device).clamp(0, W - 1)
    region = img[:, ys][:, :, xs]  # [C, nty*n, ntx*n]
    return region.reshape(C, nty, n, ntx, n).permute(1, 3, 0, 2, 4)


def accumulate_tiles(acc: Tensor, tiles: Tensor, oy: int, ox: int) -> None:
    """Add tiles [nty,ntx,C,N,N] into acc [C,H,W] at (oy, ox), dropping out-of-image samples."""
    nty, ntx, C, n, _ = tiles.shape
    _, H, W = acc.shape
    region = tiles.permute(2, 0, 3, 1, 4).reshape(C, nty * n, ntx * n)
    r0, r1 = max(0, -oy), min(nty * n, H - oy)
    c0, c1 = max(0, -ox), min(ntx * n, W - ox)
    acc[:, oy + r0:oy + r1, ox + c0:ox + c1] += region[:, r0:r1, c0:c1]


def wola(img: Tensor, n: int, fn: Callable[[Tensor, int, int], Tensor]) -> Tensor:
    """Run `fn(tiles, oy, ox)` on every pass, window its output and overlap-add.

    `fn` receives [nty,ntx,C,N,N] tiles and must return the same shape.
    """
    C, H, W = img.shape
    win = raised_cosine_window_2d(n, img.device, img.dtype)
    nty, ntx = pass_grid(H, W, n)
    acc = torch.zeros_like(img)
    for oy, ox in pass_offsets(n):
        tiles = extract_tiles(img, oy, ox, n, nty, ntx)
        accumulate_tiles(acc, fn(tiles, oy, ox) * win, oy, ox)
    return acc


def window_sum(height: int, width: int, n: int, device=None, dtype=torch.float64) -> Tensor:
    """Sum of synthesis windows over the four passes at every pixel → [H,W]."""
    ones = torch.ones((1, height, width), device=device, dtype=dtype)
    return wola(ones, n, lambda t, oy, ox: t)[0]


# ============================================================
# Half-step tile statistics
# ============================================================

def pool_tiles(maps: Tensor, kernel: int, stride: int, lead: int,
               count_y: int, count_x: int, op: str = "avg") -> Tensor:
    """Per-tile reductions of [C,H,W] maps over kernel×kernel blocks at origins
    j·stride − lead (clamped borders) → [C,count_y,count_x].

    op: "avg", "max" or "window" (raised-cosine weighted mean).
    """
    C, H, W = maps.shape
    need_y = (count_y - 1) * stride + kernel
    need_x = (count_x - 1) * stride + kernel
    pad_b = max(0, need_y - lead - H)
    pad_r = max(0, need_x - lead - W)
    x = F.pad(maps[None], (lead, pad_r, lead, pad_b), mode='replicate')
    if op == "avg":
        out = F.avg_pool2d(x, kernel, stride)
    elif op == "max":
        out = F.max_pool2d(x, kernel, stride)
    elif op == "window":
        win = raised_cosine_window_2d(kernel, maps.device, maps.dtype)
        win = (win / win.sum())[None, None].expand(C, 1, kernel, kernel)
        out = F.conv2d(x, win, stride=stride, groups=C)
    else:
        raise ValueError(f"unknown pooling op {op!r}")
    return out[0, :, :count_y, :count_x]
