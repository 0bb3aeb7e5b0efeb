# hdrplus_warp.py
# Resample an alternate frame into reference coordinates from its tile displacement field,
# with optional radial chromatic-aberration correction of the red and blue channels.

import math
from typing import Optional, Tuple

import torch
import torch.nn.functional as F

from hdrplus_types import CACoefficients, DisplacementField

Tensor = torch.Tensor


def _to_normalized(coord: Tensor, size: int) -> Tensor:
    # align_corners=True: pixel 0 → -1, pixel size-1 → +1
    if size <= 1:
        return torch.zeros_like(coord)
    return coord * (2.0 / (size - 1)) - 1.0


def dense_displacement(field: DisplacementField, h: int, w: int) -> Tensor:
    """Bilinear interpolation of tile-centre displacements to every pixel → [2,H,W].

    Tile t is centred at t·step + tile/2 − 0.5; pixels beyond the outermost centres take
    the edge tile's value.
    """
    disp = field.disp
    ny, nx = field.grid_shape
    device, dtype = disp.device, disp.dtype
    c0 = field.tile_size / 2.0 - 0.5
    fy = ((torch.arange(h, device=device, dtype=dtype) - c0) / field.step).clamp(0, ny - 1)
    fx = ((torch.arange(w, device=device, dtype=dtype) - c0) / field.step).clamp(0, nx - 1)
    gy = _to_normalized(fy, ny)
    gx = _to_normalized(fx, nx)
    GY, GX = torch.meshgrid(gy, gx, indexing='ij')
    grid = torch.stack([GX, GY], dim=-1)[None]  # [1,H,W,2]
    out = F.grid_sample(disp[None], grid, mode='bilinear', padding_mode='border', align_corners=True)
    return out[0]


def radial_scale(y: Tensor, x: Tensor, h: int, w: int, coeff: float) -> Tuple[Tensor, Tensor]:
    """Map coordinates through scale(r) = 1 + coeff·(r/r_max)² about the image centre."""
    cy, cx = (h - 1) / 2.0, (w - 1) / 2.0
    r_max = math.hypot(cy, cx)
    dy, dx = y - cy, x - cx
    r2 = (dy * dy + dx * dx) / max(r_max * r_max, 1e-12)
    s = 1.0 + coeff * r2
    return cy + dy * s, cx + dx * s


@torch.no_grad()
def warp_frame(chw: Tensor, field: DisplacementField, interpolation: str = "bilinear",
               ca: Optional[CACoefficients] = None) -> Tensor:
    """Warp a [C,H,W] frame so that it lines up with the reference.

    Each output pixel p samples the frame at p − d(p). With CA coefficients, red
    (channel 0) and blue (channel 2) are additionally rescaled radially.
    """
    C, h, w = chw.shape
    device, dtype = chw.device, chw.dtype
    d = dense_displacement(field, h, w).to(dtype)
    yy, xx = torch.meshgrid(torch.arange(h, device=device, dtype=dtype),
                            torch.arange(w, device=device, dtype=dtype),
                            indexing='ij')
    sy = yy - d[0]
    sx = xx - d[1]

    def sample(img: Tensor, y: Tensor, x: Tensor) -> Tensor:
        grid = torch.stack([_to_normalized(x, w), _to_normalized(y, h)], dim=-1)[None]
        return F.grid_sample(img[None], grid, mode=interpolation,
                             padding_mode='border', align_corners=True)[0]

    if ca is None or (ca.red == 0.0 and ca.blue == 0.0):
        return sample(chw, sy, sx)

    out = sample(chw, sy, sx)
    for ch, coeff in ((0, ca.red), (2, ca.blue)):
        if coeff != 0.0 and ch < C:
            ry, rx = radial_scale(sy, sx, h, w, coeff)
            out[ch:ch + 1] = sample(chw[ch:ch + 1], ry, rx)
    return out
