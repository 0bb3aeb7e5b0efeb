# hdrplus_align.py
# Hierarchical coarse-to-fine tile alignment:
# - per-level integer block matching (L2 on coarse levels, L1 on the finest)
# - 3×3 quadratic fit for sub-pixel offsets on L2 levels
# - 3-candidate upsampling of the coarser displacement field
#
# Convention: comparison(q) == reference(q + d). The cost of displacement d for the
# reference tile at p is Σ |ref(p) − cmp(p − d)|^k.

import logging
from typing import List, Optional, Tuple

import torch

from hdrplus_config import AlignConfig, AlignLevel
from hdrplus_errors import UnsupportedDimensionsError
from hdrplus_pyramid import build_pyramid, level_size
from hdrplus_types import DisplacementField, PyramidLevel

logger = logging.getLogger(__name__)

Tensor = torch.Tensor


# ============================================================
# Tile geometry and gathering
# ============================================================

def tile_grid(h: int, w: int, tile: int) -> Tuple[int, int]:
    """Number of 50%-overlapping tiles along each axis (at least one)."""
    step = tile // 2
    ny = max(1, (h - tile) // step + 1)
    nx = max(1, (w - tile) // step + 1)
    return ny, nx


def gather_patches(img: Tensor, oy: Tensor, ox: Tensor, size: int) -> Tensor:
    """Square patches of `img` [H,W] at per-tile origins oy, ox [ny,nx] → [ny,nx,size,size].

    Out-of-bounds samples are clamped to the nearest edge pixel.
    """
    h, w = img.shape
    r = torch.arange(size, device=img.device)
    ys = (oy[..., None] + r).clamp(0, h - 1)  # [ny,nx,size]
    xs = (ox[..., None] + r).clamp(0, w - 1)
    return img[ys[..., :, None], xs[..., None, :]]


def usable_levels(h: int, w: int, cfg: AlignConfig) -> int:
    """Deepest pyramid level count whose coarsest level still holds one full tile."""
    if min(h, w) < cfg.levels[0].tile_size:
        raise UnsupportedDimensionsError(
            f"image {h}x{w} is smaller than the finest alignment tile "
            f"({cfg.levels[0].tile_size} px)", stage="align")
    n = cfg.num_levels
    while n > 1 and min(level_size(h, n - 1), level_size(w, n - 1)) < cfg.levels[n - 1].tile_size:
        n -= 1
    return n


# ============================================================
# Sub-pixel quadratic fit (Eq. 3–4)
# ============================================================

_QUAD_PINV_CACHE = {}


def _quad_pinv(device, dtype) -> Tensor:
    key = (str(device), dtype)
    if key not in _QUAD_PINV_CACHE:
        coords = torch.tensor(
            [[-1, -1], [-1, 0], [-1, 1],
             [0, -1], [0, 0], [0, 1],
             [1, -1], [1, 0], [1, 1]], device=device, dtype=torch.float64)
        u = coords[:, 0]
        v = coords[:, 1]
        X = torch.stack([u * u, u * v, v * v, u, v, torch.ones_like(u)], dim=1)  # [9,6]
        _QUAD_PINV_CACHE[key] = torch.linalg.pinv(X).to(dtype)  # [6,9]
    return _QUAD_PINV_CACHE[key]


def quad_subpixel(D3x3: Tensor) -> Tensor:
    """Minimum of a quadratic fitted to [N,3,3] costs → [N,2] offsets in [-0.5, 0.5].

    Entry [a+1, b+1] holds the cost at offset (a, b). Tiles whose fit is not a strict
    minimum (flat or saddle-shaped cost) get a zero offset.
    """
    N = D3x3.shape[0]
    theta = D3x3.reshape(N, 9) @ _quad_pinv(D3x3.device, D3x3.dtype).T  # [N,6]
    a11, a12, a22, b1, b2, _c = theta.unbind(dim=1)

    # gradient: [2·a11·u + a12·v + b1, a12·u + 2·a22·v + b2] = 0
    det = 4.0 * a11 * a22 - a12 * a12
    ok = (a11 > 1e-12) & (det > 1e-12)
    safe = torch.where(ok, det, torch.ones_like(det))
    du = -(2.0 * a22 * b1 - a12 * b2) / safe
    dv = -(2.0 * a11 * b2 - a12 * b1) / safe
    off = torch.stack([du, dv], dim=1).clamp(-0.5, 0.5)
    return torch.where(ok[:, None], off, torch.zeros_like(off))


# ============================================================
# Per-level search
# ============================================================

def _search_order(radius: int) -> List[Tuple[int, int]]:
    """Integer offsets within ±radius, nearest to the seed first."""
    offs = [(dy, dx) for dy in range(-radius, radius + 1) for dx in range(-radius, radius + 1)]
    return sorted(offs, key=lambda o: (abs(o[0]) + abs(o[1]), max(abs(o[0]), abs(o[1]))))


def _tile_cost(a: Tensor, b: Tensor, use_l2: bool) -> Tensor:
    d = a - b
    if use_l2:
        return (d * d).mean(dim=(-1, -2))
    return d.abs().mean(dim=(-1, -2))


def _search_level(ref: Tensor, cmp: Tensor, seed: Tensor, lv: AlignLevel) -> Tensor:
    """Integer search (plus sub-pixel fit on L2 levels) around integer seeds [2,ny,nx]."""
    n, R = lv.tile_size, lv.search_radius
    step = n // 2
    ny, nx = seed.shape[1:]
    device = ref.device

    oy = (torch.arange(ny, device=device) * step)[:, None].expand(ny, nx)
    ox = (torch.arange(nx, device=device) * step)[None, :].expand(ny, nx)
    ref_tiles = gather_patches(ref, oy, ox, n)  # [ny,nx,n,n]

    # comparison patch covering every offset within ±(R+1) of the seed
    M = R + 1
    K = 2 * M + 1
    seed_i = seed.round().long()
    patch = gather_patches(cmp, oy - seed_i[0] - M, ox - seed_i[1] - M, n + 2 * M)

    # slice start k corresponds to offset δ = M − k
    costs = torch.empty((K, K, ny, nx), device=device, dtype=ref.dtype)
    for ky in range(K):
        for kx in range(K):
            costs[ky, kx] = _tile_cost(ref_tiles, patch[..., ky:ky + n, kx:kx + n], lv.use_l2)

    order = _search_order(R)
    flat_idx = torch.tensor([(M - dy) * K + (M - dx) for dy, dx in order], device=device)
    cand = costs.reshape(K * K, ny, nx)[flat_idx]  # [S,ny,nx]
    best = cand.argmin(dim=0)  # first minimum → closest to the seed
    order_t = torch.tensor(order, device=device, dtype=torch.long)  # [S,2]
    delta = order_t[best].permute(2, 0, 1)  # [2,ny,nx]

    disp = (seed_i + delta).to(ref.dtype)
    if lv.use_l2:
        ky = M - delta[0]
        kx = M - delta[1]
        a = torch.arange(-1, 2, device=device)
        # cost at offset δ + (a, b) lives at slice (ky − a, kx − b)
        iy = (ky[..., None, None] - a[:, None]).expand(ny, nx, 3, 3)
        ix = (kx[..., None, None] - a[None, :]).expand(ny, nx, 3, 3)
        ty = torch.arange(ny, device=device)[:, None, None, None].expand(ny, nx, 3, 3)
        tx = torch.arange(nx, device=device)[None, :, None, None].expand(ny, nx, 3, 3)
        D3x3 = costs[iy, ix, ty, tx]  # [ny,nx,3,3]
        sub = quad_subpixel(D3x3.reshape(-1, 3, 3)).reshape(ny, nx, 2).permute(2, 0, 1)
        disp = disp + sub
    return disp


# ============================================================
# Upsampling with 3-candidate correction
# ============================================================

def _upsample_candidates(prev: Tensor, prev_tile: int, h: int, w: int,
                         tile: int) -> Tensor:
    """Candidate integer seeds [3,2,ny,nx] for the finer level (nearest, X and Y neighbours)."""
    ny, nx = tile_grid(h, w, tile)
    step, prev_step = tile // 2, prev_tile // 2
    pny, pnx = prev.shape[1:]
    device = prev.device

    def coarse_pos(count, limit):
        centre = torch.arange(count, device=device, dtype=torch.float64) * step + tile / 2.0
        pos = ((centre / 2.0 - prev_tile / 2.0) / prev_step).clamp(0, limit - 1)
        near = pos.round().long()
        one = torch.ones_like(near)
        side = torch.where(pos >= near.to(pos.dtype), one, -one)
        other = (near + side).clamp(0, limit - 1)
        return near, other

    cy, cy2 = coarse_pos(ny, pny)
    cx, cx2 = coarse_pos(nx, pnx)
    CY, CX = torch.meshgrid(cy, cx, indexing='ij')
    CY2, CX2 = torch.meshgrid(cy2, cx2, indexing='ij')
    cands = torch.stack([
        prev[:, CY, CX],  # nearest
        prev[:, CY, CX2],  # x neighbour
        prev[:, CY2, CX],  # y neighbour
    ], dim=0) * 2.0
    return cands.round()


def _pick_candidate(ref: Tensor, cmp: Tensor, cands: Tensor, lv: AlignLevel) -> Tensor:
    n = lv.tile_size
    step = n // 2
    _, _, ny, nx = cands.shape
    device = ref.device
    oy = (torch.arange(ny, device=device) * step)[:, None].expand(ny, nx)
    ox = (torch.arange(nx, device=device) * step)[None, :].expand(ny, nx)
    ref_tiles = gather_patches(ref, oy, ox, n)
    costs = []
    for c in range(cands.shape[0]):
        d = cands[c].long()
        costs.append(_tile_cost(ref_tiles, gather_patches(cmp, oy - d[0], ox - d[1], n), lv.use_l2))
    best = torch.stack(costs, dim=0).argmin(dim=0)  # [ny,nx]
    return torch.gather(cands, 0, best[None, None].expand(1, 2, ny, nx))[0]


# ============================================================
# Public API
# ============================================================

@torch.no_grad()
def align_pyramids(ref_pyr: List[PyramidLevel], cmp_pyr: List[PyramidLevel],
                    cfg: AlignConfig) -> DisplacementField:
    """Align one comparison pyramid to the reference pyramid (both finest level first)."""
    levels = len(ref_pyr)
    disp: Optional[Tensor] = None
    for lev in reversed(range(levels)):
        lv = cfg.levels[lev]
        ref, cmp = ref_pyr[lev], cmp_pyr[lev]
        h, w = ref.shape
        ny, nx = tile_grid(h, w, lv.tile_size)

        if disp is None:
            seed = torch.zeros((2, ny, nx), device=ref.device, dtype=ref.dtype)
        else:
            prev_tile = cfg.levels[lev + 1].tile_size
            cands = _upsample_candidates(disp, prev_tile, h, w, lv.tile_size)
            if cfg.upsampling_correction:
                seed = _pick_candidate(ref, cmp, cands, lv)
            else:
                seed = cands[0]

        disp = _search_level(ref, cmp, seed, lv)
        logger.debug("level %d (%dx%d, tile %d): mean |d| = %.3f",
                     lev, h, w, lv.tile_size, float(disp.abs().mean().item()))

    n0 = cfg.levels[0].tile_size
    return DisplacementField(disp, n0, n0 // 2)


@torch.no_grad()
def align_frame(ref_lum: Tensor, cmp_lum: Tensor, cfg: AlignConfig,
                ref_pyr: Optional[List[PyramidLevel]] = None) -> DisplacementField:
    """Align a comparison luminance image [H,W] to the reference luminance."""
    h, w = ref_lum.shape
    levels = usable_levels(h, w, cfg)
    if ref_pyr is None or len(ref_pyr) != levels:
        ref_pyr = build_pyramid(ref_lum, levels, cfg.pyramid)
    cmp_pyr = build_pyramid(cmp_lum, levels, cfg.pyramid)
    return align_pyramids(ref_pyr, cmp_pyr, cfg)
