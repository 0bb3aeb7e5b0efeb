# hdrplus_merge.py
# Frequency-domain temporal merge (Wiener-style pairwise shrinkage toward the reference)
# with weighted overlap-add synthesis.
#
# Per alternate z and tile:
#   A_z(ω) = |D_z|² / (|D_z|² + noise_norm · motion_norm · highlight_norm · magnitude_norm)
#   merged = A_z · T_ref + (1 − A_z) · T_z,   D_z = T_ref − T_z
# then a light deconvolution gain, inverse FFT, synthesis window and accumulation.
# The reference contributes once, unweighted; the sum is divided by the frame count.

import logging
import math
from typing import List, Optional, Tuple

import torch
import torch.nn.functional as F

from hdrplus_config import MergeConfig
from hdrplus_pyramid import luminance, smoothstep, sobel
from hdrplus_types import NoiseModel, TileStatistics
from hdrplus_wola import (accumulate_tiles, extract_tiles, pass_grid, pass_offsets,
                          pool_tiles, raised_cosine_window_2d)

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

EPS = 1e-12
DECONV_PEAK = 0.05
SOBEL_NOISE_MEAN = 0.543  # mean Sobel magnitude of unit white noise
EDGE_RAMP = (3.0, 6.0)  # edge strength in multiples of the noise floor
CLIP_HIGHLIGHT_FLOOR = 0.05


# ============================================================
# Small utils
# ============================================================

def _trimmed_mean4(w: Tensor, dim: int) -> Tensor:
    """Mean of the middle two of four values along `dim`."""
    s, _ = torch.sort(w, dim=dim)
    return 0.5 * (s.narrow(dim, 1, 1) + s.narrow(dim, 2, 1))


def _fold_freq(n: int, device, dtype) -> Tensor:
    k = torch.arange(n, device=device)
    return torch.minimum(k, n - k).to(dtype)


def deconvolution_table(n: int, device, dtype) -> Tensor:
    """Per-bin gain increment [N,N]: c[kx'] + c[ky'] with c[k'] = peak·sin(π k'/(N/2))."""
    kf = _fold_freq(n, device, dtype)
    c = DECONV_PEAK * torch.sin(math.pi * kf / (n / 2))
    return c[:, None] + c[None, :]


def pair_variance(model: NoiseModel, signal: Tensor, exposure: float) -> Tensor:
    """Variance of (reference − comparison/e) at reference signal level `signal`."""
    var_ref = model.variance(signal)
    var_cmp = model.shot * signal.clamp(min=0.0) / exposure + model.read / (exposure * exposure)
    return var_ref + var_cmp


# ============================================================
# Statistics pass
# ============================================================

@torch.no_grad()
def tile_statistics(ref: Tensor, cmp: Tensor, model: NoiseModel, cfg: MergeConfig,
                    exposure: float = 1.0) -> TileStatistics:
    """Statistics of one (exposure-normalized) alternate against the reference.

    Tiles sit on a half-step grid: stat (j, i) covers the N×N block at origin
    (j·N/2 − N/2, i·N/2 − N/2), so pass tile (ty, tx) at offset (oy, ox) maps to
    stat (2·ty + (oy == 0), 2·tx + (ox == 0)).
    """
    C, H, W = ref.shape
    n = cfg.tile_size
    h = n // 2
    nty, ntx = pass_grid(H, W, n)
    sy, sx = 2 * nty, 2 * ntx

    # (a) noise variance from the affine model at the tile mean
    ref_means = pool_tiles(ref[:3], n, h, h, sy, sx, "avg")
    pair_var = pair_variance(model, ref_means, exposure)
    noise_variance = torch.cat([pair_var, torch.zeros_like(pair_var[:1]).expand(C - 3, -1, -1)], 0)

    # (b) mismatch: cosine-weighted 2N neighbourhood of noise-normalized differences,
    # blended with the local max of a lightly blurred difference map
    sigma_pix = pair_variance(model, ref[:3], exposure).clamp(min=EPS).sqrt()
    nd = ((ref[:3] - cmp[:3]).abs() / sigma_pix).mean(dim=0, keepdim=True)  # [1,H,W]
    avg = pool_tiles(nd, 2 * n, h, 2 * h, sy, sx, "window")
    blurred = F.avg_pool2d(F.pad(nd[None], (1, 1, 1, 1), mode='replicate'), 3, 1)[0]
    local_max = pool_tiles(blurred, n, h, h, sy, sx, "max")
    raw = (avg + 0.5 * (local_max - avg).clamp(min=0.0))[0]
    mismatch = raw * (cfg.mismatch_target / max(float(raw.mean().item()), EPS))

    # (c) highlight clipping
    clipped = (ref[:3].amax(dim=0, keepdim=True) > cfg.highlight_threshold).to(ref.dtype)
    frac = pool_tiles(clipped, n, h, h, sy, sx, "avg")[0]
    highlight_norm = (1.0 - frac).clamp(CLIP_HIGHLIGHT_FLOOR, 1.0) ** 2

    # Sobel edge strength of the reference luminance
    gy, gx = sobel(luminance(ref))
    edge = torch.sqrt(gx * gx + gy * gy)[None]
    edge_strength = pool_tiles(edge, n, h, h, sy, sx, "avg")[0]

    return TileStatistics(noise_variance=noise_variance, mismatch=mismatch,
                          highlight_norm=highlight_norm, edge_strength=edge_strength)


# ============================================================
# Per-pass tile merge
# ============================================================

def _merge_tiles(t_ref: Tensor, t_cmp: Tensor, stats: TileStatistics, py: int, px: int,
                 ref_sigma: float, cfg: MergeConfig) -> Tensor:
    """Merge [nty,ntx,C,N,N] spatial tiles of one pass; returns merged spatial tiles."""
    n = cfg.tile_size
    C = t_ref.shape[2]

    def per_tile(stat: Tensor) -> Tensor:
        # [sy,sx] or [C,sy,sx] on the half-step grid → [nty,ntx,(C|1),1,1]
        if stat.dim() == 2:
            stat = stat[None]
        s = stat[:, py::2, px::2]
        return s.permute(1, 2, 0)[..., None, None]

    pair_var = per_tile(stats.noise_variance)  # [nty,ntx,C,1,1]
    m = per_tile(stats.mismatch)  # [nty,ntx,1,1,1]
    hn = per_tile(stats.highlight_norm)
    edge = per_tile(stats.edge_strength)

    # pixel-level rejection before the transform
    rgb_sd = pair_var[:, :, :3].mean(dim=2, keepdim=True).clamp(min=0.0).sqrt()
    thr = torch.clamp(3.0 * rgb_sd, min=cfg.pixel_motion_threshold)
    diff = (t_ref[:, :, :3] - t_cmp[:, :, :3]).abs().amax(dim=2, keepdim=True)
    pull = smoothstep(0.0, 1.0, (diff - thr) / thr)
    t_cmp = t_cmp + pull * (t_ref - t_cmp)

    F_ref = torch.fft.fft2(t_ref)
    F_cmp = torch.fft.fft2(t_cmp)
    D = F_ref - F_cmp
    D2 = D.real ** 2 + D.imag ** 2

    noise_norm = cfg.temporal_factor * cfg.robustness * (n * n) * pair_var

    max_mn = cfg.max_motion_norm
    mn = max_mn - (m - cfg.mismatch_target) * (max_mn - 1.0) / (cfg.motion_threshold - cfg.mismatch_target)
    motion_norm = mn.clamp(1.0, max_mn)

    # sharper-frame preference at non-DC bins, gated off as mismatch grows
    mag_ref = F_ref.abs()
    mag_cmp = F_cmp.abs()
    if cfg.sharpness_preference:
        gate = (1.0 - 10.0 * (m - 0.2)).clamp(0.0, 1.0)
        magnitude_norm = ((mag_cmp + 1e-6) / (mag_ref + 1e-6)).clamp(0.5, 2.0) ** (0.5 * gate)
        magnitude_norm[..., 0, 0] = 1.0
    else:
        magnitude_norm = torch.ones_like(mag_ref)

    denom = D2 + noise_norm * motion_norm * hn * magnitude_norm
    A = D2 / denom.clamp(min=EPS)
    A = _trimmed_mean4(A, dim=2) if C == 4 else A.mean(dim=2, keepdim=True)  # [nty,ntx,1,N,N]

    # motion penalty ramp: full reference trust at twice the motion threshold
    penalty = ((m - cfg.motion_threshold) / cfg.motion_threshold).clamp(0.0, 1.0)
    A = A + penalty * (1.0 - A)

    # reference bias at strong static edges
    if cfg.edge_bias > 0.0:
        edge_ratio = edge / max(SOBEL_NOISE_MEAN * ref_sigma, EPS)
        ramp = ((edge_ratio - EDGE_RAMP[0]) / (EDGE_RAMP[1] - EDGE_RAMP[0])).clamp(0.0, 1.0)
        static = (1.0 - (m - cfg.mismatch_target) / (cfg.motion_threshold - cfg.mismatch_target)).clamp(0.0, 1.0)
        bias = cfg.edge_bias * ramp * static
        A = A + bias * (1.0 - A)

    merged = A * F_ref + (1.0 - A) * F_cmp

    if cfg.deconvolution_strength > 0.0:
        table = deconvolution_table(n, t_ref.device, t_ref.dtype)
        gain = 1.0 + cfg.deconvolution_strength * table * (1.0 - penalty)
        cap = torch.maximum(mag_ref, mag_cmp) / merged.abs().clamp(min=EPS)
        gain = torch.minimum(gain, cap).clamp(min=1.0)
        merged = merged * gain

    return torch.fft.ifft2(merged).real


# ============================================================
# Accumulator
# ============================================================

class MergeAccumulator:
    """Full-resolution overlap-add buffer for one burst.

    The reference is added once without weighting; every alternate adds its merged
    tiles. `finalize` divides by the number of frames and clamps to [0, 1].
    """

    def __init__(self, ref: Tensor, model: NoiseModel, cfg: MergeConfig):
        self.ref = ref
        self.model = model
        self.cfg = cfg
        self.acc = torch.zeros_like(ref)
        self.frames = 0
        n = cfg.tile_size
        self.window = raised_cosine_window_2d(n, ref.device, ref.dtype)
        self.grid = pass_grid(ref.shape[1], ref.shape[2], n)
        self.ref_sigma = math.sqrt(max(float(model.variance(float(ref[:3].mean().item()))), 0.0))

    def add_reference(self) -> None:
        n = self.cfg.tile_size
        nty, ntx = self.grid
        for oy, ox in pass_offsets(n):
            tiles = extract_tiles(self.ref, oy, ox, n, nty, ntx)
            accumulate_tiles(self.acc, tiles * self.window, oy, ox)
        self.frames += 1

    def add_alternate(self, cmp: Tensor, exposure: float = 1.0) -> TileStatistics:
        """Merge one warped alternate (in its own exposure) into the accumulator."""
        n = self.cfg.tile_size
        nty, ntx = self.grid
        if exposure != 1.0:
            # alpha is not exposure-dependent
            cmp = torch.cat([cmp[:3] / exposure, cmp[3:]], dim=0)
        stats = tile_statistics(self.ref, cmp, self.model, self.cfg, exposure)
        for oy, ox in pass_offsets(n):
            py, px = int(oy == 0), int(ox == 0)
            t_ref = extract_tiles(self.ref, oy, ox, n, nty, ntx)
            t_cmp = extract_tiles(cmp, oy, ox, n, nty, ntx)
            merged = _merge_tiles(t_ref, t_cmp, stats, py, px, self.ref_sigma, self.cfg)
            accumulate_tiles(self.acc, merged * self.window, oy, ox)
        self.frames += 1
        logger.debug("merged alternate %d: mean mismatch %.3f (max %.3f)",
                     self.frames - 1, stats.mean_mismatch, float(stats.mismatch.max().item()))
        return stats

    def finalize(self) -> Tensor:
        return (self.acc / max(self.frames, 1)).clamp(0.0, 1.0)


@torch.no_grad()
def merge_frames(ref: Tensor, alternates: List[Tuple[Tensor, float]], model: NoiseModel,
                 cfg: Optional[MergeConfig] = None) -> Tuple[Tensor, List[TileStatistics]]:
    """Merge aligned [C,H,W] alternates (with exposure factors) into the reference."""
    cfg = cfg or MergeConfig()
    acc = MergeAccumulator(ref, model, cfg)
    acc.add_reference()
    stats = [acc.add_alternate(cmp, e) for cmp, e in alternates]
    return acc.finalize(), stats
