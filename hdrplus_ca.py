# hdrplus_ca.py
# Lateral chromatic aberration estimate: radial magnification of red/blue relative to green,
#   scale_c(r) = 1 + k_c · (r / r_max)²
# measured on strong, radially oriented green edges and fitted by weighted least squares
# over radius bins.

import logging
import math
from typing import Hashable, Optional

import torch
import torch.nn.functional as F

from hdrplus_config import WarpConfig
from hdrplus_pyramid import sobel
from hdrplus_types import CACoefficients

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

MIN_EDGE_POINTS = 32
MIN_BIN_COUNT = 4
MAX_EDGE_POINTS = 20000
PROFILE_HALF = 3  # samples either side of the edge point along the radius


def _sample_points(img: Tensor, y: Tensor, x: Tensor) -> Tensor:
    """Bilinear samples of [H,W] `img` at float pixel coordinates of any shape."""
    h, w = img.shape
    gx = x * (2.0 / (w - 1)) - 1.0
    gy = y * (2.0 / (h - 1)) - 1.0
    grid = torch.stack([gx.reshape(-1), gy.reshape(-1)], dim=-1)[None, None]  # [1,1,P,2]
    out = F.grid_sample(img[None, None], grid, mode='bilinear', padding_mode='border',
                        align_corners=True)
    return out.reshape(y.shape)


def _normalize_profile(p: Tensor) -> Tensor:
    p = p - p.mean(dim=-1, keepdim=True)
    return p / (p.pow(2).mean(dim=-1, keepdim=True).sqrt() + 1e-6)


@torch.no_grad()
def estimate_ca(chw: Tensor, cfg: Optional[WarpConfig] = None) -> CACoefficients:
    """Estimate red/blue radial magnification coefficients from a [C,H,W] frame."""
    cfg = cfg or WarpConfig()
    _, h, w = chw.shape
    green = chw[1]
    device, dtype = green.device, green.dtype

    gy, gx = sobel(green)
    mag = torch.sqrt(gx * gx + gy * gy)
    cy, cx = (h - 1) / 2.0, (w - 1) / 2.0
    r_max = math.hypot(cy, cx)
    yy, xx = torch.meshgrid(torch.arange(h, device=device, dtype=dtype),
                            torch.arange(w, device=device, dtype=dtype), indexing='ij')
    dy, dx = yy - cy, xx - cx
    r = torch.sqrt(dy * dy + dx * dx)
    cos_rad = (gy * dy + gx * dx) / (mag * r).clamp(min=1e-12)

    border = PROFILE_HALF + 1
    mask = (mag > cfg.ca_edge_threshold) & (cos_rad.abs() > cfg.ca_radial_alignment)
    mask &= r > 0.1 * r_max
    mask[:border] = False
    mask[-border:] = False
    mask[:, :border] = False
    mask[:, -border:] = False

    idx = torch.nonzero(mask.reshape(-1)).squeeze(1)
    if idx.numel() < MIN_EDGE_POINTS:
        logger.debug("CA estimate: %d edge points, too few", idx.numel())
        return CACoefficients()
    if idx.numel() > MAX_EDGE_POINTS:
        idx = idx[::int(math.ceil(idx.numel() / MAX_EDGE_POINTS))]

    py, px = yy.reshape(-1)[idx], xx.reshape(-1)[idx]
    pr = r.reshape(-1)[idx]
    uy, ux = dy.reshape(-1)[idx] / pr, dx.reshape(-1)[idx] / pr

    steps = cfg.ca_search_steps
    dt = 0.5 / steps
    ts = torch.linspace(-0.5, 0.5, 2 * steps + 1, device=device, dtype=dtype)  # [T]
    ks = torch.arange(-PROFILE_HALF, PROFILE_HALF + 1, device=device).to(dtype)  # [K]

    g_prof = _sample_points(green, py[:, None] + ks * uy[:, None], px[:, None] + ks * ux[:, None])
    g_prof = _normalize_profile(g_prof)  # [P,K]

    off = ts[:, None] + ks[None, :]  # [T,K]
    bins = cfg.ca_radius_bins
    coeffs = []
    for ch in (0, 2):
        c_prof = _sample_points(chw[ch],
                                py[:, None, None] + off * uy[:, None, None],
                                px[:, None, None] + off * ux[:, None, None])  # [P,T,K]
        cost = (_normalize_profile(c_prof) - g_prof[:, None, :]).pow(2).sum(dim=-1)  # [P,T]
        best = cost.argmin(dim=1)
        inner = (best > 0) & (best < ts.numel() - 1)
        b = best.clamp(1, ts.numel() - 2)
        c_m = cost.gather(1, (b - 1)[:, None])[:, 0]
        c_0 = cost.gather(1, b[:, None])[:, 0]
        c_p = cost.gather(1, (b + 1)[:, None])[:, 0]
        denom = c_m - 2.0 * c_0 + c_p
        frac = torch.where(denom > 1e-12, 0.5 * (c_m - c_p) / denom.clamp(min=1e-12),
                           torch.zeros_like(denom)).clamp(-0.5, 0.5)
        t = ts[b] + frac * dt

        # two-phase reduction: per-radius-bin sums, then the least-squares fit
        x = (pr / r_max)[inner]
        s1 = (t / pr)[inner]
        bi = (x * bins).long().clamp(0, bins - 1)
        sums = torch.bincount(bi, weights=s1.double(), minlength=bins)
        counts = torch.bincount(bi, minlength=bins).double()
        xb = (torch.arange(bins, device=device, dtype=torch.float64) + 0.5) / bins
        valid = counts >= MIN_BIN_COUNT
        num = (sums * xb * xb)[valid].sum()
        den = (counts * xb ** 4)[valid].sum()
        coeffs.append(float(num / den) if den > 0 else 0.0)

    result = CACoefficients(red=coeffs[0], blue=coeffs[1])
    logger.debug("CA estimate from %d edge points: red=%.2e blue=%.2e",
                 idx.numel(), result.red, result.blue)
    return result


class CACache:
    """Holds the last CA estimate; a different lens key invalidates it."""

    def __init__(self):
        self._key: Optional[Hashable] = None
        self._coeffs: Optional[CACoefficients] = None

    def get(self, key: Hashable) -> Optional[CACoefficients]:
        if self._coeffs is not None and key == self._key:
            return self._coeffs
        return None

    def put(self, key: Hashable, coeffs: CACoefficients) -> None:
        self._key = key
        self._coeffs = coeffs

    def invalidate(self) -> None:
        self._key = None
        self._coeffs = None

    def get_or_estimate(self, key: Hashable, chw: Tensor, cfg: WarpConfig) -> CACoefficients:
        cached = self.get(key)
        if cached is not None:
            return cached
        if self._key is not None and key != self._key:
            logger.info("lens changed (%s -> %s), re-estimating chromatic aberration", self._key, key)
        coeffs = estimate_ca(chw, cfg)
        if not coeffs.is_significant(cfg.ca_min_coefficient):
            coeffs = CACoefficients()
        self.put(key, coeffs)
        return coeffs
