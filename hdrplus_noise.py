# hdrplus_noise.py
# Robust noise estimation from Laplacian statistics (histogram median / MAD).
#   σ = 1.4826 · MAD(|L|) / 4.47,  L = 4c − (n + s + e + w)
# 4.47 ≈ sqrt(4² + 4·1²) is the gain of the 5-point Laplacian on white noise.

import logging
from typing import Optional

import torch

from hdrplus_types import Frame, NoiseModel

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

HIST_BINS = 256
HIST_RANGE = 1020.0  # largest |L| for 8-bit input
MAD_TO_SIGMA = 1.4826
LAPLACIAN_GAIN = 4.47
SIGMA_FLOOR_8BIT = 0.5


# ============================================================
# Laplacian and histogram helpers
# ============================================================

def laplacian_abs(img: Tensor) -> Tensor:
    """|4c − n − s − e − w| on interior pixels of an [H,W] image → [H-2,W-2]."""
    c = img[1:-1, 1:-1]
    lap = 4.0 * c - img[:-2, 1:-1] - img[2:, 1:-1] - img[1:-1, :-2] - img[1:-1, 2:]
    return lap.abs()


def _histogram_median(values: Tensor, bins: int = HIST_BINS, vmax: float = HIST_RANGE) -> float:
    """Median of non-negative values read off a fixed-range histogram (bin centre)."""
    scale = bins / vmax
    idx = (values.reshape(-1) * scale).long().clamp(0, bins - 1)
    counts = torch.bincount(idx, minlength=bins)
    cdf = torch.cumsum(counts, dim=0)
    total = int(cdf[-1].item())
    if total == 0:
        return 0.0
    b = int(torch.nonzero(cdf * 2 >= total)[0].item())
    return (b + 0.5) / scale


def _as_channel(frame, channel: int) -> Tensor:
    data = frame.data if isinstance(frame, Frame) else frame
    if data.dim() == 3:
        data = data[..., channel]
    return data


# ============================================================
# Estimators
# ============================================================

@torch.no_grad()
def estimate_noise_sigma(frame, channel: int = 1) -> float:
    """Noise SD (on the [0,1] scale) of one channel, green by default.

    The Laplacian is evaluated in 8-bit units, histogrammed into 256 bins, and the MAD
    is taken about the histogram median in a second histogram pass. The result is
    floored at half an 8-bit code value.
    """
    img = _as_channel(frame, channel).float() * 255.0
    if img.shape[0] < 3 or img.shape[1] < 3:
        logger.warning("image %s too small for noise estimation, using floor", tuple(img.shape))
        return SIGMA_FLOOR_8BIT / 255.0
    lap = laplacian_abs(img)
    med = _histogram_median(lap)
    mad = _histogram_median((lap - med).abs())
    sigma = max(mad * MAD_TO_SIGMA / LAPLACIAN_GAIN, SIGMA_FLOOR_8BIT)
    logger.debug("noise estimate: median=%.3f mad=%.3f sigma=%.3f (8-bit)", med, mad, sigma)
    return sigma / 255.0


@torch.no_grad()
def estimate_noise_map(frame, tile_size: int = 64, channel: int = 1) -> Tensor:
    """Per-tile noise SD map [ty, tx] using exact medians within each tile."""
    img = _as_channel(frame, channel).float() * 255.0
    lap = laplacian_abs(img)
    h, w = lap.shape
    ty, tx = max(1, h // tile_size), max(1, w // tile_size)
    th, tw = h // ty, w // tx
    tiles = lap[:ty * th, :tx * tw].reshape(ty, th, tx, tw).permute(0, 2, 1, 3).reshape(ty, tx, -1)
    med = tiles.median(dim=-1).values
    mad = (tiles - med[..., None]).abs().median(dim=-1).values
    sigma = (mad * MAD_TO_SIGMA / LAPLACIAN_GAIN).clamp(min=SIGMA_FLOOR_8BIT)
    return sigma / 255.0


def noise_model_from_sigma(sigma: float, mean_signal: float,
                           read_noise: Optional[float] = None) -> NoiseModel:
    """Split a measured SD into shot/read terms.

    With a known read-noise SD the remainder of the variance is attributed to shot
    noise at the measured mean signal; otherwise all of it is treated as read noise.
    """
    var = sigma * sigma
    if read_noise is None:
        return NoiseModel(shot=0.0, read=var, sigma=sigma)
    read = float(read_noise) ** 2
    shot = max(var - read, 0.0) / max(mean_signal, 1e-3)
    return NoiseModel(shot=shot, read=read, sigma=sigma)


@torch.no_grad()
def estimate_noise_model(frame: Frame, read_noise: Optional[float] = None) -> NoiseModel:
    sigma = estimate_noise_sigma(frame)
    mean_signal = float(frame.data[..., 1].mean().item())
    model = noise_model_from_sigma(sigma, mean_signal, read_noise)
    logger.info("noise model: sigma=%.5f shot=%.3e read=%.3e", sigma, model.shot, model.read)
    return model


def channel_noise_variance(frame: Frame, model: NoiseModel) -> Tensor:
    """Per-channel variance [4] at each channel's mean level; alpha carries none."""
    means = frame.data.reshape(-1, frame.data.shape[-1]).mean(dim=0)
    var = model.variance(means)
    var[3:] = 0.0
    return var
