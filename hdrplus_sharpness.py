# hdrplus_sharpness.py
# Reference selection by mean absolute Laplacian of luminance.

import logging
from typing import List, Sequence

import torch
import torch.nn.functional as F

from hdrplus_noise import laplacian_abs
from hdrplus_pyramid import luminance
from hdrplus_types import Frame

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

REDUCTION_TILE = 16


def _tile_partial_sums(values: Tensor, tile: int = REDUCTION_TILE):
    """Per-tile partial sums and counts of an [H,W] map (first stage of the reduction)."""
    h, w = values.shape
    ph, pw = (-h) % tile, (-w) % tile
    v = F.pad(values, (0, pw, 0, ph))
    ones = F.pad(torch.ones_like(values), (0, pw, 0, ph))
    ty, tx = v.shape[0] // tile, v.shape[1] // tile
    sums = v.reshape(ty, tile, tx, tile).sum(dim=(1, 3))
    counts = ones.reshape(ty, tile, tx, tile).sum(dim=(1, 3))
    return sums, counts


@torch.no_grad()
def sharpness_score(frame) -> float:
    data = frame.data if isinstance(frame, Frame) else frame
    lum = luminance(data.permute(2, 0, 1)) if data.dim() == 3 else data
    if lum.shape[0] < 3 or lum.shape[1] < 3:
        return 0.0
    sums, counts = _tile_partial_sums(laplacian_abs(lum))
    return float((sums.sum() / counts.sum().clamp(min=1.0)).item())


def select_reference(frames: Sequence) -> int:
    """Index of the sharpest frame; ties go to the lowest index.

    A Frame that already carries a sharpness score is not measured again.
    """
    scores: List[float] = [f.sharpness if isinstance(f, Frame) and f.sharpness is not None
                           else sharpness_score(f) for f in frames]
    best = 0
    for i, s in enumerate(scores):
        if s > scores[best]:
            best = i
    logger.debug("sharpness scores: %s -> reference %d", ["%.5f" % s for s in scores], best)
    return best
