# hdrplus_tonemap.py
# Night-mode tone mapping: shadow lift → highlight roll-off → local contrast, applied on
# luminance and carried to RGB by ratio; adaptive sRGB gamma; TPDF dither to 8 bit.

import logging
from typing import Optional, Tuple

import torch
import torch.nn.functional as F

from hdrplus_config import ToneMapConfig
from hdrplus_pyramid import luminance, smoothstep

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

SHADOW_KNEE = 0.1
SHADOW_END = 0.3
HIGHLIGHT_KNEE = 0.7
NEAR_BLACK = (0.005, 0.02)
_U32 = 0xFFFFFFFF


# ============================================================
# Brightness statistics
# ============================================================

def block_luminance(lum: Tensor, block: int) -> Tensor:
    """Per-block mean luminance [by,bx] (partial reduction; edge blocks are replicate-padded)."""
    h, w = lum.shape
    x = F.pad(lum[None, None], (0, (-w) % block, 0, (-h) % block), mode='replicate')
    return F.avg_pool2d(x, block, block)[0, 0]


def average_brightness(blocks: Tensor) -> float:
    if blocks.numel() == 0:
        return 0.5
    return float(blocks.mean().item())


def adaptive_shadow_boost(boost: float, avg: float) -> float:
    """Full boost for dark scenes (avg ≤ 0.2), fading linearly to none at 0.4."""
    if avg > 0.4:
        return 0.0
    if avg > 0.2:
        return boost * (0.4 - avg) / 0.2
    return boost


# ============================================================
# Curves
# ============================================================

def shadow_lift(l: Tensor, boost: float) -> Tensor:
    if boost <= 0.0:
        return l
    p = 1.0 - 0.6 * boost
    low = SHADOW_KNEE * (l.clamp(min=0.0) / SHADOW_KNEE) ** p
    bump = torch.sin(torch.pi * (l - SHADOW_KNEE) / (SHADOW_END - SHADOW_KNEE))
    mid = l + 0.05 * boost * bump
    out = torch.where(l < SHADOW_KNEE, low, l)
    return torch.where((l >= SHADOW_KNEE) & (l < SHADOW_END), mid, out)


def highlight_compress(l: Tensor, strength: float) -> Tensor:
    if strength <= 0.0:
        return l
    over = (l - HIGHLIGHT_KNEE).clamp(min=0.0)
    compressed = HIGHLIGHT_KNEE + over / (1.0 + strength * over / (1.0 - HIGHLIGHT_KNEE))
    t = smoothstep(HIGHLIGHT_KNEE, HIGHLIGHT_KNEE + 0.1, l)
    return l + t * (compressed - l)


def srgb_oetf(x: Tensor) -> Tensor:
    a = 0.055
    x = x.clamp(min=0.0)
    return torch.where(x <= 0.0031308, 12.92 * x, (1 + a) * torch.pow(x, 1 / 2.4) - a)


# ============================================================
# Tone map
# ============================================================

@torch.no_grad()
def tone_map(img: Tensor, cfg: Optional[ToneMapConfig] = None) -> Tuple[Tensor, float]:
    """Tone-map a linear [C,H,W] RGB(A) image; returns the [0,1] result and the scene's
    average brightness."""
    cfg = cfg or ToneMapConfig()
    rgb = img[:3].clamp(min=0.0)
    h, w = rgb.shape[1:]
    lum = luminance(rgb)

    blocks = block_luminance(lum, cfg.block_size)
    avg = average_brightness(blocks)
    boost = adaptive_shadow_boost(cfg.shadow_boost, avg) if cfg.adaptive_shadow else cfg.shadow_boost

    out_l = highlight_compress(shadow_lift(lum, boost), cfg.highlight_compress)
    if cfg.local_contrast > 0.0:
        local = F.interpolate(blocks[None, None], size=(h, w), mode='bilinear', align_corners=False)[0, 0]
        out_l = (out_l + cfg.local_contrast * (lum - local)).clamp(min=0.0)

    # hue-preserving ratio, uniform lift in near-black pixels
    ratio = out_l / lum.clamp(min=1e-6)
    scaled = rgb * ratio
    lifted = rgb + (out_l - lum)
    nb = 1.0 - smoothstep(NEAR_BLACK[0], NEAR_BLACK[1], lum)
    rgb = scaled + nb * (lifted - scaled)

    # gamma only as far as the scene is dark (already-encoded bright input is left alone)
    g = 1.0 - float(smoothstep(0.2, 0.5, torch.tensor(avg)).item())
    rgb = rgb.clamp(0.0, 1.0)
    if g > 0.0:
        rgb = rgb + g * (srgb_oetf(rgb) - rgb)

    logger.debug("tone map: avg brightness %.3f, shadow boost %.3f, gamma blend %.2f", avg, boost, g)
    return torch.cat([rgb.clamp(0.0, 1.0), img[3:]], dim=0), avg


# ============================================================
# Dithered quantization
# ============================================================

def _hash_u32(x: Tensor) -> Tensor:
    x = (x ^ 61) ^ (x >> 16)
    x = (x * 9) & _U32
    x = x ^ (x >> 4)
    x = (x * 0x27D4EB2D) & _U32
    return x ^ (x >> 15)


def tpdf_noise(shape, seed: int = 0, device=None) -> Tensor:
    """Triangular noise in (−1, 1): sum of two decorrelated hashed uniforms, minus one."""
    count = 1
    for s in shape:
        count *= s
    idx = torch.arange(count, device=device, dtype=torch.int64).reshape(shape)
    salt = (seed * 0x9E3779B1) & _U32
    u1 = _hash_u32(((idx * 2) ^ salt) & _U32).double() / 4294967296.0
    u2 = _hash_u32(((idx * 2 + 1) ^ salt ^ 0x85EBCA6B) & _U32).double() / 4294967296.0
    return (u1 + u2 - 1.0)


@torch.no_grad()
def dither_quantize(img: Tensor, strength: float = 1.0 / 255.0, seed: int = 0) -> Tensor:
    """[C,H,W] in [0,1] → [H,W,C] uint8, TPDF-dithered on the colour channels."""
    x = img.clone()
    if strength > 0.0:
        noise = tpdf_noise(x[:3].shape, seed, x.device).to(x.dtype)
        x[:3] = x[:3] + strength * noise
    q = torch.round(x.clamp(0.0, 1.0) * 255.0).to(torch.uint8)
    return q.permute(1, 2, 0).contiguous()
