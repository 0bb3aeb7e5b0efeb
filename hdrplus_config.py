# hdrplus_config.py
# Stage configuration for the burst pipeline, plus scene-adaptive burst parameters.

import logging
import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Tuple

import torch

from hdrplus_errors import ConfigurationError

logger = logging.getLogger(__name__)

Tensor = torch.Tensor


# ============================================================
# Alignment
# ============================================================

@dataclass(frozen=True)
class AlignLevel:
    """Block-matching settings for one pyramid level.

    Attributes:
        tile_size: Tile side in pixels at this level. Tiles overlap by 50%.
        search_radius: Integer search radius around the seed.
        use_l2: Sum of squared differences (with sub-pixel fit) when True,
            sum of absolute differences (integer only) when False.
    """
    tile_size: int
    search_radius: int
    use_l2: bool

    def __post_init__(self) -> None:
        if self.tile_size < 2 or self.tile_size % 2:
            raise ConfigurationError(f"tile_size must be an even number >= 2, got {self.tile_size}")
        if self.search_radius < 1:
            raise ConfigurationError(f"search_radius must be >= 1, got {self.search_radius}")


# finest level first
DEFAULT_ALIGN_LEVELS: Tuple[AlignLevel, ...] = (
    AlignLevel(32, 2, False),
    AlignLevel(32, 2, True),
    AlignLevel(16, 2, True),
    AlignLevel(8, 4, True),
)


@dataclass
class AlignConfig:
    """Hierarchical alignment settings.

    Attributes:
        levels: Per-level settings, finest level first. The number of entries is the
            number of pyramid levels.
        pyramid: "gaussian" (1-4-6-4-1 blur then decimate) or "box" (2x2 average).
        upsampling_correction: Evaluate three coarse candidates per tile when
            moving to a finer level.
    """
    levels: Tuple[AlignLevel, ...] = DEFAULT_ALIGN_LEVELS
    pyramid: str = "gaussian"
    upsampling_correction: bool = True

    def __post_init__(self) -> None:
        self.levels = tuple(self.levels)
        if not self.levels:
            raise ConfigurationError("levels must contain at least one entry")
        if self.pyramid not in ("gaussian", "box"):
            raise ConfigurationError(f"pyramid must be 'gaussian' or 'box', got {self.pyramid!r}")

    @property
    def num_levels(self) -> int:
        return len(self.levels)


# ============================================================
# Warp / chromatic aberration
# ============================================================

@dataclass
class WarpConfig:
    interpolation: str = "bilinear"
    correct_chromatic_aberration: bool = True
    ca_edge_threshold: float = 0.08
    ca_radial_alignment: float = 0.6
    ca_radius_bins: int = 16
    ca_search_steps: int = 4
    ca_min_coefficient: float = 1e-4

    def __post_init__(self) -> None:
        if self.interpolation not in ("bilinear", "nearest"):
            raise ConfigurationError(
                f"interpolation must be 'bilinear' or 'nearest', got {self.interpolation!r}")
        if not 0.0 < self.ca_edge_threshold < 1.0:
            raise ConfigurationError(f"ca_edge_threshold must be 0-1, got {self.ca_edge_threshold}")
        if not 0.0 <= self.ca_radial_alignment <= 1.0:
            raise ConfigurationError(f"ca_radial_alignment must be 0-1, got {self.ca_radial_alignment}")
        if self.ca_radius_bins < 2:
            raise ConfigurationError(f"ca_radius_bins must be >= 2, got {self.ca_radius_bins}")
        if self.ca_search_steps < 1:
            raise ConfigurationError(f"ca_search_steps must be >= 1, got {self.ca_search_steps}")


# ============================================================
# Merge
# ============================================================

@dataclass
class MergeConfig:
    """Frequency-domain merge settings.

    Attributes:
        tile_size: FFT tile side. Must be a power of two.
        robustness: Scales the noise term of the Wiener weight. Higher values
            average more aggressively; 0 keeps only the reference.
        temporal_factor: Base multiplier of the expected noise power.
        motion_threshold: Normalized mismatch above which a tile counts as moving.
        pixel_motion_threshold: Minimum per-pixel difference (0-1 scale) before a
            comparison pixel is pulled toward the reference.
        mismatch_target: Mean tile mismatch after global normalization.
        deconvolution_strength: Scale of the post-merge sharpening gain table.
        edge_bias: Largest extra reference weight on strong static edges.
        highlight_threshold: Channel value above which a pixel counts as clipped.
        sharpness_preference: Bias toward the frame with more spectral energy at
            non-DC bins while the tile is static.
    """
    tile_size: int = 16
    robustness: float = 1.0
    temporal_factor: float = 8.0
    motion_threshold: float = 0.25
    pixel_motion_threshold: float = 0.08
    mismatch_target: float = 0.1
    deconvolution_strength: float = 1.0
    edge_bias: float = 0.25
    highlight_threshold: float = 0.99
    sharpness_preference: bool = True

    def __post_init__(self) -> None:
        n = self.tile_size
        if n < 4 or n & (n - 1):
            raise ConfigurationError(f"tile_size must be a power of two >= 4, got {n}")
        if self.robustness < 0.0:
            raise ConfigurationError(f"robustness must be >= 0, got {self.robustness}")
        if self.temporal_factor <= 0.0:
            raise ConfigurationError(f"temporal_factor must be > 0, got {self.temporal_factor}")
        if self.motion_threshold <= 0.0:
            raise ConfigurationError(f"motion_threshold must be > 0, got {self.motion_threshold}")
        if not 0.0 < self.mismatch_target < self.motion_threshold:
            raise ConfigurationError(
                f"mismatch_target must be in (0, motion_threshold), got {self.mismatch_target}")
        if not 0.0 < self.pixel_motion_threshold < 1.0:
            raise ConfigurationError(
                f"pixel_motion_threshold must be 0-1, got {self.pixel_motion_threshold}")
        if self.deconvolution_strength < 0.0:
            raise ConfigurationError(
                f"deconvolution_strength must be >= 0, got {self.deconvolution_strength}")
        if not 0.0 <= self.edge_bias <= 1.0:
            raise ConfigurationError(f"edge_bias must be 0-1, got {self.edge_bias}")
        if not 0.0 < self.highlight_threshold <= 1.0:
            raise ConfigurationError(f"highlight_threshold must be 0-1, got {self.highlight_threshold}")

    @property
    def max_motion_norm(self) -> float:
        return 1.0 + self.robustness


# ============================================================
# Post-processing
# ============================================================

@dataclass
class SpatialDenoiseConfig:
    enabled: bool = True
    strength: float = 1.0
    high_freq_boost: float = 1.5
    tile_size: int = 16

    def __post_init__(self) -> None:
        if self.strength < 0.0:
            raise ConfigurationError(f"strength must be >= 0, got {self.strength}")
        if self.high_freq_boost < 1.0:
            raise ConfigurationError(f"high_freq_boost must be >= 1, got {self.high_freq_boost}")
        n = self.tile_size
        if n < 4 or n & (n - 1):
            raise ConfigurationError(f"tile_size must be a power of two >= 4, got {n}")


@dataclass
class ChromaDenoiseConfig:
    enabled: bool = True
    strength: float = 0.25
    edge_threshold: float = 0.15
    spatial_sigma: float = 1.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.strength <= 1.0:
            raise ConfigurationError(f"strength must be 0-1, got {self.strength}")
        if self.edge_threshold <= 0.0:
            raise ConfigurationError(f"edge_threshold must be > 0, got {self.edge_threshold}")
        if self.spatial_sigma <= 0.0:
            raise ConfigurationError(f"spatial_sigma must be > 0, got {self.spatial_sigma}")


@dataclass
class ToneMapConfig:
    """Tone curve and output quantization.

    Attributes:
        shadow_boost: Shadow lift strength (0-1).
        local_contrast: Local contrast gain around the block-mean luminance.
        highlight_compress: Strength of the highlight roll-off above 0.7.
        dither_strength: Amplitude of the triangular dither, in output units.
        block_size: Side of the blocks used for the local luminance map.
        adaptive_shadow: Scale the shadow lift by how dark the scene is.
        seed: Dither seed; fixed so repeated runs are bit-identical.
    """
    enabled: bool = True
    shadow_boost: float = 0.2
    local_contrast: float = 0.15
    highlight_compress: float = 0.5
    dither_strength: float = 1.0 / 255.0
    block_size: int = 8
    adaptive_shadow: bool = True
    seed: int = 0

    def __post_init__(self) -> None:
        if not 0.0 <= self.shadow_boost <= 1.0:
            raise ConfigurationError(f"shadow_boost must be 0-1, got {self.shadow_boost}")
        if not 0.0 <= self.local_contrast <= 1.0:
            raise ConfigurationError(f"local_contrast must be 0-1, got {self.local_contrast}")
        if not 0.0 <= self.highlight_compress <= 1.0:
            raise ConfigurationError(f"highlight_compress must be 0-1, got {self.highlight_compress}")
        if self.dither_strength < 0.0:
            raise ConfigurationError(f"dither_strength must be >= 0, got {self.dither_strength}")
        if self.block_size < 1:
            raise ConfigurationError(f"block_size must be >= 1, got {self.block_size}")


# ============================================================
# Whole pipeline
# ============================================================

@dataclass
class BurstConfig:
    align: AlignConfig = field(default_factory=AlignConfig)
    warp: WarpConfig = field(default_factory=WarpConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    spatial: SpatialDenoiseConfig = field(default_factory=SpatialDenoiseConfig)
    chroma: ChromaDenoiseConfig = field(default_factory=ChromaDenoiseConfig)
    tonemap: ToneMapConfig = field(default_factory=ToneMapConfig)
    device: str = "cpu"
    dtype: torch.dtype = torch.float32
    adaptive: bool = False

    def __post_init__(self) -> None:
        if self.device not in ("cpu", "cuda", "auto") and not self.device.startswith("cuda:"):
            raise ConfigurationError(f"device must be 'cpu', 'cuda[:n]' or 'auto', got {self.device!r}")
        if self.dtype not in (torch.float32, torch.float64):
            raise ConfigurationError(f"dtype must be float32 or float64, got {self.dtype}")

    def resolve_device(self) -> torch.device:
        if self.device == "auto":
            return torch.device("cuda" if torch.cuda.is_available() else "cpu")
        return torch.device(self.device)

    def with_adaptive(self, params: "AdaptiveBurstParams") -> "BurstConfig":
        """Return a copy tuned for the scene the parameters were derived from."""
        merge = replace(self.merge, robustness=params.robustness)
        if params.motion_threshold > merge.mismatch_target:
            merge = replace(merge, motion_threshold=params.motion_threshold)
        tonemap = replace(self.tonemap, shadow_boost=params.shadow_boost,
                          local_contrast=params.local_contrast)
        return replace(self, merge=merge, tonemap=tonemap)


# ============================================================
# Scene-adaptive burst parameters
# ============================================================

class SceneBrightness(Enum):
    VERY_BRIGHT = "very_bright"
    BRIGHT = "bright"
    MEDIUM = "medium"
    LOW = "low"
    VERY_DARK = "very_dark"

    @classmethod
    def from_luminance(cls, avg_luminance: float) -> "SceneBrightness":
        if avg_luminance > 0.5:
            return cls.VERY_BRIGHT
        if avg_luminance > 0.3:
            return cls.BRIGHT
        if avg_luminance > 0.1:
            return cls.MEDIUM
        if avg_luminance > 0.03:
            return cls.LOW
        return cls.VERY_DARK


@dataclass(frozen=True)
class AdaptiveBurstParams:
    frame_count: int
    robustness: float
    motion_threshold: float
    shadow_boost: float
    local_contrast: float


_ADAPTIVE_TABLE = {
    SceneBrightness.VERY_BRIGHT: AdaptiveBurstParams(1, 0.0, 0.0, 0.0, 0.0),
    SceneBrightness.BRIGHT: AdaptiveBurstParams(2, 0.3, 0.15, 0.1, 0.1),
    SceneBrightness.MEDIUM: AdaptiveBurstParams(4, 0.6, 0.2, 0.2, 0.15),
    SceneBrightness.LOW: AdaptiveBurstParams(6, 1.0, 0.25, 0.4, 0.2),
    SceneBrightness.VERY_DARK: AdaptiveBurstParams(8, 1.5, 0.35, 0.7, 0.3),
}


def calculate_adaptive_params(brightness: SceneBrightness) -> AdaptiveBurstParams:
    return _ADAPTIVE_TABLE[brightness]


def estimate_scene_brightness(image: Tensor, max_samples: int = 10000) -> float:
    """Average BT.601 luminance of an [H,W,C] image, from ~max_samples strided pixels."""
    if image.dim() != 3 or image.shape[-1] < 3:
        raise ValueError(f"expected an [H,W,C>=3] image, got shape {tuple(image.shape)}")
    flat = image.reshape(-1, image.shape[-1])
    step = max(1, flat.shape[0] // max_samples)
    rgb = flat[::step, :3].float()
    if rgb.numel() == 0:
        return 0.5
    lum = 0.299 * rgb[:, 0] + 0.587 * rgb[:, 1] + 0.114 * rgb[:, 2]
    return float(lum.mean().item())



@dataclass(frozen=True)
class BrightnessMetrics:
    """Luminance histogram summary of a frame, all levels in [0,1]."""
    mean: float
    median: float
    p5: float
    p95: float
    dynamic_range_stops: float  # log2(p95 / p5)
    shadow_fraction: float  # below 0.1
    highlight_fraction: float  # above 0.9


def brightness_metrics(image: Tensor, bins: int = 256) -> BrightnessMetrics:
    """Histogram metrics of the BT.601 luminance of an [H,W,C] image."""
    if image.dim() != 3 or image.shape[-1] < 3:
        raise ValueError(f"expected an [H,W,C>=3] image, got shape {tuple(image.shape)}")
    rgb = image[..., :3].reshape(-1, 3).float()
    lum = (0.299 * rgb[:, 0] + 0.587 * rgb[:, 1] + 0.114 * rgb[:, 2]).clamp(0.0, 1.0)
    if lum.numel() == 0:
        return BrightnessMetrics(0.5, 0.5, 0.5, 0.5, 0.0, 0.0, 0.0)
    hist = torch.histc(lum, bins=bins, min=0.0, max=1.0)
    cdf = hist.cumsum(0)
    total = cdf[-1]

    def percentile(q: float) -> float:
        i = int(torch.searchsorted(cdf, (q * total).reshape(1)).clamp(max=bins - 1).item())
        return (i + 0.5) / bins

    p5, p95 = percentile(0.05), percentile(0.95)
    return BrightnessMetrics(
        mean=float(lum.mean().item()),
        median=percentile(0.5),
        p5=p5,
        p95=p95,
        dynamic_range_stops=math.log2(p95 / p5),
        shadow_fraction=float((lum < 0.1).float().mean().item()),
        highlight_fraction=float((lum > 0.9).float().mean().item()),
    )


def classify_brightness(metrics: BrightnessMetrics) -> Tuple[SceneBrightness, float]:
    """Class from the histogram median, with a confidence in [0,1].

    Skewed histograms (mean far from median) and high-contrast scenes (over 6 stops)
    lower the confidence; a shadow- or highlight-heavy histogram that agrees with the
    extreme classes raises it.
    """
    brightness = SceneBrightness.from_luminance(metrics.median)
    confidence = 0.9
    if abs(metrics.mean - metrics.median) > 0.1:
        confidence -= 0.1
    if metrics.dynamic_range_stops > 6.0:
        confidence -= 0.1
    if brightness is SceneBrightness.VERY_BRIGHT and metrics.highlight_fraction > 0.2:
        confidence += 0.05
    elif brightness is SceneBrightness.VERY_DARK and metrics.shadow_fraction > 0.3:
        confidence += 0.05
    return brightness, min(max(confidence, 0.0), 1.0)


def analyze_scene_brightness(image: Tensor) -> Tuple[SceneBrightness, float]:
    """Fuse the mean-luminance and histogram classifications.

    The more confident vote wins; agreement between the two adds 0.1 confidence.
    """
    simple = (SceneBrightness.from_luminance(estimate_scene_brightness(image)), 0.5)
    metrics = brightness_metrics(image)
    histogram = classify_brightness(metrics)
    votes = sorted([simple, histogram], key=lambda v: v[1], reverse=True)
    brightness, confidence = votes[0]
    if sum(1 for b, c in votes if c > 0.1 and b is brightness) >= 2:
        confidence = min(confidence + 0.1, 1.0)
    logger.debug("brightness: mean %.3f median %.3f range %.1f stops -> %s (%.2f)",
                 metrics.mean, metrics.median, metrics.dynamic_range_stops,
                 brightness.value, confidence)
    return brightness, confidence
