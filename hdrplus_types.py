# hdrplus_types.py
# Burst-scoped data carried between pipeline stages.

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

import torch

from hdrplus_errors import InvalidBurstError

Tensor = torch.Tensor


# ============================================================
# Inputs
# ============================================================

@dataclass(frozen=True)
class CaptureMetadata:
    """Burst-level metadata supplied by the capture side.

    Attributes:
        black_level: Sensor black level on the [0,1] scale, subtracted at ingest.
        white_balance: (R, B) gains applied after the merge; G is the anchor.
        read_noise: Read-noise SD on the [0,1] scale, or None when unknown.
        lens_id: Identifies the active lens; keys the chromatic aberration cache.
        zoom: Zoom factor; a change invalidates the cached CA estimate.
    """
    black_level: float = 0.0
    white_balance: Tuple[float, float] = (1.0, 1.0)
    read_noise: Optional[float] = None
    lens_id: Optional[str] = None
    zoom: float = 1.0

    @property
    def lens_key(self) -> Tuple[Optional[str], float]:
        return (self.lens_id, round(float(self.zoom), 3))


@dataclass(frozen=True)
class Frame:
    """One linear RGBA exposure, [H,W,4] float in [0,1]."""
    data: Tensor
    exposure_factor: float = 1.0
    sharpness: Optional[float] = None
    noise_variance: Optional[Tensor] = None  # [4]

    @classmethod
    def from_tensor(cls, data: Tensor, exposure_factor: float = 1.0) -> "Frame":
        """Normalize [H,W], [H,W,1], [H,W,3] or [H,W,4] input (float or uint8) to RGBA float."""
        if not isinstance(data, torch.Tensor):
            raise InvalidBurstError(f"frame data must be a torch.Tensor, got {type(data).__name__}")
        if data.dim() == 2:
            data = data[..., None]
        if data.dim() != 3 or data.shape[-1] not in (1, 3, 4):
            raise InvalidBurstError(f"frame must be [H,W,C] with C in (1,3,4), got {tuple(data.shape)}")
        if data.dtype == torch.uint8:
            data = data.float() / 255.0
        elif not data.is_floating_point():
            raise InvalidBurstError(f"unsupported frame dtype {data.dtype}")
        if data.shape[-1] == 1:
            data = data.expand(-1, -1, 3)
        if data.shape[-1] == 3:
            alpha = torch.ones_like(data[..., :1])
            data = torch.cat([data, alpha], dim=-1)
        if not torch.isfinite(data).all():
            raise InvalidBurstError("frame contains non-finite samples")
        if exposure_factor <= 0:
            raise InvalidBurstError(f"exposure_factor must be > 0, got {exposure_factor}")
        return cls(data=data.contiguous(), exposure_factor=float(exposure_factor))

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.data.shape[0], self.data.shape[1])

    def chw(self) -> Tensor:
        return self.data.permute(2, 0, 1)


FrameLike = Union[Frame, Tensor]

# one level of a luminance pyramid, [h, w]; level 0 is full resolution
PyramidLevel = Tensor


# ============================================================
# Intermediate results
# ============================================================

@dataclass(frozen=True)
class NoiseModel:
    """Affine noise model σ²(x) = shot·x + read on the [0,1] scale."""
    shot: float
    read: float
    sigma: float = 0.0  # SD measured on the reference, for reporting

    def variance(self, signal):
        if isinstance(signal, torch.Tensor):
            return self.shot * signal.clamp(min=0.0) + self.read
        return self.shot * max(float(signal), 0.0) + self.read


@dataclass
class DisplacementField:
    """Per-tile (dy, dx) displacements at full resolution.

    comparison(q) == reference(q + d) for pixels q of the tile, so the warper samples
    the comparison frame at p - d.
    """
    disp: Tensor  # [2, ny, nx]
    tile_size: int
    step: int

    @classmethod
    def zeros(cls, ny: int, nx: int, tile_size: int, device=None, dtype=torch.float32) -> "DisplacementField":
        return cls(torch.zeros(2, ny, nx, device=device, dtype=dtype), tile_size, tile_size // 2)

    @property
    def grid_shape(self) -> Tuple[int, int]:
        return (self.disp.shape[1], self.disp.shape[2])

    def mean_magnitude(self) -> float:
        return float(torch.sqrt((self.disp ** 2).sum(dim=0)).mean().item())


@dataclass
class TileStatistics:
    """Per-tile statistics of one alternate against the reference, on the half-step grid."""
    noise_variance: Tensor  # [C, sy, sx] pair variance per channel
    mismatch: Tensor  # [sy, sx], normalized
    highlight_norm: Tensor  # [sy, sx]
    edge_strength: Tensor  # [sy, sx], mean Sobel magnitude of the reference luminance

    @property
    def mean_mismatch(self) -> float:
        return float(self.mismatch.mean().item())


@dataclass(frozen=True)
class CACoefficients:
    """Radial magnification k per channel: scale(r) = 1 + k·(r/r_max)²."""
    red: float = 0.0
    blue: float = 0.0

    def is_significant(self, threshold: float) -> bool:
        return abs(self.red) > threshold or abs(self.blue) > threshold


# ============================================================
# Outputs
# ============================================================

@dataclass
class FrameDiagnostics:
    """Per-alternate alignment and merge record, with the frame's own sharpness and noise."""
    index: int
    displacement: DisplacementField
    stats: TileStatistics
    sharpness: Optional[float] = None
    noise_variance: Optional[Tensor] = None  # [4] at each channel's mean level


@dataclass
class BurstResult:
    """Merged image plus burst diagnostics.

    `image` is [H,W,4] float in [0,1]; `image_u8` is the dithered 8-bit rendition when
    tone mapping ran, otherwise None.
    """
    image: Tensor
    reference_index: int
    noise_model: NoiseModel
    image_u8: Optional[Tensor] = None
    ca: CACoefficients = field(default_factory=CACoefficients)
    diagnostics: List[FrameDiagnostics] = field(default_factory=list)
    noise_map: Optional[Tensor] = None  # per-tile SD of the reference
    skipped_frames: List[int] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)

    @property
    def frames_merged(self) -> int:
        return 1 + len(self.diagnostics)
