# hdrplus_pipeline.py
# Burst merge orchestration:
#   ingest → reference selection → noise model → CA estimate → align all alternates →
#   warp + frequency-domain merge → spatial denoise → white balance → chroma denoise →
#   tone map / dithered 8-bit output

import logging
import time
from dataclasses import replace
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

import torch

from hdrplus_align import align_pyramids, tile_grid, usable_levels
from hdrplus_ca import CACache
from hdrplus_chroma import chroma_denoise
from hdrplus_config import BurstConfig, analyze_scene_brightness, calculate_adaptive_params
from hdrplus_errors import (BurstError, InvalidBurstError, PipelineFailedError,
                            ResourceExhaustedError, UnsupportedDimensionsError, classify_error)
from hdrplus_merge import MergeAccumulator
from hdrplus_noise import channel_noise_variance, estimate_noise_map, estimate_noise_model
from hdrplus_pyramid import build_pyramid, luminance
from hdrplus_sharpness import select_reference, sharpness_score
from hdrplus_spatial_denoise import spatial_denoise
from hdrplus_tonemap import dither_quantize, tone_map
from hdrplus_types import (BurstResult, CACoefficients, CaptureMetadata, DisplacementField, Frame,
                           FrameDiagnostics, FrameLike)
from hdrplus_warp import warp_frame

logger = logging.getLogger(__name__)

Tensor = torch.Tensor


class PipelineStage(Enum):
    IDLE = "idle"
    SELECTING_REFERENCE = "selecting_reference"
    ESTIMATING_NOISE = "estimating_noise"
    ALIGNING = "aligning"
    MERGING = "merging"
    DENOISING = "denoising"
    TONE_MAPPING = "tone_mapping"
    COMPLETE = "complete"
    FAILED = "failed"


ProgressCallback = Callable[[PipelineStage, float], None]


class BurstPipeline:
    """Merges a burst of same-resolution linear RGBA frames into one low-noise image.

    The pipeline is stateless across bursts apart from the chromatic aberration cache,
    which is keyed by lens and zoom.
    """

    def __init__(self, config: Optional[BurstConfig] = None, ca_cache: Optional[CACache] = None):
        self.config = config or BurstConfig()
        self.ca_cache = ca_cache or CACache()
        self.stage = PipelineStage.IDLE

    # ------------------------------------------------------------
    def _enter(self, stage: PipelineStage, fraction: float,
               progress: Optional[ProgressCallback]) -> None:
        self.stage = stage
        if progress is not None:
            progress(stage, fraction)

    def _ingest(self, frames: Sequence[FrameLike], metadata: CaptureMetadata,
                device, dtype) -> Tuple[List[Frame], List[int], List[int]]:
        if frames is None or len(frames) == 0:
            raise InvalidBurstError("burst contains no frames", stage="ingest")
        bl = float(metadata.black_level)
        if not 0.0 <= bl < 1.0:
            raise InvalidBurstError(f"black_level must be in [0, 1), got {bl}", stage="ingest")

        kept: List[Frame] = []
        indices: List[int] = []
        skipped: List[int] = []
        shape = None
        for i, f in enumerate(frames):
            frame = f if isinstance(f, Frame) else Frame.from_tensor(f)
            if shape is None:
                shape = frame.shape
            elif frame.shape != shape:
                logger.warning("frame %d has size %s, expected %s; skipping", i, frame.shape, shape)
                skipped.append(i)
                continue
            data = frame.data.to(device=device, dtype=dtype)
            if bl > 0.0:
                rgb = ((data[..., :3] - bl) / (1.0 - bl)).clamp(min=0.0)
                data = torch.cat([rgb, data[..., 3:]], dim=-1)
            kept.append(replace(frame, data=data))
            indices.append(i)
        return kept, indices, skipped

    # ------------------------------------------------------------
    @torch.no_grad()
    def process(self, frames: Sequence[FrameLike], metadata: Optional[CaptureMetadata] = None,
                ca_coefficients: Optional[CACoefficients] = None,
                progress: Optional[ProgressCallback] = None) -> BurstResult:
        """Run the full pipeline.

        `ca_coefficients`, when given, replaces the chromatic aberration estimate.

        Raises:
            InvalidBurstError: the burst is empty or a frame is malformed.
            PipelineFailedError: allocation failed or the image size is unsupported.
        """
        try:
            return self._process(frames, metadata or CaptureMetadata(), ca_coefficients, progress)
        except UnsupportedDimensionsError as e:
            self.stage = PipelineStage.FAILED
            raise PipelineFailedError(str(e), stage=e.stage) from e
        except BurstError:
            self.stage = PipelineStage.FAILED
            raise
        except (MemoryError, RuntimeError) as e:
            failed_at = self.stage.value
            self.stage = PipelineStage.FAILED
            if classify_error(e) is ResourceExhaustedError:
                logger.error("burst failed during %s: out of memory", failed_at)
                raise PipelineFailedError(f"out of memory: {e}", stage=failed_at) from e
            raise

    def _process(self, frames: Sequence[FrameLike], metadata: CaptureMetadata,
                 ca_coefficients: Optional[CACoefficients],
                 progress: Optional[ProgressCallback]) -> BurstResult:
        cfg = self.config
        device, dtype = cfg.resolve_device(), cfg.dtype
        timings = {}
        t_start = time.perf_counter()

        burst, indices, skipped = self._ingest(frames, metadata, device, dtype)
        H, W = burst[0].shape
        if min(H, W) < cfg.merge.tile_size:
            raise UnsupportedDimensionsError(
                f"image {H}x{W} is smaller than the merge tile ({cfg.merge.tile_size} px)", stage="ingest")
        levels = usable_levels(H, W, cfg.align)

        # reference selection
        self._enter(PipelineStage.SELECTING_REFERENCE, 0.05, progress)
        t = time.perf_counter()
        burst = [replace(f, sharpness=sharpness_score(f)) for f in burst]
        ref_pos = select_reference(burst)
        ref = burst[ref_pos]
        timings["reference"] = time.perf_counter() - t
        logger.info("burst of %d frames (%dx%d), reference frame %d",
                    len(burst), W, H, indices[ref_pos])

        if cfg.adaptive:
            brightness, confidence = analyze_scene_brightness(ref.data)
            cfg = cfg.with_adaptive(calculate_adaptive_params(brightness))
            logger.info("scene brightness %s (confidence %.2f): robustness %.2f, shadow boost %.2f",
                        brightness.value, confidence, cfg.merge.robustness, cfg.tonemap.shadow_boost)

        # noise model
        self._enter(PipelineStage.ESTIMATING_NOISE, 0.10, progress)
        t = time.perf_counter()
        model = estimate_noise_model(ref, metadata.read_noise)
        noise_map = estimate_noise_map(ref)
        burst = [replace(f, noise_variance=channel_noise_variance(f, model)) for f in burst]
        timings["noise"] = time.perf_counter() - t

        ref_chw = burst[ref_pos].chw().contiguous()
        ca = CACoefficients()
        ca_warp = None
        if cfg.warp.correct_chromatic_aberration:
            if ca_coefficients is not None:
                ca = ca_coefficients
            elif len(burst) > 1:
                ca = self.ca_cache.get_or_estimate(metadata.lens_key, ref_chw, cfg.warp)
            if ca.is_significant(cfg.warp.ca_min_coefficient):
                ca_warp = ca
                ny, nx = tile_grid(H, W, cfg.align.levels[0].tile_size)
                zero = DisplacementField.zeros(ny, nx, cfg.align.levels[0].tile_size, device, dtype)
                ref_chw = warp_frame(ref_chw, zero, cfg.warp.interpolation, ca)
                logger.info("chromatic aberration correction: red %.2e, blue %.2e", ca.red, ca.blue)

        # alignment
        alternates = [k for k in range(len(burst)) if k != ref_pos]
        self._enter(PipelineStage.ALIGNING, 0.10, progress)
        t = time.perf_counter()
        ref_pyr = build_pyramid(luminance(ref_chw), levels, cfg.align.pyramid)
        fields = {}
        for done, k in enumerate(alternates, start=1):
            e = burst[k].exposure_factor / ref.exposure_factor
            cmp_lum = luminance(burst[k].chw()) / e
            fields[k] = align_pyramids(ref_pyr, build_pyramid(cmp_lum, levels, cfg.align.pyramid), cfg.align)
            logger.debug("aligned frame %d: mean |d| = %.2f px", indices[k], fields[k].mean_magnitude())
            self._enter(PipelineStage.ALIGNING, 0.10 + 0.50 * done / len(alternates), progress)
        timings["align"] = time.perf_counter() - t

        # warp + merge
        self._enter(PipelineStage.MERGING, 0.60, progress)
        t = time.perf_counter()
        acc = MergeAccumulator(ref_chw, model, cfg.merge)
        acc.add_reference()
        diagnostics: List[FrameDiagnostics] = []
        for done, k in enumerate(alternates, start=1):
            e = burst[k].exposure_factor / ref.exposure_factor
            warped = warp_frame(burst[k].chw(), fields[k], cfg.warp.interpolation, ca_warp)
            stats = acc.add_alternate(warped, e)
            diagnostics.append(FrameDiagnostics(indices[k], fields[k], stats, burst[k].sharpness,
                                                   burst[k].noise_variance))
            self._enter(PipelineStage.MERGING, 0.60 + 0.25 * done / len(alternates), progress)
        merged = acc.finalize()
        timings["merge"] = time.perf_counter() - t
        logger.info("merged %d frames", acc.frames)

        # post-processing
        self._enter(PipelineStage.DENOISING, 0.85, progress)
        t = time.perf_counter()
        if cfg.spatial.enabled:
            noise_var = model.variance(float(ref.data[..., 1].mean().item()))
            merged = spatial_denoise(merged, noise_var, acc.frames, cfg.spatial)
        wb_r, wb_b = metadata.white_balance
        if wb_r != 1.0 or wb_b != 1.0:
            merged = merged.clone()
            merged[0] = (merged[0] * wb_r).clamp(0.0, 1.0)
            merged[2] = (merged[2] * wb_b).clamp(0.0, 1.0)
        if cfg.chroma.enabled:
            merged = chroma_denoise(merged, cfg.chroma)
        timings["denoise"] = time.perf_counter() - t

        image_u8 = None
        if cfg.tonemap.enabled:
            self._enter(PipelineStage.TONE_MAPPING, 0.90, progress)
            t = time.perf_counter()
            merged, _avg = tone_map(merged, cfg.tonemap)
            image_u8 = dither_quantize(merged, cfg.tonemap.dither_strength, cfg.tonemap.seed)
            timings["tonemap"] = time.perf_counter() - t

        timings["total"] = time.perf_counter() - t_start
        self._enter(PipelineStage.COMPLETE, 1.0, progress)
        logger.info("burst complete in %.1f ms", timings["total"] * 1000.0)

        return BurstResult(
            image=merged.permute(1, 2, 0).contiguous(),
            reference_index=indices[ref_pos],
            noise_model=model,
            image_u8=image_u8,
            ca=ca,
            diagnostics=diagnostics,
            noise_map=noise_map,
            skipped_frames=skipped,
            timings=timings,
        )


def process_burst(frames: Sequence[FrameLike], metadata: Optional[CaptureMetadata] = None,
                  config: Optional[BurstConfig] = None,
                  ca_coefficients: Optional[CACoefficients] = None,
                  progress: Optional[ProgressCallback] = None) -> BurstResult:
    """Merge a burst with a fresh pipeline; see BurstPipeline.process."""
    return BurstPipeline(config).process(frames, metadata, ca_coefficients, progress)
