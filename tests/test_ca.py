"""Tests for lateral chromatic aberration estimation and its cache."""

import math

import torch

from hdrplus_ca import CACache, estimate_ca
from hdrplus_config import WarpConfig
from hdrplus_types import CACoefficients


def _rings(h, w, k_red=0.0, k_blue=0.0, period=12.0):
    """Concentric sinusoidal rings; red/blue magnified by scale(r) = 1 + k·(r/r_max)²."""
    cy, cx = (h - 1) / 2.0, (w - 1) / 2.0
    r_max = math.hypot(cy, cx)
    y = torch.arange(h, dtype=torch.float64)[:, None] - cy
    x = torch.arange(w, dtype=torch.float64)[None, :] - cx
    r = torch.sqrt(y * y + x * x)

    def channel(k):
        s = 1.0 + k * (r / r_max) ** 2
        return 0.5 + 0.3 * torch.sin(2 * math.pi * (r / s) / period)

    return torch.stack([channel(k_red), channel(0.0), channel(k_blue), torch.ones(h, w, dtype=torch.float64)])


class TestEstimateCA:

    def test_no_aberration(self):
        est = estimate_ca(_rings(160, 160))
        assert abs(est.red) < 5e-4
        assert abs(est.blue) < 5e-4

    def test_red_magnification(self):
        k = 0.003
        est = estimate_ca(_rings(160, 160, k_red=k))
        assert 0.5 * k < est.red < 1.5 * k
        assert abs(est.blue) < 0.25 * k

    def test_blue_shrink(self):
        k = -0.003
        est = estimate_ca(_rings(160, 160, k_blue=k))
        assert 1.5 * k < est.blue < 0.5 * k

    def test_flat_image_has_no_edges(self):
        flat = torch.full((4, 64, 64), 0.5)
        assert estimate_ca(flat) == CACoefficients()


class TestCACache:

    def test_reuses_estimate_for_same_lens(self):
        cache = CACache()
        cfg = WarpConfig()
        first = cache.get_or_estimate(("main", 1.0), _rings(160, 160, k_red=0.003), cfg)
        # a different frame under the same key returns the cached value
        second = cache.get_or_estimate(("main", 1.0), _rings(160, 160), cfg)
        assert second == first
        assert first.red > 0

    def test_lens_change_invalidates(self):
        cache = CACache()
        cfg = WarpConfig()
        cache.get_or_estimate(("main", 1.0), _rings(160, 160, k_red=0.003), cfg)
        est = cache.get_or_estimate(("main", 2.0), _rings(160, 160), cfg)
        assert abs(est.red) < 5e-4
        assert cache.get(("main", 1.0)) is None

    def test_insignificant_estimate_is_zeroed(self):
        cache = CACache()
        est = cache.get_or_estimate("lens", _rings(160, 160), WarpConfig(ca_min_coefficient=1e-3))
        assert est == CACoefficients()

    def test_invalidate(self):
        cache = CACache()
        cache.put("lens", CACoefficients(red=0.01))
        assert cache.get("lens") == CACoefficients(red=0.01)
        assert cache.get("other") is None
        cache.invalidate()
        assert cache.get("lens") is None
