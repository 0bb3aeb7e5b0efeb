"""Tests for hierarchical tile alignment."""

import pytest
import torch

from conftest import smooth_texture
from hdrplus_align import (_search_order, align_frame, gather_patches, quad_subpixel, tile_grid,
                           usable_levels)
from hdrplus_config import AlignConfig, AlignLevel
from hdrplus_errors import UnsupportedDimensionsError


def _shifted_pair(dy, dx, size=128, margin=16, seed=0):
    """Reference and comparison crops with comparison(q) == reference(q + (dy, dx))."""
    big = smooth_texture(size + 2 * margin, size + 2 * margin, seed=seed, cells=10)
    ref = big[margin:margin + size, margin:margin + size]
    cmp = big[margin + dy:margin + dy + size, margin + dx:margin + dx + size]
    return ref, cmp


class TestGeometry:

    def test_tile_grid(self):
        assert tile_grid(128, 96, 32) == (7, 5)
        assert tile_grid(20, 20, 32) == (1, 1)

    def test_gather_clamps(self):
        img = torch.arange(9.0).reshape(3, 3)
        oy = torch.tensor([[-1]])
        ox = torch.tensor([[1]])
        p = gather_patches(img, oy, ox, 3)
        assert p.shape == (1, 1, 3, 3)
        assert torch.equal(p[0, 0, 0], torch.tensor([1.0, 2.0, 2.0]))
        assert torch.equal(p[0, 0, 1], torch.tensor([1.0, 2.0, 2.0]))
        assert torch.equal(p[0, 0, 2], torch.tensor([4.0, 5.0, 5.0]))

    def test_usable_levels(self):
        cfg = AlignConfig()
        assert usable_levels(128, 128, cfg) == 4
        # 40 px: level 1 is 20 px, below the 32 px tile
        assert usable_levels(40, 200, cfg) == 1

    def test_too_small(self):
        with pytest.raises(UnsupportedDimensionsError):
            usable_levels(20, 200, AlignConfig())

    def test_search_order_starts_at_seed(self):
        order = _search_order(2)
        assert order[0] == (0, 0)
        assert len(order) == 25
        assert set(order[1:5]) == {(-1, 0), (1, 0), (0, -1), (0, 1)}


class TestSubpixel:

    def test_recovers_quadratic_minimum(self):
        a = torch.arange(-1.0, 2.0)
        U, V = torch.meshgrid(a, a, indexing='ij')
        costs = (U - 0.3) ** 2 + 2.0 * (V + 0.2) ** 2 + 0.5 * (U - 0.3) * (V + 0.2)
        off = quad_subpixel(costs[None].double())
        assert torch.allclose(off[0], torch.tensor([0.3, -0.2], dtype=torch.float64), atol=1e-9)

    def test_flat_cost_gives_zero(self):
        assert torch.equal(quad_subpixel(torch.zeros(2, 3, 3)), torch.zeros(2, 2))

    def test_saddle_gives_zero(self):
        a = torch.arange(-1.0, 2.0)
        U, V = torch.meshgrid(a, a, indexing='ij')
        assert torch.equal(quad_subpixel((U * U - V * V)[None]), torch.zeros(1, 2))

    def test_offset_clamped(self):
        a = torch.arange(-1.0, 2.0)
        U, V = torch.meshgrid(a, a, indexing='ij')
        off = quad_subpixel(((U - 0.9) ** 2 + V ** 2)[None])
        assert off[0, 0] == pytest.approx(0.5)


class TestAlignFrame:

    @pytest.mark.parametrize("shift", [(3, -2), (-5, 4), (0, 0)])
    def test_global_shift(self, shift):
        """Interior tiles recover an integer translation exactly."""
        ref, cmp = _shifted_pair(*shift)
        field = align_frame(ref, cmp, AlignConfig())
        assert field.tile_size == 32 and field.step == 16
        assert field.grid_shape == (7, 7)
        inner = field.disp[:, 1:-1, 1:-1]
        assert torch.all(inner[0] == shift[0])
        assert torch.all(inner[1] == shift[1])

    def test_identical_frames(self):
        ref, _ = _shifted_pair(0, 0)
        field = align_frame(ref, ref.clone(), AlignConfig())
        assert torch.all(field.disp == 0)

    def test_flat_frames_stay_at_zero(self):
        flat = torch.full((96, 96), 0.4)
        field = align_frame(flat, flat.clone(), AlignConfig())
        assert torch.all(field.disp == 0)

    def test_box_pyramid_without_correction(self):
        ref, cmp = _shifted_pair(2, 1)
        cfg = AlignConfig(pyramid="box", upsampling_correction=False)
        inner = align_frame(ref, cmp, cfg).disp[:, 1:-1, 1:-1]
        assert torch.all(inner[0] == 2)
        assert torch.all(inner[1] == 1)

    def test_single_level(self):
        ref, cmp = _shifted_pair(1, -1)
        cfg = AlignConfig(levels=(AlignLevel(16, 3, False),))
        inner = align_frame(ref, cmp, cfg).disp[:, 1:-1, 1:-1]
        assert torch.all(inner[0] == 1)
        assert torch.all(inner[1] == -1)
