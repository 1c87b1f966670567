# SPDX-FileCopyrightText: Copyright (c) 2023 - 2026 NVIDIA CORPORATION & AFFILIATES.
# SPDX-FileCopyrightText: All rights reserved.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Tests for space-filling curve ordering."""

import pytest
import torch

from meshprobe.spatial import (
    compute_hilbert_codes,
    compute_morton_codes,
    invert_permutation,
    spatial_sort_order,
)


def integer_grid(n: int) -> torch.Tensor:
    coords = torch.arange(n, dtype=torch.float64)
    x, y, z = torch.meshgrid(coords, coords, coords, indexing="ij")
    return torch.stack([x.flatten(), y.flatten(), z.flatten()], dim=1)


class TestMortonCodes:
    def test_codes_are_non_negative(self):
        points = torch.rand(1000, 3, generator=torch.Generator().manual_seed(0))
        assert (compute_morton_codes(points) >= 0).all()

    def test_clusters_stay_contiguous(self):
        """Two far-apart clusters are not interleaved after sorting."""
        generator = torch.Generator().manual_seed(1)
        cluster_a = torch.rand(50, 3, generator=generator) * 0.01
        cluster_b = torch.rand(50, 3, generator=generator) * 0.01 + 10.0
        order = compute_morton_codes(torch.cat([cluster_a, cluster_b])).argsort()
        first_half = order[:50]
        assert (first_half < 50).all() or (first_half >= 50).all()


class TestHilbertCodes:
    """Tests for the Hilbert curve index."""

    def test_codes_are_unique_on_grid(self):
        codes = compute_hilbert_codes(integer_grid(4))
        assert len(torch.unique(codes)) == 64
        assert (codes >= 0).all()

    def test_consecutive_grid_points_are_adjacent(self):
        """Along the Hilbert curve every step moves to a face-adjacent grid cell."""
        points = integer_grid(4)
        order = spatial_sort_order(points, "hilbert")
        steps = (points[order][1:] - points[order][:-1]).abs().sum(dim=1)
        assert torch.equal(steps, torch.ones(63, dtype=torch.float64))

    def test_morton_is_not_adjacent(self):
        """The Z-order curve jumps, which is why Hilbert is the default."""
        points = integer_grid(4)
        order = spatial_sort_order(points, "morton")
        steps = (points[order][1:] - points[order][:-1]).abs().sum(dim=1)
        assert (steps > 1).any()

    def test_float32_input(self):
        codes = compute_hilbert_codes(integer_grid(4).float())
        assert len(torch.unique(codes)) == 64

    def test_integer_input_raises(self):
        with pytest.raises(TypeError, match="floating-point"):
            compute_hilbert_codes(torch.zeros(4, 3, dtype=torch.long))


class TestSortOrder:
    """Tests for the sort permutation and its inverse."""

    @pytest.mark.parametrize("curve", ["hilbert", "morton", "none"])
    def test_is_permutation(self, curve):
        points = torch.rand(200, 3, generator=torch.Generator().manual_seed(2))
        order = spatial_sort_order(points, curve)
        assert torch.equal(order.sort().values, torch.arange(200))

    def test_none_is_identity(self):
        points = torch.rand(10, 3, generator=torch.Generator().manual_seed(3))
        assert torch.equal(spatial_sort_order(points, "none"), torch.arange(10))

    def test_unknown_curve_raises(self):
        with pytest.raises(ValueError, match="curve"):
            spatial_sort_order(torch.zeros(3, 3), "peano")

    def test_inverse_restores_order(self):
        points = torch.rand(100, 3, generator=torch.Generator().manual_seed(4))
        order = spatial_sort_order(points, "hilbert")
        restored = points[order][invert_permutation(order)]
        assert torch.equal(restored, points)

    def test_empty_batch(self):
        order = spatial_sort_order(torch.empty((0, 3)), "hilbert")
        assert order.shape == (0,)
