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

"""Tests for the geometry precomputer."""

import logging

import pytest
import torch

from meshprobe.geometry import (
    CellGeometry,
    precompute_geometry,
    precompute_tetrahedra,
    precompute_triangles,
)


def random_convex_weights(n: int, n_vertices: int, seed: int = 0) -> torch.Tensor:
    """Strictly positive weights summing to 1, shape (n, n_vertices)."""
    generator = torch.Generator().manual_seed(seed)
    raw = torch.rand(n, n_vertices, generator=generator, dtype=torch.float64) + 0.05
    return raw / raw.sum(dim=1, keepdim=True)


class TestTetrahedra:
    """Barycentric geometry of tetrahedra."""

    def test_unit_tet_determinant(self, unit_tet):
        """|main_det| is six times the volume."""
        points, cells, _ = unit_tet
        geometry = precompute_tetrahedra(points, cells)
        assert isinstance(geometry, CellGeometry)
        assert geometry.n_cells == 1
        assert geometry.n_vertices_per_cell == 4
        assert abs(float(geometry.main_det[0])) == pytest.approx(1.0)

    def test_weights_at_vertices_are_identity(self, unit_tet):
        points, cells, _ = unit_tet
        geometry = precompute_tetrahedra(points, cells)
        weights = geometry.weights(points, torch.zeros(4, dtype=torch.long))
        torch.testing.assert_close(weights, torch.eye(4, dtype=torch.float64))

    def test_weights_at_centroid(self, unit_tet):
        points, cells, _ = unit_tet
        geometry = precompute_tetrahedra(points, cells)
        weights = geometry.weights(geometry.centroids, torch.tensor([0]))
        torch.testing.assert_close(weights, torch.full((1, 4), 0.25, dtype=torch.float64))

    def test_weights_recover_convex_combinations(self, kuhn_cube):
        """Weights of a convex combination of a cell's nodes are the combination."""
        points, cells = kuhn_cube
        geometry = precompute_tetrahedra(points, cells)
        cell_ids = torch.arange(len(cells))
        combos = random_convex_weights(len(cells), 4)
        query = (combos.unsqueeze(-1) * points[cells]).sum(dim=1)

        weights = geometry.weights(query, cell_ids)
        torch.testing.assert_close(weights, combos, atol=1e-9, rtol=0)
        torch.testing.assert_close(
            weights.sum(dim=1), torch.ones(len(cells), dtype=torch.float64), atol=1e-9, rtol=0
        )

    def test_kuhn_cells_have_equal_volume(self, kuhn_cube):
        points, cells = kuhn_cube
        geometry = precompute_tetrahedra(points, cells)
        torch.testing.assert_close(
            geometry.main_det.abs(),
            torch.full((len(cells),), 1.0 / 27.0, dtype=torch.float64),
        )
        assert not geometry.is_degenerate.any()

    def test_contains_respects_band(self, unit_tet):
        points, cells, _ = unit_tet
        geometry = precompute_tetrahedra(points, cells)
        query = torch.tensor(
            [[0.1, 0.1, 0.1], [-0.05, 0.2, 0.2], [-0.5, 0.2, 0.2]], dtype=torch.float64
        )
        cell_ids = torch.zeros(3, dtype=torch.long)
        assert geometry.contains(query, cell_ids, -0.1, 1.1).tolist() == [True, True, False]
        assert geometry.contains(query, cell_ids, 0.0, 1.0).tolist() == [True, False, False]

    def test_degenerate_cell_flagged(self, caplog):
        """Coplanar nodes are flagged, logged, and never contain a point."""
        points = torch.tensor(
            [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [1.0, 1.0, 0.0]],
            dtype=torch.float64,
        )
        with caplog.at_level(logging.WARNING, logger="meshprobe.geometry.precompute"):
            geometry = precompute_tetrahedra(points, torch.tensor([[0, 1, 2, 3]]))
        assert geometry.is_degenerate.tolist() == [True]
        assert "degenerate" in caplog.text
        query = torch.tensor([[0.5, 0.5, 0.0]], dtype=torch.float64)
        assert not geometry.contains(query, torch.tensor([0]), -0.1, 1.1).any()

    def test_degeneracy_test_is_scale_free(self, unit_tet):
        """Shrinking a valid cell does not make it degenerate."""
        points, cells, _ = unit_tet
        geometry = precompute_tetrahedra(points * 1e-4, cells)
        assert not geometry.is_degenerate.any()

    def test_negative_tolerance_raises(self, unit_tet):
        points, cells, _ = unit_tet
        with pytest.raises(ValueError, match="degeneracy_tolerance"):
            precompute_tetrahedra(points, cells, degeneracy_tolerance=-1.0)

    def test_empty_mesh(self):
        geometry = precompute_tetrahedra(
            torch.empty((0, 3), dtype=torch.float64), torch.empty((0, 4), dtype=torch.long)
        )
        assert geometry.n_cells == 0


class TestTriangles:
    """Projected barycentric geometry of triangles in 3D."""

    @pytest.fixture
    def triangle(self):
        points = torch.tensor(
            [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]], dtype=torch.float64
        )
        return points, torch.tensor([[0, 1, 2]])

    def test_main_det_is_squared_normal(self, triangle):
        points, cells = triangle
        geometry = precompute_triangles(points, cells)
        assert float(geometry.main_det[0]) == pytest.approx(1.0)
        assert geometry.minor_dets.shape == (1, 3, 4)

    def test_weights_of_projection(self, triangle):
        """A point above the plane gets the weights of its projection."""
        points, cells = triangle
        geometry = precompute_triangles(points, cells)
        query = torch.tensor([[0.2, 0.3, 5.0]], dtype=torch.float64)
        torch.testing.assert_close(
            geometry.weights(query, torch.tensor([0])),
            torch.tensor([[0.5, 0.2, 0.3]], dtype=torch.float64),
        )
        assert geometry.contains(query, torch.tensor([0]), 0.0, 1.0).all()

    def test_tilted_triangle_convex_combinations(self):
        points = torch.tensor(
            [[1.0, 0.0, 2.0], [3.0, 1.0, -1.0], [0.5, 4.0, 1.0]], dtype=torch.float64
        )
        geometry = precompute_triangles(points, torch.tensor([[0, 1, 2]]))
        combos = random_convex_weights(16, 3, seed=3)
        query = combos @ points
        weights = geometry.weights(query, torch.zeros(16, dtype=torch.long))
        torch.testing.assert_close(weights, combos, atol=1e-9, rtol=0)

    def test_collinear_triangle_is_degenerate(self):
        points = torch.tensor(
            [[0.0, 0.0, 0.0], [1.0, 1.0, 1.0], [2.0, 2.0, 2.0]], dtype=torch.float64
        )
        geometry = precompute_triangles(points, torch.tensor([[0, 1, 2]]))
        assert geometry.is_degenerate.all()


class TestDispatch:
    def test_dispatch_by_arity(self, unit_tet, planar_surface):
        points, cells, _ = unit_tet
        assert precompute_geometry(points, cells).n_vertices_per_cell == 4
        points, cells = planar_surface
        assert precompute_geometry(points, cells).n_vertices_per_cell == 3

    def test_unsupported_arity_raises(self, unit_tet):
        points, _, _ = unit_tet
        with pytest.raises(ValueError, match="tetrahedra"):
            precompute_geometry(points, torch.tensor([[0, 1]]))
