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

"""Tests for barycentric field sampling."""

import pytest
import torch

from meshprobe import FieldMesh
from meshprobe.geometry import precompute_geometry
from meshprobe.interpolation import (
    interpolation_weights,
    sample_scalar,
    sample_solution,
    sample_vector,
)


@pytest.fixture
def cube_setup(kuhn_cube, linear_field):
    points, cells = kuhn_cube
    vector, scalar = linear_field(points)
    mesh = FieldMesh(points=points, cells=cells, vector=vector, scalar=scalar)
    return mesh, precompute_geometry(points, cells)


class TestUnitTetrahedron:
    """Scenario: single tetrahedron holding scalars 0, 1, 2, 3."""

    @pytest.fixture
    def setup(self, unit_tet):
        points, cells, scalar = unit_tet
        mesh = FieldMesh(points=points, cells=cells, scalar=scalar)
        return mesh, precompute_geometry(points, cells)

    def test_centroid_value(self, setup):
        mesh, geometry = setup
        value = sample_scalar(
            mesh, geometry, torch.tensor([[0.25, 0.25, 0.25]], dtype=torch.float64), torch.tensor([0])
        )
        torch.testing.assert_close(value, torch.tensor([1.5], dtype=torch.float64))

    def test_exact_at_origin_node(self, setup):
        mesh, geometry = setup
        value = sample_scalar(
            mesh, geometry, torch.zeros((1, 3), dtype=torch.float64), torch.tensor([0])
        )
        assert value.tolist() == [0.0]

    def test_missing_vector_samples_zero(self, setup):
        mesh, geometry = setup
        vector = sample_vector(
            mesh, geometry, torch.tensor([[0.1, 0.2, 0.3]], dtype=torch.float64), torch.tensor([0])
        )
        assert torch.equal(vector, torch.zeros((1, 3), dtype=torch.float64))


class TestLinearFields:
    """Linear interpolation reproduces linear fields."""

    def test_interior_points(self, cube_setup, linear_field):
        mesh, geometry = cube_setup
        generator = torch.Generator().manual_seed(0)
        raw = torch.rand(mesh.n_cells, 4, generator=generator, dtype=torch.float64)
        combos = raw / raw.sum(dim=1, keepdim=True)
        query = (combos.unsqueeze(-1) * mesh.points[mesh.cells]).sum(dim=1)
        cells = torch.arange(mesh.n_cells)

        vector, scalar = sample_solution(mesh, geometry, query, cells)
        expected_vector, expected_scalar = linear_field(query)
        torch.testing.assert_close(vector, expected_vector, atol=1e-9, rtol=1e-9)
        torch.testing.assert_close(scalar, expected_scalar, atol=1e-9, rtol=1e-9)

    def test_exact_at_nodes(self, cube_setup):
        """Every node of every cell returns that node's stored solution."""
        mesh, geometry = cube_setup
        cells = torch.arange(mesh.n_cells).repeat_interleave(4)
        node_ids = mesh.cells.reshape(-1)
        vector, scalar = sample_solution(mesh, geometry, mesh.points[node_ids], cells)
        torch.testing.assert_close(vector, mesh.vector[node_ids], atol=1e-12, rtol=1e-12)
        torch.testing.assert_close(scalar, mesh.scalar[node_ids], atol=1e-12, rtol=1e-12)

    def test_extrapolation_outside_cell(self, cube_setup, linear_field):
        """Outside its cell the sampler extrapolates linearly."""
        mesh, geometry = cube_setup
        query = torch.tensor([[2.0, -1.0, 0.5]], dtype=torch.float64)
        scalar = sample_scalar(mesh, geometry, query, torch.tensor([0]))
        torch.testing.assert_close(scalar, linear_field(query)[1], atol=1e-9, rtol=1e-9)

    def test_single_channel_entry_points_agree(self, cube_setup):
        mesh, geometry = cube_setup
        query = mesh.cell_centroids
        cells = torch.arange(mesh.n_cells)
        vector, scalar = sample_solution(mesh, geometry, query, cells)
        assert torch.equal(sample_vector(mesh, geometry, query, cells), vector)
        assert torch.equal(sample_scalar(mesh, geometry, query, cells), scalar)


class TestDegenerateCells:
    def test_uniform_weights(self):
        """A flat cell yields the average of its node values, not NaN."""
        points = torch.tensor(
            [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [1.0, 1.0, 0.0]],
            dtype=torch.float64,
        )
        cells = torch.tensor([[0, 1, 2, 3]])
        mesh = FieldMesh(
            points=points, cells=cells, scalar=torch.tensor([1.0, 2.0, 3.0, 6.0])
        )
        geometry = precompute_geometry(points, cells)
        query = torch.tensor([[0.3, 0.3, 0.0]], dtype=torch.float64)
        weights = interpolation_weights(geometry, query, torch.tensor([0]))
        torch.testing.assert_close(weights, torch.full((1, 4), 0.25, dtype=torch.float64))
        assert sample_scalar(mesh, geometry, query, torch.tensor([0])).tolist() == [3.0]


class TestValidation:
    def test_cell_out_of_range(self, cube_setup):
        mesh, geometry = cube_setup
        with pytest.raises(ValueError, match="cells"):
            sample_scalar(mesh, geometry, mesh.points[:1], torch.tensor([mesh.n_cells]))

    def test_mismatched_lengths(self, cube_setup):
        mesh, geometry = cube_setup
        with pytest.raises(ValueError, match="shape"):
            sample_scalar(mesh, geometry, mesh.points[:2], torch.tensor([0]))
