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

"""Linear blending of node solutions with barycentric weights.

Three entry points cover the combined, vector-only and scalar-only cases so
that hot loops needing a single channel do not gather the other one.
Outside its cell a point still gets a value: the weights simply leave
``[0, 1]`` and the result is a linear extrapolation.
"""

import torch

from meshprobe.geometry.precompute import CellGeometry
from meshprobe.mesh.field_mesh import FieldMesh


def _check_pairs(points: torch.Tensor, cells: torch.Tensor, n_cells: int) -> None:
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(f"points must have shape (n, 3), got {tuple(points.shape)}")
    if cells.shape != (points.shape[0],):
        raise ValueError(
            f"cells must have shape ({points.shape[0]},), got {tuple(cells.shape)}"
        )
    if len(cells) > 0 and (int(cells.min()) < 0 or int(cells.max()) >= n_cells):
        raise ValueError(
            f"cells must lie in [0, {n_cells}), got "
            f"min={int(cells.min())}, max={int(cells.max())}"
        )


def interpolation_weights(
    geometry: CellGeometry,
    points: torch.Tensor,
    cells: torch.Tensor,
) -> torch.Tensor:
    """Barycentric weights used for sampling, shape ``(n, n_vertices_per_cell)``.

    Degenerate cells have no well-defined weights; they get the uniform
    weights ``1 / n_vertices_per_cell`` (the cell average) instead.
    """
    _check_pairs(points, cells, geometry.n_cells)
    weights = geometry.weights(points, cells)
    degenerate = geometry.is_degenerate[cells]
    if degenerate.any():
        uniform = torch.full_like(weights, 1.0 / geometry.n_vertices_per_cell)
        weights = torch.where(degenerate.unsqueeze(-1), uniform, weights)
    return weights


def sample_vector(
    mesh: FieldMesh,
    geometry: CellGeometry,
    points: torch.Tensor,
    cells: torch.Tensor,
) -> torch.Tensor:
    """Interpolate the vector solution, shape ``(n, 3)``."""
    weights = interpolation_weights(geometry, points, cells)
    node_values = mesh.vector[mesh.cells[cells]]  # (n, V, 3)
    return (weights.unsqueeze(-1) * node_values).sum(dim=1)


def sample_scalar(
    mesh: FieldMesh,
    geometry: CellGeometry,
    points: torch.Tensor,
    cells: torch.Tensor,
) -> torch.Tensor:
    """Interpolate the scalar solution, shape ``(n,)``."""
    weights = interpolation_weights(geometry, points, cells)
    node_values = mesh.scalar[mesh.cells[cells]]  # (n, V)
    return (weights * node_values).sum(dim=1)


def sample_solution(
    mesh: FieldMesh,
    geometry: CellGeometry,
    points: torch.Tensor,
    cells: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Interpolate vector and scalar solution with one weight evaluation.

    Parameters
    ----------
    mesh : FieldMesh
        Mesh carrying the node solution.
    geometry : CellGeometry
        Precomputed geometry of ``mesh``.
    points : torch.Tensor
        Query points, shape ``(n, 3)``.
    cells : torch.Tensor
        Cell to interpolate in for each point, shape ``(n,)``, usually the
        output of the point locator.

    Returns
    -------
    tuple[torch.Tensor, torch.Tensor]
        ``(vector, scalar)`` of shapes ``(n, 3)`` and ``(n,)``.
    """
    weights = interpolation_weights(geometry, points, cells)
    vertex_ids = mesh.cells[cells]  # (n, V)
    vector = (weights.unsqueeze(-1) * mesh.vector[vertex_ids]).sum(dim=1)
    scalar = (weights * mesh.scalar[vertex_ids]).sum(dim=1)
    return vector, scalar
