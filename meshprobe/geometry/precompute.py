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

"""Precomputed barycentric geometry of tetrahedra and triangles.

Every cell stores one main determinant and one row of four cofactor
coefficients per vertex, so that the barycentric weight of vertex ``i`` for an
arbitrary point ``p`` is a single dot product and a division:

.. math::

    w_i(p) = \\frac{m_{i,0} p_x + m_{i,1} p_y + m_{i,2} p_z + m_{i,3}}{D}

For tetrahedra ``D`` is the determinant of the 4x4 matrix whose rows are the
homogeneous vertex coordinates ``[x, y, z, 1]`` and ``m`` is its cofactor
matrix (Cramer's rule). For triangles embedded in 3D, ``D = n . n`` with
``n`` the (unnormalized) face normal, and ``m`` encodes the signed sub-areas
of the point's orthogonal projection onto the triangle plane.

The geometry is derived data: it is computed once per mesh and never patched.
"""

import logging

import torch
from tensordict import tensorclass

logger = logging.getLogger(__name__)

# Exponent k of the longest edge L in the scale-free degeneracy test
# |D| <= tol * L**k, keyed by vertices per cell.
_DETERMINANT_LENGTH_POWER = {4: 3, 3: 4}


# ---------------------------------------------------------------------------
# CellGeometry tensorclass
# ---------------------------------------------------------------------------


@tensorclass
class CellGeometry:
    """Per-cell algebra needed for O(1) barycentric evaluation.

    Indexing a ``CellGeometry`` with a tensor of cell indices gathers the
    records of those cells (batch dimension is the cell dimension).

    Attributes
    ----------
    main_det : torch.Tensor
        Main determinant of every cell, shape ``(n_cells,)``.
    minor_dets : torch.Tensor
        Cofactor coefficients, shape ``(n_cells, n_vertices_per_cell, 4)``.
    centroids : torch.Tensor
        Arithmetic mean of each cell's vertices, shape ``(n_cells, 3)``.
    is_degenerate : torch.Tensor
        Whether the cell's vertices are numerically coplanar (tetrahedra) or
        collinear (triangles), shape ``(n_cells,)``, dtype bool.
    """

    main_det: torch.Tensor  # (n_cells,)
    minor_dets: torch.Tensor  # (n_cells, n_vertices_per_cell, 4)
    centroids: torch.Tensor  # (n_cells, 3)
    is_degenerate: torch.Tensor  # (n_cells,), bool

    @property
    def n_cells(self) -> int:
        return self.main_det.shape[0]

    @property
    def n_vertices_per_cell(self) -> int:
        return self.minor_dets.shape[1]

    def weights(self, points: torch.Tensor, cell_indices: torch.Tensor) -> torch.Tensor:
        """Barycentric weights of paired points and cells.

        Parameters
        ----------
        points : torch.Tensor
            Query points, shape ``(n_pairs, 3)``.
        cell_indices : torch.Tensor
            Cell paired with each point, shape ``(n_pairs,)``.

        Returns
        -------
        torch.Tensor
            Weights, shape ``(n_pairs, n_vertices_per_cell)``. Rows sum to 1
            up to rounding. Rows of degenerate cells are not finite.
        """
        minors = self.minor_dets[cell_indices]  # (n_pairs, V, 4)
        numerators = (minors[..., :3] * points.unsqueeze(1)).sum(dim=-1) + minors[..., 3]
        return numerators / self.main_det[cell_indices].unsqueeze(-1)

    def contains(
        self,
        points: torch.Tensor,
        cell_indices: torch.Tensor,
        lower: float,
        upper: float,
    ) -> torch.Tensor:
        """Test whether each point lies inside its paired cell.

        Parameters
        ----------
        points : torch.Tensor
            Query points, shape ``(n_pairs, 3)``.
        cell_indices : torch.Tensor
            Cell paired with each point, shape ``(n_pairs,)``.
        lower, upper : float
            Containment band every weight must fall into.

        Returns
        -------
        torch.Tensor
            Boolean mask, shape ``(n_pairs,)``. Always ``False`` for
            degenerate cells.
        """
        if len(cell_indices) == 0:
            return torch.zeros(0, dtype=torch.bool, device=points.device)
        w = self.weights(points, cell_indices)
        inside = ((w >= lower) & (w <= upper)).all(dim=-1)
        return inside & ~self.is_degenerate[cell_indices]


# ---------------------------------------------------------------------------
# Determinant helpers
# ---------------------------------------------------------------------------


def _det3(rows: torch.Tensor) -> torch.Tensor:
    """Determinant of 3x3 matrices given as rows, shape ``(..., 3, 3)`` -> ``(...)``.

    Written as the scalar triple product so that integer-valued coordinates
    produce exact determinants.
    """
    a, b, c = rows[..., 0, :], rows[..., 1, :], rows[..., 2, :]
    return (a * torch.linalg.cross(b, c, dim=-1)).sum(dim=-1)


def _longest_edge(vertices: torch.Tensor) -> torch.Tensor:
    """Longest pairwise vertex distance per cell, ``(n_cells, V, 3)`` -> ``(n_cells,)``."""
    diffs = vertices.unsqueeze(2) - vertices.unsqueeze(1)  # (n_cells, V, V, 3)
    return diffs.square().sum(dim=-1).amax(dim=(1, 2)).sqrt()


def _flag_degenerate(
    main_det: torch.Tensor,
    vertices: torch.Tensor,
    degeneracy_tolerance: float,
) -> torch.Tensor:
    power = _DETERMINANT_LENGTH_POWER[vertices.shape[1]]
    scale = _longest_edge(vertices) ** power
    is_degenerate = main_det.abs() <= degeneracy_tolerance * scale

    n_degenerate = int(is_degenerate.sum())
    if n_degenerate > 0:
        logger.warning(
            "%d of %d cells are degenerate and will only serve nearest-cell queries",
            n_degenerate,
            len(main_det),
        )
    return is_degenerate


def _validate(points: torch.Tensor, cells: torch.Tensor, n_vertices: int) -> None:
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(f"points must have shape (n_points, 3), got {tuple(points.shape)}")
    if not points.is_floating_point():
        raise TypeError(f"points must be floating-point, got {points.dtype=}")
    if cells.ndim != 2 or cells.shape[1] != n_vertices:
        raise ValueError(
            f"cells must have shape (n_cells, {n_vertices}), got {tuple(cells.shape)}"
        )
    if torch.is_floating_point(cells):
        raise TypeError(f"cells must have an integer dtype, got {cells.dtype=}")


# ---------------------------------------------------------------------------
# Precomputation
# ---------------------------------------------------------------------------


def precompute_tetrahedra(
    points: torch.Tensor,
    cells: torch.Tensor,
    degeneracy_tolerance: float = 1e-12,
) -> CellGeometry:
    """Precompute barycentric geometry of tetrahedra.

    Parameters
    ----------
    points : torch.Tensor
        Node coordinates, shape ``(n_points, 3)``.
    cells : torch.Tensor
        Tetrahedra, shape ``(n_cells, 4)``.
    degeneracy_tolerance : float, optional
        Relative threshold on ``|det| / L**3``.

    Returns
    -------
    CellGeometry
        Geometry with ``minor_dets`` of shape ``(n_cells, 4, 4)``.

    Examples
    --------
    >>> points = torch.tensor(
    ...     [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]]
    ... )
    >>> geom = precompute_tetrahedra(points, torch.tensor([[0, 1, 2, 3]]))
    >>> geom.weights(torch.tensor([[0.25, 0.25, 0.25]]), torch.tensor([0]))
    tensor([[0.2500, 0.2500, 0.2500, 0.2500]])
    """
    _validate(points, cells, 4)
    if degeneracy_tolerance < 0:
        raise ValueError(f"degeneracy_tolerance must be non-negative, got {degeneracy_tolerance=}")

    vertices = points[cells]  # (n_cells, 4, 3)
    ones = torch.ones_like(vertices[..., :1])
    homogeneous = torch.cat([vertices, ones], dim=-1)  # (n_cells, 4, 4)

    ### All 16 3x3 minors at once: minor (i, k) drops row i and column k
    keep = torch.tensor(
        [[j for j in range(4) if j != i] for i in range(4)],
        dtype=torch.long,
        device=points.device,
    )  # (4, 3)
    sub = homogeneous[:, keep[:, None, :, None], keep[None, :, None, :]]  # (n_cells, 4, 4, 3, 3)
    minors = _det3(sub)  # (n_cells, 4, 4)

    parity = torch.arange(4, device=points.device)
    signs = 1 - 2 * ((parity[:, None] + parity[None, :]) % 2)  # (4, 4) of +-1
    cofactors = minors * signs.to(minors.dtype)

    ### Laplace expansion along the first row
    main_det = (homogeneous[:, 0, :] * cofactors[:, 0, :]).sum(dim=-1)

    return CellGeometry(
        main_det=main_det,
        minor_dets=cofactors,
        centroids=vertices.mean(dim=1),
        is_degenerate=_flag_degenerate(main_det, vertices, degeneracy_tolerance),
        batch_size=torch.Size([cells.shape[0]]),
    )


def precompute_triangles(
    points: torch.Tensor,
    cells: torch.Tensor,
    degeneracy_tolerance: float = 1e-12,
) -> CellGeometry:
    """Precompute barycentric geometry of triangles embedded in 3D.

    The weights describe the orthogonal projection of a point onto the
    triangle plane, so a point anywhere above or below a triangle "projects
    inside" it when its weights fall into the containment band.

    Parameters
    ----------
    points : torch.Tensor
        Node coordinates, shape ``(n_points, 3)``.
    cells : torch.Tensor
        Triangles, shape ``(n_cells, 3)``.
    degeneracy_tolerance : float, optional
        Relative threshold on ``|n . n| / L**4``.

    Returns
    -------
    CellGeometry
        Geometry with ``minor_dets`` of shape ``(n_cells, 3, 4)``.
    """
    _validate(points, cells, 3)
    if degeneracy_tolerance < 0:
        raise ValueError(f"degeneracy_tolerance must be non-negative, got {degeneracy_tolerance=}")

    vertices = points[cells]  # (n_cells, 3, 3)
    v0, v1, v2 = vertices[:, 0], vertices[:, 1], vertices[:, 2]
    normal = torch.linalg.cross(v1 - v0, v2 - v0, dim=-1)  # (n_cells, 3)
    main_det = (normal * normal).sum(dim=-1)

    ### Edge opposite each vertex, walked in the triangle's winding order
    starts = torch.stack([v1, v2, v0], dim=1)  # (n_cells, 3, 3)
    ends = torch.stack([v2, v0, v1], dim=1)
    coeffs = torch.linalg.cross(normal.unsqueeze(1).expand_as(starts), ends - starts, dim=-1)
    offsets = -(coeffs * starts).sum(dim=-1, keepdim=True)  # (n_cells, 3, 1)

    return CellGeometry(
        main_det=main_det,
        minor_dets=torch.cat([coeffs, offsets], dim=-1),
        centroids=vertices.mean(dim=1),
        is_degenerate=_flag_degenerate(main_det, vertices, degeneracy_tolerance),
        batch_size=torch.Size([cells.shape[0]]),
    )


def precompute_geometry(
    points: torch.Tensor,
    cells: torch.Tensor,
    degeneracy_tolerance: float = 1e-12,
) -> CellGeometry:
    """Dispatch to :func:`precompute_tetrahedra` or :func:`precompute_triangles` by cell arity."""
    if cells.ndim == 2 and cells.shape[1] == 4:
        return precompute_tetrahedra(points, cells, degeneracy_tolerance)
    if cells.ndim == 2 and cells.shape[1] == 3:
        return precompute_triangles(points, cells, degeneracy_tolerance)
    raise ValueError(
        f"cells must be tetrahedra (n_cells, 4) or triangles (n_cells, 3), got {tuple(cells.shape)}"
    )
