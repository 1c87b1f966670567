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

"""Face adjacency of simplicial cells.

The adjacency is stored as a dense ``(n_cells, n_faces_per_cell)`` arena:
entry ``[c, j]`` is the index of the cell sharing the face of ``c`` that is
opposite local vertex ``j``, or ``-1`` when that face lies on the boundary.
For tetrahedra a face is a triangle (3 vertices); for triangles a face is an
edge (2 vertices).
"""

from itertools import combinations

import torch

BOUNDARY = -1


def _opposite_face_indices(n_vertices_per_cell: int) -> torch.Tensor:
    """Local vertex indices of each face, ordered so that face ``j`` omits vertex ``j``.

    Examples
    --------
    >>> _opposite_face_indices(3)
    tensor([[1, 2],
            [0, 2],
            [0, 1]])
    """
    faces = [
        next(
            combo
            for combo in combinations(range(n_vertices_per_cell), n_vertices_per_cell - 1)
            if j not in combo
        )
        for j in range(n_vertices_per_cell)
    ]
    return torch.tensor(faces, dtype=torch.int64)


def extract_cell_faces(cells: torch.Tensor) -> torch.Tensor:
    """Extract every face of every cell in canonical (sorted) vertex order.

    Parameters
    ----------
    cells : torch.Tensor
        Cell connectivity, shape ``(n_cells, n_vertices_per_cell)``.

    Returns
    -------
    torch.Tensor
        Faces, shape ``(n_cells, n_vertices_per_cell, n_vertices_per_cell - 1)``.
        ``faces[c, j]`` is the face of cell ``c`` opposite its local vertex
        ``j``, with vertex indices sorted ascending so that the same face seen
        from two cells compares equal.
    """
    local = _opposite_face_indices(cells.shape[1]).to(cells.device)
    faces = cells[:, local]  # (n_cells, n_faces, n_vertices_per_face)
    return torch.sort(faces, dim=-1).values


def compute_face_neighbors(cells: torch.Tensor) -> torch.Tensor:
    """Build the face-adjacency arena of a simplicial mesh.

    Faces are deduplicated with a single :func:`torch.unique` call; a face
    appearing in exactly two cells links those cells. Boundary faces (one
    occurrence) and non-manifold faces (three or more occurrences) get
    :data:`BOUNDARY`.

    Parameters
    ----------
    cells : torch.Tensor
        Cell connectivity, shape ``(n_cells, n_vertices_per_cell)``, integer
        dtype.

    Returns
    -------
    torch.Tensor
        Neighbor arena, shape ``(n_cells, n_vertices_per_cell)``, dtype int64.

    Raises
    ------
    ValueError
        If ``cells`` is not 2D or has fewer than 2 vertices per cell.
    TypeError
        If ``cells`` has a floating-point dtype.

    Examples
    --------
    >>> cells = torch.tensor([[0, 1, 2], [1, 3, 2]])
    >>> compute_face_neighbors(cells)
    tensor([[ 1, -1, -1],
            [-1,  0, -1]])
    """
    if cells.ndim != 2:
        raise ValueError(
            f"cells must be 2D (n_cells, n_vertices_per_cell), got {cells.ndim}D "
            f"with shape {tuple(cells.shape)}"
        )
    if torch.is_floating_point(cells):
        raise TypeError(f"cells must have an integer dtype, got {cells.dtype=}")
    n_cells, n_verts = cells.shape
    if n_verts < 2:
        raise ValueError(f"cells must have at least 2 vertices, got {n_verts=}")

    device = cells.device
    neighbors = torch.full((n_cells * n_verts,), BOUNDARY, dtype=torch.int64, device=device)
    if n_cells == 0:
        return neighbors.reshape(0, n_verts)

    ### Deduplicate faces and count how many cells share each
    faces = extract_cell_faces(cells.long()).reshape(n_cells * n_verts, n_verts - 1)
    _, inverse, counts = torch.unique(
        faces, dim=0, return_inverse=True, return_counts=True
    )

    ### Occurrences of the same face are consecutive once sorted by face id
    order = torch.argsort(inverse, stable=True)
    sorted_ids = inverse[order]
    is_pair = (sorted_ids[:-1] == sorted_ids[1:]) & (counts[sorted_ids[:-1]] == 2)
    first = order[:-1][is_pair]  # flat (cell, face) slots
    second = order[1:][is_pair]

    ### Link the two owning cells through their face slots
    neighbors[first] = second // n_verts
    neighbors[second] = first // n_verts
    return neighbors.reshape(n_cells, n_verts)
