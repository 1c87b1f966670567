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

import torch
from tensordict import TensorDict

from meshprobe.mesh._neighbors import compute_face_neighbors

VECTOR_KEY = "vector"
SCALAR_KEY = "scalar"
FACE_NEIGHBORS_KEY = "face_neighbors"
CACHE_KEY = "_cache"

SUPPORTED_CELL_ARITIES = (3, 4)


def _get_cached(data: TensorDict, key: str) -> torch.Tensor | None:
    return data.get((CACHE_KEY, key), None)


def _set_cached(data: TensorDict, key: str, value: torch.Tensor) -> None:
    if CACHE_KEY not in data:
        data[CACHE_KEY] = TensorDict({}, batch_size=data.batch_size, device=data.device)
    data[(CACHE_KEY, key)] = value


class FieldMesh:
    r"""A finite-element mesh carrying a per-node solution.

    A ``FieldMesh`` is the unit of data handed over by the mesh and FEM-solve
    collaborators once per simulation step: node positions, simplicial cells
    (tetrahedra or surface triangles), and a solution made of a 3-component
    vector and a scalar on every node (electric field and potential, current
    density and temperature, ...).

    Parameters
    ----------
    points : torch.Tensor
        Node coordinates, shape :math:`(N_p, 3)`. Must be floating-point.
    cells : torch.Tensor
        Cell connectivity, shape :math:`(N_c, 4)` for tetrahedra or
        :math:`(N_c, 3)` for triangles. Must be integer dtype.
    vector : torch.Tensor, optional
        Vector part of the node solution, shape :math:`(N_p, 3)`.
    scalar : torch.Tensor, optional
        Scalar part of the node solution, shape :math:`(N_p,)`.
    face_neighbors : torch.Tensor, optional
        Face adjacency supplied by the mesh collaborator, shape
        :math:`(N_c, V)`; entry ``[c, j]`` is the cell across the face
        opposite local vertex ``j`` or ``-1``. Derived from the cells on first
        access when omitted.
    cell_data : TensorDict, optional
        Existing per-cell data (including cached values) to reuse.

    Raises
    ------
    ValueError
        If shapes are inconsistent, the cell arity is unsupported, or cells
        reference nodes that do not exist.
    TypeError
        If ``cells`` is floating-point or ``points`` is not.

    Examples
    --------
    >>> points = torch.tensor(
    ...     [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]]
    ... )
    >>> mesh = FieldMesh(
    ...     points=points,
    ...     cells=torch.tensor([[0, 1, 2, 3]]),
    ...     scalar=torch.tensor([0.0, 1.0, 2.0, 3.0]),
    ... )
    >>> mesh.n_cells, mesh.n_vertices_per_cell, mesh.has_solution
    (1, 4, True)
    """

    def __init__(
        self,
        points: torch.Tensor,
        cells: torch.Tensor,
        vector: torch.Tensor | None = None,
        scalar: torch.Tensor | None = None,
        face_neighbors: torch.Tensor | None = None,
        cell_data: TensorDict | None = None,
    ) -> None:
        self.points = points
        self.cells = cells

        ### Validate geometry before building data containers on top of it
        if self.points.ndim != 2 or self.points.shape[-1] != 3:
            raise ValueError(
                f"`points` must have shape (n_points, 3), but got {self.points.shape=}."
            )
        if not torch.is_floating_point(self.points):
            raise TypeError(
                f"`points` must be floating-point, but got {self.points.dtype=}."
            )
        if self.cells.ndim != 2 or self.cells.shape[-1] not in SUPPORTED_CELL_ARITIES:
            raise ValueError(
                f"`cells` must have shape (n_cells, 3) or (n_cells, 4), but got {self.cells.shape=}."
            )
        if torch.is_floating_point(self.cells):
            raise TypeError(
                f"`cells` must have an int-like dtype, but got {self.cells.dtype=}."
            )
        if self.points.device != self.cells.device:
            raise ValueError(
                f"`points` and `cells` must be on the same device, "
                f"but got {self.points.device=} and {self.cells.device=}."
            )
        if self.n_cells > 0 and (
            int(self.cells.min()) < 0 or int(self.cells.max()) >= self.n_points
        ):
            raise ValueError(
                f"`cells` reference nodes outside [0, {self.n_points}), got "
                f"min={int(self.cells.min())}, max={int(self.cells.max())}."
            )

        ### Per-node solution
        point_data = TensorDict(
            {}, batch_size=torch.Size([self.n_points]), device=self.points.device
        )
        if vector is not None:
            if vector.shape != (self.n_points, 3):
                raise ValueError(
                    f"`vector` must have shape ({self.n_points}, 3), but got {vector.shape=}."
                )
            point_data[VECTOR_KEY] = vector.to(self.points.dtype)
        if scalar is not None:
            if scalar.shape != (self.n_points,):
                raise ValueError(
                    f"`scalar` must have shape ({self.n_points},), but got {scalar.shape=}."
                )
            point_data[SCALAR_KEY] = scalar.to(self.points.dtype)
        self.point_data = point_data

        ### Per-cell data: adjacency arena and cached derived quantities
        if isinstance(cell_data, TensorDict):
            cell_data.batch_size = torch.Size([self.n_cells])
        else:
            cell_data = TensorDict(
                {}, batch_size=torch.Size([self.n_cells]), device=self.cells.device
            )
        self.cell_data = cell_data

        if face_neighbors is not None:
            if face_neighbors.shape != self.cells.shape:
                raise ValueError(
                    f"`face_neighbors` must have shape {tuple(self.cells.shape)}, "
                    f"but got {face_neighbors.shape=}."
                )
            if self.n_cells > 0 and (
                int(face_neighbors.min()) < -1
                or int(face_neighbors.max()) >= self.n_cells
            ):
                raise ValueError(
                    f"`face_neighbors` entries must lie in [-1, {self.n_cells})."
                )
            self.cell_data[FACE_NEIGHBORS_KEY] = face_neighbors.long()

    @property
    def n_points(self) -> int:
        return self.points.shape[0]

    @property
    def n_cells(self) -> int:
        return self.cells.shape[0]

    @property
    def n_vertices_per_cell(self) -> int:
        return self.cells.shape[-1]

    @property
    def n_spatial_dims(self) -> int:
        return self.points.shape[-1]

    @property
    def has_solution(self) -> bool:
        """Whether a vector or scalar solution is attached to the nodes."""
        return VECTOR_KEY in self.point_data.keys() or SCALAR_KEY in self.point_data.keys()

    @property
    def vector(self) -> torch.Tensor:
        """Vector node solution, shape ``(n_points, 3)``; zeros when absent."""
        if VECTOR_KEY in self.point_data.keys():
            return self.point_data[VECTOR_KEY]
        return torch.zeros_like(self.points)

    @property
    def scalar(self) -> torch.Tensor:
        """Scalar node solution, shape ``(n_points,)``; zeros when absent."""
        if SCALAR_KEY in self.point_data.keys():
            return self.point_data[SCALAR_KEY]
        return torch.zeros(
            self.n_points, dtype=self.points.dtype, device=self.points.device
        )

    @property
    def cell_centroids(self) -> torch.Tensor:
        """Arithmetic mean of the vertices of every cell, shape ``(n_cells, 3)``.

        Cached in ``cell_data["_cache"]["centroids"]``.
        """
        cached = _get_cached(self.cell_data, "centroids")
        if cached is None:
            cached = self.points[self.cells].mean(dim=1)
            _set_cached(self.cell_data, "centroids", cached)
        return cached

    @property
    def face_neighbors(self) -> torch.Tensor:
        """Face-adjacency arena, shape ``(n_cells, n_vertices_per_cell)``.

        Uses the collaborator-supplied adjacency when present, otherwise derives
        it from shared faces (see
        :func:`~meshprobe.mesh._neighbors.compute_face_neighbors`).
        """
        if FACE_NEIGHBORS_KEY not in self.cell_data.keys():
            self.cell_data[FACE_NEIGHBORS_KEY] = compute_face_neighbors(self.cells)
        return self.cell_data[FACE_NEIGHBORS_KEY]

    @property
    def bounds(self) -> tuple[torch.Tensor, torch.Tensor]:
        """Axis-aligned bounding box ``(min, max)`` of the nodes, each shape ``(3,)``."""
        if self.n_points == 0:
            inf = torch.full(
                (3,), float("inf"), dtype=self.points.dtype, device=self.points.device
            )
            return inf, -inf
        return self.points.min(dim=0).values, self.points.max(dim=0).values

    def with_solution(
        self,
        vector: torch.Tensor | None = None,
        scalar: torch.Tensor | None = None,
    ) -> "FieldMesh":
        """Return a mesh with the same topology and a new node solution.

        Cell data (adjacency and cached centroids) is shared with ``self``,
        since only the solution changes.
        """
        return FieldMesh(
            points=self.points,
            cells=self.cells,
            vector=vector,
            scalar=scalar,
            cell_data=self.cell_data,
        )

    def to(
        self,
        device: torch.device | str | None = None,
        dtype: torch.dtype | None = None,
    ) -> "FieldMesh":
        """Return a copy on another device and/or with another coordinate dtype.

        ``dtype`` applies to the coordinates and the solution; cells and face
        adjacency keep their integer dtype. Cached values are dropped.
        """
        points = self.points.to(device=device, dtype=dtype)
        point_data = self.point_data.to(points.device)
        cell_data = self.cell_data.exclude(CACHE_KEY).to(points.device)
        return FieldMesh(
            points=points,
            cells=self.cells.to(device=points.device),
            vector=point_data.get(VECTOR_KEY, None),
            scalar=point_data.get(SCALAR_KEY, None),
            cell_data=cell_data,
        )

    def __repr__(self) -> str:
        return (
            f"FieldMesh(n_points={self.n_points}, n_cells={self.n_cells}, "
            f"n_vertices_per_cell={self.n_vertices_per_cell}, "
            f"has_solution={self.has_solution})"
        )
