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

"""Pytest configuration and shared fixtures for meshprobe tests.

The reference meshes are small enough to reason about by hand: a single unit
tetrahedron, two far-apart tetrahedra, a Kuhn-triangulated cube volume and a
triangulated planar surface. Solutions attached to the larger meshes are
linear in space, so linear interpolation reproduces them exactly.
"""

import pytest
import torch

### Pytest Hooks ###


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers", "cuda: mark test as requiring CUDA (skipped if unavailable)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip tests marked with 'cuda' if CUDA is not available."""
    if torch.cuda.is_available():
        return

    skip_cuda = pytest.mark.skip(reason="CUDA not available")
    for item in items:
        if "cuda" in item.keywords:
            item.add_marker(skip_cuda)


### Mesh Generators ###


def make_kuhn_cube(
    subdivisions: int = 3,
    size: float = 1.0,
    dtype: torch.dtype = torch.float64,
    device: torch.device | str = "cpu",
) -> tuple[torch.Tensor, torch.Tensor]:
    """Points and tetrahedra of the cube ``[0, size]^3``, 6 Kuhn tets per sub-cube."""
    n = subdivisions + 1
    coords_1d = torch.linspace(0.0, size, n, dtype=dtype, device=device)
    x, y, z = torch.meshgrid(coords_1d, coords_1d, coords_1d, indexing="ij")
    points = torch.stack([x.flatten(), y.flatten(), z.flatten()], dim=1)

    cell_idx = torch.arange(subdivisions, device=device)
    ii, jj, kk = torch.meshgrid(cell_idx, cell_idx, cell_idx, indexing="ij")
    ii, jj, kk = ii.flatten(), jj.flatten(), kk.flatten()
    corner = [
        (ii + di) * n * n + (jj + dj) * n + (kk + dk)
        for dk in (0, 1)
        for dj in (0, 1)
        for di in (0, 1)
    ]
    cube_verts = torch.stack(corner, dim=1)  # (n_cubes, 8)

    # All tets share the body diagonal v0-v7
    tet_pattern = torch.tensor(
        [
            [0, 1, 3, 7],
            [0, 1, 5, 7],
            [0, 2, 3, 7],
            [0, 2, 6, 7],
            [0, 4, 5, 7],
            [0, 4, 6, 7],
        ],
        dtype=torch.int64,
        device=device,
    )
    cells = cube_verts[:, tet_pattern].reshape(-1, 4)
    return points, cells


def make_planar_surface(
    subdivisions: int = 4,
    size: float = 1.0,
    dtype: torch.dtype = torch.float64,
    device: torch.device | str = "cpu",
) -> tuple[torch.Tensor, torch.Tensor]:
    """Points and triangles of the square ``[0, size]^2`` in the plane ``z = 0``."""
    n = subdivisions + 1
    coords_1d = torch.linspace(0.0, size, n, dtype=dtype, device=device)
    x, y = torch.meshgrid(coords_1d, coords_1d, indexing="ij")
    points = torch.stack([x.flatten(), y.flatten(), torch.zeros_like(x.flatten())], dim=1)

    cell_idx = torch.arange(subdivisions, device=device)
    ii, jj = torch.meshgrid(cell_idx, cell_idx, indexing="ij")
    ii, jj = ii.flatten(), jj.flatten()
    v00 = ii * n + jj
    v10 = (ii + 1) * n + jj
    v01 = ii * n + jj + 1
    v11 = (ii + 1) * n + jj + 1
    lower = torch.stack([v00, v10, v11], dim=1)
    upper = torch.stack([v00, v11, v01], dim=1)
    cells = torch.stack([lower, upper], dim=1).reshape(-1, 3)
    return points, cells


def linear_solution(points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
    """A linear vector field and a linear scalar field evaluated at ``points``."""
    matrix = torch.tensor(
        [[1.0, 2.0, -1.0], [0.5, -3.0, 2.0], [4.0, 0.0, 1.0]],
        dtype=points.dtype,
        device=points.device,
    )
    offset = torch.tensor([0.25, -1.0, 2.0], dtype=points.dtype, device=points.device)
    gradient = torch.tensor([3.0, -2.0, 5.0], dtype=points.dtype, device=points.device)
    return points @ matrix.T + offset, points @ gradient + 7.0


### Fixtures ###


@pytest.fixture(
    params=[
        "cpu",
        pytest.param("cuda", marks=pytest.mark.cuda),
    ]
)
def device(request):
    """Parametrize tests over all available devices (CPU, CUDA)."""
    return request.param


@pytest.fixture
def unit_tet():
    """Points, cells and scalar ``0, 1, 2, 3`` of the unit tetrahedron."""
    points = torch.tensor(
        [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]],
        dtype=torch.float64,
    )
    cells = torch.tensor([[0, 1, 2, 3]])
    scalar = torch.tensor([0.0, 1.0, 2.0, 3.0], dtype=torch.float64)
    return points, cells, scalar


@pytest.fixture
def disjoint_tets():
    """Two unit tetrahedra, A at the origin and B shifted by 10 along x."""
    base = torch.tensor(
        [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]],
        dtype=torch.float64,
    )
    shift = torch.tensor([10.0, 0.0, 0.0], dtype=torch.float64)
    points = torch.cat([base, base + shift])
    cells = torch.tensor([[0, 1, 2, 3], [4, 5, 6, 7]])
    return points, cells


@pytest.fixture
def kuhn_cube():
    """Arrays ``(points, cells)`` of a 3x3x3 Kuhn-triangulated unit cube."""
    return make_kuhn_cube(subdivisions=3)


@pytest.fixture
def planar_surface():
    """Arrays ``(points, cells)`` of a 4x4 triangulated unit square at z = 0."""
    return make_planar_surface(subdivisions=4)


@pytest.fixture
def linear_field():
    """Callable mapping points to a linear ``(vector, scalar)`` solution."""
    return linear_solution


@pytest.fixture
def cube_engine(kuhn_cube):
    """Tetrahedron engine over the Kuhn cube carrying a linear solution."""
    from meshprobe import TetrahedronEngine

    points, cells = kuhn_cube
    vector, scalar = linear_solution(points)
    return TetrahedronEngine.from_arrays(points, cells, vector=vector, scalar=scalar)


@pytest.fixture
def surface_engine(planar_surface):
    """Triangle engine over the planar surface carrying a linear solution."""
    from meshprobe import TriangleEngine

    points, cells = planar_surface
    vector, scalar = linear_solution(points)
    return TriangleEngine.from_arrays(points, cells, vector=vector, scalar=scalar)
