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

"""Line-oriented text exports of sample results: extended xyz and legacy VTK."""

from pathlib import Path
from typing import TYPE_CHECKING, TextIO

import numpy as np
import torch

if TYPE_CHECKING:
    from meshprobe.interpolation.results import SampleResult

VTK_VERTEX = 1
VTK_TRIANGLE = 5
VTK_TETRA = 10

_CELL_TYPE_BY_ARITY = {1: VTK_VERTEX, 3: VTK_TRIANGLE, 4: VTK_TETRA}

_FLOAT_FMT = "%.8e"


def _check_label(name: str, label: str) -> None:
    if not label or any(ch.isspace() for ch in label):
        raise ValueError(f"{name} must be a non-empty word without whitespace, got {label=}")


def _numpy(tensor: torch.Tensor) -> np.ndarray:
    return tensor.detach().cpu().numpy()


def write_xyz(
    path: str | Path,
    result: "SampleResult",
    vector_label: str = "elfield",
    scalar_label: str = "potential",
) -> None:
    """Write a result in extended xyz format.

    The file holds a count line, a properties header and one line per point:
    ``id x y z marker Fx Fy Fz |F| scalar``, where ``marker`` is ``1`` for
    points located inside the mesh.

    Parameters
    ----------
    path : str or Path
        Output file; overwritten if present.
    result : SampleResult
        Samples to write.
    vector_label, scalar_label : str, optional
        Names of the vector and scalar channels in the header.
    """
    _check_label("vector_label", vector_label)
    _check_label("scalar_label", scalar_label)
    header = (
        "Interpolation properties=id:I:1:pos:R:3:marker:I:1:"
        f"{vector_label}:R:3:{vector_label}_norm:R:1:{scalar_label}:R:1"
    )
    # Object rows keep the integer columns exact past 2**53
    table = np.empty((result.n_points, 10), dtype=object)
    table[:, 0] = _numpy(result.ids).astype(np.int64)
    table[:, 1:4] = _numpy(result.points).astype(np.float64).reshape(-1, 3)
    table[:, 4] = _numpy(result.markers).astype(np.int64)
    table[:, 5:8] = _numpy(result.vector).astype(np.float64).reshape(-1, 3)
    table[:, 8] = _numpy(result.vector_norm).astype(np.float64)
    table[:, 9] = _numpy(result.scalar).astype(np.float64)
    fmt = ["%d"] + [_FLOAT_FMT] * 3 + ["%d"] + [_FLOAT_FMT] * 5

    with Path(path).open("w") as f:
        f.write(f"{result.n_points}\n{header}\n")
        np.savetxt(f, table, fmt=fmt)


def _write_lookup_scalars(
    f: TextIO, name: str, kind: str, values: np.ndarray, fmt: str
) -> None:
    f.write(f"SCALARS {name} {kind}\nLOOKUP_TABLE default\n")
    np.savetxt(f, values.reshape(-1, 1), fmt=fmt)


def write_vtk(
    path: str | Path,
    result: "SampleResult",
    cells: torch.Tensor | None = None,
    cell_type: int | None = None,
    vector_label: str = "elfield",
    scalar_label: str = "potential",
    title: str = "meshprobe interpolation",
) -> None:
    """Write a result as a legacy ASCII VTK unstructured grid.

    Parameters
    ----------
    path : str or Path
        Output file; overwritten if present.
    result : SampleResult
        Samples to write. Their points become the grid points.
    cells : torch.Tensor, optional
        Connectivity over the result points, shape ``(n_cells, V)``. When
        omitted, every point becomes a ``VTK_VERTEX`` cell.
    cell_type : int, optional
        VTK cell type code; inferred from ``V`` when omitted (1 vertex,
        5 triangle, 10 tetrahedron).
    vector_label, scalar_label : str, optional
        Names of the exported channels.
    title : str, optional
        Free-text title line.

    Raises
    ------
    ValueError
        If ``cells`` references missing points, ``cell_type`` cannot be
        inferred, or a label contains whitespace.
    """
    _check_label("vector_label", vector_label)
    _check_label("scalar_label", scalar_label)
    n_points = result.n_points

    if cells is None:
        cells = torch.arange(n_points, dtype=torch.long).unsqueeze(-1)
        cell_type = VTK_VERTEX
    if cells.ndim != 2:
        raise ValueError(f"cells must have shape (n_cells, V), got {tuple(cells.shape)}")
    if len(cells) > 0 and (int(cells.min()) < 0 or int(cells.max()) >= n_points):
        raise ValueError(
            f"cells reference points outside [0, {n_points}), got "
            f"min={int(cells.min())}, max={int(cells.max())}"
        )
    if cell_type is None:
        if cells.shape[1] not in _CELL_TYPE_BY_ARITY:
            raise ValueError(f"Cannot infer the VTK cell type of {cells.shape[1]}-vertex cells")
        cell_type = _CELL_TYPE_BY_ARITY[cells.shape[1]]

    cells_np = _numpy(cells).astype(np.int64)
    n_cells, n_vertices = cells_np.shape
    connectivity = np.column_stack(
        [np.full(n_cells, n_vertices, dtype=np.int64), cells_np]
    )

    with Path(path).open("w") as f:
        f.write(f"# vtk DataFile Version 3.0\n{title}\nASCII\nDATASET UNSTRUCTURED_GRID\n\n")

        f.write(f"POINTS {n_points} double\n")
        np.savetxt(f, _numpy(result.points).astype(np.float64).reshape(-1, 3), fmt=_FLOAT_FMT)

        f.write(f"\nCELLS {n_cells} {n_cells * (n_vertices + 1)}\n")
        np.savetxt(f, connectivity, fmt="%d")

        f.write(f"\nCELL_TYPES {n_cells}\n")
        np.savetxt(f, np.full((n_cells, 1), cell_type, dtype=np.int64), fmt="%d")

        f.write(f"\nPOINT_DATA {n_points}\n")
        _write_lookup_scalars(f, "id", "int", _numpy(result.ids), "%d")
        _write_lookup_scalars(f, "marker", "int", _numpy(result.markers), "%d")
        _write_lookup_scalars(
            f, scalar_label, "double", _numpy(result.scalar).astype(np.float64), _FLOAT_FMT
        )
        _write_lookup_scalars(
            f,
            f"{vector_label}_norm",
            "double",
            _numpy(result.vector_norm).astype(np.float64),
            _FLOAT_FMT,
        )
        f.write(f"VECTORS {vector_label} double\n")
        np.savetxt(f, _numpy(result.vector).astype(np.float64).reshape(-1, 3), fmt=_FLOAT_FMT)
