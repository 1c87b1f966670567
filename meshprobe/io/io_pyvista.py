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

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    import pyvista

    from meshprobe.interpolation.engine import InterpolationEngine
    from meshprobe.interpolation.results import SampleResult


def to_pyvista(
    source: "SampleResult | InterpolationEngine",
    vector_label: str = "elfield",
    scalar_label: str = "potential",
) -> "pyvista.PolyData | pyvista.UnstructuredGrid":
    """Convert samples or an engine's mesh to a PyVista dataset.

    Parameters
    ----------
    source : SampleResult or InterpolationEngine
        A :class:`SampleResult` becomes a ``PolyData`` point cloud. An engine
        becomes a ``PolyData`` of triangles or an ``UnstructuredGrid`` of
        tetrahedra carrying the node solution.
    vector_label, scalar_label : str, optional
        Point-data array names of the vector and scalar channels.

    Returns
    -------
    pv.PolyData or pv.UnstructuredGrid
        Dataset with point data ``id``, ``marker``, the vector, its norm
        (``<vector_label>_norm``) and the scalar.

    Raises
    ------
    ImportError
        If pyvista is not installed.
    """
    import importlib

    pv = importlib.import_module("pyvista")

    if hasattr(source, "node_result"):
        result = source.node_result()
        cells_np = source.mesh.cells.cpu().numpy().astype(np.int64)
    else:
        result = source
        cells_np = None

    points_np = result.points.detach().cpu().numpy().astype(np.float64)

    ### Build geometry
    if cells_np is None:
        pv_mesh = pv.PolyData(points_np)
    else:
        # PyVista padded format: [n_pts, v0, v1, ..., n_pts, v0, v1, ...]
        padded = np.column_stack(
            [np.full(len(cells_np), cells_np.shape[1], dtype=np.int64), cells_np]
        ).ravel()
        if cells_np.shape[1] == 3 and len(cells_np) == 0:
            pv_mesh = pv.PolyData(points_np)
        elif cells_np.shape[1] == 3:
            pv_mesh = pv.PolyData(points_np, faces=padded)
        else:
            celltypes = np.full(len(cells_np), pv.CellType.TETRA, dtype=np.uint8)
            pv_mesh = pv.UnstructuredGrid(padded, celltypes, points_np)

    ### Attach point data
    pv_mesh.point_data["id"] = result.ids.cpu().numpy()
    pv_mesh.point_data["marker"] = result.markers.cpu().numpy()
    pv_mesh.point_data[vector_label] = result.vector.detach().cpu().numpy()
    pv_mesh.point_data[f"{vector_label}_norm"] = (
        result.vector_norm.detach().cpu().numpy()
    )
    pv_mesh.point_data[scalar_label] = result.scalar.detach().cpu().numpy()
    return pv_mesh
