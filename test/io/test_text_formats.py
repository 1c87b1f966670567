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

"""Tests for the extended xyz and legacy VTK writers."""

import pytest
import torch

from meshprobe import SampleResult, TetrahedronEngine
from meshprobe.io import VTK_TETRA, VTK_VERTEX, write_vtk, write_xyz


@pytest.fixture
def result():
    points = torch.tensor(
        [[0.0, 0.0, 0.0], [1.0, 2.0, 3.0], [-1.0, 0.5, 0.25]], dtype=torch.float64
    )
    vector = torch.tensor(
        [[3.0, 4.0, 0.0], [0.0, 0.0, 1.0], [1e20, 1e20, 1e20]], dtype=torch.float64
    )
    scalar = torch.tensor([1.0, -2.0, 1e20], dtype=torch.float64)
    return SampleResult.from_solution(
        points=points,
        vector=vector,
        scalar=scalar,
        located=torch.tensor([True, True, False]),
        cells=torch.tensor([0, 0, -1]),
        ids=torch.tensor([10, 11, 12]),
    )


def section(lines: list[str], keyword: str, n: int) -> list[str]:
    """The ``n`` lines following the first line starting with ``keyword``."""
    start = next(i for i, line in enumerate(lines) if line.startswith(keyword))
    return lines[start + 1 : start + 1 + n]


class TestWriteXyz:
    def test_layout(self, result, tmp_path):
        path = tmp_path / "samples.xyz"
        write_xyz(path, result)
        lines = path.read_text().splitlines()

        assert lines[0] == "3"
        assert lines[1] == (
            "Interpolation properties=id:I:1:pos:R:3:marker:I:1:"
            "elfield:R:3:elfield_norm:R:1:potential:R:1"
        )
        assert len(lines) == 5

        first = lines[2].split()
        assert len(first) == 10
        assert first[0] == "10"
        assert first[4] == "1"
        assert float(first[8]) == pytest.approx(5.0)
        assert float(first[9]) == pytest.approx(1.0)
        assert lines[4].split()[4] == "0"

    def test_large_ids_are_exact(self, result, tmp_path):
        ids = torch.tensor([2**53 + 1, 2**62 + 3, 7])
        path = tmp_path / "samples.xyz"
        relabeled = SampleResult.from_solution(
            points=result.points,
            vector=result.vector,
            scalar=result.scalar,
            located=result.located,
            cells=result.cells,
            ids=ids,
        )
        write_xyz(path, relabeled)
        rows = path.read_text().splitlines()[2:]
        assert [int(row.split()[0]) for row in rows] == ids.tolist()

    def test_custom_labels(self, result, tmp_path):
        path = tmp_path / "samples.xyz"
        write_xyz(path, result, vector_label="velocity", scalar_label="pressure")
        header = path.read_text().splitlines()[1]
        assert "velocity:R:3:velocity_norm:R:1:pressure:R:1" in header

    def test_label_with_whitespace(self, result, tmp_path):
        with pytest.raises(ValueError, match="vector_label"):
            write_xyz(tmp_path / "bad.xyz", result, vector_label="e field")


class TestWriteVtk:
    def test_point_cloud(self, result, tmp_path):
        path = tmp_path / "samples.vtk"
        write_vtk(path, result)
        lines = path.read_text().splitlines()

        assert lines[0] == "# vtk DataFile Version 3.0"
        assert lines[2] == "ASCII"
        assert lines[3] == "DATASET UNSTRUCTURED_GRID"
        assert "POINTS 3 double" in lines
        assert "CELLS 3 6" in lines
        assert section(lines, "CELLS", 3) == ["1 0", "1 1", "1 2"]
        assert section(lines, "CELL_TYPES", 3) == [str(VTK_VERTEX)] * 3
        assert "POINT_DATA 3" in lines
        assert section(lines, "SCALARS id int", 4)[1:] == ["10", "11", "12"]
        assert section(lines, "SCALARS marker int", 4)[1:] == ["1", "1", "0"]
        assert "SCALARS potential double" in lines
        assert "SCALARS elfield_norm double" in lines
        vectors = section(lines, "VECTORS elfield double", 3)
        assert [float(v) for v in vectors[0].split()] == [3.0, 4.0, 0.0]

    def test_engine_mesh(self, unit_tet, tmp_path):
        points, cells, scalar = unit_tet
        engine = TetrahedronEngine.from_arrays(points, cells, scalar=scalar)
        path = tmp_path / "mesh.vtk"
        engine.write_vtk(path)
        lines = path.read_text().splitlines()

        assert "POINTS 4 double" in lines
        assert section(lines, "CELLS 1 5", 1) == ["4 0 1 2 3"]
        assert section(lines, "CELL_TYPES 1", 1) == [str(VTK_TETRA)]
        potential = section(lines, "SCALARS potential double", 5)[1:]
        assert [float(v) for v in potential] == [0.0, 1.0, 2.0, 3.0]

    def test_cells_out_of_range(self, result, tmp_path):
        with pytest.raises(ValueError, match="outside"):
            write_vtk(tmp_path / "bad.vtk", result, cells=torch.tensor([[0, 1, 3]]))

    def test_unknown_arity(self, result, tmp_path):
        with pytest.raises(ValueError, match="cell type"):
            write_vtk(tmp_path / "bad.vtk", result, cells=torch.tensor([[0, 1]]))

    def test_empty_label(self, result, tmp_path):
        with pytest.raises(ValueError, match="scalar_label"):
            write_vtk(tmp_path / "bad.vtk", result, scalar_label="")
