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

r"""
Interpolation engines for tetrahedral volume meshes and triangulated surfaces.

An engine is built once per mesh: construction precomputes the cell geometry,
after which the engine answers point-location and field-sampling queries for
arbitrarily large batches. Both variants share one implementation and differ
only in cell arity, VTK cell type and full-scan strategy.
"""

import logging
import math
from pathlib import Path
from typing import Any, ClassVar, Literal, Sequence

import torch

from meshprobe.config import EngineConfig
from meshprobe.geometry.precompute import CellGeometry, precompute_geometry
from meshprobe.interpolation.cleaning import clean_solution
from meshprobe.interpolation.locator import PointLocator, ScanStrategy
from meshprobe.interpolation.results import SampleResult
from meshprobe.interpolation.sampler import (
    sample_scalar,
    sample_solution,
    sample_vector,
)
from meshprobe.interpolation.tracker import CellAffinityTracker
from meshprobe.io.text_formats import write_vtk
from meshprobe.mesh.field_mesh import FieldMesh
from meshprobe.spatial.curves import invert_permutation, spatial_sort_order

logger = logging.getLogger(__name__)

Component = Literal["both", "vector", "scalar"]

_COMPONENTS = ("both", "vector", "scalar")


class InterpolationEngine:
    r"""Locate points in a mesh and sample its node solution there.

    Subclasses fix the cell arity; use :class:`TetrahedronEngine`,
    :class:`TriangleEngine` or :func:`create_engine`.

    Parameters
    ----------
    mesh : FieldMesh
        Mesh and node solution of the current simulation step.
    config : EngineConfig, optional
        Engine settings. Defaults to ``EngineConfig()``.

    Raises
    ------
    ValueError
        If the mesh cell arity does not match the engine.
    """

    n_vertices_per_cell: ClassVar[int]
    vtk_cell_type: ClassVar[int]
    scan_strategy: ClassVar[ScanStrategy]

    def __init__(self, mesh: FieldMesh, config: EngineConfig | None = None) -> None:
        if mesh.n_vertices_per_cell != self.n_vertices_per_cell:
            raise ValueError(
                f"{type(self).__name__} needs cells with {self.n_vertices_per_cell} "
                f"vertices, got {mesh.n_vertices_per_cell=}"
            )
        self.mesh = mesh
        self.config = EngineConfig() if config is None else config
        self.geometry: CellGeometry = precompute_geometry(
            mesh.points, mesh.cells, self.config.degeneracy_tolerance
        )
        self.locator = PointLocator(
            mesh, self.geometry, self.config, scan=self.scan_strategy
        )

    @classmethod
    def from_arrays(
        cls,
        points: torch.Tensor,
        cells: torch.Tensor,
        vector: torch.Tensor | None = None,
        scalar: torch.Tensor | None = None,
        face_neighbors: torch.Tensor | None = None,
        config: EngineConfig | None = None,
    ) -> "InterpolationEngine":
        """Build the mesh container and the engine in one call."""
        mesh = FieldMesh(
            points=points,
            cells=cells,
            vector=vector,
            scalar=scalar,
            face_neighbors=face_neighbors,
        )
        return cls(mesh, config)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(n_points={self.mesh.n_points}, "
            f"n_cells={self.mesh.n_cells}, has_solution={self.has_solution})"
        )

    @property
    def has_solution(self) -> bool:
        """Whether interpolation can produce values (cells and a solution exist)."""
        return self.mesh.n_cells > 0 and self.mesh.has_solution

    def _search_outside(self, search_outside: bool | None) -> bool:
        return True if search_outside is None else search_outside

    # ------------------------------------------------------------------
    # Location and sampling
    # ------------------------------------------------------------------

    def locate(
        self,
        points: torch.Tensor,
        guess: torch.Tensor | None = None,
        search_outside: bool | None = None,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Containing (or nearest) cell of each point; see :meth:`PointLocator.locate`."""
        return self.locator.locate(
            points, guess=guess, search_outside=self._search_outside(search_outside)
        )

    def locate_point(
        self,
        point: torch.Tensor | Sequence[float],
        guess_cell: int = -1,
        search_outside: bool | None = None,
    ) -> tuple[int, bool]:
        """Locate a single point.

        Returns
        -------
        tuple[int, bool]
            ``(cell, located)``. ``cell`` is ``-1`` only for a mesh without
            cells.
        """
        point = torch.as_tensor(
            point, dtype=self.mesh.points.dtype, device=self.mesh.points.device
        ).reshape(1, 3)
        guess = torch.tensor([guess_cell], device=self.mesh.points.device)
        cells, located = self.locate(point, guess=guess, search_outside=search_outside)
        return int(cells[0]), bool(located[0])

    def sample(
        self, points: torch.Tensor, cells: torch.Tensor
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Vector and scalar solution at ``points`` inside the given ``cells``."""
        return sample_solution(
            self.mesh, self.geometry, self.locator.check_points(points), cells
        )

    def sample_vector(self, points: torch.Tensor, cells: torch.Tensor) -> torch.Tensor:
        """Vector solution at ``points`` inside the given ``cells``, shape ``(n, 3)``."""
        return sample_vector(
            self.mesh, self.geometry, self.locator.check_points(points), cells
        )

    def sample_scalar(self, points: torch.Tensor, cells: torch.Tensor) -> torch.Tensor:
        """Scalar solution at ``points`` inside the given ``cells``, shape ``(n,)``."""
        return sample_scalar(
            self.mesh, self.geometry, self.locator.check_points(points), cells
        )

    # ------------------------------------------------------------------
    # Batch interpolation
    # ------------------------------------------------------------------

    def interpolate(
        self,
        points: torch.Tensor,
        ids: torch.Tensor | None = None,
        component: Component = "both",
        sort: bool = True,
        clean: bool = True,
        r_cut: float | None = None,
        search_outside: bool | None = None,
    ) -> SampleResult:
        r"""Sample the node solution at a batch of points.

        The batch is optionally ordered along a space-filling curve, located
        with warm starts, sampled, marked with the error sentinel where the
        point is outside the mesh, cleaned of histogram outliers, and returned
        in the original order.

        Parameters
        ----------
        points : torch.Tensor
            Query points, shape ``(n, 3)``.
        ids : torch.Tensor, optional
            Integer identifier per point, shape ``(n,)``. Defaults to the
            batch index.
        component : {"both", "vector", "scalar"}, optional
            Channel(s) to sample. The other channel is filled with
            ``config.empty_value``.
        sort : bool, optional
            Order the batch along ``config.sort_curve`` before locating. Only
            the cost changes, not the result.
        clean : bool, optional
            Run the histogram outlier cleaner.
        r_cut : float, optional
            Cleaner cutoff radius; defaults to
            ``config.cleaning_cutoff_radius``. ``0`` disables cleaning.
        search_outside : bool, optional
            Tolerant containment band; defaults to ``True``.

        Returns
        -------
        SampleResult
            One record per query point, in input order.

        Raises
        ------
        ValueError
            On malformed ``points`` or ``ids``, an unknown ``component`` or a
            negative ``r_cut``.
        """
        config = self.config
        points = self.locator.check_points(points)
        n = points.shape[0]
        device = points.device

        if ids is None:
            ids = torch.arange(n, dtype=torch.long, device=device)
        elif ids.shape != (n,):
            raise ValueError(f"ids must have shape ({n},), got {tuple(ids.shape)}")
        elif torch.is_floating_point(ids):
            raise TypeError(f"ids must have an integer dtype, got {ids.dtype=}")
        ids = ids.to(device=device, dtype=torch.long)
        if component not in _COMPONENTS:
            raise ValueError(f"Invalid {component=}. Must be one of {_COMPONENTS}.")
        r_cut = config.cleaning_cutoff_radius if r_cut is None else r_cut
        if not math.isfinite(r_cut) or r_cut < 0:
            raise ValueError(f"r_cut must be finite and non-negative, got {r_cut=}")

        if not self.has_solution or n == 0:
            return SampleResult.filled(points, config.empty_value, ids=ids)

        ### Order along the space-filling curve
        order = spatial_sort_order(points, config.sort_curve) if sort else None
        sorted_points = points if order is None else points[order]

        ### Locate with warm starts and sample
        cells, located = self.locate(sorted_points, search_outside=search_outside)
        vector = torch.full((n, 3), config.empty_value, dtype=points.dtype, device=device)
        scalar = torch.full((n,), config.empty_value, dtype=points.dtype, device=device)
        if component == "both":
            vector, scalar = sample_solution(self.mesh, self.geometry, sorted_points, cells)
        elif component == "vector":
            vector = sample_vector(self.mesh, self.geometry, sorted_points, cells)
        else:
            scalar = sample_scalar(self.mesh, self.geometry, sorted_points, cells)

        if config.substitute_sentinel:
            vector[~located] = config.error_sentinel_magnitude
            scalar[~located] = config.error_sentinel_magnitude

        if clean and r_cut > 0:
            vector, scalar = clean_solution(
                sorted_points,
                vector,
                scalar,
                r_cut,
                bin_divisor=config.histogram_bin_divisor,
                sentinel_magnitude=config.error_sentinel_magnitude,
                chunk_size=config.scan_chunk_size,
            )

        ### Restore input order
        if order is not None:
            inverse = invert_permutation(order)
            vector, scalar = vector[inverse], scalar[inverse]
            cells, located = cells[inverse], located[inverse]

        n_outside = int((~located).sum())
        if n_outside > 0:
            logger.debug("%d of %d points are outside the mesh", n_outside, n)
        return SampleResult.from_solution(
            points=points,
            vector=vector,
            scalar=scalar,
            located=located,
            cells=cells,
            ids=ids,
        )

    def sample_along_line(
        self,
        origin: torch.Tensor | Sequence[float],
        direction: torch.Tensor | Sequence[float],
        r_max: float,
        n_samples: int,
        component: Component = "both",
        search_outside: bool | None = None,
    ) -> tuple[torch.Tensor, SampleResult]:
        """Sample the solution at equally spaced points ``origin - r * direction``.

        ``direction`` is normalized; ``r`` runs over ``[0, r_max]``. Samples
        are neither sorted nor cleaned.

        Returns
        -------
        tuple[torch.Tensor, SampleResult]
            Distances ``r``, shape ``(n_samples,)``, and the samples.
        """
        if n_samples < 1:
            raise ValueError(f"n_samples must be >= 1, got {n_samples=}")
        if not math.isfinite(r_max) or r_max < 0:
            raise ValueError(f"r_max must be finite and non-negative, got {r_max=}")

        dtype, device = self.mesh.points.dtype, self.mesh.points.device
        origin = torch.as_tensor(origin, dtype=dtype, device=device).reshape(3)
        direction = torch.as_tensor(direction, dtype=dtype, device=device).reshape(3)
        length = torch.linalg.vector_norm(direction)
        if length == 0:
            raise ValueError("direction must be a non-zero vector")

        distances = torch.linspace(0.0, r_max, n_samples, dtype=dtype, device=device)
        points = origin - distances.unsqueeze(-1) * (direction / length)
        result = self.interpolate(
            points,
            component=component,
            sort=False,
            clean=False,
            search_outside=search_outside,
        )
        return distances, result

    # ------------------------------------------------------------------
    # Tracking, statistics and export
    # ------------------------------------------------------------------

    def tracker(self, search_outside: bool | None = None) -> CellAffinityTracker:
        """Cell-affinity tracker bound to this engine."""
        return CellAffinityTracker(self, self._search_outside(search_outside))

    def node_result(self) -> SampleResult:
        """The node solution as a :class:`SampleResult` (every node located)."""
        mesh = self.mesh
        return SampleResult.from_solution(
            points=mesh.points,
            vector=mesh.vector,
            scalar=mesh.scalar,
            located=torch.ones(mesh.n_points, dtype=torch.bool, device=mesh.points.device),
            cells=torch.full(
                (mesh.n_points,), -1, dtype=torch.long, device=mesh.points.device
            ),
        )

    def statistics(self) -> dict[str, Any]:
        """Statistics of the node solution; see :meth:`SampleResult.statistics`."""
        return self.node_result().statistics(self.config.error_sentinel_magnitude)

    def log_statistics(
        self, vector_label: str = "vector", scalar_label: str = "scalar"
    ) -> dict[str, Any]:
        """Log :meth:`statistics` at info level and return them."""
        stats = self.statistics()
        logger.info(
            "%s: %d nodes, %s mean=(%.6g, %.6g, %.6g) rms=(%.6g, %.6g, %.6g) "
            "|%s| rms=%.6g in [%.6g, %.6g]",
            type(self).__name__,
            stats["n_valid"],
            vector_label,
            *stats["vector_mean"],
            *stats["vector_rms"],
            vector_label,
            stats["norm_rms"],
            stats["norm_min"],
            stats["norm_max"],
        )
        logger.info(
            "%s: %s mean=%.6g rms=%.6g in [%.6g, %.6g]",
            type(self).__name__,
            scalar_label,
            stats["scalar_mean"],
            stats["scalar_rms"],
            stats["scalar_min"],
            stats["scalar_max"],
        )
        return stats

    def write_vtk(
        self,
        path: str | Path,
        vector_label: str = "elfield",
        scalar_label: str = "potential",
    ) -> None:
        """Write the mesh and its node solution as a legacy ASCII VTK file."""
        write_vtk(
            path,
            self.node_result(),
            cells=self.mesh.cells,
            cell_type=self.vtk_cell_type,
            vector_label=vector_label,
            scalar_label=scalar_label,
        )


class TetrahedronEngine(InterpolationEngine):
    """Engine for tetrahedral volume meshes (VTK cell type 10)."""

    n_vertices_per_cell = 4
    vtk_cell_type = 10
    scan_strategy = "bvh"


class TriangleEngine(InterpolationEngine):
    """Engine for triangulated surfaces (VTK cell type 5).

    Containment is tested for the orthogonal projection of a point onto the
    triangle plane, so points above or below a triangle are located in it as
    long as they stay within the mesh bounding box padded by the tolerant band
    (see :meth:`PointLocator.beyond_bounds`). Farther points are never
    located and get the error sentinel.
    """

    n_vertices_per_cell = 3
    vtk_cell_type = 5
    scan_strategy = "brute"


_ENGINES: dict[int, type[InterpolationEngine]] = {
    TetrahedronEngine.n_vertices_per_cell: TetrahedronEngine,
    TriangleEngine.n_vertices_per_cell: TriangleEngine,
}


def create_engine(mesh: FieldMesh, config: EngineConfig | None = None) -> InterpolationEngine:
    """Build the engine matching the cell arity of ``mesh``."""
    return _ENGINES[mesh.n_vertices_per_cell](mesh, config)
