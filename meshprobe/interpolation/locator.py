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

"""Point location with warm start, bounded neighbor walk and fallbacks.

Every query is resolved by the cheapest stage that succeeds:

1. the guess cell,
2. ``neighbor_rings`` rings of face neighbors around the guess,
3. a full scan over all cells (lowest containing index wins),
4. with outside search, a full scan with the tolerant band,
5. the cell with the nearest centroid (``located = False``).

Stages 1-3 use the strict band, so a point inside the mesh always lands in a
cell that really contains it, whatever the guess. Only points outside every
cell reach the tolerant band, whose answer is the lowest containing index.

Each stage is vectorized over all queries still pending, so a batch costs a
handful of tensor operations per stage instead of a Python loop per point.
"""

import logging
from typing import Literal

import torch

from meshprobe.config import EngineConfig
from meshprobe.geometry.precompute import CellGeometry
from meshprobe.mesh.field_mesh import FieldMesh
from meshprobe.spatial.bvh import BVH
from meshprobe.utilities._tolerances import containment_band, strict_slack

logger = logging.getLogger(__name__)

ScanStrategy = Literal["bvh", "brute"]

_STAGES = ("guess", "rings", "scan", "band", "nearest")


def _lowest_cell_per_query(
    query_indices: torch.Tensor,
    cell_indices: torch.Tensor,
    n_queries: int,
    n_cells: int,
) -> torch.Tensor:
    """Reduce (query, cell) pairs to the lowest cell index per query, ``-1`` if none."""
    best = torch.full(
        (n_queries,), n_cells, dtype=torch.long, device=cell_indices.device
    )
    if len(query_indices) > 0:
        best.scatter_reduce_(0, query_indices, cell_indices, reduce="amin")
    best[best == n_cells] = -1
    return best


def find_nearest_cells(
    query_points: torch.Tensor,
    cell_centroids: torch.Tensor,
    chunk_size: int,
) -> torch.Tensor:
    """Brute-force nearest-centroid search with chunking for memory safety."""
    n_queries = query_points.shape[0]
    device = query_points.device

    if n_queries * len(cell_centroids) <= chunk_size * chunk_size:
        diffs = query_points.unsqueeze(1) - cell_centroids.unsqueeze(0)
        return (diffs**2).sum(dim=-1).argmin(dim=1)

    rows = max(1, (chunk_size * chunk_size) // max(len(cell_centroids), 1))
    cell_indices = torch.empty(n_queries, dtype=torch.long, device=device)
    for start in range(0, n_queries, rows):
        end = min(start + rows, n_queries)
        diffs = query_points[start:end].unsqueeze(1) - cell_centroids.unsqueeze(0)
        cell_indices[start:end] = (diffs**2).sum(dim=-1).argmin(dim=1)
    return cell_indices


class PointLocator:
    r"""Find the cell containing (or nearest to) each query point.

    Parameters
    ----------
    mesh : FieldMesh
        Mesh whose cells are searched. Its face adjacency drives the
        neighbor walk.
    geometry : CellGeometry
        Precomputed geometry of ``mesh``'s cells.
    config : EngineConfig
        Tolerances, ring count, slice count and chunk size.
    scan : {"bvh", "brute"}, optional
        Full-scan strategy. ``"bvh"`` prunes with a bounding volume hierarchy
        whose boxes are padded by the containment band, which is only valid
        when containment implies proximity (tetrahedra). ``"brute"`` tests
        every cell and is needed for projected containment (triangles).
    """

    def __init__(
        self,
        mesh: FieldMesh,
        geometry: CellGeometry,
        config: EngineConfig,
        scan: ScanStrategy = "bvh",
    ) -> None:
        if scan not in ("bvh", "brute"):
            raise ValueError(f"Invalid {scan=}. Must be 'bvh' or 'brute'.")
        self.mesh = mesh
        self.geometry = geometry
        self.config = config
        self.scan_strategy = scan
        self._bvh: BVH | None = None

    @property
    def n_cells(self) -> int:
        return self.geometry.n_cells

    @property
    def bvh(self) -> BVH:
        """Bounding volume hierarchy of the cells, built on first use."""
        if self._bvh is None:
            eps = max(
                self.config.search_outside_tolerance,
                strict_slack(self.mesh.points.dtype),
            )
            self._bvh = BVH.from_cells(
                self.mesh.points,
                self.mesh.cells,
                padding=self.geometry.n_vertices_per_cell * eps * (1.0 + 1e-6),
            )
        return self._bvh

    def band(self, search_outside: bool = True) -> tuple[float, float]:
        """Containment band ``(lower, upper)`` for the mesh dtype."""
        return containment_band(
            search_outside,
            self.config.search_outside_tolerance,
            self.mesh.points.dtype,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def locate(
        self,
        points: torch.Tensor,
        guess: torch.Tensor | None = None,
        search_outside: bool = True,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Locate a batch of points.

        Parameters
        ----------
        points : torch.Tensor
            Query points, shape ``(n_queries, 3)``.
        guess : torch.Tensor, optional
            Starting cell per point, shape ``(n_queries,)``; ``-1`` means no
            guess (cell 0 is tried). When omitted, the batch is split into
            ``config.n_query_slices`` contiguous slices and every point uses
            the cell found for its predecessor in the same slice.
        search_outside : bool, optional
            Retry points that no cell contains with the ``[-eps, 1 + eps]``
            band; the lowest-index cell whose band holds the point wins. When
            ``False`` only a rounding-sized slack is allowed.

        Returns
        -------
        tuple[torch.Tensor, torch.Tensor]
            ``(cells, located)``, both of shape ``(n_queries,)``: the
            containing cell (``located``) or the nearest cell by centroid
            distance (not ``located``).
        """
        points = self.check_points(points)
        n_queries = points.shape[0]
        device = points.device
        cells = torch.full((n_queries,), -1, dtype=torch.long, device=device)
        located = torch.zeros(n_queries, dtype=torch.bool, device=device)
        if n_queries == 0 or self.n_cells == 0:
            return cells, located

        stage_counts = torch.zeros(len(_STAGES), dtype=torch.long)

        if guess is not None:
            guesses = self.check_guess(guess, n_queries)
            cells, located = self._resolve(points, guesses, search_outside, stage_counts)
        else:
            ### Lockstep warm-start chains: slice s owns [s*length, (s+1)*length)
            n_slices = min(self.config.n_query_slices, n_queries)
            length = -(-n_queries // n_slices)
            slice_starts = torch.arange(n_slices, device=device) * length
            previous = torch.zeros(n_slices, dtype=torch.long, device=device)
            for step in range(length):
                positions = slice_starts + step
                active = positions < n_queries
                idx = positions[active]
                step_cells, step_located = self._resolve(
                    points[idx], previous[active], search_outside, stage_counts
                )
                cells[idx] = step_cells
                located[idx] = step_located
                previous[active] = step_cells

        logger.debug(
            "Located %d points: %s",
            n_queries,
            ", ".join(f"{name}={int(n)}" for name, n in zip(_STAGES, stage_counts)),
        )
        return cells, located

    def walk(
        self,
        points: torch.Tensor,
        guesses: torch.Tensor,
        lower: float,
        upper: float,
        n_rings: int | None = None,
    ) -> torch.Tensor:
        """Test each guess cell and its neighbor rings.

        Returns the containing cell per point, or ``-1`` when none of the
        visited cells contains it. Among containing cells of the same ring
        the lowest index wins.
        """
        n_rings = self.config.neighbor_rings if n_rings is None else n_rings
        n_queries = points.shape[0]

        result = torch.full((n_queries,), -1, dtype=torch.long, device=points.device)
        hit = self.geometry.contains(points, guesses, lower, upper)
        result[hit] = guesses[hit]

        ### Breadth-first over face neighbors; rings may revisit cells
        query = torch.where(~hit)[0]
        frontier = guesses[query]
        for _ in range(n_rings):
            if len(query) == 0:
                break
            neighbors = self.mesh.face_neighbors[frontier]  # (n_frontier, n_faces)
            q = query.unsqueeze(1).expand_as(neighbors).reshape(-1)
            c = neighbors.reshape(-1)
            keep = c >= 0
            keys = torch.unique(q[keep] * self.n_cells + c[keep])
            q, c = keys // self.n_cells, keys % self.n_cells

            inside = self.geometry.contains(points[q], c, lower, upper)
            best = _lowest_cell_per_query(q[inside], c[inside], n_queries, self.n_cells)
            newly = (best >= 0) & (result < 0)
            result[newly] = best[newly]

            pending = result[q] < 0
            query, frontier = q[pending], c[pending]
        return result

    def scan(self, points: torch.Tensor, lower: float, upper: float) -> torch.Tensor:
        """Lowest-index non-degenerate cell containing each point, ``-1`` if none.

        Equivalent to a linear scan over all cells.
        """
        n_queries = points.shape[0]
        result = torch.full((n_queries,), -1, dtype=torch.long, device=points.device)
        if n_queries == 0:
            return result

        chunk = self.config.scan_chunk_size
        if self.scan_strategy == "bvh":
            for start in range(0, n_queries, chunk):
                end = min(start + chunk, n_queries)
                q, c = self.bvh.find_candidate_pairs(points[start:end])
                inside = self.geometry.contains(points[start:end][q], c, lower, upper)
                result[start:end] = _lowest_cell_per_query(
                    q[inside], c[inside], end - start, self.n_cells
                )
            return result

        ### Brute force: (rows x n_cells) weight blocks
        geometry = self.geometry
        rows = max(1, (chunk * chunk) // self.n_cells)
        for start in range(0, n_queries, rows):
            end = min(start + rows, n_queries)
            block = points[start:end]
            numerators = (
                torch.einsum("cvk,sk->scv", geometry.minor_dets[..., :3], block)
                + geometry.minor_dets[..., 3]
            )
            w = numerators / geometry.main_det.view(1, -1, 1)
            inside = ((w >= lower) & (w <= upper)).all(dim=-1) & ~geometry.is_degenerate
            first = inside.to(torch.int8).argmax(dim=1)
            result[start:end] = torch.where(inside.any(dim=1), first, -1)
        return result

    def nearest(self, points: torch.Tensor) -> torch.Tensor:
        """Cell with the nearest centroid, degenerate cells included."""
        return find_nearest_cells(
            points, self.geometry.centroids, self.config.scan_chunk_size
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(
        self,
        points: torch.Tensor,
        guesses: torch.Tensor,
        search_outside: bool,
        stage_counts: torch.Tensor,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Run the escalation cascade for points with known guesses."""
        n_queries = points.shape[0]
        cells = torch.full((n_queries,), -1, dtype=torch.long, device=points.device)
        searchable = torch.ones(n_queries, dtype=torch.bool, device=points.device)
        if self.projected:
            searchable = ~self.beyond_bounds(points)

        ### Strict band: guess, rings, scan
        lower, upper = self.band(False)
        idx = torch.where(searchable)[0]
        if len(idx) > 0:
            cells[idx] = self.walk(points[idx], guesses[idx], lower, upper)
            n_guess_hits = int((cells[idx] == guesses[idx]).sum())
            stage_counts[0] += n_guess_hits
            stage_counts[1] += int((cells[idx] >= 0).sum()) - n_guess_hits

        pending = torch.where(searchable & (cells < 0))[0]
        if len(pending) > 0:
            cells[pending] = self.scan(points[pending], lower, upper)
            stage_counts[2] += int((cells[pending] >= 0).sum())

        ### Tolerant band, only for points no cell strictly contains
        if search_outside:
            pending = torch.where(searchable & (cells < 0))[0]
            if len(pending) > 0:
                lower, upper = self.band(True)
                cells[pending] = self.scan(points[pending], lower, upper)
                stage_counts[3] += int((cells[pending] >= 0).sum())

        located = cells >= 0
        pending = torch.where(~located)[0]
        if len(pending) > 0:
            cells[pending] = self.nearest(points[pending])
            stage_counts[4] += len(pending)
        return cells, located

    @property
    def projected(self) -> bool:
        """Whether containment is tested for projections onto the cell plane."""
        return self.geometry.n_vertices_per_cell == 3

    def beyond_bounds(self, points: torch.Tensor) -> torch.Tensor:
        """Points outside the mesh bounding box padded by the tolerant band.

        The pad is ``max(search_outside_tolerance, strict slack)`` times the
        largest extent of the box. Projected containment is unbounded along
        the cell normal, so such points are never located in a triangle.
        """
        lo, hi = self.mesh.bounds
        eps = max(
            self.config.search_outside_tolerance,
            strict_slack(self.mesh.points.dtype),
        )
        pad = eps * (hi - lo).max()
        return ((points < lo - pad) | (points > hi + pad)).any(dim=-1)

    def check_points(self, points: torch.Tensor) -> torch.Tensor:
        """Validate query points and move them to the mesh device and dtype."""
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError(
                f"points must have shape (n_queries, 3), got {tuple(points.shape)}"
            )
        if not points.is_floating_point():
            raise TypeError(f"points must be floating-point, got {points.dtype=}")
        return points.to(device=self.mesh.points.device, dtype=self.mesh.points.dtype)

    def check_guess(self, guess: torch.Tensor, n_queries: int) -> torch.Tensor:
        """Validate guess cells; ``-1`` (no guess) becomes cell 0."""
        if guess.shape != (n_queries,):
            raise ValueError(
                f"guess must have shape ({n_queries},), got {tuple(guess.shape)}"
            )
        if torch.is_floating_point(guess):
            raise TypeError(f"guess must have an integer dtype, got {guess.dtype=}")
        guess = guess.to(device=self.mesh.points.device, dtype=torch.long)
        if n_queries > 0 and (int(guess.min()) < -1 or int(guess.max()) >= self.n_cells):
            raise ValueError(
                f"guess cells must lie in [-1, {self.n_cells}), got "
                f"min={int(guess.min())}, max={int(guess.max())}"
            )
        return guess.clamp(min=0)
