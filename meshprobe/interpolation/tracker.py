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

"""Cell affinity of time-stepped entities such as transported particles.

The affinity itself (one cell index per entity) is owned by the caller and
survives engine rebuilds; the tracker only maps ``(position, previous cell)``
to the next cell.
"""

from collections.abc import Sequence
from typing import TYPE_CHECKING

import torch

if TYPE_CHECKING:
    from meshprobe.interpolation.engine import InterpolationEngine

#: Cell index returned for entities whose position left the mesh bounding box.
LEFT_DOMAIN = -1


class CellAffinityTracker:
    r"""Update caller-owned cell affinities after small displacements.

    Parameters
    ----------
    engine : InterpolationEngine
        Engine of the current mesh.
    search_outside : bool, optional
        Retry points that no cell contains with the tolerant band of the
        engine's config.

    Examples
    --------
    >>> tracker = engine.tracker()  # doctest: +SKIP
    >>> cells = torch.full((n_particles,), -1)  # doctest: +SKIP
    >>> left = tracker.update_cells_(positions, cells)  # doctest: +SKIP
    >>> positions, cells = positions[~left], cells[~left]  # doctest: +SKIP
    """

    def __init__(self, engine: "InterpolationEngine", search_outside: bool = True):
        self.engine = engine
        self.search_outside = search_outside

    def outside_domain(self, points: torch.Tensor) -> torch.Tensor:
        """Whether each point lies outside the mesh's axis-aligned bounding box."""
        lo, hi = self.engine.mesh.bounds
        return ((points < lo) | (points > hi)).any(dim=-1)

    def update_cells(
        self, points: torch.Tensor, previous_cells: torch.Tensor
    ) -> torch.Tensor:
        """New cell of every entity, or :data:`LEFT_DOMAIN`.

        Parameters
        ----------
        points : torch.Tensor
            Current positions, shape ``(n, 3)``.
        previous_cells : torch.Tensor
            Last known cells, shape ``(n,)``; ``-1`` when unknown.

        Returns
        -------
        torch.Tensor
            Cells, shape ``(n,)``, dtype int64. Points inside the bounding box
            always get a valid cell: the containing one when it is found
            around the previous cell, otherwise the result of a full locate.
        """
        locator = self.engine.locator
        points = locator.check_points(points)
        n = points.shape[0]
        if previous_cells.shape != (n,):
            raise ValueError(
                f"previous_cells must have shape ({n},), got {tuple(previous_cells.shape)}"
            )
        previous = previous_cells.to(device=points.device)
        if n == 0 or locator.n_cells == 0:
            return torch.full((n,), LEFT_DOMAIN, dtype=torch.long, device=points.device)
        has_previous = previous >= 0
        previous = locator.check_guess(previous, n)

        cells = torch.full((n,), LEFT_DOMAIN, dtype=torch.long, device=points.device)
        inside = ~self.outside_domain(points)

        ### Warm path: previous cell and its neighbor rings, strict band
        lower, upper = locator.band(False)
        warm = torch.where(inside & has_previous)[0]
        if len(warm) > 0:
            cells[warm] = locator.walk(points[warm], previous[warm], lower, upper)

        ### Escalate misses and unknown affinities to the full locate path
        pending = torch.where(inside & (cells < 0))[0]
        if len(pending) > 0:
            cells[pending], _ = locator.locate(
                points[pending],
                guess=previous[pending],
                search_outside=self.search_outside,
            )
        return cells

    def update_cells_(self, points: torch.Tensor, cells: torch.Tensor) -> torch.Tensor:
        """In-place variant of :meth:`update_cells`.

        Overwrites the caller-owned ``cells`` tensor and returns the mask of
        entities that left the domain.
        """
        if torch.is_floating_point(cells):
            raise TypeError(f"cells must have an integer dtype, got {cells.dtype=}")
        new_cells = self.update_cells(points, cells)
        cells.copy_(new_cells)
        return new_cells == LEFT_DOMAIN

    def update_cell(self, point: torch.Tensor | Sequence[float], previous_cell: int) -> int:
        """Single-entity variant of :meth:`update_cells`."""
        mesh_points = self.engine.mesh.points
        point = torch.as_tensor(
            point, dtype=mesh_points.dtype, device=mesh_points.device
        ).reshape(1, 3)
        previous = torch.tensor([previous_cell], device=mesh_points.device)
        return int(self.update_cells(point, previous)[0])
