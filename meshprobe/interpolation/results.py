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

"""Batched interpolation results."""

import math
from typing import Any

import torch
from tensordict import tensorclass

from meshprobe.interpolation.cleaning import sentinel_mask


@tensorclass
class SampleResult:
    """Field values sampled at a batch of query points.

    Attributes
    ----------
    ids : torch.Tensor
        Caller-supplied identifier of every point (by default its batch
        index), shape ``(n,)``, dtype int64.
    points : torch.Tensor
        Query positions, shape ``(n, 3)``.
    vector : torch.Tensor
        Sampled vector channel, shape ``(n, 3)``.
    vector_norm : torch.Tensor
        Euclidean norm of ``vector``, shape ``(n,)``.
    scalar : torch.Tensor
        Sampled scalar channel, shape ``(n,)``.
    located : torch.Tensor
        Whether the point was found inside a cell, shape ``(n,)``, dtype bool.
    cells : torch.Tensor
        Cell used for sampling (containing or nearest), ``-1`` when none was
        available, shape ``(n,)``.
    """

    ids: torch.Tensor
    points: torch.Tensor
    vector: torch.Tensor
    vector_norm: torch.Tensor
    scalar: torch.Tensor
    located: torch.Tensor
    cells: torch.Tensor

    @classmethod
    def from_solution(
        cls,
        points: torch.Tensor,
        vector: torch.Tensor,
        scalar: torch.Tensor,
        located: torch.Tensor,
        cells: torch.Tensor,
        ids: torch.Tensor | None = None,
    ) -> "SampleResult":
        """Assemble a result, deriving the norm and default ids."""
        n = points.shape[0]
        if ids is None:
            ids = torch.arange(n, dtype=torch.long, device=points.device)
        return cls(
            ids=ids,
            points=points,
            vector=vector,
            vector_norm=torch.linalg.vector_norm(vector, dim=-1),
            scalar=scalar,
            located=located,
            cells=cells,
            batch_size=torch.Size([n]),
        )

    @classmethod
    def filled(
        cls,
        points: torch.Tensor,
        fill_value: float,
        ids: torch.Tensor | None = None,
    ) -> "SampleResult":
        """Result with every channel set to ``fill_value`` and nothing located."""
        n = points.shape[0]
        device = points.device
        return cls.from_solution(
            points=points,
            vector=torch.full((n, 3), fill_value, dtype=points.dtype, device=device),
            scalar=torch.full((n,), fill_value, dtype=points.dtype, device=device),
            located=torch.zeros(n, dtype=torch.bool, device=device),
            cells=torch.full((n,), -1, dtype=torch.long, device=device),
            ids=ids,
        )

    @property
    def n_points(self) -> int:
        return self.ids.shape[0]

    @property
    def markers(self) -> torch.Tensor:
        """Integer located marker, ``1`` inside the mesh and ``0`` otherwise."""
        return self.located.to(torch.long)

    def valid_mask(self, sentinel_magnitude: float = 1e20) -> torch.Tensor:
        """Samples that were located and carry no sentinel, shape ``(n,)``."""
        return self.located & ~sentinel_mask(
            self.vector, self.scalar, sentinel_magnitude
        )

    def statistics(self, sentinel_magnitude: float = 1e20) -> dict[str, Any]:
        """Summary statistics over valid samples.

        Returns
        -------
        dict[str, Any]
            ``n_valid``, ``vector_mean`` and ``vector_rms`` (3 floats each,
            per component), ``norm_rms``, ``scalar_mean``, ``scalar_rms``,
            ``norm_min``, ``norm_max``, ``scalar_min`` and ``scalar_max``.
            Statistics of an empty selection are ``nan``.
        """
        valid = self.valid_mask(sentinel_magnitude)
        n_valid = int(valid.sum())
        if n_valid == 0:
            nan = math.nan
            return {
                "n_valid": 0,
                "vector_mean": (nan, nan, nan),
                "vector_rms": (nan, nan, nan),
                "norm_rms": nan,
                "scalar_mean": nan,
                "scalar_rms": nan,
                "norm_min": nan,
                "norm_max": nan,
                "scalar_min": nan,
                "scalar_max": nan,
            }

        vector = self.vector[valid].double()
        norm = self.vector_norm[valid].double()
        scalar = self.scalar[valid].double()
        return {
            "n_valid": n_valid,
            "vector_mean": tuple(vector.mean(dim=0).tolist()),
            "vector_rms": tuple(torch.sqrt((vector**2).mean(dim=0)).tolist()),
            "norm_rms": float(torch.sqrt((norm**2).mean())),
            "scalar_mean": float(scalar.mean()),
            "scalar_rms": float(torch.sqrt((scalar**2).mean())),
            "norm_min": float(norm.min()),
            "norm_max": float(norm.max()),
            "scalar_min": float(scalar.min()),
            "scalar_max": float(scalar.max()),
        }

    def export_by_id(self, n: int) -> "SampleResult":
        """Scatter the results into a dense result of length ``n`` indexed by id.

        Entry ``i`` of the returned result holds the sample whose id is ``i``.
        Ids without a sample are zero-filled (and not located); samples with
        ids outside ``[0, n)`` are dropped. Ids are expected to be unique.
        """
        if n < 0:
            raise ValueError(f"n must be non-negative, got {n=}")
        device = self.points.device
        keep = (self.ids >= 0) & (self.ids < n)
        target = self.ids[keep]

        dense = SampleResult.from_solution(
            points=torch.zeros((n, 3), dtype=self.points.dtype, device=device),
            vector=torch.zeros((n, 3), dtype=self.vector.dtype, device=device),
            scalar=torch.zeros(n, dtype=self.scalar.dtype, device=device),
            located=torch.zeros(n, dtype=torch.bool, device=device),
            cells=torch.full((n,), -1, dtype=torch.long, device=device),
            ids=torch.arange(n, dtype=torch.long, device=device),
        )
        dense.points[target] = self.points[keep]
        dense.vector[target] = self.vector[keep]
        dense.vector_norm[target] = self.vector_norm[keep]
        dense.scalar[target] = self.scalar[keep]
        dense.located[target] = self.located[keep]
        dense.cells[target] = self.cells[keep]
        return dense
