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
Immutable configuration for the interpolation engines.

An ``EngineConfig`` is handed to an engine at construction and never mutated
afterwards; to change a setting, build a new config with
:meth:`EngineConfig.replace` and a new engine. Built-in conversion from Hydra
objects is provided so that the engine can be driven from the same YAML trees
as the rest of a simulation.
"""

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, fields, is_dataclass
from typing import Any, Literal

SortCurve = Literal["hilbert", "morton", "none"]

_SORT_CURVES = ("hilbert", "morton", "none")


@dataclass(frozen=True)
class EngineConfig:
    r"""Settings shared by locate, sample, clean and track operations.

    Parameters
    ----------
    search_outside_tolerance : float, optional
        Slack :math:`\varepsilon` of the containment band
        :math:`[-\varepsilon, 1 + \varepsilon]` used when searching slightly
        outside cells is enabled.
    error_sentinel_magnitude : float, optional
        Value assigned to samples whose point was not located inside the mesh.
        Values with this magnitude or larger are ignored by the cleaner and by
        statistics.
    histogram_bin_divisor : int, optional
        The outlier cleaner uses ``n_samples // histogram_bin_divisor`` bins.
    cleaning_cutoff_radius : float, optional
        Default averaging radius of the outlier cleaner. ``0`` disables
        cleaning unless a radius is passed explicitly.
    neighbor_rings : int, optional
        Number of face-adjacency rings walked around the guess cell before
        the full scan.
    degeneracy_tolerance : float, optional
        Cells with ``|main_det| <= degeneracy_tolerance * L**k`` are
        degenerate, where ``L`` is the longest cell edge.
    sort_curve : {"hilbert", "morton", "none"}, optional
        Space-filling curve used to order query batches.
    n_query_slices : int, optional
        Number of independent warm-start chains a sorted batch is split into.
    substitute_sentinel : bool, optional
        Whether samples of un-located points are overwritten with
        ``error_sentinel_magnitude``. When ``False`` the extrapolated value
        from the nearest cell is kept.
    empty_value : float, optional
        Fill value for channels that were not requested and for engines
        without a solution.
    scan_chunk_size : int, optional
        Number of query points processed together by brute-force scans.
    """

    search_outside_tolerance: float = 0.1
    error_sentinel_magnitude: float = 1e20
    histogram_bin_divisor: int = 250
    cleaning_cutoff_radius: float = 0.0
    neighbor_rings: int = 2
    degeneracy_tolerance: float = 1e-12
    sort_curve: SortCurve = "hilbert"
    n_query_slices: int = 256
    substitute_sentinel: bool = True
    empty_value: float = 0.0
    scan_chunk_size: int = 4096

    def __post_init__(self) -> None:
        if self.search_outside_tolerance < 0:
            raise ValueError(
                f"search_outside_tolerance must be non-negative, got {self.search_outside_tolerance=}"
            )
        if self.error_sentinel_magnitude <= 0:
            raise ValueError(
                f"error_sentinel_magnitude must be positive, got {self.error_sentinel_magnitude=}"
            )
        if self.histogram_bin_divisor < 1:
            raise ValueError(
                f"histogram_bin_divisor must be >= 1, got {self.histogram_bin_divisor=}"
            )
        if self.cleaning_cutoff_radius < 0:
            raise ValueError(
                f"cleaning_cutoff_radius must be non-negative, got {self.cleaning_cutoff_radius=}"
            )
        if self.neighbor_rings < 0:
            raise ValueError(
                f"neighbor_rings must be non-negative, got {self.neighbor_rings=}"
            )
        if self.degeneracy_tolerance < 0:
            raise ValueError(
                f"degeneracy_tolerance must be non-negative, got {self.degeneracy_tolerance=}"
            )
        if self.sort_curve not in _SORT_CURVES:
            raise ValueError(
                f"Invalid {self.sort_curve=}. Must be one of {_SORT_CURVES}."
            )
        if self.n_query_slices < 1:
            raise ValueError(
                f"n_query_slices must be >= 1, got {self.n_query_slices=}"
            )
        if self.scan_chunk_size < 1:
            raise ValueError(
                f"scan_chunk_size must be >= 1, got {self.scan_chunk_size=}"
            )

    def replace(self, **changes: Any) -> "EngineConfig":
        r"""Return a copy of this config with ``changes`` applied (and validated)."""
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        r"""Return the settings as a plain, JSON-serializable dict."""
        return dataclasses.asdict(self)

    @classmethod
    def from_hydra(cls, hydra_cfg: Any) -> "EngineConfig":
        r"""
        Convert a Hydra/OmegaConf config object to an ``EngineConfig``.

        Parameters
        ----------
        hydra_cfg : Any
            A Hydra DictConfig, dataclass, dict-like object or ``None``
            (defaults).

        Returns
        -------
        EngineConfig
            A validated config with values from ``hydra_cfg``.

        Raises
        ------
        ValueError
            If ``hydra_cfg`` has keys that are not engine settings.
        TypeError
            If ``hydra_cfg`` cannot be interpreted as a mapping.
        """
        if hydra_cfg is None:
            return cls()

        # OmegaConf DictConfig
        if hasattr(hydra_cfg, "to_container"):
            values = hydra_cfg.to_container(resolve=True)
        elif is_dataclass(hydra_cfg) and not isinstance(hydra_cfg, type):
            values = {f.name: getattr(hydra_cfg, f.name) for f in fields(hydra_cfg)}
        elif isinstance(hydra_cfg, Mapping):
            values = dict(hydra_cfg)
        elif hasattr(hydra_cfg, "__dict__"):
            values = {k: v for k, v in vars(hydra_cfg).items() if not k.startswith("_")}
        else:
            raise TypeError(
                f"Cannot build an EngineConfig from {type(hydra_cfg).__name__}"
            )

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(
                f"Unknown engine settings {unknown}. Valid settings: {sorted(known)}"
            )
        return cls(**values)
