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

"""Histogram-gap outlier cleaning of sampled fields.

Interpolated fields occasionally take unphysical magnitudes near mesh
irregularities. Instead of an absolute threshold, each channel's histogram is
inspected for an empty bin separating the bulk of the distribution from its
tails; values beyond the gap are replaced by a distance-weighted average of
their well-behaved neighbors.
"""

import logging
import math
from typing import Literal, Sequence

import torch

logger = logging.getLogger(__name__)

Channel = Literal["x", "y", "z", "norm", "scalar"]

#: Cleaning order of the channels: vector components, vector norm, scalar.
CHANNELS: tuple[Channel, ...] = ("x", "y", "z", "norm", "scalar")

_SIGMAS_PER_CUTOFF = 5.0


def channel_values(
    vector: torch.Tensor, scalar: torch.Tensor, channel: Channel
) -> torch.Tensor:
    """Extract one scalar channel from a ``(vector, scalar)`` solution."""
    if channel in ("x", "y", "z"):
        return vector[:, "xyz".index(channel)]
    if channel == "norm":
        return torch.linalg.vector_norm(vector, dim=-1)
    if channel == "scalar":
        return scalar
    raise ValueError(f"Invalid {channel=}. Must be one of {CHANNELS}.")


def sentinel_mask(
    vector: torch.Tensor, scalar: torch.Tensor, sentinel_magnitude: float
) -> torch.Tensor:
    """Samples carrying the error sentinel (or non-finite values), shape ``(n,)``."""
    norm = torch.linalg.vector_norm(vector, dim=-1)
    return (
        (norm >= sentinel_magnitude)
        | (scalar.abs() >= sentinel_magnitude)
        | ~torch.isfinite(norm)
        | ~torch.isfinite(scalar)
    )


def histogram_bounds(values: torch.Tensor, n_bins: int) -> tuple[float, float]:
    """Acceptance interval of a channel from the first empty bin on each side.

    Scanning from the most positive bin downwards (over bins with a
    non-negative lower edge), the first empty bin's lower edge becomes the
    upper bound. Scanning from the most negative bin upwards (over bins with a
    negative upper edge), the first empty bin's upper edge becomes the lower
    bound. Without a gap the bound is the histogram's own edge, so nothing is
    flagged.

    Parameters
    ----------
    values : torch.Tensor
        Channel values, shape ``(n,)``, sentinels already removed.
    n_bins : int
        Number of histogram bins, at least 2.

    Returns
    -------
    tuple[float, float]
        ``(value_min, value_max)``.

    Examples
    --------
    >>> values = torch.tensor([0.0, 0.1, 0.2, 0.3, 4.0])
    >>> histogram_bounds(values, n_bins=4)
    (0.0, 2.0)
    """
    if n_bins < 2:
        raise ValueError(f"n_bins must be >= 2, got {n_bins=}")
    vmin, vmax = float(values.min()), float(values.max())
    if vmin == vmax:
        return vmin, vmax

    edges = torch.linspace(vmin, vmax, n_bins + 1, dtype=torch.float64)
    bin_ids = torch.bucketize(values.double().cpu(), edges[1:-1], right=True)
    counts = torch.bincount(bin_ids, minlength=n_bins)
    empty = counts == 0

    upper_candidates = torch.where(empty & (edges[:-1] >= 0))[0]
    lower_candidates = torch.where(empty & (edges[1:] < 0))[0]
    value_max = float(edges[upper_candidates[-1]]) if len(upper_candidates) else vmax
    value_min = float(edges[lower_candidates[0] + 1]) if len(lower_candidates) else vmin
    return value_min, value_max


def find_outliers(
    values: torch.Tensor, valid: torch.Tensor, n_bins: int
) -> torch.Tensor:
    """Flag valid samples outside the histogram acceptance interval, shape ``(n,)``."""
    flagged = torch.zeros_like(valid)
    if not valid.any():
        return flagged
    value_min, value_max = histogram_bounds(values[valid], n_bins)
    logger.debug("Histogram acceptance interval [%g, %g]", value_min, value_max)
    flagged[valid] = (values[valid] < value_min) | (values[valid] > value_max)
    return flagged


def average_neighbors(
    positions: torch.Tensor,
    vector: torch.Tensor,
    scalar: torch.Tensor,
    targets: torch.Tensor,
    donors: torch.Tensor,
    r_cut: float,
    chunk_size: int = 4096,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    r"""Distance-weighted average of donor solutions around each target.

    Donors within ``r_cut`` of a target are weighted by
    :math:`\exp(-d / \sigma)` with :math:`\sigma = r_{cut} / 5`.

    Parameters
    ----------
    positions : torch.Tensor
        Sample positions, shape ``(n, 3)``.
    vector, scalar : torch.Tensor
        Current solution, shapes ``(n, 3)`` and ``(n,)``.
    targets : torch.Tensor
        Indices of samples to average, shape ``(n_targets,)``.
    donors : torch.Tensor
        Indices of samples allowed to contribute. Must not contain targets.
    r_cut : float
        Cutoff radius, positive.
    chunk_size : int, optional
        Memory bound: at most ``chunk_size**2`` distances are held at once.

    Returns
    -------
    tuple[torch.Tensor, torch.Tensor, torch.Tensor]
        ``(vector_avg, scalar_avg, has_neighbors)`` for the targets. Rows
        without any donor in range are zero and ``has_neighbors`` is
        ``False`` for them.
    """
    sigma = r_cut / _SIGMAS_PER_CUTOFF
    n_targets = len(targets)
    device, dtype = positions.device, positions.dtype
    vector_avg = torch.zeros((n_targets, 3), dtype=dtype, device=device)
    scalar_avg = torch.zeros(n_targets, dtype=dtype, device=device)
    has_neighbors = torch.zeros(n_targets, dtype=torch.bool, device=device)
    if n_targets == 0 or len(donors) == 0:
        return vector_avg, scalar_avg, has_neighbors

    donor_pos = positions[donors]
    donor_vec = vector[donors]
    donor_scalar = scalar[donors]
    rows = max(1, (chunk_size * chunk_size) // len(donors))
    for start in range(0, n_targets, rows):
        end = min(start + rows, n_targets)
        dist = torch.cdist(
            positions[targets[start:end]],
            donor_pos,
            compute_mode="donot_use_mm_for_euclid_dist",
        )  # (rows, n_donors)
        w = torch.exp(-dist / sigma) * (dist <= r_cut)
        w_sum = w.sum(dim=1)
        ok = w_sum > 0
        safe_sum = torch.where(ok, w_sum, torch.ones_like(w_sum))
        vector_avg[start:end] = (w @ donor_vec) / safe_sum.unsqueeze(-1)
        scalar_avg[start:end] = (w @ donor_scalar) / safe_sum
        has_neighbors[start:end] = ok
    return vector_avg, scalar_avg, has_neighbors


def clean_solution(
    positions: torch.Tensor,
    vector: torch.Tensor,
    scalar: torch.Tensor,
    r_cut: float,
    bin_divisor: int = 250,
    sentinel_magnitude: float = 1e20,
    channels: Sequence[Channel] = CHANNELS,
    chunk_size: int = 4096,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Replace histogram outliers of every channel by neighbor averages.

    Channels are cleaned one after another, each seeing the result of the
    previous one. A flagged sample has its whole solution (vector and scalar)
    replaced; sentinel samples are neither flagged nor used as neighbors.

    Parameters
    ----------
    positions : torch.Tensor
        Sample positions, shape ``(n, 3)``.
    vector, scalar : torch.Tensor
        Sampled solution, shapes ``(n, 3)`` and ``(n,)``. Not modified.
    r_cut : float
        Averaging cutoff radius. ``0`` disables cleaning.
    bin_divisor : int, optional
        The histogram has ``n // bin_divisor`` bins; fewer than 2 bins skips
        cleaning with a warning.
    sentinel_magnitude : float, optional
        Magnitude marking samples that were not located.
    channels : sequence of {"x", "y", "z", "norm", "scalar"}, optional
        Channels to clean, in order.
    chunk_size : int, optional
        Memory bound of the neighbor search.

    Returns
    -------
    tuple[torch.Tensor, torch.Tensor]
        Cleaned ``(vector, scalar)``.

    Raises
    ------
    ValueError
        If ``r_cut`` is negative or not finite, ``bin_divisor < 1``, or a
        channel name is unknown.
    """
    if not math.isfinite(r_cut) or r_cut < 0:
        raise ValueError(f"r_cut must be finite and non-negative, got {r_cut=}")
    if bin_divisor < 1:
        raise ValueError(f"bin_divisor must be >= 1, got {bin_divisor=}")
    for channel in channels:
        if channel not in CHANNELS:
            raise ValueError(f"Invalid {channel=}. Must be one of {CHANNELS}.")

    vector = vector.clone()
    scalar = scalar.clone()
    if r_cut == 0:
        return vector, scalar

    n_samples = len(scalar)
    n_bins = n_samples // bin_divisor
    if n_bins < 2:
        logger.warning(
            "Skipping outlier cleaning: %d samples give %d histogram bins, at least 2 needed",
            n_samples,
            n_bins,
        )
        return vector, scalar

    valid = ~sentinel_mask(vector, scalar, sentinel_magnitude)
    for channel in channels:
        flagged = find_outliers(channel_values(vector, scalar, channel), valid, n_bins)
        targets = torch.where(flagged)[0]
        if len(targets) == 0:
            continue

        donors = torch.where(valid & ~flagged)[0]
        vector_avg, scalar_avg, ok = average_neighbors(
            positions, vector, scalar, targets, donors, r_cut, chunk_size
        )
        vector[targets[ok]] = vector_avg[ok]
        scalar[targets[ok]] = scalar_avg[ok]

        n_stuck = int((~ok).sum())
        if n_stuck > 0:
            logger.warning(
                "%d of %d outliers in channel %r have no neighbor within r_cut=%g "
                "and keep their value",
                n_stuck,
                len(targets),
                channel,
                r_cut,
            )
        logger.debug("Replaced %d outliers in channel %r", int(ok.sum()), channel)
    return vector, scalar
