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

"""Space-filling curve codes for locality-preserving batch ordering.

Consecutive points along a morton (Z-order) or Hilbert curve are, with high
probability, close in space. Sorting a query batch by curve code lets the
point locator reuse the previous point's cell as the next point's guess.
The Hilbert curve never jumps between distant octants, so it gives the better
warm-start hit rate and is the default; the morton curve is cheaper and is
also used to order cells in the bounding volume hierarchy.
"""

from typing import Literal

import torch

from meshprobe.utilities._tolerances import safe_eps


def _quantize(points: torch.Tensor) -> tuple[torch.Tensor, int]:
    """Map points onto the integer grid ``[0, 2**n_bits - 1]`` per dimension.

    Returns the quantized coordinates, shape ``(N, D)`` int64, and ``n_bits``.
    ``63 // D`` bits per dimension keeps interleaved codes non-negative in int64.
    """
    if points.ndim != 2:
        raise ValueError(
            f"points must be 2D (N, D), got {points.ndim}D "
            f"with shape {tuple(points.shape)}"
        )
    if not points.is_floating_point():
        raise TypeError(
            f"points must be a floating-point tensor (got {points.dtype=!r}); "
            f"integer input would silently produce wrong quantization"
        )

    D = points.shape[1]
    n_bits = 63 // D
    max_val = (1 << n_bits) - 1

    if points.shape[0] == 0:
        return torch.zeros_like(points, dtype=torch.int64), n_bits

    pmin = points.min(dim=0).values  # (D,)
    pmax = points.max(dim=0).values  # (D,)
    extent = (pmax - pmin).clamp(min=safe_eps(points.dtype))
    # float64 keeps the 21-bit grid exact for float32 input
    scaled = (points.double() - pmin.double()) / extent.double() * max_val
    return scaled.long().clamp(0, max_val), n_bits


def compute_morton_codes(points: torch.Tensor) -> torch.Tensor:
    """Compute morton codes (Z-order curve) for a set of points.

    Parameters
    ----------
    points : torch.Tensor
        Point coordinates, shape ``(N, D)``, any float dtype.

    Returns
    -------
    torch.Tensor
        Morton codes, shape ``(N,)``, dtype int64, all non-negative.
    """
    coords, n_bits = _quantize(points)
    N, D = coords.shape

    ### Bit-interleave all dimensions: bit b of dim d -> position b*D + d
    code = torch.zeros(N, dtype=torch.int64, device=points.device)
    dim_offsets = torch.arange(D, dtype=torch.int64, device=points.device)  # (D,)
    for b in range(n_bits):
        bits = (coords >> b) & 1  # (N, D)
        code += (bits << (b * D + dim_offsets)).sum(dim=1)
    return code


def compute_hilbert_codes(points: torch.Tensor) -> torch.Tensor:
    """Compute Hilbert curve indices for a set of points.

    Uses Skilling's transpose algorithm ("Programming the Hilbert curve",
    AIP Conf. Proc. 707, 2004): the quantized axes are converted in place to
    the transposed Hilbert index, whose bits are then interleaved with
    axis 0 as the most significant bit of every level. All steps are
    vectorized over points; the Python loops run over bit levels and
    dimensions only.

    Parameters
    ----------
    points : torch.Tensor
        Point coordinates, shape ``(N, D)``, any float dtype.

    Returns
    -------
    torch.Tensor
        Hilbert indices, shape ``(N,)``, dtype int64, all non-negative.
    """
    coords, n_bits = _quantize(points)
    N, D = coords.shape
    axes = [coords[:, d].clone() for d in range(D)]

    ### Inverse undo: reflect and swap axes level by level, top bit first
    q = 1 << (n_bits - 1)
    while q > 1:
        p = q - 1
        for i in range(D):
            high = (axes[i] & q) != 0
            axes[0] = torch.where(high, axes[0] ^ p, axes[0])
            if i > 0:
                swap = torch.where(
                    high, torch.zeros_like(axes[i]), (axes[0] ^ axes[i]) & p
                )
                axes[0] = axes[0] ^ swap
                axes[i] = axes[i] ^ swap
        q >>= 1

    ### Gray encode
    for i in range(1, D):
        axes[i] = axes[i] ^ axes[i - 1]
    t = torch.zeros_like(axes[0])
    q = 1 << (n_bits - 1)
    while q > 1:
        t = torch.where((axes[D - 1] & q) != 0, t ^ (q - 1), t)
        q >>= 1
    axes = [a ^ t for a in axes]

    ### Interleave the transposed index: axis 0 carries the top bit of each level
    code = torch.zeros(N, dtype=torch.int64, device=points.device)
    for b in range(n_bits):
        for i in range(D):
            code |= ((axes[i] >> b) & 1) << (b * D + (D - 1 - i))
    return code


def spatial_sort_order(
    points: torch.Tensor,
    curve: Literal["hilbert", "morton", "none"] = "hilbert",
) -> torch.Tensor:
    """Permutation that orders ``points`` along a space-filling curve.

    Parameters
    ----------
    points : torch.Tensor
        Point coordinates, shape ``(N, D)``.
    curve : {"hilbert", "morton", "none"}, optional
        Curve to sort along. ``"none"`` returns the identity permutation.

    Returns
    -------
    torch.Tensor
        Permutation, shape ``(N,)``, dtype int64: ``points[order]`` is sorted.
        Ties keep their original relative order.
    """
    if curve == "none":
        return torch.arange(points.shape[0], dtype=torch.int64, device=points.device)
    if curve == "hilbert":
        codes = compute_hilbert_codes(points)
    elif curve == "morton":
        codes = compute_morton_codes(points)
    else:
        raise ValueError(f"Invalid {curve=}. Must be 'hilbert', 'morton' or 'none'.")
    return codes.argsort(stable=True)


def invert_permutation(order: torch.Tensor) -> torch.Tensor:
    """Inverse of a permutation: ``inverse[order] == arange(len(order))``.

    ``values_sorted[invert_permutation(order)]`` restores the original order
    of ``values_sorted = values[order]``.
    """
    inverse = torch.empty_like(order)
    inverse[order] = torch.arange(len(order), dtype=order.dtype, device=order.device)
    return inverse
